"""SOAP 1.1 envelope building and response parsing for the Matrikkel web services.

Requests are built from plain Python values:

* ``dict`` becomes child elements, a ``"_type"`` key holding an ``XsiType``
  becomes an ``xsi:type`` attribute
* ``list``/``tuple`` becomes repeated elements with the same tag
* ``None`` becomes ``xsi:nil="true"``
* ``bool`` becomes ``true``/``false``, everything else ``str(value)``

Responses are turned back into nested dicts: repeated elements become lists,
text leaves stay strings and ``xsi:type`` is kept under ``"_type"`` as the
bare type name.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from lxml import etree

from matrikkel.errors import RegistryFault
from matrikkel.errors import TransportError


SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
DOMAIN_NS = "http://matrikkel.statkart.no/matrikkelapi/wsapi/v1/domain"
SERVICE_NS_PREFIX = "http://matrikkel.statkart.no/matrikkelapi/wsapi/v1/service"

DOMAIN_PREFIXES = {
    "dom": DOMAIN_NS,
    "adr": f"{DOMAIN_NS}/adresse",
    "byg": f"{DOMAIN_NS}/bygning",
    "kom": f"{DOMAIN_NS}/kommune",
    "mat": f"{DOMAIN_NS}/matrikkelenhet",
    "per": f"{DOMAIN_NS}/person",
}

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


@dataclass(frozen=True)
class XsiType:
    prefix: str
    name: str

    def qualified(self) -> str:
        return f"{self.prefix}:{self.name}"


def service_namespace(service: str) -> str:
    return f"{SERVICE_NS_PREFIX}/{service}"


def _local_name(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname


def _append_value(parent: etree._Element, tag: str, value: Any) -> None:
    if isinstance(value, (list, tuple)):
        for item in value:
            _append_value(parent, tag, item)
        return

    child = etree.SubElement(parent, tag)
    if value is None:
        child.set(f"{{{XSI_NS}}}nil", "true")
    elif isinstance(value, dict):
        for key, nested in value.items():
            if key == "_type":
                child.set(f"{{{XSI_NS}}}type", nested.qualified())
                continue
            _append_value(child, f"{{{DOMAIN_NS}}}{key}", nested)
    elif isinstance(value, bool):
        child.text = "true" if value else "false"
    else:
        child.text = str(value)


def build_envelope(service: str, operation: str, params: dict[str, Any]) -> bytes:
    """Serialize ``operation(params)`` for ``service`` into a SOAP envelope."""
    svc_ns = service_namespace(service)
    nsmap = {"soapenv": SOAP_ENV_NS, "xsi": XSI_NS, "svc": svc_ns, **DOMAIN_PREFIXES}
    envelope = etree.Element(f"{{{SOAP_ENV_NS}}}Envelope", nsmap=nsmap)
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    call = etree.SubElement(body, f"{{{svc_ns}}}{operation}")
    for name, value in params.items():
        _append_value(call, f"{{{svc_ns}}}{name}", value)
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def element_to_python(element: etree._Element) -> Any:
    if element.get(f"{{{XSI_NS}}}nil") == "true":
        return None

    children = [child for child in element if isinstance(child.tag, str)]
    xsi_type = element.get(f"{{{XSI_NS}}}type")
    if not children:
        text = (element.text or "").strip()
        if xsi_type and not text:
            return {"_type": xsi_type.rsplit(":", 1)[-1]}
        return text

    result: dict[str, Any] = {}
    if xsi_type:
        result["_type"] = xsi_type.rsplit(":", 1)[-1]
    for child in children:
        name = _local_name(child.tag)
        value = element_to_python(child)
        if name in result and name != "_type":
            existing = result[name]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[name] = [existing, value]
        else:
            result[name] = value
    return result


def parse_response(content: bytes, operation: str) -> Any:
    """Return the converted ``return`` payload of a response, or ``None`` if absent.

    Raises ``RegistryFault`` for SOAP faults and ``TransportError`` for
    anything that is not a SOAP envelope.
    """
    try:
        root = etree.fromstring(content, parser=_PARSER)
    except etree.XMLSyntaxError as exc:
        raise TransportError(f"{operation}: malformed XML response: {exc}") from exc

    fault = root.find(f".//{{{SOAP_ENV_NS}}}Fault")
    if fault is not None:
        fault_code = fault.findtext("faultcode") or "Unknown"
        fault_string = fault.findtext("faultstring") or "Unknown error"
        raise RegistryFault(fault_code.strip(), fault_string.strip(), operation=operation)

    body = root.find(f"{{{SOAP_ENV_NS}}}Body")
    if body is None:
        raise TransportError(f"{operation}: response has no SOAP body")
    response = next((child for child in body if isinstance(child.tag, str)), None)
    if response is None:
        return None

    returns = [
        child
        for child in response
        if isinstance(child.tag, str) and _local_name(child.tag) == "return"
    ]
    if not returns:
        return None
    if len(returns) == 1:
        return element_to_python(returns[0])
    return [element_to_python(item) for item in returns]
