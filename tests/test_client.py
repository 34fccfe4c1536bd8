from __future__ import annotations

from typing import Any

import pytest
import requests
from lxml import etree

from matrikkel.client import MatrikkelClient
from matrikkel.client import municipality_filter
from matrikkel.client import normalize_municipality_number
from matrikkel.client import parse_relation_map
from matrikkel.config import RegistrySettings
from matrikkel.errors import RegistryFault
from matrikkel.errors import TransportError
from matrikkel.pagination import CursorToken
from matrikkel.soap import SOAP_ENV_NS
from matrikkel.soap import XSI_NS
from matrikkel.soap import XsiType
from matrikkel.soap import build_envelope
from matrikkel.soap import parse_response


def _envelope(body: str) -> bytes:
    return (
        f'<soap:Envelope xmlns:soap="{SOAP_ENV_NS}" xmlns:xsi="{XSI_NS}">'
        f"<soap:Body>{body}</soap:Body></soap:Envelope>"
    ).encode()


def _fault(message: str) -> bytes:
    return _envelope(
        f"<soap:Fault><faultcode>soap:Server</faultcode><faultstring>{message}</faultstring></soap:Fault>"
    )


class _FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200) -> None:
        self.content = content
        self.status_code = status_code


class _FakeSession:
    def __init__(self, *responses: _FakeResponse | Exception) -> None:
        self.auth: Any = None
        self.posts: list[dict[str, Any]] = []
        self._responses = list(responses)

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.posts.append({"url": url, **kwargs})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(*responses: _FakeResponse | Exception) -> tuple[MatrikkelClient, _FakeSession]:
    session = _FakeSession(*responses)
    settings = RegistrySettings(login="user", password="secret", environment="test", timeout=5)
    return MatrikkelClient(settings, session=session), session


def test_build_envelope_serializes_types_nil_and_lists() -> None:
    xml = build_envelope(
        "store",
        "getObjects",
        {
            "ids": {"item": [{"_type": XsiType("byg", "BygningId"), "value": 1}, {"value": 2}]},
            "flag": True,
            "cursor": None,
        },
    )
    root = etree.fromstring(xml)

    call = root.find(f"{{{SOAP_ENV_NS}}}Body")[0]
    assert etree.QName(call).localname == "getObjects"
    items = call.findall(".//{*}item")
    assert len(items) == 2
    assert items[0].get(f"{{{XSI_NS}}}type") == "byg:BygningId"
    assert call.find("{*}flag").text == "true"
    assert call.find("{*}cursor").get(f"{{{XSI_NS}}}nil") == "true"


def test_parse_response_converts_repeated_elements_and_types() -> None:
    content = _envelope(
        '<ns:findResponse xmlns:ns="urn:x"><return>'
        '<item xsi:type="ns:Bygning"><id><value>1</value></id></item>'
        "<item><id><value>2</value></id><navn/></item>"
        "</return></ns:findResponse>"
    )

    payload = parse_response(content, "find")

    assert payload == {
        "item": [
            {"_type": "Bygning", "id": {"value": "1"}},
            {"id": {"value": "2"}, "navn": ""},
        ]
    }


def test_parse_response_raises_registry_fault() -> None:
    with pytest.raises(RegistryFault) as excinfo:
        parse_response(_fault("Ugyldig id"), "getObject")

    assert excinfo.value.fault_code == "soap:Server"
    assert excinfo.value.fault_string == "Ugyldig id"
    assert excinfo.value.operation == "getObject"


def test_parse_response_rejects_non_xml() -> None:
    with pytest.raises(TransportError, match="malformed"):
        parse_response(b"<html>", "getObject")


def test_parse_response_without_return_is_none() -> None:
    assert parse_response(_envelope('<ns:r xmlns:ns="urn:x"/>'), "x") is None


def test_list_after_cursor_posts_to_download_service() -> None:
    content = _envelope(
        '<ns:findObjekterEtterIdResponse xmlns:ns="urn:x"><return>'
        "<item><id><value>5</value></id></item>"
        "</return></ns:findObjekterEtterIdResponse>"
    )
    client, session = _client(_FakeResponse(content))

    objects = client.list_after_cursor(CursorToken("Veg", 4), "Veg", municipality_filter(301), 10)

    assert objects == [{"id": {"value": "5"}}]
    post = session.posts[0]
    assert post["url"].endswith("/NedlastningServiceWS")
    assert post["timeout"] == 5
    assert b"findObjekterEtterId" in post["data"]
    assert b"0301" in post["data"]
    assert session.auth == ("user", "secret")


def test_find_person_id_returns_none_when_not_registered() -> None:
    client, _session = _client(_FakeResponse(_fault("Person not found"), status_code=500))

    assert client.find_person_id("964338531") is None


def test_other_faults_propagate() -> None:
    client, _session = _client(_FakeResponse(_fault("Ingen tilgang"), status_code=500))

    with pytest.raises(RegistryFault, match="Ingen tilgang"):
        client.find_person_id("964338531")


def test_http_error_without_fault_is_transport_error() -> None:
    client, _session = _client(_FakeResponse(b"Service Unavailable", status_code=503))

    with pytest.raises(TransportError, match="HTTP 503"):
        client.fetch_by_ids("BygningId", [1])


def test_request_exception_is_transport_error() -> None:
    client, _session = _client(requests.ConnectionError("refused"))

    with pytest.raises(TransportError, match="refused"):
        client.fetch_one("PersonId", 1)


def test_unknown_id_type_is_rejected() -> None:
    client, _session = _client()

    with pytest.raises(ValueError, match="Unknown registry id type"):
        client.fetch_by_ids("Nonsense", [1])


def test_parse_relation_map() -> None:
    payload = {
        "entry": [
            {"key": {"value": "1"}, "value": {"item": [{"value": "10"}, {"value": "11"}]}},
            {"key": {"value": "2"}, "value": {"item": {"value": "12"}}},
            {"key": {"value": "3"}, "value": ""},
        ]
    }

    assert parse_relation_map(payload) == {1: {10, 11}, 2: {12}, 3: set()}


@pytest.mark.parametrize(("raw", "expected"), [("301", "0301"), (4601, "4601"), ("1", "0001")])
def test_normalize_municipality_number(raw: Any, expected: str) -> None:
    assert normalize_municipality_number(raw) == expected


@pytest.mark.parametrize("raw", ["", "12345", "03a1"])
def test_invalid_municipality_number(raw: str) -> None:
    with pytest.raises(ValueError):
        normalize_municipality_number(raw)


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MATRIKKEL_LOGIN", "svc")
    monkeypatch.setenv("MATRIKKEL_ENVIRONMENT", "test")
    monkeypatch.setenv("MATRIKKEL_TIMEOUT", "30")

    settings = RegistrySettings.from_env()

    assert settings.login == "svc"
    assert settings.timeout == 30.0
    assert settings.base_url.startswith("https://prodtest.")
    with pytest.raises(ValueError):
        _ = RegistrySettings(environment="staging").base_url
