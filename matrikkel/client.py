"""HTTP client for the Matrikkel SOAP services.

Only the handful of operations the import pipeline needs are wrapped. Every
call carries the same ``matrikkelContext`` and asks for the latest snapshot.

Example:
    client = MatrikkelClient(RegistrySettings.from_env())
    page = client.list_after_cursor(None, "Matrikkelenhet", municipality_filter("4601"), 1000)
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING
from typing import Any
from typing import Protocol

import requests
from loguru import logger

from matrikkel.config import RegistrySettings
from matrikkel.errors import RegistryFault
from matrikkel.errors import TransportError
from matrikkel.soap import XsiType
from matrikkel.soap import build_envelope
from matrikkel.soap import parse_response
from matrikkel.values import as_list
from matrikkel.values import bubble_id
from matrikkel.values import dig

if TYPE_CHECKING:
    from matrikkel.pagination import CursorToken


SNAPSHOT_TIMESTAMP = "9999-01-01T00:00:00+01:00"
SYSTEM_VERSION = "4.4"
COORDINATE_SYSTEM_CODE = 10

# Domain prefix (see soap.DOMAIN_PREFIXES) for each id type.
ID_TYPE_PREFIXES = {
    "MatrikkelenhetId": "mat",
    "BygningId": "byg",
    "BruksenhetId": "byg",
    "AdresseId": "adr",
    "VegId": "adr",
    "PersonId": "per",
    "FysiskPersonId": "per",
    "JuridiskPersonId": "per",
    "KommuneId": "kom",
    "FylkeId": "kom",
}

# relation -> (service, operation, parameter name)
RELATIONS = {
    "buildings": ("BygningService", "findByggForMatrikkelenheter", "matrikkelenhetIdList"),
    "units": ("BruksenhetService", "findBruksenheterForMatrikkelenheter", "matrikkelenhetIds"),
    "addresses": ("AdresseService", "findAdresserForMatrikkelenheter", "matrikkelenhetIds"),
}

NOT_FOUND_MARKERS = ("not found", "kunne ikke finnes", "PersonNotFound")


class RemoteRegistry(Protocol):
    def list_after_cursor(
        self,
        cursor: CursorToken | None,
        entity_type: str,
        filter: str | None,
        max_count: int,
    ) -> list[dict[str, Any]]: ...

    def find_related(self, relation: str, owner_ids: list[int]) -> dict[int, set[int]]: ...

    def fetch_by_ids(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]: ...

    def fetch_by_ids_ignore_missing(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]: ...

    def fetch_one(self, id_type: str, id_value: int) -> dict[str, Any] | None: ...

    def find_person_id(self, ident: str) -> int | None: ...

    def find_owned_parcels(self, person_id: int) -> list[int]: ...


def normalize_municipality_number(value: str | int) -> str:
    text = str(value).strip()
    if not text.isdigit() or not 1 <= len(text) <= 4:
        raise ValueError(f"Municipality number must be 1-4 digits, got {value!r}")
    return text.zfill(4)


def municipality_filter(municipality_number: str | int) -> str:
    return json.dumps({"kommunefilter": [normalize_municipality_number(municipality_number)]})


def typed_id(id_type: str, value: int) -> dict[str, Any]:
    try:
        prefix = ID_TYPE_PREFIXES[id_type]
    except KeyError as exc:
        raise ValueError(f"Unknown registry id type {id_type!r}") from exc
    return {"_type": XsiType(prefix, id_type), "value": int(value)}


def parse_relation_map(payload: Any) -> dict[int, set[int]]:
    """Turn ``entry{key, value{item[]}}`` map payloads into ``{owner: {related}}``."""
    related: dict[int, set[int]] = {}
    for entry in as_list(dig(payload, "entry")):
        owner_id = bubble_id(dig(entry, "key"))
        if owner_id is None:
            continue
        ids = {
            related_id
            for related_id in (bubble_id(item) for item in as_list(dig(entry, "value", "item")))
            if related_id is not None
        }
        related.setdefault(owner_id, set()).update(ids)
    return related


class MatrikkelClient:
    def __init__(
        self,
        settings: RegistrySettings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings or RegistrySettings.from_env()
        self._session = session or requests.Session()
        if self.settings.login and self.settings.password:
            self._session.auth = (self.settings.login, self.settings.password)

    def matrikkel_context(self) -> dict[str, Any]:
        return {
            "locale": "no_NO",
            "brukOriginaleKoordinater": False,
            "koordinatsystemKodeId": {"value": COORDINATE_SYSTEM_CODE},
            "systemVersion": SYSTEM_VERSION,
            "klientIdentifikasjon": self.settings.login or "matrikkel-sync",
            "snapshotVersion": {"timestamp": SNAPSHOT_TIMESTAMP},
        }

    def call(self, service: str, operation: str, params: dict[str, Any]) -> Any:
        url = f"{self.settings.base_url}/{service}WS"
        namespace = service.removesuffix("Service").lower()
        envelope = build_envelope(
            namespace, operation, {**params, "matrikkelContext": self.matrikkel_context()}
        )
        try:
            response = self._session.post(
                url,
                data=envelope,
                headers={"Content-Type": "text/xml; charset=utf-8", "SOAPAction": '""'},
                timeout=self.settings.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{operation}: request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            # SOAP faults arrive as HTTP 500 with a fault body.
            if b"Fault" in response.content:
                parse_response(response.content, operation)
            raise TransportError(f"{operation}: HTTP {response.status_code} from {url}")
        return parse_response(response.content, operation)

    def list_after_cursor(
        self,
        cursor: CursorToken | None,
        entity_type: str,
        filter: str | None,
        max_count: int,
    ) -> list[dict[str, Any]]:
        bubble = None
        if cursor is not None and not cursor.is_start:
            bubble = {"value": cursor.value, "snapshotVersion": {"timestamp": SNAPSHOT_TIMESTAMP}}
        params: dict[str, Any] = {"matrikkelBubbleId": bubble, "domainklasse": entity_type}
        if filter is not None:
            params["filter"] = filter
        params["maksAntall"] = max_count
        payload = self.call("NedlastningService", "findObjekterEtterId", params)
        return as_list(dig(payload, "item"))

    def find_related(self, relation: str, owner_ids: list[int]) -> dict[int, set[int]]:
        try:
            service, operation, param = RELATIONS[relation]
        except KeyError as exc:
            raise ValueError(f"Unknown relation {relation!r}") from exc
        if not owner_ids:
            return {}
        items = [typed_id("MatrikkelenhetId", owner_id) for owner_id in owner_ids]
        payload = self.call(service, operation, {param: {"item": items}})
        return parse_relation_map(payload)

    def fetch_by_ids(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]:
        items = [typed_id(id_type, value) for value in ids]
        payload = self.call("StoreService", "getObjects", {"ids": {"item": items}})
        return as_list(dig(payload, "item"))

    def fetch_by_ids_ignore_missing(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]:
        items = [typed_id(id_type, value) for value in ids]
        payload = self.call(
            "StoreService",
            "getObjectsIgnoreMissing",
            {"matrikkelBubbleIdList": {"matrikkelBubbleId": items}},
        )
        return as_list(dig(payload, "matrikkelBubbleObject"))

    def fetch_one(self, id_type: str, id_value: int) -> dict[str, Any] | None:
        payload = self.call("StoreService", "getObject", {"id": typed_id(id_type, id_value)})
        return payload if isinstance(payload, dict) else None

    def find_person_id(self, ident: str) -> int | None:
        ident = ident.strip()
        if len(ident) == 11:
            person_ident = {"_type": XsiType("per", "FysiskPersonIdent"), "fodselsnummer": ident}
        else:
            person_ident = {"_type": XsiType("per", "JuridiskPersonIdent"), "organisasjonsnummer": ident}
        try:
            payload = self.call("PersonService", "findPersonIdForIdent", {"personIdent": person_ident})
        except RegistryFault as exc:
            if any(marker.lower() in str(exc).lower() for marker in NOT_FOUND_MARKERS):
                logger.info(f"No registry person for ident ending {ident[-3:]}")
                return None
            raise
        return bubble_id(payload)

    def find_owned_parcels(self, person_id: int) -> list[int]:
        payload = self.call(
            "MatrikkelenhetService",
            "findEideMatrikkelenheterForPerson",
            {"personId": typed_id("PersonId", person_id)},
        )
        found = as_list(dig(payload, "item")) or as_list(dig(payload, "items"))
        return [parcel_id for parcel_id in (bubble_id(item) for item in found) if parcel_id is not None]
