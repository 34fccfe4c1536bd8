from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from matrikkel.errors import TransportError
from matrikkel.models import Base
from matrikkel.pagination import CursorToken


def registry_object(object_id: int, **fields: Any) -> dict[str, Any]:
    return {"id": {"value": object_id}, **fields}


def parcel_object(
    parcel_id: int,
    owner_id: int | None = None,
    *,
    municipality: int = 4601,
    ownership_type: str | None = None,
) -> dict[str, Any]:
    obj = registry_object(
        parcel_id,
        matrikkelnummer={
            "kommuneId": {"value": municipality},
            "gardsnummer": str(parcel_id),
            "bruksnummer": "1",
        },
        bruksnavn=f"Bruk {parcel_id}",
    )
    if owner_id is not None:
        ownership: dict[str, Any] = {
            "id": {"value": owner_id * 10},
            "eierId": {"value": owner_id},
            "andel": {"teller": "1", "nevner": "1"},
        }
        if ownership_type is not None:
            ownership["_type"] = ownership_type
        obj["eierforhold"] = {"item": [ownership]}
    return obj


class FakeRegistry:
    """In-memory stand-in for the registry services."""

    def __init__(self) -> None:
        self.listings: dict[str, list[dict[str, Any]]] = {}
        self.relations: dict[str, dict[int, set[int]]] = {}
        self.store: dict[str, dict[int, dict[str, Any]]] = {}
        self.people: dict[int, dict[str, Any]] = {}
        self.failing_people: set[int] = set()
        self.idents: dict[str, int] = {}
        self.owned: dict[int, list[int]] = {}
        self.list_failures_after: int | None = None
        self.fetch_failures: int = 0
        self.calls: list[tuple[Any, ...]] = []

    def add_listing(self, entity_type: str, objects: list[dict[str, Any]]) -> None:
        self.listings[entity_type] = sorted(objects, key=lambda obj: obj["id"]["value"])

    def add_objects(self, id_type: str, objects: list[dict[str, Any]]) -> None:
        bucket = self.store.setdefault(id_type, {})
        for obj in objects:
            bucket[obj["id"]["value"]] = obj

    def list_after_cursor(
        self,
        cursor: CursorToken | None,
        entity_type: str,
        filter: str | None,
        max_count: int,
    ) -> list[dict[str, Any]]:
        self.calls.append(("list", None if cursor is None else cursor.value, entity_type, filter, max_count))
        list_calls = sum(1 for call in self.calls if call[0] == "list")
        if self.list_failures_after is not None and list_calls > self.list_failures_after:
            raise TransportError("listing unavailable")
        after = 0 if cursor is None or cursor.value is None else cursor.value
        remaining = [obj for obj in self.listings.get(entity_type, []) if obj["id"]["value"] > after]
        return remaining[:max_count]

    def find_related(self, relation: str, owner_ids: list[int]) -> dict[int, set[int]]:
        self.calls.append(("related", relation, tuple(owner_ids)))
        mapping = self.relations.get(relation, {})
        return {owner_id: set(mapping[owner_id]) for owner_id in owner_ids if owner_id in mapping}

    def _fetch(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]:
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise TransportError("store unavailable")
        bucket = self.store.get(id_type, {})
        return [bucket[value] for value in ids if value in bucket]

    def fetch_by_ids(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]:
        self.calls.append(("fetch", id_type, tuple(ids)))
        return self._fetch(id_type, ids)

    def fetch_by_ids_ignore_missing(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]:
        self.calls.append(("fetch_ignore_missing", id_type, tuple(ids)))
        return self._fetch(id_type, ids)

    def fetch_one(self, id_type: str, id_value: int) -> dict[str, Any] | None:
        self.calls.append(("fetch_one", id_type, id_value))
        if id_value in self.failing_people:
            raise TransportError(f"person {id_value} unavailable")
        return self.people.get(id_value)

    def find_person_id(self, ident: str) -> int | None:
        self.calls.append(("find_person_id", ident))
        return self.idents.get(ident)

    def find_owned_parcels(self, person_id: int) -> list[int]:
        self.calls.append(("find_owned_parcels", person_id))
        return list(self.owned.get(person_id, []))


def new_engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine() -> Engine:
    return new_engine()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()
