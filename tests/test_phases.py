from __future__ import annotations

from sqlalchemy import insert
from sqlalchemy.engine import Engine

from conftest import FakeRegistry
from conftest import parcel_object
from conftest import registry_object
from matrikkel.importers import EntityImporter
from matrikkel.models import Parcel
from matrikkel.phases import PhaseRunner
from matrikkel.phases import parcels_in_municipality
from matrikkel.phases import select_parcel_scope
from matrikkel.progress import NullProgressSink

ORG_NUMBER = "964338531"


def _importer(engine: Engine, registry: FakeRegistry) -> EntityImporter:
    return EntityImporter(
        engine, registry, progress=NullProgressSink(), max_attempts=1, retry_wait_seconds=0
    )


def _store_parcels(engine: Engine, parcels: dict[int, str]) -> None:
    with engine.begin() as conn:
        conn.execute(
            insert(Parcel),
            [{"parcel_id": parcel_id, "municipality_number": number} for parcel_id, number in parcels.items()],
        )


def _related_calls(registry: FakeRegistry) -> dict[str, tuple[int, ...]]:
    return {call[1]: call[2] for call in registry.calls if call[0] == "related"}


def test_phase1_runs_municipalities_parcels_and_owners(engine: Engine, registry: FakeRegistry) -> None:
    registry.add_listing("Kommune", [registry_object(4601, kommunenummer="4601", kommunenavn="Bergen")])
    registry.add_listing("Matrikkelenhet", [parcel_object(1, owner_id=900), parcel_object(2)])
    registry.people = {900: registry_object(900, organisasjonsnummer=ORG_NUMBER, navn="Eiendom AS")}

    report = PhaseRunner(_importer(engine, registry)).run_phase1(4601)

    assert report.exit_code == 0
    assert report.municipality_number == "4601"
    assert [step["name"] for step in report.steps] == ["municipalities", "parcels", "owners"]
    assert [step["status"] for step in report.steps] == ["ok", "ok", "ok"]
    assert report.steps[1]["processed"] == 2
    assert report.steps[2]["processed"] == 1
    assert report.as_dict()["failed_steps"] == 0


def test_phase2_scope_is_owner_parcels_in_municipality(engine: Engine, registry: FakeRegistry) -> None:
    _store_parcels(engine, {1: "4601", 2: "4601", 3: "4601", 4: "0301"})
    registry.idents = {ORG_NUMBER: 77}
    registry.owned = {77: [1, 3, 4, 999]}

    report = PhaseRunner(_importer(engine, registry)).run_phase2("4601", organization_number=ORG_NUMBER)

    assert report.exit_code == 0
    assert report.steps[0] == {"name": "parcel_scope", "status": "ok", "parcels": 2}
    assert [step["name"] for step in report.steps[1:]] == ["roads", "units", "buildings", "addresses"]
    assert _related_calls(registry) == {"units": (1, 3), "buildings": (1, 3), "addresses": (1, 3)}


def test_phase2_limit_caps_scope(engine: Engine, registry: FakeRegistry) -> None:
    _store_parcels(engine, {n: "4601" for n in range(1, 6)})

    report = PhaseRunner(_importer(engine, registry)).run_phase2("4601", limit=2)

    assert report.steps[0]["parcels"] == 2
    assert _related_calls(registry)["units"] == (1, 2)


def test_phase2_with_empty_scope_fails(engine: Engine, registry: FakeRegistry) -> None:
    _store_parcels(engine, {1: "4601"})

    report = PhaseRunner(_importer(engine, registry)).run_phase2("4601", national_id="01017012345")

    assert report.exit_code == 1
    assert report.steps == [{"name": "parcel_scope", "status": "failed", "reason": "no parcels in scope"}]
    assert not any(call[0] == "related" for call in registry.calls)


def test_phase2_stops_at_first_failed_step(engine: Engine, registry: FakeRegistry) -> None:
    _store_parcels(engine, {1: "4601"})
    registry.list_failures_after = 0

    report = PhaseRunner(_importer(engine, registry)).run_phase2("4601")

    assert report.failed_steps == 1
    assert [(step["name"], step["status"]) for step in report.steps] == [
        ("parcel_scope", "ok"),
        ("roads", "failed"),
    ]


def test_phase2_keep_going_runs_remaining_steps(engine: Engine, registry: FakeRegistry) -> None:
    _store_parcels(engine, {1: "4601"})
    registry.list_failures_after = 0

    report = PhaseRunner(_importer(engine, registry), fail_fast=False).run_phase2("4601")

    assert report.failed_steps == 1
    assert [step["status"] for step in report.steps] == ["ok", "failed", "ok", "ok", "ok"]


def test_parcels_in_municipality_intersects_ids(engine: Engine) -> None:
    _store_parcels(engine, {1: "4601", 2: "4601", 3: "0301"})

    assert parcels_in_municipality(engine, "4601") == [1, 2]
    assert parcels_in_municipality(engine, "4601", [3, 2, 2, 8]) == [2]


def test_unregistered_owner_gives_empty_scope(engine: Engine, registry: FakeRegistry) -> None:
    _store_parcels(engine, {1: "4601"})

    scope = select_parcel_scope(_importer(engine, registry), 4601, organization_number=ORG_NUMBER)

    assert scope == []
    assert ("find_owned_parcels", 77) not in registry.calls
