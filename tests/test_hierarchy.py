from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import insert
from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.engine import Engine

from matrikkel.hierarchy import HierarchyCoder
from matrikkel.hierarchy import group_entrances
from matrikkel.hierarchy import unit_sort_key
from matrikkel.models import Building
from matrikkel.models import BuildingParcel
from matrikkel.models import Entrance
from matrikkel.models import Parcel
from matrikkel.models import Road
from matrikkel.models import RoadAddress
from matrikkel.models import Unit

UNIT_COLUMNS = ("unit_id", "building_id", "address_id", "floor_number", "sequence_number")


def _seed(engine: Engine) -> None:
    units = [
        (1, 10, 303, 1, None),
        (2, 10, 300, None, None),
        (3, 10, 301, 2, 1),
        (4, 10, 302, None, None),
        (5, 10, 301, 1, 2),
        (6, 10, None, 0, None),
        (7, 10, 301, None, 5),
        (8, 11, 304, 3, None),
    ]
    with engine.begin() as conn:
        conn.execute(
            insert(Parcel),
            [
                {"parcel_id": 1, "municipality_number": "4601"},
                {"parcel_id": 2, "municipality_number": "4601"},
            ],
        )
        conn.execute(
            insert(Building),
            [
                {"building_id": 10, "status_code": 4},
                {"building_id": 11, "status_code": None},
                {"building_id": 12, "status_code": 9},
            ],
        )
        conn.execute(
            insert(BuildingParcel),
            [
                {"building_id": 12, "parcel_id": 1},
                {"building_id": 11, "parcel_id": 1},
                {"building_id": 10, "parcel_id": 1},
            ],
        )
        conn.execute(
            insert(RoadAddress),
            [
                {"address_id": 300, "road_id": 50, "house_number": 10, "letter": None},
                {"address_id": 301, "road_id": 50, "house_number": 10, "letter": "A"},
                {"address_id": 302, "road_id": 50, "house_number": 12, "letter": "A"},
                {"address_id": 303, "road_id": 50, "house_number": 12, "letter": "B"},
                {"address_id": 304, "road_id": 51, "house_number": 3, "letter": ""},
            ],
        )
        conn.execute(insert(Unit), [dict(zip(UNIT_COLUMNS, unit)) for unit in units])


def _codes(engine: Engine) -> dict[str, Any]:
    with engine.connect() as conn:
        return {
            "parcels": dict(conn.execute(select(Parcel.parcel_id, Parcel.location_code)).all()),
            "buildings": dict(conn.execute(select(Building.building_id, Building.location_code)).all()),
            "entrances": sorted(
                conn.execute(
                    select(Entrance.house_number, Entrance.letter, Entrance.location_code)
                ).all(),
                key=lambda row: row.location_code or "",
            ),
            "units": dict(conn.execute(select(Unit.unit_id, Unit.location_code)).all()),
        }


def test_property_codes_follow_documented_ordering(engine: Engine) -> None:
    _seed(engine)

    coding = HierarchyCoder(engine).organize_property(1)

    assert coding.property_code == "1"
    assert coding.buildings == 2
    assert coding.entrances == 5
    codes = _codes(engine)
    assert codes["buildings"] == {10: "1-01", 11: "1-02", 12: None}
    assert [tuple(row) for row in codes["entrances"]] == [
        (10, None, "1-01-01"),
        (10, "A", "1-01-02"),
        (12, "A", "1-01-03"),
        (12, "B", "1-01-04"),
        (3, None, "1-02-01"),
    ]
    assert codes["units"] == {
        1: "1-01-04-001",
        2: "1-01-01-001",
        3: "1-01-02-003",
        4: "1-01-03-001",
        5: "1-01-02-002",
        6: None,
        7: "1-01-02-001",
        8: "1-02-01-001",
    }


def test_forced_rerun_produces_identical_codes(engine: Engine) -> None:
    _seed(engine)
    coder = HierarchyCoder(engine)

    coder.organize_property(1)
    first = _codes(engine)
    coder.organize_property(1, force=True)

    assert _codes(engine) == first
    with engine.connect() as conn:
        assert len(conn.execute(select(Entrance.entrance_id)).all()) == 5


def test_coded_property_is_skipped_without_force(engine: Engine) -> None:
    _seed(engine)
    coder = HierarchyCoder(engine)
    coder.organize_property(1)

    coding = coder.organize_property(1)

    assert coding.skipped
    assert coding.buildings == 0


def test_existing_property_code_is_kept(engine: Engine) -> None:
    _seed(engine)
    with engine.begin() as conn:
        conn.execute(update(Parcel).where(Parcel.parcel_id == 1).values(location_code="EIE-7"))

    HierarchyCoder(engine).organize_property(1, force=True)

    codes = _codes(engine)
    assert codes["buildings"][10] == "EIE-7-01"
    assert codes["units"][2] == "EIE-7-01-01-001"


def test_property_without_buildings_still_gets_code(engine: Engine) -> None:
    _seed(engine)

    coding = HierarchyCoder(engine).organize_property(2)

    assert coding.buildings == 0
    assert _codes(engine)["parcels"][2] == "2"


def test_unknown_parcel_raises_lookup_error(engine: Engine) -> None:
    with pytest.raises(LookupError):
        HierarchyCoder(engine).organize_property(99)


def test_unit_losing_its_address_is_uncoded_on_rerun(engine: Engine) -> None:
    _seed(engine)
    coder = HierarchyCoder(engine)
    coder.organize_property(1)
    with engine.begin() as conn:
        conn.execute(update(Unit).where(Unit.unit_id == 1).values(address_id=None))

    coder.organize_property(1, force=True)

    with engine.connect() as conn:
        unit = conn.execute(select(Unit).where(Unit.unit_id == 1)).one()
        stale = conn.execute(
            select(Entrance.location_code).where(Entrance.house_number == 12).where(Entrance.letter == "B")
        ).scalar_one()
    assert unit.location_code is None
    assert unit.entrance_id is None
    assert stale is None


def test_organize_municipality_counts_outcomes(engine: Engine) -> None:
    _seed(engine)
    coder = HierarchyCoder(engine)

    stats = coder.organize_municipality("4601")
    again = coder.organize_municipality("4601")
    missing = coder.organize_municipality(parcel_id=99)

    assert stats["organized"] == 2
    assert stats["units"] == 7
    assert again["skipped"] == 2
    assert again["organized"] == 0
    assert missing["errors"] == 1


def test_entrances_carry_road_code(engine: Engine) -> None:
    _seed(engine)
    with engine.begin() as conn:
        conn.execute(insert(Road).values(road_id=50, municipality_number="4601", road_code=1234))

    HierarchyCoder(engine).organize_property(1)

    with engine.connect() as conn:
        codes = dict(conn.execute(select(Entrance.location_code, Entrance.road_code)).all())
    assert codes == {
        "1-01-01": 1234,
        "1-01-02": 1234,
        "1-01-03": 1234,
        "1-01-04": 1234,
        "1-02-01": None,
    }


def test_entrance_grouping_order() -> None:
    units = [
        SimpleNamespace(unit_id=1, road_id=50, house_number=12, letter="B", floor_number=None, sequence_number=None),
        SimpleNamespace(unit_id=2, road_id=50, house_number=10, letter="A", floor_number=None, sequence_number=None),
        SimpleNamespace(unit_id=3, road_id=50, house_number=12, letter="A", floor_number=None, sequence_number=None),
        SimpleNamespace(unit_id=4, road_id=50, house_number=10, letter=None, floor_number=None, sequence_number=None),
        SimpleNamespace(unit_id=5, road_id=None, house_number=None, letter=None, floor_number=1, sequence_number=1),
    ]

    groups, ungrouped = group_entrances(units)

    assert [(key.house_number, key.letter) for key, _members in groups] == [
        (10, None),
        (10, "A"),
        (12, "A"),
        (12, "B"),
    ]
    assert [unit.unit_id for unit in ungrouped] == [5]


def test_same_address_on_different_roads_orders_by_road() -> None:
    units = [
        SimpleNamespace(unit_id=1, road_id=70, house_number=1, letter=None, floor_number=None, sequence_number=None),
        SimpleNamespace(unit_id=2, road_id=None, house_number=1, letter=None, floor_number=None, sequence_number=None),
        SimpleNamespace(unit_id=3, road_id=60, house_number=1, letter=None, floor_number=None, sequence_number=None),
    ]

    groups, _ungrouped = group_entrances(units)

    assert [key.road_id for key, _members in groups] == [None, 60, 70]


def test_unit_sort_puts_missing_floor_and_sequence_first() -> None:
    units = [
        SimpleNamespace(unit_id=1, floor_number=1, sequence_number=2),
        SimpleNamespace(unit_id=2, floor_number=None, sequence_number=3),
        SimpleNamespace(unit_id=3, floor_number=1, sequence_number=None),
        SimpleNamespace(unit_id=4, floor_number=-1, sequence_number=1),
        SimpleNamespace(unit_id=5, floor_number=1, sequence_number=2),
    ]

    assert [unit.unit_id for unit in sorted(units, key=unit_sort_key)] == [2, 4, 3, 1, 5]
