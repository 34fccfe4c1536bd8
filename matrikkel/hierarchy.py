"""Location codes for the property hierarchy.

Property -> building -> entrance -> unit, each code being the parent code
plus a zero-padded sequence:

    1234567            property (stored code, else the parcel id)
    1234567-01         building, by building id
    1234567-01-02      entrance, by house number, letter, road id
    1234567-01-02-003  unit, by floor, sequence number, unit id

Entrances are derived from the road address of each unit and persisted in
``matrikkel_entrances`` so units can point at them. A property is coded in a
single transaction; running it again over unchanged rows writes the same
codes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import Any

from loguru import logger
from sqlalchemy import insert
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from matrikkel.client import normalize_municipality_number
from matrikkel.models import Building
from matrikkel.models import BuildingParcel
from matrikkel.models import Entrance
from matrikkel.models import Parcel
from matrikkel.models import Road
from matrikkel.models import RoadAddress
from matrikkel.models import Unit

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection
    from sqlalchemy.engine import Engine


DEMOLISHED_STATUS_CODE = 9


@dataclass(frozen=True, slots=True)
class EntranceKey:
    road_id: int | None
    house_number: int
    letter: str | None

    def sort_key(self) -> tuple[Any, ...]:
        return (
            self.house_number,
            self.letter or "",
            self.road_id is not None,
            self.road_id or 0,
        )


@dataclass(slots=True)
class PropertyCoding:
    parcel_id: int
    property_code: str | None = None
    buildings: int = 0
    entrances: int = 0
    units: int = 0
    skipped: bool = False


def building_code(property_code: str, sequence: int) -> str:
    return f"{property_code}-{sequence:02d}"


def entrance_code(building_code: str, sequence: int) -> str:
    return f"{building_code}-{sequence:02d}"


def unit_code(entrance_code: str, sequence: int) -> str:
    return f"{entrance_code}-{sequence:03d}"


def normalize_letter(letter: str | None) -> str | None:
    if letter is None:
        return None
    letter = letter.strip()
    return letter or None


def unit_sort_key(unit: Any) -> tuple[Any, ...]:
    """Floor first (missing floor before any floor), then sequence, then id."""
    return (
        unit.floor_number is not None,
        unit.floor_number or 0,
        unit.sequence_number is not None,
        unit.sequence_number or 0,
        unit.unit_id,
    )


def group_entrances(units: list[Any]) -> tuple[list[tuple[EntranceKey, list[Any]]], list[Any]]:
    """Group units by road address. Returns ordered groups and ungrouped units."""
    groups: dict[EntranceKey, list[Any]] = {}
    ungrouped: list[Any] = []
    for unit in units:
        if unit.house_number is None:
            ungrouped.append(unit)
            continue
        key = EntranceKey(unit.road_id, int(unit.house_number), normalize_letter(unit.letter))
        groups.setdefault(key, []).append(unit)
    ordered = sorted(groups.items(), key=lambda item: item[0].sort_key())
    return [(key, sorted(members, key=unit_sort_key)) for key, members in ordered], ungrouped


class HierarchyCoder:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def organize_property(self, parcel_id: int, force: bool = False) -> PropertyCoding:
        """Assign codes to one property and everything under it.

        Raises ``LookupError`` when the parcel is not stored.
        """
        coding = PropertyCoding(parcel_id)
        with self.engine.begin() as conn:
            parcel = conn.execute(
                select(Parcel.parcel_id, Parcel.location_code).where(Parcel.parcel_id == parcel_id)
            ).first()
            if parcel is None:
                raise LookupError(f"Parcel {parcel_id} not found")
            if parcel.location_code and not force:
                coding.property_code = parcel.location_code
                coding.skipped = True
                return coding

            property_code = parcel.location_code or str(parcel.parcel_id)
            coding.property_code = property_code
            conn.execute(
                update(Parcel).where(Parcel.parcel_id == parcel_id).values(location_code=property_code)
            )

            building_ids = conn.execute(
                select(Building.building_id)
                .join(BuildingParcel, BuildingParcel.building_id == Building.building_id)
                .where(BuildingParcel.parcel_id == parcel_id)
                .where(
                    or_(
                        Building.status_code.is_(None),
                        Building.status_code != DEMOLISHED_STATUS_CODE,
                    )
                )
                .order_by(Building.building_id)
            ).scalars().all()

            for sequence, building_id in enumerate(building_ids, start=1):
                code = building_code(property_code, sequence)
                conn.execute(
                    update(Building)
                    .where(Building.building_id == building_id)
                    .values(sequence_in_property=sequence, location_code=code)
                )
                entrances, units = self._organize_building(conn, building_id, code)
                coding.buildings += 1
                coding.entrances += entrances
                coding.units += units
        return coding

    def _organize_building(self, conn: Connection, building_id: int, code: str) -> tuple[int, int]:
        units = conn.execute(
            select(
                Unit.unit_id,
                Unit.floor_number,
                Unit.sequence_number,
                RoadAddress.road_id,
                RoadAddress.house_number,
                RoadAddress.letter,
                Road.road_code,
            )
            .outerjoin(RoadAddress, RoadAddress.address_id == Unit.address_id)
            .outerjoin(Road, Road.road_id == RoadAddress.road_id)
            .where(Unit.building_id == building_id)
        ).all()
        groups, ungrouped = group_entrances(units)

        if ungrouped:
            conn.execute(
                update(Unit)
                .where(Unit.unit_id.in_([unit.unit_id for unit in ungrouped]))
                .values(entrance_id=None, sequence_in_entrance=None, location_code=None)
            )

        used: list[int] = []
        coded_units = 0
        for sequence, (key, members) in enumerate(groups, start=1):
            entrance_id = self._find_or_create_entrance(conn, building_id, key)
            used.append(entrance_id)
            code_for_entrance = entrance_code(code, sequence)
            conn.execute(
                update(Entrance)
                .where(Entrance.entrance_id == entrance_id)
                .values(
                    road_code=members[0].road_code,
                    sequence_in_building=sequence,
                    location_code=code_for_entrance,
                )
            )
            for unit_sequence, unit in enumerate(members, start=1):
                conn.execute(
                    update(Unit)
                    .where(Unit.unit_id == unit.unit_id)
                    .values(
                        entrance_id=entrance_id,
                        sequence_in_entrance=unit_sequence,
                        location_code=unit_code(code_for_entrance, unit_sequence),
                    )
                )
                coded_units += 1

        stale = update(Entrance).where(Entrance.building_id == building_id)
        if used:
            stale = stale.where(Entrance.entrance_id.not_in(used))
        conn.execute(stale.values(sequence_in_building=None, location_code=None))
        return len(groups), coded_units

    def _find_or_create_entrance(self, conn: Connection, building_id: int, key: EntranceKey) -> int:
        existing = conn.execute(
            select(Entrance.entrance_id)
            .where(Entrance.building_id == building_id)
            .where(Entrance.road_id.is_not_distinct_from(key.road_id))
            .where(Entrance.house_number == key.house_number)
            .where(Entrance.letter.is_not_distinct_from(key.letter))
            .order_by(Entrance.entrance_id)
            .limit(1)
        ).scalar()
        if existing is not None:
            return int(existing)
        result = conn.execute(
            insert(Entrance).values(
                building_id=building_id,
                road_id=key.road_id,
                house_number=key.house_number,
                letter=key.letter,
            )
        )
        return int(result.inserted_primary_key[0])

    def organize_municipality(
        self,
        municipality_number: str | int | None = None,
        *,
        parcel_id: int | None = None,
        force: bool = False,
    ) -> dict[str, int]:
        """Code every parcel in a municipality, or a single parcel.

        A failing property is logged and counted; the rest still run.
        """
        stmt = select(Parcel.parcel_id).order_by(Parcel.parcel_id)
        if parcel_id is not None:
            stmt = stmt.where(Parcel.parcel_id == parcel_id)
        if municipality_number is not None:
            stmt = stmt.where(
                Parcel.municipality_number == normalize_municipality_number(municipality_number)
            )
        with self.engine.connect() as conn:
            parcel_ids = conn.execute(stmt).scalars().all()

        stats = {
            "parcels": len(parcel_ids),
            "organized": 0,
            "skipped": 0,
            "errors": 0,
            "buildings": 0,
            "units": 0,
        }
        if parcel_id is not None and not parcel_ids:
            logger.warning(f"Parcel {parcel_id} not found")
            stats["errors"] += 1
            return stats

        for current in parcel_ids:
            try:
                coding = self.organize_property(current, force=force)
            except (LookupError, SQLAlchemyError) as exc:
                logger.error(f"Could not organize parcel {current}: {exc}")
                stats["errors"] += 1
                continue
            if coding.skipped:
                stats["skipped"] += 1
                continue
            stats["organized"] += 1
            stats["buildings"] += coding.buildings
            stats["units"] += coding.units
        logger.info(
            f"Hierarchy: {stats['organized']} organized, {stats['skipped']} skipped, {stats['errors']} errors"
        )
        return stats
