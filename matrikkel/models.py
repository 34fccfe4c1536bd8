from __future__ import annotations

import datetime as dt
from enum import Enum

from sqlalchemy import BigInteger
from sqlalchemy import Boolean
from sqlalchemy import Date
from sqlalchemy import DateTime
from sqlalchemy import Float
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column


# SQLite only autoincrements INTEGER PRIMARY KEY columns.
SERIAL_ID = BigInteger().with_variant(Integer, "sqlite")


class OwnerKind(Enum):
    UNKNOWN = "unknown"
    INDIVIDUAL = "individual"
    ORGANIZATION = "organization"


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class Base(DeclarativeBase):
    pass


class Municipality(Base):
    __tablename__ = "matrikkel_municipalities"

    municipality_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    municipality_number: Mapped[str | None] = mapped_column(String(4), nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    county_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    county_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    __table_args__ = (Index("idx_matrikkel_municipalities_number", "municipality_number"),)


class Parcel(Base):
    __tablename__ = "matrikkel_parcels"

    parcel_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    municipality_number: Mapped[str | None] = mapped_column(String(4), nullable=True)
    gardsnummer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bruksnummer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    festenummer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    seksjonsnummer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cadastral_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    bruksnavn: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_area: Mapped[float | None] = mapped_column(Float, nullable=True)
    tinglyst: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    skyld: Mapped[float | None] = mapped_column(Float, nullable=True)
    established_on: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    is_sectioned: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    has_active_leaseholds: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    has_noted_complaint: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    has_ground_pollution: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    has_cultural_heritage: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_expired: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_newly_registered: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    owner_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    owner_individual_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    owner_organization_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    location_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    __table_args__ = (
        Index("idx_matrikkel_parcels_municipality", "municipality_number"),
        Index("idx_matrikkel_parcels_owner_individual", "owner_individual_id"),
        Index("idx_matrikkel_parcels_owner_organization", "owner_organization_id"),
    )


class Ownership(Base):
    __tablename__ = "matrikkel_ownerships"

    parcel_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    owner_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    ownership_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    owner_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    share_numerator: Mapped[int | None] = mapped_column(Integer, nullable=True)
    share_denominator: Mapped[int | None] = mapped_column(Integer, nullable=True)
    share_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    __table_args__ = (Index("idx_matrikkel_ownerships_owner", "owner_id"),)


class Individual(Base):
    __tablename__ = "matrikkel_individuals"

    individual_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    given_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    middle_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    family_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    national_id: Mapped[str | None] = mapped_column(String(11), nullable=True)
    address_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )


class Organization(Base):
    __tablename__ = "matrikkel_organizations"

    organization_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    registration_number: Mapped[str | None] = mapped_column(String(9), nullable=True)
    organization_form: Mapped[str | None] = mapped_column(String(16), nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    __table_args__ = (
        Index("idx_matrikkel_organizations_registration_number", "registration_number"),
    )


class Road(Base):
    __tablename__ = "matrikkel_roads"

    road_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    municipality_number: Mapped[str | None] = mapped_column(String(4), nullable=True)
    road_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    short_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    place_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    uuid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    __table_args__ = (Index("idx_matrikkel_roads_municipality", "municipality_number"),)


class Address(Base):
    __tablename__ = "matrikkel_addresses"

    address_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    address_kind: Mapped[str] = mapped_column(String(24), nullable=False)
    parcel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    uuid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    __table_args__ = (Index("idx_matrikkel_addresses_parcel", "parcel_id"),)


class RoadAddress(Base):
    __tablename__ = "matrikkel_road_addresses"

    address_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    road_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    house_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    letter: Mapped[str | None] = mapped_column(String(4), nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )


class ParcelAddress(Base):
    __tablename__ = "matrikkel_parcel_addresses"

    parcel_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    address_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)


class Building(Base):
    __tablename__ = "matrikkel_buildings"

    building_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    building_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    sequence_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uuid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    built_area: Mapped[float | None] = mapped_column(Float, nullable=True)
    usable_area_total: Mapped[float | None] = mapped_column(Float, nullable=True)
    construction_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    has_lift: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    east: Mapped[float | None] = mapped_column(Float, nullable=True)
    north: Mapped[float | None] = mapped_column(Float, nullable=True)
    height: Mapped[float | None] = mapped_column(Float, nullable=True)
    crs_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    building_type_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sequence_in_property: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )


class BuildingParcel(Base):
    __tablename__ = "matrikkel_building_parcels"

    building_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    parcel_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)

    __table_args__ = (Index("idx_matrikkel_building_parcels_parcel", "parcel_id"),)


class Unit(Base):
    __tablename__ = "matrikkel_units"

    unit_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    parcel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    building_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    sequence_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uuid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    unit_type_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor_plan_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    address_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    room_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bath_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    wc_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usable_area: Mapped[float | None] = mapped_column(Float, nullable=True)
    kitchen_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entrance_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    sequence_in_entrance: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    __table_args__ = (
        Index("idx_matrikkel_units_building", "building_id"),
        Index("idx_matrikkel_units_parcel", "parcel_id"),
    )


class Entrance(Base):
    __tablename__ = "matrikkel_entrances"

    entrance_id: Mapped[int] = mapped_column(SERIAL_ID, primary_key=True, autoincrement=True)
    building_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    road_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    road_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    house_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    letter: Mapped[str | None] = mapped_column(String(4), nullable=True)
    sequence_in_building: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, onupdate=_utc_now
    )

    __table_args__ = (Index("idx_matrikkel_entrances_building", "building_id"),)


class ImportRun(Base):
    __tablename__ = "matrikkel_import_runs"

    id: Mapped[int] = mapped_column(SERIAL_ID, primary_key=True, autoincrement=True)
    run_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    filter: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_cursor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )
    finished_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("idx_matrikkel_import_runs_entity_status", "entity_type", "status"),
    )
