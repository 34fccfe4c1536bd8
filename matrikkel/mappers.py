"""Map converted registry objects onto flat table rows.

Every mapper returns a dict of column -> scalar for one table. Missing or
unparseable values become ``None``; the registry id is the only hard
requirement.
"""

from __future__ import annotations

from typing import Any

from matrikkel.models import OwnerKind
from matrikkel.pagination import object_id
from matrikkel.values import as_list
from matrikkel.values import bubble_id
from matrikkel.values import bubble_value
from matrikkel.values import clean_text
from matrikkel.values import dig
from matrikkel.values import parse_bool
from matrikkel.values import parse_float
from matrikkel.values import parse_int
from matrikkel.values import parse_registry_date


ROAD_ADDRESS_KIND = "VEGADRESSE"
CADASTRAL_ADDRESS_KIND = "MATRIKKELADRESSE"


def _uuid_text(value: Any) -> str | None:
    if isinstance(value, dict):
        return clean_text(value.get("uuid") or value.get("value"))
    return clean_text(value)


def _code(value: Any) -> int | None:
    return parse_int(bubble_value(value))


def _municipality_number(value: Any) -> str | None:
    number = parse_int(bubble_value(value))
    if number is None:
        return None
    return str(number).zfill(4)


def _owner_kind_hint(*type_names: Any) -> OwnerKind:
    for type_name in type_names:
        text = str(type_name or "")
        if "JuridiskPerson" in text:
            return OwnerKind.ORGANIZATION
        if "FysiskPerson" in text:
            return OwnerKind.INDIVIDUAL
    return OwnerKind.UNKNOWN


def map_municipality(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "municipality_id": object_id(obj),
        "municipality_number": _municipality_number(obj.get("kommunenummer"))
        or _municipality_number(obj.get("id")),
        "name": clean_text(obj.get("kommunenavn")),
        "county_id": bubble_id(obj.get("fylkeId")),
    }


def county_name(obj: dict[str, Any]) -> str | None:
    return clean_text(obj.get("fylkesnavn"))


def map_parcel(obj: dict[str, Any]) -> dict[str, Any]:
    number = obj.get("matrikkelnummer") or {}
    municipality = _municipality_number(dig(number, "kommuneId"))
    parts = [
        parse_int(number.get("gardsnummer")) or 0,
        parse_int(number.get("bruksnummer")) or 0,
        parse_int(number.get("festenummer")) or 0,
        parse_int(number.get("seksjonsnummer")) or 0,
    ]
    owner = primary_owner(obj)
    return {
        "parcel_id": object_id(obj),
        "municipality_number": municipality,
        "gardsnummer": parts[0],
        "bruksnummer": parts[1],
        "festenummer": parts[2],
        "seksjonsnummer": parts[3],
        "cadastral_number": "/".join([municipality or "0000", *map(str, parts)]),
        "bruksnavn": clean_text(obj.get("bruksnavn")),
        "recorded_area": parse_float(obj.get("historiskOppgittAreal")),
        "tinglyst": parse_bool(obj.get("tinglyst")),
        "skyld": parse_float(obj.get("skyld")),
        "established_on": parse_registry_date(obj.get("etableringsdato")),
        "is_sectioned": parse_bool(obj.get("erSeksjonert")),
        "has_active_leaseholds": parse_bool(obj.get("harAktiveFestegrunner")),
        "has_noted_complaint": parse_bool(obj.get("harAnmerketKlage")),
        "has_ground_pollution": parse_bool(obj.get("harGrunnforurensing")),
        "has_cultural_heritage": parse_bool(obj.get("harKulturminne")),
        "is_expired": parse_bool(obj.get("utgatt")),
        "is_newly_registered": parse_bool(obj.get("nymatrikulert")),
        **owner_reference_columns(owner),
    }


def primary_owner(obj: dict[str, Any]) -> tuple[int, OwnerKind] | None:
    """First ownership with an owner id, with the kind the payload hints at."""
    for ownership in as_list(dig(obj, "eierforhold", "item")):
        owner_id = bubble_id(dig(ownership, "eierId"))
        if owner_id is None:
            continue
        return owner_id, _owner_kind_hint(
            dig(ownership, "_type"), dig(ownership, "eierId", "_type")
        )
    return None


def owner_reference_columns(owner: tuple[int, OwnerKind] | None) -> dict[str, Any]:
    """Unknown owners are stored provisionally in the individual column."""
    if owner is None:
        return {
            "owner_kind": OwnerKind.UNKNOWN.value,
            "owner_individual_id": None,
            "owner_organization_id": None,
        }
    owner_id, kind = owner
    if kind is OwnerKind.ORGANIZATION:
        return {
            "owner_kind": kind.value,
            "owner_individual_id": None,
            "owner_organization_id": owner_id,
        }
    return {
        "owner_kind": kind.value,
        "owner_individual_id": owner_id,
        "owner_organization_id": None,
    }


def map_ownerships(obj: dict[str, Any]) -> list[dict[str, Any]]:
    parcel_id = object_id(obj)
    rows = []
    for ownership in as_list(dig(obj, "eierforhold", "item")):
        owner_id = bubble_id(dig(ownership, "eierId"))
        if owner_id is None:
            continue
        kind = _owner_kind_hint(dig(ownership, "_type"), dig(ownership, "eierId", "_type"))
        rows.append(
            {
                "parcel_id": parcel_id,
                "owner_id": owner_id,
                "ownership_id": bubble_id(ownership.get("id")),
                "owner_kind": kind.value,
                "share_numerator": parse_int(dig(ownership, "andel", "teller")),
                "share_denominator": parse_int(dig(ownership, "andel", "nevner")),
                "share_number": parse_int(ownership.get("andelsnummer")),
            }
        )
    return rows


def map_building(obj: dict[str, Any]) -> dict[str, Any]:
    point = obj.get("representasjonspunkt")
    if not isinstance(point, dict):
        point = {}
    return {
        "building_id": object_id(obj),
        "building_number": parse_int(obj.get("bygningsnummer")),
        "sequence_number": parse_int(obj.get("lopenummer")),
        "uuid": _uuid_text(obj.get("uuid")),
        "built_area": parse_float(obj.get("bebygdAreal")),
        "usable_area_total": parse_float(obj.get("bruksarealTotalt")),
        "construction_year": parse_int(obj.get("byggeaar")),
        "floor_count": parse_int(obj.get("etasjerAntall")),
        "has_lift": parse_bool(obj.get("harHeis")),
        "east": parse_float(point.get("ost")),
        "north": parse_float(point.get("nord")),
        "height": parse_float(point.get("hoyde")),
        "crs_code": _code(point.get("koordinatsystemKodeId")) or parse_int(point.get("koordsys")),
        "building_type_code": _code(obj.get("bygningstypeKodeId")),
        "status_code": _code(obj.get("bygningsstatusKodeId")),
    }


def map_unit(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "unit_id": object_id(obj),
        "parcel_id": bubble_id(obj.get("matrikkelenhetId")),
        "building_id": bubble_id(obj.get("byggId")),
        "sequence_number": parse_int(obj.get("lopenummer")),
        "uuid": _uuid_text(obj.get("uuid")),
        "unit_type_code": _code(obj.get("bruksenhetstypeKodeId")),
        "floor_plan_code": _code(obj.get("etasjeplanKodeId")),
        "floor_number": parse_int(obj.get("etasjenummer")),
        "address_id": bubble_id(obj.get("adresseId")),
        "room_count": parse_int(obj.get("antallRom")),
        "bath_count": parse_int(obj.get("antallBad")),
        "wc_count": parse_int(obj.get("antallWC")),
        "usable_area": parse_float(obj.get("bruksareal")),
        "kitchen_code": _code(obj.get("kjokkentilgangId")),
    }


def map_road(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "road_id": object_id(obj),
        "municipality_number": _municipality_number(obj.get("kommuneId")),
        "road_code": parse_int(obj.get("adressekode")),
        "name": clean_text(obj.get("adressenavn")),
        "short_name": clean_text(obj.get("kortAdressenavn")),
        "place_number": clean_text(obj.get("stedsnummer")),
        "uuid": _uuid_text(obj.get("uuid")),
    }


def is_road_address(obj: dict[str, Any]) -> bool:
    return obj.get("vegId") is not None or obj.get("nummer") is not None


def map_address(obj: dict[str, Any], parcel_id: int | None) -> dict[str, Any]:
    return {
        "address_id": object_id(obj),
        "address_kind": ROAD_ADDRESS_KIND if is_road_address(obj) else CADASTRAL_ADDRESS_KIND,
        "parcel_id": parcel_id,
        "uuid": _uuid_text(obj.get("uuid")),
    }


def map_road_address(obj: dict[str, Any]) -> dict[str, Any] | None:
    if not is_road_address(obj):
        return None
    return {
        "address_id": object_id(obj),
        "road_id": bubble_id(obj.get("vegId")),
        "house_number": parse_int(obj.get("nummer")),
        "letter": clean_text(obj.get("bokstav")),
    }


def valid_national_id(value: Any) -> str | None:
    text = clean_text(value)
    if text is None or len(text) != 11 or "X" in text.upper():
        return None
    return text


def valid_registration_number(value: Any) -> str | None:
    text = clean_text(value)
    if text is None or len(text) != 9 or not text.isdigit():
        return None
    return text


def map_individual(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "individual_id": object_id(obj),
        "given_name": clean_text(obj.get("fornavn")),
        "middle_name": clean_text(obj.get("mellomnavn")),
        "family_name": clean_text(obj.get("etternavn")),
        "national_id": valid_national_id(obj.get("fodselsnummer") or obj.get("nummer")),
        "address_id": bubble_id(obj.get("adresseId")),
    }


def map_organization(obj: dict[str, Any]) -> dict[str, Any]:
    form = obj.get("organisasjonsformKode")
    if isinstance(form, dict):
        form = form.get("verdi") or form.get("orgformKode") or form.get("value")
    return {
        "organization_id": object_id(obj),
        "name": clean_text(obj.get("organisasjonsnavn") or obj.get("navn")),
        "registration_number": valid_registration_number(
            obj.get("organisasjonsnummer") or obj.get("nummer")
        ),
        "organization_form": clean_text(form),
    }
