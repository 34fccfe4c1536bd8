"""Owner resolution.

Parcel ownerships name an owner id without saying whether it is an
individual or an organization. The store service needs a concrete id type,
so each candidate is fetched on its own with the generic ``PersonId`` type,
classified by the shape of what comes back and written to the matching
table. Organizations found this way are then moved out of the provisional
individual column on parcels; individuals only settle rows still marked
unknown.

One failing id never stops the rest: it is counted, logged and left as
unknown.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from typing import Any

from loguru import logger
from sqlalchemy import and_
from sqlalchemy import select
from sqlalchemy import update

from matrikkel.client import normalize_municipality_number
from matrikkel.errors import TransportError
from matrikkel.mappers import map_individual
from matrikkel.mappers import map_organization
from matrikkel.models import Individual
from matrikkel.models import Organization
from matrikkel.models import OwnerKind
from matrikkel.models import Ownership
from matrikkel.models import Parcel
from matrikkel.store import DEFAULT_STORE_BATCH_SIZE
from matrikkel.store import iter_fetched_chunks
from matrikkel.values import bubble_id
from matrikkel.values import chunked
from matrikkel.values import dig
from matrikkel.writer import BufferedUpsertWriter

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.engine import Connection
    from sqlalchemy.engine import Engine

    from matrikkel.client import RemoteRegistry
    from matrikkel.progress import ProgressSink


DEFAULT_FLUSH_INTERVAL = 100
PROVISIONAL_ID_TYPE = "PersonId"
ORGANIZATION_ID_TYPE = "JuridiskPersonId"

ORGANIZATION_FIELDS = (
    "organisasjonsnummer",
    "organisasjonsnavn",
    "organisasjonsformkode",
    "organisasjonsform",
    "juridiskpersontype",
)
INDIVIDUAL_FIELDS = ("fornavn", "etternavn", "mellomnavn", "fodselsnummer", "kjoenn")
WRAPPER_KEYS = ("return", "value", "item", "entry", "person", "juridiskPerson", "fysiskPerson", "content")


@dataclass(frozen=True, slots=True)
class IndividualOwner:
    owner_id: int
    row: dict[str, Any]


@dataclass(frozen=True, slots=True)
class OrganizationOwner:
    owner_id: int
    row: dict[str, Any]


@dataclass(frozen=True, slots=True)
class UnresolvedOwner:
    owner_id: int
    reason: str


OwnerClassification = IndividualOwner | OrganizationOwner | UnresolvedOwner


@dataclass(slots=True)
class OwnerResolution:
    candidates: int = 0
    individuals_imported: int = 0
    organizations_imported: int = 0
    failed: int = 0
    parcels_reclassified: int = 0
    failed_ids: list[int] = field(default_factory=list)

    def as_stats(self) -> dict[str, Any]:
        return {
            "candidates": self.candidates,
            "individuals_imported": self.individuals_imported,
            "organizations_imported": self.organizations_imported,
            "failed": self.failed,
            "parcels_reclassified": self.parcels_reclassified,
        }


def unwrap_owner_payload(payload: Any) -> Any:
    """Strip response wrappers until the object carrying fields is reached."""
    current = payload
    for _ in range(len(WRAPPER_KEYS) + 1):
        if isinstance(current, list):
            current = current[0] if current else None
            continue
        if not isinstance(current, dict) or "id" in current:
            return current
        wrapper = next((key for key in WRAPPER_KEYS if key in current), None)
        if wrapper is None:
            return current
        current = current[wrapper]
    return current


def _has_any(obj: dict[str, Any], names: Iterable[str]) -> bool:
    """Field names are matched case-insensitively."""
    present = {key.lower() for key, value in obj.items() if value not in (None, "", {})}
    return any(name in present for name in names)


def classify_owner(owner_id: int, payload: Any) -> OwnerClassification:
    obj = unwrap_owner_payload(payload)
    if not isinstance(obj, dict):
        return UnresolvedOwner(owner_id, "empty response")

    fetched_id = bubble_id(dig(obj, "id"))
    if fetched_id is not None and fetched_id != owner_id:
        return UnresolvedOwner(owner_id, f"response is for id {fetched_id}")
    if fetched_id is None:
        obj = {**obj, "id": {"value": owner_id}}

    if _has_any(obj, ORGANIZATION_FIELDS):
        return OrganizationOwner(owner_id, map_organization(obj))
    if _has_any(obj, INDIVIDUAL_FIELDS):
        return IndividualOwner(owner_id, map_individual(obj))

    type_tag = str(obj.get("_type") or "")
    if "JuridiskPerson" in type_tag:
        return OrganizationOwner(owner_id, map_organization(obj))
    if "FysiskPerson" in type_tag:
        return IndividualOwner(owner_id, map_individual(obj))
    return UnresolvedOwner(owner_id, f"no distinguishing fields (type tag {type_tag or 'missing'})")


def reclassify_as_organizations(conn: Connection, owner_ids: list[int]) -> int:
    """Move provisional individual references to the organization column."""
    moved = conn.execute(
        update(Parcel)
        .where(Parcel.owner_individual_id.in_(owner_ids))
        .values(
            owner_kind=OwnerKind.ORGANIZATION.value,
            owner_organization_id=Parcel.owner_individual_id,
            owner_individual_id=None,
        )
    ).rowcount
    conn.execute(
        update(Parcel)
        .where(Parcel.owner_organization_id.in_(owner_ids))
        .where(Parcel.owner_kind != OwnerKind.ORGANIZATION.value)
        .values(owner_kind=OwnerKind.ORGANIZATION.value)
    )
    conn.execute(
        update(Ownership)
        .where(Ownership.owner_id.in_(owner_ids))
        .values(owner_kind=OwnerKind.ORGANIZATION.value)
    )
    return moved or 0


def confirm_individuals(conn: Connection, owner_ids: list[int]) -> int:
    settled = conn.execute(
        update(Parcel)
        .where(Parcel.owner_individual_id.in_(owner_ids))
        .where(Parcel.owner_kind == OwnerKind.UNKNOWN.value)
        .values(owner_kind=OwnerKind.INDIVIDUAL.value)
    ).rowcount
    conn.execute(
        update(Ownership)
        .where(Ownership.owner_id.in_(owner_ids))
        .where(Ownership.owner_kind == OwnerKind.UNKNOWN.value)
        .values(owner_kind=OwnerKind.INDIVIDUAL.value)
    )
    return settled or 0


class OwnerResolver:
    def __init__(
        self,
        engine: Engine,
        registry: RemoteRegistry,
        *,
        flush_interval: int = DEFAULT_FLUSH_INTERVAL,
        progress: ProgressSink | None = None,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.flush_interval = max(1, flush_interval)
        self.progress = progress
        self._writer = BufferedUpsertWriter(engine, threshold=flush_interval)
        self._pending_organizations: list[int] = []
        self._pending_individuals: list[int] = []

    def resolve_owners(self, candidate_ids: Iterable[int]) -> OwnerResolution:
        ordered = sorted({int(owner_id) for owner_id in candidate_ids})
        resolution = OwnerResolution(candidates=len(ordered))
        for position, owner_id in enumerate(ordered, start=1):
            try:
                payload = self.registry.fetch_one(PROVISIONAL_ID_TYPE, owner_id)
            except TransportError as exc:
                logger.warning(f"Owner {owner_id} could not be fetched: {exc}")
                self._record_failure(resolution, owner_id)
                continue

            outcome = classify_owner(owner_id, payload)
            self._accept(outcome, resolution)
            if position % self.flush_interval == 0:
                self._flush(resolution)
                if self.progress is not None:
                    self.progress.page("owner", position, owner_id)

        self._flush(resolution)
        if self.progress is not None:
            self.progress.completed(
                "owner",
                resolution.individuals_imported + resolution.organizations_imported,
                resolution.failed,
            )
        return resolution

    def import_known_organizations(
        self, organization_ids: Iterable[int], batch_size: int = DEFAULT_STORE_BATCH_SIZE
    ) -> OwnerResolution:
        """Batch-fetch owners whose ownership already says organization."""
        ordered = sorted({int(owner_id) for owner_id in organization_ids})
        resolution = OwnerResolution(candidates=len(ordered))
        try:
            for requested, objects in iter_fetched_chunks(
                self.registry, ORGANIZATION_ID_TYPE, ordered, batch_size=batch_size, ignore_missing=True
            ):
                returned = set()
                for obj in objects:
                    owner_id = bubble_id(dig(obj, "id"))
                    if owner_id is None:
                        continue
                    returned.add(owner_id)
                    self._accept(classify_owner(owner_id, obj), resolution)
                for missing in sorted(set(requested) - returned):
                    logger.warning(f"Organization {missing} missing from registry response")
                    self._record_failure(resolution, missing)
                self._flush(resolution)
        except TransportError as exc:
            logger.error(f"Organization batch import stopped: {exc}")
            done = resolution.organizations_imported + resolution.individuals_imported + resolution.failed
            for owner_id in ordered[done:]:
                self._record_failure(resolution, owner_id)
        self._flush(resolution)
        return resolution

    def _accept(self, outcome: OwnerClassification, resolution: OwnerResolution) -> None:
        if isinstance(outcome, OrganizationOwner):
            self._writer.insert_row(Organization, outcome.row)
            self._pending_organizations.append(outcome.owner_id)
            resolution.organizations_imported += 1
        elif isinstance(outcome, IndividualOwner):
            self._writer.insert_row(Individual, outcome.row)
            self._pending_individuals.append(outcome.owner_id)
            resolution.individuals_imported += 1
        else:
            logger.warning(f"Owner {outcome.owner_id} left unresolved: {outcome.reason}")
            self._record_failure(resolution, outcome.owner_id)

    def _record_failure(self, resolution: OwnerResolution, owner_id: int) -> None:
        resolution.failed += 1
        resolution.failed_ids.append(owner_id)

    def _flush(self, resolution: OwnerResolution) -> None:
        self._writer.flush()
        organizations, self._pending_organizations = self._pending_organizations, []
        individuals, self._pending_individuals = self._pending_individuals, []
        if not organizations and not individuals:
            return
        with self.engine.begin() as conn:
            for chunk in chunked(organizations, 500):
                resolution.parcels_reclassified += reclassify_as_organizations(conn, chunk)
            for chunk in chunked(individuals, 500):
                confirm_individuals(conn, chunk)


def unresolved_owner_ids(
    engine: Engine, municipality_number: str | int | None = None
) -> tuple[list[int], list[int]]:
    """Owner ids not yet stored as individual or organization.

    Returns ``(candidates, hinted_organizations)``: the first must be fetched
    one by one, the second can be fetched in batches by organization id.
    """
    stmt = (
        select(Ownership.owner_id, Ownership.owner_kind)
        .outerjoin(Individual, Individual.individual_id == Ownership.owner_id)
        .outerjoin(Organization, Organization.organization_id == Ownership.owner_id)
        .where(and_(Individual.individual_id.is_(None), Organization.organization_id.is_(None)))
        .distinct()
    )
    if municipality_number is not None:
        number = normalize_municipality_number(municipality_number)
        stmt = stmt.join(Parcel, Parcel.parcel_id == Ownership.parcel_id).where(
            Parcel.municipality_number == number
        )

    candidates: set[int] = set()
    hinted: set[int] = set()
    with engine.connect() as conn:
        for owner_id, owner_kind in conn.execute(stmt):
            if owner_kind == OwnerKind.ORGANIZATION.value:
                hinted.add(owner_id)
            else:
                candidates.add(owner_id)
    return sorted(candidates - hinted), sorted(hinted)
