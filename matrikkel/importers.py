"""Per-entity import routines.

Bulk entity types (municipalities, roads, parcels) page straight through the
registry listing. Parcel-scoped types (buildings, units, addresses) resolve
related ids for a set of stored parcels, fetch the objects in chunks and
write them together with their parcel link rows.

Every import is its own failure boundary: a transport fault stops that entity
type, keeps what was already flushed and reports a non-zero exit code.
Running the same import again converges to the same rows.

Examples:
  importer = EntityImporter(engine, MatrikkelClient())
  importer.import_parcels("4601")
  importer.import_buildings(importer.stored_parcel_ids("4601"))
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import TYPE_CHECKING
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from matrikkel.client import municipality_filter
from matrikkel.client import normalize_municipality_number
from matrikkel.errors import DataShapeError
from matrikkel.errors import FetchError
from matrikkel.errors import TransportError
from matrikkel.ledger import ImportRunLedger
from matrikkel.mappers import county_name
from matrikkel.mappers import map_address
from matrikkel.mappers import map_building
from matrikkel.mappers import map_municipality
from matrikkel.mappers import map_ownerships
from matrikkel.mappers import map_parcel
from matrikkel.mappers import map_road
from matrikkel.mappers import map_road_address
from matrikkel.mappers import map_unit
from matrikkel.mappers import owner_reference_columns
from matrikkel.mappers import primary_owner
from matrikkel.models import Address
from matrikkel.models import Building
from matrikkel.models import BuildingParcel
from matrikkel.models import Individual
from matrikkel.models import Municipality
from matrikkel.models import Organization
from matrikkel.models import OwnerKind
from matrikkel.models import Ownership
from matrikkel.models import Parcel
from matrikkel.models import ParcelAddress
from matrikkel.models import Road
from matrikkel.models import RoadAddress
from matrikkel.models import Unit
from matrikkel.owners import OwnerResolver
from matrikkel.owners import unresolved_owner_ids
from matrikkel.pagination import DEFAULT_PAGE_SIZE
from matrikkel.pagination import CursorToken
from matrikkel.pagination import iter_pages
from matrikkel.pagination import object_id
from matrikkel.progress import LoguruProgressSink
from matrikkel.resolver import DEFAULT_OWNER_CHUNK_SIZE
from matrikkel.resolver import Resolution
from matrikkel.resolver import TwoStepResolver
from matrikkel.retry import DEFAULT_MAX_ATTEMPTS
from matrikkel.retry import DEFAULT_RETRY_WAIT_SECONDS
from matrikkel.retry import RetryingRegistry
from matrikkel.store import DEFAULT_STORE_BATCH_SIZE
from matrikkel.store import iter_fetched_chunks
from matrikkel.values import chunked
from matrikkel.writer import DEFAULT_FLUSH_THRESHOLD
from matrikkel.writer import BufferedUpsertWriter

if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterable

    from sqlalchemy.engine import Engine

    from matrikkel.client import RemoteRegistry
    from matrikkel.progress import ProgressSink

    WritePage = Callable[[BufferedUpsertWriter, list[dict[str, Any]], ImportResult], None]
    WriteRelated = Callable[
        [BufferedUpsertWriter, list[dict[str, Any]], Resolution, ImportResult], None
    ]


COUNTY_ID_TYPE = "FylkeId"
BUILDING_OWNER_CHUNK_SIZE = 200
BUILDING_STORE_BATCH_SIZE = 500
LOOKUP_CHUNK_SIZE = 1000


class ImportState(Enum):
    NOT_STARTED = "not_started"
    PAGING = "paging"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {ImportState.COMPLETED, ImportState.FAILED}


@dataclass(slots=True)
class ImportFault:
    entity_type: str
    message: str
    exception: Exception | None = None


@dataclass(slots=True)
class ImportResult:
    entity_type: str
    state: ImportState = ImportState.NOT_STARTED
    duration_ms: float = 0.0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    links: int = 0
    last_cursor: int | None = None
    history: list[ImportState] = field(default_factory=list)
    errors: list[ImportFault] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is ImportState.COMPLETED

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def transition(self, state: ImportState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"{self.entity_type} import already {self.state.value}")
        self.state = state
        self.history.append(state)

    def as_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "entity_type": self.entity_type,
            "state": self.state.value,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "retried": self.retried,
            "links": self.links,
            "last_cursor": self.last_cursor,
            "duration_ms": round(self.duration_ms, 1),
        }
        if self.errors:
            stats["error"] = self.errors[-1].message
        return stats


def _as_cursor(entity_type: str, cursor: CursorToken | int | None) -> CursorToken | None:
    if cursor is None or isinstance(cursor, CursorToken):
        return cursor
    return CursorToken(entity_type, int(cursor))


class EntityImporter:
    def __init__(
        self,
        engine: Engine,
        registry: RemoteRegistry,
        *,
        progress: ProgressSink | None = None,
        run_id: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        store_batch_size: int = DEFAULT_STORE_BATCH_SIZE,
        owner_chunk_size: int = DEFAULT_OWNER_CHUNK_SIZE,
        flush_threshold: int = DEFAULT_FLUSH_THRESHOLD,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_wait_seconds: float = DEFAULT_RETRY_WAIT_SECONDS,
    ) -> None:
        self.engine = engine
        self.progress = progress or LoguruProgressSink(run_id)
        self.ledger = ImportRunLedger(engine, run_id)
        self.page_size = page_size
        self.store_batch_size = store_batch_size
        self.owner_chunk_size = owner_chunk_size
        self.flush_threshold = flush_threshold
        self._current: ImportResult | None = None
        self._county_names: dict[int, str | None] = {}
        self.registry = RetryingRegistry(
            registry,
            max_attempts=max_attempts,
            wait_seconds=retry_wait_seconds,
            on_retry=self._count_retry,
        )

    def _count_retry(self) -> None:
        if self._current is not None:
            self._current.retried += 1

    def new_writer(self) -> BufferedUpsertWriter:
        return BufferedUpsertWriter(self.engine, threshold=self.flush_threshold)

    # ------------------------------------------------------------------
    # bulk imports

    def import_municipalities(
        self, *, cursor: CursorToken | int | None = None, resume: bool = False
    ) -> ImportResult:
        self._county_names = {}
        return self._run_bulk("municipality", "Kommune", None, self._write_municipalities, cursor, resume)

    def import_roads(
        self,
        municipality_number: str | int,
        *,
        cursor: CursorToken | int | None = None,
        resume: bool = False,
    ) -> ImportResult:
        return self._run_bulk(
            "road", "Veg", municipality_filter(municipality_number), self._write_roads, cursor, resume
        )

    def import_parcels(
        self,
        municipality_number: str | int,
        *,
        cursor: CursorToken | int | None = None,
        resume: bool = False,
    ) -> ImportResult:
        return self._run_bulk(
            "parcel",
            "Matrikkelenhet",
            municipality_filter(municipality_number),
            self._write_parcels,
            cursor,
            resume,
        )

    def _run_bulk(
        self,
        entity_type: str,
        domain_class: str,
        filter: str | None,
        write_page: WritePage,
        cursor: CursorToken | int | None,
        resume: bool,
    ) -> ImportResult:
        result = ImportResult(entity_type)
        start = _as_cursor(domain_class, cursor)
        run_row: int | None = None
        writer = self.new_writer()
        started = time.perf_counter()
        self._current = result
        try:
            if start is None and resume:
                resumed = self.ledger.resume_cursor(entity_type, filter)
                if resumed is not None:
                    logger.info(f"Resuming {entity_type} import after id {resumed}")
                    start = CursorToken(domain_class, resumed)
            if start is not None:
                result.last_cursor = start.value
            run_row = self.ledger.start(entity_type, filter)
            result.transition(ImportState.PAGING)
            for page in iter_pages(
                self.registry, domain_class, filter, page_size=self.page_size, cursor=start
            ):
                result.transition(ImportState.WRITING)
                write_page(writer, [obj for _id, obj in page.objects], result)
                writer.flush()
                result.processed += len(page)
                result.last_cursor = page.next_cursor.value
                self.ledger.checkpoint(run_row, result.processed, result.failed, result.last_cursor)
                self.progress.page(entity_type, result.processed, result.last_cursor)
                result.transition(ImportState.PAGING)
            writer.flush()
            result.transition(ImportState.COMPLETED)
        except (TransportError, SQLAlchemyError) as exc:
            self._fail(result, run_row, exc)
        except DataShapeError as exc:
            self._fail(result, run_row, exc)
            raise
        finally:
            self._current = None
            result.duration_ms = (time.perf_counter() - started) * 1000

        if result.ok:
            self._complete(result, run_row)
        return result

    # ------------------------------------------------------------------
    # parcel-scoped imports

    def import_buildings(self, parcel_ids: Iterable[int]) -> ImportResult:
        return self._run_related(
            "building",
            "buildings",
            "BygningId",
            parcel_ids,
            self._write_buildings,
            owner_chunk_size=min(self.owner_chunk_size, BUILDING_OWNER_CHUNK_SIZE),
            store_batch_size=min(self.store_batch_size, BUILDING_STORE_BATCH_SIZE),
        )

    def import_units(self, parcel_ids: Iterable[int]) -> ImportResult:
        return self._run_related("unit", "units", "BruksenhetId", parcel_ids, self._write_units)

    def import_addresses(self, parcel_ids: Iterable[int]) -> ImportResult:
        return self._run_related("address", "addresses", "AdresseId", parcel_ids, self._write_addresses)

    def _run_related(
        self,
        entity_type: str,
        relation: str,
        id_type: str,
        parcel_ids: Iterable[int],
        write_objects: WriteRelated,
        *,
        owner_chunk_size: int | None = None,
        store_batch_size: int | None = None,
    ) -> ImportResult:
        result = ImportResult(entity_type)
        scope = sorted({int(parcel_id) for parcel_id in parcel_ids})
        run_row: int | None = None
        writer = self.new_writer()
        started = time.perf_counter()
        self._current = result
        resolver = TwoStepResolver(
            self.registry,
            relation,
            chunk_size=owner_chunk_size or self.owner_chunk_size,
            on_chunk=lambda done, last_id: self.progress.page(f"{entity_type}_ids", done, last_id),
        )
        try:
            run_row = self.ledger.start(entity_type, f"parcels:{len(scope)}")
            result.transition(ImportState.RESOLVING)
            resolution = resolver.resolve(scope)
            if resolution.is_empty:
                result.transition(ImportState.COMPLETED)
            else:
                result.transition(ImportState.FETCHING)
                for requested, objects in iter_fetched_chunks(
                    self.registry,
                    id_type,
                    resolution.related_ids,
                    batch_size=store_batch_size or self.store_batch_size,
                ):
                    result.transition(ImportState.WRITING)
                    write_objects(writer, objects, resolution, result)
                    writer.flush()
                    result.processed += len(objects)
                    result.skipped += max(0, len(requested) - len(objects))
                    result.last_cursor = requested[-1]
                    self.ledger.checkpoint(run_row, result.processed, result.failed, result.last_cursor)
                    self.progress.page(entity_type, result.processed, result.last_cursor)
                    result.transition(ImportState.FETCHING)
                writer.flush()
                result.transition(ImportState.COMPLETED)
        except (TransportError, SQLAlchemyError) as exc:
            self._fail(result, run_row, exc)
        except DataShapeError as exc:
            self._fail(result, run_row, exc)
            raise
        finally:
            self._current = None
            result.duration_ms = (time.perf_counter() - started) * 1000

        if result.ok:
            self._complete(result, run_row)
        return result

    # ------------------------------------------------------------------
    # owners

    def import_owners(self, municipality_number: str | int | None = None) -> ImportResult:
        """Resolve and store owners referenced by stored ownerships.

        Individual owner failures are counted on the result and do not fail
        the import.
        """
        result = ImportResult("owner")
        scope = None if municipality_number is None else normalize_municipality_number(municipality_number)
        run_row: int | None = None
        started = time.perf_counter()
        self._current = result
        resolver = OwnerResolver(
            self.engine, self.registry, flush_interval=self.flush_threshold, progress=self.progress
        )
        try:
            run_row = self.ledger.start("owner", scope)
            result.transition(ImportState.RESOLVING)
            candidates, hinted = unresolved_owner_ids(self.engine, scope)
            logger.info(f"{len(candidates)} owners to classify, {len(hinted)} known organizations")
            result.transition(ImportState.FETCHING)
            for resolution in (
                resolver.import_known_organizations(hinted, self.store_batch_size),
                resolver.resolve_owners(candidates),
            ):
                result.processed += resolution.individuals_imported + resolution.organizations_imported
                result.failed += resolution.failed
                result.links += resolution.parcels_reclassified
            result.transition(ImportState.COMPLETED)
        except SQLAlchemyError as exc:
            self._fail(result, run_row, exc)
        finally:
            self._current = None
            result.duration_ms = (time.perf_counter() - started) * 1000

        if result.ok:
            self._complete(result, run_row)
        return result

    # ------------------------------------------------------------------
    # completion

    def _complete(self, result: ImportResult, run_row: int | None) -> None:
        self.ledger.finish(
            run_row,
            status="completed",
            processed=result.processed,
            failed=result.failed,
            last_cursor=result.last_cursor,
        )
        self.progress.completed(result.entity_type, result.processed, result.failed)

    def _fail(self, result: ImportResult, run_row: int | None, exc: Exception) -> None:
        message = str(exc)
        result.failed += 1
        result.errors.append(ImportFault(result.entity_type, message, exc))
        if result.state not in TERMINAL_STATES:
            result.transition(ImportState.FAILED)
        if run_row is None:
            logger.error(f"{result.entity_type} import failed before its run was recorded")
            self.progress.failed(result.entity_type, message, result.processed)
            return
        try:
            self.ledger.finish(
                run_row,
                status="failed",
                processed=result.processed,
                failed=result.failed,
                last_cursor=result.last_cursor,
                error_message=message[:2000],
            )
        except SQLAlchemyError as ledger_exc:
            logger.error(f"Could not record failed {result.entity_type} run: {ledger_exc}")
        self.progress.failed(result.entity_type, message, result.processed)

    # ------------------------------------------------------------------
    # page writers

    def _write_municipalities(
        self, writer: BufferedUpsertWriter, objects: list[dict[str, Any]], result: ImportResult
    ) -> None:
        rows = [map_municipality(obj) for obj in objects]
        names = self._lookup_county_names({row["county_id"] for row in rows if row["county_id"] is not None})
        for row in rows:
            name = names.get(row["county_id"])
            if name is not None:
                row["county_name"] = name
            writer.insert_row(Municipality, row)

    def _lookup_county_names(self, county_ids: set[int]) -> dict[int, str | None]:
        """County names by id, fetched once per municipality import."""
        missing = sorted(county_ids - self._county_names.keys())
        if not missing:
            return self._county_names
        try:
            for requested, objects in iter_fetched_chunks(
                self.registry, COUNTY_ID_TYPE, missing, batch_size=self.store_batch_size, ignore_missing=True
            ):
                for obj in objects:
                    self._county_names[object_id(obj)] = county_name(obj)
                for county_id in requested:
                    if county_id not in self._county_names:
                        logger.warning(f"County {county_id} missing from registry response")
                        self._county_names[county_id] = None
        except FetchError as exc:
            logger.warning(f"County names not updated: {exc}")
        return self._county_names

    def _write_roads(
        self, writer: BufferedUpsertWriter, objects: list[dict[str, Any]], result: ImportResult
    ) -> None:
        for obj in objects:
            writer.insert_row(Road, map_road(obj))

    def _write_parcels(
        self, writer: BufferedUpsertWriter, objects: list[dict[str, Any]], result: ImportResult
    ) -> None:
        ownerships = [row for obj in objects for row in map_ownerships(obj)]
        known = self.known_owner_kinds({row["owner_id"] for row in ownerships})
        for obj in objects:
            row = map_parcel(obj)
            owner = primary_owner(obj)
            if owner is not None and owner[0] in known:
                row.update(owner_reference_columns((owner[0], known[owner[0]])))
            writer.insert_row(Parcel, row)
        for row in ownerships:
            if row["owner_id"] in known:
                row["owner_kind"] = known[row["owner_id"]].value
            writer.insert_row(Ownership, row)
            result.links += 1

    def _write_buildings(
        self,
        writer: BufferedUpsertWriter,
        objects: list[dict[str, Any]],
        resolution: Resolution,
        result: ImportResult,
    ) -> None:
        for obj in objects:
            row = map_building(obj)
            writer.insert_row(Building, row)
            for parcel_id in resolution.owners_of(row["building_id"]):
                writer.insert_row(BuildingParcel, {"building_id": row["building_id"], "parcel_id": parcel_id})
                result.links += 1

    def _write_units(
        self,
        writer: BufferedUpsertWriter,
        objects: list[dict[str, Any]],
        resolution: Resolution,
        result: ImportResult,
    ) -> None:
        for obj in objects:
            row = map_unit(obj)
            if row["parcel_id"] is None:
                owners = resolution.owners_of(row["unit_id"])
                row["parcel_id"] = owners[0] if owners else None
            writer.insert_row(Unit, row)

    def _write_addresses(
        self,
        writer: BufferedUpsertWriter,
        objects: list[dict[str, Any]],
        resolution: Resolution,
        result: ImportResult,
    ) -> None:
        for obj in objects:
            owners = resolution.owners_of(object_id(obj))
            row = map_address(obj, owners[0] if owners else None)
            writer.insert_row(Address, row)
            road_row = map_road_address(obj)
            if road_row is not None:
                writer.insert_row(RoadAddress, road_row)
            for parcel_id in owners:
                writer.insert_row(ParcelAddress, {"parcel_id": parcel_id, "address_id": row["address_id"]})
                result.links += 1

    # ------------------------------------------------------------------
    # store lookups

    def known_owner_kinds(self, owner_ids: Iterable[int]) -> dict[int, OwnerKind]:
        """Kinds already confirmed by earlier owner imports."""
        ids = sorted(set(owner_ids))
        known: dict[int, OwnerKind] = {}
        if not ids:
            return known
        with self.engine.connect() as conn:
            for chunk in chunked(ids, LOOKUP_CHUNK_SIZE):
                for (individual_id,) in conn.execute(
                    select(Individual.individual_id).where(Individual.individual_id.in_(chunk))
                ):
                    known[individual_id] = OwnerKind.INDIVIDUAL
                for (organization_id,) in conn.execute(
                    select(Organization.organization_id).where(Organization.organization_id.in_(chunk))
                ):
                    known[organization_id] = OwnerKind.ORGANIZATION
        return known

    def stored_parcel_ids(self, municipality_number: str | int) -> list[int]:
        number = normalize_municipality_number(municipality_number)
        stmt = (
            select(Parcel.parcel_id)
            .where(Parcel.municipality_number == number)
            .order_by(Parcel.parcel_id)
        )
        with self.engine.connect() as conn:
            return [parcel_id for (parcel_id,) in conn.execute(stmt)]
