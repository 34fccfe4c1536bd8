"""Phased import runs.

Phase 1 loads what the rest depends on: municipalities, every parcel of one
municipality and the owners those parcels reference. Phase 2 narrows to a
parcel scope (all stored parcels of the municipality, or only those owned by
one person or organization) and pulls roads, units, buildings and addresses
for it.

Steps run in order and the phase stops at the first failed step unless
``fail_fast`` is off. Every step leaves its flushed rows behind, so a phase
can simply be run again.
"""

from __future__ import annotations

import datetime as dt
import time
from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from matrikkel.client import normalize_municipality_number
from matrikkel.errors import TransportError
from matrikkel.importers import ImportResult
from matrikkel.models import Parcel
from matrikkel.values import chunked

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.engine import Engine

    from matrikkel.importers import EntityImporter


SCOPE_LOOKUP_CHUNK_SIZE = 1000


@dataclass(slots=True)
class PhaseReport:
    phase: str
    municipality_number: str
    steps: list[dict[str, Any]] = field(default_factory=list)
    failed_steps: int = 0
    started_at: str = field(default_factory=lambda: dt.datetime.now(dt.UTC).isoformat())
    elapsed_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_steps else 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "municipality_number": self.municipality_number,
            "started_at": self.started_at,
            "elapsed_seconds": self.elapsed_seconds,
            "failed_steps": self.failed_steps,
            "steps": self.steps,
        }


def parcels_in_municipality(
    engine: Engine, municipality_number: str, parcel_ids: list[int] | None = None
) -> list[int]:
    """Stored parcel ids of a municipality, optionally limited to ``parcel_ids``."""
    stmt = select(Parcel.parcel_id).where(Parcel.municipality_number == municipality_number)
    if parcel_ids is None:
        with engine.connect() as conn:
            return list(conn.execute(stmt.order_by(Parcel.parcel_id)).scalars())

    found: set[int] = set()
    with engine.connect() as conn:
        for chunk in chunked(sorted(set(parcel_ids)), SCOPE_LOOKUP_CHUNK_SIZE):
            found.update(conn.execute(stmt.where(Parcel.parcel_id.in_(chunk))).scalars())
    return sorted(found)


def select_parcel_scope(
    importer: EntityImporter,
    municipality_number: str | int,
    *,
    organization_number: str | None = None,
    national_id: str | None = None,
) -> list[int]:
    """Parcels phase 2 should cover.

    With an owner ident, the registry lists the parcels that owner holds and
    the list is narrowed to parcels already stored for the municipality.
    Without one, every stored parcel of the municipality is in scope.
    """
    number = normalize_municipality_number(municipality_number)
    ident = organization_number or national_id
    if not ident:
        logger.info(f"No owner filter, using all stored parcels in {number}")
        return parcels_in_municipality(importer.engine, number)

    person_id = importer.registry.find_person_id(ident)
    if person_id is None:
        logger.warning("Owner ident is not registered")
        return []
    owned = importer.registry.find_owned_parcels(person_id)
    logger.info(f"Owner {person_id} holds {len(owned)} parcels in total")
    return parcels_in_municipality(importer.engine, number, owned)


class PhaseRunner:
    def __init__(self, importer: EntityImporter, *, fail_fast: bool = True) -> None:
        self.importer = importer
        self.fail_fast = fail_fast

    def run_phase1(self, municipality_number: str | int) -> PhaseReport:
        number = normalize_municipality_number(municipality_number)
        report = PhaseReport("phase1", number)
        steps: list[tuple[str, Callable[[], ImportResult]]] = [
            ("municipalities", self.importer.import_municipalities),
            ("parcels", lambda: self.importer.import_parcels(number)),
            ("owners", lambda: self.importer.import_owners(number)),
        ]
        return self._run(report, steps)

    def run_phase2(
        self,
        municipality_number: str | int,
        *,
        organization_number: str | None = None,
        national_id: str | None = None,
        limit: int | None = None,
    ) -> PhaseReport:
        number = normalize_municipality_number(municipality_number)
        report = PhaseReport("phase2", number)
        started = time.monotonic()
        try:
            scope = select_parcel_scope(
                self.importer,
                number,
                organization_number=organization_number,
                national_id=national_id,
            )
        except (TransportError, SQLAlchemyError) as exc:
            logger.error(f"Parcel scope lookup failed: {exc}")
            report.steps.append({"name": "parcel_scope", "status": "failed", "reason": str(exc)})
            report.failed_steps += 1
            report.elapsed_seconds = round(time.monotonic() - started, 2)
            return report

        if limit is not None and len(scope) > limit:
            logger.info(f"Limiting parcel scope from {len(scope)} to {limit}")
            scope = scope[:limit]
        if not scope:
            report.steps.append({"name": "parcel_scope", "status": "failed", "reason": "no parcels in scope"})
            report.failed_steps += 1
            report.elapsed_seconds = round(time.monotonic() - started, 2)
            return report
        report.steps.append({"name": "parcel_scope", "status": "ok", "parcels": len(scope)})

        # Roads first: road addresses refer to them.
        steps: list[tuple[str, Callable[[], ImportResult]]] = [
            ("roads", lambda: self.importer.import_roads(number)),
            ("units", lambda: self.importer.import_units(scope)),
            ("buildings", lambda: self.importer.import_buildings(scope)),
            ("addresses", lambda: self.importer.import_addresses(scope)),
        ]
        return self._run(report, steps, started)

    def _run(
        self,
        report: PhaseReport,
        steps: list[tuple[str, Callable[[], ImportResult]]],
        started: float | None = None,
    ) -> PhaseReport:
        started = time.monotonic() if started is None else started
        for name, fn in steps:
            logger.info(f"Step start: {name}")
            result = fn()
            status = "ok" if result.ok else "failed"
            report.steps.append({"name": name, "status": status, **result.as_stats()})
            if not result.ok:
                report.failed_steps += 1
                logger.error(f"Step failed: {name}")
                if self.fail_fast:
                    break
            else:
                logger.info(f"Step done: {name} ({result.processed} rows)")
        report.elapsed_seconds = round(time.monotonic() - started, 2)
        return report
