"""Command line entry point.

Usage:
  python -m matrikkel.cli init-db
  python -m matrikkel.cli phase1 --kommune 4601
  python -m matrikkel.cli phase2 --kommune 4601 --organisasjonsnummer 964338531
  python -m matrikkel.cli import parcel --kommune 4601 --resume
  python -m matrikkel.cli organize-hierarchy --kommune 4601 --force
"""

from __future__ import annotations

import argparse
import json
import uuid
from typing import Any

from loguru import logger

from matrikkel.client import MatrikkelClient
from matrikkel.client import normalize_municipality_number
from matrikkel.config import RegistrySettings
from matrikkel.db import get_engine
from matrikkel.db import init_db
from matrikkel.db import resolve_pg_dsn
from matrikkel.hierarchy import HierarchyCoder
from matrikkel.importers import EntityImporter
from matrikkel.importers import ImportResult
from matrikkel.logging_config import configure_logger
from matrikkel.pagination import DEFAULT_PAGE_SIZE
from matrikkel.phases import PhaseRunner
from matrikkel.retry import DEFAULT_MAX_ATTEMPTS

BULK_ENTITIES = ("municipality", "parcel", "road")
SCOPED_ENTITIES = ("building", "unit", "address")
ENTITIES = (*BULK_ENTITIES, "owner", *SCOPED_ENTITIES)


def _municipality_number(value: str) -> str:
    try:
        return normalize_municipality_number(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _print_stats(stats: dict[str, Any]) -> None:
    print(json.dumps(stats, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync the Matrikkel cadastral registry into a local database.")
    parser.add_argument("--db-url", default=None, help="Postgres DSN override.")
    parser.add_argument("--environment", choices=("prod", "test"), default=None)
    parser.add_argument("--page-size", type=int, default=DEFAULT_PAGE_SIZE)
    parser.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables.")

    phase1_cmd = sub.add_parser("phase1", help="Municipalities, parcels and owners for one municipality.")
    phase1_cmd.add_argument("--kommune", type=_municipality_number, required=True)

    phase2_cmd = sub.add_parser("phase2", help="Roads, units, buildings and addresses for a parcel scope.")
    phase2_cmd.add_argument("--kommune", type=_municipality_number, required=True)
    owner = phase2_cmd.add_mutually_exclusive_group()
    owner.add_argument("--organisasjonsnummer", default=None)
    owner.add_argument("--personnummer", default=None)
    phase2_cmd.add_argument("--limit", type=int, default=None, help="Cap the number of parcels in scope.")
    phase2_cmd.add_argument("--keep-going", action="store_true", help="Run remaining steps after a failure.")

    import_cmd = sub.add_parser("import", help="Import a single entity type.")
    import_cmd.add_argument("entity", choices=ENTITIES)
    import_cmd.add_argument("--kommune", type=_municipality_number, default=None)
    import_cmd.add_argument("--resume", action="store_true", help="Continue after the last failed run's cursor.")

    organize_cmd = sub.add_parser("organize-hierarchy", help="Assign location codes.")
    organize_cmd.add_argument("--kommune", type=_municipality_number, default=None)
    organize_cmd.add_argument("--matrikkelenhet", type=int, default=None)
    organize_cmd.add_argument("--force", action="store_true", help="Overwrite existing codes.")

    return parser


def _run_import(importer: EntityImporter, entity: str, municipality_number: str, resume: bool) -> ImportResult:
    if entity == "parcel":
        return importer.import_parcels(municipality_number, resume=resume)
    if entity == "road":
        return importer.import_roads(municipality_number, resume=resume)
    if entity == "owner":
        return importer.import_owners(municipality_number)

    scope = importer.stored_parcel_ids(municipality_number)
    if entity == "building":
        return importer.import_buildings(scope)
    if entity == "unit":
        return importer.import_units(scope)
    return importer.import_addresses(scope)


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logger()
    dsn = resolve_pg_dsn(args.db_url)
    engine = get_engine(dsn)

    if args.command == "init-db":
        init_db(engine)
        print("Initialized database schema.")
        return 0

    init_db(engine)

    if args.command == "organize-hierarchy":
        if args.kommune is None and args.matrikkelenhet is None:
            parser.error("organize-hierarchy needs --kommune or --matrikkelenhet")
        stats = HierarchyCoder(engine).organize_municipality(
            args.kommune, parcel_id=args.matrikkelenhet, force=args.force
        )
        _print_stats(stats)
        return 1 if stats["errors"] else 0

    run_id = uuid.uuid4().hex[:12]
    logger.info(f"Run {run_id}: {args.command}")
    importer = EntityImporter(
        engine,
        MatrikkelClient(RegistrySettings.from_env(args.environment)),
        run_id=run_id,
        page_size=args.page_size,
        max_attempts=args.max_attempts,
    )

    if args.command == "phase1":
        report = PhaseRunner(importer).run_phase1(args.kommune)
        _print_stats(report.as_dict())
        return report.exit_code

    if args.command == "phase2":
        report = PhaseRunner(importer, fail_fast=not args.keep_going).run_phase2(
            args.kommune,
            organization_number=args.organisasjonsnummer,
            national_id=args.personnummer,
            limit=args.limit,
        )
        _print_stats(report.as_dict())
        return report.exit_code

    if args.command == "import":
        if args.entity == "municipality":
            result = importer.import_municipalities(resume=args.resume)
        elif args.kommune is None:
            parser.error(f"--kommune is required to import {args.entity}")
        else:
            result = _run_import(importer, args.entity, args.kommune, args.resume)
        _print_stats(result.as_stats())
        return result.exit_code

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
