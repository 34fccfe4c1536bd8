"""Import-run bookkeeping in ``matrikkel_import_runs``.

Each entity import opens a run row, checkpoints its cursor after every
committed page and closes it as completed or failed. A failed run's last
cursor is where ``resume=True`` picks up.
"""

from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING

from sqlalchemy import insert
from sqlalchemy import select
from sqlalchemy import update

from matrikkel.models import ImportRun

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class ImportRunLedger:
    def __init__(self, engine: Engine, run_id: str | None = None) -> None:
        self._engine = engine
        self.run_id = run_id

    def start(self, entity_type: str, filter: str | None) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                insert(ImportRun).values(
                    run_id=self.run_id,
                    entity_type=entity_type,
                    filter=filter,
                    status="running",
                    processed=0,
                    failed=0,
                    started_at=_utc_now(),
                )
            )
            return int(result.inserted_primary_key[0])

    def checkpoint(self, row_id: int, processed: int, failed: int, last_cursor: int | None) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                update(ImportRun)
                .where(ImportRun.id == row_id)
                .values(processed=processed, failed=failed, last_cursor=last_cursor)
            )

    def finish(
        self,
        row_id: int,
        *,
        status: str,
        processed: int,
        failed: int,
        last_cursor: int | None,
        error_message: str | None = None,
    ) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                update(ImportRun)
                .where(ImportRun.id == row_id)
                .values(
                    status=status,
                    processed=processed,
                    failed=failed,
                    last_cursor=last_cursor,
                    error_message=error_message,
                    finished_at=_utc_now(),
                )
            )

    def resume_cursor(self, entity_type: str, filter: str | None) -> int | None:
        """Last cursor of the newest run, unless that run completed.

        Call before ``start``; a run left as ``running`` crashed mid-way.
        """
        stmt = (
            select(ImportRun.status, ImportRun.last_cursor)
            .where(ImportRun.entity_type == entity_type)
            .where(ImportRun.filter.is_not_distinct_from(filter))
            .order_by(ImportRun.id.desc())
            .limit(1)
        )
        with self._engine.connect() as conn:
            row = conn.execute(stmt).first()
        if row is None or row.status == "completed":
            return None
        return row.last_cursor
