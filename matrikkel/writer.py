"""Buffered, deduplicating upsert writer.

Rows are collected per table and written as one multi-row
``INSERT ... ON CONFLICT (pk) DO UPDATE`` per flush. A writer instance belongs
to a single import task; parallel imports each create their own.

Example:
    writer = BufferedUpsertWriter(engine)
    for obj in objects:
        writer.insert_row(Parcel, map_parcel(obj))
    writer.flush()
"""

from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING
from typing import Any

from loguru import logger
from sqlalchemy import Table
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from matrikkel.errors import DataShapeError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from collections.abc import Mapping

    from sqlalchemy.engine import Connection
    from sqlalchemy.engine import Engine


DEFAULT_FLUSH_THRESHOLD = 100
PG_MAX_BIND_PARAMS = 65535
SCALAR_TYPES = (str, int, float, Decimal, dt.date, dt.datetime, dt.time, bytes, uuid.UUID)


def _as_table(target: Any) -> Table:
    if isinstance(target, Table):
        return target
    table = getattr(target, "__table__", None)
    if isinstance(table, Table):
        return table
    raise TypeError(f"Not a table or mapped class: {target!r}")


def _chunked(items: list[dict], chunk_size: int) -> Iterator[list[dict]]:
    for start in range(0, len(items), chunk_size):
        yield items[start : start + chunk_size]


def _effective_batch_size(requested_batch_size: int, columns_per_row: int) -> int:
    if columns_per_row <= 0:
        return requested_batch_size
    max_rows = max(1, (PG_MAX_BIND_PARAMS - 512) // columns_per_row)
    return max(1, min(requested_batch_size, max_rows))


def primary_key_names(table: Table) -> list[str]:
    return [column.name for column in table.primary_key.columns]


def check_row(table: Table, row: Mapping[str, Any]) -> None:
    """Raise ``DataShapeError`` unless ``row`` is a flat mapping onto ``table``."""
    columns = table.columns
    for name, value in row.items():
        if name not in columns:
            raise DataShapeError(f"{table.name}: unknown column {name!r}")
        if value is None or isinstance(value, SCALAR_TYPES):
            continue
        raise DataShapeError(
            f"{table.name}.{name}: non-scalar value of type {type(value).__name__}"
        )
    missing = [name for name in primary_key_names(table) if row.get(name) is None]
    if missing:
        raise DataShapeError(f"{table.name}: primary key column(s) missing: {missing}")


def dedupe_rows(table: Table, rows: list[dict]) -> list[dict]:
    """Keep the last row per primary key, in first-seen key order."""
    pk_names = primary_key_names(table)
    deduped: dict[tuple, dict] = {}
    for row in rows:
        deduped[tuple(row[name] for name in pk_names)] = row
    return list(deduped.values())


def build_upsert(dialect_name: str, table: Table, rows: list[dict]) -> Any:
    if dialect_name == "postgresql":
        stmt = pg_insert(table).values(rows)
    elif dialect_name == "sqlite":
        stmt = sqlite_insert(table).values(rows)
    else:
        raise ValueError(f"Upsert is not supported for dialect {dialect_name!r}")

    pk_names = primary_key_names(table)
    update_cols = {
        name: stmt.excluded[name] for name in rows[0] if name not in pk_names
    }
    if not update_cols:
        return stmt.on_conflict_do_nothing(index_elements=pk_names)
    return stmt.on_conflict_do_update(index_elements=pk_names, set_=update_cols)


class BufferedUpsertWriter:
    def __init__(self, engine: Engine, *, threshold: int = DEFAULT_FLUSH_THRESHOLD) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self._engine = engine
        self._threshold = threshold
        self._tables: dict[str, Table] = {}
        self._buffers: dict[str, list[dict]] = {}
        self.stats = {
            "rows_buffered": 0,
            "rows_written": 0,
            "duplicates_dropped": 0,
            "flushes": 0,
        }

    def insert_row(self, target: Any, row: Mapping[str, Any]) -> None:
        table = _as_table(target)
        check_row(table, row)
        self._tables.setdefault(table.name, table)
        buffer = self._buffers.setdefault(table.name, [])
        buffer.append(dict(row))
        self.stats["rows_buffered"] += 1
        if len(buffer) >= self._threshold:
            self.flush_table(table)

    def pending(self, target: Any | None = None) -> int:
        if target is None:
            return sum(len(rows) for rows in self._buffers.values())
        return len(self._buffers.get(_as_table(target).name, []))

    def flush(self) -> int:
        written = 0
        for name in list(self._buffers):
            written += self.flush_table(self._tables[name])
        return written

    def flush_table(self, target: Any) -> int:
        table = _as_table(target)
        rows = self._buffers.get(table.name)
        if not rows:
            return 0

        deduped = dedupe_rows(table, rows)
        dropped = len(rows) - len(deduped)
        with self._engine.begin() as conn:
            self._write(conn, table, deduped)

        self._buffers[table.name] = []
        self.stats["rows_written"] += len(deduped)
        self.stats["duplicates_dropped"] += dropped
        self.stats["flushes"] += 1
        logger.debug(
            "flush",
            table=table.name,
            rows=len(deduped),
            duplicates_dropped=dropped,
        )
        return len(deduped)

    def _write(self, conn: Connection, table: Table, rows: list[dict]) -> None:
        # Rows in one statement must share a column set.
        groups: dict[tuple[str, ...], list[dict]] = {}
        for row in rows:
            groups.setdefault(tuple(sorted(row)), []).append(row)

        dialect_name = conn.dialect.name
        for columns, group in groups.items():
            batch_size = _effective_batch_size(len(group), len(columns))
            for chunk in _chunked(group, batch_size):
                conn.execute(build_upsert(dialect_name, table, chunk))
