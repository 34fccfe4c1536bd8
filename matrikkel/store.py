"""Batch object fetches against the registry store service."""

from __future__ import annotations

from typing import TYPE_CHECKING
from typing import Any

from loguru import logger

from matrikkel.errors import FetchError
from matrikkel.errors import TransportError
from matrikkel.values import chunked

if TYPE_CHECKING:
    from collections.abc import Iterable
    from collections.abc import Iterator

    from matrikkel.client import RemoteRegistry


DEFAULT_STORE_BATCH_SIZE = 1000


def _ordered_ids(ids: Iterable[int]) -> list[int]:
    return sorted({int(value) for value in ids})


def iter_fetched_chunks(
    registry: RemoteRegistry,
    id_type: str,
    ids: Iterable[int],
    *,
    batch_size: int = DEFAULT_STORE_BATCH_SIZE,
    ignore_missing: bool = False,
) -> Iterator[tuple[list[int], list[dict[str, Any]]]]:
    """Yield ``(requested_ids, objects)`` per chunk, one remote call each."""
    ordered = _ordered_ids(ids)
    for chunk in chunked(ordered, batch_size):
        try:
            if ignore_missing:
                objects = registry.fetch_by_ids_ignore_missing(id_type, chunk)
            else:
                objects = registry.fetch_by_ids(id_type, chunk)
        except FetchError:
            raise
        except TransportError as exc:
            logger.warning(f"Store fetch of {len(chunk)} {id_type} failed: {exc}")
            raise FetchError(f"Fetching {id_type} failed: {exc}", attempted=len(chunk)) from exc
        yield chunk, objects


def fetch_objects(
    registry: RemoteRegistry,
    id_type: str,
    ids: Iterable[int],
    batch_size: int = DEFAULT_STORE_BATCH_SIZE,
) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for _chunk, objects in iter_fetched_chunks(registry, id_type, ids, batch_size=batch_size):
        results.extend(objects)
    return results


def fetch_objects_ignore_missing(
    registry: RemoteRegistry,
    id_type: str,
    ids: Iterable[int],
    batch_size: int = DEFAULT_STORE_BATCH_SIZE,
) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for _chunk, objects in iter_fetched_chunks(
        registry, id_type, ids, batch_size=batch_size, ignore_missing=True
    ):
        results.extend(objects)
    return results
