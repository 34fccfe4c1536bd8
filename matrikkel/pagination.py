"""Cursor pagination over the registry's "objects after id" listing.

The registry lists objects of one domain class in id order, starting after a
given id. A page shorter than the requested size, or an empty page, ends the
listing. Faults propagate to the caller untouched; retrying is the importer's
job.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from typing import Any

from matrikkel.errors import CursorMismatchError
from matrikkel.errors import TransportError
from matrikkel.values import as_list
from matrikkel.values import bubble_id
from matrikkel.values import dig

if TYPE_CHECKING:
    from collections.abc import Iterator

    from matrikkel.client import RemoteRegistry


DEFAULT_PAGE_SIZE = 1000
MAX_PAGE_SIZE = 5000


@dataclass(frozen=True)
class CursorToken:
    """Position in one entity type's listing. ``value=None`` means the beginning."""

    entity_type: str
    value: int | None = None

    @classmethod
    def start(cls, entity_type: str) -> CursorToken:
        return cls(entity_type)

    @property
    def is_start(self) -> bool:
        return self.value is None or self.value <= 0

    def advance(self, value: int) -> CursorToken:
        return CursorToken(self.entity_type, value)

    def check(self, entity_type: str) -> None:
        if self.entity_type != entity_type:
            raise CursorMismatchError(
                f"Cursor for {self.entity_type!r} cannot page {entity_type!r}"
            )


@dataclass(slots=True)
class Page:
    entity_type: str
    objects: list[tuple[int, dict[str, Any]]] = field(default_factory=list)
    next_cursor: CursorToken | None = None

    def __len__(self) -> int:
        return len(self.objects)


def object_id(obj: Any) -> int:
    value = bubble_id(dig(obj, "id"))
    if value is None:
        raise TransportError(f"Registry object without id: {str(obj)[:200]}")
    return value


def fetch_page(
    registry: RemoteRegistry,
    cursor: CursorToken | None,
    entity_type: str,
    filter: str | None,
    max_count: int,
) -> Page:
    if not 1 <= max_count <= MAX_PAGE_SIZE:
        raise ValueError(f"max_count must be between 1 and {MAX_PAGE_SIZE}")
    if cursor is None:
        cursor = CursorToken.start(entity_type)
    cursor.check(entity_type)

    raw = registry.list_after_cursor(
        None if cursor.is_start else cursor, entity_type, filter, max_count
    )
    objects = [(object_id(item), item) for item in as_list(raw)]
    if not objects:
        return Page(entity_type, [], cursor)

    last_id = objects[-1][0]
    if not cursor.is_start and last_id <= cursor.value:
        raise TransportError(
            f"{entity_type} listing did not advance past id {cursor.value} (got {last_id})"
        )
    return Page(entity_type, objects, cursor.advance(last_id))


def iter_pages(
    registry: RemoteRegistry,
    entity_type: str,
    filter: str | None = None,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    cursor: CursorToken | None = None,
) -> Iterator[Page]:
    """Yield non-empty pages until the listing is exhausted."""
    while True:
        page = fetch_page(registry, cursor, entity_type, filter, page_size)
        if not page.objects:
            return
        yield page
        if len(page.objects) < page_size:
            return
        cursor = page.next_cursor
