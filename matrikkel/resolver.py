"""Two-step lookup: ask the registry which objects relate to a set of parcels,
then fetch those objects by id.

One related object (a building, say) can belong to several parcels, so the
resolver keeps both directions of the mapping; importers use the reverse
index to write link rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING

from loguru import logger

from matrikkel.values import chunked

if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterable

    from matrikkel.client import RemoteRegistry


DEFAULT_OWNER_CHUNK_SIZE = 500


@dataclass(slots=True)
class Resolution:
    relation: str
    related: dict[int, set[int]] = field(default_factory=dict)
    reverse: dict[int, set[int]] = field(default_factory=dict)

    @property
    def related_ids(self) -> list[int]:
        return sorted(self.reverse)

    @property
    def is_empty(self) -> bool:
        return not self.reverse

    def owners_of(self, related_id: int) -> list[int]:
        return sorted(self.reverse.get(related_id, ()))


def build_reverse_index(related: dict[int, set[int]]) -> dict[int, set[int]]:
    reverse: dict[int, set[int]] = {}
    for owner_id, related_ids in related.items():
        for related_id in related_ids:
            reverse.setdefault(related_id, set()).add(owner_id)
    return reverse


class TwoStepResolver:
    def __init__(
        self,
        registry: RemoteRegistry,
        relation: str,
        *,
        chunk_size: int = DEFAULT_OWNER_CHUNK_SIZE,
        on_chunk: Callable[[int, int], None] | None = None,
    ) -> None:
        self._registry = registry
        self.relation = relation
        self._chunk_size = chunk_size
        self._on_chunk = on_chunk

    def resolve(self, owner_ids: Iterable[int]) -> Resolution:
        ordered = sorted({int(owner_id) for owner_id in owner_ids})
        related: dict[int, set[int]] = {}
        processed = 0
        for chunk in chunked(ordered, self._chunk_size):
            found = self._registry.find_related(self.relation, chunk)
            for owner_id, related_ids in found.items():
                if related_ids:
                    related.setdefault(owner_id, set()).update(related_ids)
            processed += len(chunk)
            if self._on_chunk is not None:
                self._on_chunk(processed, chunk[-1])

        resolution = Resolution(self.relation, related, build_reverse_index(related))
        if resolution.is_empty:
            logger.info(f"No {self.relation} found for {len(ordered)} parcels")
        return resolution

    def resolve_related(self, owner_ids: Iterable[int]) -> dict[int, set[int]]:
        return self.resolve(owner_ids).related
