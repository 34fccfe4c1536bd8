"""Retry policy for registry calls, applied once at the importer boundary."""

from __future__ import annotations

from typing import TYPE_CHECKING
from typing import Any

from loguru import logger
from tenacity import RetryCallState
from tenacity import Retrying
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from matrikkel.errors import TransportError

if TYPE_CHECKING:
    from collections.abc import Callable

    from matrikkel.client import RemoteRegistry
    from matrikkel.pagination import CursorToken


DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_WAIT_SECONDS = 4.0
MAX_RETRY_WAIT_SECONDS = 60.0


class RetryingRegistry:
    """Wrap a ``RemoteRegistry`` so every call is retried on transport faults."""

    def __init__(
        self,
        registry: RemoteRegistry,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        wait_seconds: float = DEFAULT_RETRY_WAIT_SECONDS,
        on_retry: Callable[[], None] | None = None,
    ) -> None:
        self.inner = registry
        self.max_attempts = max(1, max_attempts)
        self.wait_seconds = wait_seconds
        self._on_retry = on_retry

    def _before_sleep(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(f"Registry call failed (attempt {state.attempt_number}/{self.max_attempts}): {exc}")
        if self._on_retry is not None:
            self._on_retry()

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.wait_seconds, min=0, max=MAX_RETRY_WAIT_SECONDS),
            retry=retry_if_exception_type(TransportError),
            before_sleep=self._before_sleep,
            reraise=True,
        )
        return retrying(fn, *args)

    def list_after_cursor(
        self,
        cursor: CursorToken | None,
        entity_type: str,
        filter: str | None,
        max_count: int,
    ) -> list[dict[str, Any]]:
        return self._call(self.inner.list_after_cursor, cursor, entity_type, filter, max_count)

    def find_related(self, relation: str, owner_ids: list[int]) -> dict[int, set[int]]:
        return self._call(self.inner.find_related, relation, owner_ids)

    def fetch_by_ids(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]:
        return self._call(self.inner.fetch_by_ids, id_type, ids)

    def fetch_by_ids_ignore_missing(self, id_type: str, ids: list[int]) -> list[dict[str, Any]]:
        return self._call(self.inner.fetch_by_ids_ignore_missing, id_type, ids)

    def fetch_one(self, id_type: str, id_value: int) -> dict[str, Any] | None:
        return self._call(self.inner.fetch_one, id_type, id_value)

    def find_person_id(self, ident: str) -> int | None:
        return self._call(self.inner.find_person_id, ident)

    def find_owned_parcels(self, person_id: int) -> list[int]:
        return self._call(self.inner.find_owned_parcels, person_id)
