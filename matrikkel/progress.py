"""Progress reporting for imports. Sinks observe; they never steer the pipeline."""

from __future__ import annotations

from typing import Protocol

from matrikkel.logging_config import bind_context


class ProgressSink(Protocol):
    def page(self, entity_type: str, count_so_far: int, last_cursor_or_id: int | None) -> None: ...

    def completed(self, entity_type: str, total_count: int, error_count: int) -> None: ...

    def failed(self, entity_type: str, error_message: str, count_before_fault: int) -> None: ...


class NullProgressSink:
    def page(self, entity_type: str, count_so_far: int, last_cursor_or_id: int | None) -> None:
        return None

    def completed(self, entity_type: str, total_count: int, error_count: int) -> None:
        return None

    def failed(self, entity_type: str, error_message: str, count_before_fault: int) -> None:
        return None


class LoguruProgressSink:
    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id

    def page(self, entity_type: str, count_so_far: int, last_cursor_or_id: int | None) -> None:
        bind_context(entity_type=entity_type, run_id=self.run_id).info(
            "import_page", count=count_so_far, last_id=last_cursor_or_id
        )

    def completed(self, entity_type: str, total_count: int, error_count: int) -> None:
        bind_context(entity_type=entity_type, run_id=self.run_id).info(
            "import_end", total=total_count, errors=error_count
        )

    def failed(self, entity_type: str, error_message: str, count_before_fault: int) -> None:
        bind_context(entity_type=entity_type, run_id=self.run_id).error(
            "import_failed", error=error_message, count=count_before_fault
        )
