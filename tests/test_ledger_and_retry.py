from __future__ import annotations

import pytest
from sqlalchemy.engine import Engine

from matrikkel.errors import RegistryFault
from matrikkel.errors import TransportError
from matrikkel.ledger import ImportRunLedger
from matrikkel.retry import RetryingRegistry

FILTER = '{"kommunefilter": ["4601"]}'


def test_resume_cursor_follows_newest_unfinished_run(engine: Engine) -> None:
    ledger = ImportRunLedger(engine, run_id="abc")
    assert ledger.resume_cursor("parcel", FILTER) is None

    row = ledger.start("parcel", FILTER)
    ledger.checkpoint(row, processed=20, failed=0, last_cursor=120)
    assert ledger.resume_cursor("parcel", FILTER) == 120
    assert ledger.resume_cursor("parcel", None) is None
    assert ledger.resume_cursor("road", FILTER) is None

    ledger.finish(row, status="failed", processed=20, failed=0, last_cursor=120, error_message="timeout")
    assert ledger.resume_cursor("parcel", FILTER) == 120

    done = ledger.start("parcel", FILTER)
    ledger.finish(done, status="completed", processed=40, failed=0, last_cursor=300)
    assert ledger.resume_cursor("parcel", FILTER) is None


class _Flaky:
    def __init__(self, failures: int, exc: Exception | None = None) -> None:
        self.failures = failures
        self.exc = exc or TransportError("timeout")
        self.calls = 0

    def fetch_one(self, id_type: str, id_value: int) -> dict:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return {"id": {"value": id_value}}


def test_transport_errors_are_retried_until_success() -> None:
    inner = _Flaky(failures=2)
    retries: list[int] = []
    registry = RetryingRegistry(inner, max_attempts=3, wait_seconds=0, on_retry=lambda: retries.append(1))

    assert registry.fetch_one("PersonId", 5) == {"id": {"value": 5}}
    assert inner.calls == 3
    assert len(retries) == 2


def test_last_transport_error_is_reraised() -> None:
    inner = _Flaky(failures=5)
    registry = RetryingRegistry(inner, max_attempts=2, wait_seconds=0)

    with pytest.raises(TransportError, match="timeout"):
        registry.fetch_one("PersonId", 5)
    assert inner.calls == 2


def test_registry_faults_are_retried_as_transport_errors() -> None:
    inner = _Flaky(failures=1, exc=RegistryFault("soap:Server", "Midlertidig feil", "getObject"))
    registry = RetryingRegistry(inner, max_attempts=3, wait_seconds=0)

    assert registry.fetch_one("PersonId", 5) == {"id": {"value": 5}}
    assert inner.calls == 2


def test_other_errors_are_not_retried() -> None:
    inner = _Flaky(failures=1, exc=ValueError("Unknown registry id type"))
    registry = RetryingRegistry(inner, max_attempts=3, wait_seconds=0)

    with pytest.raises(ValueError):
        registry.fetch_one("PersonId", 5)
    assert inner.calls == 1
