"""Exception types shared by the registry client and the import pipeline."""

from __future__ import annotations


class MatrikkelError(Exception):
    """Base class for all errors raised by this package."""


class TransportError(MatrikkelError):
    """A remote call failed or returned something we could not parse."""


class RegistryFault(TransportError):
    def __init__(self, fault_code: str, fault_string: str, operation: str | None = None) -> None:
        self.fault_code = fault_code
        self.fault_string = fault_string
        self.operation = operation
        prefix = f"{operation}: " if operation else ""
        super().__init__(f"{prefix}{fault_code}: {fault_string}")


class FetchError(TransportError):
    """A store chunk failed; ``attempted`` is the number of ids in that chunk."""

    def __init__(self, message: str, attempted: int) -> None:
        self.attempted = attempted
        super().__init__(f"{message} (attempted {attempted} ids)")


class CursorMismatchError(MatrikkelError, ValueError):
    pass


class DataShapeError(MatrikkelError, TypeError):
    """A row handed to the writer does not match the table it targets."""
