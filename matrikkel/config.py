from __future__ import annotations

import os
from dataclasses import dataclass


ENDPOINTS = {
    "prod": "https://matrikkel.no/matrikkelapi/wsapi/v1",
    "test": "https://prodtest.matrikkel.no/matrikkelapi/wsapi/v1",
}
DEFAULT_ENVIRONMENT = "prod"
DEFAULT_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True)
class RegistrySettings:
    login: str | None = None
    password: str | None = None
    environment: str = DEFAULT_ENVIRONMENT
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    @property
    def base_url(self) -> str:
        try:
            return ENDPOINTS[self.environment]
        except KeyError as exc:
            raise ValueError(
                f"Unknown MATRIKKEL_ENVIRONMENT {self.environment!r}; expected one of {sorted(ENDPOINTS)}"
            ) from exc

    @classmethod
    def from_env(cls, environment: str | None = None) -> RegistrySettings:
        timeout_raw = os.getenv("MATRIKKEL_TIMEOUT")
        try:
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_TIMEOUT_SECONDS
        except ValueError as exc:
            raise ValueError(f"MATRIKKEL_TIMEOUT must be a number, got {timeout_raw!r}") from exc
        return cls(
            login=os.getenv("MATRIKKEL_LOGIN") or None,
            password=os.getenv("MATRIKKEL_PASSWORD") or None,
            environment=environment or os.getenv("MATRIKKEL_ENVIRONMENT", DEFAULT_ENVIRONMENT),
            timeout=timeout,
        )
