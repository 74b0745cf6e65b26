# FILE: qx7/errors.py
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """
    Failure classes surfaced in reports instead of being swallowed.

    Only the HTTP handlers and the sync bridge handler turn these into
    "never raise" boundaries; everything below them either raises a
    Qx7Error or records the kind in a result object.
    """

    VALIDATION = "validation"
    BACKEND = "backend"
    NETWORK = "network"
    SERVER = "server"
    TELEMETRY = "telemetry"


class Qx7Error(Exception):
    kind: ErrorKind = ErrorKind.SERVER


class StorageBackendError(Qx7Error):
    """A storage tier failed to read or write."""

    kind = ErrorKind.BACKEND

    def __init__(self, message: str, *, backend: Optional[str] = None) -> None:
        super().__init__(message)
        self.backend = backend


class BackendUnavailableError(StorageBackendError):
    """The tier exists but cannot currently accept data."""


class SchemaVersionError(StorageBackendError):
    """The versioned database reports a schema version other than expected."""

    def __init__(self, found: int, expected: int, *, backend: Optional[str] = None) -> None:
        super().__init__(
            f"database schema version {found} != expected {expected}",
            backend=backend,
        )
        self.found = found
        self.expected = expected


class IdentityFetchError(Qx7Error):
    """One acquire attempt against the identity endpoint failed."""

    kind = ErrorKind.NETWORK


__all__ = [
    "ErrorKind",
    "Qx7Error",
    "StorageBackendError",
    "BackendUnavailableError",
    "SchemaVersionError",
    "IdentityFetchError",
]
