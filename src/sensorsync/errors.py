"""Exception taxonomy shared by the store, the puller and the HTTP surface."""

from __future__ import annotations

import errno
from typing import Any

_CAPACITY_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class SensorSyncError(Exception):
    """Base error carrying the code used in the ``{detail, error_code}`` envelope."""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.detail, "error_code": self.error_code}
        payload.update(self.extra)
        return payload


class SessionNotFoundError(SensorSyncError):
    error_code = "SESSION_NOT_FOUND"
    status_code = 404


class ChunkNotFoundError(SensorSyncError):
    error_code = "CHUNK_NOT_FOUND"
    status_code = 404


class InsufficientStorageError(SensorSyncError):
    """Capacity error: the disk backing a session is full."""

    error_code = "INSUFFICIENT_STORAGE"
    status_code = 507


class SessionStateError(SensorSyncError):
    error_code = "SESSION_STATE_CONFLICT"
    status_code = 409


class ConfigurationError(SensorSyncError):
    error_code = "INVALID_CONFIGURATION"
    status_code = 400


class IntegrityError(SensorSyncError):
    """A downloaded payload did not hash to the advertised SHA-256."""

    error_code = "CHECKSUM_MISMATCH"
    status_code = 502


class ConnectivityError(SensorSyncError):
    """Transient network failure talking to the remote node."""

    error_code = "REMOTE_UNAVAILABLE"
    status_code = 503


class ManifestError(SensorSyncError):
    """A manifest could not be parsed or violates its invariants."""

    error_code = "MANIFEST_INVALID"
    status_code = 500


class RateLimitExceededError(SensorSyncError):
    error_code = "RATE_LIMIT_EXCEEDED"
    status_code = 429


def is_capacity_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` signals exhausted storage."""

    return isinstance(exc, OSError) and exc.errno in _CAPACITY_ERRNOS


__all__ = [
    "SensorSyncError",
    "SessionNotFoundError",
    "ChunkNotFoundError",
    "InsufficientStorageError",
    "SessionStateError",
    "ConfigurationError",
    "IntegrityError",
    "ConnectivityError",
    "ManifestError",
    "RateLimitExceededError",
    "is_capacity_error",
]
