"""HTTP client for the remote producer API."""

from __future__ import annotations

import contextlib
import logging
from typing import Any, Iterator

import httpx
from pydantic import ValidationError

from ..errors import (
    ChunkNotFoundError,
    ConfigurationError,
    ConnectivityError,
    InsufficientStorageError,
    ManifestError,
    RateLimitExceededError,
    SensorSyncError,
    SessionNotFoundError,
    SessionStateError,
)
from ..schemas.manifest import Manifest

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE: dict[str, type[SensorSyncError]] = {
    cls.error_code: cls
    for cls in (
        SessionNotFoundError,
        ChunkNotFoundError,
        InsufficientStorageError,
        SessionStateError,
        ConfigurationError,
        RateLimitExceededError,
        ManifestError,
    )
}


def _error_from_response(response: httpx.Response) -> SensorSyncError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    detail = body.get("detail")
    if not isinstance(detail, str):
        detail = f"HTTP {response.status_code} from {response.request.url}"
    code = body.get("error_code")

    if response.status_code == 429:
        return RateLimitExceededError(detail)
    if isinstance(code, str) and code in _ERRORS_BY_CODE:
        return _ERRORS_BY_CODE[code](detail)
    if response.status_code >= 500:
        return ConnectivityError(detail, status=response.status_code)
    error = SensorSyncError(detail, status=response.status_code)
    error.status_code = response.status_code
    return error


def raise_for_status(response: httpx.Response) -> None:
    if response.status_code >= 400:
        if not response.is_stream_consumed:
            response.read()
        raise _error_from_response(response)


class RemoteClient:
    """Thin wrapper over :class:`httpx.Client` speaking the remote producer API.

    ``client`` may be any configured ``httpx.Client`` (including FastAPI's
    ``TestClient``); paths are resolved against its ``base_url``.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout_s)

    def __enter__(self) -> "RemoteClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ConnectivityError(f"Timed out calling {method} {path}", reason="timeout") from exc
        except httpx.TransportError as exc:
            raise ConnectivityError(
                f"Network error calling {method} {path}: {exc}", reason="network_error"
            ) from exc
        raise_for_status(response)
        return response

    def _json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise ConnectivityError(f"Non-JSON response from {path}") from exc

    def fetch_manifest(self, session_id: str, since_index: int = 0) -> Manifest:
        response = self._request(
            "GET", "/snapshots", params={"session_id": session_id, "since_index": since_index}
        )
        try:
            return Manifest.model_validate_json(response.content)
        except (ValidationError, ValueError) as exc:
            raise ManifestError(f"Remote manifest for {session_id} is invalid: {exc}") from exc

    @contextlib.contextmanager
    def stream_file(self, session_id: str, name: str) -> Iterator[httpx.Response]:
        """Open a streaming download of a chunk or ``session.csv``."""

        path = f"/files/{session_id}/{name}"
        try:
            with self._client.stream("GET", path) as response:
                raise_for_status(response)
                yield response
        except httpx.TimeoutException as exc:
            raise ConnectivityError(f"Timed out downloading {path}", reason="timeout") from exc
        except httpx.TransportError as exc:
            raise ConnectivityError(f"Network error downloading {path}: {exc}") from exc

    def start_session(
        self,
        sensor_id: str,
        mission: str,
        *,
        chunk_interval_s: float | None = None,
        max_chunk_bytes: int | None = None,
        sync_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"sensor_id": sensor_id, "mission": mission}
        if chunk_interval_s is not None:
            body["chunk_interval_s"] = chunk_interval_s
        if max_chunk_bytes is not None:
            body["max_chunk_bytes"] = max_chunk_bytes
        if sync_id is not None:
            body["sync_id"] = sync_id
        return self._json("POST", "/record/start", json=body)

    def stop_session(self, session_id: str) -> dict[str, Any]:
        return self._json("POST", "/record/stop", json={"session_id": session_id})

    def session_status(self, session_id: str) -> dict[str, Any]:
        return self._json("GET", "/record/status", params={"session_id": session_id})

    def server_time(self) -> dict[str, Any]:
        return self._json("GET", "/api/sync/time")


__all__ = ["RemoteClient", "raise_for_status"]
