"""Read-modify-write access to ``sync_metadata.json``.

Both sensors of a paired recording update the same file from different
threads. Every update re-reads the file under a per-path lock, applies a
field-level merge and atomically replaces it, so concurrent writers never
drop each other's fields.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from ..errors import ManifestError
from ..schemas.sync_metadata import SyncMetadata
from ..utils.time import utc_now
from .atomic import atomic_write_text
from .layout import SYNC_METADATA_FILENAME

logger = logging.getLogger(__name__)

_locks: dict[Path, threading.RLock] = {}
_locks_guard = threading.Lock()


def metadata_lock(root: Path) -> threading.RLock:
    """Re-entrant lock serializing writers of one paired recording's metadata."""

    key = Path(root).resolve()
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.RLock()
        return lock


def metadata_path(root: Path) -> Path:
    return Path(root) / SYNC_METADATA_FILENAME


def _write(root: Path, metadata: SyncMetadata) -> None:
    atomic_write_text(metadata_path(root), metadata.model_dump_json(indent=2))


def read_sync_metadata(root: Path) -> Optional[SyncMetadata]:
    """Return the record, or ``None`` when the file does not exist."""

    path = metadata_path(root)
    try:
        return SyncMetadata.model_validate_json(path.read_bytes())
    except FileNotFoundError:
        return None
    except (ValidationError, ValueError) as exc:
        raise ManifestError(f"Unreadable sync metadata {path}: {exc}", path=str(path)) from exc


def ensure_sync_metadata(
    root: Path, mission: str, unified_timestamp: str, *, now: datetime | None = None
) -> SyncMetadata:
    """Create the record for a paired recording unless it already exists."""

    root = Path(root)
    with metadata_lock(root):
        root.mkdir(parents=True, exist_ok=True)
        existing = read_sync_metadata(root)
        if existing is not None:
            return existing
        created = now or utc_now()
        metadata = SyncMetadata(
            mission=mission,
            unified_session_timestamp=unified_timestamp,
            created_at=created,
            updated_at=created,
        )
        _write(root, metadata)
        logger.info("Created sync metadata for %s", root)
        return metadata


def update_sync_metadata(
    root: Path, updater: Callable[[SyncMetadata], Optional[SyncMetadata]]
) -> SyncMetadata:
    """Apply ``updater`` to the current record and persist the result.

    ``updater`` may mutate its argument in place or return a replacement.
    """

    root = Path(root)
    with metadata_lock(root):
        current = read_sync_metadata(root)
        if current is None:
            raise ManifestError(f"No sync metadata in {root}", path=str(metadata_path(root)))
        result = updater(current)
        updated = result if result is not None else current
        updated.updated_at = utc_now()
        _write(root, updated)
        return updated


def update_sensor_metadata(root: Path, sensor_key: str, **fields: Any) -> SyncMetadata:
    """Merge ``fields`` into one sensor entry; ``None`` values are ignored."""

    def _merge(metadata: SyncMetadata) -> None:
        info = metadata.sensor(sensor_key)
        for name, value in fields.items():
            if value is None:
                continue
            if name not in type(info).model_fields:
                raise ValueError(f"unknown sensor field: {name}")
            setattr(info, name, value)

    return update_sync_metadata(root, _merge)


def update_time_sync(root: Path, values: Mapping[str, Any]) -> SyncMetadata:
    def _merge(metadata: SyncMetadata) -> SyncMetadata:
        merged = {**metadata.time_sync.model_dump(), **values}
        return metadata.model_copy(update={"time_sync": type(metadata.time_sync).model_validate(merged)})

    return update_sync_metadata(root, _merge)


def update_fusion_status(root: Path, values: Mapping[str, Any]) -> SyncMetadata:
    def _merge(metadata: SyncMetadata) -> SyncMetadata:
        merged = {**metadata.fusion.model_dump(), **values}
        return metadata.model_copy(update={"fusion": type(metadata.fusion).model_validate(merged)})

    return update_sync_metadata(root, _merge)


__all__ = [
    "ensure_sync_metadata",
    "read_sync_metadata",
    "update_sync_metadata",
    "update_sensor_metadata",
    "update_time_sync",
    "update_fusion_status",
    "metadata_path",
    "metadata_lock",
]
