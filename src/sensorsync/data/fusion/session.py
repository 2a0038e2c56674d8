"""Session-level fusion: from a paired recording directory to ``unified_session.csv``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ...config import Settings
from ...errors import SensorSyncError
from ...schemas.sync_metadata import FusionStatus, SyncMetadata
from ...storage.atomic import atomic_write_text
from ...storage.layout import UNIFIED_FILENAME
from ...storage.sync_metadata import (
    metadata_lock,
    read_sync_metadata,
    update_fusion_status,
    update_time_sync,
)
from ...utils.time import to_epoch_ms, utc_now
from ..ingestion.session_reader import SessionData, SessionMarker, SessionReader
from .drift import DriftModel, build_sync_markers, compute_drift_model, describe
from .engine import FusionEngine, UnifiedRow

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


@dataclass
class FusionResult:
    status: str
    unified_csv: Optional[Path] = None
    row_count: int = 0
    inwater_rows: int = 0
    surface_rows: int = 0
    error: Optional[str] = None
    drift_model: Optional[DriftModel] = None

    def as_status(self) -> dict[str, object]:
        return {
            "status": self.status,
            "unified_csv": self.unified_csv.name if self.unified_csv else None,
            "row_count": self.row_count,
            "inwater_rows": self.inwater_rows,
            "surface_rows": self.surface_rows,
            "completed_at": utc_now(),
            "error": self.error,
        }


def _marker_ms(marker: SessionMarker | None) -> float | None:
    return None if marker is None else to_epoch_ms(marker.timestamp.to_pydatetime())


def write_unified_csv(path: Path, rows: list[UnifiedRow]) -> None:
    df = FusionEngine.to_frame(rows)
    for column in ("timestamp", "surface_timestamp_used"):
        df[column] = df[column].dt.strftime(TIMESTAMP_FORMAT)
    atomic_write_text(path, df.to_csv(index=False, lineterminator="\n"))


def _fuse_files(root: Path, metadata: SyncMetadata, settings: Settings) -> FusionResult:
    inwater_csv = metadata.sensor("in_water").session_csv
    surface_csv = metadata.sensor("surface").session_csv
    if not inwater_csv and not surface_csv:
        return FusionResult(status="failed", error="No session CSVs found in sync metadata")
    if not inwater_csv or not surface_csv:
        active = "in-water" if inwater_csv else "surface"
        return FusionResult(
            status="skipped", error=f"Only {active} sensor active, skipping unified fusion"
        )

    inwater_path = root / inwater_csv
    surface_path = root / surface_csv
    for label, path in (("In-water", inwater_path), ("Surface", surface_path)):
        if not path.is_file():
            return FusionResult(status="failed", error=f"{label} session.csv not found: {path}")

    inwater: SessionData = SessionReader.from_csv(inwater_path, source="in-water")
    surface: SessionData = SessionReader.from_csv(surface_path, source="surface")
    logger.info("Fusing %d in-water rows with %d surface rows", len(inwater), len(surface))

    marker_times = dict(
        surface_start_ms=_marker_ms(surface.start),
        surface_stop_ms=_marker_ms(surface.stop),
        inwater_start_ms=_marker_ms(inwater.start),
        inwater_stop_ms=_marker_ms(inwater.stop),
    )
    if inwater.start is None and inwater.stop is None:
        logger.info("In-water markers missing; synthesising them from the measured offset")
    drift = compute_drift_model(**marker_times, measured_offset_ms=metadata.time_sync.offset_ms)
    logger.info("Drift model: %s", describe(drift))

    sync_id = next(
        (m.sync_id for m in (surface.start, inwater.start, surface.stop, inwater.stop) if m and m.sync_id),
        "unknown",
    )
    markers = build_sync_markers(
        sync_id=sync_id, **marker_times, measured_offset_ms=metadata.time_sync.offset_ms
    )
    update_time_sync(
        root,
        {
            "markers": [m.model_dump() for m in markers],
            "drift_model": drift.to_record().model_dump() if drift else None,
        },
    )

    rows = FusionEngine.from_settings(settings, drift).fuse(inwater, surface)
    unified = root / UNIFIED_FILENAME
    write_unified_csv(unified, rows)
    result = FusionResult(
        status="complete",
        unified_csv=unified,
        row_count=len(rows),
        inwater_rows=sum(1 for r in rows if r.has_inwater),
        surface_rows=sum(1 for r in rows if r.has_surface),
        drift_model=drift,
    )
    both = sum(1 for r in rows if r.has_inwater and r.has_surface)
    logger.info(
        "Fusion complete: %d rows (%d with both sensors, in-water=%d, surface=%d)",
        result.row_count,
        both,
        result.inwater_rows,
        result.surface_rows,
    )
    return result


def fuse_session(session_root: Path, settings: Settings | None = None) -> FusionResult:
    """Fuse a paired recording and record the outcome in its sync metadata.

    Failures are reported in the returned result and in the fusion status;
    nothing is raised for bad or missing input files.
    """

    root = Path(session_root)
    settings = settings or Settings()
    try:
        metadata = read_sync_metadata(root)
    except SensorSyncError as exc:
        return FusionResult(status="failed", error=exc.detail)
    if metadata is None:
        return FusionResult(status="failed", error="sync_metadata.json not found")

    try:
        result = _fuse_files(root, metadata, settings)
    except (OSError, ValueError, KeyError, SensorSyncError) as exc:
        logger.exception("Fusion failed for %s", root)
        result = FusionResult(status="failed", error=str(exc))

    if result.status == "failed":
        logger.error("Fusion failed for %s: %s", root, result.error)
    elif result.status == "skipped":
        logger.info("Fusion skipped for %s: %s", root, result.error)
    try:
        update_fusion_status(root, result.as_status())
    except (OSError, SensorSyncError):
        logger.exception("Could not record fusion status for %s", root)
    return result


def attempt_fusion(session_root: Path, settings: Settings | None = None) -> FusionResult | None:
    """Run :func:`fuse_session` once both sensors have finished and no output exists yet."""

    root = Path(session_root)
    # The recorder and the puller may both finish a recording at once.
    with metadata_lock(root):
        if (root / UNIFIED_FILENAME).exists():
            logger.info("Fusion already complete for %s", root)
            return None
        try:
            metadata = read_sync_metadata(root)
        except SensorSyncError:
            logger.exception("Unreadable sync metadata in %s", root)
            return None
        if metadata is None:
            logger.warning("No sync metadata in %s", root)
            return None
        if not (metadata.sensor("in_water").session_csv and metadata.sensor("surface").session_csv):
            logger.info("Waiting for both sensors to complete before fusion")
            return None
        return fuse_session(root, settings)


def get_fusion_status(session_root: Path) -> dict[str, object]:
    root = Path(session_root)
    metadata = read_sync_metadata(root)
    unified = root / UNIFIED_FILENAME
    fusion = metadata.fusion if metadata is not None else FusionStatus()
    return {
        "fusion": fusion.model_dump(mode="json"),
        "unified_csv_path": str(unified) if unified.exists() else None,
        "exists": unified.exists(),
    }


__all__ = [
    "FusionResult",
    "fuse_session",
    "attempt_fusion",
    "get_fusion_status",
    "write_unified_csv",
]
