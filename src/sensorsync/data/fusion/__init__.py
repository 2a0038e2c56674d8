"""Fusion of the in-water and surface streams."""

from .drift import DriftModel, compute_drift_model, correct_timestamp
from .engine import FusionEngine, UnifiedRow, WIDE_COLUMNS, as_stream, fuse
from .session import FusionResult, attempt_fusion, fuse_session, get_fusion_status

__all__ = [
    "DriftModel",
    "compute_drift_model",
    "correct_timestamp",
    "FusionEngine",
    "UnifiedRow",
    "WIDE_COLUMNS",
    "as_stream",
    "fuse",
    "FusionResult",
    "attempt_fusion",
    "fuse_session",
    "get_fusion_status",
]
