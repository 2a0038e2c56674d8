"""Data layer: session ingestion and fusion."""

from .fusion import FusionEngine, fuse, fuse_session
from .ingestion import SessionData, SessionReader

__all__ = ["FusionEngine", "fuse", "fuse_session", "SessionData", "SessionReader"]
