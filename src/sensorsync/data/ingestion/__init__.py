"""Ingestion utilities for recorded sessions."""

from .session_reader import ORDERED as SESSION_ORDERED
from .session_reader import SessionData, SessionMarker, SessionReader

__all__ = ["SessionReader", "SessionData", "SessionMarker", "SESSION_ORDERED"]
