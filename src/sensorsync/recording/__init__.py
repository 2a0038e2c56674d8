"""Local sensor recording."""

from .recorder import LocalRecorder

__all__ = ["LocalRecorder"]
