"""HTTP routes served by the producer node."""

from .files import router as files_router
from .record import router as record_router
from .timesync import router as timesync_router

__all__ = ["files_router", "record_router", "timesync_router"]
