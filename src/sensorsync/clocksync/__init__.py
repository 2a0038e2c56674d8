"""Clock offset estimation between the remote and local nodes."""

from .estimator import ClockOffset, measure_in_background, measure_offset, record_offset

__all__ = ["ClockOffset", "measure_offset", "record_offset", "measure_in_background"]
