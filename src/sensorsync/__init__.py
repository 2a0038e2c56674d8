"""Dual-sensor recording, pull replication and time-aligned fusion."""

__version__ = "0.1.0"
