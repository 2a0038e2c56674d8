"""Runtime settings and logging setup."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Mapping

from pydantic import BaseModel, ValidationError, field_validator

from .errors import ConfigurationError

ENV_PREFIX = "SENSORSYNC_"

MIN_CHUNK_INTERVAL_S = 15.0
MAX_CHUNK_INTERVAL_S = 300.0
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseModel):
    """Tunables for recording, mirroring, clock sync and fusion."""

    storage_path: Path = Path("./data/recordings")
    chunk_interval_s: float = 60.0
    max_chunk_bytes: int = 5 * 1024 * 1024
    poll_interval_ms: int = 15_000
    bandwidth_cap_bytes_per_sec: int = 500 * 1024
    http_timeout_s: float = 15.0
    download_block_bytes: int = 64 * 1024
    clock_sync_samples: int = 5
    clock_sync_max_rtt_ms: float = 200.0
    fusion_strategy: Literal["symmetric", "inwater_driven"] = "symmetric"
    alignment_tolerance_ms: float = 25.0
    staleness_threshold_ms: float = 30_000.0
    log_level: str = "INFO"

    @field_validator("chunk_interval_s")
    @classmethod
    def _interval_in_range(cls, v: float) -> float:
        if not MIN_CHUNK_INTERVAL_S <= v <= MAX_CHUNK_INTERVAL_S:
            raise ValueError(
                f"chunk_interval_s must be between {MIN_CHUNK_INTERVAL_S:g} and "
                f"{MAX_CHUNK_INTERVAL_S:g} seconds, got {v:g}"
            )
        return v

    @field_validator(
        "max_chunk_bytes",
        "poll_interval_ms",
        "bandwidth_cap_bytes_per_sec",
        "download_block_bytes",
        "clock_sync_samples",
    )
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("alignment_tolerance_ms", "staleness_threshold_ms", "http_timeout_s")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``SENSORSYNC_*`` variables, falling back to defaults."""

        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None and raw.strip() != "":
                values[name] = raw.strip()
        return cls.build(**values)

    @classmethod
    def build(cls, **values: object) -> "Settings":
        """Validate ``values`` and surface failures as :class:`ConfigurationError`."""

        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid settings: {exc}") from exc


def configure_logging(level: str | int = "INFO") -> None:
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


__all__ = [
    "Settings",
    "configure_logging",
    "ENV_PREFIX",
    "MIN_CHUNK_INTERVAL_S",
    "MAX_CHUNK_INTERVAL_S",
]
