"""Per-session chunk index."""

from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MANIFEST_SCHEMA_VERSION = 1
CHUNK_NAME_RE = re.compile(r"^chunk_(\d{5})\.csv$")


def chunk_name(index: int) -> str:
    return f"chunk_{index:05d}.csv"


def chunk_index(name: str) -> Optional[int]:
    match = CHUNK_NAME_RE.match(name)
    return int(match.group(1)) if match else None


class ChunkEntry(BaseModel):
    """One committed chunk; ``row_end`` is exclusive."""

    index: int
    name: str
    size: int
    sha256: str
    row_start: int
    row_end: int
    row_count: int
    timestamp: datetime

    @field_validator("sha256")
    @classmethod
    def _hex_digest(cls, v: str) -> str:
        v = v.lower()
        if not re.fullmatch(r"[0-9a-f]{64}", v):
            raise ValueError("sha256 must be a 64 character hex digest")
        return v

    @model_validator(mode="after")
    def _consistent(self) -> "ChunkEntry":
        if self.name != chunk_name(self.index):
            raise ValueError(f"chunk name {self.name!r} does not match index {self.index}")
        if self.row_end - self.row_start != self.row_count:
            raise ValueError("row_end - row_start must equal row_count")
        if self.size < 0 or self.row_count < 0:
            raise ValueError("size and row_count must be non-negative")
        return self


class Manifest(BaseModel):
    session_id: str
    sensor_id: str = ""
    mission: str = ""
    sync_id: Optional[str] = None
    state: str = "recording"
    schema_version: int = MANIFEST_SCHEMA_VERSION
    started_at: datetime
    stopped_at: Optional[datetime] = None
    chunk_interval_s: float = 60.0
    chunks: List[ChunkEntry] = Field(default_factory=list)
    total_rows: int = 0
    total_bytes: int = 0
    next_chunk_index: int = 0
    session_sha256: Optional[str] = None
    last_updated: Optional[datetime] = None
    # Non-zero on snapshots that list only chunks with index >= since_index.
    since_index: int = 0

    @model_validator(mode="after")
    def _invariants(self) -> "Manifest":
        previous: Optional[ChunkEntry] = None
        for entry in self.chunks:
            if previous is not None:
                if entry.index <= previous.index:
                    raise ValueError("chunks must be ordered by strictly increasing index")
                if entry.row_start != previous.row_end:
                    raise ValueError("chunk row ranges must be contiguous")
            previous = entry
        if self.since_index > 0:
            return self
        if self.total_rows != sum(c.row_count for c in self.chunks):
            raise ValueError("total_rows must equal the sum of chunk row counts")
        if self.total_bytes != sum(c.size for c in self.chunks):
            raise ValueError("total_bytes must equal the sum of chunk sizes")
        if previous is not None and self.next_chunk_index <= previous.index:
            raise ValueError("next_chunk_index must follow the last chunk")
        return self

    @property
    def is_stopped(self) -> bool:
        return self.stopped_at is not None

    def chunk_names(self) -> list[str]:
        return [c.name for c in self.chunks]

    def since(self, since_index: int) -> "Manifest":
        """Copy with ``chunks`` restricted to ``index >= since_index`` (totals kept)."""

        kept = [c for c in self.chunks if c.index >= since_index]
        return self.model_copy(update={"chunks": kept, "since_index": since_index})

    def with_chunk(self, entry: ChunkEntry, *, at: datetime) -> "Manifest":
        """Return the next manifest version with ``entry`` appended."""

        return Manifest.model_validate(
            {
                **self.model_dump(),
                "chunks": [*(c.model_dump() for c in self.chunks), entry.model_dump()],
                "total_rows": self.total_rows + entry.row_count,
                "total_bytes": self.total_bytes + entry.size,
                "next_chunk_index": entry.index + 1,
                "last_updated": at,
            }
        )

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, text: str | bytes) -> "Manifest":
        return cls.model_validate_json(text)


__all__ = [
    "ChunkEntry",
    "Manifest",
    "MANIFEST_SCHEMA_VERSION",
    "CHUNK_NAME_RE",
    "chunk_name",
    "chunk_index",
]
