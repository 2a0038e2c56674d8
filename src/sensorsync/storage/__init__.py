"""Durable on-disk state: chunks, manifests and sync metadata."""

from .atomic import atomic_write_bytes, atomic_write_text, discard_temp_files, sha256_file
from .chunk_store import ChunkStore, concatenate_chunks, count_data_rows, read_manifest, write_manifest
from .sync_metadata import (
    ensure_sync_metadata,
    read_sync_metadata,
    update_fusion_status,
    update_sensor_metadata,
    update_sync_metadata,
    update_time_sync,
)

__all__ = [
    "ChunkStore",
    "concatenate_chunks",
    "count_data_rows",
    "read_manifest",
    "write_manifest",
    "atomic_write_bytes",
    "atomic_write_text",
    "discard_temp_files",
    "sha256_file",
    "ensure_sync_metadata",
    "read_sync_metadata",
    "update_fusion_status",
    "update_sensor_metadata",
    "update_sync_metadata",
    "update_time_sync",
]
