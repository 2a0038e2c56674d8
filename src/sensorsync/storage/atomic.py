"""Crash-safe file replacement.

Every durable write goes to a sibling ``*.tmp`` file, is fsynced, and is then
renamed over the final name with :func:`os.replace`. Readers therefore see
either the previous file or the complete new one.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import uuid
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"
_HASH_BLOCK = 1024 * 1024


def temp_path_for(path: Path) -> Path:
    return path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}")


def fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def commit_temp(tmp: Path, path: Path) -> None:
    """Rename a fully written and fsynced ``tmp`` over ``path``."""

    os.replace(tmp, path)
    fsync_directory(path.parent)


@contextlib.contextmanager
def atomic_writer(path: Path) -> Iterator[BinaryIO]:
    """Yield a binary handle whose contents replace ``path`` on clean exit.

    On any exception the temporary file is removed and ``path`` is untouched.
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path_for(path)
    try:
        with open(tmp, "wb") as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        commit_temp(tmp, path)
    except BaseException:
        _remove_quietly(tmp)
        raise


def atomic_write_bytes(path: Path, data: bytes) -> None:
    with atomic_writer(path) as handle:
        handle.write(data)


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, text.encode(encoding))


def atomic_concat(path: Path, parts: Iterable[bytes]) -> None:
    with atomic_writer(path) as handle:
        for part in parts:
            handle.write(part)


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for block in iter(lambda: handle.read(_HASH_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


def discard_temp_files(directory: Path) -> list[Path]:
    """Delete leftovers of interrupted writes in ``directory``."""

    removed: list[Path] = []
    if not directory.is_dir():
        return removed
    for candidate in sorted(directory.glob(f"*{TEMP_SUFFIX}")):
        if candidate.is_file():
            _remove_quietly(candidate)
            removed.append(candidate)
    if removed:
        logger.warning("Discarded %d temporary file(s) in %s", len(removed), directory)
    return removed


__all__ = [
    "TEMP_SUFFIX",
    "atomic_writer",
    "atomic_write_bytes",
    "atomic_write_text",
    "atomic_concat",
    "commit_temp",
    "discard_temp_files",
    "fsync_directory",
    "sha256_file",
    "temp_path_for",
]
