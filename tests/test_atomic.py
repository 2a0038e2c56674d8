from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

import sensorsync.storage.atomic as atomic
from sensorsync.storage.atomic import (
    TEMP_SUFFIX,
    atomic_concat,
    atomic_write_bytes,
    atomic_writer,
    discard_temp_files,
    sha256_file,
)


class _Crash(RuntimeError):
    pass


def test_atomic_write_replaces_whole_file(tmp_path: Path) -> None:
    target = tmp_path / "manifest.json"
    atomic_write_bytes(target, b"old")
    atomic_write_bytes(target, b"new contents")

    assert target.read_bytes() == b"new contents"
    assert not list(tmp_path.glob(f"*{TEMP_SUFFIX}"))


@pytest.mark.parametrize("written", [b"", b"half a ch", b"half a chunk of new data"])
def test_crash_before_commit_keeps_old_file(tmp_path: Path, written: bytes) -> None:
    target = tmp_path / "chunk_00000.csv"
    atomic_write_bytes(target, b"old complete file\n")

    with pytest.raises(_Crash):
        with atomic_writer(target) as handle:
            handle.write(written)
            raise _Crash("power loss")

    assert target.read_bytes() == b"old complete file\n"
    assert not list(tmp_path.glob(f"*{TEMP_SUFFIX}"))


def test_crash_after_rename_leaves_new_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "chunk_00001.csv"
    atomic_write_bytes(target, b"old")

    def _fail_dir_sync(directory: Path) -> None:
        raise _Crash("crash after rename")

    monkeypatch.setattr(atomic, "fsync_directory", _fail_dir_sync)
    with pytest.raises(_Crash):
        atomic_write_bytes(target, b"new")

    assert target.read_bytes() == b"new"


def test_leftover_temp_files_are_discarded(tmp_path: Path) -> None:
    (tmp_path / f"chunk_00003.csv.deadbeef{TEMP_SUFFIX}").write_bytes(b"partial")
    (tmp_path / "chunk_00002.csv").write_bytes(b"kept")

    removed = discard_temp_files(tmp_path)

    assert [p.name for p in removed] == [f"chunk_00003.csv.deadbeef{TEMP_SUFFIX}"]
    assert sorted(os.listdir(tmp_path)) == ["chunk_00002.csv"]


def test_concat_and_hash(tmp_path: Path) -> None:
    target = tmp_path / "session.csv"
    atomic_concat(target, [b"a,b\n", b"1,2\n", b"3,4\n"])

    assert target.read_bytes() == b"a,b\n1,2\n3,4\n"
    assert sha256_file(target) == hashlib.sha256(b"a,b\n1,2\n3,4\n").hexdigest()
