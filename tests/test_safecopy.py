"""Tests for the interruptible copy primitive."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import write
from spaces_sync.errors import CopyCancelled, SourceModifiedError
from spaces_sync.safecopy import (
    TEMP_SUFFIX,
    CancelToken,
    files_identical,
    remove_dir,
    remove_file,
    safe_copy,
    sweep_temp_files,
    temp_path_for,
)


def _leftovers(root: Path) -> list[Path]:
    return list(root.rglob(f"*{TEMP_SUFFIX}"))


class TestSafeCopy:
    def test_copies_bytes_and_preserves_mtime(self, tmp_path: Path):
        src = write(tmp_path / "a" / "f.bin", os.urandom(700 * 1024), mtime=1_600_000_000)
        dst = tmp_path / "b" / "nested" / "f.bin"

        res = safe_copy(src, dst, chunk_size=64 * 1024)

        assert dst.read_bytes() == src.read_bytes()
        assert res.size == src.stat().st_size
        assert res.source_mtime_ns == src.stat().st_mtime_ns
        assert dst.stat().st_mtime_ns == src.stat().st_mtime_ns
        assert res.dest_mtime_ns == dst.stat().st_mtime_ns
        assert _leftovers(tmp_path) == []

    def test_overwrites_existing_destination(self, tmp_path: Path):
        src = write(tmp_path / "src.txt", "new content")
        dst = write(tmp_path / "dst.txt", "old")
        safe_copy(src, dst)
        assert dst.read_text() == "new content"

    def test_cancel_before_first_chunk_leaves_nothing(self, tmp_path: Path):
        src = write(tmp_path / "src.bin", b"x" * 1024)
        dst = tmp_path / "out" / "dst.bin"
        token = CancelToken("dst.bin")
        token.cancel()

        with pytest.raises(CopyCancelled):
            safe_copy(src, dst, token)

        assert not dst.exists()
        assert _leftovers(tmp_path) == []

    def test_cancel_mid_copy_keeps_old_destination(self, tmp_path: Path):
        src = write(tmp_path / "src.bin", b"y" * (10 * 1024))
        dst = write(tmp_path / "dst.bin", b"previous")
        token = CancelToken("dst.bin")

        def on_chunk(copied: int) -> None:
            if copied >= 2048:
                token.cancel()

        with pytest.raises(CopyCancelled):
            safe_copy(src, dst, token, chunk_size=1024, on_chunk=on_chunk)

        assert dst.read_bytes() == b"previous"
        assert _leftovers(tmp_path) == []

    def test_source_rewritten_during_copy_is_detected(self, tmp_path: Path):
        src = write(tmp_path / "src.bin", b"z" * 4096, mtime=1_600_000_000)
        dst = tmp_path / "dst.bin"

        def on_chunk(copied: int) -> None:
            if copied == 1024:
                write(src, b"changed" * 100, mtime=1_700_000_000)

        with pytest.raises(SourceModifiedError):
            safe_copy(src, dst, chunk_size=1024, on_chunk=on_chunk)

        assert not dst.exists()
        assert _leftovers(tmp_path) == []

    def test_source_deleted_during_copy_is_detected(self, tmp_path: Path):
        src = write(tmp_path / "src.bin", b"q" * 4096)
        dst = tmp_path / "dst.bin"

        def on_chunk(copied: int) -> None:
            if copied == 1024 and src.exists():
                src.unlink()

        with pytest.raises(SourceModifiedError):
            safe_copy(src, dst, chunk_size=1024, on_chunk=on_chunk)

        assert not dst.exists()
        assert _leftovers(tmp_path) == []

    def test_missing_source_raises_source_modified(self, tmp_path: Path):
        with pytest.raises(SourceModifiedError):
            safe_copy(tmp_path / "nope", tmp_path / "dst")

    def test_temp_path_uses_suffix(self, tmp_path: Path):
        assert temp_path_for(tmp_path / "f.txt").name == "f.txt" + TEMP_SUFFIX


class TestRemoval:
    def test_remove_file(self, tmp_path: Path):
        f = write(tmp_path / "f", "x")
        assert remove_file(f) is True
        assert remove_file(f) is False

    def test_remove_dir_only_when_empty(self, tmp_path: Path):
        d = tmp_path / "d"
        write(d / "child", "x")
        assert remove_dir(d) is False
        assert d.exists()
        (d / "child").unlink()
        assert remove_dir(d) is True
        assert remove_dir(d) is False

    def test_sweep_removes_only_temp_files(self, tmp_path: Path):
        keep = write(tmp_path / "a" / "keep.txt", "x")
        stale = write(tmp_path / "a" / "b" / ("keep.txt" + TEMP_SUFFIX), "partial")

        removed = sweep_temp_files(tmp_path)

        assert removed == [stale]
        assert keep.exists()
        assert not stale.exists()


class TestFilesIdentical:
    def test_same_size_and_mtime(self, tmp_path: Path):
        a = write(tmp_path / "a", "same", mtime=1_600_000_000)
        b = write(tmp_path / "b", "same", mtime=1_600_000_000)
        assert files_identical(a, b)

    def test_same_content_different_mtime_falls_back_to_md5(self, tmp_path: Path):
        a = write(tmp_path / "a", "same", mtime=1_600_000_000)
        b = write(tmp_path / "b", "same", mtime=1_700_000_000)
        assert files_identical(a, b)

    def test_different_content(self, tmp_path: Path):
        a = write(tmp_path / "a", "one!", mtime=1_600_000_000)
        b = write(tmp_path / "b", "two!", mtime=1_700_000_000)
        assert not files_identical(a, b)

    def test_missing_side(self, tmp_path: Path):
        a = write(tmp_path / "a", "x")
        assert not files_identical(a, tmp_path / "missing")
