"""End-to-end tests: a running daemon over real temporary trees."""

from __future__ import annotations

import os
import time

import pytest

from conftest import poll, write
from spaces_sync.daemon import SyncDaemon
from spaces_sync.errors import EntryNotFoundError
from spaces_sync.safecopy import TEMP_SUFFIX, safe_copy

TIMEOUT = 15.0
T0 = 1_600_000_000
T1 = 1_700_000_000


def entry_at(daemon: SyncDaemon, path: str):
    for e in daemon.list_entries():
        if e["path"] == path:
            return e
    return None


def status_of(daemon: SyncDaemon, path: str):
    e = entry_at(daemon, path)
    return e["status"] if e else None


def wait_status(daemon: SyncDaemon, path: str, status: str, timeout: float = TIMEOUT) -> bool:
    return poll(lambda: status_of(daemon, path) == status, timeout=timeout)


def leftovers(*roots) -> list:
    return [p for root in roots for p in root.rglob(f"*{TEMP_SUFFIX}")]


def hook_copies(monkeypatch, on_first=None, per_chunk_sleep=0.0) -> list:
    """Route the worker's copies through a wrapper that can act mid-transfer."""
    fired: list = []

    def copy(src, dst, token=None, chunk_size=4096, on_chunk=None):
        def chunk(copied):
            if on_first is not None and not fired:
                fired.append(copied)
                on_first(src)
            if per_chunk_sleep:
                time.sleep(per_chunk_sleep)
            if on_chunk is not None:
                on_chunk(copied)

        return safe_copy(src, dst, token, chunk_size, on_chunk=chunk)

    monkeypatch.setattr("spaces_sync.worker.safe_copy", copy)
    return fired


class TestSelection:
    def test_select_materializes_byte_identical_copy(self, trees, make_daemon):
        archives, spaces = trees
        data = os.urandom(1024)
        write(archives / "f.bin", data)
        daemon = make_daemon()
        assert wait_status(daemon, "f.bin", "archived")

        daemon.select([entry_at(daemon, "f.bin")["inode"]])

        assert wait_status(daemon, "f.bin", "synced")
        assert (spaces / "f.bin").read_bytes() == data
        assert entry_at(daemon, "f.bin")["selected"] is True

    def test_reselecting_synced_entry_writes_nothing(self, trees, make_daemon):
        archives, spaces = trees
        write(archives / "f.txt", "hello")
        daemon = make_daemon()
        assert wait_status(daemon, "f.txt", "archived")
        ino = entry_at(daemon, "f.txt")["inode"]
        daemon.select([ino])
        assert wait_status(daemon, "f.txt", "synced")
        daemon.wait_idle(5)
        before = os.stat(spaces / "f.txt")

        daemon.select([ino])
        daemon.wait_idle(5)

        after = os.stat(spaces / "f.txt")
        assert (after.st_ino, after.st_mtime_ns) == (before.st_ino, before.st_mtime_ns)
        assert status_of(daemon, "f.txt") == "synced"

    def test_deselect_removes_mirror_copy(self, trees, make_daemon):
        archives, spaces = trees
        write(archives / "f.txt", "hello")
        daemon = make_daemon()
        assert wait_status(daemon, "f.txt", "archived")
        ino = entry_at(daemon, "f.txt")["inode"]
        daemon.select([ino])
        assert wait_status(daemon, "f.txt", "synced")

        daemon.deselect([ino])

        assert wait_status(daemon, "f.txt", "archived")
        assert not (spaces / "f.txt").exists()
        assert (archives / "f.txt").read_text() == "hello"

    @pytest.mark.parametrize("calls, expected", [(20, "archived"), (21, "synced")])
    def test_toggle_converges_to_last_call(self, trees, make_daemon, calls, expected):
        archives, spaces = trees
        write(archives / "t.bin", os.urandom(256 * 1024))
        daemon = make_daemon()
        assert wait_status(daemon, "t.bin", "archived")
        ino = entry_at(daemon, "t.bin")["inode"]

        for i in range(calls):
            if i % 2 == 0:
                daemon.select([ino])
            else:
                daemon.deselect([ino])

        assert wait_status(daemon, "t.bin", expected)
        daemon.wait_idle(5)
        assert status_of(daemon, "t.bin") == expected
        assert (spaces / "t.bin").exists() == (expected == "synced")
        assert leftovers(archives, spaces) == []

    def test_directory_selection_propagates(self, trees, make_daemon):
        archives, spaces = trees
        payloads = {f"d/sub/f{i}.bin": os.urandom(2048) for i in range(5)}
        for rel, data in payloads.items():
            write(archives / rel, data)
        daemon = make_daemon()
        assert poll(lambda: all(status_of(daemon, p) == "archived" for p in payloads), timeout=TIMEOUT)

        daemon.select([entry_at(daemon, "d")["inode"]])

        assert poll(lambda: all(status_of(daemon, p) == "synced" for p in payloads), timeout=TIMEOUT)
        for rel, data in payloads.items():
            assert (spaces / rel).read_bytes() == data
        assert status_of(daemon, "d") == "synced"
        assert status_of(daemon, "d/sub") == "synced"

    def test_unknown_id_is_rejected(self, trees, make_daemon):
        archives, _ = trees
        write(archives / "f.txt", "x")
        daemon = make_daemon()
        assert wait_status(daemon, "f.txt", "archived")
        with pytest.raises(EntryNotFoundError):
            daemon.select([entry_at(daemon, "f.txt")["inode"], 999999999])
        assert entry_at(daemon, "f.txt")["selected"] is False


class TestExternalChanges:
    def test_source_overwrite_propagates(self, trees, make_daemon):
        archives, spaces = trees
        write(archives / "f.txt", "version one", mtime=1_600_000_000)
        daemon = make_daemon()
        assert wait_status(daemon, "f.txt", "archived")
        daemon.select([entry_at(daemon, "f.txt")["inode"]])
        assert wait_status(daemon, "f.txt", "synced")

        write(archives / "f.txt", "version two, longer", mtime=1_700_000_000)

        assert poll(lambda: (spaces / "f.txt").read_text() == "version two, longer", timeout=TIMEOUT)
        assert wait_status(daemon, "f.txt", "synced")

    def test_archived_source_delete_drops_entry(self, trees, make_daemon):
        archives, _ = trees
        write(archives / "f.txt", "x")
        daemon = make_daemon()
        assert wait_status(daemon, "f.txt", "archived")

        (archives / "f.txt").unlink()

        assert poll(lambda: entry_at(daemon, "f.txt") is None, timeout=TIMEOUT)

    def test_deleted_source_is_recovered_from_spaces(self, trees, make_daemon):
        archives, spaces = trees
        data = os.urandom(4096)
        write(archives / "keep.bin", data)
        daemon = make_daemon()
        assert wait_status(daemon, "keep.bin", "archived")
        daemon.select([entry_at(daemon, "keep.bin")["inode"]])
        assert wait_status(daemon, "keep.bin", "synced")

        (archives / "keep.bin").unlink()

        assert poll(lambda: (archives / "keep.bin").exists(), timeout=TIMEOUT)
        assert wait_status(daemon, "keep.bin", "synced")
        assert (archives / "keep.bin").read_bytes() == (spaces / "keep.bin").read_bytes() == data

    def test_file_created_in_spaces_reaches_archives(self, trees, make_daemon):
        archives, spaces = trees
        daemon = make_daemon()

        write(spaces / "notes.txt", "written in spaces")

        assert poll(lambda: (archives / "notes.txt").exists(), timeout=TIMEOUT)
        assert wait_status(daemon, "notes.txt", "synced")
        assert (archives / "notes.txt").read_text() == "written in spaces"

    def test_spaces_edit_is_written_back(self, trees, make_daemon):
        archives, spaces = trees
        write(archives / "doc.txt", "draft", mtime=1_600_000_000)
        daemon = make_daemon()
        assert wait_status(daemon, "doc.txt", "archived")
        daemon.select([entry_at(daemon, "doc.txt")["inode"]])
        assert wait_status(daemon, "doc.txt", "synced")

        write(spaces / "doc.txt", "final version", mtime=1_700_000_000)

        assert poll(lambda: (archives / "doc.txt").read_text() == "final version", timeout=TIMEOUT)
        assert wait_status(daemon, "doc.txt", "synced")

    def test_source_rename_carries_selection(self, trees, make_daemon):
        archives, spaces = trees
        write(archives / "old.txt", "moving")
        daemon = make_daemon()
        assert wait_status(daemon, "old.txt", "archived")
        ino = entry_at(daemon, "old.txt")["inode"]
        daemon.select([ino])
        assert wait_status(daemon, "old.txt", "synced")

        os.rename(archives / "old.txt", archives / "new.txt")

        assert wait_status(daemon, "new.txt", "synced")
        assert poll(lambda: not (spaces / "old.txt").exists(), timeout=TIMEOUT)
        assert (spaces / "new.txt").read_text() == "moving"
        assert entry_at(daemon, "new.txt")["inode"] == ino


class TestInterruption:
    def test_deselect_during_copy_leaves_no_artifacts(self, trees, make_daemon):
        archives, spaces = trees
        write(archives / "big.bin", os.urandom(8 * 1024 * 1024))
        daemon = make_daemon(chunk_size=4096)
        assert wait_status(daemon, "big.bin", "archived")
        ino = entry_at(daemon, "big.bin")["inode"]

        daemon.select([ino])
        poll(lambda: status_of(daemon, "big.bin") == "copying", timeout=5)
        daemon.deselect([ino])

        assert wait_status(daemon, "big.bin", "archived")
        daemon.wait_idle(5)
        assert not (spaces / "big.bin").exists()
        assert leftovers(archives, spaces) == []

    def test_source_deleted_mid_copy_drops_entry(self, trees, make_daemon, monkeypatch):
        archives, spaces = trees
        write(archives / "big.bin", os.urandom(64 * 1024))
        daemon = make_daemon(chunk_size=4096)
        assert wait_status(daemon, "big.bin", "archived")
        fired = hook_copies(monkeypatch, on_first=os.unlink)

        daemon.select([entry_at(daemon, "big.bin")["inode"]])

        assert poll(lambda: fired and entry_at(daemon, "big.bin") is None, timeout=TIMEOUT)
        daemon.wait_idle(5)
        assert not (spaces / "big.bin").exists()
        assert leftovers(archives, spaces) == []

    def test_source_touched_mid_copy_restarts_with_new_mtime(self, trees, make_daemon, monkeypatch):
        archives, spaces = trees
        data = os.urandom(64 * 1024)
        write(archives / "big.bin", data, mtime=T0)
        daemon = make_daemon(chunk_size=4096)
        assert wait_status(daemon, "big.bin", "archived")
        fired = hook_copies(monkeypatch, on_first=lambda src: os.utime(src, (T1, T1)))

        daemon.select([entry_at(daemon, "big.bin")["inode"]])

        assert poll(lambda: fired, timeout=TIMEOUT)
        assert wait_status(daemon, "big.bin", "synced")
        daemon.wait_idle(5)
        assert (spaces / "big.bin").read_bytes() == data
        assert os.stat(spaces / "big.bin").st_mtime_ns == T1 * 10**9
        assert entry_at(daemon, "big.bin")["mtime"] == T1
        assert leftovers(archives, spaces) == []

    def test_periodic_rescan_lets_long_copy_finish(self, trees, make_daemon, monkeypatch):
        archives, spaces = trees
        data = os.urandom(2 * 1024 * 1024)
        write(archives / "big.bin", data)
        daemon = make_daemon(chunk_size=64 * 1024, scan_interval_sec=1)
        assert wait_status(daemon, "big.bin", "archived")
        hook_copies(monkeypatch, per_chunk_sleep=0.1)

        daemon.select([entry_at(daemon, "big.bin")["inode"]])

        assert wait_status(daemon, "big.bin", "synced", timeout=20)
        assert (spaces / "big.bin").read_bytes() == data
        assert leftovers(archives, spaces) == []

    def test_startup_sweeps_leftover_transfers(self, trees, make_daemon):
        archives, spaces = trees
        write(archives / "f.txt", "x")
        stale_a = write(archives / ("f.txt" + TEMP_SUFFIX), "partial")
        stale_s = write(spaces / "d" / ("g.txt" + TEMP_SUFFIX), "partial")

        daemon = make_daemon()

        assert not stale_a.exists()
        assert not stale_s.exists()
        assert wait_status(daemon, "f.txt", "archived")
        assert all(not e["path"].endswith(TEMP_SUFFIX) for e in daemon.list_entries())

    def test_selection_survives_restart(self, tmp_path, trees, logger):
        archives, spaces = trees
        write(archives / "f.txt", "persist me")
        db = tmp_path / "state" / "restart.db"
        opts = dict(settle_sec=0.05, scan_interval_sec=0, logger=logger)

        with SyncDaemon(archives, spaces, db, **opts) as first:
            assert wait_status(first, "f.txt", "archived")
            first.select([entry_at(first, "f.txt")["inode"]])
            assert wait_status(first, "f.txt", "synced")

        (spaces / "f.txt").unlink()

        with SyncDaemon(archives, spaces, db, **opts) as second:
            assert entry_at(second, "f.txt")["selected"] is True
            assert status_of(second, "f.txt") != "synced" or (spaces / "f.txt").exists()
            assert poll((spaces / "f.txt").exists, timeout=TIMEOUT)
            assert wait_status(second, "f.txt", "synced")
            assert (spaces / "f.txt").read_text() == "persist me"


class TestListing:
    def test_scoping_by_parent_id_and_path(self, trees, make_daemon):
        archives, _ = trees
        write(archives / "top.txt", "t")
        write(archives / "d" / "a.txt", "a")
        write(archives / "d" / "e" / "b.txt", "b")
        daemon = make_daemon()
        assert wait_status(daemon, "d/e/b.txt", "archived")

        d = entry_at(daemon, "d")
        assert [e["path"] for e in daemon.list_entries(parent=d["inode"])] == ["d/a.txt", "d/e"]
        assert [e["path"] for e in daemon.list_entries(path="d")] == ["d/a.txt", "d/e"]
        assert [e["path"] for e in daemon.list_entries(path="/")] == ["d", "top.txt"]
        assert daemon.list_entries(parent=123456789) == []
        assert entry_at(daemon, "d/a.txt")["parent_ino"] == d["inode"]

    def test_get_entry(self, trees, make_daemon):
        archives, _ = trees
        write(archives / "f.txt", "12345")
        daemon = make_daemon()
        assert wait_status(daemon, "f.txt", "archived")
        ino = entry_at(daemon, "f.txt")["inode"]

        got = daemon.get_entry(ino)

        assert got["name"] == "f.txt"
        assert got["type"] == "file"
        assert got["size"] == 5
        assert daemon.get_entry(123456789) is None
