"""Shared pytest fixtures for spaces-sync tests."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

import pytest

from spaces_sync.daemon import SyncDaemon
from spaces_sync.store import EntryStore
from spaces_sync.workqueue import WorkQueue


@pytest.fixture
def logger():
    """A quiet logger so tests don't spray colored output."""
    log = logging.getLogger("spaces_sync.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def trees(tmp_path: Path):
    """(archives, spaces) directories, resolved."""
    archives = tmp_path / "archives"
    spaces = tmp_path / "spaces"
    archives.mkdir()
    spaces.mkdir()
    return archives.resolve(), spaces.resolve()


@pytest.fixture
def store(tmp_path: Path, logger):
    s = EntryStore(tmp_path / "state" / "entries.db", logger=logger)
    yield s
    s.close()


@pytest.fixture
def queue():
    q = WorkQueue()
    yield q
    q.close()


def write(path: Path, data: bytes | str, mtime: float | None = None) -> Path:
    """Write a file (creating parents) and optionally pin its mtime."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        data = data.encode("utf-8")
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def poll(predicate, timeout: float = 10.0, interval: float = 0.05):
    """Poll until predicate() is truthy; return its last value."""
    deadline = time.monotonic() + timeout
    value = predicate()
    while not value and time.monotonic() < deadline:
        time.sleep(interval)
        value = predicate()
    return value


@pytest.fixture
def wait_for():
    return poll


@pytest.fixture
def make_daemon(tmp_path: Path, trees, logger):
    """Factory for a started daemon over the ``trees`` fixture; stopped at teardown."""
    started: list[SyncDaemon] = []

    def _make(**kwargs) -> SyncDaemon:
        archives, spaces = trees
        opts = dict(
            settle_sec=0.05,
            max_delay_sec=0.5,
            scan_interval_sec=0,
            retry_hold_sec=0.5,
            failure_log=tmp_path / "logs" / "failures.log",
            logger=logger,
        )
        opts.update(kwargs)
        daemon = SyncDaemon(archives, spaces, tmp_path / "state" / "daemon.db", **opts)
        daemon.start()
        started.append(daemon)
        return daemon

    yield _make
    for d in started:
        d.stop()
