from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Iterator, Optional

from .ignore import IgnoreMatcher
from .logging_setup import log_action
from .models import DiskState, EntryStatus, depth_of
from .store import EntryStore
from .workqueue import WorkQueue

SETTLED = (EntryStatus.SYNCED, EntryStatus.ARCHIVED)


def walk_tree(root: Path, ignore: IgnoreMatcher) -> Iterator[tuple[str, DiskState]]:
    """Yield (relative path, disk state) for everything under root, parents first."""
    stack = [""]
    while stack:
        rel_dir = stack.pop()
        try:
            with os.scandir(root / rel_dir if rel_dir else root) as it:
                children = sorted(it, key=lambda d: d.name)
        except (FileNotFoundError, NotADirectoryError, PermissionError):
            continue
        for child in children:
            if child.is_symlink():
                continue
            rel = f"{rel_dir}/{child.name}" if rel_dir else child.name
            is_dir = child.is_dir(follow_symlinks=False)
            if ignore.is_ignored(rel, is_dir=is_dir):
                continue
            state = DiskState.probe(child.path)
            if state is None:
                continue
            yield rel, state
            if state.is_dir:
                stack.append(rel)


class Rescanner(threading.Thread):
    """
    Startup seeding plus a periodic drift scan.

    The watcher is the fast path; this thread is the safety net. Every
    ``interval_sec`` it walks both trees and enqueues any path whose disk
    state disagrees with the store, so missed events (and renames under
    the path-only watcher) still converge.
    """

    def __init__(
        self,
        store: EntryStore,
        queue: WorkQueue,
        archives_root: Path,
        spaces_root: Path,
        ignore: IgnoreMatcher,
        interval_sec: float,
        stuck_after: float,
        logger: Optional[logging.Logger] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(daemon=True, name="spaces-sync-rescan")
        self.store = store
        self.queue = queue
        self.archives_root = archives_root
        self.spaces_root = spaces_root
        self.ignore = ignore
        self.interval_sec = max(1.0, float(interval_sec))
        self.stuck_after = stuck_after
        self.logger = logger or logging.getLogger("spaces_sync")
        self.stop_event = stop_event or threading.Event()

    def run(self) -> None:
        self.logger.info("RESCAN: started (interval=%.1fs)", self.interval_sec)
        while not self.stop_event.wait(self.interval_sec):
            try:
                pushed = self.scan_once()
                if pushed:
                    self.logger.debug("RESCAN: %d paths out of date", pushed)
            except Exception as e:
                log_action(self.logger, "RETRY", f"RESCAN loop error: {e}", level=logging.ERROR)
        self.logger.info("RESCAN: stopped")

    def seed(self) -> int:
        """Queue every path known on disk or in the store, parents first."""
        paths = {rel for rel, _ in walk_tree(self.archives_root, self.ignore)}
        paths.update(rel for rel, _ in walk_tree(self.spaces_root, self.ignore))
        paths.update(e.path for e in self.store.all_entries())
        paths.update(self.store.mirror_origins())
        ordered = sorted(paths, key=lambda p: (depth_of(p), p))
        self.queue.push_many(ordered, "startup")
        self.logger.info("Queued %d paths for startup reconciliation", len(ordered))
        return len(ordered)

    def scan_once(self) -> int:
        entries = {e.path: e for e in self.store.all_entries()}
        now = time.time()
        drift: set[str] = set()

        source_seen: set[str] = set()
        for rel, st in walk_tree(self.archives_root, self.ignore):
            if self.stop_event.is_set():
                return 0
            source_seen.add(rel)
            entry = entries.get(rel)
            if (
                entry is None
                or entry.id != st.inode
                or not entry.source_present
                or entry.source_mtime != st.mtime_ns
            ):
                drift.add(rel)

        mirror_seen: set[str] = set()
        for rel, st in walk_tree(self.spaces_root, self.ignore):
            if self.stop_event.is_set():
                return 0
            mirror_seen.add(rel)
            entry = entries.get(rel)
            if entry is None:
                if rel not in source_seen:
                    drift.add(rel)
                continue
            if not entry.mirror_present or (not st.is_dir and entry.mirror_mtime != st.mtime_ns):
                drift.add(rel)

        for path, entry in entries.items():
            if entry.source_present and path not in source_seen:
                drift.add(path)
            elif entry.mirror_present and path not in mirror_seen:
                drift.add(path)
            elif entry.pending is not None or entry.status(now, self.stuck_after) not in SETTLED:
                drift.add(path)

        drift.update(self.store.mirror_origins())
        ordered = sorted(drift, key=lambda p: (depth_of(p), p))
        self.queue.push_many(ordered, "rescan")
        return len(ordered)
