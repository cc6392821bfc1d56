"""
Recursive watchdog observers over both trees, coalesced into batches.

Every relevant event contributes its relative path plus all ancestor
directories. A ``Debouncer`` holds them until the trees have been quiet for
the settle window (or ``max_delay`` has passed since the first event) and
hands one ``ChangeBatch`` of distinct paths to the callback.

Rename handling depends on ``WatcherMode``:
- PATH_ONLY: a move reports only its old path; the new path is picked up
  later by its own events or by the drift scan.
- LINKED_PAIR: a move reports both paths and a ``Move`` hint linking them.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .ignore import IgnoreMatcher
from .models import ancestors_of, depth_of, normalize_rel

SOURCE_TREE = "archives"
MIRROR_TREE = "spaces"

# Opens and read-only closes are produced by our own copies; never react to them.
RELEVANT_EVENTS = {
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MOVED,
    EVENT_TYPE_CLOSED,
}


class WatcherMode(str, Enum):
    PATH_ONLY = "path-only"
    LINKED_PAIR = "linked-pair"


@dataclass(frozen=True)
class Move:
    tree: str
    old: str
    new: str


@dataclass
class ChangeBatch:
    paths: list[str] = field(default_factory=list)
    moves: list[Move] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.paths or self.moves)


class Debouncer(threading.Thread):
    def __init__(
        self,
        flush: Callable[[ChangeBatch], None],
        settle_sec: float = 0.3,
        max_delay_sec: float = 2.0,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(daemon=True, name="spaces-sync-debounce")
        self._flush = flush
        self.settle_sec = settle_sec
        self.max_delay_sec = max(settle_sec, max_delay_sec)
        self.logger = logger or logging.getLogger("spaces_sync")
        self._cond = threading.Condition()
        self._paths: set[str] = set()
        self._moves: list[Move] = []
        self._first_at: Optional[float] = None
        self._last_at: Optional[float] = None
        self._stopping = False

    def add(self, paths: Iterable[str], moves: Iterable[Move] = ()) -> None:
        with self._cond:
            now = time.monotonic()
            before = len(self._paths) + len(self._moves)
            self._paths.update(paths)
            self._moves.extend(moves)
            if len(self._paths) + len(self._moves) == before:
                return
            if self._first_at is None:
                self._first_at = now
            self._last_at = now
            self._cond.notify_all()

    def _take(self) -> ChangeBatch:
        moved_to = [m.new for m in self._moves]
        rest = sorted(self._paths.difference(moved_to), key=lambda p: (depth_of(p), p))
        ordered = list(dict.fromkeys([p for p in moved_to if p in self._paths] + rest))
        batch = ChangeBatch(paths=ordered, moves=list(self._moves))
        self._paths.clear()
        self._moves.clear()
        self._first_at = None
        self._last_at = None
        return batch

    def run(self) -> None:
        while True:
            with self._cond:
                while self._first_at is None and not self._stopping:
                    self._cond.wait()
                if self._stopping:
                    return
                while not self._stopping:
                    now = time.monotonic()
                    deadline = min(self._last_at + self.settle_sec, self._first_at + self.max_delay_sec)
                    if now >= deadline:
                        break
                    self._cond.wait(deadline - now)
                if self._stopping:
                    return
                batch = self._take()
            try:
                self._flush(batch)
            except Exception as e:
                self.logger.error("change batch failed (%d paths) | %s", len(batch.paths), e, exc_info=True)

    def stop(self) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()


class TreeEventHandler(FileSystemEventHandler):
    def __init__(
        self,
        tree: str,
        root: Path,
        ignore: IgnoreMatcher,
        debouncer: Debouncer,
        mode: WatcherMode = WatcherMode.LINKED_PAIR,
    ):
        self.tree = tree
        self.root = Path(root)
        self.ignore = ignore
        self.debouncer = debouncer
        self.mode = mode

    def _rel(self, raw_path) -> Optional[str]:
        try:
            rel = Path(os.fsdecode(raw_path)).relative_to(self.root)
        except ValueError:
            return None
        rel_posix = normalize_rel(rel.as_posix())
        return rel_posix or None

    def _keep(self, rel: Optional[str], is_dir: bool) -> bool:
        return rel is not None and not self.ignore.is_ignored(rel, is_dir=is_dir)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in RELEVANT_EVENTS:
            return

        src = self._rel(event.src_path)
        is_dir = bool(event.is_directory)
        paths: list[str] = []
        moves: list[Move] = []

        if self._keep(src, is_dir):
            paths.append(src)

        if event.event_type == EVENT_TYPE_MOVED and self.mode is WatcherMode.LINKED_PAIR:
            dest = self._rel(getattr(event, "dest_path", ""))
            if self._keep(dest, is_dir):
                paths.append(dest)
                if src in paths:
                    moves.append(Move(self.tree, src, dest))

        if not paths:
            return
        expanded = []
        for p in paths:
            expanded.append(p)
            expanded.extend(ancestors_of(p))
        self.debouncer.add(expanded, moves)


class Watcher:
    def __init__(
        self,
        archives_root: Path,
        spaces_root: Path,
        ignore: IgnoreMatcher,
        on_batch: Callable[[ChangeBatch], None],
        mode: WatcherMode = WatcherMode.LINKED_PAIR,
        settle_sec: float = 0.3,
        max_delay_sec: float = 2.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.archives_root = archives_root
        self.spaces_root = spaces_root
        self.mode = WatcherMode(mode)
        self.logger = logger or logging.getLogger("spaces_sync")
        self.debouncer = Debouncer(on_batch, settle_sec=settle_sec, max_delay_sec=max_delay_sec, logger=self.logger)
        self.handlers = {
            SOURCE_TREE: TreeEventHandler(SOURCE_TREE, archives_root, ignore, self.debouncer, self.mode),
            MIRROR_TREE: TreeEventHandler(MIRROR_TREE, spaces_root, ignore, self.debouncer, self.mode),
        }
        self.observer = Observer()

    def start(self) -> None:
        self.debouncer.start()
        self.observer.schedule(self.handlers[SOURCE_TREE], str(self.archives_root), recursive=True)
        self.observer.schedule(self.handlers[MIRROR_TREE], str(self.spaces_root), recursive=True)
        self.observer.start()
        self.logger.info("Watching %s and %s (%s)", self.archives_root, self.spaces_root, self.mode.value)

    def stop(self) -> None:
        self.observer.stop()
        self.observer.join(timeout=10)
        self.debouncer.stop()
        self.debouncer.join(timeout=10)
