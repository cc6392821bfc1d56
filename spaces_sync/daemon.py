from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Iterable, Optional, Union

from .config import (
    DEFAULT_MAX_DELAY_SEC,
    DEFAULT_RETRY_HOLD_SEC,
    DEFAULT_SCAN_INTERVAL_SEC,
    DEFAULT_SETTLE_SEC,
    DEFAULT_STUCK_TIMEOUT_SEC,
    AppConfig,
)
from .ignore import IgnoreMatcher
from .logging_setup import log_action
from .models import DiskState, Entry, normalize_rel
from .reconciler import Reconciler
from .safecopy import CHUNK_SIZE, sweep_temp_files
from .scanner import Rescanner
from .store import EntryStore, retry_busy
from .watcher import ChangeBatch, Watcher, WatcherMode
from .worker import FailureTracker, SyncWorker
from .workqueue import WorkQueue


class SyncDaemon:
    """
    Owns both trees: the store, the queue and its single worker, the
    watcher and the rescanner. ``select``/``deselect``/``list_entries`` are
    the whole surface an API layer needs.
    """

    def __init__(
        self,
        archives_root: Union[str, Path],
        spaces_root: Union[str, Path],
        db_path: Union[str, Path],
        ignore_patterns: Iterable[str] = (),
        settle_sec: float = DEFAULT_SETTLE_SEC,
        max_delay_sec: float = DEFAULT_MAX_DELAY_SEC,
        scan_interval_sec: float = DEFAULT_SCAN_INTERVAL_SEC,
        stuck_timeout_sec: float = DEFAULT_STUCK_TIMEOUT_SEC,
        retry_hold_sec: float = DEFAULT_RETRY_HOLD_SEC,
        chunk_size: int = CHUNK_SIZE,
        watcher_mode: Union[str, WatcherMode] = WatcherMode.LINKED_PAIR,
        failure_log: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        watch: bool = True,
    ):
        self.archives_root = Path(archives_root).expanduser().resolve()
        self.spaces_root = Path(spaces_root).expanduser().resolve()
        self.spaces_root.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger("spaces_sync")
        self.stuck_timeout_sec = stuck_timeout_sec
        self.scan_interval_sec = scan_interval_sec
        self.watch = watch

        self.stop_event = threading.Event()
        self.ignore = IgnoreMatcher(ignore_patterns)
        self.store = EntryStore(db_path, logger=self.logger)
        self.queue = WorkQueue()
        self.reconciler = Reconciler(self.store, self.queue, self.archives_root, self.spaces_root, logger=self.logger)
        self.worker = SyncWorker(
            self.queue,
            self.store,
            self.reconciler,
            failures=FailureTracker(failure_log, hold_sec=retry_hold_sec),
            chunk_size=chunk_size,
            logger=self.logger,
            stop_event=self.stop_event,
        )
        self.scanner = Rescanner(
            self.store,
            self.queue,
            self.archives_root,
            self.spaces_root,
            self.ignore,
            interval_sec=scan_interval_sec or 1.0,
            stuck_after=stuck_timeout_sec,
            logger=self.logger,
            stop_event=self.stop_event,
        )
        self.watcher: Optional[Watcher] = None
        if watch:
            self.watcher = Watcher(
                self.archives_root,
                self.spaces_root,
                self.ignore,
                self._on_batch,
                mode=WatcherMode(watcher_mode),
                settle_sec=settle_sec,
                max_delay_sec=max_delay_sec,
                logger=self.logger,
            )
        self._started = False

    @classmethod
    def from_config(cls, cfg: AppConfig, logger: Optional[logging.Logger] = None) -> "SyncDaemon":
        return cls(
            cfg.archives_dir,
            cfg.spaces_dir,
            cfg.db_path,
            ignore_patterns=cfg.ignore_patterns,
            settle_sec=cfg.settle_sec,
            max_delay_sec=cfg.max_delay_sec,
            scan_interval_sec=cfg.scan_interval_sec,
            stuck_timeout_sec=cfg.stuck_timeout_sec,
            retry_hold_sec=cfg.retry_hold_sec,
            chunk_size=cfg.chunk_size,
            watcher_mode=cfg.watcher_mode,
            failure_log=Path(cfg.log_dir).expanduser().resolve() / "failures.log",
            logger=logger,
        )

    # -------------------------
    # Lifecycle
    # -------------------------

    def start(self) -> None:
        if self._started:
            return
        for root in (self.archives_root, self.spaces_root):
            for tmp in sweep_temp_files(root, self.logger):
                log_action(self.logger, "SWEEP", f"leftover transfer {tmp}", path=tmp, is_dir=False)
        cleared = self.store.clear_all_pending()
        if cleared:
            self.logger.info("Cleared %d unfinished actions from a previous run", cleared)
        self._refresh_observed()

        if self.watcher is not None:
            self.watcher.start()
        self.worker.start()
        self.scanner.seed()
        if self.scan_interval_sec > 0:
            self.scanner.start()
        self._started = True
        self.logger.info("Archives: %s", self.archives_root)
        self.logger.info("Spaces  : %s", self.spaces_root)

    def _refresh_observed(self) -> None:
        """Re-read both trees for stored entries so reads never report state from before the restart."""
        for entry in self.store.all_entries():
            src = DiskState.probe(self.archives_root / entry.path)
            if src is None or src.inode != entry.id:
                # moved or deleted while stopped; the startup pass sorts it out
                continue
            self.store.observe(entry.id, src, DiskState.probe(self.spaces_root / entry.path))

    def stop(self) -> None:
        self.stop_event.set()
        self.queue.close()
        if self.watcher is not None and self._started:
            self.watcher.stop()
        if self.worker.is_alive():
            self.worker.join(timeout=10)
        if self.scanner.is_alive():
            self.scanner.join(timeout=10)
        self.store.close()
        self._started = False
        self.logger.info("Stopped.")

    def __enter__(self) -> "SyncDaemon":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def _on_batch(self, batch: ChangeBatch) -> None:
        self.reconciler.note_moves(batch.moves)
        self.queue.push_many(batch.paths, "watch")

    # -------------------------
    # Desired state
    # -------------------------

    def select(self, ids: Iterable[int]) -> list[dict]:
        """Mark entries (and the current descendants of directories) selected."""
        ids = list(ids)
        entries = retry_busy(lambda: self.store.set_selected(ids, True))
        self.queue.push_many([e.path for e in entries], "select")
        return [self._public(e) for e in entries]

    def deselect(self, ids: Iterable[int]) -> list[dict]:
        ids = list(ids)
        entries = retry_busy(lambda: self.store.set_selected(ids, False))
        # Children first so each directory is empty by the time it is looked at.
        self.queue.push_many([e.path for e in reversed(entries)], "deselect")
        return [self._public(e) for e in entries]

    # -------------------------
    # Reads
    # -------------------------

    def _public(self, entry: Entry) -> dict:
        return entry.to_dict(entry.status(time.time(), self.stuck_timeout_sec))

    def list_entries(self, parent: Optional[int] = None, path: Optional[str] = None) -> list[dict]:
        """All entries, or the direct children of one directory given by id or relative path."""
        if parent is not None:
            owner = self.store.get(parent)
            if owner is None:
                return []
            entries = self.store.children(owner.path)
        elif path is not None:
            entries = self.store.children(normalize_rel(path))
        else:
            entries = self.store.all_entries()
        return [self._public(e) for e in entries]

    def get_entry(self, entry_id: int) -> Optional[dict]:
        entry = self.store.get(entry_id)
        return self._public(entry) if entry is not None else None

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.queue.join(timeout)
