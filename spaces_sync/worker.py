from __future__ import annotations

import datetime as dt
import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional

from .errors import CopyCancelled, SourceModifiedError, StoreBusyError
from .logging_setup import log_action
from .models import DiskState, PendingKind, WorkItem, ancestors_of
from .reconciler import Action, ActionKind, Reconciler
from .safecopy import CHUNK_SIZE, CancelToken, ensure_parent, remove_dir, remove_file, safe_copy
from .store import EntryStore
from .workqueue import WorkQueue

HEARTBEAT_SEC = 5.0

PENDING_FOR = {
    ActionKind.COPY: PendingKind.COPY,
    ActionKind.WRITEBACK: PendingKind.WRITEBACK,
    ActionKind.RECOVER: PendingKind.RECOVER,
    ActionKind.RECOVER_DIR: PendingKind.RECOVER,
    ActionKind.REMOVE: PendingKind.REMOVE,
    ActionKind.MKDIR: PendingKind.MKDIR,
    ActionKind.RMDIR: PendingKind.RMDIR,
    ActionKind.RELOCATE: PendingKind.MOVE,
}


# -------------------------
# Failure suppression
# -------------------------

class FailureTracker:
    """
    Tracks paths whose operation failed and suppresses repeated logs per-path for a hold window.
    Writes to failures.log on first failure and on each retry that still fails.
    """

    def __init__(self, failure_log_path: Optional[Path] = None, hold_sec: float = 30.0):
        self.failure_log_path = failure_log_path
        self.hold = dt.timedelta(seconds=hold_sec)
        self._next_report: dict[str, dt.datetime] = {}
        self._guard = threading.Lock()
        if self.failure_log_path is not None:
            self.failure_log_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def hold_sec(self) -> float:
        return self.hold.total_seconds()

    def should_report(self, path: str) -> bool:
        now = dt.datetime.now()
        with self._guard:
            nxt = self._next_report.get(path)
            return nxt is None or now >= nxt

    def mark_failed(self, path: str) -> None:
        with self._guard:
            self._next_report[path] = dt.datetime.now() + self.hold

    def clear(self, path: str) -> None:
        with self._guard:
            self._next_report.pop(path, None)

    def write_failure_log(self, path: str, reason: str, error: Exception) -> None:
        if self.failure_log_path is None:
            return
        ts = dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        line = f"{ts} | {reason} | {path} | {error}\n"
        try:
            with self.failure_log_path.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError:
            pass

    def maybe_report(
        self,
        logger: logging.Logger,
        action: str,
        path: str,
        reason: str,
        error: Exception,
        abs_path: Optional[Path] = None,
    ) -> None:
        if not self.should_report(path):
            return
        self.write_failure_log(path, reason, error)
        self.mark_failed(path)
        log_action(
            logger,
            action,
            f"FAILED ({reason}) {path} | {error}; retrying in {self.hold_sec:.0f}s",
            path=abs_path,
            is_dir=False,
            level=logging.ERROR,
        )


# -------------------------
# Worker
# -------------------------

class SyncWorker(threading.Thread):
    """The single consumer of the work queue. Only this thread writes file content."""

    def __init__(
        self,
        queue: WorkQueue,
        store: EntryStore,
        reconciler: Reconciler,
        failures: Optional[FailureTracker] = None,
        chunk_size: int = CHUNK_SIZE,
        logger: Optional[logging.Logger] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(daemon=True, name="spaces-sync-worker")
        self.queue = queue
        self.store = store
        self.reconciler = reconciler
        self.failures = failures or FailureTracker()
        self.chunk_size = chunk_size
        self.logger = logger or logging.getLogger("spaces_sync")
        self.stop_event = stop_event or threading.Event()

    @property
    def archives_root(self) -> Path:
        return self.reconciler.archives_root

    @property
    def spaces_root(self) -> Path:
        return self.reconciler.spaces_root

    def run(self) -> None:
        self.logger.info("WORKER: started")
        while not self.stop_event.is_set():
            got = self.queue.pop(timeout=0.5)
            if got is None:
                continue
            item, token = got
            try:
                self.process(item, token)
            except Exception as e:
                log_action(self.logger, "RETRY", f"worker error on {item.path} | {e}", level=logging.ERROR)
                self.logger.debug("worker traceback", exc_info=True)
            finally:
                self.queue.done(item)
        self.logger.info("WORKER: stopped")

    def _follow_up(self, *paths: str) -> None:
        out: list[str] = []
        for p in paths:
            out.append(p)
            out.extend(ancestors_of(p))
        self.queue.push_many(dict.fromkeys(out), "followup")

    def process(self, item: WorkItem, token: CancelToken) -> ActionKind:
        path = item.path
        try:
            action = self.reconciler.decide(path)
        except StoreBusyError:
            self.logger.debug("store busy, requeue %s", path)
            self.queue.push_later(path, "busy", 0.1)
            return ActionKind.NONE
        except OSError as e:
            self.failures.maybe_report(self.logger, "DECIDE", path, "inspect", e, abs_path=self.archives_root / path)
            self.queue.push_later(path, "retry", self.failures.hold_sec)
            return ActionKind.NONE

        if action.kind is ActionKind.NONE:
            return action.kind

        entry = action.entry
        try:
            changed = self._execute(action, token)
        except CopyCancelled:
            log_action(self.logger, "CANCEL", f"{action.kind.value} {path} superseded", path=self.spaces_root / path, is_dir=False)
            self._clear_pending(entry)
            self.queue.push(path, "cancelled")
            return action.kind
        except SourceModifiedError as e:
            self.logger.info("RESTART | %s | %s", path, e)
            self._clear_pending(entry)
            self.queue.push(path, "source-modified")
            return action.kind
        except StoreBusyError:
            self.logger.debug("store busy during %s of %s, requeue", action.kind.value, path)
            self.queue.push_later(path, "busy", 0.1)
            return action.kind
        except OSError as e:
            if entry is not None:
                try:
                    self.store.fail_pending(entry.id, str(e))
                except StoreBusyError:
                    self.logger.debug("could not record failure for %s (store busy)", path)
            self.failures.maybe_report(self.logger, action.kind.value.upper(), path, action.kind.value, e, abs_path=self.spaces_root / path)
            self.queue.push_later(path, "retry", self.failures.hold_sec)
            return action.kind

        self.failures.clear(path)
        if changed:
            self._follow_up(*(p for p in (path, action.target) if p))
        return action.kind

    def _clear_pending(self, entry) -> None:
        if entry is None:
            return
        try:
            self.store.clear_pending(entry.id)
        except StoreBusyError:
            self.logger.debug("could not clear pending marker for %s (store busy)", entry.path)

    def _heartbeat(self, entry_id: int):
        last = [time.monotonic()]

        def beat(_copied: int) -> None:
            now = time.monotonic()
            if now - last[0] < HEARTBEAT_SEC:
                return
            last[0] = now
            try:
                self.store.touch_pending(entry_id)
            except StoreBusyError:
                self.logger.debug("heartbeat skipped for %s", entry_id)

        return beat

    # -------------------------
    # Actions
    # -------------------------

    def _execute(self, action: Action, token: CancelToken) -> bool:
        entry = action.entry
        kind = action.kind
        if entry is not None and kind in PENDING_FOR:
            self.store.set_pending(entry.id, PENDING_FOR[kind])

        handler = getattr(self, f"_do_{kind.value.replace('-', '_')}")
        return handler(action, token)

    def _do_copy(self, action: Action, token: CancelToken) -> bool:
        entry = action.entry
        src = self.archives_root / action.path
        dst = self.spaces_root / action.path
        res = safe_copy(src, dst, token, self.chunk_size, on_chunk=self._heartbeat(entry.id))
        self.store.mark_synced(entry.id, res.source_mtime_ns, res.dest_mtime_ns, res.size)
        log_action(self.logger, "COPY", f"{action.path} ({res.size} bytes)", path=dst, is_dir=False)
        return True

    def _copy_back(self, action: Action, token: CancelToken, label: str) -> bool:
        entry = action.entry
        src = self.spaces_root / action.path
        dst = self.archives_root / action.path
        beat = self._heartbeat(entry.id) if entry is not None else None
        res = safe_copy(src, dst, token, self.chunk_size, on_chunk=beat)
        if entry is not None:
            st = os.stat(dst)
            self.store.rekey(entry.id, st.st_ino)
            self.store.mark_synced(st.st_ino, st.st_mtime_ns, res.source_mtime_ns, res.size)
        log_action(self.logger, label, f"{action.path} Spaces -> Archives ({res.size} bytes)", path=dst, is_dir=False)
        return True

    def _do_writeback(self, action: Action, token: CancelToken) -> bool:
        return self._copy_back(action, token, "WRITEBACK")

    def _do_recover(self, action: Action, token: CancelToken) -> bool:
        return self._copy_back(action, token, "RECOVER")

    def _do_recover_dir(self, action: Action, token: CancelToken) -> bool:
        src_dir = self.archives_root / action.path
        mirror_dir = self.spaces_root / action.path
        src_dir.mkdir(parents=True, exist_ok=True)
        if action.entry is not None:
            st = os.stat(src_dir)
            mirror = DiskState.probe(mirror_dir)
            self.store.rekey(action.entry.id, st.st_ino)
            self.store.mark_synced(st.st_ino, st.st_mtime_ns, mirror.mtime_ns if mirror else st.st_mtime_ns)
        log_action(self.logger, "RECOVER", f"folder {action.path}", path=src_dir, is_dir=True)
        try:
            children = [f"{action.path}/{child.name}" for child in mirror_dir.iterdir()]
        except FileNotFoundError:
            children = []
        self.queue.push_many(children, "recover")
        return True

    def _do_remove(self, action: Action, token: CancelToken) -> bool:
        entry = action.entry
        dst = self.spaces_root / action.path
        token.raise_if_cancelled()
        current = DiskState.probe(dst)
        if current is not None and current.mtime_ns != entry.synced_mirror_mtime:
            # Edited in Spaces after the decision was made: look again instead of deleting.
            raise SourceModifiedError(dst, "Spaces copy changed before removal")
        remove_file(dst)
        self.store.mark_removed(entry.id)
        log_action(self.logger, "REMOVE", f"{action.path}", path=dst, is_dir=False)
        return True

    def _do_mkdir(self, action: Action, token: CancelToken) -> bool:
        dst = self.spaces_root / action.path
        dst.mkdir(parents=True, exist_ok=True)
        src = DiskState.probe(self.archives_root / action.path)
        mirror = DiskState.probe(dst)
        self.store.mark_synced(
            action.entry.id,
            src.mtime_ns if src else action.entry.source_mtime or 0,
            mirror.mtime_ns if mirror else 0,
        )
        log_action(self.logger, "MKDIR", f"{action.path}", path=dst, is_dir=True)
        return True

    def _do_rmdir(self, action: Action, token: CancelToken) -> bool:
        dst = self.spaces_root / action.path
        if not remove_dir(dst):
            self.store.clear_pending(action.entry.id)
            if dst.exists():
                self.logger.debug("RMDIR | %s not empty yet", action.path)
                return False
        self.store.mark_removed(action.entry.id)
        log_action(self.logger, "RMDIR", f"{action.path}", path=dst, is_dir=True)
        return True

    def _do_relocate(self, action: Action, token: CancelToken) -> bool:
        entry = action.entry
        old, new = entry.path, action.target
        self.store.move(entry.id, new)
        old_m = self.spaces_root / old
        new_m = self.spaces_root / new
        if old_m.exists() and not new_m.exists():
            ensure_parent(new_m)
            os.rename(old_m, new_m)
        self.store.clear_pending(entry.id)
        log_action(self.logger, "MOVE", f"{old} -> {new}", path=self.archives_root / new, is_dir=entry.is_dir)
        self._follow_up(old)
        return True

    def _do_forget(self, action: Action, token: CancelToken) -> bool:
        if action.entry is not None:
            self.store.delete(action.entry.id)
        else:
            self.store.clear_mirror_origin(action.path)
        log_action(self.logger, "FORGET", f"{action.path}", path=self.archives_root / action.path, is_dir=False)
        parents = ancestors_of(action.path)
        if parents:
            self._follow_up(parents[0])
        return False

    def _do_requeue(self, action: Action, token: CancelToken) -> bool:
        return True
