"""
Per-path convergence decisions.

``Reconciler.decide(path)`` takes a fresh ``Snapshot`` of one relative path
(entry record, Archives state, Spaces state, mirror-origin record) and runs
the passes in fixed order. The first pass that yields an action ends the
cycle; the worker carries the action out and pushes the path again, so
every cycle starts from what is on disk and in the store at that moment.

recover   Archives copy gone: restore it from Spaces, or forget the entry
register  Archives path with no entry: create one (or follow its inode)
dirty     record observed mtimes; decide which side changed since sync
enforce   drive Spaces toward ``selected``
origin    Spaces-only path never seen before: record it, look again later
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from .models import DiskState, Entry, EntryType
from .safecopy import files_identical
from .store import EntryStore
from .watcher import SOURCE_TREE, Move
from .workqueue import WorkQueue
from .logging_setup import log_action


class ActionKind(str, Enum):
    NONE = "none"
    COPY = "copy"
    WRITEBACK = "writeback"
    RECOVER = "recover"
    RECOVER_DIR = "recover-dir"
    REMOVE = "remove"
    MKDIR = "mkdir"
    RMDIR = "rmdir"
    RELOCATE = "relocate"
    FORGET = "forget"
    REQUEUE = "requeue"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    path: str
    entry: Optional[Entry] = None
    target: Optional[str] = None


@dataclass
class Snapshot:
    path: str
    entry: Optional[Entry]
    source: Optional[DiskState]
    mirror: Optional[DiskState]
    mirror_recorded: bool


class Reconciler:
    def __init__(
        self,
        store: EntryStore,
        queue: WorkQueue,
        archives_root: Path,
        spaces_root: Path,
        logger: Optional[logging.Logger] = None,
        move_ttl: float = 60.0,
    ):
        self.store = store
        self.queue = queue
        self.archives_root = archives_root
        self.spaces_root = spaces_root
        self.logger = logger or logging.getLogger("spaces_sync")
        self.move_ttl = move_ttl
        self._moves: dict[str, tuple[str, float]] = {}
        self._conflicts: set[int] = set()
        self._hardlinks: set[str] = set()

    def source_path(self, rel: str) -> Path:
        return self.archives_root / rel

    def mirror_path(self, rel: str) -> Path:
        return self.spaces_root / rel

    def snapshot(self, rel: str) -> Snapshot:
        return Snapshot(
            path=rel,
            entry=self.store.get_by_path(rel),
            source=DiskState.probe(self.source_path(rel)),
            mirror=DiskState.probe(self.mirror_path(rel)),
            mirror_recorded=self.store.has_mirror_origin(rel),
        )

    # -------------------------
    # Linked-pair rename hints
    # -------------------------

    def note_moves(self, moves: Iterable[Move]) -> None:
        now = time.monotonic()
        for old, (_, at) in list(self._moves.items()):
            if now - at > self.move_ttl:
                del self._moves[old]
        for move in moves:
            if move.tree == SOURCE_TREE:
                self._moves[move.old] = (move.new, now)

    def _moved_target(self, snap: Snapshot) -> Optional[str]:
        hint = self._moves.get(snap.path)
        if hint is None or snap.entry is None:
            return None
        new, at = hint
        if time.monotonic() - at > self.move_ttl:
            return None
        moved = DiskState.probe(self.source_path(new))
        if moved is not None and moved.inode == snap.entry.id:
            return new
        return None

    def _holds_inode(self, rel: str, inode: int) -> bool:
        st = DiskState.probe(self.source_path(rel))
        return st is not None and st.inode == inode

    # -------------------------
    # Passes
    # -------------------------

    def decide(self, rel: str) -> Action:
        snap = self.snapshot(rel)
        for step in (
            self._recover,
            self._register,
            self._detect_dirty,
            self._enforce,
            self._track_mirror_origin,
        ):
            action = step(snap)
            if action is not None:
                return action
        return Action(ActionKind.NONE, rel, snap.entry)

    def _recover(self, snap: Snapshot) -> Optional[Action]:
        if snap.source is not None:
            return None

        if snap.entry is not None:
            target = self._moved_target(snap)
            if target is not None:
                return Action(ActionKind.RELOCATE, snap.path, snap.entry, target=target)

        if snap.mirror is not None:
            if snap.entry is None and not snap.mirror_recorded:
                return None
            kind = ActionKind.RECOVER_DIR if snap.mirror.is_dir else ActionKind.RECOVER
            return Action(kind, snap.path, snap.entry)

        if snap.entry is None and not snap.mirror_recorded:
            return Action(ActionKind.NONE, snap.path)
        if self.queue.has_pending(snap.path):
            return Action(ActionKind.NONE, snap.path, snap.entry)
        return Action(ActionKind.FORGET, snap.path, snap.entry)

    def _register(self, snap: Snapshot) -> Optional[Action]:
        src = snap.source
        if src is None:
            return None

        entry = snap.entry
        if entry is not None and entry.type is not src.type:
            self.store.delete(entry.id)
            log_action(self.logger, "FORGET", f"(type changed) {snap.path}", path=self.source_path(snap.path), is_dir=src.is_dir)
            entry = snap.entry = None

        if entry is not None:
            if entry.id == src.inode:
                return None
            other = self.store.get(src.inode)
            if other is not None and other.path != snap.path and self._holds_inode(other.path, src.inode):
                return self._skip_hardlink(snap.path, other.path)
            self.store.rekey(entry.id, src.inode)
            snap.entry = self.store.get(src.inode)
            self.logger.debug("REKEY | %s %s -> %s", snap.path, entry.id, src.inode)
            return None

        other = self.store.get(src.inode)
        if other is not None:
            if self._holds_inode(other.path, src.inode):
                return self._skip_hardlink(snap.path, other.path)
            return Action(ActionKind.RELOCATE, snap.path, other, target=snap.path)

        mirror = snap.mirror
        new = Entry(
            id=src.inode,
            path=snap.path,
            type=src.type,
            selected=mirror is not None,
            source_present=True,
            mirror_present=mirror is not None,
            source_mtime=src.mtime_ns,
            source_size=None if src.is_dir else src.size,
            mirror_mtime=mirror.mtime_ns if mirror is not None else None,
        )
        if mirror is not None and mirror.is_dir == src.is_dir:
            if src.is_dir or files_identical(self.source_path(snap.path), self.mirror_path(snap.path)):
                new.synced_mtime = src.mtime_ns
                new.synced_mirror_mtime = mirror.mtime_ns

        snap.entry = self.store.insert(new)
        log_action(
            self.logger,
            "REGISTER",
            f"{snap.path} ({'selected' if new.selected else 'archived'})",
            path=self.source_path(snap.path),
            is_dir=src.is_dir,
        )
        return None

    def _skip_hardlink(self, rel: str, other: str) -> Action:
        if rel not in self._hardlinks:
            self._hardlinks.add(rel)
            self.logger.warning("SKIP hard link %s (same file as %s)", rel, other)
        return Action(ActionKind.NONE, rel)

    def _detect_dirty(self, snap: Snapshot) -> Optional[Action]:
        entry = snap.entry
        if entry is None or snap.source is None:
            return None

        src, mirror = snap.source, snap.mirror
        observed = (
            entry.source_present,
            entry.source_mtime,
            entry.source_size,
            entry.mirror_present,
            entry.mirror_mtime,
        )
        current = (
            True,
            src.mtime_ns,
            None if src.is_dir else src.size,
            mirror is not None,
            mirror.mtime_ns if mirror is not None else None,
        )
        if observed != current:
            entry = snap.entry = self.store.observe(entry.id, src, mirror)

        if (
            not entry.is_dir
            and entry.source_dirty
            and entry.mirror_dirty
            and mirror is not None
            and not mirror.is_dir
            and files_identical(self.source_path(snap.path), self.mirror_path(snap.path))
        ):
            # Both sides moved to the same content: adopt it as the new baseline.
            self.store.mark_synced(entry.id, src.mtime_ns, mirror.mtime_ns, src.size)
            entry = snap.entry = self.store.get(entry.id)
        return None

    def _enforce(self, snap: Snapshot) -> Optional[Action]:
        entry = snap.entry
        if entry is None or snap.source is None:
            return None

        mirror = snap.mirror
        if mirror is not None and mirror.is_dir != entry.is_dir:
            self._report_conflict(entry, "file/folder mismatch between trees")
            return Action(ActionKind.NONE, snap.path, entry)

        if entry.is_dir:
            if entry.selected and mirror is None:
                return Action(ActionKind.MKDIR, snap.path, entry)
            if not entry.selected and mirror is not None and not self.store.has_selected_descendants(snap.path):
                return Action(ActionKind.RMDIR, snap.path, entry)
            return Action(ActionKind.NONE, snap.path, entry)

        if mirror is None:
            kind = ActionKind.COPY if entry.selected else ActionKind.NONE
            return Action(kind, snap.path, entry)
        if entry.source_dirty and entry.mirror_dirty:
            self._report_conflict(entry, "changed in both Archives and Spaces")
            return Action(ActionKind.NONE, snap.path, entry)
        self._conflicts.discard(entry.id)
        if entry.mirror_dirty:
            return Action(ActionKind.WRITEBACK, snap.path, entry)
        if not entry.selected:
            return Action(ActionKind.REMOVE, snap.path, entry)
        if entry.source_dirty:
            return Action(ActionKind.COPY, snap.path, entry)
        return Action(ActionKind.NONE, snap.path, entry)

    def _track_mirror_origin(self, snap: Snapshot) -> Optional[Action]:
        if snap.source is None and snap.mirror is not None and snap.entry is None and not snap.mirror_recorded:
            self.store.record_mirror_origin(snap.path)
            self.logger.debug("ORIGIN | %s seen in Spaces only", snap.path)
            return Action(ActionKind.REQUEUE, snap.path)
        return None

    def _report_conflict(self, entry: Entry, reason: str) -> None:
        if entry.id in self._conflicts:
            return
        self._conflicts.add(entry.id)
        log_action(
            self.logger,
            "CONFLICT",
            f"{entry.path} {reason}; select or deselect to resolve",
            path=self.mirror_path(entry.path),
            is_dir=entry.type is EntryType.DIR,
            level=logging.WARNING,
        )
