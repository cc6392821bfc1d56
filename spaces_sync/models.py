"""
Plain data types shared by the store, the reconciler and the worker.

An Entry holds two kinds of state:
- desired state: ``selected``
- observed state: presence and mtimes in each tree, the sync baselines
  and the in-flight ``pending`` marker

``status`` is never stored. ``derive_status`` computes it from the fields
above every time an entry is read.
"""

from __future__ import annotations

import os
import posixpath
import stat
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class EntryType(str, Enum):
    FILE = "file"
    DIR = "dir"


class EntryStatus(str, Enum):
    ARCHIVED = "archived"
    SYNCED = "synced"
    COPYING = "copying"
    REMOVING = "removing"
    UPDATING = "updating"
    CONFLICT = "conflict"


class PendingKind(str, Enum):
    COPY = "copy"
    REMOVE = "remove"
    WRITEBACK = "writeback"
    RECOVER = "recover"
    MKDIR = "mkdir"
    RMDIR = "rmdir"
    MOVE = "move"


PENDING_STATUS = {
    PendingKind.COPY: EntryStatus.COPYING,
    PendingKind.MKDIR: EntryStatus.COPYING,
    PendingKind.MOVE: EntryStatus.COPYING,
    PendingKind.REMOVE: EntryStatus.REMOVING,
    PendingKind.RMDIR: EntryStatus.REMOVING,
    PendingKind.WRITEBACK: EntryStatus.UPDATING,
    PendingKind.RECOVER: EntryStatus.UPDATING,
}


@dataclass(frozen=True)
class DiskState:
    inode: int
    is_dir: bool
    mtime_ns: int
    size: int

    @classmethod
    def probe(cls, path) -> Optional["DiskState"]:
        try:
            st = os.stat(path)
        except (FileNotFoundError, NotADirectoryError):
            return None
        return cls(
            inode=st.st_ino,
            is_dir=stat.S_ISDIR(st.st_mode),
            mtime_ns=st.st_mtime_ns,
            size=st.st_size,
        )

    @property
    def type(self) -> EntryType:
        return EntryType.DIR if self.is_dir else EntryType.FILE


@dataclass
class Entry:
    id: int
    path: str
    type: EntryType
    selected: bool = False
    source_present: bool = True
    mirror_present: bool = False
    source_mtime: Optional[int] = None
    source_size: Optional[int] = None
    mirror_mtime: Optional[int] = None
    synced_mtime: Optional[int] = None
    synced_mirror_mtime: Optional[int] = None
    pending: Optional[PendingKind] = None
    pending_since: Optional[float] = None
    last_error: Optional[str] = None
    parent_id: Optional[int] = None

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def parent_path(self) -> str:
        return parent_of(self.path)

    @property
    def is_dir(self) -> bool:
        return self.type is EntryType.DIR

    @property
    def source_dirty(self) -> bool:
        return self.source_mtime != self.synced_mtime

    @property
    def mirror_dirty(self) -> bool:
        return self.mirror_present and self.mirror_mtime != self.synced_mirror_mtime

    def status(self, now: float, stuck_after: float) -> EntryStatus:
        return derive_status(self, now, stuck_after)

    def to_dict(self, status: EntryStatus) -> dict:
        return {
            "inode": self.id,
            "name": self.name,
            "path": self.path,
            "parent_ino": self.parent_id,
            "type": self.type.value,
            "selected": self.selected,
            "status": status.value,
            "mtime": self.source_mtime / 1e9 if self.source_mtime is not None else None,
            "size": self.source_size,
        }


def derive_status(entry: Entry, now: float, stuck_after: float) -> EntryStatus:
    if entry.pending is not None:
        if entry.pending_since is not None and now - entry.pending_since > stuck_after:
            return EntryStatus.CONFLICT
        return PENDING_STATUS[entry.pending]

    if not entry.source_present:
        return EntryStatus.UPDATING if entry.mirror_present else EntryStatus.ARCHIVED

    if entry.is_dir:
        if not entry.selected:
            return EntryStatus.ARCHIVED
        return EntryStatus.SYNCED if entry.mirror_present else EntryStatus.COPYING

    if not entry.mirror_present:
        return EntryStatus.COPYING if entry.selected else EntryStatus.ARCHIVED
    if entry.source_dirty and entry.mirror_dirty:
        return EntryStatus.CONFLICT
    if entry.mirror_dirty:
        return EntryStatus.UPDATING
    if not entry.selected:
        return EntryStatus.REMOVING
    if entry.source_dirty:
        return EntryStatus.COPYING
    return EntryStatus.SYNCED


@dataclass(frozen=True)
class WorkItem:
    path: str
    reason: str
    seq: int = field(default=0, compare=False)


# -------------------------
# Relative path helpers
# -------------------------

def parent_of(rel: str) -> str:
    parent = posixpath.dirname(rel)
    return "" if parent in ("", ".", "/") else parent


def ancestors_of(rel: str) -> list[str]:
    out = []
    cur = parent_of(rel)
    while cur:
        out.append(cur)
        cur = parent_of(cur)
    return out


def depth_of(rel: str) -> int:
    return rel.count("/") + 1 if rel else 0


def normalize_rel(rel: str) -> str:
    rel = rel.replace(os.sep, "/").strip("/")
    if not rel:
        return ""
    rel = posixpath.normpath(rel)
    return "" if rel == "." else rel
