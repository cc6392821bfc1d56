"""
Durable entry table.

SQLite file with two tables:
- ``entries``: one row per tracked path, keyed by the Archives inode
- ``mirror_origins``: Spaces-only paths seen before any entry existed for them

All access goes through one connection guarded by a lock. Writers that
cannot get the lock within ``lock_timeout`` get ``StoreBusyError`` and may
retry; nothing is half-applied because every mutation is one transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, TypeVar, Union

from .errors import EntryNotFoundError, StoreBusyError
from .models import DiskState, Entry, EntryType, PendingKind, parent_of

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY,
    path TEXT NOT NULL UNIQUE,
    parent TEXT NOT NULL,
    type TEXT NOT NULL,
    selected INTEGER NOT NULL DEFAULT 0,
    source_present INTEGER NOT NULL DEFAULT 1,
    mirror_present INTEGER NOT NULL DEFAULT 0,
    source_mtime INTEGER,
    source_size INTEGER,
    mirror_mtime INTEGER,
    synced_mtime INTEGER,
    synced_mirror_mtime INTEGER,
    pending TEXT,
    pending_since REAL,
    last_error TEXT
);
CREATE INDEX IF NOT EXISTS entries_parent ON entries(parent);
CREATE TABLE IF NOT EXISTS mirror_origins (
    path TEXT PRIMARY KEY,
    observed_at REAL NOT NULL
);
"""

SELECT_ENTRY = (
    "SELECT e.*, p.id AS parent_id FROM entries e "
    "LEFT JOIN entries p ON p.path = e.parent"
)


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        id=row["id"],
        path=row["path"],
        type=EntryType(row["type"]),
        selected=bool(row["selected"]),
        source_present=bool(row["source_present"]),
        mirror_present=bool(row["mirror_present"]),
        source_mtime=row["source_mtime"],
        source_size=row["source_size"],
        mirror_mtime=row["mirror_mtime"],
        synced_mtime=row["synced_mtime"],
        synced_mirror_mtime=row["synced_mirror_mtime"],
        pending=PendingKind(row["pending"]) if row["pending"] else None,
        pending_since=row["pending_since"],
        last_error=row["last_error"],
        parent_id=row["parent_id"],
    )


def _subtree_clause(column: str = "path") -> str:
    # Prefix match without LIKE so '%' and '_' in names stay literal.
    return f"({column} = ? OR substr({column}, 1, length(?) + 1) = ? || '/')"


def retry_busy(fn: Callable[[], T], attempts: int = 5, delay: float = 0.05) -> T:
    for attempt in range(attempts - 1):
        try:
            return fn()
        except StoreBusyError:
            time.sleep(delay * (attempt + 1))
    return fn()


class EntryStore:
    def __init__(
        self,
        db_path: Union[str, Path],
        lock_timeout: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        self.logger = logger or logging.getLogger("spaces_sync")
        self._lock = threading.RLock()
        self._depth = 0
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.db_path,
            timeout=lock_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._locked():
            self._conn.close()

    # -------------------------
    # Locking / transactions
    # -------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise StoreBusyError(f"entry store busy (waited {self.lock_timeout:.1f}s)")
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._locked():
            outer = self._depth == 0
            self._depth += 1
            try:
                if outer:
                    self._execute("BEGIN IMMEDIATE")
                yield self._conn
                if outer:
                    self._execute("COMMIT")
            except BaseException:
                if outer and self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            finally:
                self._depth -= 1

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise StoreBusyError(str(e)) from e
            raise

    def _query(self, sql: str, params: Iterable = ()) -> list[Entry]:
        with self._locked():
            return [_row_to_entry(r) for r in self._execute(sql, params).fetchall()]

    # -------------------------
    # Reads
    # -------------------------

    def get(self, entry_id: int) -> Optional[Entry]:
        rows = self._query(f"{SELECT_ENTRY} WHERE e.id = ?", (entry_id,))
        return rows[0] if rows else None

    def get_by_path(self, path: str) -> Optional[Entry]:
        rows = self._query(f"{SELECT_ENTRY} WHERE e.path = ?", (path,))
        return rows[0] if rows else None

    def all_entries(self) -> list[Entry]:
        return self._query(f"{SELECT_ENTRY} ORDER BY e.path")

    def children(self, parent_path: str) -> list[Entry]:
        return self._query(f"{SELECT_ENTRY} WHERE e.parent = ? ORDER BY e.path", (parent_path,))

    def subtree(self, path: str) -> list[Entry]:
        """The entry at ``path`` and every entry below it, parents first."""
        rows = self._query(
            f"{SELECT_ENTRY} WHERE {_subtree_clause('e.path')}",
            (path, path, path),
        )
        rows.sort(key=lambda e: (e.path.count("/"), e.path))
        return rows

    def has_selected_descendants(self, path: str) -> bool:
        with self._locked():
            row = self._execute(
                "SELECT 1 FROM entries WHERE selected = 1 "
                "AND substr(path, 1, length(?) + 1) = ? || '/' LIMIT 1",
                (path, path),
            ).fetchone()
            return row is not None

    def pending_entries(self) -> list[Entry]:
        return self._query(f"{SELECT_ENTRY} WHERE e.pending IS NOT NULL")

    def __len__(self) -> int:
        with self._locked():
            return self._execute("SELECT COUNT(*) FROM entries").fetchone()[0]

    # -------------------------
    # Registration / identity
    # -------------------------

    def insert(self, entry: Entry) -> Entry:
        with self.transaction():
            self._execute(
                "INSERT INTO entries (id, path, parent, type, selected, source_present, "
                "mirror_present, source_mtime, source_size, mirror_mtime, synced_mtime, "
                "synced_mirror_mtime) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.path,
                    parent_of(entry.path),
                    entry.type.value,
                    int(entry.selected),
                    int(entry.source_present),
                    int(entry.mirror_present),
                    entry.source_mtime,
                    entry.source_size,
                    entry.mirror_mtime,
                    entry.synced_mtime,
                    entry.synced_mirror_mtime,
                ),
            )
            self._execute("DELETE FROM mirror_origins WHERE path = ?", (entry.path,))
        return self.get(entry.id)

    def rekey(self, old_id: int, new_id: int) -> None:
        """Give an entry the identity of the file now sitting at its path."""
        if old_id == new_id:
            return
        with self.transaction():
            # Any other row holding new_id is stale: that inode lives at our path now.
            self._execute("DELETE FROM entries WHERE id = ?", (new_id,))
            self._execute("UPDATE entries SET id = ? WHERE id = ?", (new_id, old_id))

    def move(self, entry_id: int, new_path: str) -> None:
        with self.transaction():
            entry = self.get(entry_id)
            if entry is None:
                raise EntryNotFoundError([entry_id])
            old = entry.path
            if old == new_path:
                return
            # Whatever was registered at the destination is replaced.
            self._execute(
                f"DELETE FROM entries WHERE {_subtree_clause()} AND id != ?",
                (new_path, new_path, new_path, entry_id),
            )
            self._execute(
                f"UPDATE entries SET path = ? || substr(path, length(?) + 1) WHERE {_subtree_clause()}",
                (new_path, old, old, old, old),
            )
            self._execute(
                f"UPDATE entries SET parent = ? || substr(parent, length(?) + 1) "
                f"WHERE {_subtree_clause('parent')}",
                (new_path, old, old, old, old),
            )
            self._execute("UPDATE entries SET parent = ? WHERE id = ?", (parent_of(new_path), entry_id))
            self._execute("DELETE FROM mirror_origins WHERE path IN (?, ?)", (old, new_path))

    def delete(self, entry_id: int) -> None:
        with self.transaction():
            row = self._execute("SELECT path FROM entries WHERE id = ?", (entry_id,)).fetchone()
            self._execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            if row is not None:
                self._execute("DELETE FROM mirror_origins WHERE path = ?", (row["path"],))

    # -------------------------
    # Desired state
    # -------------------------

    def set_selected(self, ids: Iterable[int], selected: bool) -> list[Entry]:
        """Set ``selected`` on the named entries and every descendant of named dirs.

        Returns the affected entries, parents before children. Unknown ids
        raise ``EntryNotFoundError`` and nothing is changed. An entry whose
        both sides changed since the last sync takes the current Spaces
        copy as baseline, so the call resolves the conflict in favour of
        Archives.
        """
        ids = list(dict.fromkeys(ids))
        with self.transaction():
            roots = []
            missing = []
            for entry_id in ids:
                entry = self.get(entry_id)
                if entry is None:
                    missing.append(entry_id)
                else:
                    roots.append(entry)
            if missing:
                raise EntryNotFoundError(missing)

            affected: dict[int, Entry] = {}
            for root in roots:
                targets = self.subtree(root.path) if root.is_dir else [root]
                for entry in targets:
                    affected[entry.id] = entry

            for entry in affected.values():
                if entry.source_dirty and entry.mirror_dirty:
                    self._execute(
                        "UPDATE entries SET synced_mirror_mtime = mirror_mtime WHERE id = ?",
                        (entry.id,),
                    )
                self._execute("UPDATE entries SET selected = ? WHERE id = ?", (int(selected), entry.id))
                entry.selected = selected

        return sorted(affected.values(), key=lambda e: (e.path.count("/"), e.path))

    # -------------------------
    # Observed state
    # -------------------------

    def observe(self, entry_id: int, source: Optional[DiskState], mirror: Optional[DiskState]) -> Optional[Entry]:
        """Record what is on disk right now for both sides of an entry."""
        with self.transaction():
            self._execute(
                "UPDATE entries SET source_present = ?, source_mtime = ?, source_size = ?, "
                "mirror_present = ?, mirror_mtime = ? WHERE id = ?",
                (
                    int(source is not None),
                    source.mtime_ns if source is not None else None,
                    source.size if source is not None else None,
                    int(mirror is not None),
                    mirror.mtime_ns if mirror is not None else None,
                    entry_id,
                ),
            )
            return self.get(entry_id)

    def mark_synced(
        self,
        entry_id: int,
        source_mtime: int,
        mirror_mtime: int,
        source_size: Optional[int] = None,
    ) -> None:
        with self.transaction():
            self._execute(
                "UPDATE entries SET source_present = 1, mirror_present = 1, "
                "source_mtime = ?, synced_mtime = ?, mirror_mtime = ?, synced_mirror_mtime = ?, "
                "source_size = COALESCE(?, source_size), pending = NULL, pending_since = NULL, "
                "last_error = NULL WHERE id = ?",
                (source_mtime, source_mtime, mirror_mtime, mirror_mtime, source_size, entry_id),
            )

    def mark_removed(self, entry_id: int) -> None:
        with self.transaction():
            self._execute(
                "UPDATE entries SET mirror_present = 0, mirror_mtime = NULL, synced_mtime = NULL, "
                "synced_mirror_mtime = NULL, pending = NULL, pending_since = NULL, last_error = NULL "
                "WHERE id = ?",
                (entry_id,),
            )

    def set_pending(self, entry_id: int, kind: PendingKind) -> None:
        with self.transaction():
            self._execute(
                "UPDATE entries SET pending = ?, "
                "pending_since = CASE WHEN pending = ? THEN COALESCE(pending_since, ?) ELSE ? END "
                "WHERE id = ?",
                (kind.value, kind.value, time.time(), time.time(), entry_id),
            )

    def touch_pending(self, entry_id: int) -> None:
        with self.transaction():
            self._execute(
                "UPDATE entries SET pending_since = ? WHERE id = ? AND pending IS NOT NULL",
                (time.time(), entry_id),
            )

    def fail_pending(self, entry_id: int, error: str) -> None:
        with self.transaction():
            self._execute("UPDATE entries SET last_error = ? WHERE id = ?", (error, entry_id))

    def clear_pending(self, entry_id: int) -> None:
        with self.transaction():
            self._execute(
                "UPDATE entries SET pending = NULL, pending_since = NULL, last_error = NULL WHERE id = ?",
                (entry_id,),
            )

    def clear_all_pending(self) -> int:
        with self.transaction():
            cur = self._execute(
                "UPDATE entries SET pending = NULL, pending_since = NULL WHERE pending IS NOT NULL"
            )
            return cur.rowcount

    # -------------------------
    # Mirror-origin bookkeeping
    # -------------------------

    def record_mirror_origin(self, path: str) -> None:
        with self.transaction():
            self._execute(
                "INSERT OR IGNORE INTO mirror_origins (path, observed_at) VALUES (?, ?)",
                (path, time.time()),
            )

    def has_mirror_origin(self, path: str) -> bool:
        with self._locked():
            row = self._execute("SELECT 1 FROM mirror_origins WHERE path = ?", (path,)).fetchone()
            return row is not None

    def clear_mirror_origin(self, path: str) -> None:
        with self.transaction():
            self._execute("DELETE FROM mirror_origins WHERE path = ?", (path,))

    def mirror_origins(self) -> list[str]:
        with self._locked():
            return [r["path"] for r in self._execute("SELECT path FROM mirror_origins ORDER BY path")]
