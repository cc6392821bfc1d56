"""
SafeCopy: interruptible, integrity-checked single-path transfers.

A copy never writes the destination directly. Bytes go to
``<dst><TEMP_SUFFIX>`` in ``CHUNK_SIZE`` pieces; the cancel token is polled
before every chunk write; right before commit the source is re-stat'ed
and must still have the mtime and size captured at the start. Only then
is the temp file renamed over the destination. Any other outcome removes
the temp file, so neither tree ever holds a half-written file.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .errors import CopyCancelled, SourceModifiedError

TEMP_SUFFIX = ".sync-tmp"
CHUNK_SIZE = 256 * 1024


class CancelToken:
    """Cooperative cancellation flag for one in-flight work item."""

    def __init__(self, path: str = ""):
        self.path = path
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CopyCancelled(self.path)


@dataclass(frozen=True)
class CopyResult:
    source_mtime_ns: int
    dest_mtime_ns: int
    size: int


def temp_path_for(dst: Path) -> Path:
    return dst.with_name(dst.name + TEMP_SUFFIX)


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def safe_copy(
    src: Path,
    dst: Path,
    token: Optional[CancelToken] = None,
    chunk_size: int = CHUNK_SIZE,
    on_chunk: Optional[Callable[[int], None]] = None,
) -> CopyResult:
    token = token or CancelToken(str(dst))
    try:
        st = os.stat(src)
    except FileNotFoundError as e:
        raise SourceModifiedError(src, "source vanished before copy") from e

    ensure_parent(dst)
    tmp = temp_path_for(dst)
    copied = 0
    try:
        with open(src, "rb") as fin, open(tmp, "wb") as fout:
            while True:
                chunk = fin.read(chunk_size)
                if not chunk:
                    break
                token.raise_if_cancelled()
                fout.write(chunk)
                copied += len(chunk)
                if on_chunk is not None:
                    on_chunk(copied)
            fout.flush()
            os.fsync(fout.fileno())

        token.raise_if_cancelled()
        try:
            after = os.stat(src)
        except FileNotFoundError as e:
            raise SourceModifiedError(src, "source vanished during copy") from e
        if after.st_mtime_ns != st.st_mtime_ns or after.st_size != st.st_size:
            raise SourceModifiedError(src)
        if copied != st.st_size:
            raise SourceModifiedError(src, "short read during copy")

        shutil.copystat(src, tmp)
        os.utime(tmp, ns=(st.st_atime_ns, st.st_mtime_ns))
        os.replace(tmp, dst)
    except BaseException:
        _unlink_quietly(tmp)
        raise

    return CopyResult(
        source_mtime_ns=st.st_mtime_ns,
        dest_mtime_ns=os.stat(dst).st_mtime_ns,
        size=copied,
    )


def remove_file(path: Path) -> bool:
    """Remove one file. Returns False if it was already gone."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def remove_dir(path: Path) -> bool:
    """Remove an empty directory. Returns False if it is gone or still has children."""
    try:
        path.rmdir()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        if e.errno in (errno.ENOTEMPTY, errno.EEXIST):
            return False
        raise


def sweep_temp_files(root: Path, logger: Optional[logging.Logger] = None) -> list[Path]:
    """Delete transfer leftovers from a previous run."""
    removed = []
    for tmp in root.rglob(f"*{TEMP_SUFFIX}"):
        if not tmp.is_file():
            continue
        try:
            tmp.unlink()
            removed.append(tmp)
        except FileNotFoundError:
            continue
        except OSError as e:
            if logger is not None:
                logger.warning("could not remove leftover %s | %s", tmp, e)
    return removed


# -------------------------
# Content comparison
# -------------------------

def md5_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.md5()
    with path.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def files_identical(a: Path, b: Path) -> bool:
    try:
        s1 = a.stat()
        s2 = b.stat()
    except FileNotFoundError:
        return False
    if s1.st_size != s2.st_size:
        return False
    if s1.st_mtime_ns == s2.st_mtime_ns:
        return True
    return md5_file(a) == md5_file(b)
