"""
Path-keyed mailbox with exactly one consumer.

- ``push`` of a path that is already waiting replaces its payload in place
  (one pending item per path, first-enqueue order kept).
- ``push`` of the path currently being worked on queues it again. The
  in-flight item's token is cancelled unless the reason is one of
  ``PASSIVE_REASONS`` (nothing about the desired state changed).
- ``pop`` hands out the next item together with a fresh ``CancelToken``;
  the consumer must call ``done`` when it is finished with it.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import OrderedDict
from typing import Iterable, Optional

from .models import WorkItem
from .safecopy import CancelToken

PASSIVE_REASONS = frozenset({"startup", "rescan", "followup", "retry", "busy"})


class WorkQueue:
    def __init__(self):
        self._pending: "OrderedDict[str, WorkItem]" = OrderedDict()
        self._cond = threading.Condition()
        self._active: Optional[WorkItem] = None
        self._token: Optional[CancelToken] = None
        self._closed = False
        self._seq = itertools.count(1)
        self._timers: set[threading.Timer] = set()

    def push(self, path: str, reason: str) -> None:
        self.push_many([path], reason)

    def push_many(self, paths: Iterable[str], reason: str) -> None:
        with self._cond:
            if self._closed:
                return
            cancels = reason not in PASSIVE_REASONS
            for path in paths:
                self._pending[path] = WorkItem(path=path, reason=reason, seq=next(self._seq))
                if cancels and self._active is not None and self._active.path == path and self._token is not None:
                    self._token.cancel()
            self._cond.notify_all()

    def push_later(self, path: str, reason: str, delay: float) -> None:
        def fire():
            with self._cond:
                self._timers.discard(timer)
            self.push(path, reason)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._cond:
            if self._closed:
                return
            self._timers.add(timer)
        timer.start()

    def pop(self, timeout: Optional[float] = None) -> Optional[tuple[WorkItem, CancelToken]]:
        with self._cond:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not self._pending or self._active is not None:
                if self._closed:
                    return None
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if self._closed:
                return None
            _, item = self._pending.popitem(last=False)
            self._active = item
            self._token = CancelToken(item.path)
            return item, self._token

    def done(self, item: WorkItem) -> None:
        with self._cond:
            if self._active is not None and self._active.seq == item.seq:
                self._active = None
                self._token = None
            self._cond.notify_all()

    def has_pending(self, path: str) -> bool:
        with self._cond:
            return path in self._pending

    @property
    def active(self) -> Optional[WorkItem]:
        with self._cond:
            return self._active

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until nothing is queued or in flight."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._closed or (not self._pending and self._active is None),
                timeout,
            )

    def close(self) -> None:
        with self._cond:
            self._closed = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            if self._token is not None:
                self._token.cancel()
            self._cond.notify_all()
