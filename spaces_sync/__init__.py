"""Keep a Spaces tree in sync with the selected part of an Archives tree."""

from .daemon import SyncDaemon
from .errors import EntryNotFoundError, StoreBusyError, SyncError
from .models import Entry, EntryStatus, EntryType

__version__ = "0.1.0"

__all__ = [
    "SyncDaemon",
    "Entry",
    "EntryStatus",
    "EntryType",
    "SyncError",
    "StoreBusyError",
    "EntryNotFoundError",
]
