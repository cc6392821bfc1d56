from __future__ import annotations


class SyncError(Exception):
    """Base class for everything the sync core raises on purpose."""


class ConfigError(SyncError, ValueError):
    pass


class StoreBusyError(SyncError):
    """The entry store could not be locked in time. Safe to retry."""


class EntryNotFoundError(SyncError, KeyError):
    def __init__(self, ids):
        self.ids = list(ids)
        super().__init__(f"unknown entry id(s): {', '.join(str(i) for i in self.ids)}")

    def __str__(self) -> str:
        return self.args[0]


class TransferError(SyncError):
    """Outcome of a SafeCopy transfer that did not commit."""

    def __init__(self, path, message: str):
        self.path = path
        super().__init__(f"{message}: {path}")


class CopyCancelled(TransferError):
    def __init__(self, path):
        super().__init__(path, "copy cancelled")


class SourceModifiedError(TransferError):
    def __init__(self, path, detail: str = "source modified during copy"):
        super().__init__(path, detail)
