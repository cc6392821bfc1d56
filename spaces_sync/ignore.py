from __future__ import annotations

from typing import Iterable, Optional

from pathspec import PathSpec

from .safecopy import TEMP_SUFFIX

DEFAULT_IGNORE_PATTERNS = [
    f"*{TEMP_SUFFIX}",
    ".DS_Store",
    "Thumbs.db",
    "._*",
]


class IgnoreMatcher:
    """gitignore-style filter over paths relative to either tree root."""

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        self.patterns = list(DEFAULT_IGNORE_PATTERNS)
        for p in patterns or ():
            if p not in self.patterns:
                self.patterns.append(p)
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_ignored(self, rel: str, is_dir: Optional[bool] = None) -> bool:
        if not rel:
            return False
        if rel.endswith(TEMP_SUFFIX):
            return True
        rel_posix = rel
        if is_dir is True and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)
