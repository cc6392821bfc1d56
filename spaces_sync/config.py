from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .safecopy import CHUNK_SIZE

APP_DIR = Path.home() / ".spaces_sync"
CONFIG_PATH = APP_DIR / "config.json"

DEFAULT_SETTLE_SEC = 0.3
DEFAULT_MAX_DELAY_SEC = 2.0
DEFAULT_SCAN_INTERVAL_SEC = 30.0
DEFAULT_STUCK_TIMEOUT_SEC = 600.0
DEFAULT_RETRY_HOLD_SEC = 30.0

WATCHER_MODES = ("linked-pair", "path-only")


@dataclass(frozen=True)
class AppConfig:
    archives_dir: Path
    spaces_dir: Path
    db_path: Path = APP_DIR / "entries.db"
    log_dir: Path = Path(".")
    settle_sec: float = DEFAULT_SETTLE_SEC
    max_delay_sec: float = DEFAULT_MAX_DELAY_SEC
    scan_interval_sec: float = DEFAULT_SCAN_INTERVAL_SEC
    stuck_timeout_sec: float = DEFAULT_STUCK_TIMEOUT_SEC
    retry_hold_sec: float = DEFAULT_RETRY_HOLD_SEC
    chunk_size: int = CHUNK_SIZE
    watcher_mode: str = "linked-pair"
    ignore_patterns: tuple[str, ...] = field(default_factory=tuple)


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Keep a Spaces tree in sync with the selected part of an Archives tree.")
    p.add_argument("--archives", type=str, default=None, help="Canonical tree (Archives).")
    p.add_argument("--spaces", type=str, default=None, help="Working-copy tree (Spaces).")
    p.add_argument("--db", type=str, default=None, help="Entry database file.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument("--settle", type=float, default=None, help="Seconds of quiet before a burst of events is processed.")
    p.add_argument("--scan-interval", type=float, default=None, help="Seconds between drift scans.")
    p.add_argument("--stuck-timeout", type=float, default=None, help="Seconds before an unfinished action reads as conflict.")
    p.add_argument("--watcher", choices=WATCHER_MODES, default=None, help="Rename detection capability.")
    p.add_argument("--ignore", action="append", default=None, metavar="PATTERN", help="Extra gitignore-style pattern (repeatable).")
    p.add_argument("--debug", action="store_true", default=False, help="Log debug messages.")
    return p.parse_args(argv)


def prompt_for_path(label: str, default: Optional[Path] = None) -> Path:
    while True:
        hint = f" [{default}]" if default else ""
        raw = input(f"{label}{hint}: ").strip().strip('"')
        if not raw and default:
            return default
        if raw:
            return Path(raw)
        print("Please enter a non-empty path.")


def load_config_file(path: Path = CONFIG_PATH) -> dict:
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        pass
    return {}


def save_config_file(cfg: AppConfig, path: Path = CONFIG_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "archives": str(cfg.archives_dir),
        "spaces": str(cfg.spaces_dir),
        "db": str(cfg.db_path),
        "log_dir": str(cfg.log_dir),
        "settle_sec": cfg.settle_sec,
        "scan_interval_sec": cfg.scan_interval_sec,
        "stuck_timeout_sec": cfg.stuck_timeout_sec,
        "watcher": cfg.watcher_mode,
        "ignore": list(cfg.ignore_patterns),
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_paths(archives: Path, spaces: Path) -> tuple[Path, Path]:
    archives = archives.expanduser().resolve()
    spaces = spaces.expanduser().resolve()

    if not archives.is_dir():
        raise ConfigError(f"Archives folder does not exist or is not a folder: {archives}")
    if archives == spaces:
        raise ConfigError("Archives and Spaces folders must be different.")
    if _is_subpath(spaces, archives):
        raise ConfigError("Spaces folder must NOT be inside the Archives folder (would cause loops).")
    if _is_subpath(archives, spaces):
        raise ConfigError("Archives folder must NOT be inside the Spaces folder (would cause loops).")

    spaces.mkdir(parents=True, exist_ok=True)
    return archives, spaces


def build_effective_config(args: argparse.Namespace, saved: Optional[dict] = None, interactive: bool = True) -> AppConfig:
    saved = load_config_file() if saved is None else saved

    saved_archives = Path(saved["archives"]) if "archives" in saved else None
    saved_spaces = Path(saved["spaces"]) if "spaces" in saved else None

    archives = Path(args.archives) if args.archives else saved_archives
    spaces = Path(args.spaces) if args.spaces else saved_spaces

    if archives is None:
        if not interactive:
            raise ConfigError("No Archives folder given.")
        archives = prompt_for_path("Archives folder", saved_archives)
    if spaces is None:
        if not interactive:
            raise ConfigError("No Spaces folder given.")
        spaces = prompt_for_path("Spaces folder", saved_spaces)

    def pick(arg_value, key, default):
        if arg_value is not None:
            return arg_value
        return saved.get(key, default)

    watcher_mode = pick(args.watcher, "watcher", "linked-pair")
    if watcher_mode not in WATCHER_MODES:
        raise ConfigError(f"Unknown watcher mode: {watcher_mode}")

    return AppConfig(
        archives_dir=archives,
        spaces_dir=spaces,
        db_path=Path(pick(args.db, "db", str(APP_DIR / "entries.db"))),
        log_dir=Path(pick(args.log_dir, "log_dir", ".")),
        settle_sec=float(pick(args.settle, "settle_sec", DEFAULT_SETTLE_SEC)),
        scan_interval_sec=float(pick(args.scan_interval, "scan_interval_sec", DEFAULT_SCAN_INTERVAL_SEC)),
        stuck_timeout_sec=float(pick(args.stuck_timeout, "stuck_timeout_sec", DEFAULT_STUCK_TIMEOUT_SEC)),
        watcher_mode=watcher_mode,
        ignore_patterns=tuple(pick(args.ignore, "ignore", [])),
    )
