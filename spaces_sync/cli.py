from __future__ import annotations

import dataclasses
import logging
import sys
import time
from typing import Optional

from .config import CONFIG_PATH, build_effective_config, parse_args, save_config_file, validate_paths
from .daemon import SyncDaemon
from .errors import ConfigError
from .logging_setup import setup_logger


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        cfg = build_effective_config(args)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    logger = setup_logger(cfg.log_dir.expanduser().resolve(), level=logging.DEBUG if args.debug else logging.INFO)

    try:
        archives, spaces = validate_paths(cfg.archives_dir, cfg.spaces_dir)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2

    cfg = dataclasses.replace(cfg, archives_dir=archives, spaces_dir=spaces)
    try:
        save_config_file(cfg)
        logger.info("Saved config: %s", CONFIG_PATH)
    except OSError as e:
        logger.error("Could not save config: %s", e)

    daemon = SyncDaemon.from_config(cfg, logger=logger)
    logger.info("Starting sync... (Ctrl+C to stop)")
    daemon.start()
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        daemon.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
