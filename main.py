"""Entry point for the MediaBridge chat bot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from mediabridge.app import MediaBridgeBot
from mediabridge.config import ConfigError, load_config

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediabridge", description="Run the MediaBridge link-fixing bot.")
    parser.add_argument("--env-file", help="read settings from this .env file instead of ./.env")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Load settings, then poll until SIGINT/SIGTERM. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    try:
        config = load_config(Path(args.env_file) if args.env_file else None)
    except ConfigError as exc:
        print(f"Configuration error: {exc.__cause__ or exc}", file=sys.stderr)
        return 2

    bot = MediaBridgeBot(config)
    try:
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted before shutdown completed")
    except Exception:
        LOGGER.critical("MediaBridge stopped on an unhandled error", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
