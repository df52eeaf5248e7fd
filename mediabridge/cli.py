"""Command line access to the resolution pipeline without a chat transport."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

from .app import Components, build_components
from .config import AppConfig, ConfigError, load_config
from .errors import MediaBridgeError
from .files import format_file_size
from .logging_utils import configure_logging
from .urls import cache_key, classify, clean_url, is_likely_downloadable

logger = logging.getLogger(__name__)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def cmd_classify(args: argparse.Namespace, config: AppConfig) -> int:
    for url in args.urls:
        platform = classify(url)
        _print_json(
            {
                "url": url,
                "platform": platform.value if platform else None,
                "likely_downloadable": is_likely_downloadable(url),
                "clean_url": clean_url(url),
                "cache_key": cache_key(url),
            }
        )
    return 0


async def _with_components(config: AppConfig, action) -> int:
    components = build_components(config)
    try:
        return await action(components)
    finally:
        await components.aclose()


def cmd_fix(args: argparse.Namespace, config: AppConfig) -> int:
    async def action(components: Components) -> int:
        status = 0
        for url in args.urls:
            provider = components.registry.for_url(url)
            if provider is None:
                print(f"{url}\t(no provider)")
                status = 1
            else:
                print(provider.canonicalize(url))
        return status

    return asyncio.run(_with_components(config, action))


def cmd_resolve(args: argparse.Namespace, config: AppConfig) -> int:
    async def action(components: Components) -> int:
        provider = components.registry.for_url(args.url)
        if provider is None:
            print(f"No provider handles {args.url}", file=sys.stderr)
            return 2
        post = await provider.resolve(args.url)
        print(post.model_dump_json(indent=2))
        return 0

    return asyncio.run(_with_components(config, action))


def cmd_download(args: argparse.Namespace, config: AppConfig) -> int:
    async def action(components: Components) -> int:
        downloader = components.downloader
        if args.metadata_only:
            metadata = await downloader.extract_metadata(args.url)
            _print_json(asdict(metadata))
            return 0
        artifact = await downloader.download(args.url)
        _print_json(
            {
                "path": str(artifact.local_path),
                "size": format_file_size(artifact.size_bytes),
                "duration_seconds": artifact.duration_seconds,
                "source": artifact.source,
                "metadata": asdict(artifact.metadata),
            }
        )
        return 0

    return asyncio.run(_with_components(config, action))


def _cache_for(components: Components, args: argparse.Namespace):
    return components.image_cache if args.image else components.video_cache


def cmd_cache_stats(args: argparse.Namespace, config: AppConfig) -> int:
    async def action(components: Components) -> int:
        cache = _cache_for(components, args)
        if args.search:
            _print_json([entry.to_json() for entry in await cache.search(args.search)])
        elif args.export:
            _print_json(await cache.export())
        else:
            _print_json(asdict(await cache.stats()))
        return 0

    return asyncio.run(_with_components(config, action))


def cmd_cache_clean(args: argparse.Namespace, config: AppConfig) -> int:
    async def action(components: Components) -> int:
        cache = _cache_for(components, args)
        if args.clear:
            removed = await cache.clear()
        else:
            removed = await cache.cleanup(
                older_than_days=args.older_than_days if args.older_than_days is not None else config.cache_max_age_days,
                max_entries=args.max_entries if args.max_entries is not None else config.cache_max_entries,
                exclude_platforms=args.exclude_platform,
                min_file_size=args.min_size,
            )
        print(f"Removed {removed} {cache.name} cache entries")
        return 0

    return asyncio.run(_with_components(config, action))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediabridge-cli", description="MediaBridge resolution pipeline tools")
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("classify", help="Show platform, cleaned URL and cache key")
    p.add_argument("urls", nargs="+")
    p.set_defaults(func=cmd_classify)

    p = sub.add_parser("fix", help="Print canonical embed-friendly URLs")
    p.add_argument("urls", nargs="+")
    p.set_defaults(func=cmd_fix)

    p = sub.add_parser("resolve", help="Resolve a platform URL to a post")
    p.add_argument("url")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("download", help="Run the generic downloader")
    p.add_argument("url")
    p.add_argument("--metadata-only", action="store_true")
    p.set_defaults(func=cmd_download)

    p = sub.add_parser("cache-stats", help="Show cache statistics")
    p.add_argument("--image", action="store_true", help="Use the image cache")
    p.add_argument("--search")
    p.add_argument("--export", action="store_true")
    p.set_defaults(func=cmd_cache_stats)

    p = sub.add_parser("cache-clean", help="Remove cache entries")
    p.add_argument("--image", action="store_true", help="Use the image cache")
    p.add_argument("--older-than-days", type=float)
    p.add_argument("--max-entries", type=int)
    p.add_argument("--exclude-platform", action="append", default=[])
    p.add_argument("--min-size", type=int, help="Drop entries smaller than this many bytes")
    p.add_argument("--clear", action="store_true")
    p.set_defaults(func=cmd_cache_clean)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(Path(args.env_file) if args.env_file else None)
    except ConfigError as exc:
        print(f"Configuration error: {exc.__cause__ or exc}", file=sys.stderr)
        return 2
    configure_logging(config, level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return args.func(args, config)
    except MediaBridgeError as exc:
        print(f"Error: {exc.user_message()} ({exc})", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
