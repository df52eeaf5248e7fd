"""Persistent URL resolution cache.

One JSON document per cache kind::

    {"version": "1.0", "lastUpdated": ..., "totalEntries": N, "entries": {urlHash: entry}}

The document is loaded fully on first use and rewritten atomically after
every mutation. Writes for one URL are serialized by a per-key lock and all
file rewrites by a single save lock; reads never take a lock because every
reader re-verifies an entry against its backing reference before trusting it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from pydantic import ValidationError

from .errors import CacheCorruption
from .locks import KeyedLock
from .models import CacheEntry, utcnow
from .urls import cache_key, clean_url

logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0"

Verifier = Callable[[CacheEntry], Awaitable[bool]]
EvictHook = Callable[[CacheEntry], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class CacheStats:
    total_entries: int
    hits: int
    misses: int
    hit_ratio: float
    total_size: int
    platform_stats: dict[str, int] = field(default_factory=dict)
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    collisions: int = 0
    resets: int = 0


class ResolutionCache:
    """URL-keyed store of previously delivered artifacts."""

    def __init__(self, path: Path, *, name: str = "video", on_evict: EvictHook | None = None) -> None:
        self.path = Path(path)
        self.name = name
        self._on_evict = on_evict
        self._entries: dict[str, CacheEntry] | None = None
        self._load_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._keys = KeyedLock()
        self.hits = 0
        self.misses = 0
        self.collisions = 0
        self.resets = 0

    # ------------------------------------------------------------------ io

    def _read_document(self) -> dict[str, CacheEntry]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CacheCorruption(self.path, f"unreadable: {exc}") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("entries"), dict):
            raise CacheCorruption(self.path, "missing entries map")
        version = raw.get("version")
        if version != CACHE_VERSION:
            raise CacheCorruption(self.path, f"version {version!r} != {CACHE_VERSION!r}")
        entries: dict[str, CacheEntry] = {}
        for key, payload in raw["entries"].items():
            try:
                entries[key] = CacheEntry.model_validate(payload)
            except ValidationError as exc:
                raise CacheCorruption(self.path, f"invalid entry {key}: {exc.error_count()} error(s)") from exc
        return entries

    def _backup_corrupt_file(self) -> None:
        if self.path.exists():
            backup = self.path.with_suffix(self.path.suffix + ".bak")
            os.replace(self.path, backup)
            logger.warning("Moved unusable %s cache to %s", self.name, backup)

    async def _load(self) -> dict[str, CacheEntry]:
        if self._entries is not None:
            return self._entries
        async with self._load_lock:
            if self._entries is None:
                try:
                    self._entries = await asyncio.to_thread(self._read_document)
                except CacheCorruption as exc:
                    logger.warning(
                        "Resetting %s cache: %s",
                        self.name,
                        exc,
                        extra={"event": "cache.reset", "cache": self.name},
                    )
                    self.resets += 1
                    await asyncio.to_thread(self._backup_corrupt_file)
                    self._entries = {}
                else:
                    logger.info("Loaded %d %s cache entries from %s", len(self._entries), self.name, self.path)
        return self._entries

    def _document(self, entries: dict[str, CacheEntry]) -> dict[str, Any]:
        return {
            "version": CACHE_VERSION,
            "lastUpdated": utcnow().isoformat(),
            "totalEntries": len(entries),
            "entries": {key: entry.to_json() for key, entry in entries.items()},
        }

    def _write_document(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _save(self) -> None:
        async with self._save_lock:
            entries = await self._load()
            document = self._document(dict(entries))
            await asyncio.to_thread(self._write_document, document)

    async def _evict(self, entry: CacheEntry) -> None:
        if self._on_evict is None:
            return
        try:
            await self._on_evict(entry)
        except Exception:
            logger.warning("Eviction hook failed for %s", entry.url_hash, exc_info=True)

    # ------------------------------------------------------------- queries

    async def lookup(self, url: str) -> CacheEntry | None:
        """Return the stored entry for ``url`` without verifying or counting it."""
        entries = await self._load()
        entry = entries.get(cache_key(url))
        if entry is None:
            return None
        if entry.clean_url.lower() != clean_url(url).lower():
            self.collisions += 1
            logger.warning(
                "Cache key collision on %s: stored %s, requested %s",
                entry.url_hash,
                entry.clean_url,
                clean_url(url),
                extra={"event": "cache.collision", "cache": self.name},
            )
            return None
        return entry

    async def get(self, url: str, verify: Verifier | None = None) -> CacheEntry | None:
        """Return a verified entry, evicting it when its backing reference is gone."""
        entry = await self.lookup(url)
        if entry is not None and verify is not None:
            try:
                valid = await verify(entry)
            except Exception:
                logger.warning("Verification of %s raised; treating as stale", entry.url_hash, exc_info=True)
                valid = False
            if not valid:
                logger.info("Evicting stale %s cache entry for %s", self.name, entry.clean_url)
                await self.remove(url)
                entry = None
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    async def put(
        self,
        url: str,
        *,
        delivery_locator: str,
        platform: str,
        title: str | None = None,
        author: str | None = None,
        duration_seconds: float | None = None,
        file_size_bytes: int | None = None,
    ) -> CacheEntry:
        key = cache_key(url)
        entry = CacheEntry(
            url_hash=key,
            clean_url=clean_url(url),
            original_url=url,
            delivery_locator=delivery_locator,
            platform=platform,
            title=title,
            author=author,
            duration_seconds=duration_seconds,
            file_size_bytes=file_size_bytes,
        )
        async with self._keys.hold(key):
            entries = await self._load()
            previous = entries.get(key)
            entries[key] = entry
            await self._save()
        if previous is not None and previous.delivery_locator != entry.delivery_locator:
            await self._evict(previous)
        logger.debug("Cached %s -> %s", entry.clean_url, delivery_locator)
        return entry

    async def remove(self, url: str) -> bool:
        key = cache_key(url)
        async with self._keys.hold(key):
            entries = await self._load()
            entry = entries.pop(key, None)
            if entry is None:
                return False
            await self._save()
        await self._evict(entry)
        return True

    async def cleanup(
        self,
        *,
        older_than_days: float = 30,
        max_entries: int = 1000,
        exclude_platforms: Iterable[str] = (),
        min_file_size: int | None = None,
        verify: Verifier | None = None,
    ) -> int:
        """Drop old, undersized, unverifiable and overflow entries; returns the count removed."""
        entries = await self._load()
        excluded = set(exclude_platforms)
        cutoff = utcnow() - timedelta(days=older_than_days)
        doomed: dict[str, CacheEntry] = {}
        for key, entry in list(entries.items()):
            if entry.platform in excluded:
                continue
            if entry.timestamp < cutoff:
                doomed[key] = entry
            elif min_file_size is not None and (entry.file_size_bytes or 0) < min_file_size:
                doomed[key] = entry
        if verify is not None:
            for key, entry in list(entries.items()):
                if key in doomed or entry.platform in excluded:
                    continue
                try:
                    valid = await verify(entry)
                except Exception:
                    valid = False
                if not valid:
                    doomed[key] = entry
        survivors = [(key, entry) for key, entry in entries.items() if key not in doomed]
        overflow = len(survivors) - max_entries
        if overflow > 0:
            evictable = sorted(
                (item for item in survivors if item[1].platform not in excluded),
                key=lambda item: item[1].timestamp,
            )
            for key, entry in evictable[:overflow]:
                doomed[key] = entry
        if not doomed:
            return 0
        async with self._save_lock:
            for key in doomed:
                entries.pop(key, None)
        await self._save()
        for entry in doomed.values():
            await self._evict(entry)
        logger.info(
            "Cleaned %d %s cache entries (%d remain)",
            len(doomed),
            self.name,
            len(entries),
            extra={"event": "cache.cleanup", "cache": self.name},
        )
        return len(doomed)

    async def clear(self) -> int:
        entries = await self._load()
        removed = list(entries.values())
        async with self._save_lock:
            entries.clear()
        await self._save()
        for entry in removed:
            await self._evict(entry)
        self.hits = self.misses = self.collisions = 0
        return len(removed)

    async def stats(self) -> CacheStats:
        entries = await self._load()
        values = list(entries.values())
        platform_stats: dict[str, int] = {}
        for entry in values:
            platform_stats[entry.platform] = platform_stats.get(entry.platform, 0) + 1
        lookups = self.hits + self.misses
        stamps = [entry.timestamp for entry in values]
        return CacheStats(
            total_entries=len(values),
            hits=self.hits,
            misses=self.misses,
            hit_ratio=self.hits / lookups if lookups else 0.0,
            total_size=sum(entry.file_size_bytes or 0 for entry in values),
            platform_stats=platform_stats,
            oldest_entry=min(stamps) if stamps else None,
            newest_entry=max(stamps) if stamps else None,
            collisions=self.collisions,
            resets=self.resets,
        )

    async def entries_by_platform(self, platform: str) -> list[CacheEntry]:
        entries = await self._load()
        return [entry for entry in entries.values() if entry.platform == platform]

    async def search(self, pattern: str) -> list[CacheEntry]:
        needle = pattern.lower()
        entries = await self._load()
        return [
            entry
            for entry in entries.values()
            if needle in entry.original_url.lower()
            or needle in (entry.title or "").lower()
            or needle in (entry.author or "").lower()
        ]

    async def export(self) -> dict[str, Any]:
        entries = await self._load()
        stats = await self.stats()
        document = self._document(dict(entries))
        document["stats"] = {
            "hits": stats.hits,
            "misses": stats.misses,
            "hitRatio": stats.hit_ratio,
            "collisions": stats.collisions,
        }
        return document
