"""Chat commands: /fix, /status and /help."""

from __future__ import annotations

import html
import logging
import re
from typing import Awaitable, Callable

from .cache import CacheStats, ResolutionCache
from .errors import DeliveryFailure
from .files import format_file_size
from .formatting import format_fixed_urls
from .manager import InboundMessage, ResolutionManager
from .models import Platform
from .providers.registry import ProviderRegistry
from .urls import extract_urls

logger = logging.getLogger(__name__)

_COMMAND_RE = re.compile(r"^/(?P<name>[A-Za-z0-9_]+)(?:@(?P<bot>[A-Za-z0-9_]+))?(?:\s+(?P<args>.*))?$", re.DOTALL)

HELP_TEXT = "\n".join(
    (
        "🤖 <b>MediaBridge</b>",
        "",
        "Send a Twitter/X, Instagram or TikTok link and the post is shown right here.",
        "Other video links (YouTube, Reddit, Vimeo and more) are downloaded when possible.",
        "",
        "<b>Commands</b>",
        "/fix &lt;links&gt; - reply with embed-friendly links",
        "/status - provider, downloader and cache status",
        "/help - this message",
    )
)


def parse_command(text: str | None, bot_username: str | None = None) -> tuple[str, str] | None:
    """``("fix", "rest of text")`` for ``/fix@bot rest of text``; None for non-commands."""
    if not text or not text.startswith("/"):
        return None
    match = _COMMAND_RE.match(text.strip())
    if match is None:
        return None
    target = match.group("bot")
    if target and bot_username and target.lower() != bot_username.lower():
        return None
    return match.group("name").lower(), (match.group("args") or "").strip()


def fixed_urls(registry: ProviderRegistry, text: str) -> list[tuple[Platform, str]]:
    pairs: list[tuple[Platform, str]] = []
    for url in extract_urls(text):
        provider = registry.for_url(url)
        if provider is not None:
            pairs.append((provider.platform, provider.canonicalize(url)))
    return pairs


def _cache_lines(label: str, stats: CacheStats) -> list[str]:
    lines = [
        f"<b>{label} cache:</b> {stats.total_entries} entries, {format_file_size(stats.total_size)}",
        f"  hits {stats.hits} / misses {stats.misses} ({stats.hit_ratio:.0%})",
    ]
    if stats.platform_stats:
        per_platform = ", ".join(f"{html.escape(name)} {count}" for name, count in sorted(stats.platform_stats.items()))
        lines.append(f"  {per_platform}")
    if stats.collisions or stats.resets:
        lines.append(f"  collisions {stats.collisions}, resets {stats.resets}")
    return lines


class CommandRouter:
    """Dispatches slash commands; unknown commands are ignored."""

    def __init__(
        self,
        manager: ResolutionManager,
        *,
        image_cache: ResolutionCache | None = None,
        bot_username: str | None = None,
    ) -> None:
        self.manager = manager
        self.image_cache = image_cache
        self.bot_username = bot_username
        self._handlers: dict[str, Callable[[InboundMessage, str], Awaitable[str]]] = {
            "fix": self.fix,
            "status": self.status,
            "help": self.help,
            "start": self.help,
        }

    async def dispatch(self, message: InboundMessage) -> bool:
        """Handle ``message`` if it is a known command; returns whether it was one."""
        parsed = parse_command(message.text, self.bot_username)
        if parsed is None:
            return False
        name, args = parsed
        handler = self._handlers.get(name)
        if handler is None:
            return False
        reply = await handler(message, args)
        try:
            await self.manager.transport.send_text(message.chat_id, reply, reply_to=message.message_id)
        except DeliveryFailure as exc:
            logger.warning("Could not answer /%s: %s", name, exc)
        return True

    async def fix(self, message: InboundMessage, args: str) -> str:
        return format_fixed_urls(fixed_urls(self.manager.registry, args))

    async def help(self, message: InboundMessage, args: str) -> str:
        return HELP_TEXT

    async def status(self, message: InboundMessage, args: str) -> str:
        lines = ["📊 <b>Status</b>", ""]
        platforms = ", ".join(p.display_name for p in self.manager.registry.platforms) or "none"
        lines.append(f"<b>Providers:</b> {html.escape(platforms)}")
        downloader = self.manager.downloader
        if downloader is not None:
            stats = await downloader.stats()
            lines.append(
                f"<b>Downloads:</b> {stats.active_downloads}/{stats.max_downloads} active, "
                f"{stats.temp_files} temp files ({format_file_size(stats.temp_size)}), "
                f"{stats.supported_sites} extractors"
            )
        else:
            lines.append("<b>Downloads:</b> disabled")
        lines.extend(_cache_lines("Video", await self.manager.cache.stats()))
        if self.image_cache is not None:
            lines.extend(_cache_lines("Image", await self.image_cache.stats()))
        return "\n".join(lines)
