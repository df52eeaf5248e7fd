"""Chat message rendering for resolved posts, downloads and failures."""

from __future__ import annotations

import html
import re
from dataclasses import dataclass

from .errors import MediaBridgeError, PolicyViolation
from .files import format_duration, format_file_size
from .models import DownloadArtifact, Engagement, Platform, Post

PLATFORM_EMOJI = {
    Platform.TWITTER: "🐦",
    Platform.INSTAGRAM: "📷",
    Platform.TIKTOK: "🎵",
}
GENERIC_EMOJI = "📱"
_TAG_RE = re.compile(r"<[^>]*>")


@dataclass(frozen=True, slots=True)
class DisplayOptions:
    show_platform: bool = True
    show_author: bool = True
    show_content: bool = True
    show_engagement: bool = True
    show_original_link: bool = True
    max_length: int = 1024


def platform_label(platform: Platform | str | None) -> tuple[str, str]:
    """``(emoji, upper-case name)`` for a platform tag, tolerating unknown tags."""
    if isinstance(platform, Platform):
        return PLATFORM_EMOJI[platform], platform.value.upper()
    if platform:
        try:
            known = Platform(platform)
        except ValueError:
            return GENERIC_EMOJI, str(platform).upper()
        return PLATFORM_EMOJI[known], known.value.upper()
    return GENERIC_EMOJI, "LINK"


def strip_html(text: str) -> str:
    return html.unescape(_TAG_RE.sub("", text))


def format_engagement(engagement: Engagement | None) -> str:
    if engagement is None or engagement.is_empty:
        return ""
    parts = []
    if engagement.likes is not None:
        parts.append(f"❤️ {engagement.likes:,}")
    if engagement.shares is not None:
        parts.append(f"🔄 {engagement.shares:,}")
    if engagement.comments is not None:
        parts.append(f"💬 {engagement.comments:,}")
    return " | ".join(parts)


def _post_block(post: Post, options: DisplayOptions, *, compact: bool) -> list[str]:
    lines: list[str] = []
    author = html.escape(post.author)
    if options.show_author:
        lines.append(f"👤 <b>@{author}</b>" if compact else f"👤 <b>Author:</b> {author}")
    if options.show_content and post.text_content:
        text = html.escape(post.text_content)
        lines.append(f"📝 {text}" if compact else f"\n📝 {text}")
    if options.show_engagement:
        stats = format_engagement(post.engagement)
        if stats:
            lines.append(stats if compact else f"\n{stats}")
    return lines


def truncate_caption(caption: str, limit: int) -> str:
    """Shorten an HTML caption to ``limit`` visible-ish characters without cutting a tag."""
    if len(caption) <= limit:
        return caption
    cut = caption[: max(limit - 1, 0)]
    if cut.rfind("<") > cut.rfind(">"):
        cut = cut[: cut.rfind("<")]
    if cut.rfind("&") > cut.rfind(";"):
        cut = cut[: cut.rfind("&")]
    # Drop any tag left open by the cut.
    opened = re.findall(r"<(b|i|a)\b[^>]*>", cut)
    closed = re.findall(r"</(b|i|a)>", cut)
    for tag in reversed(opened[len(closed):]):
        cut += f"</{tag}>"
    return cut.rstrip() + "…"


def format_post(post: Post, options: DisplayOptions | None = None) -> str:
    """HTML caption for a resolved post; a reply renders as a two-part conversation."""
    options = options or DisplayOptions()
    emoji, name = platform_label(post.platform)
    lines: list[str] = []
    if post.parent_post is not None:
        lines.append(f"{emoji} <b>{name}</b> - CONVERSATION\n")
        lines.append("💬 <b>Original post:</b>")
        lines.extend(_post_block(post.parent_post, options, compact=True))
        lines.append("\n➥ <b>Reply:</b>")
        lines.extend(_post_block(post, options, compact=True))
    else:
        if options.show_platform:
            lines.append(f"{emoji} <b>{name}</b>")
        lines.extend(_post_block(post, options, compact=False))
    if options.show_original_link:
        lines.append(f'\n🔗 <a href="{html.escape(post.source_url, quote=True)}">View original</a>')
    return truncate_caption("\n".join(lines), options.max_length)


def format_download(artifact: DownloadArtifact, source_url: str, options: DisplayOptions | None = None) -> str:
    options = options or DisplayOptions()
    meta = artifact.metadata
    lines = [f"{GENERIC_EMOJI} <b>{html.escape((meta.extractor or 'MEDIA').upper())}</b>"]
    if meta.title:
        lines.append(f"🎬 {html.escape(meta.title)}")
    if options.show_author and meta.uploader:
        lines.append(f"👤 <b>Author:</b> {html.escape(meta.uploader)}")
    details = []
    if artifact.duration_seconds:
        details.append(f"⏱ {format_duration(artifact.duration_seconds)}")
    if artifact.size_bytes:
        details.append(f"💾 {format_file_size(artifact.size_bytes)}")
    if details:
        lines.append(" | ".join(details))
    if options.show_original_link:
        lines.append(f'\n🔗 <a href="{html.escape(source_url, quote=True)}">View original</a>')
    return truncate_caption("\n".join(lines), options.max_length)


def format_error(platform: Platform | str | None, error: MediaBridgeError | str) -> str:
    """Short, platform-tagged failure text; policy errors state the exceeded limit."""
    emoji, name = platform_label(platform)
    if isinstance(error, MediaBridgeError):
        reason = error.user_message()
    else:
        reason = str(error)
    icon = "🚫" if isinstance(error, PolicyViolation) else "❌"
    return f"{emoji} <b>Could not process {html.escape(name)}</b>\n\n{icon} {html.escape(reason)}"


def format_fixed_urls(pairs: list[tuple[Platform, str]]) -> str:
    if not pairs:
        return "❌ No social media URLs found in the message."
    lines = ["🔗 <b>Fixed URLs:</b>", ""]
    for platform, fixed in pairs:
        emoji, name = platform_label(platform)
        lines.append(f"{emoji} <b>{name}:</b> {html.escape(fixed)}")
    return "\n".join(lines)
