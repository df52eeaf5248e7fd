"""Declarative field extraction over heterogeneous upstream JSON.

Upstream mirrors rename fields between versions, so each field is described
by an ordered list of dotted key paths. ``extract`` walks them in priority
order and takes the first usable value; integer path segments index lists.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from .errors import ResolutionError, ResolutionReason

_MISSING = object()

Transform = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class FieldRule:
    """Candidate paths for one output field."""

    name: str
    paths: tuple[str, ...]
    default: Any = None
    required: bool = False
    transform: Transform | None = None


def _walk(data: Any, path: str) -> Any:
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def probe(data: Any, *paths: str, default: Any = None) -> Any:
    """Return the first non-empty value found at any of ``paths``."""
    for path in paths:
        value = _walk(data, path)
        if value is _MISSING or value is None or value == "":
            continue
        return value
    return default


def extract(data: Any, rules: Iterable[FieldRule]) -> dict[str, Any]:
    """Apply ``rules`` to ``data``; a missing required field is a parse error."""
    result: dict[str, Any] = {}
    for rule in rules:
        value: Any = _MISSING
        for path in rule.paths:
            candidate = _walk(data, path)
            if candidate is _MISSING or candidate is None or candidate == "":
                continue
            if rule.transform is not None:
                try:
                    candidate = rule.transform(candidate)
                except (TypeError, ValueError):
                    continue
                if candidate is None:
                    continue
            value = candidate
            break
        if value is _MISSING:
            if rule.required:
                raise ResolutionError(
                    ResolutionReason.PARSE,
                    f"required field {rule.name!r} not found (tried {', '.join(rule.paths)})",
                )
            value = rule.default
        result[rule.name] = value
    return result


def as_str(value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise TypeError("not a scalar")
    return str(value).strip()


def as_count(value: Any) -> int | None:
    """Engagement counter; negative or boolean input is treated as absent."""
    if isinstance(value, bool):
        return None
    number = int(float(value))
    return number if number >= 0 else None


def as_seconds(value: Any) -> float | None:
    seconds = float(value)
    return seconds if seconds >= 0 else None


def as_millis_seconds(value: Any) -> float | None:
    seconds = as_seconds(value)
    return seconds / 1000 if seconds is not None else None


def as_datetime(value: Any) -> datetime:
    """Accept unix seconds, unix milliseconds or ISO-8601/RFC-2822-ish strings."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        stamp = float(value)
        if stamp > 1e12:
            stamp /= 1000
        return datetime.fromtimestamp(stamp, tz=timezone.utc)
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = datetime.strptime(text, "%a %b %d %H:%M:%S %z %Y")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
