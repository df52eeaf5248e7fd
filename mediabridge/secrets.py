"""Helpers for reading and redacting secret settings."""

from __future__ import annotations

from pydantic import SecretStr


def secret_value(value: SecretStr | str | None) -> str | None:
    """Return the plaintext secret stripped of whitespace, or None when blank."""
    if value is None:
        return None
    raw = value.get_secret_value() if isinstance(value, SecretStr) else value
    stripped = raw.strip()
    return stripped or None


def redact(text: str, *secrets: str | None) -> str:
    """Replace every occurrence of the given secrets in ``text`` with a mask."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, f"{secret[:4]}***")
    return text
