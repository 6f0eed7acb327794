"""Identifier and name helpers."""

from __future__ import annotations

import re
import secrets
import unicodedata


SHORT_ID_LENGTH = 8
_SHORT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8}$")


def generate_short_id(length: int = SHORT_ID_LENGTH) -> str:
    """Return a random url-safe identifier of `length` characters."""

    return secrets.token_urlsafe(length)[:length]


def is_valid_short_id(value: str) -> bool:
    return bool(_SHORT_ID_PATTERN.match(value or ""))


def slugify(value: str) -> str:
    """Lower-case ASCII slug with dashes ("My NAS Share" -> "my-nas-share")."""

    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", normalized).strip("-").lower()
    return slug
