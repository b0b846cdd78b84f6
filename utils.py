#!/usr/bin/env python3
"""
Small helpers shared by the acquisition and normalization modules.
"""

from hashlib import blake2b
from typing import Optional
from urllib.parse import urljoin


def resolve_url(base_url: str, href: Optional[str]) -> str:
    """Resolve `href` against `base_url` unless it is already absolute http(s)."""
    href = (href or "").strip()
    if not href:
        return ""
    if href.startswith("http"):
        return href
    try:
        return urljoin(base_url, href)
    except ValueError:
        return href


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut `text` at `max_length` characters and append `suffix` if anything was removed.

    Args:
        text: The text to potentially truncate
        max_length: Number of characters kept from the original text
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text
    return text[:max_length] + suffix


def short_hash(*parts: str, digest_size: int = 8) -> str:
    """Stable hex digest of the given strings, used for synthetic identifiers."""
    h = blake2b(digest_size=digest_size)
    for part in parts:
        h.update((part or "").encode("utf-8"))
        h.update(b"\x1f")
    return h.hexdigest()
