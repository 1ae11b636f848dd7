"""Magnet URI construction for info hashes."""

import re
from typing import Iterable, Optional
from urllib.parse import quote

from .exceptions import InvalidHashError

INFO_HASH_PATTERN = re.compile(r"^[0-9a-fA-F]{40}$")


def normalize_info_hash(info_hash: str) -> str:
    """Validate a 40-hex info hash and return it lowercased."""
    if not info_hash or not INFO_HASH_PATTERN.match(info_hash):
        raise InvalidHashError(info_hash or "")
    return info_hash.lower()


def build_magnet_link(
    info_hash: str,
    trackers: Iterable[str] = (),
    name: Optional[str] = None,
) -> str:
    """Build a magnet URI for info_hash with optional display name and trackers."""
    parts = [f"xt=urn:btih:{normalize_info_hash(info_hash)}"]
    if name:
        parts.append(f"dn={quote(name)}")
    parts.extend(f"tr={quote(tracker, safe='')}" for tracker in trackers)
    return "magnet:?" + "&".join(parts)
