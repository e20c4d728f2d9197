"""Key layout and key derivation for kv-guard.

Every key this package writes lives under one of three namespaces:

- ``rate_limit:<scope>:<identity>`` - rate limit counters
- ``cache:<derived key>`` - cached responses
- ``session:<id>`` - session documents

Cache keys are derived deterministically from the request identity
(method + normalized path + sorted query) so that equivalent requests share
an entry.
"""

from __future__ import annotations

import hashlib
import re
from urllib.parse import parse_qsl, urlencode

RATE_LIMIT_PREFIX = "rate_limit"
CACHE_PREFIX = "cache"
SESSION_PREFIX = "session"

# Derived keys longer than this are replaced by a digest
MAX_DERIVED_KEY_LENGTH = 200

_DUPLICATE_SLASHES = re.compile(r"/{2,}")


def namespaced(prefix: str, *parts: str) -> str:
    """Join a namespace prefix and key parts with ':'.

    Raises:
        ValueError: If any part is empty

    Example:
        >>> namespaced("rate_limit", "global", "10.0.0.1")
        'rate_limit:global:10.0.0.1'
    """
    for part in parts:
        if not part:
            raise ValueError(f"Key parts for '{prefix}' cannot be empty, got {parts!r}")
    return ":".join((prefix, *parts))


def normalize_path(path: str) -> str:
    """Collapse duplicate slashes and drop the trailing slash (except for root)."""
    path = _DUPLICATE_SLASHES.sub("/", path or "/")
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def normalize_query(query: str | bytes | None) -> str:
    """Sort query parameters so that parameter order does not split cache entries."""
    if not query:
        return ""
    if isinstance(query, bytes):
        query = query.decode("latin-1")
    pairs = parse_qsl(query, keep_blank_values=True)
    return urlencode(sorted(pairs))


def derive_cache_key(method: str, path: str, query: str | bytes | None = None) -> str:
    """Derive the cache key for a request.

    Args:
        method: HTTP method (case-insensitive)
        path: Request path
        query: Raw query string, if any

    Returns:
        Key of the form ``"GET /items?a=1&b=2"``, or ``"GET sha256:<digest>"``
        when the readable form exceeds MAX_DERIVED_KEY_LENGTH.

    Example:
        >>> derive_cache_key("get", "/items//", "b=2&a=1")
        'GET /items?a=1&b=2'
    """
    target = normalize_path(path)
    normalized_query = normalize_query(query)
    if normalized_query:
        target = f"{target}?{normalized_query}"

    key = f"{method.upper()} {target}"
    if len(key) > MAX_DERIVED_KEY_LENGTH:
        digest = hashlib.sha256(target.encode("utf-8")).hexdigest()
        key = f"{method.upper()} sha256:{digest}"
    return key


def hash_identifier(identifier: str, *, length: int = 16, salt: str = "") -> str:
    """Hash a sensitive identifier (email, token) before using it in a key.

    Input is lowercased and stripped so equivalent spellings map to the same
    counter; a salt separates contexts that must not share counters.

    Example:
        >>> hash_identifier("User@Example.com") == hash_identifier(" user@example.com ")
        True
    """
    if not identifier or not identifier.strip():
        raise ValueError("identifier cannot be empty")
    if length < 8 or length > 64:
        raise ValueError(f"length must be between 8 and 64, got {length}")

    normalized = identifier.lower().strip()
    if salt:
        normalized = f"{salt}:{normalized}"
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:length]


__all__ = [
    "CACHE_PREFIX",
    "MAX_DERIVED_KEY_LENGTH",
    "RATE_LIMIT_PREFIX",
    "SESSION_PREFIX",
    "derive_cache_key",
    "hash_identifier",
    "namespaced",
    "normalize_path",
    "normalize_query",
]
