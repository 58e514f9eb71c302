"""API key generation and digesting for Tollgate.

API keys use an ``sk-`` prefix followed by 64 hex characters.  Only the
SHA-256 hash of the raw key is stored in the database: the raw key is shown
exactly ONCE to the operator at issuance time and cannot be recovered
afterward.

The same digest names the key's cache entry (``api_key:<digest>``), so raw
keys never appear in Redis either.
"""

from __future__ import annotations

import hashlib
import secrets

KEY_PREFIX = "sk-"
CACHE_KEY_PREFIX = "api_key:"


def generate_api_key() -> tuple[str, str, str]:
    """Generate a new API key and return its components.

    Returns:
        A ``(raw_key, key_prefix, key_digest)`` triple where:
        - ``raw_key``   : full key shown once to the operator (``"sk-3fa9..."``).
        - ``key_prefix``: first 8 characters for safe display.
        - ``key_digest``: SHA-256 hex digest used for database lookup.
    """
    raw_key = KEY_PREFIX + secrets.token_hex(32)
    return raw_key, raw_key[:8], digest_api_key(raw_key)


def digest_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def cache_key(key_digest: str) -> str:
    """Redis key under which a resolved key entry is cached."""
    return f"{CACHE_KEY_PREFIX}{key_digest}"
