"""URL canonicalization utilities for source deduplication."""

from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlsplit

_TRAILING_PUNCTUATION = ".,;:!?)]}'\""


def strip_trailing_punctuation(raw_url: str) -> str:
    """Drop punctuation that free text commonly glues onto the end of a URL."""
    return raw_url.strip().rstrip(_TRAILING_PUNCTUATION)


def canonicalize_url(raw_url: str) -> str:
    """Return a dedupe key for a source URL.

    Rules:
    - Scheme and a leading ``www.`` are dropped.
    - Host is lowercased; path case is preserved.
    - Trailing punctuation and trailing slashes are removed.
    - Query parameters are sorted; fragments are dropped.
    """
    if not raw_url or not raw_url.strip():
        raise ValueError("empty_url")

    url_text = strip_trailing_punctuation(raw_url)
    parsed = urlsplit(url_text)

    # Bare hosts without scheme (e.g., example.com/path)
    if not parsed.scheme and not parsed.netloc and parsed.path:
        parsed = urlsplit(f"http://{url_text}")

    host = (parsed.hostname or "").lower()
    if not host:
        raise ValueError("invalid_host")
    if host.startswith("www."):
        host = host[4:]

    if parsed.port and parsed.port not in (80, 443):
        host = f"{host}:{parsed.port}"

    path = re.sub(r"/+", "/", parsed.path or "")
    path = path.rstrip("/")

    query = ""
    if parsed.query:
        query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))

    key = f"{host}{path}"
    if query:
        key = f"{key}?{query}"
    return key
