"""
Company name normalization.

``normalize_key`` produces the cache fingerprint of a lookup name;
``slugify`` produces the URL vanity name used by the heuristic fallback.
"""

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")
_NON_SLUG_RE = re.compile(r"[^a-z0-9]")
_DASH_RUN_RE = re.compile(r"-+")


def normalize_key(name: str) -> str:
    """
    Normalize a company name into its cache key.

    Examples:
        >>> normalize_key("  Acme Corp ")
        'acme corp'
        >>> normalize_key("ACME\\tCORP")
        'acme corp'
    """
    if not name:
        return ""
    normalized = unicodedata.normalize("NFKC", name).strip().lower()
    return _WHITESPACE_RE.sub(" ", normalized)


def slugify(name: str) -> str:
    """
    Deterministic vanity-name guess for a company name.

    Examples:
        >>> slugify("Acme Corp, Inc.")
        'acme-corp-inc'
    """
    slug = _NON_SLUG_RE.sub("-", normalize_key(name))
    return _DASH_RUN_RE.sub("-", slug).strip("-")
