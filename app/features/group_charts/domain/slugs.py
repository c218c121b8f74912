"""
URL slugs for chart entries.
"""

import re
import unicodedata

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_SEPARATORS = re.compile(r"[\s_]+")
_REPEATED_DASHES = re.compile(r"-{2,}")


def generate_slug(entry_key: str) -> str:
    """
    Turn an entry key into a URL-safe slug.

    "Beyoncé|Halo" -> "beyonce-halo"
    """
    normalized = unicodedata.normalize("NFD", entry_key.lower())
    without_accents = "".join(ch for ch in normalized if unicodedata.category(ch) != "Mn")
    slug = without_accents.replace("|", "-")
    slug = _SEPARATORS.sub("-", slug)
    slug = _INVALID_CHARS.sub("", slug)
    slug = _REPEATED_DASHES.sub("-", slug)
    return slug.strip("-")
