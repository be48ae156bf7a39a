"""Stable conversion of free text into storage-safe path segments."""

import re
import unicodedata

_NON_SLUG = re.compile(r"[^a-z0-9]+")

DEFAULT_FALLBACK = "sin-nombre"


def slugify(value: str | None, fallback: str = DEFAULT_FALLBACK) -> str:
    """Lowercase ASCII slug: accents dropped, every other run of characters
    outside [a-z0-9] collapsed into a single hyphen.

    "María Pérez" -> "maria-perez". The same input always yields the same
    slug; text with nothing usable left becomes ``fallback``.
    """
    if not value:
        return fallback
    normalized = unicodedata.normalize("NFKD", value)
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii").lower()
    slug = _NON_SLUG.sub("-", ascii_value).strip("-")
    return slug[:100].rstrip("-") or fallback
