"""
Text normalization for catalog and query strings.

Catalog text comes out of AI/OCR extraction and is noisy: mixed case,
stray control characters, repeated whitespace and locale-specific letters
(ą, č, ė, š, ž ...). Everything that is compared for similarity or brand
equality goes through `normalize_text` first so that scoring is
locale-consistent.
"""

from __future__ import annotations

import re
import unicodedata

from flyer_wizard.errors import ValidationError


MAX_QUERY_LENGTH = 255

_WHITESPACE_RE = re.compile(r"\s+")

# Letters that NFKD does not decompose into base + combining mark.
_FOLD_MAP = str.maketrans(
    {
        "ł": "l",
        "ø": "o",
        "đ": "d",
        "ß": "ss",
        "æ": "ae",
        "œ": "oe",
    }
)


def sanitize_query(text: str | None) -> str:
    """
    Strip control characters and collapse whitespace.

    Tabs and newlines count as whitespace and are collapsed; every other
    character below U+0020 (and DEL) is dropped.
    """
    if not text:
        return ""

    cleaned = "".join(
        ch
        for ch in text
        if ch in "\t\n\r" or not unicodedata.category(ch).startswith("C")
    )
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def strip_diacritics(text: str) -> str:
    """Remove combining marks: 'šviežias pienas' -> 'sviezias pienas'."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return unicodedata.normalize("NFC", stripped)


def normalize_text(text: str | None) -> str:
    """
    Canonicalize a catalog or query string.

    Examples:
        "  ŽEMAITIJOS   Pienas\\x00 2,5% " -> "zemaitijos pienas 2,5%"
        "Šokoladas\\tRŪTA" -> "sokoladas ruta"
    """
    text = sanitize_query(text)
    if not text:
        return ""
    text = text.casefold().translate(_FOLD_MAP)
    return strip_diacritics(text)


def normalize_brand(brand: str | None) -> str | None:
    """Normalize a brand, mapping blank values to None."""
    value = normalize_text(brand)
    return value or None


def same_brand(left: str | None, right: str | None) -> bool:
    """Brand equality on normalized text; a missing brand never matches."""
    a = normalize_brand(left)
    b = normalize_brand(right)
    return a is not None and a == b


def normalize_unit(unit: str | None) -> str | None:
    """Fold package units to a comparable token ('Kg' -> 'kg', 'l' -> 'l')."""
    value = normalize_text(unit).replace(".", "")
    aliases = {
        "ltr": "l",
        "litre": "l",
        "liter": "l",
        "gr": "g",
        "gram": "g",
        "kilogram": "kg",
        "pcs": "vnt",
        "pc": "vnt",
    }
    value = aliases.get(value, value)
    return value or None


def validate_query(query: str) -> str:
    """Normalize and validate a search query, raising ValidationError if unusable."""
    normalized = normalize_text(query)
    if not normalized:
        raise ValidationError("query cannot be empty", field="query")
    if len(normalized) > MAX_QUERY_LENGTH:
        raise ValidationError(
            f"query cannot exceed {MAX_QUERY_LENGTH} characters", field="query"
        )
    return normalized
