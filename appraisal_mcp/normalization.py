"""Shared canonical normalization functions for vehicle data.

Single source of truth: imported by the registry resolver, the description
parser, the listings aggregator, and bulk row ingestion.
"""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Any

from appraisal_mcp.constants import (
    BODY_KEYWORDS,
    BRAND_ALIASES,
    FUEL_KEYWORDS,
    KNOWN_BRANDS,
    PLATE_RE,
    PLATE_SEPARATORS_RE,
    TRANSMISSION_KEYWORDS,
)

_THOUSANDS_GROUP_RE = re.compile(r"^\d{1,3}(?:[.,]\d{3})+$")


def clean_numeric_string(raw: str) -> str:
    """Keep only digits, ``'.'``, ``','`` and ``'-'``."""
    return "".join(c for c in raw if c.isdigit() or c in {".", ",", "-"})


def _to_number(cleaned: str) -> float | None:
    cleaned = cleaned.rstrip("-").rstrip(",.")
    if not cleaned or cleaned == "-":
        return None
    if _THOUSANDS_GROUP_RE.fullmatch(cleaned):
        cleaned = cleaned.replace(".", "").replace(",", "")
    elif "," in cleaned and "." in cleaned:
        # The right-most separator is the decimal mark.
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        parsed = float(cleaned)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def parse_price(value: Any) -> float | None:
    """Best-effort price parsing (``"€ 19.950,-"`` -> 19950.0).

    Returns ``None`` for unparseable input.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        cleaned = clean_numeric_string(stripped)
        if not cleaned:
            return None
        return _to_number(cleaned)
    return None


def parse_int(value: Any) -> int | None:
    """Best-effort integer parsing.  Returns ``None`` for unparseable input."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        parsed = parse_price(value)
        if parsed is None:
            return None
        return int(parsed)
    return None


def parse_float(value: Any) -> float | None:
    """Best-effort float parsing for ratios and confidences."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip().replace(",", "."))
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def normalize_plate(plate: str) -> str:
    """Strip separators and uppercase (``"ab-123-c"`` -> ``"AB123C"``)."""
    return PLATE_SEPARATORS_RE.sub("", plate or "").upper()


def is_valid_plate(normalized: str) -> bool:
    return bool(PLATE_RE.fullmatch(normalized))


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def canonical_brand(raw: str | None) -> str | None:
    """Map a free-form brand onto the catalogue spelling, or ``None``."""
    if not raw or not raw.strip():
        return None
    folded = _fold(raw.strip())
    if folded in BRAND_ALIASES:
        return BRAND_ALIASES[folded]
    for brand in KNOWN_BRANDS:
        if _fold(brand) == folded:
            return BRAND_ALIASES.get(_fold(brand), brand)
    return None


def find_brand(text: str) -> tuple[str, int, int] | None:
    """Scan *text* for a catalogue brand; returns ``(brand, start, end)``.

    Longer names are tried first so "Land Rover" wins over "Rover" and
    "Mercedes-Benz" over "Mercedes".
    """
    folded = _fold(text)
    for brand in sorted(KNOWN_BRANDS, key=len, reverse=True):
        pattern = re.compile(rf"(?<![\w-]){re.escape(_fold(brand))}(?![\w-])")
        match = pattern.search(folded)
        if match:
            return BRAND_ALIASES.get(_fold(brand), brand), match.start(), match.end()
    return None


def _first_keyword(text: str, table: tuple[tuple[re.Pattern[str], str], ...]) -> str | None:
    for pattern, canonical in table:
        if pattern.search(text):
            return canonical
    return None


def normalize_fuel_type(raw: str | None) -> str | None:
    if not raw:
        return None
    return _first_keyword(raw, FUEL_KEYWORDS)


def normalize_transmission(raw: str | None) -> str | None:
    if not raw:
        return None
    return _first_keyword(raw, TRANSMISSION_KEYWORDS)


def normalize_body_type(raw: str | None) -> str | None:
    if not raw:
        return None
    return _first_keyword(raw, BODY_KEYWORDS)


def slugify(text: str) -> str:
    """Lowercase, accent-free, hyphen-separated URL slug."""
    folded = _fold(text.strip())
    return re.sub(r"[^a-z0-9]+", "-", folded).strip("-")
