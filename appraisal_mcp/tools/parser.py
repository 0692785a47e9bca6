"""Free-text supplier description parsing for bulk imports.

The primary path sends up to 20 descriptions per call through the
``vehicle_description_parser`` scaffold. Any item the model misses or
garbles is parsed again with deterministic patterns, so a batch always
returns one :class:`ParsedVehicle` per description.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from cip_protocol import CIP

from appraisal_mcp.constants import (
    BODY_KEYWORDS,
    FUEL_KEYWORDS,
    KNOWN_BRANDS,
    MILEAGE_RE,
    POWER_RE,
    TRANSMISSION_KEYWORDS,
    YEAR_RE,
)
from appraisal_mcp.models import ParsedVehicle
from appraisal_mcp.normalization import (
    canonical_brand,
    find_brand,
    normalize_body_type,
    normalize_fuel_type,
    normalize_transmission,
    parse_float,
    parse_int,
)
from appraisal_mcp.tools.json_repair import extract_json_payload
from appraisal_mcp.tools.orchestration import run_structured_scaffold

logger = logging.getLogger(__name__)

MAX_BATCH = 20
BASE_CONFIDENCE = 0.3
_CURRENT_YEAR = datetime.now(timezone.utc).year
_MODEL_TOKEN_RE = re.compile(r"[A-Za-z0-9][\w.+-]*")


def _is_stop_token(token: str) -> bool:
    if YEAR_RE.fullmatch(token) or POWER_RE.fullmatch(token):
        return True
    for table in (FUEL_KEYWORDS, TRANSMISSION_KEYWORDS, BODY_KEYWORDS):
        if any(pattern.fullmatch(token) for pattern, _ in table):
            return True
    return token.lower() in {"pk", "hp", "ps", "km"}


def _extract_model(text_after_brand: str) -> str | None:
    """Up to two tokens after the brand, stopping at year/keyword tokens."""
    tokens: list[str] = []
    for token in _MODEL_TOKEN_RE.findall(text_after_brand):
        if _is_stop_token(token) or len(tokens) == 2:
            break
        tokens.append(token)
    return " ".join(tokens) or None


def _valid_year(year: int | None) -> int | None:
    if year is None or not (1950 <= year <= _CURRENT_YEAR + 1):
        return None
    return year


def parse_with_patterns(description: str) -> ParsedVehicle:
    """Deterministic fallback parser; never raises."""
    text = (description or "").strip()
    result = ParsedVehicle(raw=text, confidence=BASE_CONFIDENCE, method="pattern")

    brand_hit = find_brand(text)
    if brand_hit is not None:
        brand, _, end = brand_hit
        result.brand = brand
        result.confidence += 0.2
        result.model = _extract_model(text[end:])
        if result.model:
            result.confidence += 0.1

    year_match = YEAR_RE.search(text)
    if year_match:
        result.build_year = _valid_year(int(year_match.group(0)))
        if result.build_year:
            result.confidence += 0.1

    result.fuel_type = normalize_fuel_type(text)
    if result.fuel_type:
        result.confidence += 0.1

    result.transmission = normalize_transmission(text)
    if result.transmission:
        result.confidence += 0.1

    result.body_type = normalize_body_type(text)

    power_match = POWER_RE.search(text)
    if power_match:
        result.power = int(power_match.group(1))

    mileage_match = MILEAGE_RE.search(text)
    if mileage_match:
        result.mileage = parse_int(mileage_match.group(1).replace(" ", "."))

    result.confidence = round(min(result.confidence, 1.0), 2)
    return result


def _coerce_ai_item(item: Any, description: str) -> ParsedVehicle | None:
    """Validate one model-produced record; ``None`` means "use patterns"."""
    if not isinstance(item, dict):
        return None
    brand = canonical_brand(str(item.get("brand") or ""))
    if brand is None:
        return None

    def _text(key: str) -> str | None:
        value = item.get(key)
        return str(value).strip() or None if value is not None else None

    fuel = _text("fuel_type") or _text("fuelType")
    transmission = _text("transmission")
    body = _text("body_type") or _text("bodyType")
    confidence = parse_float(item.get("confidence"))
    return ParsedVehicle(
        raw=description,
        brand=brand,
        model=_text("model"),
        build_year=_valid_year(parse_int(item.get("build_year", item.get("buildYear")))),
        mileage=parse_int(item.get("mileage")),
        fuel_type=normalize_fuel_type(fuel) or fuel,
        transmission=normalize_transmission(transmission),
        body_type=normalize_body_type(body) or body,
        power=parse_int(item.get("power")),
        trim=_text("trim") or _text("variant"),
        confidence=min(max(confidence if confidence is not None else 0.5, 0.0), 1.0),
        method="ai",
    )


def _align_items(items: list[Any], size: int) -> list[Any]:
    """Order model items by their 1-based ``index`` when present."""
    if all(isinstance(i, dict) and parse_int(i.get("index")) for i in items):
        aligned: list[Any] = [None] * size
        for item in items:
            position = parse_int(item.get("index")) - 1
            if 0 <= position < size and aligned[position] is None:
                aligned[position] = item
        return aligned
    return (list(items) + [None] * size)[:size]


async def _parse_chunk(cip: CIP | None, chunk: list[str]) -> list[ParsedVehicle]:
    if cip is None:
        return [parse_with_patterns(d) for d in chunk]

    numbered = "\n".join(f'{i + 1}. "{d}"' for i, d in enumerate(chunk))
    try:
        reply = await run_structured_scaffold(
            cip,
            user_input=(
                "Extract the vehicle attributes from each numbered description and "
                "return a JSON array with one object per description.\n" + numbered
            ),
            tool_name="parse_vehicle_descriptions",
            data_context={
                "known_brands": list(KNOWN_BRANDS),
                "description_count": len(chunk),
            },
            scaffold_id="vehicle_description_parser",
        )
    except Exception as exc:
        logger.warning("Description parser unavailable, using patterns: %s", exc)
        return [parse_with_patterns(d) for d in chunk]

    items = extract_json_payload(reply, expect="array")
    if items is None:
        logger.warning("Description parser reply was not a JSON array; using patterns")
        return [parse_with_patterns(d) for d in chunk]

    results: list[ParsedVehicle] = []
    for description, item in zip(chunk, _align_items(items, len(chunk))):
        parsed = _coerce_ai_item(item, description)
        results.append(parsed if parsed is not None else parse_with_patterns(description))
    return results


async def parse_vehicle_descriptions(
    cip: CIP | None,
    descriptions: list[str],
    *,
    batch_size: int = MAX_BATCH,
) -> list[ParsedVehicle]:
    """Parse *descriptions* in chunks of at most ``batch_size`` (cap 20)."""
    size = max(1, min(batch_size, MAX_BATCH))
    results: list[ParsedVehicle] = []
    for start in range(0, len(descriptions), size):
        chunk = [str(d or "") for d in descriptions[start:start + size]]
        results.extend(await _parse_chunk(cip, chunk))
    ai_count = sum(1 for r in results if r.method == "ai")
    logger.info(
        "Parsed %d descriptions (%d via model, %d via patterns)",
        len(results), ai_count, len(results) - ai_count,
    )
    return results
