"""Marketplace comparable search and price statistics.

Listing discovery is delegated to a web-search capable agent behind the
narrow :class:`ListingSearchAgent` interface. Its free-form reply never
leaves this module: it is repaired, validated, and reduced to a typed
:class:`PortalAnalysis`. Every failure mode yields an explicitly empty
analysis instead of an exception.
"""

from __future__ import annotations

import json
import logging
import math
import os
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode

from cip_protocol import CIP
from openai import AsyncOpenAI

from appraisal_mcp.cache import LRUCache
from appraisal_mcp.constants import MARKETPLACE_FUEL_SLUGS
from appraisal_mcp.models import (
    ComparableListing,
    PortalAnalysis,
    SearchFilters,
    VehicleAttributes,
)
from appraisal_mcp.normalization import parse_int, parse_price, slugify
from appraisal_mcp.tools.json_repair import extract_json_payload, extract_listing_objects
from appraisal_mcp.tools.orchestration import run_structured_scaffold

logger = logging.getLogger(__name__)

MARKETPLACE_BASE = "https://www.gaspedaal.nl"
MAX_LISTINGS = 15
MILEAGE_HEADROOM = 1.15
PRIMARY_MILEAGE_TOLERANCE = 0.15
PRIMARY_MILEAGE_FLOOR = 15_000
DEVIATION_MILEAGE_FACTOR = 1.5
DEVIATION_YEAR_GAP = 2
DEVIATION_PRICE_FACTOR = 0.5
# Agents sometimes answer in thousands ("18.9").
MIN_PLAUSIBLE_PRICE = 500


# ── Search URLs ────────────────────────────────────────────────────


def max_mileage_filter(mileage: int) -> int:
    return math.ceil(mileage * MILEAGE_HEADROOM / 1000) * 1000


def build_search_filters(vehicle: VehicleAttributes) -> SearchFilters | None:
    """Marketplace search URL sorted by ascending price, or ``None``."""
    if not vehicle.brand or not vehicle.model:
        return None
    params: dict[str, Any] = {}
    filters = SearchFilters()
    if vehicle.build_year:
        filters.year_min = vehicle.build_year - 1
        filters.year_max = vehicle.build_year + 1
        params["bmin"] = filters.year_min
        params["bmax"] = filters.year_max
    if vehicle.mileage > 0:
        filters.max_mileage = max_mileage_filter(vehicle.mileage)
        params["kmmax"] = filters.max_mileage
    params["sort"] = "prijs-oplopend"
    fuel_slug = MARKETPLACE_FUEL_SLUGS.get(vehicle.fuel_type or "")
    if fuel_slug:
        filters.fuel = fuel_slug
        params["brandstof"] = fuel_slug
    filters.url = (
        f"{MARKETPLACE_BASE}/{slugify(vehicle.brand)}/{slugify(vehicle.model)}?"
        + urlencode(params)
    )
    return filters


def build_search_prompt(vehicle: VehicleAttributes, urls: list[str]) -> str:
    url_lines = "\n".join(f"- {u}" for u in urls)
    return (
        f"Open the following marketplace search page(s) for a {vehicle.label}:\n"
        f"{url_lines}\n\n"
        f"Results are sorted by price, lowest first. Read the first page only and "
        f"return at most {MAX_LISTINGS} listings as JSON in exactly this shape:\n"
        '{"listings": [{"title": "...", "price": 18950, "mileage": 61000, '
        '"build_year": 2020, "color": null, "options": [], "url": "https://..."}]}\n'
        "Prices and mileage as plain numbers. Only listings with a direct URL. "
        "JSON only, no other text."
    )


# ── Agents ─────────────────────────────────────────────────────────


@runtime_checkable
class ListingSearchAgent(Protocol):
    """Anything that turns a search prompt into the agent's raw reply text."""

    async def search(self, prompt: str) -> str | None: ...


class OpenAIWebSearchAgent:
    """OpenAI Responses API with the hosted web-search tool."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str = "gpt-4o",
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self._client = client or AsyncOpenAI(
            api_key=api_key if api_key is not None else os.environ.get("OPENAI_API_KEY", ""),
        )

    async def search(self, prompt: str) -> str | None:
        response = await self._client.responses.create(
            model=self.model,
            tools=[{"type": "web_search_preview"}],
            input=prompt,
        )
        return getattr(response, "output_text", None) or None


class CIPListingSearchAgent:
    """Routes the search through the ``portal_listing_search`` scaffold."""

    def __init__(self, cip: CIP) -> None:
        self._cip = cip

    async def search(self, prompt: str) -> str | None:
        return await run_structured_scaffold(
            self._cip,
            user_input=prompt,
            tool_name="search_portal_listings",
            data_context={"max_listings": MAX_LISTINGS},
            scaffold_id="portal_listing_search",
        )


def default_search_agent(cip: CIP | None) -> ListingSearchAgent | None:
    if os.environ.get("OPENAI_API_KEY", "").strip():
        return OpenAIWebSearchAgent()
    if cip is not None:
        return CIPListingSearchAgent(cip)
    return None


# ── Listing analysis ───────────────────────────────────────────────


def normalize_listing(raw: Any, *, source: str = "gaspedaal") -> ComparableListing | None:
    """Typed listing, or ``None`` when the URL or a numeric price is missing."""
    if not isinstance(raw, dict):
        return None
    url = str(raw.get("url") or "").strip()
    price = parse_price(raw.get("price"))
    if not url or price is None or not math.isfinite(price) or price <= 0:
        return None
    if price < MIN_PLAUSIBLE_PRICE:
        price *= 1000
    options = raw.get("options")
    return ComparableListing(
        source=source,
        url=url,
        title=str(raw.get("title") or "").strip(),
        price=float(price),
        mileage=parse_int(raw.get("mileage")),
        build_year=parse_int(raw.get("build_year", raw.get("buildYear"))),
        color=(str(raw["color"]).strip() or None) if raw.get("color") else None,
        options=[str(o) for o in options] if isinstance(options, list) else [],
    )


def match_score(listing: ComparableListing, vehicle: VehicleAttributes) -> float:
    """100 minus 5 per build-year step and 1 per 5000 km, scaled to 0-1."""
    year_gap = _year_gap(listing, vehicle)
    km_gap = _km_gap(listing, vehicle)
    score = 100 - 5 * year_gap - km_gap / 5000
    return round(max(0, min(100, score)) / 100, 2)


def _year_gap(listing: ComparableListing, vehicle: VehicleAttributes) -> int:
    if listing.build_year is None or vehicle.build_year is None:
        return 0
    return abs(listing.build_year - vehicle.build_year)


def _km_gap(listing: ComparableListing, vehicle: VehicleAttributes) -> int:
    if listing.mileage is None or vehicle.mileage <= 0:
        return 0
    return abs(listing.mileage - vehicle.mileage)


def classify_listing(
    listing: ComparableListing,
    vehicle: VehicleAttributes,
    filters: SearchFilters,
    peer_median: float | None,
) -> None:
    """Set score, primary flag and deviation flag in place (flags disjoint)."""
    listing.match_score = match_score(listing, vehicle)

    reason: str | None = None
    max_km = filters.max_mileage
    if max_km and listing.mileage is not None and listing.mileage > max_km * DEVIATION_MILEAGE_FACTOR:
        reason = f"Mileage far above filter ({listing.mileage} km)"
    elif _year_gap(listing, vehicle) > DEVIATION_YEAR_GAP:
        reason = f"Build year deviates strongly ({listing.build_year})"
    elif peer_median and listing.price < peer_median * DEVIATION_PRICE_FACTOR:
        reason = f"Price implausibly low versus peers (EUR {listing.price:,.0f})"

    if reason:
        listing.is_deviation = True
        listing.deviation_reason = reason
        listing.is_primary = False
        return

    tolerance = (
        vehicle.mileage * PRIMARY_MILEAGE_TOLERANCE if vehicle.mileage > 0 else PRIMARY_MILEAGE_FLOOR
    )
    km_gap = abs(listing.mileage - vehicle.mileage) if listing.mileage is not None else 0
    listing.is_primary = _year_gap(listing, vehicle) <= 1 and km_gap <= tolerance
    listing.is_deviation = False


def _median(sorted_prices: list[float]) -> float:
    return sorted_prices[len(sorted_prices) // 2]


def analyze_listings(
    vehicle: VehicleAttributes,
    raw_listings: list[Any],
    filters: SearchFilters,
) -> PortalAnalysis:
    listings = [
        item for item in (normalize_listing(r) for r in raw_listings[:MAX_LISTINGS]) if item
    ]
    if not listings:
        return PortalAnalysis.empty("No usable listings returned", filters)

    peer_median = _median(sorted(item.price for item in listings))
    for item in listings:
        classify_listing(item, vehicle, filters, peer_median)

    primary = [item for item in listings if item.is_primary]
    basis = primary or [item for item in listings if not item.is_deviation]
    note = None if primary else "No primary comparables; statistics use all non-deviating listings"
    prices = sorted(item.price for item in basis)

    listings.sort(key=lambda item: item.price)
    return PortalAnalysis(
        lowest_price=prices[0] if prices else None,
        median_price=_median(prices) if prices else None,
        highest_price=prices[-1] if prices else None,
        listing_count=len(listings),
        primary_count=len(primary),
        filters=filters,
        listings=[item for item in listings if not item.is_deviation],
        deviations=[item for item in listings if item.is_deviation],
        note=note if prices else "All listings deviate from the target vehicle",
    )


def parse_agent_reply(text: str | None) -> list[Any] | None:
    """Listings from the agent reply, or ``None`` if nothing is recoverable."""
    payload = extract_json_payload(text, expect="object")
    if isinstance(payload, dict) and isinstance(payload.get("listings"), list):
        return payload["listings"]
    array = extract_json_payload(text, expect="array")
    if isinstance(array, list):
        return array
    salvaged = extract_listing_objects(text)
    return salvaged or None


class ComparableListingsAggregator:
    """Agent-backed comparable search with an injected bounded cache."""

    def __init__(
        self,
        agent: ListingSearchAgent | None,
        *,
        cache: LRUCache | None = None,
    ) -> None:
        self._agent = agent
        self._cache = cache if cache is not None else LRUCache(max_entries=64, ttl=1800)

    async def analyze(
        self,
        vehicle: VehicleAttributes,
        urls: list[str] | None = None,
    ) -> PortalAnalysis:
        """Return a PortalAnalysis; never raises."""
        filters = build_search_filters(vehicle) or SearchFilters()
        search_urls = [u for u in (urls or []) if u] or ([filters.url] if filters.url else [])
        if not search_urls:
            return PortalAnalysis.empty("No marketplace search URL for this vehicle", filters)
        if filters.url is None:
            filters.url = search_urls[0]
        if self._agent is None:
            return PortalAnalysis.empty("Listing search agent not configured", filters)

        cache_key = json.dumps([search_urls, vehicle.mileage, vehicle.build_year])
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            reply = await self._agent.search(build_search_prompt(vehicle, search_urls))
        except Exception as exc:
            logger.warning("Listing search agent failed for %s: %s", vehicle.label, exc)
            return PortalAnalysis.empty("Listing search unavailable", filters)

        if not reply or not reply.strip():
            logger.warning("Listing search agent returned no text for %s", vehicle.label)
            return PortalAnalysis.empty("Listing search returned no result", filters)

        raw_listings = parse_agent_reply(reply)
        if raw_listings is None:
            logger.warning("Listing reply unparseable for %s (%d chars)", vehicle.label, len(reply))
            return PortalAnalysis.empty("Listing reply could not be parsed", filters)

        analysis = analyze_listings(vehicle, raw_listings, filters)
        logger.info(
            "Portal analysis %s: %d listings, %d primary, median %s",
            vehicle.label, analysis.listing_count, analysis.primary_count, analysis.median_price,
        )
        if not analysis.is_empty:
            self._cache.set(cache_key, analysis)
        return analysis
