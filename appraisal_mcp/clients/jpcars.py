"""Async client for the JP Cars valuation index.

An unknown vehicle is a normal outcome (``None``); only transport and
configuration failures raise.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

import aiohttp

from appraisal_mcp.cache import LRUCache
from appraisal_mcp.constants import INDEX_FUEL_MAP, INDEX_GEAR_MAP
from appraisal_mcp.errors import ParseError, UpstreamError, ValuationError
from appraisal_mcp.models import (
    LIQUIDITY_HIGH,
    LIQUIDITY_LOW,
    LIQUIDITY_MEDIUM,
    PricingIndexResult,
    VehicleAttributes,
)
from appraisal_mcp.normalization import normalize_plate, parse_float, parse_int

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15)
_FALLBACK_RANGE = 0.15

TOKEN_ENV = "JPCARS_API_TOKEN"


def confidence_from_window(window_size: int | None) -> float:
    size = window_size or 0
    if size >= 20:
        return 0.95
    if size >= 10:
        return 0.85
    if size >= 5:
        return 0.75
    if size >= 2:
        return 0.6
    return 0.4


def etr_from_payload(data: dict[str, Any]) -> int:
    explicit = parse_int(data.get("etr"))
    if explicit and explicit > 0:
        return explicit
    turnover_ext = parse_float(data.get("stat_turnover_ext")) or 0.0
    turnover_int = parse_float(data.get("stat_turnover_int")) or 0.0
    avg_turnover = (turnover_ext + turnover_int) / 2
    if avg_turnover > 0:
        return round(30 / avg_turnover)
    apr = parse_float(data.get("apr")) or 0.0
    if apr >= 0.8:
        return 15
    if apr >= 0.6:
        return 22
    if apr >= 0.4:
        return 30
    return 45


def liquidity_from_apr(apr: float | None) -> str:
    value = apr or 0.0
    if value >= 0.7:
        return LIQUIDITY_HIGH
    if value >= 0.4:
        return LIQUIDITY_MEDIUM
    return LIQUIDITY_LOW


def _percentile(data: dict[str, Any], percent: int, *, last: bool) -> float | None:
    percents = data.get("percents")
    if not isinstance(percents, list) or not percents:
        return None
    for entry in percents:
        if isinstance(entry, dict) and parse_int(entry.get("percent")) == percent:
            return parse_float(entry.get("target_value"))
    edge = percents[-1] if last else percents[0]
    return parse_float(edge.get("target_value")) if isinstance(edge, dict) else None


def map_index_payload(data: dict[str, Any]) -> PricingIndexResult | None:
    """Map a valuate reply to a result, or ``None`` when the index has no value."""
    if data.get("error"):
        return None
    total = parse_float(data.get("value"))
    if not total or total <= 0:
        return None
    base = parse_float(data.get("topdown_value")) or total
    apr = parse_float(data.get("apr"))
    window_size = parse_int(data.get("window_size"))
    return PricingIndexResult(
        base_value=base,
        option_value=max(0.0, total - base),
        total_value=total,
        value_min=_percentile(data, 10, last=False) or round(total * (1 - _FALLBACK_RANGE)),
        value_max=_percentile(data, 90, last=True) or round(total * (1 + _FALLBACK_RANGE)),
        confidence=confidence_from_window(window_size),
        apr=apr,
        etr=etr_from_payload(data),
        liquidity=liquidity_from_apr(apr),
        window_size=window_size,
        url=data.get("window_url") or None,
    )


def build_valuate_body(
    *,
    plate: str | None = None,
    vehicle: VehicleAttributes | None = None,
) -> dict[str, Any]:
    """Plate-keyed body when a plate is known, else the attribute form."""
    body: dict[str, Any] = {"mileage": vehicle.mileage if vehicle else 0}
    if plate:
        body["license_plate"] = normalize_plate(plate)
    elif vehicle is not None:
        body["make"] = vehicle.brand.upper()
        body["model"] = vehicle.model.upper()
        if vehicle.body_type:
            body["body"] = vehicle.body_type
        if vehicle.fuel_type:
            body["fuel"] = INDEX_FUEL_MAP.get(vehicle.fuel_type, vehicle.fuel_type.upper())
        if vehicle.transmission in INDEX_GEAR_MAP:
            body["gear"] = INDEX_GEAR_MAP[vehicle.transmission]
        if vehicle.build_year:
            body["build"] = vehicle.build_year
        if vehicle.power:
            body["hp"] = vehicle.power
    if vehicle is not None and vehicle.options:
        body["options"] = ",".join(vehicle.options)
    return body


class PricingIndexClient:
    """Async client for ``POST /api/valuate``."""

    BASE_URL = "https://api.nl.jp.cars"

    def __init__(
        self,
        api_token: str | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        cache: LRUCache | None = None,
    ) -> None:
        self.api_token = (api_token if api_token is not None else os.environ.get(TOKEN_ENV, "")).strip()
        self.session = session
        self._owns_session = session is None
        self._cache = cache if cache is not None else LRUCache(max_entries=128)

    async def __aenter__(self) -> PricingIndexClient:
        if not self.api_token:
            raise UpstreamError(
                f"{TOKEN_ENV} is not configured.",
                code="MISSING_API_KEY",
            )
        if self.session is None:
            self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def _request(self, body: dict[str, Any]) -> dict[str, Any]:
        if not self.session:
            raise RuntimeError("Client not entered as context manager")

        url = f"{self.BASE_URL}/api/valuate"
        try:
            async with self.session.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_token}"},
                timeout=_REQUEST_TIMEOUT,
            ) as resp:
                raw_text = await resp.text()
                decoded = True
                try:
                    payload = json.loads(raw_text) if raw_text else {}
                except json.JSONDecodeError:
                    decoded = False
                    payload = {"raw": raw_text}

                if resp.status == 422:
                    # Index rejected the vehicle description; treat as unknown.
                    return {"error": "VALIDATION_ERROR", "details": payload}
                if resp.status >= 400:
                    code = "AUTH_ERROR" if resp.status == 401 else "HTTP_ERROR"
                    raise UpstreamError(
                        f"Pricing index request failed with HTTP {resp.status}.",
                        code=code,
                        status=resp.status,
                        details=payload if isinstance(payload, dict) else {"response": payload},
                    )
                if not decoded:
                    raise ParseError(
                        "Pricing index returned a non-JSON body.",
                        details={"body": raw_text[:200]},
                    )
                return payload if isinstance(payload, dict) else {}
        except ValuationError:
            raise
        except UnicodeDecodeError as exc:
            raise ParseError("Pricing index returned a body that is not valid text.") from exc
        except TimeoutError as exc:
            raise UpstreamError(
                "Pricing index request timed out.",
                code="TIMEOUT",
            ) from exc
        except aiohttp.ClientError as exc:
            logger.error("Pricing index client error: %s", exc)
            raise UpstreamError(
                "Pricing index request failed due to a network/client error.",
                code="NETWORK_ERROR",
                details={"error": str(exc)},
            ) from exc

    async def valuate(
        self,
        *,
        plate: str | None = None,
        vehicle: VehicleAttributes | None = None,
    ) -> PricingIndexResult | None:
        """Return the index valuation, or ``None`` when the index has no record."""
        if not plate and (vehicle is None or not vehicle.brand or not vehicle.model):
            return None
        body = build_valuate_body(plate=plate, vehicle=vehicle)
        cache_key = json.dumps(body, sort_keys=True)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        payload = await self._request(body)
        if payload.get("error"):
            logger.info(
                "Pricing index has no valuation (%s): %s",
                payload.get("error"),
                payload.get("error_message", ""),
            )
            return None
        result = map_index_payload(payload)
        if result is not None:
            self._cache.set(cache_key, result)
        return result


async def fetch_index_valuation(
    plate: str | None,
    vehicle: VehicleAttributes | None,
    *,
    client: PricingIndexClient | None = None,
    cache: LRUCache | None = None,
) -> PricingIndexResult | None:
    """Valuate by plate (preferred) or attributes, opening a client if needed."""
    if client is not None:
        return await client.valuate(plate=plate, vehicle=vehicle)
    async with PricingIndexClient(cache=cache) as owned:
        return await owned.valuate(plate=plate, vehicle=vehicle)
