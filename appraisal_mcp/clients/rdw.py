"""Async client for the RDW open-data vehicle registry.

Plate lookups hit two datasets: the registered-vehicles set for identity
and the fuel set for fuel type and net power. Only the first is required.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from appraisal_mcp.cache import LRUCache
from appraisal_mcp.constants import (
    KW_TO_HP,
    REGISTRY_BODY_MAP,
    REGISTRY_BRAND_MAP,
    REGISTRY_COLOR_MAP,
    REGISTRY_FUEL_MAP,
    UNKNOWN,
)
from appraisal_mcp.errors import NotFoundError, ParseError, UpstreamError, ValuationError
from appraisal_mcp.models import VehicleAttributes
from appraisal_mcp.normalization import is_valid_plate, normalize_plate, parse_int

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=10)


def map_brand(raw: str) -> str:
    upper = raw.strip().upper()
    if upper in REGISTRY_BRAND_MAP:
        return REGISTRY_BRAND_MAP[upper]
    stripped = raw.strip()
    return stripped[:1].upper() + stripped[1:].lower() if stripped else ""


def map_model(trade_name: str, brand: str) -> str:
    """Trade names sometimes repeat the brand ("VOLKSWAGEN GOLF")."""
    name = trade_name.strip()
    if brand and name.upper().startswith(brand.upper() + " "):
        name = name[len(brand) + 1:].strip()
    return name.title() if name.isupper() and len(name) > 3 else name


def map_fuel(raw: str) -> str:
    return REGISTRY_FUEL_MAP.get(raw.strip(), raw.strip() or UNKNOWN)


def map_body(raw: str) -> str:
    return REGISTRY_BODY_MAP.get(raw.strip().lower(), raw.strip() or UNKNOWN)


def map_color(raw: str) -> str:
    return REGISTRY_COLOR_MAP.get(raw.strip().upper(), raw.strip() or UNKNOWN)


def kw_to_hp(record: dict[str, Any]) -> int | None:
    kw = parse_int(record.get("nettomaximumvermogen")) or parse_int(
        record.get("vermogen_massarijklaar")
    )
    if kw and kw > 0:
        return round(kw * KW_TO_HP)
    return None


def map_registry_record(
    vehicle: dict[str, Any],
    fuel: dict[str, Any] | None = None,
) -> VehicleAttributes:
    """Translate raw registry rows into canonical attributes.

    Mileage, trim and options are not held by the registry; callers must
    collect them separately.
    """
    fuel = fuel or {}
    brand = map_brand(str(vehicle.get("merk") or ""))
    year = parse_int(str(vehicle.get("datum_eerste_toelating") or "")[:4])
    return VehicleAttributes(
        brand=brand,
        model=map_model(str(vehicle.get("handelsbenaming") or ""), brand),
        build_year=year or None,
        mileage=0,
        fuel_type=map_fuel(
            str(fuel.get("brandstof_omschrijving") or vehicle.get("brandstof_omschrijving") or "")
        ),
        transmission=UNKNOWN,
        body_type=map_body(str(vehicle.get("inrichting") or vehicle.get("voertuigsoort") or "")),
        power=kw_to_hp(fuel) or kw_to_hp(vehicle),
        trim="",
        color=map_color(str(vehicle.get("eerste_kleur") or "")),
        options=(),
    )


class RDWClient:
    """Async client for the RDW Socrata endpoints (no authentication)."""

    BASE_URL = "https://opendata.rdw.nl/resource"
    VEHICLES_DATASET = "m9d7-ebf2"
    FUEL_DATASET = "8ys7-d773"

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession | None = None,
        cache: LRUCache | None = None,
    ) -> None:
        self.session = session
        self._owns_session = session is None
        self._cache = cache if cache is not None else LRUCache(max_entries=128)

    async def __aenter__(self) -> RDWClient:
        if self.session is None:
            self.session = aiohttp.ClientSession(headers={"Accept": "application/json"})
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def _request(self, dataset: str, plate: str) -> list[dict[str, Any]]:
        if not self.session:
            raise RuntimeError("Client not entered as context manager")

        url = f"{self.BASE_URL}/{dataset}.json"
        cache_key = f"{dataset}|{plate}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            async with self.session.get(
                url,
                params={"kenteken": plate},
                timeout=_REQUEST_TIMEOUT,
            ) as resp:
                raw_text = await resp.text()
                if resp.status >= 400:
                    raise UpstreamError(
                        f"Registry request failed with HTTP {resp.status}.",
                        code="HTTP_ERROR",
                        status=resp.status,
                        details={"dataset": dataset, "plate": plate},
                    )
                try:
                    payload = json.loads(raw_text) if raw_text else []
                except json.JSONDecodeError as exc:
                    raise ParseError(
                        "Registry returned a non-JSON body.",
                        details={"dataset": dataset, "body": raw_text[:200]},
                    ) from exc
        except ValuationError:
            raise
        except UnicodeDecodeError as exc:
            raise ParseError(
                "Registry returned a body that is not valid text.",
                details={"dataset": dataset, "plate": plate},
            ) from exc
        except TimeoutError as exc:
            raise UpstreamError(
                "Registry request timed out.",
                code="TIMEOUT",
                details={"dataset": dataset, "plate": plate},
            ) from exc
        except aiohttp.ClientError as exc:
            logger.error("Registry client error (%s): %s", dataset, exc)
            raise UpstreamError(
                "Registry request failed due to a network/client error.",
                code="NETWORK_ERROR",
                details={"dataset": dataset, "plate": plate, "error": str(exc)},
            ) from exc

        rows = [row for row in payload if isinstance(row, dict)] if isinstance(payload, list) else []
        self._cache.set(cache_key, rows)
        return rows

    async def lookup(self, plate: str) -> VehicleAttributes:
        """Resolve *plate* (any formatting) to canonical attributes.

        Raises :class:`NotFoundError` for unknown or malformed plates and
        :class:`UpstreamError` when the registry cannot be reached.
        """
        normalized = normalize_plate(plate)
        if not is_valid_plate(normalized):
            raise NotFoundError(
                f"'{plate}' is not a valid license plate.",
                details={"plate": plate},
            )

        rows = await self._request(self.VEHICLES_DATASET, normalized)
        if not rows:
            raise NotFoundError(
                f"License plate {normalized} was not found in the registry.",
                details={"plate": normalized},
            )

        fuel_row: dict[str, Any] | None = None
        try:
            fuel_rows = await self._request(self.FUEL_DATASET, normalized)
            fuel_row = fuel_rows[0] if fuel_rows else None
        except (UpstreamError, ParseError) as exc:
            logger.warning("Registry fuel lookup failed for %s: %s", normalized, exc)

        return map_registry_record(rows[0], fuel_row)


@dataclass
class PlateResolution:
    """Outcome of a plate lookup: exactly one of ``vehicle`` or ``error``."""
    plate: str
    vehicle: VehicleAttributes | None = None
    error: ValuationError | None = None

    @property
    def ok(self) -> bool:
        return self.vehicle is not None


async def resolve_plate(
    plate: str,
    *,
    client: RDWClient | None = None,
    cache: LRUCache | None = None,
) -> PlateResolution:
    """Look up *plate* and report the outcome without raising.

    Without *client* a short-lived one is opened; pass *cache* to share
    lookups across calls.
    """
    normalized = normalize_plate(plate)
    try:
        if client is not None:
            vehicle = await client.lookup(plate)
        else:
            async with RDWClient(cache=cache) as owned:
                vehicle = await owned.lookup(plate)
    except ValuationError as exc:
        logger.info("Plate %s unresolved: %s (%s)", normalized, exc, exc.code)
        return PlateResolution(plate=normalized, error=exc)
    except Exception as exc:
        logger.error("Registry lookup for %s failed unexpectedly: %s", normalized, exc)
        return PlateResolution(
            plate=normalized,
            error=UpstreamError(
                "Registry lookup failed unexpectedly.",
                code="UNEXPECTED_ERROR",
                details={"plate": normalized, "error": str(exc)},
            ),
        )
    return PlateResolution(plate=normalized, vehicle=vehicle)
