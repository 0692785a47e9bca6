"""Single-vehicle valuation run.

States: ``idle -> resolving -> fetching -> synthesizing -> complete``, with
``error`` reachable only from ``resolving``. The three source fetches run
concurrently and each one is caught at its own boundary, so a failing
source degrades to an empty/null result instead of failing the run.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from cip_protocol import CIP

from appraisal_mcp.cache import LRUCache
from appraisal_mcp.clients.jpcars import fetch_index_valuation
from appraisal_mcp.clients.rdw import PlateResolution, resolve_plate
from appraisal_mcp.data.store import HistoryStore
from appraisal_mcp.models import (
    RECOMMEND_UNCERTAIN,
    InternalComparison,
    PortalAnalysis,
    PricingIndexResult,
    ValuationAdvice,
    ValuationResult,
    VehicleAttributes,
)
from appraisal_mcp.normalization import normalize_plate
from appraisal_mcp.tools.advice import (
    DEFAULT_THRESHOLDS,
    AdviceThresholds,
    build_baseline_advice,
    synthesize_advice,
)
from appraisal_mcp.tools.internal import InternalComparablesEngine, default_comparison
from appraisal_mcp.tools.portals import ComparableListingsAggregator, default_search_agent

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_RESOLVING = "resolving"
STATE_FETCHING = "fetching"
STATE_SYNTHESIZING = "synthesizing"
STATE_COMPLETE = "complete"
STATE_ERROR = "error"

SOURCE_PORTALS = "portals"
SOURCE_INDEX = "index"
SOURCE_INTERNAL = "internal"

PlateResolver = Callable[[str], Awaitable[PlateResolution]]
PortalFetcher = Callable[[VehicleAttributes], Awaitable[PortalAnalysis]]
IndexFetcher = Callable[[str | None, VehicleAttributes], Awaitable[PricingIndexResult | None]]
InternalFetcher = Callable[[VehicleAttributes], Awaitable[InternalComparison]]


@dataclass
class ValuationSources:
    """The collaborators a run depends on; any fetcher may be left out."""
    resolve: PlateResolver = resolve_plate
    portals: PortalFetcher | None = None
    pricing_index: IndexFetcher | None = None
    internal: InternalFetcher | None = None
    cip: CIP | None = None
    thresholds: AdviceThresholds = field(default_factory=lambda: DEFAULT_THRESHOLDS)


@dataclass
class SourceCaches:
    """Bounded caches shared by every run wired with the same instance."""
    registry: LRUCache = field(default_factory=lambda: LRUCache(max_entries=256, ttl=3600))
    index: LRUCache = field(default_factory=lambda: LRUCache(max_entries=256, ttl=3600))
    listings: LRUCache = field(default_factory=lambda: LRUCache(max_entries=64, ttl=1800))


def default_sources(
    cip: CIP | None,
    store: HistoryStore | None = None,
    caches: SourceCaches | None = None,
) -> ValuationSources:
    """Production wiring: RDW, marketplace agent, JP Cars, SQLite history."""
    caches = caches if caches is not None else SourceCaches()
    aggregator = ComparableListingsAggregator(default_search_agent(cip), cache=caches.listings)
    return ValuationSources(
        resolve=functools.partial(resolve_plate, cache=caches.registry),
        portals=aggregator.analyze,
        pricing_index=functools.partial(fetch_index_valuation, cache=caches.index),
        internal=InternalComparablesEngine(store).fetch,
        cip=cip,
    )


class ValuationRun:
    """Re-entrant state machine for one vehicle at a time.

    Starting a new run supersedes the previous one: results that arrive for
    an older run token are discarded.
    """

    def __init__(self, sources: ValuationSources) -> None:
        self.sources = sources
        self.state = STATE_IDLE
        self._token = 0
        self._reset()

    def _reset(self) -> None:
        self.plate: str | None = None
        self.vehicle: VehicleAttributes | None = None
        self.portal: PortalAnalysis | None = None
        self.pricing: PricingIndexResult | None = None
        self.internal: InternalComparison | None = None
        self.advice: ValuationAdvice | None = None
        self.error: Exception | None = None
        self.source_errors: dict[str, str] = {}

    def _current(self, token: int) -> bool:
        return token == self._token

    def abandon(self) -> None:
        """Drop the active run; in-flight fetches finish and are discarded."""
        self._token += 1
        self._reset()
        self.state = STATE_IDLE

    @property
    def result(self) -> ValuationResult | None:
        if self.state != STATE_COMPLETE or self.vehicle is None or self.advice is None:
            return None
        return ValuationResult(
            vehicle=self.vehicle,
            advice=self.advice,
            portal=self.portal,
            pricing=self.pricing,
            internal=self.internal,
            plate=self.plate,
            source_errors=dict(self.source_errors),
        )

    async def start(
        self,
        plate: str | None = None,
        *,
        vehicle: VehicleAttributes | None = None,
        mileage: int | None = None,
        options: list[str] | None = None,
        asking_price: float | None = None,
    ) -> ValuationResult | None:
        """Run the pipeline; returns ``None`` on identity failure or if superseded."""
        if not plate and vehicle is None:
            raise ValueError("A plate or vehicle attributes are required.")

        self._token += 1
        token = self._token
        self._reset()

        if vehicle is None:
            self.state = STATE_RESOLVING
            try:
                resolution = await asyncio.shield(self.sources.resolve(plate))
            except Exception as exc:
                logger.error("Resolving %s failed: %s", plate, exc)
                if self._current(token):
                    self.plate = normalize_plate(plate)
                    self.error = exc
                    self.state = STATE_ERROR
                return None
            if not self._current(token):
                return None
            if not resolution.ok:
                self.plate = resolution.plate
                self.error = resolution.error
                self.state = STATE_ERROR
                return None
            self.plate = resolution.plate
            vehicle = resolution.vehicle
        else:
            self.plate = normalize_plate(plate) if plate else None

        vehicle = vehicle.with_run_inputs(mileage=mileage, options=options)
        self.vehicle = vehicle

        self.state = STATE_FETCHING
        sources = self.sources
        run_plate = self.plate
        errors: dict[str, str] = {}
        portal, pricing, internal = await asyncio.shield(
            asyncio.gather(
                self._guarded(
                    SOURCE_PORTALS,
                    sources.portals and (lambda: sources.portals(vehicle)),
                    PortalAnalysis.empty("Marketplace search unavailable"),
                    errors,
                ),
                self._guarded(
                    SOURCE_INDEX,
                    sources.pricing_index
                    and (lambda: sources.pricing_index(run_plate, vehicle)),
                    None,
                    errors,
                ),
                self._guarded(
                    SOURCE_INTERNAL,
                    sources.internal and (lambda: sources.internal(vehicle)),
                    default_comparison("Internal history unavailable; using default margin"),
                    errors,
                ),
            )
        )
        if not self._current(token):
            logger.info("Discarding fetch results of superseded run for %s", vehicle.label)
            return None
        self.portal, self.pricing, self.internal = portal, pricing, internal
        self.source_errors = errors

        self.state = STATE_SYNTHESIZING
        advice = await asyncio.shield(
            self._synthesize(vehicle, portal, pricing, internal, asking_price)
        )
        if not self._current(token):
            return None
        self.advice = advice
        self.state = STATE_COMPLETE
        logger.info(
            "Valuation %s: %s, purchase EUR %.0f",
            vehicle.label, advice.recommendation, advice.recommended_purchase_price,
        )
        return self.result

    async def _synthesize(
        self,
        vehicle: VehicleAttributes,
        portal: PortalAnalysis,
        pricing: PricingIndexResult | None,
        internal: InternalComparison,
        asking_price: float | None,
    ) -> ValuationAdvice:
        thresholds = self.sources.thresholds
        try:
            return await synthesize_advice(
                self.sources.cip,
                vehicle,
                portal,
                pricing,
                internal,
                asking_price=asking_price,
                thresholds=thresholds,
            )
        except Exception as exc:
            logger.warning("Advice synthesis failed for %s, using baseline: %s", vehicle.label, exc)
        try:
            return build_baseline_advice(
                vehicle, portal, pricing, internal,
                asking_price=asking_price, thresholds=thresholds,
            )
        except Exception as exc:
            logger.error("Baseline advice failed for %s: %s", vehicle.label, exc)
        return ValuationAdvice(
            recommended_selling_price=0.0,
            recommended_purchase_price=0.0,
            expected_days_to_sell=thresholds.default_days_to_sell,
            target_margin=thresholds.default_margin,
            recommendation=RECOMMEND_UNCERTAIN,
            reasoning="Advice could not be computed from the available sources.",
        )

    @staticmethod
    async def _guarded(
        name: str,
        fetch: Callable[[], Awaitable[Any]] | None,
        fallback: Any,
        errors: dict[str, str],
    ) -> Any:
        if not fetch:
            return fallback
        try:
            result = await fetch()
        except Exception as exc:
            logger.warning("Source %s failed, continuing without it: %s", name, exc)
            errors[name] = str(exc) or type(exc).__name__
            return fallback
        return fallback if result is None and fallback is not None else result
