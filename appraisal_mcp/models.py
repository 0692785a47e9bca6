"""Typed records flowing through a valuation run."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any

# ── Vocabulary ─────────────────────────────────────────────────────

RECOMMEND_BUY = "buy"
RECOMMEND_NO_BUY = "no-buy"
RECOMMEND_UNCERTAIN = "uncertain"
RECOMMENDATIONS = (RECOMMEND_BUY, RECOMMEND_NO_BUY, RECOMMEND_UNCERTAIN)

MATCHED_BY_MODEL = "matched_by_model"
MATCHED_BY_BRAND_FALLBACK = "matched_by_brand_fallback"
MATCHED_DEFAULT = "default"

CHANNEL_B2B = "B2B"
CHANNEL_B2C = "B2C"

LIQUIDITY_HIGH = "high"
LIQUIDITY_MEDIUM = "medium"
LIQUIDITY_LOW = "low"

ROW_PENDING = "pending"
ROW_PROCESSING = "processing"
ROW_COMPLETED = "completed"
ROW_ERROR = "error"


# ── Vehicle identity ───────────────────────────────────────────────


@dataclass(frozen=True)
class VehicleAttributes:
    """Canonical vehicle identity, fixed for the duration of a run."""
    brand: str
    model: str
    build_year: int | None = None
    mileage: int = 0
    fuel_type: str | None = None
    transmission: str | None = None
    body_type: str | None = None
    power: int | None = None
    trim: str = ""
    color: str | None = None
    options: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        parts = [self.brand, self.model]
        if self.build_year:
            parts.append(str(self.build_year))
        return " ".join(p for p in parts if p)

    def with_run_inputs(
        self,
        *,
        mileage: int | None = None,
        options: list[str] | tuple[str, ...] | None = None,
    ) -> VehicleAttributes:
        """Return a copy carrying user-supplied mileage/options."""
        changes: dict[str, Any] = {}
        if mileage is not None:
            changes["mileage"] = max(0, int(mileage))
        if options is not None:
            changes["options"] = tuple(dict.fromkeys(o.strip() for o in options if o.strip()))
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["options"] = list(self.options)
        return data


@dataclass
class ParsedVehicle:
    """Attributes extracted from one supplier description."""
    raw: str
    brand: str | None = None
    model: str | None = None
    build_year: int | None = None
    mileage: int | None = None
    fuel_type: str | None = None
    transmission: str | None = None
    body_type: str | None = None
    power: int | None = None
    trim: str | None = None
    confidence: float = 0.0
    method: str = "pattern"

    def to_attributes(self) -> VehicleAttributes | None:
        if not self.brand:
            return None
        return VehicleAttributes(
            brand=self.brand,
            model=self.model or "",
            build_year=self.build_year,
            mileage=self.mileage or 0,
            fuel_type=self.fuel_type,
            transmission=self.transmission,
            body_type=self.body_type,
            power=self.power,
            trim=self.trim or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Marketplace comparables ────────────────────────────────────────


@dataclass
class ComparableListing:
    source: str
    url: str
    title: str
    price: float
    mileage: int | None = None
    build_year: int | None = None
    color: str | None = None
    options: list[str] = field(default_factory=list)
    match_score: float = 0.0
    is_primary: bool = False
    is_deviation: bool = False
    deviation_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SearchFilters:
    year_min: int | None = None
    year_max: int | None = None
    max_mileage: int | None = None
    fuel: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PortalAnalysis:
    """Price statistics over marketplace comparables for one run."""
    lowest_price: float | None = None
    median_price: float | None = None
    highest_price: float | None = None
    listing_count: int = 0
    primary_count: int = 0
    filters: SearchFilters = field(default_factory=SearchFilters)
    listings: list[ComparableListing] = field(default_factory=list)
    deviations: list[ComparableListing] = field(default_factory=list)
    note: str | None = None

    @classmethod
    def empty(cls, note: str, filters: SearchFilters | None = None) -> PortalAnalysis:
        return cls(filters=filters or SearchFilters(), note=note)

    @property
    def is_empty(self) -> bool:
        return self.listing_count == 0

    @property
    def primary_listings(self) -> list[ComparableListing]:
        return [item for item in self.listings if item.is_primary]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Pricing index ──────────────────────────────────────────────────


@dataclass
class PricingIndexResult:
    base_value: float
    option_value: float
    total_value: float
    value_min: float
    value_max: float
    confidence: float
    apr: float | None = None
    etr: int | None = None
    liquidity: str | None = None
    window_size: int | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Internal history ───────────────────────────────────────────────


@dataclass
class InternalComparableSale:
    brand: str
    model: str
    build_year: int | None
    mileage: int | None
    purchase_price: float
    selling_price: float
    margin: float
    days_to_sell: int
    channel: str
    sold_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class InternalComparison:
    """Historical-sale statistics tagged with the tier that produced them."""
    avg_margin: float
    avg_days_to_sell: int
    avg_days_to_sell_b2c: int
    total_count: int = 0
    b2b_count: int = 0
    b2c_count: int = 0
    match_level: str = MATCHED_DEFAULT
    note: str | None = None
    sales: list[InternalComparableSale] = field(default_factory=list)

    @property
    def widened(self) -> bool:
        return self.match_level == MATCHED_BY_BRAND_FALLBACK

    @property
    def is_empty(self) -> bool:
        return self.total_count == 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["widened"] = self.widened
        return data


# ── Advice ─────────────────────────────────────────────────────────


@dataclass
class ValuationAdvice:
    recommended_selling_price: float
    recommended_purchase_price: float
    expected_days_to_sell: int
    target_margin: float
    recommendation: str
    reasoning: str
    index_deviation: str | None = None
    risk_factors: list[str] = field(default_factory=list)
    opportunities: list[str] = field(default_factory=list)
    primary_listings_used: int = 0
    signals: list[str] = field(default_factory=list)
    method: str = "baseline"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ValuationResult:
    """Full bundle of one completed run."""
    vehicle: VehicleAttributes
    advice: ValuationAdvice
    portal: PortalAnalysis | None = None
    pricing: PricingIndexResult | None = None
    internal: InternalComparison | None = None
    plate: str | None = None
    source_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plate": self.plate,
            "vehicle": self.vehicle.to_dict(),
            "portal": self.portal.to_dict() if self.portal else None,
            "pricing": self.pricing.to_dict() if self.pricing else None,
            "internal": self.internal.to_dict() if self.internal else None,
            "advice": self.advice.to_dict(),
            "source_errors": dict(self.source_errors),
        }


# ── Bulk ───────────────────────────────────────────────────────────


@dataclass
class BulkRow:
    """One supplier row; mutated in place until completed or error."""
    index: int
    raw: dict[str, Any]
    status: str = ROW_PENDING
    label: str = ""
    parse_confidence: float | None = None
    error: str | None = None
    result: ValuationResult | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ROW_COMPLETED, ROW_ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "label": self.label,
            "status": self.status,
            "parse_confidence": self.parse_confidence,
            "error": self.error,
            "raw": dict(self.raw),
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class BulkProgress:
    current: int
    total: int
    current_label: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
