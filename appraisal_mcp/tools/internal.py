"""Internal comparables engine over the historical sales table.

Two tiers: model-level (brand exact, model by prefix of its first two words)
and, when that yields fewer than two usable sales, brand-level. The tier is
recorded on the result as ``match_level``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from appraisal_mcp.data.history import get_store
from appraisal_mcp.data.store import SOLD_B2B_STATUS, SOLD_STATUSES, HistoryStore
from appraisal_mcp.models import (
    CHANNEL_B2B,
    CHANNEL_B2C,
    MATCHED_BY_BRAND_FALLBACK,
    MATCHED_BY_MODEL,
    MATCHED_DEFAULT,
    InternalComparableSale,
    InternalComparison,
    VehicleAttributes,
)

logger = logging.getLogger(__name__)

DEFAULT_MARGIN = 18.0
DEFAULT_DAYS_TO_SELL = 21
MIN_DAYS_TO_SELL = 1
MAX_DAYS_TO_SELL = 365
LOOKBACK_DAYS = 365
MIN_MODEL_LEVEL_ROWS = 2
QUERY_LIMIT = 20
MAX_REPRESENTATIVE_SALES = 10


def compute_margin(purchase_price: float, selling_price: float) -> float:
    """Margin on cost in percent: (sell - buy) / buy * 100."""
    if purchase_price <= 0:
        raise ValueError("purchase_price must be positive")
    return (selling_price - purchase_price) / purchase_price * 100


def _parse_date(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def compute_days_to_sell(purchase_date: Any, sold_date: Any) -> int:
    """Whole days between the dates, clamped to [1, 365]; 21 when unknown."""
    bought = _parse_date(purchase_date)
    sold = _parse_date(sold_date)
    if bought is None or sold is None:
        return DEFAULT_DAYS_TO_SELL
    days = math.ceil(abs((sold - bought).total_seconds()) / 86400)
    return max(MIN_DAYS_TO_SELL, min(MAX_DAYS_TO_SELL, days))


def model_prefix(model: str) -> str:
    """First two words, so "Golf 1.4 TSI Highline" matches any "Golf 1.4"."""
    return " ".join(model.split()[:2])


def _to_sale(row: dict[str, Any]) -> InternalComparableSale | None:
    purchase = row.get("purchase_price")
    selling = row.get("selling_price")
    if purchase is None or selling is None or purchase <= 0 or selling <= 0:
        return None
    return InternalComparableSale(
        brand=str(row.get("brand") or ""),
        model=str(row.get("model") or ""),
        build_year=row.get("build_year"),
        mileage=row.get("mileage"),
        purchase_price=float(purchase),
        selling_price=float(selling),
        margin=round(compute_margin(float(purchase), float(selling)), 1),
        days_to_sell=compute_days_to_sell(row.get("purchase_date"), row.get("sold_date")),
        channel=CHANNEL_B2B if row.get("status") == SOLD_B2B_STATUS else CHANNEL_B2C,
        sold_date=row.get("sold_date"),
    )


def default_comparison(note: str) -> InternalComparison:
    return InternalComparison(
        avg_margin=DEFAULT_MARGIN,
        avg_days_to_sell=DEFAULT_DAYS_TO_SELL,
        avg_days_to_sell_b2c=DEFAULT_DAYS_TO_SELL,
        match_level=MATCHED_DEFAULT,
        note=note,
    )


def summarize_sales(
    sales: list[InternalComparableSale],
    *,
    match_level: str,
    note: str | None = None,
) -> InternalComparison:
    """Aggregate usable sales; B2B sales are left out of B2C time-to-sell."""
    b2c = [s for s in sales if s.channel == CHANNEL_B2C]
    if sales:
        # Averages use unrounded margins.
        avg_margin = round(
            sum(compute_margin(s.purchase_price, s.selling_price) for s in sales) / len(sales), 1
        )
        avg_days = round(sum(s.days_to_sell for s in sales) / len(sales))
    else:
        avg_margin, avg_days = DEFAULT_MARGIN, DEFAULT_DAYS_TO_SELL
    avg_days_b2c = round(sum(s.days_to_sell for s in b2c) / len(b2c)) if b2c else avg_days
    return InternalComparison(
        avg_margin=avg_margin,
        avg_days_to_sell=avg_days,
        avg_days_to_sell_b2c=avg_days_b2c,
        total_count=len(sales),
        b2b_count=len(sales) - len(b2c),
        b2c_count=len(b2c),
        match_level=match_level,
        note=note,
        sales=sales[:MAX_REPRESENTATIVE_SALES],
    )


class InternalComparablesEngine:
    """Historical-sale statistics with an explicit model/brand tier."""

    def __init__(
        self,
        store: HistoryStore | None = None,
        *,
        now: datetime | None = None,
    ) -> None:
        self._store = store
        self._now = now

    def _since(self) -> str:
        now = self._now or datetime.now(timezone.utc)
        return (now - timedelta(days=LOOKBACK_DAYS)).date().isoformat()

    def _usable(self, rows: list[dict[str, Any]]) -> list[InternalComparableSale]:
        return [sale for sale in (_to_sale(r) for r in rows) if sale is not None]

    def compare(self, vehicle: VehicleAttributes) -> InternalComparison:
        """Never raises: query failures yield the conservative default."""
        if not vehicle.brand:
            return default_comparison("No brand to match against internal history")
        store = self._store or get_store()
        since = self._since()
        try:
            prefix = model_prefix(vehicle.model)
            if prefix:
                rows = store.query_sales(
                    brand=vehicle.brand,
                    model_prefix=prefix,
                    since=since,
                    statuses=SOLD_STATUSES,
                    limit=QUERY_LIMIT,
                )
                sales = self._usable(rows)
                if len(sales) >= MIN_MODEL_LEVEL_ROWS:
                    return summarize_sales(sales, match_level=MATCHED_BY_MODEL)
            rows = store.query_sales(
                brand=vehicle.brand,
                since=since,
                statuses=SOLD_STATUSES,
                limit=QUERY_LIMIT,
            )
        except Exception as exc:
            logger.warning("Internal sales query failed for %s: %s", vehicle.label, exc)
            return default_comparison("Internal history unavailable; using default margin")

        sales = self._usable(rows)
        note = (
            f"Fewer than {MIN_MODEL_LEVEL_ROWS} sales of {vehicle.brand} {prefix or '(any model)'} "
            f"in the last 12 months; widened to all {vehicle.brand} sales ({len(sales)} found)"
        )
        logger.info("Internal comparables widened to brand level for %s", vehicle.label)
        return summarize_sales(sales, match_level=MATCHED_BY_BRAND_FALLBACK, note=note)

    async def fetch(self, vehicle: VehicleAttributes) -> InternalComparison:
        return self.compare(vehicle)
