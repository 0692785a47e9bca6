"""Tests for the internal comparables engine and its margin/time-to-sell rules."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from appraisal_mcp.data.store import SqliteHistoryStore
from appraisal_mcp.models import (
    MATCHED_BY_BRAND_FALLBACK,
    MATCHED_BY_MODEL,
    MATCHED_DEFAULT,
    VehicleAttributes,
)
from appraisal_mcp.tools.internal import (
    DEFAULT_DAYS_TO_SELL,
    DEFAULT_MARGIN,
    InternalComparablesEngine,
    compute_days_to_sell,
    compute_margin,
    model_prefix,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _sale(sale_id, model, purchase, selling, bought, sold, status="sold_b2c", brand="Volkswagen"):
    return {
        "id": sale_id, "brand": brand, "model": model, "purchase_price": purchase,
        "selling_price": selling, "purchase_date": bought, "sold_date": sold, "status": status,
    }


GOLF_SALES = [
    _sale("G-1", "Golf 1.0 TSI", 15000, 17250, "2026-01-01", "2026-01-21"),
    _sale("G-2", "Golf Variant", 16000, 18400, "2026-02-01", "2026-03-03", status="sold_b2b"),
    _sale("G-3", "Golf 1.5 eTSI", 20000, 24000, "2026-03-01", "2026-03-11", status="delivered"),
]
POLO_SALE = _sale("P-1", "Polo", 10000, 11000, "2026-04-01", "2026-04-15")


class TestFormulas:
    def test_margin_on_cost(self):
        assert compute_margin(15000, 18000) == pytest.approx(20.0)
        assert compute_margin(20000, 19000) == pytest.approx(-5.0)

    def test_margin_requires_positive_purchase(self):
        with pytest.raises(ValueError):
            compute_margin(0, 18000)

    @pytest.mark.parametrize(
        "bought,sold,expected",
        [
            ("2026-01-01", "2026-01-21", 20),
            ("2026-01-21", "2026-01-01", 20),
            ("2026-01-01", "2026-01-01", 1),
            ("2026-01-01T12:00:00", "2026-01-02", 1),
            ("2023-01-01", "2026-01-01", 365),
            (None, "2026-01-01", DEFAULT_DAYS_TO_SELL),
            ("gisteren", "2026-01-01", DEFAULT_DAYS_TO_SELL),
        ],
    )
    def test_days_to_sell(self, bought, sold, expected):
        assert compute_days_to_sell(bought, sold) == expected

    def test_model_prefix(self):
        assert model_prefix("Golf 1.4 TSI Highline") == "Golf 1.4"
        assert model_prefix("Polo") == "Polo"
        assert model_prefix("") == ""


class TestModelLevel:
    def test_statistics(self, store: SqliteHistoryStore, golf: VehicleAttributes):
        store.upsert_sales(GOLF_SALES + [POLO_SALE])
        result = InternalComparablesEngine(store, now=NOW).compare(golf)
        assert result.match_level == MATCHED_BY_MODEL
        assert not result.widened
        assert result.total_count == 3
        assert result.avg_margin == pytest.approx(16.7)
        assert result.avg_days_to_sell == 20
        assert result.b2b_count == 1
        assert result.b2c_count == 2

    def test_b2b_excluded_from_b2c_days(self, store: SqliteHistoryStore, golf: VehicleAttributes):
        store.upsert_sales(GOLF_SALES)
        result = InternalComparablesEngine(store, now=NOW).compare(golf)
        assert result.avg_days_to_sell_b2c == 15

    def test_per_sale_margin_rounded(self, store: SqliteHistoryStore, golf: VehicleAttributes):
        store.upsert_sales(GOLF_SALES)
        result = InternalComparablesEngine(store, now=NOW).compare(golf)
        assert sorted(s.margin for s in result.sales) == [15.0, 15.0, 20.0]

    def test_old_sales_ignored(self, store: SqliteHistoryStore, golf: VehicleAttributes):
        store.upsert_sales(GOLF_SALES[:1] + [
            _sale("G-old", "Golf 1.0 TSI", 9000, 12000, "2024-01-01", "2024-02-01"),
        ])
        result = InternalComparablesEngine(store, now=NOW).compare(golf)
        assert result.match_level == MATCHED_BY_BRAND_FALLBACK
        assert result.total_count == 1


class TestBrandFallback:
    def test_single_model_row_widens(self, store: SqliteHistoryStore):
        store.upsert_sales(GOLF_SALES + [POLO_SALE])
        polo = VehicleAttributes(brand="Volkswagen", model="Polo", build_year=2021)
        result = InternalComparablesEngine(store, now=NOW).compare(polo)
        assert result.match_level == MATCHED_BY_BRAND_FALLBACK
        assert result.widened
        assert result.total_count == 4
        assert "Polo" in result.note

    def test_no_rows_still_reports_fallback(self, store: SqliteHistoryStore):
        store.upsert_sales(GOLF_SALES)
        yaris = VehicleAttributes(brand="Toyota", model="Yaris")
        result = InternalComparablesEngine(store, now=NOW).compare(yaris)
        assert result.match_level == MATCHED_BY_BRAND_FALLBACK
        assert result.is_empty
        assert result.avg_margin == DEFAULT_MARGIN
        assert result.avg_days_to_sell == DEFAULT_DAYS_TO_SELL
        assert result.note


class _BrokenStore:
    def query_sales(self, **kwargs):
        raise RuntimeError("database is locked")


class TestDefaults:
    def test_no_brand(self, store: SqliteHistoryStore):
        result = InternalComparablesEngine(store, now=NOW).compare(VehicleAttributes(brand="", model="X"))
        assert result.match_level == MATCHED_DEFAULT
        assert result.avg_margin == DEFAULT_MARGIN

    def test_store_failure_is_default(self, golf: VehicleAttributes):
        result = InternalComparablesEngine(_BrokenStore(), now=NOW).compare(golf)
        assert result.match_level == MATCHED_DEFAULT
        assert result.avg_days_to_sell == DEFAULT_DAYS_TO_SELL
        assert result.avg_days_to_sell_b2c == DEFAULT_DAYS_TO_SELL

    async def test_fetch_uses_active_store(self, store: SqliteHistoryStore, golf: VehicleAttributes):
        store.upsert_sales(GOLF_SALES)
        result = await InternalComparablesEngine(now=NOW).fetch(golf)
        assert result.match_level == MATCHED_BY_MODEL
