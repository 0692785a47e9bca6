"""Shared test fixtures — MockProvider injection, isolated store, no network keys."""

from __future__ import annotations

from pathlib import Path

import pytest
from cip_protocol import CIP
from cip_protocol.llm.providers.mock import MockProvider
from cip_protocol.scaffold.matcher import clear_matcher_cache

from appraisal_mcp.config import APPRAISAL_DOMAIN_CONFIG
from appraisal_mcp.data.history import set_store
from appraisal_mcp.data.store import SqliteHistoryStore
from appraisal_mcp.models import (
    MATCHED_BY_MODEL,
    ComparableListing,
    InternalComparison,
    PortalAnalysis,
    PricingIndexResult,
    SearchFilters,
    VehicleAttributes,
)
from appraisal_mcp.server import set_cip_override

SCAFFOLD_DIR = str(Path(__file__).resolve().parent.parent / "appraisal_mcp" / "scaffolds")


@pytest.fixture()
def mock_provider() -> MockProvider:
    """A fresh MockProvider for each test (non-JSON reply forces fallbacks)."""
    return MockProvider("Mock LLM response for AppraisalCIP.")


@pytest.fixture()
def mock_cip(mock_provider: MockProvider) -> CIP:
    """CIP instance wired with real scaffolds + MockProvider."""
    return CIP.from_config(APPRAISAL_DOMAIN_CONFIG, SCAFFOLD_DIR, mock_provider)


@pytest.fixture(autouse=True)
def _inject_mock_cip(mock_cip: CIP):
    """Auto-inject the mock CIP into the server singleton for every test."""
    set_cip_override(mock_cip)
    yield
    set_cip_override(None)


@pytest.fixture()
def store() -> SqliteHistoryStore:
    return SqliteHistoryStore(":memory:")


@pytest.fixture(autouse=True)
def _inject_test_store(store: SqliteHistoryStore):
    """Give every test a fresh, isolated in-memory history store."""
    set_store(store)
    yield
    set_store(None)


@pytest.fixture(autouse=True)
def _no_external_keys(monkeypatch):
    """Keep the web-search agent and pricing index offline."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("JPCARS_API_TOKEN", raising=False)


@pytest.fixture(autouse=True)
def _clear_matcher_cache():
    """Clear matcher cache before and after each test to prevent cross-test pollution."""
    clear_matcher_cache()
    yield
    clear_matcher_cache()


# ── Domain fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def golf() -> VehicleAttributes:
    return VehicleAttributes(
        brand="Volkswagen",
        model="Golf",
        build_year=2020,
        mileage=60000,
        fuel_type="Benzine",
    )


@pytest.fixture()
def strong_portal() -> PortalAnalysis:
    """Eight primary comparables with median 19200 and lowest 18200."""
    prices = [18200, 18500, 18700, 18950, 19200, 19400, 19600, 19900]
    listings = [
        ComparableListing(
            source="gaspedaal",
            url=f"https://www.gaspedaal.nl/volkswagen/golf/{i}",
            title="Volkswagen Golf 1.0 TSI",
            price=float(price),
            mileage=58000 + i * 1000,
            build_year=2020,
            match_score=0.95,
            is_primary=True,
        )
        for i, price in enumerate(prices)
    ]
    return PortalAnalysis(
        lowest_price=18200.0,
        median_price=19200.0,
        highest_price=19900.0,
        listing_count=8,
        primary_count=8,
        filters=SearchFilters(
            year_min=2019,
            year_max=2021,
            max_mileage=69000,
            url="https://www.gaspedaal.nl/volkswagen/golf?bmin=2019&bmax=2021",
        ),
        listings=listings,
    )


@pytest.fixture()
def strong_pricing() -> PricingIndexResult:
    return PricingIndexResult(
        base_value=17900.0,
        option_value=600.0,
        total_value=18500.0,
        value_min=17000.0,
        value_max=19800.0,
        confidence=0.85,
        apr=0.6,
        etr=14,
        liquidity="medium",
        window_size=12,
    )


@pytest.fixture()
def strong_internal() -> InternalComparison:
    return InternalComparison(
        avg_margin=16.0,
        avg_days_to_sell=20,
        avg_days_to_sell_b2c=24,
        total_count=3,
        b2b_count=1,
        b2c_count=2,
        match_level=MATCHED_BY_MODEL,
    )
