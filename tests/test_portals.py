"""Tests for marketplace search URLs, listing classification and the aggregator."""

from __future__ import annotations

import json
import math
from types import SimpleNamespace
from unittest.mock import AsyncMock

from cip_protocol import CIP

from appraisal_mcp.models import ComparableListing, SearchFilters, VehicleAttributes
from appraisal_mcp.tools.json_repair import extract_json_payload
from appraisal_mcp.tools.portals import (
    CIPListingSearchAgent,
    ComparableListingsAggregator,
    OpenAIWebSearchAgent,
    build_search_filters,
    classify_listing,
    default_search_agent,
    match_score,
    normalize_listing,
    parse_agent_reply,
)

RAW_LISTINGS = [
    {"title": "Golf 1.0 TSI", "price": 18500, "mileage": 58000, "build_year": 2020,
     "url": "https://www.gaspedaal.nl/a"},
    {"title": "Golf 1.0 TSI Life", "price": "€ 18.900,-", "mileage": "62.000 km",
     "build_year": 2021, "url": "https://www.gaspedaal.nl/b"},
    {"title": "Golf 1.5 TSI", "price": 19200, "mileage": 65000, "build_year": 2019,
     "url": "https://www.gaspedaal.nl/c"},
    {"title": "Golf high km", "price": 21000, "mileage": 90000, "build_year": 2020,
     "url": "https://www.gaspedaal.nl/d"},
    {"title": "Golf too cheap", "price": 9000, "mileage": 61000, "build_year": 2020,
     "url": "https://www.gaspedaal.nl/e"},
    {"title": "Golf old", "price": 15000, "mileage": 60000, "build_year": 2016,
     "url": "https://www.gaspedaal.nl/f"},
    {"title": "No link", "price": 17000, "mileage": 60000, "build_year": 2020},
]


class _FakeAgent:
    def __init__(self, reply: str | None = None, exc: Exception | None = None):
        self.reply = reply
        self.exc = exc
        self.prompts: list[str] = []

    async def search(self, prompt: str) -> str | None:
        self.prompts.append(prompt)
        if self.exc is not None:
            raise self.exc
        return self.reply


def _fenced(payload) -> str:
    return "Here you go:\n```json\n" + json.dumps(payload) + "\n```"


class TestSearchFilters:
    def test_golf_url(self, golf: VehicleAttributes):
        filters = build_search_filters(golf)
        assert filters.year_min == 2019
        assert filters.year_max == 2021
        assert filters.max_mileage == 69000
        assert filters.fuel == "benzine"
        assert filters.url == (
            "https://www.gaspedaal.nl/volkswagen/golf?bmin=2019&bmax=2021"
            "&kmmax=69000&sort=prijs-oplopend&brandstof=benzine"
        )

    def test_zero_mileage_omits_filter(self):
        vehicle = VehicleAttributes(brand="Mercedes-Benz", model="C 200", build_year=2018)
        filters = build_search_filters(vehicle)
        assert filters.max_mileage is None
        assert filters.url.startswith("https://www.gaspedaal.nl/mercedes-benz/c-200?")
        assert "kmmax" not in filters.url

    def test_missing_model_has_no_url(self):
        assert build_search_filters(VehicleAttributes(brand="BMW", model="")) is None


class TestListingNormalization:
    def test_price_string(self):
        listing = normalize_listing(RAW_LISTINGS[1])
        assert listing.price == 18900
        assert listing.mileage == 62000

    def test_price_in_thousands(self):
        listing = normalize_listing({"url": "https://x", "price": "18.5"})
        assert listing.price == 18500

    def test_missing_url_or_price_is_dropped(self):
        assert normalize_listing(RAW_LISTINGS[-1]) is None
        assert normalize_listing({"url": "https://x", "price": "op aanvraag"}) is None
        assert normalize_listing("not a dict") is None

    def test_non_finite_numbers_are_dropped(self):
        assert normalize_listing({"url": "https://x", "price": float("nan")}) is None
        assert normalize_listing({"url": "https://x", "price": float("inf")}) is None
        listing = normalize_listing({"url": "https://x", "price": 18000, "mileage": float("nan")})
        assert listing.mileage is None

    def test_match_score(self, golf: VehicleAttributes):
        listing = ComparableListing(
            source="gaspedaal", url="https://x", title="", price=1.0,
            mileage=70000, build_year=2018,
        )
        assert match_score(listing, golf) == 0.88

    def test_match_score_counts_partial_mileage_steps(self, golf: VehicleAttributes):
        listing = ComparableListing(
            source="gaspedaal", url="https://x", title="", price=1.0,
            mileage=64000, build_year=2020,
        )
        assert match_score(listing, golf) == 0.99


class TestClassification:
    def _listing(self, **kwargs) -> ComparableListing:
        base = {"source": "gaspedaal", "url": "https://x", "title": "", "price": 18000.0,
                "mileage": 60000, "build_year": 2020}
        base.update(kwargs)
        return ComparableListing(**base)

    def test_primary(self, golf: VehicleAttributes):
        listing = self._listing(mileage=65000, build_year=2021)
        classify_listing(listing, golf, SearchFilters(max_mileage=69000), 18000.0)
        assert listing.is_primary
        assert not listing.is_deviation

    def test_year_deviation_clears_primary(self, golf: VehicleAttributes):
        listing = self._listing(build_year=2016)
        classify_listing(listing, golf, SearchFilters(max_mileage=69000), 18000.0)
        assert listing.is_deviation
        assert not listing.is_primary
        assert "year" in listing.deviation_reason.lower()

    def test_mileage_deviation(self, golf: VehicleAttributes):
        listing = self._listing(mileage=150000)
        classify_listing(listing, golf, SearchFilters(max_mileage=69000), 18000.0)
        assert listing.is_deviation

    def test_price_deviation(self, golf: VehicleAttributes):
        listing = self._listing(price=8000.0)
        classify_listing(listing, golf, SearchFilters(max_mileage=69000), 18000.0)
        assert listing.is_deviation
        assert "price" in listing.deviation_reason.lower()

    def test_zero_target_mileage_uses_floor(self):
        vehicle = VehicleAttributes(brand="Volkswagen", model="Golf", build_year=2020)
        near = self._listing(mileage=14000)
        far = self._listing(mileage=16000)
        for listing in (near, far):
            classify_listing(listing, vehicle, SearchFilters(), 18000.0)
        assert near.is_primary
        assert not far.is_primary


class TestReplyParsing:
    def test_object_with_listings(self):
        assert len(parse_agent_reply(_fenced({"listings": RAW_LISTINGS}))) == len(RAW_LISTINGS)

    def test_bare_array(self):
        assert len(parse_agent_reply(json.dumps(RAW_LISTINGS[:2]))) == 2

    def test_truncated_reply_is_repaired(self):
        text = '{"listings": [{"price": 18500, "url": "https://a"}, {"price": 19000, "url": "https://b"'
        listings = parse_agent_reply(text)
        assert [item["price"] for item in listings] == [18500]

    def test_garbage(self):
        assert parse_agent_reply("I could not open the page.") is None

    def test_trailing_commas_and_control_chars(self):
        text = '{"listings": [{"price": 18500,\x07 "url": "https://a",},],}'
        assert extract_json_payload(text)["listings"][0]["price"] == 18500


class TestAggregator:
    async def test_statistics_over_primary(self, golf: VehicleAttributes):
        agent = _FakeAgent(_fenced({"listings": RAW_LISTINGS}))
        analysis = await ComparableListingsAggregator(agent).analyze(golf)
        assert analysis.listing_count == 6
        assert analysis.primary_count == 3
        assert analysis.lowest_price == 18500
        assert analysis.median_price == 18900
        assert analysis.highest_price == 19200
        assert len(analysis.deviations) == 2
        assert len(analysis.listings) == 4
        assert "sort=prijs-oplopend" in agent.prompts[0]

    async def test_primary_and_deviation_sets_disjoint(self, golf: VehicleAttributes):
        agent = _FakeAgent(_fenced({"listings": RAW_LISTINGS}))
        analysis = await ComparableListingsAggregator(agent).analyze(golf)
        primary = {item.url for item in analysis.listings if item.is_primary}
        deviating = {item.url for item in analysis.deviations}
        assert primary.isdisjoint(deviating)
        assert all(not item.is_primary for item in analysis.deviations)

    async def test_non_finite_prices_in_reply_are_dropped(self, golf: VehicleAttributes):
        reply = (
            '{"listings": ['
            '{"price": NaN, "mileage": 60000, "build_year": 2020, "url": "https://a"},'
            '{"price": 18000, "mileage": 60000, "build_year": 2020, "url": "https://b"},'
            '{"price": 18500, "mileage": 60000, "build_year": 2020, "url": "https://c"},'
            '{"price": Infinity, "mileage": 60000, "build_year": 2020, "url": "https://d"},'
            '{"price": 19000, "mileage": 60000, "build_year": 2020, "url": "https://e"}]}'
        )
        analysis = await ComparableListingsAggregator(_FakeAgent(reply)).analyze(golf)
        assert analysis.listing_count == 3
        assert analysis.primary_count == 3
        assert analysis.lowest_price == 18000
        assert analysis.median_price == 18500
        assert all(math.isfinite(item.price) for item in analysis.listings)

    async def test_malformed_reply_is_empty(self, golf: VehicleAttributes):
        analysis = await ComparableListingsAggregator(_FakeAgent("no JSON here")).analyze(golf)
        assert analysis.listing_count == 0
        assert analysis.is_empty
        assert analysis.note

    async def test_empty_reply_is_empty(self, golf: VehicleAttributes):
        analysis = await ComparableListingsAggregator(_FakeAgent(None)).analyze(golf)
        assert analysis.listing_count == 0

    async def test_agent_failure_is_empty(self, golf: VehicleAttributes):
        agent = _FakeAgent(exc=RuntimeError("rate limited"))
        analysis = await ComparableListingsAggregator(agent).analyze(golf)
        assert analysis.listing_count == 0

    async def test_no_search_url_skips_agent(self):
        agent = _FakeAgent(_fenced({"listings": RAW_LISTINGS}))
        analysis = await ComparableListingsAggregator(agent).analyze(
            VehicleAttributes(brand="BMW", model="")
        )
        assert analysis.listing_count == 0
        assert agent.prompts == []

    async def test_explicit_urls(self, golf: VehicleAttributes):
        agent = _FakeAgent(_fenced({"listings": RAW_LISTINGS[:3]}))
        await ComparableListingsAggregator(agent).analyze(golf, ["https://example.test/search"])
        assert "https://example.test/search" in agent.prompts[0]

    async def test_results_are_cached(self, golf: VehicleAttributes):
        agent = _FakeAgent(_fenced({"listings": RAW_LISTINGS}))
        aggregator = ComparableListingsAggregator(agent)
        first = await aggregator.analyze(golf)
        second = await aggregator.analyze(golf)
        assert first is second
        assert len(agent.prompts) == 1

    async def test_no_agent_configured(self, golf: VehicleAttributes):
        analysis = await ComparableListingsAggregator(None).analyze(golf)
        assert analysis.listing_count == 0
        assert analysis.filters.url is not None


class TestAgents:
    async def test_cip_agent_with_non_json_reply(self, mock_cip: CIP, golf: VehicleAttributes):
        aggregator = ComparableListingsAggregator(CIPListingSearchAgent(mock_cip))
        analysis = await aggregator.analyze(golf)
        assert analysis.listing_count == 0

    async def test_openai_agent_reads_output_text(self):
        client = SimpleNamespace(
            responses=SimpleNamespace(
                create=AsyncMock(return_value=SimpleNamespace(output_text='{"listings": []}'))
            )
        )
        agent = OpenAIWebSearchAgent(client=client)
        assert await agent.search("prompt") == '{"listings": []}'
        kwargs = client.responses.create.call_args.kwargs
        assert kwargs["tools"] == [{"type": "web_search_preview"}]

    def test_default_agent_selection(self, mock_cip: CIP, monkeypatch):
        assert isinstance(default_search_agent(mock_cip), CIPListingSearchAgent)
        assert default_search_agent(None) is None
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert isinstance(default_search_agent(None), OpenAIWebSearchAgent)
