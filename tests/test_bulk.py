"""Tests for bulk valuation: workbook import, row conversion, concurrency and progress."""

from __future__ import annotations

import asyncio
import io

import pytest
from openpyxl import Workbook

from appraisal_mcp.clients.rdw import PlateResolution
from appraisal_mcp.errors import NotFoundError
from appraisal_mcp.ingestion.bulk import (
    MAX_CONCURRENCY,
    BulkConfig,
    BulkValuationPipeline,
    rows_from_workbook,
    vehicle_from_row,
)
from appraisal_mcp.models import ROW_COMPLETED, ROW_ERROR, BulkProgress, VehicleAttributes
from appraisal_mcp.normalization import normalize_plate
from appraisal_mcp.pipeline.valuation import ValuationSources
from appraisal_mcp.tools.parser import parse_with_patterns

GOLF = VehicleAttributes(brand="Volkswagen", model="Golf", build_year=2020, fuel_type="Benzine")


class _Sources:
    """Fake source wiring that tracks concurrency and the vehicles valued."""

    def __init__(self, portal, pricing, internal, *, delay: float = 0.0):
        self.portal = portal
        self.pricing = pricing
        self.internal = internal
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.vehicles: list[VehicleAttributes] = []

    async def resolve(self, plate: str) -> PlateResolution:
        normalized = normalize_plate(plate)
        if normalized.startswith("ZZ"):
            return PlateResolution(plate=normalized, error=NotFoundError("Plate not registered"))
        return PlateResolution(plate=normalized, vehicle=GOLF)

    async def portals(self, vehicle):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.vehicles.append(vehicle)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return self.portal

    async def pricing_index(self, plate, vehicle):
        return self.pricing

    async def internal_history(self, vehicle):
        return self.internal

    def wiring(self) -> ValuationSources:
        return ValuationSources(
            resolve=self.resolve,
            portals=self.portals,
            pricing_index=self.pricing_index,
            internal=self.internal_history,
        )


@pytest.fixture()
def fake_sources(strong_portal, strong_pricing, strong_internal) -> _Sources:
    return _Sources(strong_portal, strong_pricing, strong_internal)


# ── Batch runs ──────────────────────────────────────────────────────


class TestBulkRun:
    async def test_failing_row_does_not_stop_batch(self, fake_sources: _Sources):
        rows = [{"plate": f"AB{i:03d}C"} for i in range(6)]
        rows[3] = {"plate": "ZZ-999-Z"}
        progress: list[BulkProgress] = []
        pipeline = BulkValuationPipeline(fake_sources.wiring(), on_progress=progress.append)

        result = await pipeline.run(rows)

        assert all(row.is_terminal for row in result)
        assert [row.status for row in result].count(ROW_COMPLETED) == 5
        assert result[3].status == ROW_ERROR
        assert "Plate not registered" in result[3].error
        assert len(progress) == 6
        assert progress[-1].current == 6
        assert progress[-1].total == 6
        assert pipeline.stats["completed"] == 5
        assert pipeline.stats["errors"] == 1
        assert pipeline.stats["by_recommendation"] == {"buy": 5}

    async def test_asking_price_column(self, fake_sources: _Sources):
        pipeline = BulkValuationPipeline(fake_sources.wiring())
        result = await pipeline.run([{"plate": "AB123C", "asking_price": "€ 17.000,-"}])
        assert result[0].result.advice.recommendation == "no-buy"

    async def test_plate_row_mileage_applied(self, fake_sources: _Sources):
        await BulkValuationPipeline(fake_sources.wiring()).run(
            [{"plate": "AB123C", "mileage": "61.000 km"}]
        )
        assert fake_sources.vehicles[0].mileage == 61000

    async def test_description_rows_are_parsed(self, fake_sources: _Sources):
        pipeline = BulkValuationPipeline(fake_sources.wiring())
        result = await pipeline.run([
            {"description": "BMW 320i 2019 Automaat Benzine 150pk", "mileage": 80000},
        ])
        row = result[0]
        assert row.status == ROW_COMPLETED
        assert row.parse_confidence == 0.9
        assert row.label == "BMW 320i 2019"
        assert fake_sources.vehicles[0].mileage == 80000
        assert pipeline.stats["parsed"] == 1

    async def test_row_without_brand_is_error(self, fake_sources: _Sources):
        result = await BulkValuationPipeline(fake_sources.wiring()).run(
            [{"description": "nette auto, weinig km"}]
        )
        assert result[0].status == ROW_ERROR
        assert "brand" in result[0].error

    async def test_concurrency_is_capped(self, fake_sources: _Sources):
        fake_sources.delay = 0.01
        config = BulkConfig(concurrency=25)
        assert config.effective_concurrency == MAX_CONCURRENCY
        await BulkValuationPipeline(fake_sources.wiring(), config).run(
            [{"plate": f"AB{i:03d}C"} for i in range(10)]
        )
        assert 1 <= fake_sources.peak <= MAX_CONCURRENCY

    async def test_serial_processing(self, fake_sources: _Sources):
        fake_sources.delay = 0.01
        await BulkValuationPipeline(fake_sources.wiring(), BulkConfig(concurrency=1)).run(
            [{"plate": f"AB{i:03d}C"} for i in range(4)]
        )
        assert fake_sources.peak == 1

    async def test_progress_callback_failure_is_ignored(self, fake_sources: _Sources):
        def explode(progress: BulkProgress) -> None:
            raise RuntimeError("UI closed")

        result = await BulkValuationPipeline(fake_sources.wiring(), on_progress=explode).run(
            [{"plate": "AB123C"}]
        )
        assert result[0].status == ROW_COMPLETED

    async def test_empty_batch(self, fake_sources: _Sources):
        pipeline = BulkValuationPipeline(fake_sources.wiring())
        assert await pipeline.run([]) == []
        assert pipeline.stats["total"] == 0


# ── Row conversion ──────────────────────────────────────────────────


class TestVehicleFromRow:
    def test_structured_columns(self):
        vehicle = vehicle_from_row(
            {"brand": "vw", "model": "Golf", "build_year": "2020", "mileage": "45.000",
             "fuel_type": "diesel", "transmission": "automaat"},
            None,
        )
        assert vehicle.brand == "Volkswagen"
        assert vehicle.build_year == 2020
        assert vehicle.mileage == 45000
        assert vehicle.fuel_type == "Diesel"
        assert vehicle.transmission == "Automaat"

    def test_columns_win_over_description(self):
        parsed = parse_with_patterns("BMW 320i 2019 Automaat Benzine 150pk")
        vehicle = vehicle_from_row({"build_year": 2018, "fuel_type": "Diesel"}, parsed)
        assert vehicle.brand == "BMW"
        assert vehicle.model == "320i"
        assert vehicle.build_year == 2018
        assert vehicle.fuel_type == "Diesel"
        assert vehicle.power == 150

    def test_no_brand_raises(self):
        with pytest.raises(ValueError):
            vehicle_from_row({"model": "Golf"}, None)


# ── Workbook import ─────────────────────────────────────────────────


def _workbook_bytes(rows: list[list]) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


SUPPLIER_SHEET = [
    ["Leverancierslijst week 12"],
    ["Kenteken", "Merk", "Model", "Bouwjaar", "KM stand", "Vraagprijs"],
    ["AB-123-C", "Volkswagen", "Golf", 2020, 60000, 15500],
    [None, None, None, None, None, None],
    ["12-XYZ-3", "BMW", "320i", 2019, 80000, None],
]


class TestRowsFromWorkbook:
    def test_header_below_title_row(self):
        rows = rows_from_workbook(_workbook_bytes(SUPPLIER_SHEET))
        assert len(rows) == 2
        assert rows[0] == {
            "plate": "AB-123-C", "brand": "Volkswagen", "model": "Golf",
            "build_year": 2020, "mileage": 60000, "asking_price": 15500,
        }
        assert "asking_price" not in rows[1]

    def test_description_column(self):
        rows = rows_from_workbook(_workbook_bytes([
            ["Omschrijving", "Prijs"],
            ["BMW 320i 2019 Automaat", 21000],
        ]))
        assert rows == [{"description": "BMW 320i 2019 Automaat", "asking_price": 21000}]

    def test_reads_from_path(self, tmp_path):
        path = tmp_path / "supplier.xlsx"
        path.write_bytes(_workbook_bytes(SUPPLIER_SHEET))
        assert len(rows_from_workbook(path)) == 2

    def test_missing_header_raises(self):
        with pytest.raises(ValueError):
            rows_from_workbook(_workbook_bytes([["foo", "bar"], [1, 2]]))
