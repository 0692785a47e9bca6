"""Bulk valuation of supplier rows.

Rows are ingested as ``pending`` :class:`BulkRow` records, free-text
descriptions are parsed in chunks, and every row is then valued through
the single-vehicle pipeline under a small, fixed concurrency cap. A row
that fails is marked ``error`` and the batch carries on.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from openpyxl import load_workbook

from appraisal_mcp.models import (
    ROW_COMPLETED,
    ROW_ERROR,
    ROW_PROCESSING,
    BulkProgress,
    BulkRow,
    ParsedVehicle,
    VehicleAttributes,
)
from appraisal_mcp.normalization import (
    canonical_brand,
    normalize_fuel_type,
    normalize_transmission,
    parse_int,
    parse_price,
)
from appraisal_mcp.pipeline.valuation import STATE_ERROR, ValuationRun, ValuationSources
from appraisal_mcp.tools.parser import MAX_BATCH, parse_vehicle_descriptions

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 4

ProgressCallback = Callable[[BulkProgress], None]


# ── Configuration ───────────────────────────────────────────────────


@dataclass
class BulkConfig:
    """Configuration for a bulk valuation run."""
    concurrency: int = 2
    row_delay: float = 0.0
    parse_chunk_size: int = MAX_BATCH

    @property
    def effective_concurrency(self) -> int:
        return max(1, min(self.concurrency, MAX_CONCURRENCY))


# ── Workbook import ─────────────────────────────────────────────────

HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "description": ("description", "omschrijving", "voertuig", "vehicle", "auto"),
    "brand": ("brand", "merk", "make"),
    "model": ("model", "type"),
    "build_year": ("build_year", "bouwjaar", "year", "jaar"),
    "mileage": ("mileage", "km", "km_stand", "kilometerstand", "tellerstand", "kms"),
    "fuel_type": ("fuel_type", "fuel", "brandstof"),
    "transmission": ("transmission", "transmissie", "versnellingsbak", "gear"),
    "plate": ("plate", "kenteken", "license_plate", "registration"),
    "asking_price": ("asking_price", "vraagprijs", "prijs", "price"),
}
_HEADER_SCAN_ROWS = 10


def _header_key(cell: Any) -> str:
    return str(cell or "").strip().lower().replace(" ", "_").replace("-", "_")


def _map_headers(cells: tuple[Any, ...]) -> dict[int, str]:
    mapping: dict[int, str] = {}
    for position, cell in enumerate(cells):
        key = _header_key(cell)
        for field_name, aliases in HEADER_ALIASES.items():
            if key in aliases and field_name not in mapping.values():
                mapping[position] = field_name
                break
    return mapping


def rows_from_workbook(source: str | Path | bytes) -> list[dict[str, Any]]:
    """Read the active sheet of a supplier workbook into row dicts.

    The header row is the first of the top rows that maps at least two
    known columns; rows without any mapped value are skipped.
    """
    handle = io.BytesIO(source) if isinstance(source, bytes) else source
    wb = load_workbook(handle, read_only=True, data_only=True)
    try:
        ws = wb.active
        mapping: dict[int, str] = {}
        rows: list[dict[str, Any]] = []
        for i, cells in enumerate(ws.iter_rows(values_only=True)):
            if not mapping:
                if i >= _HEADER_SCAN_ROWS:
                    break
                candidate = _map_headers(cells)
                if len(candidate) >= 2:
                    mapping = candidate
                continue
            row = {
                field_name: cells[position]
                for position, field_name in mapping.items()
                if position < len(cells) and cells[position] not in (None, "")
            }
            if row:
                rows.append(row)
    finally:
        wb.close()
    if not mapping:
        raise ValueError("No header row with recognizable column names found.")
    return rows


# ── Row conversion ──────────────────────────────────────────────────


def _text(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    return str(value).strip() if value is not None else ""


def vehicle_from_row(raw: dict[str, Any], parsed: ParsedVehicle | None) -> VehicleAttributes:
    """Structured columns win over values parsed from the description."""
    brand = canonical_brand(_text(raw, "brand")) or _text(raw, "brand") or None
    if brand is None and parsed is not None:
        brand = parsed.brand
    if not brand:
        raise ValueError("No recognizable brand in row.")

    base = parsed.to_attributes() if parsed is not None and parsed.brand else None
    fuel = normalize_fuel_type(_text(raw, "fuel_type")) or (base.fuel_type if base else None)
    transmission = normalize_transmission(_text(raw, "transmission")) or (
        base.transmission if base else None
    )
    return VehicleAttributes(
        brand=brand,
        model=_text(raw, "model") or (base.model if base else ""),
        build_year=parse_int(raw.get("build_year")) or (base.build_year if base else None),
        mileage=parse_int(raw.get("mileage")) or (base.mileage if base else 0),
        fuel_type=fuel,
        transmission=transmission,
        body_type=base.body_type if base else None,
        power=base.power if base else None,
        trim=base.trim if base else "",
    )


def _row_label(raw: dict[str, Any], parsed: ParsedVehicle | None) -> str:
    if parsed is not None and parsed.brand:
        return " ".join(p for p in (parsed.brand, parsed.model or "") if p)
    parts = [_text(raw, "brand"), _text(raw, "model")]
    label = " ".join(p for p in parts if p)
    return label or _text(raw, "plate") or _text(raw, "description")[:40]


# ── Pipeline orchestrator ───────────────────────────────────────────


class BulkValuationPipeline:
    """Runs the single-vehicle pipeline over many rows."""

    def __init__(
        self,
        sources: ValuationSources,
        config: BulkConfig | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.sources = sources
        self.config = config or BulkConfig()
        self.on_progress = on_progress
        self.rows: list[BulkRow] = []
        self._done = 0
        self._reset_stats()

    def _reset_stats(self) -> None:
        self.stats: dict[str, Any] = {
            "total": 0,
            "parsed": 0,
            "completed": 0,
            "errors": 0,
            "by_recommendation": {},
        }

    def ingest(self, rows: list[dict[str, Any]]) -> list[BulkRow]:
        self.rows = [BulkRow(index=i, raw=dict(raw)) for i, raw in enumerate(rows)]
        return self.rows

    async def _parse_descriptions(self) -> dict[int, ParsedVehicle]:
        pending = [
            row for row in self.rows
            if _text(row.raw, "description") and not _text(row.raw, "plate")
        ]
        if not pending:
            return {}
        parsed = await parse_vehicle_descriptions(
            self.sources.cip,
            [_text(row.raw, "description") for row in pending],
            batch_size=self.config.parse_chunk_size,
        )
        self.stats["parsed"] = len(parsed)
        return {row.index: item for row, item in zip(pending, parsed)}

    def _report(self, label: str) -> None:
        self._done += 1
        if self.on_progress is None:
            return
        try:
            self.on_progress(BulkProgress(self._done, len(self.rows), label))
        except Exception as exc:
            logger.warning("Progress callback failed: %s", exc)

    async def _process_row(
        self,
        row: BulkRow,
        parsed: ParsedVehicle | None,
        semaphore: asyncio.Semaphore,
    ) -> None:
        row.label = _row_label(row.raw, parsed)
        if parsed is not None:
            row.parse_confidence = parsed.confidence
        async with semaphore:
            row.status = ROW_PROCESSING
            try:
                run = ValuationRun(self.sources)
                plate = _text(row.raw, "plate")
                asking_price = parse_price(row.raw.get("asking_price"))
                if plate:
                    result = await run.start(
                        plate,
                        mileage=parse_int(row.raw.get("mileage")),
                        asking_price=asking_price,
                    )
                else:
                    result = await run.start(
                        vehicle=vehicle_from_row(row.raw, parsed),
                        asking_price=asking_price,
                    )
                if run.state == STATE_ERROR or result is None:
                    raise ValueError(str(run.error or "Valuation did not complete."))
                row.result = result
                row.label = result.vehicle.label
                row.status = ROW_COMPLETED
            except Exception as exc:
                logger.warning("Bulk row %d (%s) failed: %s", row.index, row.label, exc)
                row.status = ROW_ERROR
                row.error = str(exc)
            finally:
                if self.config.row_delay > 0:
                    await asyncio.sleep(self.config.row_delay)
        self._report(row.label)

    async def run(self, rows: list[dict[str, Any]]) -> list[BulkRow]:
        """Value every row; always returns with each row terminal."""
        self._reset_stats()
        self._done = 0
        self.ingest(rows)
        self.stats["total"] = len(self.rows)
        if not self.rows:
            return self.rows

        try:
            parsed_by_index = await self._parse_descriptions()
        except Exception as exc:
            logger.error("Description parsing failed for the batch: %s", exc)
            parsed_by_index = {}

        semaphore = asyncio.Semaphore(self.config.effective_concurrency)
        await asyncio.gather(
            *(
                self._process_row(row, parsed_by_index.get(row.index), semaphore)
                for row in self.rows
            )
        )

        by_recommendation: dict[str, int] = {}
        for row in self.rows:
            if row.status == ROW_COMPLETED and row.result is not None:
                category = row.result.advice.recommendation
                by_recommendation[category] = by_recommendation.get(category, 0) + 1
        self.stats["completed"] = sum(1 for r in self.rows if r.status == ROW_COMPLETED)
        self.stats["errors"] = sum(1 for r in self.rows if r.status == ROW_ERROR)
        self.stats["by_recommendation"] = by_recommendation
        logger.info(
            "Bulk valuation finished: %d completed, %d errors of %d rows",
            self.stats["completed"], self.stats["errors"], self.stats["total"],
        )
        return self.rows
