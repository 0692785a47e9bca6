"""Formatted ``.xlsx`` export of completed bulk rows."""

from __future__ import annotations

import logging
from pathlib import Path

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from appraisal_mcp.models import (
    LIQUIDITY_HIGH,
    LIQUIDITY_LOW,
    LIQUIDITY_MEDIUM,
    RECOMMEND_BUY,
    RECOMMEND_NO_BUY,
    RECOMMEND_UNCERTAIN,
    ROW_COMPLETED,
    BulkRow,
)

logger = logging.getLogger(__name__)

COLUMNS = (
    ("Brand", 14),
    ("Model", 18),
    ("Fuel", 12),
    ("Mileage", 12),
    ("Build year", 10),
    ("APR", 8),
    ("ETR", 8),
    ("Index price", 14),
    ("Recommended sell", 16),
    ("Recommended purchase", 18),
    ("Recommendation", 15),
    ("Liquidity", 10),
    ("Search link", 40),
)

CURRENCY_FORMAT = "€#,##0"
MILEAGE_FORMAT = '#,##0" km"'
HEADER_FILL = PatternFill(start_color="1E3A5F", end_color="1E3A5F", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF")
ROW_FILLS = {
    RECOMMEND_BUY: PatternFill(start_color="E8F5E9", end_color="E8F5E9", fill_type="solid"),
    RECOMMEND_NO_BUY: PatternFill(start_color="FFEBEE", end_color="FFEBEE", fill_type="solid"),
    RECOMMEND_UNCERTAIN: PatternFill(start_color="FFF8E1", end_color="FFF8E1", fill_type="solid"),
}
LIQUIDITY_FONTS = {
    LIQUIDITY_HIGH: Font(bold=True, color="2E7D32"),
    LIQUIDITY_MEDIUM: Font(bold=True, color="F9A825"),
    LIQUIDITY_LOW: Font(bold=True, color="C62828"),
}
_CURRENCY_COLUMNS = (8, 9, 10)
_MILEAGE_COLUMN = 4


def export_bulk_results(rows: list[BulkRow], path: str | Path) -> dict[str, int]:
    """Write completed rows to *path*; returns the summary counts."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Valuations"

    for col, (title, width) in enumerate(COLUMNS, start=1):
        cell = ws.cell(row=1, column=col, value=title)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        ws.column_dimensions[get_column_letter(col)].width = width
    ws.freeze_panes = "A2"

    counts = {RECOMMEND_BUY: 0, RECOMMEND_UNCERTAIN: 0, RECOMMEND_NO_BUY: 0}
    row_number = 1
    for row in rows:
        if row.status != ROW_COMPLETED or row.result is None:
            continue
        result = row.result
        vehicle, advice, pricing, portal = (
            result.vehicle, result.advice, result.pricing, result.portal,
        )
        row_number += 1
        values = (
            vehicle.brand,
            vehicle.model,
            vehicle.fuel_type or "",
            vehicle.mileage or None,
            vehicle.build_year,
            pricing.apr if pricing else None,
            pricing.etr if pricing else None,
            pricing.total_value if pricing else None,
            advice.recommended_selling_price or None,
            advice.recommended_purchase_price or None,
            advice.recommendation,
            pricing.liquidity if pricing else None,
            portal.filters.url if portal and portal.filters.url else None,
        )
        fill = ROW_FILLS.get(advice.recommendation)
        for col, value in enumerate(values, start=1):
            cell = ws.cell(row=row_number, column=col, value=value)
            if fill is not None:
                cell.fill = fill
            if col in _CURRENCY_COLUMNS:
                cell.number_format = CURRENCY_FORMAT
            elif col == _MILEAGE_COLUMN:
                cell.number_format = MILEAGE_FORMAT
        liquidity_font = LIQUIDITY_FONTS.get(pricing.liquidity if pricing else "")
        if liquidity_font is not None:
            ws.cell(row=row_number, column=12).font = liquidity_font
        link = values[-1]
        if link:
            ws.cell(row=row_number, column=13).hyperlink = link
        if advice.recommendation in counts:
            counts[advice.recommendation] += 1

    summary = {"total": sum(counts.values()), **counts}
    summary_row = row_number + 2
    for offset, (label, key) in enumerate(
        (("Total", "total"), ("Buy", RECOMMEND_BUY),
         ("Uncertain", RECOMMEND_UNCERTAIN), ("No-buy", RECOMMEND_NO_BUY))
    ):
        ws.cell(row=summary_row + offset, column=1, value=label).font = Font(bold=True)
        ws.cell(row=summary_row + offset, column=2, value=summary[key])

    wb.save(str(path))
    logger.info("Exported %d valuations to %s", summary["total"], path)
    return summary
