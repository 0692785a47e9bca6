"""AppraisalCIP MCP server — FastMCP entry point for acquisition valuations."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from cip_protocol import CIP
from cip_protocol.orchestration.errors import (
    log_and_return_tool_error as _log_and_return_tool_error,
)
from cip_protocol.orchestration.pool import ProviderPool
from cip_protocol.scaffold.loader import load_scaffold_directory
from cip_protocol.scaffold.registry import ScaffoldRegistry
from mcp.server.fastmcp import FastMCP

from appraisal_mcp.config import APPRAISAL_DOMAIN_CONFIG
from appraisal_mcp.data.history import get_store
from appraisal_mcp.ingestion.bulk import BulkConfig, BulkValuationPipeline
from appraisal_mcp.ingestion.export import export_bulk_results
from appraisal_mcp.models import VehicleAttributes
from appraisal_mcp.normalization import (
    canonical_brand,
    normalize_body_type,
    normalize_fuel_type,
    normalize_transmission,
)
from appraisal_mcp.pipeline.valuation import (
    STATE_ERROR,
    SourceCaches,
    ValuationRun,
    ValuationSources,
    default_sources,
)
from appraisal_mcp.tools.orchestration import build_raw_response
from appraisal_mcp.tools.parser import MAX_BATCH
from appraisal_mcp.tools.parser import (
    parse_vehicle_descriptions as _parse_vehicle_descriptions,
)

# Load .env from project root (no extra dependency)
_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
if _ENV_FILE.is_file():
    for line in _ENV_FILE.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            os.environ.setdefault(k.strip(), v.strip())

mcp = FastMCP("AppraisalCIP")
logger = logging.getLogger(__name__)

_SCAFFOLD_DIR = str(Path(__file__).parent / "scaffolds")

_pool = ProviderPool(APPRAISAL_DOMAIN_CONFIG, _SCAFFOLD_DIR)
_caches = SourceCaches()

_scaffold_registry_ref: ScaffoldRegistry | None = None


def _get_scaffold_registry() -> ScaffoldRegistry:
    global _scaffold_registry_ref  # noqa: PLW0603
    if _scaffold_registry_ref is None:
        reg = ScaffoldRegistry()
        load_scaffold_directory(_SCAFFOLD_DIR, reg)
        _scaffold_registry_ref = reg
    return _scaffold_registry_ref


def _build_scaffold_catalog_payload() -> dict[str, Any]:
    scaffolds = sorted(_get_scaffold_registry().all(), key=lambda s: s.id)
    return {
        "domain": APPRAISAL_DOMAIN_CONFIG.name,
        "default_scaffold_id": APPRAISAL_DOMAIN_CONFIG.default_scaffold_id,
        "count": len(scaffolds),
        "scaffolds": [
            {
                "id": s.id,
                "display_name": s.display_name,
                "description": s.description,
                "tools": list(s.applicability.tools or []),
            }
            for s in scaffolds
        ],
    }


@mcp.resource("appraisal://scaffolds/catalog")
def scaffold_catalog_resource() -> dict[str, Any]:
    """List the scaffolds behind parsing, listing search and advice synthesis."""
    return _build_scaffold_catalog_payload()


def set_cip_override(cip: CIP | None) -> None:
    """Inject a CIP instance (e.g. with MockProvider) for testing."""
    _pool.set_override(cip)


def _get_cip(provider: str = "") -> CIP | None:
    """CIP for the given provider, or ``None`` to run on deterministic fallbacks."""
    try:
        return _pool.get(provider)
    except Exception as exc:
        logger.warning("No LLM provider available (%s); using deterministic fallbacks", exc)
        return None


def _build_sources(cip: CIP | None) -> ValuationSources:
    return default_sources(cip, get_store(), _caches)


def _run_payload(run: ValuationRun) -> dict[str, Any]:
    if run.state == STATE_ERROR:
        error = run.error
        return {
            "error": True,
            "state": run.state,
            "plate": run.plate,
            "code": getattr(error, "code", "ERROR"),
            "message": str(error) if error else "Vehicle could not be resolved.",
        }
    result = run.result
    if result is None:
        return {"error": True, "state": run.state, "message": "Valuation did not complete."}
    return {"state": run.state, **result.to_dict()}


# ── Tool registrations ──────────────────────────────────────────────


@mcp.tool()
def set_llm_provider(provider: str, model: str = "") -> str:
    """Set the default LLM provider used for parsing, listing search and advice.

    provider: 'anthropic' or 'openai'
    model: optional model override
    """
    try:
        return _pool.set_provider(provider, model)
    except Exception as exc:
        return _log_and_return_tool_error(
            tool_name="set_llm_provider",
            exc=exc,
            user_message=f"Failed to switch to {provider}: check API key is set.",
        )


@mcp.tool()
def get_llm_provider() -> str:
    """Return current default provider/model and initialized provider pool details."""
    return _pool.get_info()


@mcp.tool()
async def valuate_license_plate(
    plate: str,
    mileage: int = 0,
    options: list[str] | None = None,
    asking_price: float | None = None,
    provider: str = "",
) -> str:
    """Value a vehicle by Dutch license plate.

    The registry has no odometer reading, so pass the current mileage.
    Returns marketplace comparables, the pricing index, internal history
    and a buy / no-buy / uncertain recommendation as JSON.
    """
    try:
        if not plate.strip():
            raise ValueError("A license plate is required.")
        run = ValuationRun(_build_sources(_get_cip(provider)))
        await run.start(plate, mileage=mileage, options=options, asking_price=asking_price)
        return build_raw_response("valuate_license_plate", _run_payload(run))
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return _log_and_return_tool_error(
            tool_name="valuate_license_plate",
            exc=exc,
            user_message=(
                "I am having trouble valuing this vehicle right now. "
                "Please try again in a moment."
            ),
        )


@mcp.tool()
async def valuate_vehicle(
    brand: str,
    model: str,
    build_year: int | None = None,
    mileage: int = 0,
    fuel_type: str = "",
    transmission: str = "",
    body_type: str = "",
    power: int | None = None,
    options: list[str] | None = None,
    asking_price: float | None = None,
    plate: str = "",
    provider: str = "",
) -> str:
    """Value a vehicle from its attributes when no plate lookup is wanted."""
    try:
        resolved_brand = canonical_brand(brand) or brand.strip()
        if not resolved_brand:
            raise ValueError("A brand is required.")
        vehicle = VehicleAttributes(
            brand=resolved_brand,
            model=model.strip(),
            build_year=build_year,
            fuel_type=normalize_fuel_type(fuel_type),
            transmission=normalize_transmission(transmission),
            body_type=normalize_body_type(body_type),
            power=power,
        )
        run = ValuationRun(_build_sources(_get_cip(provider)))
        await run.start(
            plate or None,
            vehicle=vehicle,
            mileage=mileage,
            options=options,
            asking_price=asking_price,
        )
        return build_raw_response("valuate_vehicle", _run_payload(run))
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return _log_and_return_tool_error(
            tool_name="valuate_vehicle",
            exc=exc,
            user_message=(
                "I am having trouble valuing this vehicle right now. "
                "Please try again in a moment."
            ),
        )


@mcp.tool()
async def parse_vehicle_descriptions(descriptions: list[str], provider: str = "") -> str:
    """Extract brand, model, year, fuel, transmission and power from free-text descriptions.

    Descriptions are processed in batches of 20.
    """
    try:
        if not descriptions:
            raise ValueError("Provide at least one description.")
        parsed = await _parse_vehicle_descriptions(
            _get_cip(provider), descriptions, batch_size=MAX_BATCH
        )
        return build_raw_response(
            "parse_vehicle_descriptions",
            {"count": len(parsed), "vehicles": [p.to_dict() for p in parsed]},
        )
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return _log_and_return_tool_error(
            tool_name="parse_vehicle_descriptions",
            exc=exc,
            user_message="I am having trouble parsing these descriptions right now.",
        )


@mcp.tool()
async def run_bulk_valuation(
    rows: list[dict],
    export_path: str = "",
    concurrency: int = 2,
    provider: str = "",
) -> str:
    """Value a batch of supplier rows.

    Each row holds either a free-text ``description`` or structured
    ``brand``/``model``/``build_year``/``mileage``/``fuel_type`` fields, and
    optionally ``plate`` and ``asking_price``. A failing row is reported
    with its error and does not stop the batch. With ``export_path`` the
    completed rows are also written to an .xlsx file.
    """
    try:
        if not rows:
            raise ValueError("Provide at least one row.")
        pipeline = BulkValuationPipeline(
            _build_sources(_get_cip(provider)),
            BulkConfig(concurrency=concurrency),
        )
        results = await pipeline.run(rows)
        payload: dict[str, Any] = {
            "stats": pipeline.stats,
            "rows": [row.to_dict() for row in results],
        }
        if export_path.strip():
            payload["export"] = {
                "path": export_path,
                "summary": export_bulk_results(results, export_path),
            }
        return build_raw_response("run_bulk_valuation", payload)
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return _log_and_return_tool_error(
            tool_name="run_bulk_valuation",
            exc=exc,
            user_message="I am having trouble running this bulk valuation right now.",
        )


@mcp.tool()
def save_valuation(
    vehicle: dict,
    advice: dict,
    plate: str = "",
    sources: dict | None = None,
) -> str:
    """Persist a completed valuation (vehicle + advice) for later reference."""
    try:
        valuation_id = get_store().save_valuation(
            plate=plate or None,
            vehicle=vehicle,
            advice=advice,
            sources=sources,
        )
        return json.dumps({"saved": True, "id": valuation_id})
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return _log_and_return_tool_error(
            tool_name="save_valuation",
            exc=exc,
            user_message="I could not save this valuation right now.",
        )


@mcp.tool()
def import_sales_history(sales: list[dict]) -> str:
    """Add or update historical sales used for internal comparables.

    Each dict needs a ``brand`` and should carry ``id``, ``model``,
    ``purchase_price``, ``selling_price``, ``purchase_date``, ``sold_date``
    and ``status`` (``sold_b2b``, ``sold_b2c`` or ``delivered``).
    """
    try:
        for i, sale in enumerate(sales):
            if not isinstance(sale, dict):
                raise ValueError(f"Error: sale at index {i} must be a dict.")
            if not str(sale.get("brand") or "").strip():
                raise ValueError(f"Error: sale at index {i} is missing a brand.")
        store = get_store()
        upserted = store.upsert_sales(sales)
        return json.dumps({"upserted": upserted, "total": store.count_sales()})
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return _log_and_return_tool_error(
            tool_name="import_sales_history",
            exc=exc,
            user_message=(
                "I am having trouble saving that sales history right now. "
                "Please try again in a moment."
            ),
        )


@mcp.tool()
def list_saved_valuations(limit: int = 20) -> str:
    """List saved valuations, newest first."""
    try:
        limit = max(1, min(limit, 200))
        entries = get_store().list_valuations(limit=limit)
        return json.dumps({"count": len(entries), "valuations": entries}, indent=2, default=str)
    except Exception as exc:
        return _log_and_return_tool_error(
            tool_name="list_saved_valuations",
            exc=exc,
            user_message="I could not load saved valuations right now.",
        )


if __name__ == "__main__":
    mcp.run()
