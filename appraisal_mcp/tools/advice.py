"""Acquisition advice synthesis.

A deterministic baseline is always computed from the three sources. When a
CIP instance is available and at least one price signal exists, the
``acquisition_advice`` scaffold may refine the selling price and the
narrative; the refined advice is then re-checked against the same
thresholds, so the model can only make the recommendation more cautious.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any

from cip_protocol import CIP

from appraisal_mcp.models import (
    MATCHED_BY_MODEL,
    RECOMMEND_BUY,
    RECOMMEND_NO_BUY,
    RECOMMEND_UNCERTAIN,
    RECOMMENDATIONS,
    InternalComparison,
    PortalAnalysis,
    PricingIndexResult,
    ValuationAdvice,
    VehicleAttributes,
)
from appraisal_mcp.normalization import parse_float, parse_int
from appraisal_mcp.tools.json_repair import extract_json_payload
from appraisal_mcp.tools.orchestration import run_structured_scaffold

logger = logging.getLogger(__name__)

SIGNAL_PORTAL = "portal"
SIGNAL_INDEX = "index"
SIGNAL_INTERNAL = "internal"

_CAUTION_RANK = {RECOMMEND_BUY: 0, RECOMMEND_UNCERTAIN: 1, RECOMMEND_NO_BUY: 2}
# Refined selling prices further than this from the baseline are ignored.
AI_PRICE_TOLERANCE = 0.15


@dataclass(frozen=True)
class AdviceThresholds:
    """Cut-offs between ``buy``, ``no-buy`` and ``uncertain``."""
    min_primary_listings: int = 3
    min_index_confidence: float = 0.6
    min_internal_rows: int = 2
    min_strong_signals: int = 2
    max_source_disagreement: float = 0.15
    min_apr: float = 0.4
    max_etr: int = 45
    default_margin: float = 18.0
    min_margin: float = 8.0
    max_margin: float = 30.0
    margin_step: float = 2.0
    slow_etr: int = 30
    fast_etr: int = 15
    default_days_to_sell: int = 21

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_THRESHOLDS = AdviceThresholds()


# ── Signals and prices ─────────────────────────────────────────────


def strong_signals(
    portal: PortalAnalysis | None,
    pricing: PricingIndexResult | None,
    internal: InternalComparison | None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> list[str]:
    signals: list[str] = []
    if portal is not None and portal.primary_count >= thresholds.min_primary_listings:
        signals.append(SIGNAL_PORTAL)
    if pricing is not None and pricing.confidence >= thresholds.min_index_confidence:
        signals.append(SIGNAL_INDEX)
    if (
        internal is not None
        and internal.match_level == MATCHED_BY_MODEL
        and internal.total_count >= thresholds.min_internal_rows
    ):
        signals.append(SIGNAL_INTERNAL)
    return signals


def reference_price(
    portal: PortalAnalysis | None,
    pricing: PricingIndexResult | None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> tuple[float, str | None]:
    """Market reference selling price and the source it came from."""
    if portal is not None and portal.primary_count >= thresholds.min_primary_listings:
        primary = [item.price for item in portal.primary_listings if math.isfinite(item.price)]
        lowest = min(primary) if primary else portal.lowest_price
        if lowest and math.isfinite(lowest):
            return float(lowest), "lowest primary comparable"
    if portal is not None and portal.median_price and math.isfinite(portal.median_price):
        return float(portal.median_price), "marketplace median"
    if pricing is not None and math.isfinite(pricing.total_value) and pricing.total_value > 0:
        return float(pricing.total_value), "pricing index"
    return 0.0, None


def target_margin(
    internal: InternalComparison | None,
    pricing: PricingIndexResult | None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> float:
    margin = internal.avg_margin if internal is not None else thresholds.default_margin
    etr = pricing.etr if pricing is not None else None
    if etr is not None:
        if etr > thresholds.slow_etr:
            margin += thresholds.margin_step
        elif etr < thresholds.fast_etr:
            margin -= thresholds.margin_step
    return round(max(thresholds.min_margin, min(thresholds.max_margin, margin)), 1)


def purchase_price(reference: float, margin: float) -> float:
    """Reference divided by (1 + margin), rounded down to whole hundreds."""
    if not math.isfinite(reference) or not math.isfinite(margin) or reference <= 0:
        return 0.0
    return float(math.floor(reference / (1 + margin / 100) / 100) * 100)


def expected_days_to_sell(
    pricing: PricingIndexResult | None,
    internal: InternalComparison | None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> int:
    if pricing is not None and pricing.etr:
        return int(pricing.etr)
    if internal is not None and not internal.is_empty:
        return internal.avg_days_to_sell_b2c
    return thresholds.default_days_to_sell


def source_disagreement(
    portal: PortalAnalysis | None,
    pricing: PricingIndexResult | None,
) -> float | None:
    """Relative gap between marketplace median and index total, if both exist."""
    if portal is None or not portal.median_price or pricing is None or pricing.total_value <= 0:
        return None
    return abs(portal.median_price - pricing.total_value) / pricing.total_value


def describe_index_deviation(
    reference: float,
    reference_source: str | None,
    pricing: PricingIndexResult | None,
) -> str | None:
    if pricing is None or pricing.total_value <= 0 or reference <= 0:
        return None
    if reference_source == "pricing index":
        return "Reference price taken directly from the pricing index."
    gap = (reference - pricing.total_value) / pricing.total_value * 100
    direction = "above" if gap >= 0 else "below"
    return (
        f"Reference price EUR {reference:,.0f} ({reference_source}) is {abs(gap):.1f}% "
        f"{direction} the index total value of EUR {pricing.total_value:,.0f}."
    )


# ── Decision ───────────────────────────────────────────────────────


def decide_recommendation(
    *,
    signals: list[str],
    reference: float,
    purchase: float,
    pricing: PricingIndexResult | None,
    disagreement: float | None,
    asking_price: float | None = None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> tuple[str, list[str]]:
    """Category plus the reasons that forced it away from ``buy``."""
    if reference <= 0:
        return RECOMMEND_UNCERTAIN, ["No concrete price signal is available"]
    reasons: list[str] = []
    if len(signals) < thresholds.min_strong_signals:
        reasons.append(
            f"Only {len(signals)} strong signal(s) ({', '.join(signals) or 'none'}); "
            f"at least {thresholds.min_strong_signals} required"
        )
    if disagreement is not None and disagreement > thresholds.max_source_disagreement:
        reasons.append(
            f"Marketplace and index disagree by {disagreement * 100:.0f}%"
        )
    if reasons:
        return RECOMMEND_UNCERTAIN, reasons

    if pricing is not None and pricing.apr is not None and pricing.apr < thresholds.min_apr:
        reasons.append(f"APR {pricing.apr:.2f} below {thresholds.min_apr:.2f}")
    if pricing is not None and pricing.etr is not None and pricing.etr > thresholds.max_etr:
        reasons.append(f"Expected time to retail {pricing.etr} days exceeds {thresholds.max_etr}")
    if asking_price is not None and asking_price > purchase:
        reasons.append(
            f"Asking price EUR {asking_price:,.0f} exceeds recommended purchase price "
            f"EUR {purchase:,.0f}"
        )
    if reasons:
        return RECOMMEND_NO_BUY, reasons
    return RECOMMEND_BUY, []


def _risks_and_opportunities(
    portal: PortalAnalysis | None,
    pricing: PricingIndexResult | None,
    internal: InternalComparison | None,
    thresholds: AdviceThresholds,
) -> tuple[list[str], list[str]]:
    risks: list[str] = []
    opportunities: list[str] = []
    if portal is None or portal.is_empty:
        risks.append("No marketplace comparables found")
    elif portal.primary_count < thresholds.min_primary_listings:
        risks.append(f"Only {portal.primary_count} primary comparable(s) on the marketplace")
    if portal is not None and portal.deviations:
        risks.append(f"{len(portal.deviations)} listing(s) excluded as logical deviations")
    if pricing is None:
        risks.append("Vehicle unknown to the pricing index")
    else:
        if pricing.etr is not None and pricing.etr > thresholds.slow_etr:
            risks.append(f"Slow expected sale ({pricing.etr} days)")
        elif pricing.etr is not None and pricing.etr < thresholds.fast_etr:
            opportunities.append(f"Fast expected sale ({pricing.etr} days)")
        if pricing.apr is not None and pricing.apr >= 0.7:
            opportunities.append(f"High APR ({pricing.apr:.2f}): strong demand")
    if internal is not None:
        if internal.widened:
            risks.append("Internal history only matched at brand level")
        elif internal.is_empty:
            risks.append("No internal sales history for this vehicle")
    return risks, opportunities


def build_baseline_advice(
    vehicle: VehicleAttributes,
    portal: PortalAnalysis | None,
    pricing: PricingIndexResult | None,
    internal: InternalComparison | None,
    *,
    asking_price: float | None = None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> ValuationAdvice:
    """Deterministic advice; any subset of sources may be ``None``."""
    signals = strong_signals(portal, pricing, internal, thresholds)
    reference, source = reference_price(portal, pricing, thresholds)
    margin = target_margin(internal, pricing, thresholds)
    purchase = purchase_price(reference, margin)
    disagreement = source_disagreement(portal, pricing)
    recommendation, reasons = decide_recommendation(
        signals=signals,
        reference=reference,
        purchase=purchase,
        pricing=pricing,
        disagreement=disagreement,
        asking_price=asking_price,
        thresholds=thresholds,
    )
    risks, opportunities = _risks_and_opportunities(portal, pricing, internal, thresholds)
    if asking_price is not None and purchase > 0 and asking_price <= purchase:
        opportunities.append(
            f"Asking price EUR {asking_price:,.0f} is at or below the recommended purchase price"
        )

    if reference > 0:
        reasoning = (
            f"{vehicle.label}: reference selling price EUR {reference:,.0f} from the {source}, "
            f"target margin {margin:.1f}% gives a purchase price of EUR {purchase:,.0f}."
        )
    else:
        reasoning = (
            f"{vehicle.label}: insufficient data. No marketplace comparables or index "
            f"valuation are available, so no purchase price can be derived."
        )
    if reasons:
        reasoning += " " + "; ".join(reasons) + "."

    return ValuationAdvice(
        recommended_selling_price=round(reference, 2),
        recommended_purchase_price=purchase,
        expected_days_to_sell=expected_days_to_sell(pricing, internal, thresholds),
        target_margin=margin,
        recommendation=recommendation,
        reasoning=reasoning,
        index_deviation=describe_index_deviation(reference, source, pricing),
        risk_factors=risks,
        opportunities=opportunities,
        primary_listings_used=portal.primary_count if portal is not None else 0,
        signals=signals,
        method="baseline",
    )


# ── Model refinement ───────────────────────────────────────────────


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(v).strip() for v in value if str(v).strip()]


def validate_model_advice(payload: Any) -> dict[str, Any] | None:
    """Accept only a JSON object with a known category and a numeric selling price."""
    if not isinstance(payload, dict):
        return None
    category = str(payload.get("recommendation") or "").strip().lower()
    if category not in RECOMMENDATIONS:
        return None
    selling = parse_float(payload.get("recommended_selling_price"))
    if selling is None or selling <= 0:
        return None
    return {
        "recommendation": category,
        "recommended_selling_price": selling,
        "target_margin": parse_float(payload.get("target_margin")),
        "expected_days_to_sell": parse_int(payload.get("expected_days_to_sell")),
        "reasoning": str(payload.get("reasoning") or "").strip(),
        "index_deviation": str(payload.get("index_deviation") or "").strip() or None,
        "risk_factors": _string_list(payload.get("risk_factors")),
        "opportunities": _string_list(payload.get("opportunities")),
    }


def merge_model_advice(
    baseline: ValuationAdvice,
    refined: dict[str, Any],
    *,
    pricing: PricingIndexResult | None,
    disagreement: float | None,
    asking_price: float | None = None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> ValuationAdvice:
    selling = baseline.recommended_selling_price
    proposed = refined["recommended_selling_price"]
    if abs(proposed - selling) <= selling * AI_PRICE_TOLERANCE:
        selling = round(proposed, 2)

    margin = baseline.target_margin
    if refined["target_margin"] is not None:
        margin = round(
            max(thresholds.min_margin, min(thresholds.max_margin, refined["target_margin"])), 1
        )
    purchase = purchase_price(selling, margin)

    category, _ = decide_recommendation(
        signals=baseline.signals,
        reference=selling,
        purchase=purchase,
        pricing=pricing,
        disagreement=disagreement,
        asking_price=asking_price,
        thresholds=thresholds,
    )
    if _CAUTION_RANK[refined["recommendation"]] > _CAUTION_RANK[category]:
        category = refined["recommendation"]

    return ValuationAdvice(
        recommended_selling_price=selling,
        recommended_purchase_price=purchase,
        expected_days_to_sell=refined["expected_days_to_sell"] or baseline.expected_days_to_sell,
        target_margin=margin,
        recommendation=category,
        reasoning=refined["reasoning"] or baseline.reasoning,
        index_deviation=refined["index_deviation"] or baseline.index_deviation,
        risk_factors=refined["risk_factors"] if refined["risk_factors"] is not None else baseline.risk_factors,
        opportunities=refined["opportunities"] if refined["opportunities"] is not None else baseline.opportunities,
        primary_listings_used=baseline.primary_listings_used,
        signals=baseline.signals,
        method="ai",
    )


def _advice_context(
    vehicle: VehicleAttributes,
    portal: PortalAnalysis | None,
    pricing: PricingIndexResult | None,
    internal: InternalComparison | None,
    baseline: ValuationAdvice,
    asking_price: float | None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> dict[str, Any]:
    context: dict[str, Any] = {
        "vehicle": vehicle.to_dict(),
        "baseline": baseline.to_dict(),
        "asking_price": asking_price,
        "thresholds": thresholds.to_dict(),
    }
    if portal is not None:
        context["marketplace"] = {
            "lowest_price": portal.lowest_price,
            "median_price": portal.median_price,
            "highest_price": portal.highest_price,
            "listing_count": portal.listing_count,
            "primary_count": portal.primary_count,
            "primary_listings": [
                {"price": item.price, "mileage": item.mileage, "build_year": item.build_year,
                 "title": item.title}
                for item in portal.primary_listings
            ],
            "note": portal.note,
        }
    if pricing is not None:
        context["pricing_index"] = pricing.to_dict()
    if internal is not None:
        summary = internal.to_dict()
        summary.pop("sales", None)
        context["internal_history"] = summary
    return context


async def synthesize_advice(
    cip: CIP | None,
    vehicle: VehicleAttributes,
    portal: PortalAnalysis | None,
    pricing: PricingIndexResult | None,
    internal: InternalComparison | None,
    *,
    asking_price: float | None = None,
    thresholds: AdviceThresholds = DEFAULT_THRESHOLDS,
) -> ValuationAdvice:
    """Always returns advice with a valid category; never raises on model failure."""
    baseline = build_baseline_advice(
        vehicle, portal, pricing, internal,
        asking_price=asking_price, thresholds=thresholds,
    )
    if cip is None or baseline.recommended_selling_price <= 0:
        return baseline

    try:
        reply = await run_structured_scaffold(
            cip,
            user_input=(
                f"Give purchase advice for a {vehicle.label} with {vehicle.mileage} km. "
                "Return a single JSON object."
            ),
            tool_name="synthesize_acquisition_advice",
            data_context=_advice_context(
                vehicle, portal, pricing, internal, baseline, asking_price, thresholds
            ),
            scaffold_id="acquisition_advice",
        )
    except Exception as exc:
        logger.warning("Advice synthesis unavailable for %s, using baseline: %s", vehicle.label, exc)
        return baseline

    refined = validate_model_advice(extract_json_payload(reply, expect="object"))
    if refined is None:
        logger.warning("Advice reply for %s was not valid JSON advice; using baseline", vehicle.label)
        return baseline

    return merge_model_advice(
        baseline,
        refined,
        pricing=pricing,
        disagreement=source_disagreement(portal, pricing),
        asking_price=asking_price,
        thresholds=thresholds,
    )
