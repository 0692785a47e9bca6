"""CIP DomainConfig for the vehicle_appraisal domain."""

from cip_protocol import DomainConfig

APPRAISAL_DOMAIN_CONFIG = DomainConfig(
    name="vehicle_appraisal",
    display_name="AppraisalCIP Vehicle Acquisition",
    system_prompt=(
        "You are a specialist analyst within a multi-agent system for a used-vehicle "
        "trading business. Your output is consumed by software, not read directly by a "
        "person: when the scaffold asks for JSON, reply with the JSON document only, "
        "with no preamble, no markdown and no commentary. "
        "You are an expert in the Dutch used-car market. You reason from the data "
        "provided, never invent prices or listings, and state uncertainty plainly "
        "when the data is thin."
    ),
    default_scaffold_id="acquisition_advice",
    data_context_label="Valuation Data",
    prohibited_indicators={
        "financial_guarantees": (
            "guaranteed profit",
            "guaranteed resale value",
            "you will definitely make money",
            "risk-free purchase",
        ),
        "legal_advice": (
            "legally you must",
            "your legal rights are",
        ),
        "mechanical_diagnosis": (
            "this engine will last",
            "i guarantee no mechanical issues",
        ),
    },
    regex_guardrail_policies={
        "margin_promises": (
            r"(?i)(?:guarantee[sd]?|promise[sd]?)\s+(?:a\s+)?(?:profit|margin)\s+of\s+\d"
        ),
    },
    redaction_message="[Removed: contains prohibited valuation claims]",
)
