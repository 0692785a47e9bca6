"""Shared helpers for CIP-routed structured calls."""

from __future__ import annotations

import json
from typing import Any

from cip_protocol import CIP, RunPolicy

# Structured scaffolds must come back as bare JSON, so no disclaimer footer.
JSON_POLICY = RunPolicy(skip_disclaimers=True, temperature=0.1, source="structured_json")


def build_raw_response(tool_name: str, data: Any) -> str:
    payload = {
        "_raw": True,
        "_tool": tool_name,
        "_meta": {"schema_version": 1},
        "data": data,
    }
    return json.dumps(payload, indent=2, default=str)


async def run_structured_scaffold(
    cip: CIP,
    *,
    user_input: str,
    tool_name: str,
    data_context: dict[str, Any],
    scaffold_id: str,
) -> str:
    """Run *scaffold_id* and return the model's raw text reply."""
    result = await cip.run(
        user_input,
        tool_name=tool_name,
        data_context=data_context,
        scaffold_id=scaffold_id,
        policy=JSON_POLICY,
    )
    return result.response.content
