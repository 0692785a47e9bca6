"""Scaffold validation, routing, and content tests."""

from __future__ import annotations

from pathlib import Path

import pytest
from cip_protocol import CIP
from cip_protocol.llm.providers.mock import MockProvider
from cip_protocol.scaffold.loader import load_scaffold_directory
from cip_protocol.scaffold.registry import ScaffoldRegistry
from cip_protocol.scaffold.validator import validate_scaffold_directory

from appraisal_mcp.config import APPRAISAL_DOMAIN_CONFIG

SCAFFOLD_DIR = str(Path(__file__).resolve().parent.parent / "appraisal_mcp" / "scaffolds")


@pytest.fixture()
def registry() -> ScaffoldRegistry:
    reg = ScaffoldRegistry()
    load_scaffold_directory(SCAFFOLD_DIR, reg)
    return reg


class TestScaffoldValidation:
    def test_all_scaffolds_valid(self):
        count, errors = validate_scaffold_directory(SCAFFOLD_DIR)
        assert count == 3
        assert len(errors) == 0

    def test_all_ids_unique(self, registry: ScaffoldRegistry):
        ids = [s.id for s in registry.all()]
        assert len(ids) == len(set(ids))

    def test_all_domain_vehicle_appraisal(self, registry: ScaffoldRegistry):
        for scaffold in registry.all():
            assert scaffold.domain == "vehicle_appraisal"

    def test_default_scaffold_exists(self, registry: ScaffoldRegistry):
        assert registry.get(APPRAISAL_DOMAIN_CONFIG.default_scaffold_id) is not None


class TestScaffoldRouting:
    """Verify that each tool name routes to its expected scaffold."""

    @pytest.mark.parametrize(
        "tool_name,expected_scaffold_id",
        [
            ("parse_vehicle_descriptions", "vehicle_description_parser"),
            ("search_portal_listings", "portal_listing_search"),
            ("synthesize_acquisition_advice", "acquisition_advice"),
        ],
    )
    def test_tool_routes_to_scaffold(
        self, registry: ScaffoldRegistry, tool_name: str, expected_scaffold_id: str
    ):
        matches = registry.find_by_tool(tool_name)
        assert len(matches) >= 1, f"No scaffold found for tool '{tool_name}'"
        assert matches[0].id == expected_scaffold_id

    def test_unknown_tool_not_found(self, registry: ScaffoldRegistry):
        assert len(registry.find_by_tool("nonexistent_tool")) == 0

    async def test_explicit_scaffold_selectable_by_id(self):
        cip = CIP.from_config(APPRAISAL_DOMAIN_CONFIG, SCAFFOLD_DIR, MockProvider("{}"))
        result = await cip.run(
            "Give purchase advice for a Volkswagen Golf 2020.",
            tool_name="synthesize_acquisition_advice",
            data_context={"baseline": {}},
            scaffold_id="acquisition_advice",
        )
        assert result.scaffold_id == "acquisition_advice"


class TestScaffoldContent:
    """Verify scaffold content quality."""

    def test_all_have_disclaimers(self, registry: ScaffoldRegistry):
        for scaffold in registry.all():
            assert len(scaffold.guardrails.disclaimers) >= 1, (
                f"Scaffold '{scaffold.id}' missing disclaimers"
            )

    def test_all_have_reasoning_steps(self, registry: ScaffoldRegistry):
        for scaffold in registry.all():
            steps = scaffold.reasoning_framework.get("steps", [])
            assert len(steps) >= 1, f"Scaffold '{scaffold.id}' missing reasoning steps"

    def test_advice_has_prohibited_actions(self, registry: ScaffoldRegistry):
        scaffold = registry.get("acquisition_advice")
        assert len(scaffold.guardrails.prohibited_actions) >= 2
