"""Shared external API clients."""

from appraisal_mcp.clients.jpcars import PricingIndexClient, fetch_index_valuation
from appraisal_mcp.clients.rdw import PlateResolution, RDWClient, resolve_plate

__all__ = [
    "PlateResolution",
    "PricingIndexClient",
    "RDWClient",
    "fetch_index_valuation",
    "resolve_plate",
]
