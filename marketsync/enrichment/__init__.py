"""
Enrichment - merge a base resource with its related marketplace resources.
"""

from marketsync.enrichment.types import (
    AccountCredentials,
    DateRange,
    EnrichedRecord,
    EnrichmentKey,
    Keyset,
    ResourceType,
)
from marketsync.enrichment.relations import RELATION_PLANS, RelationSpec
from marketsync.enrichment.merger import EnrichmentMerger
from marketsync.enrichment.insights import ClaimInsights, analyze_missing_data

__all__ = [
    "AccountCredentials",
    "DateRange",
    "EnrichedRecord",
    "EnrichmentKey",
    "Keyset",
    "ResourceType",
    "RELATION_PLANS",
    "RelationSpec",
    "EnrichmentMerger",
    "ClaimInsights",
    "analyze_missing_data",
]
