"""Sync tools package."""

from bankfeed.tools.sync.enrichment import (
    EnrichmentError,
    EnrichmentFetcher,
    EnrichmentResult,
)
from bankfeed.tools.sync.sync_tool import (
    PagedSyncOutcome,
    ProductSyncResult,
    SyncError,
    SyncStage,
    SyncSummary,
    SyncTool,
)

__all__ = [
    # Sync tool
    "SyncTool",
    "SyncSummary",
    "ProductSyncResult",
    "PagedSyncOutcome",
    "SyncError",
    "SyncStage",
    # Enrichment
    "EnrichmentFetcher",
    "EnrichmentResult",
    "EnrichmentError",
]
