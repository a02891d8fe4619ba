"""
Synchronization - cache resolution, the caller-facing gateway, polling and background sync.
"""

from marketsync.sync.resolver import CacheResolutionPolicy, CacheState, Resolution
from marketsync.sync.gateway import (
    AccountFailure,
    EnrichedBatch,
    Gateway,
    RequestRegistry,
)
from marketsync.sync.polling import (
    NewDataEvent,
    PollingLoop,
    TickOutcome,
    make_count_probe,
    make_watermark_probe,
)
from marketsync.sync.scheduler import SyncScheduler

__all__ = [
    "CacheResolutionPolicy",
    "CacheState",
    "Resolution",
    "AccountFailure",
    "EnrichedBatch",
    "Gateway",
    "RequestRegistry",
    "NewDataEvent",
    "PollingLoop",
    "TickOutcome",
    "make_count_probe",
    "make_watermark_probe",
    "SyncScheduler",
]
