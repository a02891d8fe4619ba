"""
Service layer - resilient access to the marketplace API and the client cache tiers.

Provides:
- MarketplaceClient: endpoint fallbacks, retry policy, per-account gate and in-flight cap
- RetryPolicy: retry/backoff parameterized by error kind
- AccountGateRegistry: rate-limit cooldowns and reconnect marks per account
- RequestDeduplicator: single-flight execution of identical concurrent work
- ClientCache: memory and persistent tiers keyed by Keyset
"""

from marketsync.services.errors import (
    ServiceError,
    MarketplaceError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    TransientError,
    CacheError,
    CacheUnavailableError,
    RequestSupersededError,
)
from marketsync.services.cache import (
    CacheEntry,
    CacheTier,
    ClientCache,
    MemoryTier,
    PersistentTier,
)
from marketsync.services.account_gate import (
    AccountGate,
    AccountGateRegistry,
    AccountState,
)
from marketsync.services.retry import RetryPolicy, RetryRule
from marketsync.services.deduplicator import RequestDeduplicator
from marketsync.services.client import MarketplaceClient

__all__ = [
    # Errors
    "ServiceError",
    "MarketplaceError",
    "NotFoundError",
    "RateLimitedError",
    "UnauthorizedError",
    "TransientError",
    "CacheError",
    "CacheUnavailableError",
    "RequestSupersededError",
    # Cache
    "CacheEntry",
    "CacheTier",
    "ClientCache",
    "MemoryTier",
    "PersistentTier",
    # Account gate
    "AccountGate",
    "AccountGateRegistry",
    "AccountState",
    # Retry
    "RetryPolicy",
    "RetryRule",
    # Deduplicator
    "RequestDeduplicator",
    # Client
    "MarketplaceClient",
]
