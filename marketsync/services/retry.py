"""
RetryPolicy - one retry/backoff policy for every marketplace call, keyed by error kind.

Defaults:
- TransientError: one immediate retry with jitter
- RateLimitedError: surfaced at once, the caller backs off using ``retry_after``
- NotFoundError / UnauthorizedError: never retried
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from marketsync.services.errors import (
    MarketplaceError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from marketsync.settings import global_settings

T = TypeVar("T")


@dataclass(frozen=True)
class RetryRule:
    """How often and how patiently to retry one kind of failure."""

    attempts: int = 0  # Extra attempts after the first call
    base_delay: float = 0.0  # Seconds, doubled on each further attempt
    jitter: float = 0.0  # Upper bound of the random delay added to each wait
    honor_retry_after: bool = False


NO_RETRY = RetryRule()


class RetryPolicy:
    """
    Retry policy parameterized by error kind.

    Usage:
        policy = RetryPolicy.default()
        payload = await policy.run(lambda: client.get(url), description=url)
    """

    def __init__(
        self,
        rules: dict[type[MarketplaceError], RetryRule] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._rules = dict(rules or {})
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def default(
        cls,
        transient_attempts: int | None = None,
        transient_jitter: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "RetryPolicy":
        attempts = (
            transient_attempts
            if transient_attempts is not None
            else global_settings.transient_retry_attempts
        )
        jitter = (
            transient_jitter
            if transient_jitter is not None
            else global_settings.transient_retry_jitter
        )
        return cls(
            rules={
                TransientError: RetryRule(attempts=attempts, jitter=jitter),
                RateLimitedError: NO_RETRY,
                NotFoundError: NO_RETRY,
                UnauthorizedError: NO_RETRY,
            },
            sleep=sleep,
        )

    def rule_for(self, error: MarketplaceError) -> RetryRule:
        """Most specific rule registered for the error's class."""
        for klass in type(error).__mro__:
            if klass in self._rules:
                return self._rules[klass]
        return NO_RETRY

    def delay_for(self, error: MarketplaceError, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        rule = self.rule_for(error)
        if rule.honor_retry_after and isinstance(error, RateLimitedError):
            base = error.retry_after
        else:
            base = rule.base_delay * (2 ** (attempt - 1))
        if rule.jitter > 0:
            base += self._rng.uniform(0, rule.jitter)
        return base

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "",
    ) -> T:
        """
        Call ``operation`` until it succeeds or its failure exhausts the rule.

        Only MarketplaceError is considered; anything else propagates untouched.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except MarketplaceError as e:
                rule = self.rule_for(e)
                if attempt >= rule.attempts:
                    raise
                attempt += 1
                delay = self.delay_for(e, attempt)
                logger.debug(
                    f"Retrying {description or 'marketplace call'} after {e.kind} "
                    f"(attempt {attempt}/{rule.attempts}, wait {delay:.2f}s)"
                )
                await self._sleep(delay)
