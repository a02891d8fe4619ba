"""
AccountGate - stops calls for a marketplace account that cannot currently succeed.

States:
- CONNECTED: Normal operation, requests pass through
- COOLING_DOWN: The marketplace rate-limited the account, requests fail fast
- NEEDS_RECONNECT: The token was rejected, requests with that token fail fast

Transitions:
- CONNECTED → COOLING_DOWN: On a 429 response (for retry_after seconds)
- COOLING_DOWN → CONNECTED: After the cooldown expires
- any → NEEDS_RECONNECT: On a 401/403 response
- NEEDS_RECONNECT → CONNECTED: When a different token is presented, or on reset
"""

import hashlib
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from loguru import logger

from marketsync.services.errors import RateLimitedError, UnauthorizedError
from marketsync.utils import Clock, utc_now


class AccountState(str, Enum):
    """Connection states of a marketplace account."""

    CONNECTED = "CONNECTED"
    COOLING_DOWN = "COOLING_DOWN"
    NEEDS_RECONNECT = "NEEDS_RECONNECT"


def token_fingerprint(token: str) -> str:
    """Short stable digest so raw tokens are never kept or logged."""
    return hashlib.sha256(token.encode()).hexdigest()[:16]


class AccountGate:
    """
    Gate for a single marketplace account.

    Usage:
        gate = AccountGate("acc-1")
        gate.check(token)  # raises RateLimitedError / UnauthorizedError

        try:
            result = await make_request()
            gate.record_success()
        except RateLimitedError as e:
            gate.record_rate_limited(e.retry_after)
            raise
    """

    def __init__(self, account_id: str, service_id: str = "marketplace", clock: Clock = utc_now):
        self.account_id = account_id
        self.service_id = service_id
        self._clock = clock

        self._state = AccountState.CONNECTED
        self._cooldown_until: datetime | None = None
        self._rejected_token: str | None = None
        self._rate_limit_count = 0
        self._last_success: datetime | None = None

    @property
    def state(self) -> AccountState:
        """Get current state, checking for cooldown expiry."""
        if self._state == AccountState.COOLING_DOWN:
            if self._cooldown_until and self._clock() >= self._cooldown_until:
                self._state = AccountState.CONNECTED
                self._cooldown_until = None
                logger.info(f"Account '{self.account_id}' cooldown finished")
        return self._state

    def check(self, token: str) -> None:
        """Raise if a request for this account would certainly fail."""
        current_state = self.state

        if current_state == AccountState.NEEDS_RECONNECT:
            if token_fingerprint(token) != self._rejected_token:
                logger.info(
                    f"Account '{self.account_id}' presented a new token, reconnecting"
                )
                self.reset()
                return
            raise UnauthorizedError(
                f"Account '{self.account_id}' needs to be reconnected",
                service_id=self.service_id,
                status_code=401,
                account_id=self.account_id,
            )

        if current_state == AccountState.COOLING_DOWN:
            raise RateLimitedError(
                self.service_id,
                retry_after=self.get_time_until_ready() or 0.0,
                account_id=self.account_id,
            )

    def record_success(self) -> None:
        """Record a successful request."""
        self._last_success = self._clock()

    def record_rate_limited(self, retry_after: float) -> None:
        """Start (or extend) a cooldown window."""
        self._rate_limit_count += 1
        until = self._clock() + timedelta(seconds=retry_after)
        if self._cooldown_until is None or until > self._cooldown_until:
            self._cooldown_until = until
        if self._state != AccountState.NEEDS_RECONNECT:
            self._state = AccountState.COOLING_DOWN
        logger.warning(
            f"Account '{self.account_id}' rate limited, cooling down for {retry_after:.1f}s"
        )

    def record_unauthorized(self, token: str) -> None:
        """Mark the token as rejected."""
        self._state = AccountState.NEEDS_RECONNECT
        self._rejected_token = token_fingerprint(token)
        self._cooldown_until = None
        logger.warning(f"Account '{self.account_id}' needs reconnect (token rejected)")

    def reset(self) -> None:
        """Manually reset the gate."""
        self._state = AccountState.CONNECTED
        self._cooldown_until = None
        self._rejected_token = None

    def get_time_until_ready(self) -> float | None:
        """Get seconds until the cooldown ends."""
        if self._state != AccountState.COOLING_DOWN or not self._cooldown_until:
            return None
        remaining = (self._cooldown_until - self._clock()).total_seconds()
        return max(0.0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "account_id": self.account_id,
            "state": self.state.value,
            "rate_limit_count": self._rate_limit_count,
            "cooldown_until": (
                self._cooldown_until.isoformat() if self._cooldown_until else None
            ),
            "last_success": (
                self._last_success.isoformat() if self._last_success else None
            ),
            "time_until_ready": self.get_time_until_ready(),
        }


class AccountGateRegistry:
    """
    Registry for managing the gates of all accounts.

    Usage:
        registry = AccountGateRegistry()
        gate = registry.get("acc-1")
    """

    def __init__(self, service_id: str = "marketplace", clock: Clock = utc_now):
        self._gates: dict[str, AccountGate] = {}
        self._service_id = service_id
        self._clock = clock

    def get(self, account_id: str) -> AccountGate:
        """Get or create the gate for an account."""
        if account_id not in self._gates:
            self._gates[account_id] = AccountGate(
                account_id, service_id=self._service_id, clock=self._clock
            )
        return self._gates[account_id]

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all gates."""
        return {account_id: gate.get_status() for account_id, gate in self._gates.items()}

    def reset(self, account_id: str) -> bool:
        """Reset a specific gate."""
        if account_id in self._gates:
            self._gates[account_id].reset()
            return True
        return False

    def get_accounts_needing_reconnect(self) -> list[str]:
        """Accounts whose token was rejected."""
        return [
            account_id
            for account_id, gate in self._gates.items()
            if gate.state == AccountState.NEEDS_RECONNECT
        ]
