"""
MarketplaceClient - async HTTP client for the marketplace API.

Combines:
- Endpoint catalog with versioned fallbacks
- RetryPolicy (one immediate jittered retry for transient failures)
- AccountGate (fail fast while rate limited or after a rejected token)
- Per-account in-flight cap
- RequestDeduplicator for identical concurrent GETs
"""

import asyncio
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from loguru import logger

from marketsync.datasource.endpoints import get_endpoint
from marketsync.services.account_gate import AccountGateRegistry, token_fingerprint
from marketsync.services.deduplicator import RequestDeduplicator
from marketsync.services.errors import (
    MarketplaceError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from marketsync.services.retry import RetryPolicy
from marketsync.settings import global_settings
from marketsync.utils import utc_now


class MarketplaceClient:
    """
    Read-only marketplace API client.

    The client never stores or renews tokens: every call receives the
    account's current access token and reports UnauthorizedError upward.

    Usage:
        client = MarketplaceClient()

        order = await client.fetch_resource(
            "order", "2000001234", token, account_id="acc-1"
        )

        page = await client.fetch_resource(
            "orders_search", None, token,
            account_id="acc-1",
            params={"seller": "123", "offset": 0, "limit": 50},
        )
    """

    SERVICE_ID = "marketplace"

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        gates: AccountGateRegistry | None = None,
        max_in_flight_per_account: int | None = None,
        default_retry_after: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        use_dedup: bool = True,
        debug: bool = False,
    ):
        self._base_url = (base_url or global_settings.marketplace_base_url).rstrip("/")
        self._timeout = timeout or global_settings.marketplace_timeout
        self._retry = retry_policy or RetryPolicy.default()
        self._gates = gates or AccountGateRegistry(service_id=self.SERVICE_ID)
        self._max_in_flight = (
            max_in_flight_per_account or global_settings.max_in_flight_per_account
        )
        self._default_retry_after = (
            default_retry_after
            if default_retry_after is not None
            else global_settings.rate_limit_default_retry_after
        )
        self._transport = transport
        self._use_dedup = use_dedup
        self._debug = debug

        self._deduplicator = RequestDeduplicator(debug=debug)
        self._account_slots: dict[str, asyncio.Semaphore] = {}
        self._request_count = 0

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

    @property
    def gates(self) -> AccountGateRegistry:
        return self._gates

    @property
    def request_count(self) -> int:
        """HTTP requests actually sent (retries and fallbacks included)."""
        return self._request_count

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._http_client

    def _slots_for(self, account_key: str) -> asyncio.Semaphore:
        if account_key not in self._account_slots:
            self._account_slots[account_key] = asyncio.Semaphore(self._max_in_flight)
        return self._account_slots[account_key]

    async def fetch_resource(
        self,
        resource: str,
        resource_id: str | None,
        token: str,
        *,
        account_id: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """
        Fetch one marketplace resource.

        Args:
            resource: Endpoint name from the catalog (``order``, ``claim_messages``...)
            resource_id: Resource id substituted into the path (None for searches)
            token: Bearer access token of the account
            account_id: Account the token belongs to (gate and in-flight cap key)
            params: Query parameters

        Returns:
            Decoded JSON payload

        Raises:
            NotFoundError: Resource absent on every known path
            RateLimitedError: Upstream 429 or account cooling down
            UnauthorizedError: Token rejected
            TransientError: Network/5xx failure after the retry
            MarketplaceError: Any other non-success status
        """
        endpoint = get_endpoint(resource)
        account_key = account_id or f"token:{token_fingerprint(token)}"
        gate = self._gates.get(account_key)
        gate.check(token)

        paths = endpoint.paths(resource_id)
        for index, path in enumerate(paths):
            try:
                data = await self._fetch_path(path, params, token, account_key)
            except NotFoundError:
                if index + 1 < len(paths):
                    self._log(f"{endpoint.name}: 404 on {path}, trying fallback")
                    continue
                raise
            except RateLimitedError as e:
                gate.record_rate_limited(e.retry_after)
                raise
            except UnauthorizedError:
                gate.record_unauthorized(token)
                raise

            gate.record_success()
            if index > 0:
                logger.warning(
                    f"Endpoint '{endpoint.name}' answered on fallback {path}; "
                    f"primary {endpoint.primary} looks broken"
                )
            return data

        raise NotFoundError(
            f"No path for endpoint '{endpoint.name}'",
            service_id=self.SERVICE_ID,
            status_code=404,
            account_id=account_id,
        )

    async def _fetch_path(
        self,
        path: str,
        params: dict[str, Any] | None,
        token: str,
        account_key: str,
    ) -> Any:
        async def do_request() -> Any:
            return await self._retry.run(
                lambda: self._limited_request(path, params, token, account_key),
                description=path,
            )

        if not self._use_dedup:
            return await do_request()

        query = "&".join(f"{k}={v}" for k, v in sorted((params or {}).items()))
        dedup_key = f"{token_fingerprint(token)}:{path}?{query}"
        return await self._deduplicator.dedupe(dedup_key, do_request)

    async def _limited_request(
        self,
        path: str,
        params: dict[str, Any] | None,
        token: str,
        account_key: str,
    ) -> Any:
        async with self._slots_for(account_key):
            return await self._execute_request(path, params, token, account_key)

    async def _execute_request(
        self,
        path: str,
        params: dict[str, Any] | None,
        token: str,
        account_key: str,
    ) -> Any:
        """Execute the actual HTTP request and classify the outcome."""
        client = await self._get_http_client()
        self._request_count += 1

        try:
            response = await client.get(
                path,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise TransientError(
                f"Request to {path} timed out after {self._timeout}s",
                service_id=self.SERVICE_ID,
            ) from e
        except httpx.RequestError as e:
            raise TransientError(str(e) or type(e).__name__, service_id=self.SERVICE_ID) from e

        self._raise_for_status(response, path, account_key)

        try:
            return response.json()
        except ValueError as e:
            raise TransientError(
                f"Invalid JSON from {path}", service_id=self.SERVICE_ID
            ) from e

    def _raise_for_status(
        self, response: httpx.Response, path: str, account_key: str
    ) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = f"HTTP {status} on {path}: {response.text[:200]}"
        account_id = None if account_key.startswith("token:") else account_key

        if status == 404:
            raise NotFoundError(
                detail, service_id=self.SERVICE_ID, status_code=status, account_id=account_id
            )
        if status == 429:
            raise RateLimitedError(
                self.SERVICE_ID,
                retry_after=self._parse_retry_after(response),
                account_id=account_id,
            )
        if status in (401, 403):
            raise UnauthorizedError(
                detail, service_id=self.SERVICE_ID, status_code=status, account_id=account_id
            )
        if status >= 500 or status == 408:
            raise TransientError(
                detail, service_id=self.SERVICE_ID, status_code=status, account_id=account_id
            )
        raise MarketplaceError(
            detail, service_id=self.SERVICE_ID, status_code=status, account_id=account_id
        )

    def _parse_retry_after(self, response: httpx.Response) -> float:
        """Seconds from a Retry-After header (delta or HTTP date), else the default."""
        value = response.headers.get("Retry-After")
        if not value:
            return self._default_retry_after
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return self._default_retry_after
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc).replace(tzinfo=None)
        return max(0.0, (when - utc_now()).total_seconds())

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

        await self._deduplicator.cancel_all()
        logger.debug("MarketplaceClient closed")

    async def __aenter__(self) -> "MarketplaceClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of the client."""
        return {
            "requests_sent": self._request_count,
            "accounts": self._gates.get_all_status(),
            "needs_reconnect": self._gates.get_accounts_needing_reconnect(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
        }

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[MarketplaceClient] {message}")


# Global client instance
_global_client: MarketplaceClient | None = None


def get_marketplace_client() -> MarketplaceClient:
    """Get the global marketplace client instance."""
    global _global_client
    if _global_client is None:
        _global_client = MarketplaceClient()
    return _global_client


async def close_marketplace_client() -> None:
    """Close the global marketplace client."""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
