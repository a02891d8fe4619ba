"""
Service layer exceptions.

Marketplace failures are split by what the caller must do about them:

- NotFoundError: the resource is absent (yet). Recorded as absence, never retried here.
- RateLimitedError: back off for ``retry_after`` seconds.
- UnauthorizedError: the account token is unusable, the account needs reconnecting.
- TransientError: network/5xx, retried once by the client before surfacing.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class MarketplaceError(ServiceError):
    """A marketplace API call failed."""

    kind = "error"

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
        account_id: str | None = None,
    ):
        self.status_code = status_code
        self.account_id = account_id
        super().__init__(message, service_id=service_id)


class NotFoundError(MarketplaceError):
    """Resource does not exist (or does not exist yet)."""

    kind = "not_found"


class RateLimitedError(MarketplaceError):
    """Rate limit exceeded."""

    kind = "rate_limited"

    def __init__(
        self,
        service_id: str,
        retry_after: float,
        account_id: str | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for service '{service_id}', "
            f"retry after {retry_after:.1f}s",
            service_id=service_id,
            status_code=429,
            account_id=account_id,
        )


class UnauthorizedError(MarketplaceError):
    """Access token rejected; the account connection must be renewed."""

    kind = "unauthorized"


class TransientError(MarketplaceError):
    """Network failure, timeout or upstream 5xx."""

    kind = "transient"


class CacheError(ServiceError):
    """Cache operation failed."""

    pass


class CacheUnavailableError(CacheError):
    """The durable server cache store cannot be reached."""

    pass


class RequestSupersededError(ServiceError):
    """A newer request on the same channel replaced this one."""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Request on channel '{channel}' was superseded")
