import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # Marketplace API
    marketplace_base_url: str = Field(
        default="https://api.mercadolibre.com", alias="MARKETPLACE_BASE_URL"
    )
    marketplace_timeout: float = Field(default=30.0, alias="MARKETPLACE_TIMEOUT")
    rate_limit_default_retry_after: float = Field(
        default=60.0, alias="RATE_LIMIT_DEFAULT_RETRY_AFTER"
    )
    transient_retry_attempts: int = Field(default=1, alias="TRANSIENT_RETRY_ATTEMPTS")
    transient_retry_jitter: float = Field(default=0.5, alias="TRANSIENT_RETRY_JITTER")
    max_in_flight_per_account: int = Field(default=8, alias="MAX_IN_FLIGHT_PER_ACCOUNT")
    search_page_size: int = Field(default=50, alias="SEARCH_PAGE_SIZE")
    search_max_pages: int = Field(default=20, alias="SEARCH_MAX_PAGES")

    # Enrichment
    enrichment_concurrency: int = Field(default=5, alias="ENRICHMENT_CONCURRENCY")

    # Cache tiers
    freshness_threshold_minutes: float = Field(
        default=15, alias="FRESHNESS_THRESHOLD_MINUTES"
    )
    server_cache_ttl_hours: float = Field(default=24, alias="SERVER_CACHE_TTL_HOURS")
    memory_cache_ttl_minutes: float = Field(default=10, alias="MEMORY_CACHE_TTL_MINUTES")
    memory_cache_max_size: int = Field(default=100, alias="MEMORY_CACHE_MAX_SIZE")
    persistent_cache_ttl_minutes: float = Field(
        default=60, alias="PERSISTENT_CACHE_TTL_MINUTES"
    )
    persistent_cache_dir: str = Field(
        default=".marketsync_cache", alias="PERSISTENT_CACHE_DIR"
    )

    # Polling / background sync
    poll_interval_seconds: float = Field(default=60, alias="POLL_INTERVAL_SECONDS")
    poll_min_gap_seconds: float = Field(default=10, alias="POLL_MIN_GAP_SECONDS")
    poll_quiet_period_seconds: float = Field(
        default=5, alias="POLL_QUIET_PERIOD_SECONDS"
    )
    sync_interval_minutes: int = Field(default=10, alias="SYNC_INTERVAL_MINUTES")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./marketsync.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Account tokens (maintained by the connection service)
    tokens_file: str = Field(default="tokens.json", alias="MARKETPLACE_TOKENS_FILE")

    # HTTP surface
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_debug: bool = Field(default=False, alias="API_DEBUG")


global_settings = Settings.model_validate(dict(os.environ))
