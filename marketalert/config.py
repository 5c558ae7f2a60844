# marketalert/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Runtime ---
    ENV: str = "dev"  # dev|prod
    MARKETALERT_DB_URL: str = "sqlite+aiosqlite:///./marketalert.db"

    # --- Minimal B2B Auth (API key) ---
    # Send: X-API-Key: <key>
    API_KEY: str | None = None

    # --- Listings provider ---
    # Institutions may override with config.use_mock_listings
    USE_MOCK_LISTINGS: bool = True
    RENTCAST_API_KEY: str | None = None
    RENTCAST_BASE_URL: str = "https://api.rentcast.io/v1"
    RENTCAST_PAGE_SIZE: int = 500  # RentCast caps limit at 500
    MOCK_LISTINGS_PER_GEO: int = 25
    MOCK_LISTINGS_FIXTURES_DIR: str = "data/mock_listings"

    # --- Listing calls: timeout / retry ---
    LISTING_TIMEOUT_S: float = 30.0
    LISTING_RETRY_MAX_ATTEMPTS: int = 3
    LISTING_RETRY_BACKOFF_S: float = 2.0
    LISTING_RETRY_BACKOFF_CAP_S: float = 30.0

    # --- Scan tuning ---
    SCAN_MAX_CONCURRENCY: int = 4
    SCAN_BATCH_MAX_ADDRESSES: int = 50
    SCAN_ADDRESS_PAGE_SIZE: int = 200
    SCAN_RATE_LIMIT_DELAY_MS: int = 1000
    SCAN_LISTING_DAYS_BACK: int = 30
    SCAN_CLAIM_STALE_MINUTES: int = 240
    SCAN_DISPATCH_CONCURRENCY: int = 10

    # --- Webhook circuit breaker (one per institution+channel) ---
    CB_FAILURE_THRESHOLD: int = 5
    CB_OPEN_SECONDS: int = 30
    CB_HALF_OPEN_TRIALS: int = 1

    # --- Notifications ---
    WEBHOOK_MAX_ATTEMPTS: int = 3
    WEBHOOK_TIMEOUT_S: float = 30.0
    WEBHOOK_BACKOFF_S: float = 1.0
    WEBHOOK_BACKOFF_CAP_S: float = 30.0
    WEBHOOK_USER_AGENT: str = "MemberPropertyAlert/1.0"

    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_FROM: str = "alerts@memberpropertyalert.local"

    CSV_OUTPUT_DIR: str = "data/csv_exports"

    # --- Scheduler tuning ---
    SCHED_TICK_SECONDS: int = 60
    SCHED_FLUSH_INTERVAL_SECONDS: int = 60


settings = Settings()
