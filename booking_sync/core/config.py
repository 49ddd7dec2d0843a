"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # EHR / practice-management system of record
    EHR_API_BASE_URL: str = "https://intakeq.com/api/v1"
    EHR_API_KEY: str = ""
    EHR_TIMEOUT_SECONDS: float = 30.0  # Per HTTP request
    EHR_SYNC_TIMEOUT_SECONDS: float = 120.0  # Whole sync step for one appointment
    EHR_SYNC_ON_BOOKING: bool = True  # False leaves every booking to reconciliation

    # Retry policy for EHR calls
    EHR_MAX_ATTEMPTS: int = 3
    EHR_BACKOFF_BASE_SECONDS: float = 0.5
    EHR_BACKOFF_MAX_SECONDS: float = 8.0
    EHR_RATE_LIMIT_COOLDOWN_SECONDS: float = 10.0  # Used when Retry-After is missing
    EHR_RATE_LIMIT_MAX_COOLDOWN_SECONDS: float = 60.0

    # Reconciliation of pending external sync
    RECONCILE_BATCH_SIZE: int = 25
    RECONCILE_GRACE_SECONDS: int = 120
    RECONCILE_LEASE_SECONDS: int = 300
    RECONCILE_MAX_ATTEMPTS: int = 10
    WORKER_POLL_INTERVAL: int = 60

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Tracing (optional)
    OTEL_ENABLED: bool = False
    OTEL_SERVICE_NAME: str = "booking-sync"
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_EXPORTER_OTLP_HEADERS: str = ""
    OTEL_SAMPLE_RATE: float = 0.1

    # Rate Limiting
    RATE_LIMIT_BOOKING: str = "10/minute"
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    RATE_LIMIT_ENABLED: bool = True

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    @property
    def is_production(self) -> bool:
        return self.ENV in ("prod", "production")


settings = Settings()
