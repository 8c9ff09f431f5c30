from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


class Settings(BaseSettings):
    """
    Main configuration for the Nimbus ingestion service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "Nimbus Ingestion"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    TESTING: bool = False

    @model_validator(mode='after')
    def validate_runtime_config(self) -> 'Settings':
        """Ensure critical production keys and worker limits are sane."""
        if self.TESTING:
            return self

        if self.is_production:
            if not self.ENCRYPTION_KEY or len(self.ENCRYPTION_KEY) < 32:
                raise ValueError("ENCRYPTION_KEY must be at least 32 characters in production.")
            if not self.KDF_SALT:
                raise ValueError("KDF_SALT environment variable must be set in production.")
            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(f"DB_SSL_MODE must be 'require', 'verify-ca', or 'verify-full' in production. Current: {self.DB_SSL_MODE}")

        if self.WORKER_CONCURRENCY < 1:
            raise ValueError("WORKER_CONCURRENCY must be at least 1.")
        if self.JOB_RATE_LIMIT_MAX < 1 or self.JOB_RATE_LIMIT_WINDOW_SECONDS <= 0:
            raise ValueError("JOB_RATE_LIMIT_MAX and JOB_RATE_LIMIT_WINDOW_SECONDS must be positive.")

        return self

    # AWS Credentials (platform defaults, per-account credentials live on CloudAccount)
    AWS_DEFAULT_REGION: str = "us-east-1"
    AWS_ENDPOINT_URL: Optional[str] = None  # MotoServer/LocalStack
    AWS_CE_REQUESTS_PER_SECOND: float = 5.0

    # GCP billing export fallback when an account does not name its table
    GCP_BILLING_EXPORT_TABLE: Optional[str] = None

    # OpenCost
    OPENCOST_AGGREGATE: str = "namespace"

    # Database
    DATABASE_URL: str
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Encryption (stored cloud credentials)
    ENCRYPTION_KEY: Optional[str] = None
    LEGACY_ENCRYPTION_KEYS: list[str] = []
    KDF_SALT: str = ""
    KDF_ITERATIONS: int = 100000

    # Worker pool
    WORKER_CONCURRENCY: int = 3
    WORKER_POLL_INTERVAL_SECONDS: float = 5.0
    WORKER_SHUTDOWN_TIMEOUT_SECONDS: float = 60.0
    JOB_RATE_LIMIT_MAX: int = 10
    JOB_RATE_LIMIT_WINDOW_SECONDS: float = 60.0

    # Job queue
    JOB_MAX_ATTEMPTS: int = 5
    JOB_BACKOFF_BASE_SECONDS: int = 60
    JOB_BACKOFF_MAX_SECONDS: int = 3600
    JOB_LOCK_TIMEOUT_MINUTES: int = 30

    # Ingestion
    INGESTION_BATCH_SIZE: int = 1000
    INGESTION_FETCH_TIMEOUT_SECONDS: float = 300.0
    INGESTION_JOB_TIMEOUT_SECONDS: int = 900
    INGESTION_LOOKBACK_DAYS: int = 3
    FETCH_CACHE_TTL_SECONDS: int = 900
    FETCH_CACHE_MAX_ENTRIES: int = 256

    # Scheduler
    SCHEDULER_HOUR: int = 2
    SCHEDULER_MINUTE: int = 0
    STALE_JOB_SWEEP_MINUTES: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings():
    """Returns a singleton instance of the application settings."""
    return Settings()
