from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SEFDISPATCH_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=7920, description="Bind port")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///sefdispatch_dev.db")
    TEST_DATABASE_URL: str = Field(default="sqlite:///:memory:")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: use Alembic only (prod)",
    )

    # Job queue
    JOB_MAX_ATTEMPTS_DEFAULT: int = Field(
        default=3, description="Attempt budget for invoice submission jobs"
    )
    JOB_MAX_ATTEMPTS_WEBHOOK: int = Field(
        default=5, description="Attempt budget for webhook processing jobs"
    )
    JOB_BACKOFF_BASE_SECONDS: float = Field(
        default=2.0, description="First retry delay; doubles on every attempt"
    )
    JOB_STALE_TIMEOUT_SECONDS: int = Field(
        default=600, description="Active jobs older than this are requeued (0 disables)"
    )
    JOB_KEEP_COMPLETED: int = Field(
        default=100, description="Completed jobs retained per job type"
    )
    JOB_KEEP_FAILED: int = Field(
        default=500, description="Failed jobs retained per job type"
    )
    JOB_CONCURRENCY_SUBMIT: int = Field(default=2)
    JOB_CONCURRENCY_WEBHOOK: int = Field(default=4)
    JOB_POLL_INTERVAL_SECONDS: float = Field(default=2.0)
    EMBEDDED_WORKERS: bool = Field(
        default=False, description="Run queue workers and the cron scheduler inside the API process"
    )

    # Quiet hours (local wall-clock hours, end exclusive)
    QUIET_HOURS_START: int = Field(default=1, ge=0, le=23)
    QUIET_HOURS_END: int = Field(default=6, ge=0, le=23)
    QUIET_HOURS_TZ: str = Field(default="Europe/Belgrade")

    # Maintenance sweeps (crontab expressions)
    RETRY_SWEEP_CRON: str = Field(default="*/15 * * * *")
    RETRY_SWEEP_BATCH: int = Field(default=50)
    DEAD_LETTER_CRON: str = Field(default="0 * * * *")
    CLEANUP_JOBS_CRON: str = Field(default="0 3 * * *")
    CLEANUP_WEBHOOKS_CRON: str = Field(default="0 2 * * *")
    METRICS_CRON: str = Field(default="* * * * *")
    RECURRING_CRON: str = Field(default="30 6 * * *")
    SCHEDULER_TZ: str = Field(default="Europe/Belgrade", description="Timezone cron expressions run in")
    JOB_RETENTION_DAYS: int = Field(default=30)
    WEBHOOK_RETENTION_DAYS: int = Field(default=60)

    # Authority
    AUTHORITY_DEMO_URL: str = Field(default="https://demoefaktura.mfin.gov.rs")
    AUTHORITY_PRODUCTION_URL: str = Field(default="https://efaktura.mfin.gov.rs")
    AUTHORITY_TIMEOUT_SECONDS: float = Field(default=30.0)

    # Inbound webhooks
    WEBHOOK_SECRET: str = Field(
        default="", description="HMAC secret; empty disables signature checks"
    )
    WEBHOOK_MAX_SKEW_SECONDS: int = Field(default=300)

    # Recurring invoices
    RECURRING_DEFAULT_PAYMENT_TERMS_DAYS: int = Field(default=15)
    RECURRING_DEFAULT_TAX_RATE: str = Field(default="20")
    RECURRING_CURRENCY: str = Field(default="RSD")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
