# rxflow/core/config.py
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "local"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Security
    secret_key: str = "changeme"  # override in .env
    access_token_expire_minutes: int = 60

    # Database
    database_url: str

    # Redis
    redis_url: str | None = None

    # Idempotency ledger
    idempotency_retention_hours: int = 72
    # How long a same-key retry waits for an in-flight first call
    idempotency_wait_seconds: float = 10.0

    # Payment webhooks
    payment_webhook_secret: str = "changeme-webhook"

    # Pharmacy submission
    pharmacy_api_url: str | None = None
    pharmacy_api_key: str | None = None
    external_call_timeout_seconds: float = 10.0
    external_call_max_retries: int = 2

    # Batch jobs
    dead_letter_max_attempts: int = 5
    job_max_workers: int = 4

    # Pydantic v2 style config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings instance so the .env is parsed once.
    """
    return Settings()
