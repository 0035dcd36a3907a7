from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./salon_rewards.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "salon-rewards-default"

    # Square credentials
    square_access_token: str = ""
    square_environment: Literal["production", "sandbox"] = "production"
    square_api_base_url: str | None = None
    square_api_version: str = "2024-10-17"
    square_timeout_seconds: float = 15.0
    square_location_id: str = ""
    square_webhook_signature_key: str = ""
    square_webhook_notification_url: str | None = None
    square_referral_code_attribute_key: str = "square:a3dde506-f69e-48e4-a98a-004c1822d3ad"
    enable_signature_debug: bool = False

    # Referral program
    referral_reward_amount_cents: int = 1000
    referral_currency: str = "USD"
    referral_base_url: str = "http://localhost:3000/ref"
    referral_code_max_attempts: int = 10
    referral_profile_conflict_retries: int = 3
    booking_update_self_heal: bool = True
    default_organization_id: str | None = None

    # Run tracking
    run_tracker_availability_ttl_seconds: float = 60.0
    run_tracker_unavailable_ttl_seconds: float = 10.0

    # Webhook job queue
    webhook_job_queue_enabled: bool = True
    webhook_job_worker_enabled: bool = False
    webhook_job_poll_interval_seconds: int = 5
    webhook_job_batch_size: int = 10
    webhook_job_max_attempts: int = 5
    webhook_job_task_queue: str = "webhook-jobs"
    webhook_jobs_per_cron_run: int = 10
    cron_secret: str | None = None

    # Wallet pass polling
    pass_kit_poll_interval_seconds: float = 10.0
    pass_kit_poll_attempts: int = 30

    # Tracing
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Application log persistence
    application_log_enabled: bool = True

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None
    business_name: str = "Studio"
    admin_notification_emails: list[str] = Field(default_factory=list)

    @field_validator("admin_notification_emails", mode="before")
    @classmethod
    def _parse_recipient_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # SMS
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    referral_sms_enabled: bool = True

    @property
    def square_base_url(self) -> str:
        if self.square_api_base_url:
            return self.square_api_base_url.rstrip("/")
        if self.square_environment == "sandbox":
            return "https://connect.squareupsandbox.com"
        return "https://connect.squareup.com"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
