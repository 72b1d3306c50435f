"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # Comma-separated. Empty = default list in checkout.main.
    cors_origins: str = ""
    # Public base URL of this service; the gateway posts callbacks to {public_base_url}/payments/mobile/webhook
    public_base_url: str = "http://localhost:8000"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # MOBILE MONEY GATEWAY (ZenoPay)
    # ===========================================
    zenopay_base_url: str = "https://zenoapi.com/api/payments"
    zenopay_api_key: str = ""
    # Per-attempt timeout; a timed-out attempt counts as a rejection for that variant
    gateway_timeout_seconds: float = 30.0
    gateway_status_timeout_seconds: float = 20.0
    gateway_ok_statuses: str = "success,processing,pending,queued,initiated,created,ok"
    country_calling_code: str = "255"
    default_currency: str = "TZS"
    default_buyer_email: str = "no-reply@example.com"

    # ===========================================
    # WEBHOOK
    # ===========================================
    webhook_secret: str = ""
    webhook_timestamp_tolerance_seconds: int = 300
    # Same-reference notifications inside this window are duplicate deliveries
    duplicate_window_minutes: float = 10.0

    # ===========================================
    # ORPHAN RECOVERY
    # ===========================================
    recovery_grace_minutes: float = 3.0
    recovery_batch_size: int = 5
    recovery_verify_with_gateway: bool = False
    recovery_lock_ttl: int = 240

    # ===========================================
    # NOTIFICATIONS
    # ===========================================
    # Admin notification endpoint (order paid). Empty = dispatch is logged and skipped.
    notification_webhook_url: str = ""
    notification_timeout_seconds: float = 10.0

    # ===========================================
    # WORKERS & PERFORMANCE
    # ===========================================
    celery_task_retry_delay: int = 5
    celery_task_max_retries: int = 3

    # ===========================================
    # ADMIN API
    # ===========================================
    admin_api_key: str | None = None  # Optional, but recommended

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    request_id_header: str = "X-Request-Id"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # ===========================================
    # STATE MANAGEMENT
    # ===========================================
    # In-flight initiation lock; must outlive the full attempt sequence
    idempotency_ttl: int = 300  # 5 minutes

    @field_validator("country_calling_code")
    @classmethod
    def validate_calling_code(cls, v: str) -> str:
        """Calling code is digits only, without '+'."""
        v = v.strip().lstrip("+")
        if not v.isdigit():
            raise ValueError("country_calling_code must contain digits only")
        return v

    @field_validator("duplicate_window_minutes", "recovery_grace_minutes")
    @classmethod
    def validate_positive_minutes(cls, v: float) -> float:
        if v < 0:
            raise ValueError("window must not be negative")
        return v

    @property
    def gateway_ok_statuses_set(self) -> set[str]:
        """Gateway create-order statuses treated as accepted."""
        return {s.strip().lower() for s in self.gateway_ok_statuses.split(",") if s.strip()}

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in ("prod", "production")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
