import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

load_dotenv()

logger = logging.getLogger(__name__)


_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in _TRUTHY_VALUES


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True, validate_default=True)

    database_url: str | None = os.getenv("DATABASE_URL")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))
    db_echo: bool = _env_bool("DB_ECHO")

    # Default
    url_base: str = os.getenv("URL_BASE", "http://localhost:8000")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@example.com")
    from_email: str = os.getenv("FROM_EMAIL", "lobster@example.com")
    proxy_header: str = os.getenv("PROXY_HEADER", "")
    debug: bool = _env_bool("DEBUG")

    # Vm
    vm_maximum_ips: int = int(os.getenv("VM_MAXIMUM_IPS", "4"))

    # Billing
    bandwidth_overage_fee: float = float(os.getenv("BILLING_BANDWIDTH_OVERAGE_FEE", "0.003"))
    storage_fee: float = float(os.getenv("BILLING_STORAGE_FEE", "0.00005"))
    currency: str = os.getenv("BILLING_CURRENCY", "USD")
    billing_interval: int = int(os.getenv("BILLING_INTERVAL", "60"))
    billing_vm_minimum: int = int(os.getenv("BILLING_VM_MINIMUM", "1"))
    deposit_minimum: float = float(os.getenv("BILLING_DEPOSIT_MINIMUM", "5"))
    deposit_maximum: float = float(os.getenv("BILLING_DEPOSIT_MAXIMUM", "1000"))

    # BillingNotifications / BillingTermination
    billing_notify_frequency_hours: int = int(os.getenv("BILLING_NOTIFY_FREQUENCY", "24"))
    billing_low_count: int = int(os.getenv("BILLING_LOW_COUNT", "5"))
    billing_termination_enabled: bool = _env_bool("BILLING_TERMINATION_ENABLED", "true")
    billing_termination_window_hours: int = int(os.getenv("BILLING_TERMINATION_WINDOW", "48"))

    # Session
    session_domain: str | None = os.getenv("SESSION_DOMAIN") or None
    session_secure: bool = _env_bool("SESSION_SECURE")

    # Http
    http_addr: str = os.getenv("HTTP_ADDR", "0.0.0.0:8000")

    # Novnc
    novnc_url: str = os.getenv("NOVNC_URL", "/novnc/vnc.html?token=TOKEN&password=PASSWORD")
    suspend_verify_delay_seconds: int = int(os.getenv("SUSPEND_VERIFY_DELAY", "30"))

    # Celery / Redis
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    celery_broker_url: str | None = os.getenv("CELERY_BROKER_URL") or None
    celery_result_backend: str | None = os.getenv("CELERY_RESULT_BACKEND") or None

    # Sidecar with drivers and payment handlers
    drivers_config: str | None = os.getenv("DRIVERS_CONFIG") or None

    # Runtime flags
    testing: bool = _env_bool("TESTING")

    @model_validator(mode="after")
    def require_database_url_when_not_testing(self) -> "Settings":
        if not self.testing and not (self.database_url and self.database_url.strip()):
            raise ValueError("DATABASE_URL must be set when TESTING is false")
        return self

    @field_validator("billing_interval")
    @classmethod
    def default_billing_interval(cls, value: int) -> int:
        if value <= 0:
            logger.warning("Billing interval not set, defaulting to 60 minutes")
            return 60
        return value

    @field_validator("billing_vm_minimum")
    @classmethod
    def clamp_billing_vm_minimum(cls, value: int) -> int:
        if value < 1:
            logger.warning("Minimum VM billing intervals less than 1, setting to 1")
            return 1
        return value

    @model_validator(mode="after")
    def warn_on_billing_gaps(self) -> "Settings":
        if len(self.currency) != 3:
            logger.warning("Currency is set to [%s], but currency codes should be three characters", self.currency)
        if self.bandwidth_overage_fee == 0:
            logger.warning("Bandwidth overage fee not set")
        if self.storage_fee == 0:
            logger.warning("Storage fee not set")
        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url and self.database_url.strip():
            return self.database_url
        return "sqlite://"

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
