import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # System callers (scheduler / service role)
    SERVICE_ROLE_KEY: Optional[str] = None
    CRON_SECRET: Optional[str] = None

    # End-user auth
    USER_JWT_SECRET: Optional[str] = None
    USER_JWT_AUDIENCE: Optional[str] = "authenticated"

    # Stripe (penalty charges)
    STRIPE_SECRET_KEY: Optional[str] = None

    # Push notifications (Expo)
    PUSH_ENABLED: bool = False
    EXPO_PUSH_API_URL: str = "https://exp.host/--/api/v2/push/send"
    EXPO_ACCESS_TOKEN: Optional[str] = None
    PUSH_TIMEOUT_SECONDS: float = 10.0

    # Reaper
    REAPER_MAX_WORKERS: int = 4
    REAPER_BATCH_LIMIT: int = 100
    REAPER_RETRY_LIMIT: int = 50
    PENALTY_MAX_ATTEMPTS: int = 3
    PENALTY_RETRY_INTERVAL_HOURS: int = 4

    # Lifeline
    LIFELINE_EXTENSION_DAYS: int = 7
    LIFELINE_COOLDOWN_DAYS: int = 30

    # App Store server notifications
    APPLE_VERIFY_SIGNATURES: bool = False
    APPLE_ROOT_CERT_PATHS: str = ""  # comma-separated DER/PEM files

    # Observability / Tracing
    OTEL_ENABLED: bool = False
    OTEL_EXPORTER: str = "console"  # console | memory

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("bookpledge")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "USER_JWT_SECRET",
        "STRIPE_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not getattr(cfg, "SERVICE_ROLE_KEY", None) and not getattr(cfg, "CRON_SECRET", None):
        missing.append("SERVICE_ROLE_KEY|CRON_SECRET")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
