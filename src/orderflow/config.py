"""Runtime settings for orderflow."""

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "ORDERFLOW_"

DEFAULT_RAZORPAY_API_URL = "https://api.razorpay.com"
DEFAULT_CURRENCY = "INR"


def _env(name: str, default: str | None = None) -> str | None:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    return float(value) if value else default


@dataclass
class Settings:
    """Settings read once at startup and passed down to the services."""

    data_dir: Path | None = None
    upload_dir: Path | None = None
    log_level: str = "INFO"

    # Payment gateway
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_url: str = DEFAULT_RAZORPAY_API_URL
    currency: str = DEFAULT_CURRENCY

    # Courier
    courier_api_key: str = ""
    courier_create_url: str = ""
    courier_tracking_url: str = ""
    courier_max_attempts: int = 3
    courier_backoff_seconds: float = 0.5

    # Notification bus (empty logs events instead)
    notification_url: str = ""

    # Every outbound HTTP call uses this timeout
    http_timeout_seconds: float = 10.0

    # Webhook abuse guard
    webhook_rate_limit: int = 100
    webhook_rate_window_seconds: float = 15 * 60

    transaction_retries: int = 3

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = _env("DATA_DIR")
        upload_dir = _env("UPLOAD_DIR")
        return cls(
            data_dir=Path(data_dir) if data_dir else None,
            upload_dir=Path(upload_dir) if upload_dir else None,
            log_level=_env("LOG_LEVEL", "INFO") or "INFO",
            razorpay_key_id=_env("RAZORPAY_KEY_ID", "") or "",
            razorpay_key_secret=_env("RAZORPAY_KEY_SECRET", "") or "",
            razorpay_webhook_secret=_env("RAZORPAY_WEBHOOK_SECRET", "") or "",
            razorpay_api_url=_env("RAZORPAY_API_URL", DEFAULT_RAZORPAY_API_URL)
            or DEFAULT_RAZORPAY_API_URL,
            currency=_env("CURRENCY", DEFAULT_CURRENCY) or DEFAULT_CURRENCY,
            courier_api_key=_env("COURIER_API_KEY", "") or "",
            courier_create_url=_env("COURIER_CREATE_URL", "") or "",
            courier_tracking_url=_env("COURIER_TRACKING_URL", "") or "",
            courier_max_attempts=_env_int("COURIER_MAX_ATTEMPTS", 3),
            courier_backoff_seconds=_env_float("COURIER_BACKOFF_SECONDS", 0.5),
            notification_url=_env("NOTIFICATION_URL", "") or "",
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 10.0),
            webhook_rate_limit=_env_int("WEBHOOK_RATE_LIMIT", 100),
            webhook_rate_window_seconds=_env_float("WEBHOOK_RATE_WINDOW_SECONDS", 15 * 60),
            transaction_retries=_env_int("TRANSACTION_RETRIES", 3),
        )
