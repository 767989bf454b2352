import os
from typing import Optional

# Retry policy defaults
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 60
DEFAULT_MAX_DELAY_SECONDS = 3600
DEFAULT_RETRY_BATCH_SIZE = 10
DEFAULT_RETRY_LEASE_SECONDS = 300

# Alert thresholds
DEFAULT_PROCESSING_TIME_MS = 5000
DEFAULT_PROCESSING_TIME_CRITICAL_MS = 10000
DEFAULT_ERROR_RATE = 10.0
DEFAULT_ERROR_RATE_CRITICAL = 25.0
DEFAULT_DEAD_LETTER_COUNT = 1

DEFAULT_SUBMISSION_HISTORY_LIMIT = 50


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def signature_validation_enabled() -> bool:
    """Security gate switch. Turning it off lets every request through unchecked."""
    return _flag("WEBHOOK_ENABLE_SIGNATURE_VALIDATION", True)


def rate_limiting_enabled() -> bool:
    return _flag("WEBHOOK_ENABLE_RATE_LIMITING", True)


def timestamp_tolerance_seconds() -> int:
    return _int("WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS", 300)


def rate_limit_window_seconds() -> int:
    return _int("WEBHOOK_RATE_LIMIT_WINDOW_SECONDS", 3600)


def max_requests_per_window(default: int) -> int:
    return _int("WEBHOOK_MAX_REQUESTS_PER_HOUR", default)


def platform_secret(env_var: str) -> Optional[str]:
    return os.getenv(env_var) or None


def admin_api_key() -> Optional[str]:
    return os.getenv("WEBHOOK_RETRY_API_KEY") or os.getenv("API_KEY") or None


def retry_max_attempts() -> int:
    return _int("WEBHOOK_RETRY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)


def retry_base_delay_seconds() -> int:
    return _int("WEBHOOK_RETRY_BASE_DELAY_SECONDS", DEFAULT_BASE_DELAY_SECONDS)


def retry_max_delay_seconds() -> int:
    return _int("WEBHOOK_RETRY_MAX_DELAY_SECONDS", DEFAULT_MAX_DELAY_SECONDS)


def retry_batch_size() -> int:
    return _int("WEBHOOK_RETRY_BATCH_SIZE", DEFAULT_RETRY_BATCH_SIZE)


def retry_lease_seconds() -> int:
    return _int("WEBHOOK_RETRY_LEASE_SECONDS", DEFAULT_RETRY_LEASE_SECONDS)


def alert_processing_time_ms() -> int:
    return _int("WEBHOOK_ALERT_PROCESSING_TIME_MS", DEFAULT_PROCESSING_TIME_MS)


def alert_processing_time_critical_ms() -> int:
    return _int("WEBHOOK_ALERT_PROCESSING_TIME_CRITICAL_MS", DEFAULT_PROCESSING_TIME_CRITICAL_MS)


def alert_error_rate() -> float:
    return _float("WEBHOOK_ALERT_ERROR_RATE", DEFAULT_ERROR_RATE)


def alert_error_rate_critical() -> float:
    return _float("WEBHOOK_ALERT_ERROR_RATE_CRITICAL", DEFAULT_ERROR_RATE_CRITICAL)


def alert_dead_letter_count() -> int:
    return _int("WEBHOOK_ALERT_DEAD_LETTER_COUNT", DEFAULT_DEAD_LETTER_COUNT)


def submission_history_limit() -> int:
    return max(1, _int("LEAD_SUBMISSION_HISTORY_LIMIT", DEFAULT_SUBMISSION_HISTORY_LIMIT))


def store_backend() -> str:
    return os.getenv("STORE_BACKEND", "redis").strip().lower()


def redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379")


def is_development() -> bool:
    return os.getenv("APP_ENV", "production").lower() == "development"
