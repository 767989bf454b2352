import hashlib
import hmac
import time
from typing import Any, Dict, Mapping, Optional, TypedDict

from loguru import logger

from graph.state import Platform
from tools import config
from tools.rate_limit import RateLimiter


class PlatformWebhookConfig(TypedDict):
    signature_header: str
    timestamp_header: str
    secret_env_var: str
    verify_token_env_var: Optional[str]
    max_requests_per_hour: int


WEBHOOK_CONFIGS: Dict[Platform, PlatformWebhookConfig] = {
    Platform.FACEBOOK: {
        "signature_header": "x-hub-signature-256",
        "timestamp_header": "x-timestamp",
        "secret_env_var": "FACEBOOK_WEBHOOK_SECRET",
        "verify_token_env_var": "FACEBOOK_WEBHOOK_VERIFY_TOKEN",
        "max_requests_per_hour": 1000,
    },
    Platform.INSTAGRAM: {
        "signature_header": "x-hub-signature-256",
        "timestamp_header": "x-timestamp",
        "secret_env_var": "INSTAGRAM_WEBHOOK_SECRET",
        "verify_token_env_var": "INSTAGRAM_WEBHOOK_VERIFY_TOKEN",
        "max_requests_per_hour": 1000,
    },
    Platform.GOOGLE: {
        "signature_header": "x-goog-signature",
        "timestamp_header": "x-goog-timestamp",
        "secret_env_var": "GOOGLE_WEBHOOK_SECRET",
        "verify_token_env_var": None,
        "max_requests_per_hour": 1000,
    },
    Platform.TIKTOK: {
        "signature_header": "x-tiktok-signature",
        "timestamp_header": "x-timestamp",
        "secret_env_var": "TIKTOK_WEBHOOK_SECRET",
        "verify_token_env_var": None,
        "max_requests_per_hour": 800,
    },
    Platform.PINTEREST: {
        "signature_header": "x-pinterest-signature",
        "timestamp_header": "x-timestamp",
        "secret_env_var": "PINTEREST_WEBHOOK_SECRET",
        "verify_token_env_var": None,
        "max_requests_per_hour": 600,
    },
    Platform.SNAPCHAT: {
        "signature_header": "x-snapchat-signature",
        "timestamp_header": "x-timestamp",
        "secret_env_var": "SNAPCHAT_WEBHOOK_SECRET",
        "verify_token_env_var": None,
        "max_requests_per_hour": 600,
    },
    Platform.LANDING_PAGE: {
        "signature_header": "x-signature-256",
        "timestamp_header": "x-timestamp",
        "secret_env_var": "LANDING_PAGE_WEBHOOK_SECRET",
        "verify_token_env_var": None,
        "max_requests_per_hour": 500,
    },
    Platform.GENERIC: {
        "signature_header": "x-signature-256",
        "timestamp_header": "x-timestamp",
        "secret_env_var": "GENERIC_WEBHOOK_SECRET",
        "verify_token_env_var": None,
        "max_requests_per_hour": 200,
    },
}

if set(WEBHOOK_CONFIGS) != set(Platform):
    raise RuntimeError("every platform needs a webhook config")


class ValidationOptions(TypedDict, total=False):
    signature_header: str
    timestamp_header: str
    check_signature: bool
    check_timestamp: bool
    check_rate_limit: bool
    platform: str
    rate_limit_key: str


class ValidationResult(TypedDict, total=False):
    is_valid: bool
    error: str
    rate_limited: bool
    rate_limit_headers: Dict[str, str]


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body. Also used to sign outgoing test requests."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def constant_time_equals(presented: Optional[str], expected: Optional[str]) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check a signature header such as ``sha256=<hex>`` or bare ``<hex>``."""
    if not signature or not secret:
        return False
    presented = signature.strip()
    if presented.lower().startswith("sha256="):
        presented = presented[len("sha256="):]
    return constant_time_equals(presented.lower(), compute_signature(body, secret))


def verify_timestamp(value: Any, tolerance_seconds: Optional[int] = None, now: Optional[float] = None) -> bool:
    """Reject stale and future-skewed timestamps (epoch seconds)."""
    tolerance = config.timestamp_tolerance_seconds() if tolerance_seconds is None else tolerance_seconds
    now = time.time() if now is None else now
    try:
        sent = float(str(value).strip())
    except (TypeError, ValueError):
        return False
    return abs(now - sent) <= tolerance


def get_client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    """Best-effort client address, honouring the usual proxy headers."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    return fallback or "unknown"


def rate_limit_key(platform: str, client_ip: str, headers: Mapping[str, str]) -> str:
    if platform == Platform.GENERIC.value:
        return f"generic:{headers.get('x-platform') or 'unknown'}:{client_ip}"
    return f"{platform}:{client_ip}"


def validate_webhook_request(
    body: bytes,
    headers: Mapping[str, str],
    client_ip: str,
    secret: Optional[str],
    options: Optional[ValidationOptions] = None,
    limiter: Optional[RateLimiter] = None,
    now: Optional[float] = None,
) -> ValidationResult:
    """
    Run the rate limit, signature and timestamp checks for one inbound request.

    Args:
        body: Raw request body, exactly as received
        headers: Request headers (case-insensitive mapping)
        client_ip: Resolved client address for rate limiting
        secret: Platform HMAC secret
        options: Which checks to run and which headers to read
        limiter: Rate limiter for the platform; required when rate limiting is on

    Returns:
        ``{"is_valid": True}`` or ``{"is_valid": False, "error": ..., "rate_limited": ...}``.
        Callers answer 429 when ``rate_limited`` is set and 401 otherwise.
    """
    options = options or {}
    platform = options.get("platform", Platform.GENERIC.value)
    signature_header = options.get("signature_header", "x-signature-256")
    timestamp_header = options.get("timestamp_header", "x-timestamp")

    if options.get("check_rate_limit", True) and limiter is not None:
        key = options.get("rate_limit_key") or rate_limit_key(platform, client_ip, headers)
        outcome = limiter.check(key, now=now)
        rate_headers = limiter.headers(outcome, now=now)
        if not outcome["allowed"]:
            return {
                "is_valid": False,
                "error": "Rate limit exceeded",
                "rate_limited": True,
                "rate_limit_headers": rate_headers,
            }

    if options.get("check_signature", True):
        signature = headers.get(signature_header)
        if not signature:
            return {"is_valid": False, "error": f"missing {signature_header} header", "rate_limited": False}
        if not verify_signature(body, signature, secret):
            logger.warning(f"Signature mismatch on {platform} webhook from {client_ip}")
            return {"is_valid": False, "error": "signature mismatch", "rate_limited": False}

    if options.get("check_timestamp", True):
        timestamp = headers.get(timestamp_header)
        if not timestamp:
            return {"is_valid": False, "error": f"missing {timestamp_header} header", "rate_limited": False}
        if not verify_timestamp(timestamp, now=now):
            return {"is_valid": False, "error": "timestamp outside freshness window", "rate_limited": False}

    return {"is_valid": True}
