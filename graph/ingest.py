import json
import time
from typing import Any, Dict, Mapping, Optional, Tuple

from loguru import logger

from graph.pipeline import run_lead_item
from graph.state import EventStatus, Platform, now_iso
from tools import config
from tools.mappers import extract_lead_payloads
from tools.rate_limit import get_rate_limiter
from tools.retry import failure_fields
from tools.security import WEBHOOK_CONFIGS, constant_time_equals, validate_webhook_request
from tools.store import get_store

HandlerResponse = Tuple[int, Dict[str, Any], Dict[str, str]]

# Platforms whose items get request-derived context (ip, user agent, referrer)
CONTEXT_PLATFORMS = {Platform.LANDING_PAGE, Platform.GENERIC}


def _elapsed_ms(start_time: float) -> int:
    return int((time.time() - start_time) * 1000)


def log_webhook_error(platform: Platform, error: str, detail: Optional[Dict[str, Any]] = None) -> None:
    """Record a request-level failure that never reached the per-item pipeline."""
    now = now_iso()
    try:
        get_store().add_event({
            "platform": platform.value,
            "type": f"{platform.value}_error",
            "payload": {"error": error, **(detail or {})},
            "context": {},
            "status": EventStatus.FAILED.value,
            "attempts": 1,
            "retryable": False,
            "last_error": error,
            "next_retry_at": None,
            "dead_lettered": False,
            "processed_at": None,
            "created_at": now,
            "updated_at": now,
        })
    except Exception as e:
        logger.error(f"Failed to log {platform.value} webhook error: {e}")


def log_crashed_item(platform: Platform, payload: Any, context: Dict[str, Any], error: str) -> Optional[str]:
    """Queue a lead item whose pipeline run raised, so the retry sweep re-runs it."""
    event = {
        "platform": platform.value,
        "type": f"{platform.value}_lead",
        "payload": payload,
        "context": context or {},
        "processed_at": None,
        "created_at": now_iso(),
    }
    event.update(failure_fields(error, retryable=True))
    try:
        return get_store().add_event(event)["id"]
    except Exception as e:
        logger.error(f"Failed to queue crashed {platform.value} lead for retry: {e}")
        return None


def request_context(headers: Mapping[str, str], client_ip: str, data: Any = None) -> Dict[str, Any]:
    hint = headers.get("x-platform")
    if not hint and isinstance(data, dict):
        hint = data.get("platform")
    return {
        "ip_address": client_ip,
        "user_agent": headers.get("user-agent"),
        "referrer": headers.get("referer"),
        "received_at": now_iso(),
        "platform_hint": hint,
    }


def check_gate(platform: Platform, body: bytes, headers: Mapping[str, str], client_ip: str) -> Optional[HandlerResponse]:
    """Run the security gate. Returns an error response, or None to let the request through."""
    webhook_config = WEBHOOK_CONFIGS[platform]
    signature_on = config.signature_validation_enabled()
    rate_limit_on = config.rate_limiting_enabled()

    secret = config.platform_secret(webhook_config["secret_env_var"])
    if signature_on and not secret:
        logger.error(f"Missing environment variable: {webhook_config['secret_env_var']}")
        return 500, {"error": "Webhook secret not configured"}, {}
    if not signature_on:
        logger.warning(f"Signature validation disabled, accepting unchecked {platform.value} webhook from {client_ip}")
    if not signature_on and not rate_limit_on:
        return None

    limiter = get_rate_limiter(platform.value, webhook_config["max_requests_per_hour"]) if rate_limit_on else None
    validation = validate_webhook_request(
        body,
        headers,
        client_ip,
        secret,
        options={
            "signature_header": webhook_config["signature_header"],
            "timestamp_header": webhook_config["timestamp_header"],
            "check_signature": signature_on,
            "check_timestamp": signature_on,
            "check_rate_limit": rate_limit_on,
            "platform": platform.value,
        },
        limiter=limiter,
    )
    if validation["is_valid"]:
        return None

    logger.error(f"{platform.value} webhook validation failed: {validation.get('error')}")
    status = 429 if validation.get("rate_limited") else 401
    return status, {"error": validation.get("error")}, validation.get("rate_limit_headers") or {}


def handle_lead_webhook(
    platform: Platform,
    body: bytes,
    headers: Mapping[str, str],
    client_ip: str,
) -> HandlerResponse:
    """
    Process one inbound lead webhook end to end.

    Args:
        platform: Which platform endpoint received the request
        body: Raw request body, as signed by the sender
        headers: Request headers (case-insensitive mapping)
        client_ip: Resolved client address

    Returns:
        ``(status_code, content, headers)``. Item-level failures still answer 200
        with a failed entry in ``results``; only gate rejections, unparseable
        bodies and crashes change the status code.
    """
    platform = Platform(platform)
    start_time = time.time()

    try:
        rejection = check_gate(platform, body, headers, client_ip)
        if rejection is not None:
            return rejection

        try:
            data = json.loads(body or b"null")
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Invalid JSON on {platform.value} webhook: {e}")
            log_webhook_error(platform, f"Invalid JSON: {e}", {"body": body[:2048].decode("utf-8", "replace")})
            return 400, {"error": "Invalid JSON payload", "processingTime": _elapsed_ms(start_time)}, {}

        logger.info(f"{platform.value} webhook received from {client_ip}")
        payloads = extract_lead_payloads(platform, data)
        if not payloads:
            return 200, {
                "success": True,
                "message": "No lead data found in webhook payload",
                "results": [],
                "processingTime": _elapsed_ms(start_time),
            }, {}

        context = request_context(headers, client_ip, data) if platform in CONTEXT_PLATFORMS else {}
        results = []
        for payload in payloads:
            try:
                state = run_lead_item(platform, payload, context)
            except Exception as e:
                logger.error(f"{platform.value} lead item crashed the pipeline: {e}")
                log_crashed_item(platform, payload, context, f"Pipeline crashed: {e}")
                state = {"result": {"status": "failed", "message": "Failed to process lead", "errors": [str(e)]}}
            results.append(state.get("result") or {"status": "failed", "message": "Failed to process lead"})

        counts = {status: sum(1 for r in results if r.get("status") == status) for status in ("created", "duplicate", "failed")}
        logger.info(
            f"{platform.value} webhook processed {len(results)} lead(s): "
            f"{counts['created']} created, {counts['duplicate']} duplicate, {counts['failed']} failed"
        )
        return 200, {
            "success": True,
            "message": f"Processed {len(results)} lead(s)",
            "results": results,
            "processingTime": _elapsed_ms(start_time),
        }, {}

    except Exception as e:
        logger.error(f"{platform.value} webhook error: {e}")
        log_webhook_error(platform, str(e))
        return 500, {"error": "Internal server error", "processingTime": _elapsed_ms(start_time)}, {}


def handle_verification(platform: Platform, params: Mapping[str, str]) -> Tuple[int, Any]:
    """Answer a Meta subscription check by echoing ``hub.challenge``."""
    platform = Platform(platform)
    webhook_config = WEBHOOK_CONFIGS[platform]
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge")

    expected = None
    if webhook_config["verify_token_env_var"]:
        expected = config.platform_secret(webhook_config["verify_token_env_var"])
    expected = expected or config.platform_secret(webhook_config["secret_env_var"])

    if mode == "subscribe" and challenge is not None and constant_time_equals(token, expected):
        logger.info(f"{platform.value} webhook verified successfully")
        return 200, challenge

    logger.warning(f"{platform.value} webhook verification failed")
    return 403, {"error": "Forbidden"}
