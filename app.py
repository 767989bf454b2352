import json
import os
import time
from datetime import timedelta
from typing import Any, Dict

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
from starlette.concurrency import run_in_threadpool

from graph.ingest import handle_lead_webhook, handle_verification
from graph.retries import process_webhook_retries, replay_dead_letter
from graph.state import Platform, isoformat, utcnow
from tools import config
from tools.analytics import (
    get_active_webhook_alerts,
    get_webhook_analytics,
    get_webhook_health_status,
    log_webhook_performance,
    resolve_webhook_alert,
)
from tools.errors import AlertNotFoundError, EventNotFoundError, WebhookError
from tools.retry import get_dead_letter_queue_stats
from tools.security import constant_time_equals, get_client_ip
from tools.security_headers import (
    CORS_ALLOWED_HEADERS,
    CORS_ALLOWED_METHODS,
    CORS_EXPOSED_HEADERS,
    CORS_MAX_AGE,
    SECURITY_HEADERS,
    allowed_origins,
    origin_regex,
)
from tools.store import get_store

# Load environment variables
load_dotenv()

# Configure logging
logger.add(os.getenv("LOG_FILE", "logs/app.log"), rotation="1 day", retention="7 days", level="INFO")

# Initialize FastAPI app
app = FastAPI(
    title="Lead Webhook Gateway",
    description="Ad-platform and landing-page lead ingestion with retries and alerting",
    version="1.0.0"
)

PLATFORM_ROUTES = {
    "facebook-ads": Platform.FACEBOOK,
    "instagram-ads": Platform.INSTAGRAM,
    "google-ads": Platform.GOOGLE,
    "tiktok-ads": Platform.TIKTOK,
    "pinterest-ads": Platform.PINTEREST,
    "snapchat-ads": Platform.SNAPCHAT,
    "landing-page": Platform.LANDING_PAGE,
    "generic": Platform.GENERIC,
}

if set(PLATFORM_ROUTES.values()) != set(Platform):
    raise RuntimeError("every platform needs an endpoint")

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=origin_regex(allowed_origins()),
    allow_methods=CORS_ALLOWED_METHODS,
    allow_headers=CORS_ALLOWED_HEADERS,
    expose_headers=CORS_EXPOSED_HEADERS,
    allow_credentials=False,
    max_age=CORS_MAX_AGE,
)


def _webhook_platform(path: str):
    slug = path.rstrip("/").rsplit("/", 1)[-1]
    return PLATFORM_ROUTES.get(slug)


@app.middleware("http")
async def webhook_observability(request: Request, call_next):
    """Harden every webhook response and log performance of platform endpoints."""
    if not request.url.path.startswith("/webhooks/"):
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    processing_time = (time.time() - start_time) * 1000

    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value

    platform = _webhook_platform(request.url.path)
    if platform is not None and request.method != "OPTIONS":
        await run_in_threadpool(log_webhook_performance, {
            "platform": platform.value,
            "endpoint": request.url.path,
            "method": request.method,
            "status_code": response.status_code,
            "processing_time": round(processing_time, 2),
            "payload_size": getattr(request.state, "payload_size", None) or int(request.headers.get("content-length") or 0),
            "error_message": getattr(request.state, "webhook_error", None),
            "user_agent": request.headers.get("user-agent"),
            "ip_address": get_client_ip(request.headers, request.client.host if request.client else None),
            "metadata": {"query": str(request.url.query) or None},
        })

    return response


async def _lead_webhook(platform: Platform, request: Request) -> JSONResponse:
    body = await request.body()
    request.state.payload_size = len(body)
    client_ip = get_client_ip(request.headers, request.client.host if request.client else None)

    status_code, content, headers = await run_in_threadpool(
        handle_lead_webhook, platform, body, request.headers, client_ip
    )
    if status_code >= 400:
        request.state.webhook_error = content.get("error")
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _verification_response(platform: Platform, request: Request):
    status_code, content = handle_verification(platform, request.query_params)
    if status_code == 200:
        return PlainTextResponse(content)
    return JSONResponse(status_code=status_code, content=content)


@app.get("/webhooks/facebook-ads")
async def verify_facebook(request: Request):
    """Meta subscription verification for the Facebook lead ads webhook."""
    return _verification_response(Platform.FACEBOOK, request)


@app.post("/webhooks/facebook-ads")
async def facebook_ads_webhook(request: Request):
    return await _lead_webhook(Platform.FACEBOOK, request)


@app.get("/webhooks/instagram-ads")
async def verify_instagram(request: Request):
    """Meta subscription verification for the Instagram lead ads webhook."""
    return _verification_response(Platform.INSTAGRAM, request)


@app.post("/webhooks/instagram-ads")
async def instagram_ads_webhook(request: Request):
    return await _lead_webhook(Platform.INSTAGRAM, request)


@app.post("/webhooks/google-ads")
async def google_ads_webhook(request: Request):
    return await _lead_webhook(Platform.GOOGLE, request)


@app.post("/webhooks/tiktok-ads")
async def tiktok_ads_webhook(request: Request):
    return await _lead_webhook(Platform.TIKTOK, request)


@app.post("/webhooks/pinterest-ads")
async def pinterest_ads_webhook(request: Request):
    return await _lead_webhook(Platform.PINTEREST, request)


@app.post("/webhooks/snapchat-ads")
async def snapchat_ads_webhook(request: Request):
    return await _lead_webhook(Platform.SNAPCHAT, request)


@app.post("/webhooks/landing-page")
async def landing_page_webhook(request: Request):
    """
    Landing page and form-builder submissions.

    Expected payload (single lead, or ``{"leads": [...]}``):
    {
        "email": "jane@example.com",
        "firstName": "Jane",
        "phone": "+1 555 0100",
        "utm_source": "facebook",
        "utm_campaign": "spring"
    }
    """
    return await _lead_webhook(Platform.LANDING_PAGE, request)


@app.post("/webhooks/generic")
async def generic_webhook(request: Request):
    """Flat key/value leads from any other source; ``X-Platform`` names the sender."""
    return await _lead_webhook(Platform.GENERIC, request)


def _authorized(request: Request) -> bool:
    return constant_time_equals(request.headers.get("x-api-key"), config.admin_api_key())


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Unauthorized"})


async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


@app.post("/webhooks/process-retries")
async def run_retries(request: Request):
    """
    Cron entry point: re-run due failed webhook events.

    Body (optional):
        {"action": "replay", "eventId": "..."} replays one failed or dead-lettered event
    """
    start_time = time.time()
    if not _authorized(request):
        return _unauthorized()

    try:
        data = await _json_body(request)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": f"Invalid JSON payload: {e}"})

    try:
        if data.get("action") == "replay":
            event_id = data.get("eventId")
            if not event_id:
                return JSONResponse(status_code=400, content={"error": "Event ID is required"})
            outcome = await run_in_threadpool(replay_dead_letter, event_id)
            return {
                "success": outcome["event"]["status"] == "SUCCESS",
                "message": "Webhook event replayed",
                "event": outcome["event"],
                "result": outcome["result"],
                "processingTime": int((time.time() - start_time) * 1000),
            }

        logger.info("Starting webhook retry processing")
        summary = await run_in_threadpool(process_webhook_retries)
        stats = await run_in_threadpool(get_dead_letter_queue_stats)
        logger.info(f"Webhook retry processing completed: {summary}")
        return {
            "success": True,
            "message": "Webhook retries processed",
            "summary": summary,
            "stats": stats,
            "processingTime": int((time.time() - start_time) * 1000),
        }
    except EventNotFoundError as e:
        return JSONResponse(status_code=404, content={"error": f"Webhook event not found: {e}"})
    except WebhookError as e:
        return JSONResponse(status_code=409, content={"error": str(e)})
    except Exception as e:
        logger.error(f"Error processing webhook retries: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Failed to process webhook retries",
                "message": str(e),
                "processingTime": int((time.time() - start_time) * 1000),
            }
        )


@app.get("/webhooks/process-retries")
async def retry_queue_status(request: Request):
    """Retry and dead-letter queue counts."""
    if not _authorized(request):
        return _unauthorized()

    try:
        stats = await run_in_threadpool(get_dead_letter_queue_stats)
        return {"success": True, "deadLetterQueue": stats, "lastChecked": isoformat(utcnow())}
    except Exception as e:
        logger.error(f"Error getting retry queue stats: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to get retry queue stats", "message": str(e)})


@app.get("/webhooks/analytics")
async def webhook_analytics(request: Request):
    """Webhook metrics, active alerts or health, selected by ``action``."""
    if not _authorized(request):
        return _unauthorized()

    params = request.query_params
    action = params.get("action") or "metrics"
    platform = params.get("platform") or None
    try:
        hours = int(params.get("hours") or 24)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "hours must be an integer"})

    try:
        if action == "metrics":
            end = utcnow()
            start = end - timedelta(hours=hours)
            metrics = await run_in_threadpool(get_webhook_analytics, start, end, platform)
            return {
                "success": True,
                "data": metrics,
                "timeRange": {"start": isoformat(start), "end": isoformat(end), "hours": hours},
                "platform": platform or "all",
            }
        if action == "alerts":
            alerts = await run_in_threadpool(get_active_webhook_alerts)
            return {"success": True, "data": alerts, "count": len(alerts)}
        if action == "health":
            health = await run_in_threadpool(get_webhook_health_status)
            return {"success": True, "data": health, "timestamp": isoformat(utcnow())}
    except Exception as e:
        logger.error(f"Error fetching webhook analytics: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch webhook analytics", "message": str(e)})

    return JSONResponse(status_code=400, content={"error": "Invalid action. Use: metrics, alerts, or health"})


@app.post("/webhooks/analytics")
async def webhook_analytics_action(request: Request):
    """Analytics actions; currently only ``resolve_alert``."""
    if not _authorized(request):
        return _unauthorized()

    try:
        data = await _json_body(request)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": f"Invalid JSON payload: {e}"})

    if data.get("action") != "resolve_alert":
        return JSONResponse(status_code=400, content={"error": "Invalid action"})
    alert_id = data.get("alertId")
    if not alert_id:
        return JSONResponse(status_code=400, content={"error": "Alert ID is required"})

    try:
        alert = await run_in_threadpool(resolve_webhook_alert, alert_id)
    except AlertNotFoundError:
        return JSONResponse(status_code=404, content={"error": "Alert not found", "alertId": alert_id})
    except Exception as e:
        logger.error(f"Error processing webhook analytics action: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to process webhook analytics action", "message": str(e)})

    return {"success": True, "message": "Alert resolved successfully", "alertId": alert_id, "alert": alert}


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "store": type(get_store()).__name__,
            "workflow": "ready"
        }
    }


# Error handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Lead Webhook Gateway")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=config.is_development(),
        log_level="info"
    )
