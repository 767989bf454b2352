from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from graph.state import (
    AlertSeverity,
    AlertType,
    SEVERITY_RANK,
    isoformat,
    parse_iso,
    utcnow,
)
from tools import config
from tools.errors import AlertNotFoundError
from tools.slack import send_webhook_alert
from tools.store import get_store

ACTIVE_ALERT_LIMIT = 50
RECENT_ERROR_LIMIT = 10


def _is_success(entry: Dict[str, Any]) -> bool:
    return 200 <= int(entry.get("status_code") or 0) < 300


def _is_error(entry: Dict[str, Any]) -> bool:
    return int(entry.get("status_code") or 0) >= 400


def _avg(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def empty_metrics() -> Dict[str, Any]:
    return {
        "totalRequests": 0,
        "successRate": 0,
        "averageProcessingTime": 0,
        "errorRate": 0,
        "retryRate": 0,
        "platformBreakdown": {},
        "recentErrors": [],
        "timeSeriesData": [],
    }


def _time_series(logs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    buckets: Dict[datetime, List[Dict[str, Any]]] = {}
    for entry in logs:
        hour = parse_iso(entry["timestamp"]).replace(minute=0, second=0, microsecond=0)
        buckets.setdefault(hour, []).append(entry)

    series = []
    for hour in sorted(buckets):
        hour_logs = buckets[hour]
        series.append({
            "timestamp": isoformat(hour),
            "requests": len(hour_logs),
            "success": sum(1 for e in hour_logs if _is_success(e)),
            "failed": sum(1 for e in hour_logs if _is_error(e)),
            "avgProcessingTime": _avg([e.get("processing_time") or 0 for e in hour_logs]),
        })
    return series


def calculate_metrics(
    logs: List[Dict[str, Any]],
    now: Optional[datetime] = None,
    events: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Aggregate performance log rows into request, error and latency metrics."""
    if not logs:
        return empty_metrics()

    now = now or utcnow()
    logs = sorted(logs, key=lambda e: parse_iso(e["timestamp"]))
    total = len(logs)
    successes = sum(1 for e in logs if _is_success(e))
    failures = sum(1 for e in logs if _is_error(e))

    breakdown: Dict[str, Dict[str, Any]] = {}
    for entry in logs:
        platform = entry.get("platform") or "unknown"
        data = breakdown.setdefault(platform, {"requests": 0, "success": 0, "failed": 0, "_times": []})
        data["requests"] += 1
        if _is_success(entry):
            data["success"] += 1
        elif _is_error(entry):
            data["failed"] += 1
        data["_times"].append(entry.get("processing_time") or 0)
    for data in breakdown.values():
        data["avgProcessingTime"] = _avg(data.pop("_times"))

    day_ago = now - timedelta(hours=24)
    recent = [e for e in logs if _is_error(e) and parse_iso(e["timestamp"]) >= day_ago][-RECENT_ERROR_LIMIT:]
    recent_errors = [
        {
            "timestamp": e["timestamp"],
            "platform": e.get("platform"),
            "error": e.get("error_message") or f"HTTP {e.get('status_code')}",
            "count": 1,
        }
        for e in recent
    ]

    retry_rate = 0.0
    if events:
        retried = sum(1 for e in events if int(e.get("attempts") or 0) > 1)
        retry_rate = round(retried / len(events) * 100, 2)

    return {
        "totalRequests": total,
        "successRate": round(successes / total * 100, 2),
        "averageProcessingTime": _avg([e.get("processing_time") or 0 for e in logs]),
        "errorRate": round(failures / total * 100, 2),
        "retryRate": retry_rate,
        "platformBreakdown": breakdown,
        "recentErrors": recent_errors,
        "timeSeriesData": _time_series(logs),
    }


def _events_between(start: datetime, end: datetime, platform: Optional[str]) -> List[Dict[str, Any]]:
    events = []
    for event in get_store().list_events():
        created = parse_iso(event.get("created_at"))
        if created is None or created < start or created > end:
            continue
        if platform and event.get("platform") != platform:
            continue
        events.append(event)
    return events


def get_webhook_analytics(start: datetime, end: datetime, platform: Optional[str] = None) -> Dict[str, Any]:
    logs = get_store().list_performance_logs(start, end, platform)
    return calculate_metrics(logs, now=end, events=_events_between(start, end, platform))


def calculate_recent_error_rate(platform: Optional[str], now: Optional[datetime] = None) -> float:
    """Error percentage for one platform over the last hour."""
    now = now or utcnow()
    logs = get_store().list_performance_logs(now - timedelta(hours=1), now, platform)
    if not logs:
        return 0.0
    return sum(1 for e in logs if _is_error(e)) / len(logs) * 100


def raise_alert(
    alert_type: AlertType,
    severity: AlertSeverity,
    platform: Optional[str],
    message: str,
    threshold: float,
    current_value: float,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Open an alert, or fold a repeat breach into the open alert of the same type and platform.

    Repeats bump ``occurrences`` and may escalate severity, never lower it.
    Slack is paged for a new or newly escalated CRITICAL alert.
    """
    store = get_store()
    now_str = isoformat(now or utcnow())
    severity_value = AlertSeverity(severity).value
    existing = store.find_open_alert(AlertType(alert_type).value, platform)

    if existing is not None:
        escalated = SEVERITY_RANK[severity_value] > SEVERITY_RANK[existing["severity"]]
        changes = {
            "current_value": current_value,
            "message": message,
            "occurrences": int(existing.get("occurrences") or 1) + 1,
            "last_seen_at": now_str,
        }
        if escalated:
            changes["severity"] = severity_value
            changes["threshold"] = threshold
        alert = store.update_alert(existing["id"], changes)
        notify = escalated and severity_value == AlertSeverity.CRITICAL.value
    else:
        alert = store.add_alert({
            "type": AlertType(alert_type).value,
            "severity": severity_value,
            "platform": platform,
            "message": message,
            "threshold": threshold,
            "current_value": current_value,
            "occurrences": 1,
            "created_at": now_str,
            "last_seen_at": now_str,
            "resolved": False,
            "resolved_at": None,
        })
        notify = severity_value == AlertSeverity.CRITICAL.value

    if alert["severity"] == AlertSeverity.CRITICAL.value:
        logger.critical(
            f"CRITICAL WEBHOOK ALERT: {alert['type']} on {platform or 'all platforms'}: "
            f"{message} (value {current_value}, threshold {alert['threshold']})"
        )
    else:
        logger.warning(f"Webhook alert {alert['type']} ({alert['severity']}) on {platform}: {message}")

    if notify:
        send_webhook_alert(alert)
    return alert


def check_performance_alerts(entry: Dict[str, Any], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Evaluate the alert rules against one freshly logged request."""
    alerts = []
    processing_time = float(entry.get("processing_time") or 0)
    platform = entry.get("platform")

    high = config.alert_processing_time_ms()
    critical = config.alert_processing_time_critical_ms()
    if processing_time > high:
        severity = AlertSeverity.CRITICAL if processing_time > critical else AlertSeverity.HIGH
        alerts.append(raise_alert(
            AlertType.PROCESSING_TIME, severity, platform,
            f"High processing time detected: {processing_time:.0f}ms", high, processing_time, now,
        ))

    if _is_error(entry):
        error_rate = calculate_recent_error_rate(platform, now)
        threshold = config.alert_error_rate()
        if error_rate > threshold:
            severity = AlertSeverity.CRITICAL if error_rate > config.alert_error_rate_critical() else AlertSeverity.HIGH
            alerts.append(raise_alert(
                AlertType.ERROR_RATE, severity, platform,
                f"High error rate detected: {error_rate:.2f}%", threshold, round(error_rate, 2), now,
            ))

    return alerts


def log_webhook_performance(entry: Dict[str, Any], now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Append one request's performance row, then check alert thresholds.

    Failures are logged and swallowed; observability never fails the request it observes.
    """
    try:
        row = dict(entry)
        row["timestamp"] = isoformat(now or utcnow())
        stored = get_store().add_performance_log(row)
        check_performance_alerts(stored, now)
        return stored
    except Exception as e:
        logger.error(f"Failed to log webhook performance: {e}")
        return None


def get_active_webhook_alerts() -> List[Dict[str, Any]]:
    alerts = get_store().list_alerts(resolved=False)
    alerts.sort(key=lambda a: a.get("created_at") or "", reverse=True)
    return alerts[:ACTIVE_ALERT_LIMIT]


def resolve_webhook_alert(alert_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Mark an alert resolved. Resolving an already-resolved alert changes nothing."""
    store = get_store()
    alert = store.get_alert(alert_id)
    if alert is None:
        raise AlertNotFoundError(alert_id)
    if alert.get("resolved"):
        return alert
    logger.info(f"Resolving webhook alert {alert_id} ({alert.get('type')})")
    return store.update_alert(alert_id, {"resolved": True, "resolved_at": isoformat(now or utcnow())})


def get_webhook_health_status(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    last_24h = get_webhook_analytics(now - timedelta(hours=24), now)
    last_hour = get_webhook_analytics(now - timedelta(hours=1), now)
    active_alerts = get_active_webhook_alerts()

    status = "HEALTHY"
    if any(a.get("severity") == AlertSeverity.CRITICAL.value for a in active_alerts):
        status = "CRITICAL"
    elif last_hour["errorRate"] > config.alert_error_rate() or active_alerts:
        status = "WARNING"

    return {
        "status": status,
        "uptime": last_24h["successRate"] if last_24h["totalRequests"] > 0 else 100,
        "activeAlerts": len(active_alerts),
        "metrics": {
            "last24h": last_24h,
            "lastHour": last_hour,
        },
    }
