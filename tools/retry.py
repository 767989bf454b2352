from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from graph.state import EventStatus, isoformat, parse_iso, utcnow
from tools import config
from tools.store import get_store


def calculate_retry_delay(attempts: int) -> float:
    """Seconds to wait before the next attempt: ``base * 2**attempts``, capped."""
    base = config.retry_base_delay_seconds()
    ceiling = config.retry_max_delay_seconds()
    return float(min(base * (2 ** max(0, attempts)), ceiling))


def next_retry_at(attempts: int, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return isoformat(now + timedelta(seconds=calculate_retry_delay(attempts)))


def failure_fields(error: str, retryable: bool, attempts: int = 1, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Event columns for a failed attempt. Non-retryable failures get no schedule."""
    now = now or utcnow()
    return {
        "status": EventStatus.FAILED.value,
        "attempts": attempts,
        "retryable": retryable,
        "last_error": error,
        "next_retry_at": next_retry_at(attempts, now) if retryable else None,
        "dead_lettered": False,
        "updated_at": isoformat(now),
    }


def schedule_retry(
    event_id: str,
    error: str,
    attempts: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """Mark a stored event as failed and retryable. ``attempts`` defaults to the stored count."""
    store = get_store()
    event = store.get_event(event_id)
    if event is None:
        return None
    attempts = int(event.get("attempts") or 1) if attempts is None else attempts
    changes = failure_fields(error, retryable=True, attempts=attempts, now=now)
    updated = store.update_event(event_id, changes)
    logger.info(f"Webhook retry scheduled: {event.get('type')} (ID: {event_id}, next attempt: {changes['next_retry_at']})")
    return updated


def is_stale_claim(event: Dict[str, Any], now: datetime) -> bool:
    """A RETRYING event whose sweep died before settling it."""
    if event.get("status") != EventStatus.RETRYING.value:
        return False
    claimed_at = parse_iso(event.get("updated_at"))
    return claimed_at is not None and claimed_at + timedelta(seconds=config.retry_lease_seconds()) <= now


def is_due(event: Dict[str, Any], now: datetime) -> bool:
    if not event.get("retryable") or event.get("dead_lettered"):
        return False
    if int(event.get("attempts") or 0) >= config.retry_max_attempts():
        return False
    if is_stale_claim(event, now):
        return True
    if event.get("status") != EventStatus.FAILED.value:
        return False
    due_at = parse_iso(event.get("next_retry_at"))
    return due_at is not None and due_at <= now


def get_due_retries(now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Failed, retryable events whose backoff has elapsed, plus abandoned claims, oldest schedule first."""
    now = now or utcnow()
    limit = config.retry_batch_size() if limit is None else limit
    due = [e for e in get_store().list_events() if is_due(e, now)]
    due.sort(key=lambda e: e.get("next_retry_at") or "")
    return due[:limit]


def get_dead_letter_queue_stats(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    day_ago = now - timedelta(hours=24)
    stats = {
        "pending": 0,
        "retrying": 0,
        "dead_lettered": 0,
        "rejected": 0,
        "total": 0,
        "by_type": {},
        "recent_24h": 0,
    }

    for event in get_store().list_events():
        status = event.get("status")
        if status == EventStatus.SUCCESS.value:
            continue
        if event.get("dead_lettered"):
            stats["dead_lettered"] += 1
            stats["by_type"][event.get("type")] = stats["by_type"].get(event.get("type"), 0) + 1
            dead_at = parse_iso(event.get("updated_at"))
            if dead_at is not None and dead_at >= day_ago:
                stats["recent_24h"] += 1
        elif status == EventStatus.RETRYING.value:
            stats["retrying"] += 1
        elif not event.get("retryable"):
            stats["rejected"] += 1
        elif int(event.get("attempts") or 1) <= 1:
            stats["pending"] += 1
        else:
            stats["retrying"] += 1

    stats["total"] = stats["pending"] + stats["retrying"] + stats["dead_lettered"] + stats["rejected"]
    return stats
