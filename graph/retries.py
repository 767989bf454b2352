from datetime import datetime
from typing import Any, Dict, Optional

from loguru import logger

from graph.pipeline import run_lead_item
from graph.state import AlertSeverity, AlertType, EventStatus, LeadState, isoformat, utcnow
from tools import config
from tools.analytics import raise_alert
from tools.errors import EventNotFoundError, WebhookError
from tools.retry import failure_fields, get_due_retries, schedule_retry
from tools.slack import send_dead_letter_alert
from tools.store import get_store


def _last_error(state: LeadState) -> str:
    validation_errors = state.get("validation_errors") or []
    if validation_errors:
        return "; ".join(validation_errors)
    errors = state.get("errors") or ["Unknown error"]
    return errors[-1]


def _rerun(event: Dict[str, Any]) -> LeadState:
    try:
        return run_lead_item(event["platform"], event.get("payload"), event.get("context"), event_id=event["id"])
    except Exception as e:
        logger.error(f"Retry of webhook event {event['id']} crashed: {e}")
        return {"outcome": "failed", "errors": [str(e)], "retryable": True}


def move_to_dead_letter(event: Dict[str, Any], attempts: int, error: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    store = get_store()
    dead = store.update_event(event["id"], {
        "status": EventStatus.FAILED.value,
        "attempts": attempts,
        "last_error": error,
        "next_retry_at": None,
        "dead_lettered": True,
        "updated_at": isoformat(now),
    })
    logger.critical(f"Webhook moved to dead letter queue after {attempts} attempts: {event.get('type')} (ID: {event['id']})")

    dead_count = sum(1 for e in store.list_events(EventStatus.FAILED.value) if e.get("dead_lettered"))
    if dead_count >= config.alert_dead_letter_count():
        raise_alert(
            AlertType.DEAD_LETTER_QUEUE,
            AlertSeverity.CRITICAL,
            event.get("platform"),
            f"{dead_count} webhook event(s) in dead letter queue, latest {event.get('type')} ({event['id']})",
            config.alert_dead_letter_count(),
            dead_count,
            now,
        )
    send_dead_letter_alert(dead)
    return dead


def process_webhook_retries(now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Re-run failed events whose backoff has elapsed.

    Each due event is claimed with a FAILED -> RETRYING compare-and-set so two
    sweeps never process the same event. Claims left RETRYING past their lease
    by a sweep that died are taken over. An event that fails its last allowed
    attempt is dead-lettered and an alert is raised. A failure while settling
    one event puts it back in the queue and the sweep moves on.

    Returns:
        Counts of processed, succeeded, failed, dead_lettered and skipped events
    """
    now = now or utcnow()
    store = get_store()
    summary = {"processed": 0, "succeeded": 0, "failed": 0, "dead_lettered": 0, "skipped": 0}

    due = get_due_retries(now)
    if not due:
        return summary
    logger.info(f"Processing {len(due)} webhook retries")

    max_attempts = config.retry_max_attempts()
    for event in due:
        # A stale claim is only taken over if no other sweep touched it since listing
        stale = event.get("status") == EventStatus.RETRYING.value
        try:
            claimed = store.claim_event(
                event["id"],
                event.get("status"),
                {"status": EventStatus.RETRYING.value, "updated_at": isoformat(now)},
                expected_updated_at=event.get("updated_at") if stale else None,
            )
        except Exception as e:
            logger.error(f"Could not claim webhook event {event['id']} for retry: {e}")
            summary["skipped"] += 1
            continue
        if claimed is None:
            summary["skipped"] += 1
            continue
        if stale:
            logger.warning(f"Reclaimed abandoned webhook retry {claimed['id']} ({claimed.get('type')})")

        attempts = int(claimed.get("attempts") or 1) + 1
        summary["processed"] += 1
        try:
            outcome = _retry_claimed(claimed, attempts, max_attempts, now)
        except Exception as e:
            logger.error(f"Webhook retry of {claimed['id']} could not be settled: {e}")
            _release_claim(claimed, attempts, max_attempts, str(e), now)
            outcome = "failed"
        summary[outcome] += 1

    return summary


def _retry_claimed(claimed: Dict[str, Any], attempts: int, max_attempts: int, now: datetime) -> str:
    """Re-run one claimed event and settle its row. Returns the summary bucket."""
    store = get_store()
    logger.info(f"Processing webhook retry: {claimed.get('type')} (attempt {attempts}/{max_attempts})")
    state = _rerun(claimed)

    if state.get("outcome") != "failed":
        store.update_event(claimed["id"], {
            "status": EventStatus.SUCCESS.value,
            "attempts": attempts,
            "last_error": None,
            "next_retry_at": None,
            "updated_at": isoformat(now),
        })
        logger.info(f"Webhook retry succeeded: {claimed.get('type')} (ID: {claimed['id']})")
        return "succeeded"

    error = _last_error(state)
    if not state.get("retryable", True):
        store.update_event(claimed["id"], failure_fields(error, retryable=False, attempts=attempts, now=now))
        return "failed"
    if attempts >= max_attempts:
        move_to_dead_letter(claimed, attempts, error, now)
        return "dead_lettered"
    schedule_retry(claimed["id"], error, attempts=attempts, now=now)
    return "failed"


def _release_claim(claimed: Dict[str, Any], attempts: int, max_attempts: int, error: str, now: datetime) -> None:
    """Put a claimed event back in the queue after the sweep itself failed on it.

    If the store is still unreachable the event stays RETRYING and a later sweep
    reclaims it once the lease expires.
    """
    changes = failure_fields(error, retryable=True, attempts=attempts, now=now)
    if attempts >= max_attempts:
        changes.update({"next_retry_at": None, "dead_lettered": True})
    try:
        get_store().update_event(claimed["id"], changes)
    except Exception as e:
        logger.error(f"Webhook event {claimed['id']} left claimed until its lease expires: {e}")


def replay_dead_letter(event_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Manually re-run a dead-lettered or rejected event."""
    now = now or utcnow()
    store = get_store()
    event = store.get_event(event_id)
    if event is None:
        raise EventNotFoundError(event_id)
    if event.get("status") != EventStatus.FAILED.value:
        raise WebhookError(f"Event {event_id} is {event.get('status')}, only failed events can be replayed")

    claimed = store.claim_event(event_id, EventStatus.FAILED.value, {
        "status": EventStatus.RETRYING.value,
        "updated_at": isoformat(now),
    })
    if claimed is None:
        raise WebhookError(f"Event {event_id} is already being retried")

    attempts = int(claimed.get("attempts") or 1) + 1
    logger.info(f"Manual replay of webhook event {event_id} ({claimed.get('type')})")
    state = _rerun(claimed)

    if state.get("outcome") != "failed":
        updated = store.update_event(event_id, {
            "status": EventStatus.SUCCESS.value,
            "attempts": attempts,
            "dead_lettered": False,
            "last_error": None,
            "next_retry_at": None,
            "updated_at": isoformat(now),
        })
    else:
        updated = store.update_event(event_id, {
            "status": EventStatus.FAILED.value,
            "attempts": attempts,
            "last_error": _last_error(state),
            "next_retry_at": None,
            "updated_at": isoformat(now),
        })
        logger.warning(f"Manual replay of {event_id} failed: {updated.get('last_error')}")

    return {"event": updated, "result": state.get("result")}
