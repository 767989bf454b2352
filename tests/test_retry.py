import os
import sys
from datetime import timedelta
from unittest.mock import patch

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph.pipeline import run_lead_item
from graph.retries import process_webhook_retries, replay_dead_letter
from graph.state import Platform, isoformat, utcnow
from tools.errors import EventNotFoundError, StoreError, WebhookError
from tools.retry import (
    calculate_retry_delay,
    get_dead_letter_queue_stats,
    get_due_retries,
    schedule_retry,
)


class TestBackoff:
    def test_exponential_delay(self):
        assert calculate_retry_delay(1) == 120
        assert calculate_retry_delay(2) == 240
        assert calculate_retry_delay(4) == 960

    def test_delay_is_capped(self):
        assert calculate_retry_delay(6) == 3600
        assert calculate_retry_delay(20) == 3600

    def test_delay_follows_config(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_RETRY_BASE_DELAY_SECONDS", "10")
        monkeypatch.setenv("WEBHOOK_RETRY_MAX_DELAY_SECONDS", "30")
        assert calculate_retry_delay(1) == 20
        assert calculate_retry_delay(3) == 30


class TestDueRetries:
    """Only failed, retryable, not-yet-exhausted events past their schedule are due."""

    def setup_method(self):
        self.now = utcnow()

    def _event(self, store, **fields):
        event = {
            "platform": "tiktok",
            "type": "tiktok_lead",
            "status": "FAILED",
            "attempts": 1,
            "retryable": True,
            "dead_lettered": False,
            "next_retry_at": isoformat(self.now - timedelta(minutes=1)),
            "created_at": isoformat(self.now - timedelta(minutes=5)),
        }
        event.update(fields)
        return store.add_event(event)

    def test_due_filtering(self, store):
        due = self._event(store)
        self._event(store, next_retry_at=isoformat(self.now + timedelta(minutes=5)))
        self._event(store, retryable=False, next_retry_at=None)
        self._event(store, dead_lettered=True)
        self._event(store, attempts=5)
        self._event(store, status="SUCCESS")

        assert [e["id"] for e in get_due_retries(self.now)] == [due["id"]]

    def test_oldest_schedule_first_and_batch_limit(self, store):
        later = self._event(store, next_retry_at=isoformat(self.now - timedelta(minutes=1)))
        earlier = self._event(store, next_retry_at=isoformat(self.now - timedelta(minutes=10)))

        assert [e["id"] for e in get_due_retries(self.now)] == [earlier["id"], later["id"]]
        assert len(get_due_retries(self.now, limit=1)) == 1

    def test_schedule_retry_keeps_attempts(self, store):
        event = self._event(store, attempts=3, retryable=False, next_retry_at=None)

        updated = schedule_retry(event["id"], "transient", now=self.now)

        assert updated["attempts"] == 3
        assert updated["retryable"] is True
        assert updated["next_retry_at"] == isoformat(self.now + timedelta(seconds=480))
        assert schedule_retry("missing", "x") is None

    def test_dead_letter_stats(self, store):
        self._event(store)
        self._event(store, attempts=3)
        self._event(store, status="RETRYING")
        self._event(store, retryable=False)
        self._event(store, dead_lettered=True, attempts=5, updated_at=isoformat(self.now))
        self._event(store, status="SUCCESS")

        stats = get_dead_letter_queue_stats(self.now)

        assert stats["pending"] == 1
        assert stats["retrying"] == 2
        assert stats["rejected"] == 1
        assert stats["dead_lettered"] == 1
        assert stats["total"] == 5
        assert stats["by_type"] == {"tiktok_lead": 1}
        assert stats["recent_24h"] == 1


class TestRetrySweep:
    """The sweep re-runs due events through the pipeline."""

    def setup_method(self):
        self.payload = {"email": "retry@example.com", "firstName": "Rita"}

    def _failed_event(self, store):
        with patch.object(store, "insert_lead", side_effect=StoreError("redis down")):
            state = run_lead_item(Platform.LANDING_PAGE, self.payload)
        return store.get_event(state["event_id"])

    def test_sweep_succeeds_after_storage_recovers(self, store):
        event = self._failed_event(store)
        assert event["attempts"] == 1

        summary = process_webhook_retries(utcnow() + timedelta(hours=1))

        assert summary == {"processed": 1, "succeeded": 1, "failed": 0, "dead_lettered": 0, "skipped": 0}
        updated = store.get_event(event["id"])
        assert updated["status"] == "SUCCESS"
        assert updated["attempts"] == 2
        assert updated["next_retry_at"] is None
        assert store.get_lead("retry@example.com") is not None

    def test_not_due_yet(self, store):
        self._failed_event(store)
        assert process_webhook_retries(utcnow())["processed"] == 0

    def test_exhaustion_moves_to_dead_letter(self, store):
        event = self._failed_event(store)
        start = utcnow()

        with patch.object(store, "insert_lead", side_effect=StoreError("redis down")), \
                patch("graph.retries.send_dead_letter_alert") as dead_letter_alert:
            summaries = [process_webhook_retries(start + timedelta(hours=2 * (i + 1))) for i in range(4)]

        assert [s["failed"] for s in summaries] == [1, 1, 1, 0]
        assert summaries[-1]["dead_lettered"] == 1

        dead = store.get_event(event["id"])
        assert dead["status"] == "FAILED"
        assert dead["attempts"] == 5
        assert dead["dead_lettered"] is True
        assert dead["next_retry_at"] is None
        dead_letter_alert.assert_called_once()

        alerts = store.list_alerts(resolved=False)
        assert [a["type"] for a in alerts] == ["DEAD_LETTER_QUEUE"]
        assert alerts[0]["severity"] == "CRITICAL"

        # exhausted events are never picked up again
        assert process_webhook_retries(start + timedelta(days=1))["processed"] == 0
        assert get_dead_letter_queue_stats()["dead_lettered"] == 1

    def test_rescheduled_backoff_grows(self, store):
        event = self._failed_event(store)
        sweep_at = utcnow() + timedelta(hours=1)

        with patch.object(store, "insert_lead", side_effect=StoreError("redis down")):
            process_webhook_retries(sweep_at)

        updated = store.get_event(event["id"])
        assert updated["attempts"] == 2
        assert updated["next_retry_at"] == isoformat(sweep_at + timedelta(seconds=240))
        assert updated["status"] == "FAILED"

    def test_claimed_event_is_skipped(self, store):
        event = self._failed_event(store)
        original_claim = store.claim_event

        def claim_after_another_worker(event_id, expected_status, changes, **kwargs):
            original_claim(event_id, expected_status, changes, **kwargs)
            return original_claim(event_id, expected_status, changes, **kwargs)

        with patch.object(store, "claim_event", side_effect=claim_after_another_worker):
            summary = process_webhook_retries(utcnow() + timedelta(hours=1))

        assert summary["skipped"] == 1
        assert summary["processed"] == 0
        assert store.get_event(event["id"])["status"] == "RETRYING"

    def test_storage_outage_mid_sweep_requeues_every_event(self, store):
        first = self._failed_event(store)
        self.payload = {"email": "second@example.com", "firstName": "Sam"}
        second = self._failed_event(store)
        sweep_at = utcnow() + timedelta(hours=1)

        # rerun fails on lookup, then rescheduling fails on the event read
        with patch.object(store, "get_lead", side_effect=StoreError("redis down")), \
                patch.object(store, "get_event", side_effect=StoreError("redis down")):
            summary = process_webhook_retries(sweep_at)

        assert summary == {"processed": 2, "succeeded": 0, "failed": 2, "dead_lettered": 0, "skipped": 0}
        for event in (first, second):
            updated = store.get_event(event["id"])
            assert updated["status"] == "FAILED"
            assert updated["attempts"] == 2
            assert updated["next_retry_at"] == isoformat(sweep_at + timedelta(seconds=240))

        later = process_webhook_retries(sweep_at + timedelta(hours=1))
        assert later["succeeded"] == 2
        assert store.get_lead("second@example.com") is not None

    def test_abandoned_claim_is_reclaimed_after_lease(self, store):
        event = self._failed_event(store)
        claimed_at = utcnow()
        store.update_event(event["id"], {"status": "RETRYING", "updated_at": isoformat(claimed_at)})

        assert get_due_retries(claimed_at + timedelta(seconds=60)) == []
        assert [e["id"] for e in get_due_retries(claimed_at + timedelta(seconds=301))] == [event["id"]]

        summary = process_webhook_retries(claimed_at + timedelta(minutes=10))

        assert summary["succeeded"] == 1
        updated = store.get_event(event["id"])
        assert updated["status"] == "SUCCESS"
        assert updated["attempts"] == 2

    def test_store_down_while_settling_leaves_claim_for_lease(self, store):
        event = self._failed_event(store)
        sweep_at = utcnow() + timedelta(hours=1)

        with patch.object(store, "insert_lead", side_effect=StoreError("redis down")), \
                patch.object(store, "update_event", side_effect=StoreError("redis down")), \
                patch.object(store, "get_event", side_effect=StoreError("redis down")):
            summary = process_webhook_retries(sweep_at)

        assert summary["failed"] == 1
        assert store.get_event(event["id"])["status"] == "RETRYING"
        assert [e["id"] for e in get_due_retries(sweep_at + timedelta(minutes=10))] == [event["id"]]


class TestReplay:
    def test_replay_dead_letter(self, store):
        event = store.add_event({
            "platform": "generic",
            "type": "generic_lead",
            "payload": {"email": "replayed@example.com"},
            "context": {},
            "status": "FAILED",
            "attempts": 5,
            "retryable": True,
            "dead_lettered": True,
        })

        outcome = replay_dead_letter(event["id"])

        assert outcome["result"]["status"] == "created"
        assert outcome["event"]["status"] == "SUCCESS"
        assert outcome["event"]["dead_lettered"] is False
        assert outcome["event"]["attempts"] == 6

    def test_replay_failure_stays_failed(self, store):
        event = store.add_event({
            "platform": "generic",
            "type": "generic_lead",
            "payload": {"email": "still-bad"},
            "status": "FAILED",
            "attempts": 1,
            "retryable": False,
        })

        outcome = replay_dead_letter(event["id"])

        assert outcome["result"]["status"] == "failed"
        assert outcome["event"]["status"] == "FAILED"
        assert outcome["event"]["last_error"] == "Invalid email format"

    def test_unknown_event(self):
        with pytest.raises(EventNotFoundError):
            replay_dead_letter("missing")

    def test_successful_event_cannot_be_replayed(self, store):
        event = store.add_event({"platform": "generic", "type": "generic_lead", "status": "SUCCESS"})
        with pytest.raises(WebhookError):
            replay_dead_letter(event["id"])
