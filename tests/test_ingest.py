import json
import os
import sys
import time
from unittest.mock import patch

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph.ingest import handle_lead_webhook, handle_verification, request_context
from graph.state import Platform
from tools.security import compute_signature

SECRET = "landing-secret"


def _body(data) -> bytes:
    return json.dumps(data).encode("utf-8")


class TestBatchIngestion:
    """Each lead in a batch succeeds or fails on its own."""

    def test_batch_isolation(self, store):
        body = _body({"leads": [
            {"email": "first@example.com", "firstName": "First"},
            {"firstName": "No Email"},
            {"email": "third@example.com"},
        ]})

        status, content, headers = handle_lead_webhook(Platform.LANDING_PAGE, body, {}, "203.0.113.9")

        assert status == 200
        assert content["success"] is True
        assert content["message"] == "Processed 3 lead(s)"
        assert [r["status"] for r in content["results"]] == ["created", "failed", "created"]
        assert isinstance(content["processingTime"], int)
        assert store.count_leads() == 2

    def test_duplicates_within_one_batch(self, store):
        body = _body({"leads": [{"email": "dup@example.com"}, {"email": "DUP@example.com"}]})

        _, content, _ = handle_lead_webhook(Platform.LANDING_PAGE, body, {}, "203.0.113.9")

        assert [r["status"] for r in content["results"]] == ["created", "duplicate"]
        assert store.get_lead("dup@example.com")["metadata"]["duplicateSubmissions"] == 1

    def test_facebook_envelope(self, store):
        body = _body({
            "object": "page",
            "entry": [{"changes": [{"field": "leadgen", "value": {
                "leadgen_id": "lg-7",
                "field_data": [{"name": "email", "values": ["meta@example.com"]}],
            }}]}],
        })

        status, content, _ = handle_lead_webhook(Platform.FACEBOOK, body, {}, "203.0.113.9")

        assert status == 200
        assert content["results"][0]["status"] == "created"
        lead = store.get_lead("meta@example.com")
        assert lead["source"] == "FACEBOOK_ADS"
        assert lead["metadata"]["facebookCampaigns"][0]["submittedAt"]

    def test_unrecognized_shape(self, store):
        status, content, _ = handle_lead_webhook(Platform.TIKTOK, _body({"event_type": "click"}), {}, "203.0.113.9")

        assert status == 200
        assert content["results"] == []
        assert content["message"] == "No lead data found in webhook payload"
        assert store.list_events() == []

    def test_invalid_json(self, store):
        status, content, _ = handle_lead_webhook(Platform.GENERIC, b"{not json", {}, "203.0.113.9")

        assert status == 400
        assert content["error"] == "Invalid JSON payload"
        events = store.list_events()
        assert [e["type"] for e in events] == ["generic_error"]
        assert events[0]["retryable"] is False

    def test_crash_answers_500_and_logs_event(self, store):
        with patch("graph.ingest.extract_lead_payloads", side_effect=RuntimeError("kaboom")):
            status, content, _ = handle_lead_webhook(Platform.PINTEREST, _body({"events": []}), {}, "203.0.113.9")

        assert status == 500
        assert content["error"] == "Internal server error"
        events = store.list_events()
        assert events[0]["type"] == "pinterest_error"
        assert events[0]["last_error"] == "kaboom"

    def test_item_crash_is_queued_for_retry(self, store):
        payload = {"email": "crash@example.com"}
        with patch("graph.ingest.run_lead_item", side_effect=RuntimeError("graph exploded")):
            status, content, _ = handle_lead_webhook(Platform.GENERIC, _body(payload), {}, "203.0.113.9")

        assert status == 200
        assert content["results"][0]["status"] == "failed"

        events = store.list_events()
        assert len(events) == 1
        assert events[0]["type"] == "generic_lead"
        assert events[0]["status"] == "FAILED"
        assert events[0]["retryable"] is True
        assert events[0]["payload"] == payload
        assert events[0]["context"]["ip_address"] == "203.0.113.9"
        assert events[0]["next_retry_at"] is not None
        assert events[0]["last_error"] == "Pipeline crashed: graph exploded"

    def test_request_context_for_landing_pages(self, store):
        headers = {"user-agent": "Mozilla/5.0", "referer": "https://example.com/?utm_source=newsletter"}
        handle_lead_webhook(Platform.LANDING_PAGE, _body({"email": "ctx@example.com"}), headers, "198.51.100.4")

        lead = store.get_lead("ctx@example.com")
        assert lead["utm_source"] == "newsletter"
        assert lead["metadata"]["rawPayload"]["ip_address"] == "198.51.100.4"

    def test_platform_hint_from_header_or_body(self):
        assert request_context({"x-platform": "zapier"}, "1.1.1.1", {"platform": "typeform"})["platform_hint"] == "zapier"
        assert request_context({}, "1.1.1.1", {"platform": "typeform"})["platform_hint"] == "typeform"


class TestSecurityGate:
    """Signature, timestamp and rate-limit checks in front of ingestion."""

    def setup_method(self):
        self.body = _body({"email": "gate@example.com"})

    def _signed_headers(self, body=None):
        return {
            "x-signature-256": f"sha256={compute_signature(body or self.body, SECRET)}",
            "x-timestamp": str(int(time.time())),
        }

    def test_missing_secret_is_a_server_error(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_ENABLE_SIGNATURE_VALIDATION", "true")
        monkeypatch.delenv("LANDING_PAGE_WEBHOOK_SECRET", raising=False)

        status, content, _ = handle_lead_webhook(Platform.LANDING_PAGE, self.body, {}, "1.2.3.4")

        assert status == 500
        assert content == {"error": "Webhook secret not configured"}

    def test_unsigned_request_is_rejected(self, monkeypatch, store):
        monkeypatch.setenv("WEBHOOK_ENABLE_SIGNATURE_VALIDATION", "true")
        monkeypatch.setenv("LANDING_PAGE_WEBHOOK_SECRET", SECRET)

        status, content, _ = handle_lead_webhook(Platform.LANDING_PAGE, self.body, {}, "1.2.3.4")

        assert status == 401
        assert "x-signature-256" in content["error"]
        assert store.count_leads() == 0

    def test_bad_signature_is_rejected(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_ENABLE_SIGNATURE_VALIDATION", "true")
        monkeypatch.setenv("LANDING_PAGE_WEBHOOK_SECRET", SECRET)
        headers = self._signed_headers(body=b"something else")

        status, _, _ = handle_lead_webhook(Platform.LANDING_PAGE, self.body, headers, "1.2.3.4")
        assert status == 401

    def test_signed_request_is_accepted(self, monkeypatch, store):
        monkeypatch.setenv("WEBHOOK_ENABLE_SIGNATURE_VALIDATION", "true")
        monkeypatch.setenv("LANDING_PAGE_WEBHOOK_SECRET", SECRET)

        status, content, _ = handle_lead_webhook(Platform.LANDING_PAGE, self.body, self._signed_headers(), "1.2.3.4")

        assert status == 200
        assert content["results"][0]["status"] == "created"

    def test_rate_limit(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_ENABLE_RATE_LIMITING", "true")
        monkeypatch.setenv("WEBHOOK_MAX_REQUESTS_PER_HOUR", "1")

        first, _, _ = handle_lead_webhook(Platform.LANDING_PAGE, self.body, {}, "1.2.3.4")
        second, content, headers = handle_lead_webhook(Platform.LANDING_PAGE, self.body, {}, "1.2.3.4")
        other_client, _, _ = handle_lead_webhook(Platform.LANDING_PAGE, self.body, {}, "5.6.7.8")

        assert first == 200
        assert second == 429
        assert content == {"error": "Rate limit exceeded"}
        assert headers["X-RateLimit-Limit"] == "1"
        assert int(headers["Retry-After"]) > 0
        assert other_client == 200


class TestVerification:
    """Meta subscription handshake."""

    def test_challenge_echoed(self, monkeypatch):
        monkeypatch.setenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN", "verify-me")
        params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"}

        assert handle_verification(Platform.FACEBOOK, params) == (200, "12345")

    def test_wrong_token_forbidden(self, monkeypatch):
        monkeypatch.setenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN", "verify-me")
        params = {"hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "12345"}

        assert handle_verification(Platform.FACEBOOK, params) == (403, {"error": "Forbidden"})

    def test_wrong_mode_forbidden(self, monkeypatch):
        monkeypatch.setenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN", "verify-me")
        params = {"hub.mode": "unsubscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"}

        assert handle_verification(Platform.FACEBOOK, params)[0] == 403

    def test_instagram_falls_back_to_secret(self, monkeypatch):
        monkeypatch.delenv("INSTAGRAM_WEBHOOK_VERIFY_TOKEN", raising=False)
        monkeypatch.setenv("INSTAGRAM_WEBHOOK_SECRET", "ig-secret")
        params = {"hub.mode": "subscribe", "hub.verify_token": "ig-secret", "hub.challenge": "abc"}

        assert handle_verification(Platform.INSTAGRAM, params) == (200, "abc")

    def test_no_token_configured(self, monkeypatch):
        monkeypatch.delenv("INSTAGRAM_WEBHOOK_VERIFY_TOKEN", raising=False)
        monkeypatch.delenv("INSTAGRAM_WEBHOOK_SECRET", raising=False)
        params = {"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "abc"}

        assert handle_verification(Platform.INSTAGRAM, params)[0] == 403
