import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph.state import Platform
from tools.merge import HISTORY_KEYS, build_submission_entry, merge_duplicate_submission, seed_history


def _processed(**overrides):
    lead = {
        "id": "incoming-id",
        "email": "jane@example.com",
        "status": "NEW",
        "score": 40,
        "landing_page": "https://example.com/quote",
        "utm_source": "google",
        "utm_campaign": "c-1",
        "created_at": "2024-03-01T10:00:00+00:00",
        "metadata": {
            "rawPayload": {"email": "jane@example.com"},
            "platformSpecific": {"form_id": "f-1", "ad_id": "a-1", "platform_hint": "zapier"},
        },
    }
    lead.update(overrides)
    return lead


class TestSubmissionEntries:
    def test_every_platform_has_a_history_key(self):
        assert set(HISTORY_KEYS) == set(Platform)

    def test_landing_page_entry(self):
        entry = build_submission_entry(Platform.LANDING_PAGE, _processed(), "2024-03-02T00:00:00+00:00")

        assert entry["page"] == "https://example.com/quote"
        assert entry["submittedAt"] == "2024-03-02T00:00:00+00:00"
        assert entry["formData"] == {"email": "jane@example.com"}
        assert entry["utmData"]["source"] == "google"

    def test_generic_entry(self):
        entry = build_submission_entry(Platform.GENERIC, _processed())
        assert entry["platform"] == "zapier"
        assert entry["rawData"] == {"email": "jane@example.com"}

    def test_ad_platform_entry(self):
        entry = build_submission_entry(Platform.FACEBOOK, _processed())

        assert entry["campaignId"] == "c-1"
        assert entry["formId"] == "f-1"
        assert entry["adId"] == "a-1"
        assert entry["leadData"] == {"email": "jane@example.com"}


class TestMergeDuplicateSubmission:
    """Repeat submissions extend history without changing identity."""

    def setup_method(self):
        self.existing = seed_history(
            Platform.FACEBOOK,
            _processed(id="existing-id", status="CONTACTED", assigned_to_id="agent-7", score=30),
        )

    def test_seed_history(self):
        assert len(self.existing["metadata"]["facebookCampaigns"]) == 1
        assert self.existing["metadata"]["duplicateSubmissions"] == 0

    def test_identity_and_status_preserved(self):
        merged = merge_duplicate_submission(self.existing, _processed(), Platform.FACEBOOK, "2024-03-05T00:00:00+00:00")

        assert merged["id"] == "existing-id"
        assert merged["status"] == "CONTACTED"
        assert merged["assigned_to_id"] == "agent-7"
        assert merged["metadata"]["duplicateSubmissions"] == 1
        assert merged["metadata"]["lastDuplicateAt"] == "2024-03-05T00:00:00+00:00"
        assert merged["updated_at"] == "2024-03-05T00:00:00+00:00"
        assert len(merged["metadata"]["facebookCampaigns"]) == 2

    def test_existing_record_is_not_mutated(self):
        merge_duplicate_submission(self.existing, _processed(), Platform.FACEBOOK)
        assert self.existing["metadata"]["duplicateSubmissions"] == 0

    def test_other_platform_history_starts_fresh(self):
        merged = merge_duplicate_submission(self.existing, _processed(), Platform.TIKTOK)

        assert len(merged["metadata"]["tiktokCampaigns"]) == 1
        assert len(merged["metadata"]["facebookCampaigns"]) == 1

    def test_ad_platform_score_unchanged(self):
        merged = merge_duplicate_submission(self.existing, _processed(score=90), Platform.FACEBOOK)
        assert merged["score"] == 30

    def test_landing_page_score_takes_max(self):
        higher = merge_duplicate_submission(self.existing, _processed(score=90), Platform.LANDING_PAGE)
        lower = merge_duplicate_submission(self.existing, _processed(score=5), Platform.LANDING_PAGE)

        assert higher["score"] == 90
        assert lower["score"] == 30

    def test_history_is_bounded(self, monkeypatch):
        monkeypatch.setenv("LEAD_SUBMISSION_HISTORY_LIMIT", "3")

        lead = self.existing
        for i in range(5):
            lead = merge_duplicate_submission(lead, _processed(utm_campaign=f"c-{i}"), Platform.FACEBOOK)

        history = lead["metadata"]["facebookCampaigns"]
        assert [h["campaignId"] for h in history] == ["c-2", "c-3", "c-4"]
        assert lead["metadata"]["duplicateSubmissions"] == 5
