import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph.state import Platform
from tools.lead_processor import (
    calculate_estimated_value,
    calculate_lead_score,
    generate_lead_tags,
    process_lead_data,
    validate_lead_data,
)


class TestValidateLeadData:
    """Validation reports every problem at once."""

    def test_valid_lead(self):
        outcome = validate_lead_data({"email": "ok@example.com", "source": "LANDING_PAGE", "phone": "+1 (555) 010-0100"})
        assert outcome == {"is_valid": True, "errors": []}

    def test_collects_all_errors(self):
        outcome = validate_lead_data({"email": "not-an-email", "source": "NOPE", "phone": "call me", "age": 150})

        assert outcome["is_valid"] is False
        assert outcome["errors"] == [
            "Invalid email format",
            "Unknown source: NOPE",
            "Invalid phone number format",
            "Invalid age",
        ]

    def test_missing_required_fields(self):
        outcome = validate_lead_data({})
        assert "Email is required" in outcome["errors"]
        assert "Source is required" in outcome["errors"]

    def test_first_name_is_optional(self):
        assert validate_lead_data({"email": "a@b.co", "source": "OTHER", "first_name": ""})["is_valid"]


class TestLeadScoring:
    """Platform-weighted scoring policy."""

    def test_minimal_google_lead(self):
        # 10 for email + first name, 15 for the Google Ads source
        assert calculate_lead_score({"email": "a@b.co", "first_name": "A", "source": "GOOGLE_ADS"}) == 25

    def test_unknown_source_adds_nothing(self):
        assert calculate_lead_score({"email": "a@b.co", "source": "OTHER"}) == 0

    def test_engagement_and_priority(self):
        lead = {
            "email": "a@b.co",
            "source": "LANDING_PAGE",
            "page_views": 3,
            "session_duration": 400,
            "form_completion_time": 60,
            "previous_visits": 2,
            "priority": "urgent",
        }
        # 12 source + 6 views + 10 session + 5 fast form + 6 visits + 30 priority
        assert calculate_lead_score(lead) == 69

    def test_score_is_capped(self):
        lead = {
            "email": "a@b.co",
            "first_name": "A",
            "last_name": "B",
            "phone": "555",
            "zip_code": "90210",
            "company": "Acme",
            "age": 70,
            "source": "REFERRAL",
            "utm_source": "x",
            "utm_campaign": "y",
            "priority": "URGENT",
        }
        assert calculate_lead_score(lead) == 100

    def test_tags(self):
        tags = generate_lead_tags({
            "source": "LANDING_PAGE",
            "utm_campaign": "spring sale",
            "page_views": 8,
            "previous_visits": 1,
            "zip_code": "90210",
            "priority": "HIGH",
        })

        assert "Source-LANDING-PAGE" in tags
        assert "Campaign-spring-sale" in tags
        assert "High-Engagement" in tags
        assert "Returning-Visitor" in tags
        assert "Zip-902" in tags
        assert "Priority-HIGH" in tags


class TestProcessLeadData:
    """Conversion into a storable record never touches the store."""

    def test_process_shapes_record(self, store):
        universal = {
            "email": "  Mixed.Case@Example.COM ",
            "first_name": "Mia",
            "source": "LANDING_PAGE",
            "utm_campaign": "spring",
            "raw_payload": {"email": "Mixed.Case@Example.COM"},
            "platform_specific": {"form": "hero"},
        }
        lead = process_lead_data(universal, platform=Platform.LANDING_PAGE)

        assert lead["email"] == "mixed.case@example.com"
        assert lead["status"] == "NEW"
        assert lead["score"] == calculate_lead_score(universal)
        assert lead["metadata"]["rawPayload"] == {"email": "Mixed.Case@Example.COM"}
        assert lead["metadata"]["platformSpecific"] == {"form": "hero"}
        assert lead["metadata"]["platform"] == "landing_page"
        assert lead["metadata"]["processingTimestamp"]
        assert store.count_leads() == 0

    def test_default_status_override(self):
        lead = process_lead_data({"email": "a@b.co", "source": "OTHER"}, default_status="QUALIFIED")
        assert lead["status"] == "QUALIFIED"


class TestInsuranceInterest:
    """A known plan type raises the score, adds a tag and sets the lead value."""

    def setup_method(self):
        self.lead = {"email": "a@b.co", "first_name": "A", "source": "GOOGLE_ADS", "insurance_type": "MEDICARE_ADVANTAGE"}

    def test_known_type_and_current_insurance_score(self):
        # 25 base from test_minimal_google_lead, 15 for the plan type, 10 for current coverage
        assert calculate_lead_score(self.lead) == 40
        assert calculate_lead_score({**self.lead, "current_insurance": "Humana"}) == 50

    def test_other_type_adds_nothing(self):
        assert calculate_lead_score({**self.lead, "insurance_type": "OTHER"}) == 25
        assert "OTHER" not in generate_lead_tags({**self.lead, "insurance_type": "OTHER"})

    def test_type_tag(self):
        assert "MEDICARE-ADVANTAGE" in generate_lead_tags(self.lead)
        assert "LIFE-INSURANCE" in generate_lead_tags({"insurance_type": "LIFE_INSURANCE"})

    def test_estimated_value(self):
        # 500 base for Medicare Advantage scaled by a score of 40
        assert calculate_estimated_value(self.lead) == 200
        # unknown types use the 100 base; 150 * 31% rounds half up
        assert calculate_estimated_value({"email": "a@b.co"}, score=30) == 30
        assert calculate_estimated_value({"insurance_type": "AUTO_INSURANCE"}, score=31) == 47

    def test_processed_record_carries_type_and_value(self):
        lead = process_lead_data({**self.lead, "current_insurance": "Humana"}, platform=Platform.GOOGLE)

        assert lead["insurance_type"] == "MEDICARE_ADVANTAGE"
        assert lead["score"] == 50
        assert lead["estimated_value"] == 250
        assert lead["metadata"]["currentInsurance"] == "Humana"

    def test_missing_type_defaults_to_other(self):
        lead = process_lead_data({"email": "a@b.co", "source": "OTHER"})
        assert lead["insurance_type"] == "OTHER"
        assert lead["estimated_value"] == 0
