import re
from typing import Any, Dict, List, Optional

from loguru import logger

from graph.state import InsuranceType, LeadSource, LeadStatus, Platform, UniversalLead, now_iso
from tools.mappers import map_insurance_type
from tools.store import identity_key, new_id

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-\(\)]+$")

SOURCE_WEIGHTS = {
    LeadSource.FACEBOOK_ADS.value: 10,
    LeadSource.INSTAGRAM_ADS.value: 10,
    LeadSource.GOOGLE_ADS.value: 15,
    LeadSource.TIKTOK_ADS.value: 8,
    LeadSource.PINTEREST_ADS.value: 12,
    LeadSource.SNAPCHAT_ADS.value: 8,
    LeadSource.ORGANIC_SEARCH.value: 20,
    LeadSource.REFERRAL.value: 25,
    LeadSource.DIRECT.value: 15,
    LeadSource.EMAIL.value: 10,
    LeadSource.LANDING_PAGE.value: 12,
    LeadSource.WEBSITE.value: 10,
}

PRIORITY_BOOST = {"URGENT": 30, "HIGH": 20, "MEDIUM": 10}

# Base value of a lead by plan type, scaled by its score
INSURANCE_VALUES = {
    InsuranceType.MEDICARE_ADVANTAGE.value: 500,
    InsuranceType.ACA_PLANS.value: 300,
    InsuranceType.SUPPLEMENT.value: 400,
    InsuranceType.PART_D.value: 200,
    InsuranceType.LIFE_INSURANCE.value: 800,
    InsuranceType.AUTO_INSURANCE.value: 150,
    InsuranceType.HOME_INSURANCE.value: 200,
}
DEFAULT_INSURANCE_VALUE = 100


def validate_lead_data(lead: UniversalLead) -> Dict[str, Any]:
    """Collect every problem with a mapped lead rather than stopping at the first."""
    errors: List[str] = []

    email = (lead.get("email") or "").strip()
    if not email:
        errors.append("Email is required")
    elif not EMAIL_RE.fullmatch(email):
        errors.append("Invalid email format")

    source = lead.get("source")
    if not source:
        errors.append("Source is required")
    elif source not in LeadSource.__members__:
        errors.append(f"Unknown source: {source}")

    phone = lead.get("phone")
    if phone and not PHONE_RE.fullmatch(phone):
        errors.append("Invalid phone number format")

    age = lead.get("age")
    if age is not None and (age < 0 or age > 120):
        errors.append("Invalid age")

    return {"is_valid": not errors, "errors": errors}


def calculate_lead_score(lead: UniversalLead) -> int:
    """
    Score a lead from 0 to 100.

    Points come from contact completeness, a specific insurance interest,
    engagement signals, the quality of the acquisition source, campaign
    tracking, repeat visits and an explicit priority. The total is capped at 100.
    """
    score = 0

    if lead.get("email") and lead.get("first_name"):
        score += 10
    if lead.get("phone"):
        score += 15
    if lead.get("last_name"):
        score += 5
    if lead.get("zip_code"):
        score += 10
    if lead.get("company"):
        score += 10

    age = lead.get("age")
    if age:
        if age >= 65:
            score += 20
        elif age >= 50:
            score += 10
        else:
            score += 5

    insurance_type = lead.get("insurance_type")
    if insurance_type and insurance_type != InsuranceType.OTHER.value:
        score += 15
    if lead.get("current_insurance"):
        score += 10

    page_views = lead.get("page_views") or 0
    if page_views > 1:
        score += min(page_views * 2, 10)
    if (lead.get("session_duration") or 0) > 300:
        score += 10
    completion = lead.get("form_completion_time")
    if completion and completion < 120:
        score += 5

    score += SOURCE_WEIGHTS.get((lead.get("source") or "").upper(), 0)

    if lead.get("utm_campaign"):
        score += 5
    if lead.get("utm_source"):
        score += 5

    previous_visits = lead.get("previous_visits") or 0
    if previous_visits > 0:
        score += min(previous_visits * 3, 15)

    score += PRIORITY_BOOST.get((lead.get("priority") or "").upper(), 0)

    return min(score, 100)


def _tag_slug(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "-", value)


def generate_lead_tags(lead: UniversalLead) -> List[str]:
    tags = []

    age = lead.get("age")
    if age:
        tags.append("Age-65-Plus" if age >= 65 else "Age-50-64" if age >= 50 else "Age-Under-50")
    if lead.get("source"):
        tags.append(f"Source-{_tag_slug(lead['source'])}")
    insurance_type = lead.get("insurance_type")
    if insurance_type and insurance_type != InsuranceType.OTHER.value:
        tags.append(insurance_type.replace("_", "-"))
    if (lead.get("page_views") or 0) > 5:
        tags.append("High-Engagement")
    if (lead.get("session_duration") or 0) > 600:
        tags.append("Long-Session")
    if (lead.get("previous_visits") or 0) > 0:
        tags.append("Returning-Visitor")
    if lead.get("state"):
        tags.append(f"State-{lead['state']}")
    if lead.get("zip_code"):
        tags.append(f"Zip-{lead['zip_code'][:3]}")
    if lead.get("utm_campaign"):
        tags.append(f"Campaign-{_tag_slug(lead['utm_campaign'])}")
    if lead.get("priority"):
        tags.append(f"Priority-{lead['priority']}")

    return [tag for tag in tags if tag]


def calculate_estimated_value(lead: UniversalLead, score: Optional[int] = None) -> int:
    """Plan-type base value scaled by the lead score, rounded half up."""
    base = INSURANCE_VALUES.get(map_insurance_type(lead.get("insurance_type")), DEFAULT_INSURANCE_VALUE)
    score = calculate_lead_score(lead) if score is None else score
    return (base * score + 50) // 100


def process_lead_data(
    lead: UniversalLead,
    platform: Optional[Platform] = None,
    default_status: str = LeadStatus.NEW.value,
) -> Dict[str, Any]:
    """
    Turn a validated universal lead into a storable record.

    Pure apart from the generated id and timestamps: it never reads or writes
    the store, so the dedupe step decides whether this record is inserted or
    merged into an existing lead.
    """
    score = calculate_lead_score(lead)
    tags = generate_lead_tags(lead)
    now = now_iso()

    platform_value = Platform(platform).value if platform else None
    logger.debug(f"Processed {platform_value or 'unknown'} lead {lead.get('email')} with score {score}")

    return {
        "id": new_id(),
        "email": identity_key(lead.get("email", "")),
        "first_name": lead.get("first_name") or "",
        "last_name": lead.get("last_name"),
        "phone": lead.get("phone"),
        "company": lead.get("company"),
        "source": lead.get("source"),
        "status": default_status,
        "score": score,
        "tags": tags,
        "insurance_type": map_insurance_type(lead.get("insurance_type")),
        "estimated_value": calculate_estimated_value(lead, score),
        "utm_source": lead.get("utm_source"),
        "utm_medium": lead.get("utm_medium"),
        "utm_campaign": lead.get("utm_campaign"),
        "utm_term": lead.get("utm_term"),
        "utm_content": lead.get("utm_content"),
        "landing_page": lead.get("landing_page"),
        "metadata": {
            "platform": platform_value,
            "rawPayload": lead.get("raw_payload") or {},
            "platformSpecific": lead.get("platform_specific") or {},
            "city": lead.get("city"),
            "state": lead.get("state"),
            "country": lead.get("country"),
            "zipCode": lead.get("zip_code"),
            "notes": lead.get("notes"),
            "interests": lead.get("interests"),
            "priority": lead.get("priority"),
            "currentInsurance": lead.get("current_insurance"),
            "submittedAt": lead.get("submitted_at"),
            "processingTimestamp": now,
        },
        "created_at": now,
        "updated_at": now,
        "last_contact_at": None,
        "contacted_at": None,
        "converted_at": None,
        "assigned_to_id": None,
    }
