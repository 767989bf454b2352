from datetime import datetime, timezone
from enum import Enum
from typing import TypedDict, Optional, List, Dict, Any


class Platform(str, Enum):
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    GOOGLE = "google"
    TIKTOK = "tiktok"
    PINTEREST = "pinterest"
    SNAPCHAT = "snapchat"
    LANDING_PAGE = "landing_page"
    GENERIC = "generic"


class LeadSource(str, Enum):
    FACEBOOK_ADS = "FACEBOOK_ADS"
    INSTAGRAM_ADS = "INSTAGRAM_ADS"
    GOOGLE_ADS = "GOOGLE_ADS"
    TIKTOK_ADS = "TIKTOK_ADS"
    PINTEREST_ADS = "PINTEREST_ADS"
    SNAPCHAT_ADS = "SNAPCHAT_ADS"
    LANDING_PAGE = "LANDING_PAGE"
    ORGANIC_SEARCH = "ORGANIC_SEARCH"
    REFERRAL = "REFERRAL"
    DIRECT = "DIRECT"
    EMAIL = "EMAIL"
    WEBSITE = "WEBSITE"
    OTHER = "OTHER"


class InsuranceType(str, Enum):
    MEDICARE_ADVANTAGE = "MEDICARE_ADVANTAGE"
    ACA_PLANS = "ACA_PLANS"
    SUPPLEMENT = "SUPPLEMENT"
    PART_D = "PART_D"
    LIFE_INSURANCE = "LIFE_INSURANCE"
    AUTO_INSURANCE = "AUTO_INSURANCE"
    HOME_INSURANCE = "HOME_INSURANCE"
    OTHER = "OTHER"


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    CONVERTED = "CONVERTED"
    LOST = "LOST"
    UNQUALIFIED = "UNQUALIFIED"


class ActivityType(str, Enum):
    STATUS_CHANGED = "STATUS_CHANGED"
    ASSIGNED = "ASSIGNED"
    FORM_SUBMITTED = "FORM_SUBMITTED"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"
    NOTE_ADDED = "NOTE_ADDED"


class EventStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class AlertType(str, Enum):
    ERROR_RATE = "ERROR_RATE"
    PROCESSING_TIME = "PROCESSING_TIME"
    VOLUME_SPIKE = "VOLUME_SPIKE"
    DEAD_LETTER_QUEUE = "DEAD_LETTER_QUEUE"


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


SEVERITY_RANK = {
    AlertSeverity.LOW.value: 0,
    AlertSeverity.MEDIUM.value: 1,
    AlertSeverity.HIGH.value: 2,
    AlertSeverity.CRITICAL.value: 3,
}


class Stage(str, Enum):
    """Where a single lead item is in the ingestion pipeline."""
    RECEIVED = "RECEIVED"
    MAPPED = "MAPPED"
    VALIDATED = "VALIDATED"
    PROCESSED = "PROCESSED"
    CREATED = "CREATED"
    DUPLICATE_MERGED = "DUPLICATE_MERGED"
    LOGGED = "LOGGED"
    FAILED = "FAILED"


class UniversalLead(TypedDict, total=False):
    """Platform-neutral lead produced by the mappers."""
    email: str
    first_name: str
    last_name: Optional[str]
    phone: Optional[str]
    company: Optional[str]
    source: str
    utm_source: Optional[str]
    utm_medium: Optional[str]
    utm_campaign: Optional[str]
    utm_term: Optional[str]
    utm_content: Optional[str]
    landing_page: Optional[str]
    referrer: Optional[str]
    user_agent: Optional[str]
    ip_address: Optional[str]
    zip_code: Optional[str]
    city: Optional[str]
    state: Optional[str]
    country: Optional[str]
    age: Optional[int]
    page_views: Optional[int]
    session_duration: Optional[int]
    form_completion_time: Optional[int]
    previous_visits: Optional[int]
    priority: Optional[str]
    insurance_type: Optional[str]        # InsuranceType value
    current_insurance: Optional[str]
    notes: Optional[str]
    interests: Optional[List[str]]
    submitted_at: Optional[str]
    raw_payload: Dict[str, Any]
    platform_specific: Dict[str, Any]


class Lead(TypedDict, total=False):
    id: str
    email: str
    first_name: str
    last_name: Optional[str]
    phone: Optional[str]
    company: Optional[str]
    source: str
    status: str
    score: int
    tags: List[str]
    insurance_type: str
    estimated_value: int
    utm_source: Optional[str]
    utm_medium: Optional[str]
    utm_campaign: Optional[str]
    utm_term: Optional[str]
    utm_content: Optional[str]
    landing_page: Optional[str]
    metadata: Dict[str, Any]
    created_at: str
    updated_at: str
    last_contact_at: Optional[str]
    contacted_at: Optional[str]
    converted_at: Optional[str]
    assigned_to_id: Optional[str]


class LeadActivity(TypedDict, total=False):
    id: str
    lead_id: str
    type: str
    description: str
    user_id: Optional[str]
    metadata: Dict[str, Any]
    created_at: str


class WebhookEvent(TypedDict, total=False):
    id: str
    platform: str
    type: str
    payload: Any
    context: Dict[str, Any]
    status: str
    attempts: int
    retryable: bool
    last_error: Optional[str]
    next_retry_at: Optional[str]
    dead_lettered: bool
    processed_at: Optional[str]
    created_at: str
    updated_at: str


class WebhookPerformanceLog(TypedDict, total=False):
    id: str
    platform: str
    endpoint: str
    method: str
    status_code: int
    processing_time: float
    payload_size: int
    timestamp: str
    error_message: Optional[str]
    user_agent: Optional[str]
    ip_address: Optional[str]
    metadata: Dict[str, Any]


class WebhookAlert(TypedDict, total=False):
    id: str
    type: str
    severity: str
    platform: Optional[str]
    message: str
    threshold: float
    current_value: float
    occurrences: int
    created_at: str
    last_seen_at: str
    resolved: bool
    resolved_at: Optional[str]


class LeadState(TypedDict, total=False):
    """State shape for the per-item ingestion workflow."""
    platform: str                        # Platform value
    raw: Dict[str, Any]                  # original lead payload
    context: Dict[str, Any]              # request-derived context (ip, user agent, referrer, platform hint)
    event_id: Optional[str]              # set when re-running a stored event
    stage: str                           # Stage value
    universal: Dict[str, Any]            # UniversalLead
    validation_errors: List[str]
    processed: Dict[str, Any]            # storable lead
    lead: Dict[str, Any]                 # persisted lead after dedupe
    outcome: str                         # "created" | "duplicate" | "failed"
    retryable: bool
    errors: List[str]
    result: Dict[str, Any]               # per-item response entry


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def now_iso() -> str:
    return isoformat(utcnow())


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
