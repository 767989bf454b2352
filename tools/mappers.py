import re
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from loguru import logger

from graph.state import InsuranceType, LeadSource, Platform, UniversalLead, now_iso
from tools.errors import MappingError

UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")

# Spellings forms use for a plan type, after upper-casing and replacing non-alphanumerics with "_"
INSURANCE_TYPE_ALIASES: Dict[str, InsuranceType] = {
    "MEDICARE": InsuranceType.MEDICARE_ADVANTAGE,
    "MEDICARE_ADVANTAGE": InsuranceType.MEDICARE_ADVANTAGE,
    "MEDICARE_ADV": InsuranceType.MEDICARE_ADVANTAGE,
    "MEDIGAP": InsuranceType.SUPPLEMENT,
    "MEDICARE_SUPPLEMENT": InsuranceType.SUPPLEMENT,
    "SUPPLEMENT": InsuranceType.SUPPLEMENT,
    "SUPP": InsuranceType.SUPPLEMENT,
    "ACA": InsuranceType.ACA_PLANS,
    "ACA_PLANS": InsuranceType.ACA_PLANS,
    "AFFORDABLE_CARE_ACT": InsuranceType.ACA_PLANS,
    "MARKETPLACE": InsuranceType.ACA_PLANS,
    "HEALTH_INSURANCE": InsuranceType.ACA_PLANS,
    "PART_D": InsuranceType.PART_D,
    "PARTD": InsuranceType.PART_D,
    "PRESCRIPTION": InsuranceType.PART_D,
    "RX": InsuranceType.PART_D,
    "LIFE": InsuranceType.LIFE_INSURANCE,
    "LIFE_INSURANCE": InsuranceType.LIFE_INSURANCE,
    "TERM_LIFE": InsuranceType.LIFE_INSURANCE,
    "WHOLE_LIFE": InsuranceType.LIFE_INSURANCE,
    "AUTO": InsuranceType.AUTO_INSURANCE,
    "AUTO_INSURANCE": InsuranceType.AUTO_INSURANCE,
    "CAR": InsuranceType.AUTO_INSURANCE,
    "VEHICLE": InsuranceType.AUTO_INSURANCE,
    "HOME": InsuranceType.HOME_INSURANCE,
    "HOME_INSURANCE": InsuranceType.HOME_INSURANCE,
    "HOMEOWNERS": InsuranceType.HOME_INSURANCE,
    "PROPERTY": InsuranceType.HOME_INSURANCE,
}


def _first(*values: Any) -> Any:
    """First value that is not None or an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
        if value is None:
            return None
    value = str(value).strip()
    return value or None


def _split_name(full_name: Optional[str]) -> List[Optional[str]]:
    if not full_name:
        return [None, None]
    parts = full_name.split()
    return [parts[0], " ".join(parts[1:]) or None]


def _require_email(platform: Platform, email: Optional[str]) -> str:
    if not email:
        raise MappingError(f"email not found in {platform.value} payload")
    return email.strip()


def _field_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Meta lead forms send ``field_data: [{name, values: [...]}]``."""
    fields = {}
    for field in payload.get("field_data") or []:
        if isinstance(field, dict) and field.get("name"):
            fields[field["name"]] = field.get("values")
    return fields


def _meta_mapper(platform: Platform, source: LeadSource, utm_source: str) -> Callable[[Dict[str, Any]], UniversalLead]:
    def mapper(payload: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> UniversalLead:
        fields = _field_data(payload)
        full_first, full_last = _split_name(_text(_first(payload.get("full_name"), fields.get("full_name"))))
        email = _text(_first(payload.get("email"), fields.get("email")))
        return {
            "email": _require_email(platform, email),
            "first_name": _text(_first(payload.get("first_name"), fields.get("first_name"), full_first)) or "",
            "last_name": _text(_first(payload.get("last_name"), fields.get("last_name"), full_last)),
            "phone": _text(_first(payload.get("phone_number"), fields.get("phone_number"))),
            "company": _text(_first(payload.get("company_name"), fields.get("company_name"))),
            "zip_code": _text(_first(payload.get("zip_code"), fields.get("zip_code"))),
            "city": _text(fields.get("city")),
            "state": _text(fields.get("state")),
            "country": _text(fields.get("country")),
            "source": source.value,
            "utm_source": utm_source,
            "utm_medium": "paid_social",
            "utm_campaign": _text(_first(payload.get("campaign_name"), payload.get("campaign_id"), payload.get("ad_id"))),
            "landing_page": _text(payload.get("page_url")),
            "submitted_at": _text(payload.get("created_time")) or now_iso(),
            "raw_payload": payload,
            "platform_specific": {
                "leadgen_id": payload.get("leadgen_id") or payload.get("id"),
                "form_id": payload.get("form_id"),
                "ad_id": payload.get("ad_id"),
                "adgroup_id": payload.get("adgroup_id"),
                "page_id": payload.get("page_id"),
                "campaign_id": payload.get("campaign_id"),
                "fields": {name: values for name, values in fields.items()},
            },
        }
    mapper.__name__ = f"map_{platform.value}"
    return mapper


map_facebook = _meta_mapper(Platform.FACEBOOK, LeadSource.FACEBOOK_ADS, "facebook")
map_instagram = _meta_mapper(Platform.INSTAGRAM, LeadSource.INSTAGRAM_ADS, "instagram")


def map_google(payload: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> UniversalLead:
    columns = {}
    for column in payload.get("user_column_data") or []:
        if isinstance(column, dict) and column.get("column_id"):
            columns[column["column_id"].upper()] = column.get("string_value")
    full_first, full_last = _split_name(_text(columns.get("FULL_NAME")))

    return {
        "email": _require_email(Platform.GOOGLE, _text(_first(payload.get("email"), columns.get("EMAIL")))),
        "first_name": _text(_first(payload.get("first_name"), columns.get("FIRST_NAME"), full_first)) or "",
        "last_name": _text(_first(payload.get("last_name"), columns.get("LAST_NAME"), full_last)),
        "phone": _text(_first(payload.get("phone_number"), columns.get("PHONE_NUMBER"))),
        "company": _text(_first(payload.get("company_name"), columns.get("COMPANY_NAME"))),
        "zip_code": _text(_first(payload.get("zip_code"), columns.get("POSTAL_CODE"), columns.get("ZIP_CODE"))),
        "city": _text(columns.get("CITY")),
        "country": _text(columns.get("COUNTRY")),
        "source": LeadSource.GOOGLE_ADS.value,
        "utm_source": "google",
        "utm_medium": "paid_search",
        "utm_campaign": _text(_first(payload.get("campaign_id"), payload.get("campaign_name"))),
        "landing_page": _text(payload.get("click_url")),
        "submitted_at": _text(payload.get("lead_gen_time")) or now_iso(),
        "raw_payload": payload,
        "platform_specific": {
            "lead_id": payload.get("lead_id"),
            "gcl_id": payload.get("gcl_id"),
            "form_id": payload.get("form_id"),
            "campaign_id": payload.get("campaign_id"),
            "adgroup_id": payload.get("adgroup_id"),
            "creative_id": payload.get("creative_id"),
            "columns": columns,
        },
    }


def _nested_mapper(
    platform: Platform,
    source: LeadSource,
    utm_source: str,
    containers: List[str],
    id_keys: List[str],
    time_keys: List[str],
) -> Callable[[Dict[str, Any]], UniversalLead]:
    """Mapper for platforms that nest the contact details one level down."""

    def mapper(payload: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> UniversalLead:
        nested = [_as_dict(payload.get(name)) for name in containers]

        def pick(*keys: str) -> Any:
            for key in keys:
                value = _first(payload.get(key), *(n.get(key) for n in nested))
                if value is not None:
                    return value
            return None

        full_first, full_last = _split_name(_text(pick("full_name", "name")))
        specific = {key: payload.get(key) for key in id_keys}
        for n in nested:
            specific.update({k: v for k, v in n.items() if k not in ("email", "phone")})

        return {
            "email": _require_email(platform, _text(pick("email"))),
            "first_name": _text(_first(pick("first_name"), full_first)) or "",
            "last_name": _text(_first(pick("last_name"), full_last)),
            "phone": _text(pick("phone", "phone_number")),
            "company": _text(pick("company", "company_name")),
            "zip_code": _text(pick("zip_code", "postal_code")),
            "city": _text(pick("city")),
            "state": _text(pick("state")),
            "country": _text(pick("country")),
            "age": _as_int(pick("age")),
            "source": source.value,
            "utm_source": utm_source,
            "utm_medium": "paid_social",
            "utm_campaign": _text(_first(payload.get("campaign_id"), payload.get("campaign_name"))),
            "landing_page": _text(payload.get("click_url")),
            "submitted_at": _text(_first(*(payload.get(k) for k in time_keys))) or now_iso(),
            "raw_payload": payload,
            "platform_specific": specific,
        }

    mapper.__name__ = f"map_{platform.value}"
    return mapper


map_tiktok = _nested_mapper(
    Platform.TIKTOK, LeadSource.TIKTOK_ADS, "tiktok",
    containers=["lead_info", "form_data"],
    id_keys=["ad_group_id", "ad_id", "advertiser_id", "campaign_id"],
    time_keys=["event_time", "created_time"],
)

map_pinterest = _nested_mapper(
    Platform.PINTEREST, LeadSource.PINTEREST_ADS, "pinterest",
    containers=["lead_data", "user_data"],
    id_keys=["ad_group_id", "pin_id", "advertiser_id", "campaign_id"],
    time_keys=["event_time", "created_time"],
)

map_snapchat = _nested_mapper(
    Platform.SNAPCHAT, LeadSource.SNAPCHAT_ADS, "snapchat",
    containers=["user_data", "conversion_data"],
    id_keys=["ad_squad_id", "ad_id", "advertiser_id", "campaign_id"],
    time_keys=["timestamp", "event_time"],
)


def extract_utm_from_referrer(referrer: Optional[str], param: str) -> Optional[str]:
    if not referrer:
        return None
    try:
        values = parse_qs(urlparse(referrer).query).get(param)
    except ValueError:
        return None
    return values[0] if values else None


def enrich_with_request_context(payload: Dict[str, Any], context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fold request-derived context (ip, user agent, referrer, UTM from referrer) into a flat payload."""
    enriched = dict(payload)
    if not context:
        return enriched

    referrer = context.get("referrer")
    enriched.setdefault("ip_address", context.get("ip_address"))
    enriched.setdefault("user_agent", context.get("user_agent"))
    enriched.setdefault("referrer", referrer)
    enriched.setdefault("submitted_at", context.get("received_at") or now_iso())
    if context.get("platform_hint"):
        enriched.setdefault("platform_hint", context["platform_hint"])
    for key in UTM_KEYS:
        if not enriched.get(key):
            enriched[key] = extract_utm_from_referrer(referrer, key)
    return enriched


def _normalize_source(value: Any, default: LeadSource) -> str:
    if not value:
        return default.value
    candidate = str(value).strip().upper().replace("-", "_").replace(" ", "_")
    if candidate in LeadSource.__members__:
        return candidate
    return LeadSource.OTHER.value


def map_insurance_type(plan_type: Any) -> str:
    """Normalise a free-text plan type to an ``InsuranceType`` value, ``OTHER`` when unrecognised."""
    if not plan_type:
        return InsuranceType.OTHER.value
    normalized = re.sub(r"[^A-Z0-9]", "_", str(plan_type).strip().upper())
    return INSURANCE_TYPE_ALIASES.get(normalized, InsuranceType.OTHER).value


def _interests(value: Any) -> Optional[List[str]]:
    if not value:
        return None
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _flat_mapper(platform: Platform, default_source: LeadSource):

    def mapper(payload: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> UniversalLead:
        data = enrich_with_request_context(payload, context)
        full_first, full_last = _split_name(_text(_first(data.get("full_name"), data.get("name"))))
        if platform is Platform.LANDING_PAGE:
            source = LeadSource.LANDING_PAGE.value
        else:
            source = _normalize_source(_first(data.get("source"), data.get("platform_hint")), default_source)
        known = {
            "email", "firstName", "first_name", "lastName", "last_name", "full_name", "name",
            "phone", "phoneNumber", "phone_number", "company", "company_name", "zipCode", "zip",
            "zip_code", "source", "insuranceType", "insurance_type", "planType", "plan_type",
            "currentInsurance", "current_insurance",
        }
        plan_type = _text(_first(
            data.get("insuranceType"), data.get("insurance_type"), data.get("planType"), data.get("plan_type"),
        ))

        return {
            "email": _require_email(platform, _text(data.get("email"))),
            "first_name": _text(_first(data.get("firstName"), data.get("first_name"), full_first)) or "",
            "last_name": _text(_first(data.get("lastName"), data.get("last_name"), full_last)),
            "phone": _text(_first(data.get("phone"), data.get("phoneNumber"), data.get("phone_number"))),
            "company": _text(_first(data.get("company"), data.get("company_name"))),
            "zip_code": _text(_first(data.get("zipCode"), data.get("zip"), data.get("zip_code"))),
            "city": _text(data.get("city")),
            "state": _text(data.get("state")),
            "country": _text(data.get("country")),
            "age": _as_int(data.get("age")),
            "source": source,
            "utm_source": _text(data.get("utm_source")),
            "utm_medium": _text(data.get("utm_medium")),
            "utm_campaign": _text(data.get("utm_campaign")),
            "utm_content": _text(data.get("utm_content")),
            "utm_term": _text(data.get("utm_term")),
            "landing_page": _text(_first(data.get("page_url"), data.get("url"), data.get("landing_page"))),
            "referrer": _text(data.get("referrer")),
            "user_agent": _text(data.get("user_agent")),
            "ip_address": _text(data.get("ip_address")),
            "page_views": _as_int(data.get("page_views")),
            "session_duration": _as_int(data.get("session_duration")),
            "form_completion_time": _as_int(data.get("form_completion_time")),
            "previous_visits": _as_int(data.get("previous_visits")),
            "priority": _text(data.get("priority")),
            "insurance_type": map_insurance_type(plan_type) if plan_type else None,
            "current_insurance": _text(_first(data.get("currentInsurance"), data.get("current_insurance"))),
            "notes": _text(_first(data.get("notes"), data.get("comments"))),
            "interests": _interests(data.get("interests")),
            "submitted_at": _text(data.get("submitted_at")) or now_iso(),
            "raw_payload": data,
            "platform_specific": {
                "platform_hint": data.get("platform_hint"),
                "source_hint": data.get("source"),
                "custom_fields": data.get("custom_fields")
                or {k: v for k, v in data.items() if k not in known and k not in UTM_KEYS},
            },
        }

    mapper.__name__ = f"map_{platform.value}"
    return mapper


map_landing_page = _flat_mapper(Platform.LANDING_PAGE, LeadSource.LANDING_PAGE)
map_generic = _flat_mapper(Platform.GENERIC, LeadSource.OTHER)


PLATFORM_MAPPERS: Dict[Platform, Callable[..., UniversalLead]] = {
    Platform.FACEBOOK: map_facebook,
    Platform.INSTAGRAM: map_instagram,
    Platform.GOOGLE: map_google,
    Platform.TIKTOK: map_tiktok,
    Platform.PINTEREST: map_pinterest,
    Platform.SNAPCHAT: map_snapchat,
    Platform.LANDING_PAGE: map_landing_page,
    Platform.GENERIC: map_generic,
}

if set(PLATFORM_MAPPERS) != set(Platform):
    raise RuntimeError("every platform needs a mapper")


def map_payload(platform: Platform, payload: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> UniversalLead:
    if not isinstance(payload, dict):
        raise MappingError(f"{platform.value} lead payload must be an object")
    return PLATFORM_MAPPERS[Platform(platform)](payload, context)


def _meta_envelope(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    if data.get("object") not in ("page", "instagram"):
        return []
    leads = []
    for entry in data.get("entry") or []:
        for change in _as_dict(entry).get("changes") or []:
            change = _as_dict(change)
            if change.get("field") == "leadgen":
                leads.append(change.get("value"))
    return leads


def _google_envelope(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    if "lead_form_data" in data or "user_column_data" in data:
        return [data]
    if isinstance(data.get("leads"), list):
        return list(data["leads"])
    return []


def _tiktok_envelope(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    if data.get("event_type") == "lead_generation":
        return [data]
    if isinstance(data.get("leads"), list):
        return list(data["leads"])
    event_data = _as_dict(data.get("event_data"))
    if event_data.get("lead_info"):
        return [event_data]
    return []


def _pinterest_envelope(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    if data.get("event_type") == "lead":
        return [data]
    if isinstance(data.get("events"), list):
        return [e for e in data["events"] if _as_dict(e).get("event_type") == "lead"]
    if data.get("lead_data"):
        return [data]
    return []


def _snapchat_envelope(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    if data.get("event_type") == "LEAD":
        return [data]
    if isinstance(data.get("leads"), list):
        return list(data["leads"])
    if isinstance(data.get("conversions"), list):
        return [c for c in data["conversions"] if _as_dict(c).get("event_type") == "LEAD"]
    return []


def _form_envelope(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    if isinstance(data.get("leads"), list):
        return list(data["leads"])
    return [data] if data else []


ENVELOPES: Dict[Platform, Callable[[Dict[str, Any]], List[Dict[str, Any]]]] = {
    Platform.FACEBOOK: _meta_envelope,
    Platform.INSTAGRAM: _meta_envelope,
    Platform.GOOGLE: _google_envelope,
    Platform.TIKTOK: _tiktok_envelope,
    Platform.PINTEREST: _pinterest_envelope,
    Platform.SNAPCHAT: _snapchat_envelope,
    Platform.LANDING_PAGE: _form_envelope,
    Platform.GENERIC: _form_envelope,
}

if set(ENVELOPES) != set(Platform):
    raise RuntimeError("every platform needs an envelope reader")


def extract_lead_payloads(platform: Platform, data: Any) -> List[Any]:
    """Unwrap a platform's native webhook envelope into individual lead payloads.

    Returns an empty list for shapes the platform does not send; the caller
    answers those with a soft no-op instead of an error.
    """
    if isinstance(data, list):
        return list(data)
    if not isinstance(data, dict):
        logger.warning(f"Unrecognized {platform.value} webhook body type: {type(data).__name__}")
        return []
    payloads = ENVELOPES[Platform(platform)](data)
    if not payloads:
        logger.warning(f"Unrecognized {platform.value} webhook format, keys: {sorted(data.keys())}")
    return payloads
