from typing import Any, Callable, Dict, Optional

from graph.state import Platform, now_iso
from tools import config

HISTORY_KEYS: Dict[Platform, str] = {
    Platform.FACEBOOK: "facebookCampaigns",
    Platform.INSTAGRAM: "instagramCampaigns",
    Platform.GOOGLE: "googleCampaigns",
    Platform.TIKTOK: "tiktokCampaigns",
    Platform.PINTEREST: "pinterestCampaigns",
    Platform.SNAPCHAT: "snapchatCampaigns",
    Platform.LANDING_PAGE: "landingPageSubmissions",
    Platform.GENERIC: "genericSubmissions",
}

if set(HISTORY_KEYS) != set(Platform):
    raise RuntimeError("every platform needs a history key")

# Ad-platform entries carry these ids from platform_specific, renamed to camelCase
AD_IDS: Dict[Platform, Dict[str, str]] = {
    Platform.FACEBOOK: {"formId": "form_id", "adId": "ad_id"},
    Platform.INSTAGRAM: {"formId": "form_id", "adId": "ad_id"},
    Platform.GOOGLE: {"formId": "form_id", "adGroupId": "adgroup_id"},
    Platform.TIKTOK: {"adGroupId": "ad_group_id", "adId": "ad_id"},
    Platform.PINTEREST: {"adGroupId": "ad_group_id", "pinId": "pin_id"},
    Platform.SNAPCHAT: {"adSquadId": "ad_squad_id", "adId": "ad_id"},
}


def history_key(platform: Platform) -> str:
    return HISTORY_KEYS[Platform(platform)]


def build_submission_entry(platform: Platform, processed: Dict[str, Any], submitted_at: Optional[str] = None) -> Dict[str, Any]:
    """One element of a lead's per-platform submission history."""
    platform = Platform(platform)
    metadata = processed.get("metadata") or {}
    specific = metadata.get("platformSpecific") or {}
    submitted_at = submitted_at or now_iso()

    if platform is Platform.LANDING_PAGE:
        return {
            "page": processed.get("landing_page"),
            "submittedAt": submitted_at,
            "formData": metadata.get("rawPayload"),
            "utmData": {
                "source": processed.get("utm_source"),
                "medium": processed.get("utm_medium"),
                "campaign": processed.get("utm_campaign"),
                "content": processed.get("utm_content"),
                "term": processed.get("utm_term"),
            },
        }

    if platform is Platform.GENERIC:
        return {
            "platform": specific.get("platform_hint") or "unknown",
            "submittedAt": submitted_at,
            "rawData": metadata.get("rawPayload"),
        }

    entry = {"campaignId": processed.get("utm_campaign")}
    for name, source_key in AD_IDS[platform].items():
        entry[name] = specific.get(source_key)
    entry["submittedAt"] = submitted_at
    entry["leadData"] = metadata.get("rawPayload")
    return entry


def _append_bounded(history: Any, entry: Dict[str, Any], limit: int):
    items = list(history) if isinstance(history, list) else []
    items.append(entry)
    if limit > 0 and len(items) > limit:
        items = items[-limit:]
    return items


def seed_history(platform: Platform, processed: Dict[str, Any]) -> Dict[str, Any]:
    """Record the first submission on a lead that is about to be created."""
    lead = dict(processed)
    metadata = dict(lead.get("metadata") or {})
    key = history_key(platform)
    metadata[key] = _append_bounded(
        metadata.get(key), build_submission_entry(platform, processed, lead.get("created_at")),
        config.submission_history_limit(),
    )
    metadata.setdefault("duplicateSubmissions", 0)
    lead["metadata"] = metadata
    return lead


def merge_duplicate_submission(
    existing: Dict[str, Any],
    incoming: Dict[str, Any],
    platform: Platform,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Fold a repeat submission into an existing lead.

    Appends the submission to the platform's history ring, bumps the duplicate
    counter and stamps ``lastDuplicateAt``. Identity, status and assignment are
    left alone. Landing-page repeats may raise the score, never lower it.
    """
    platform = Platform(platform)
    now = now or now_iso()
    merged = dict(existing)
    metadata = dict(existing.get("metadata") or {})

    key = history_key(platform)
    metadata[key] = _append_bounded(
        metadata.get(key), build_submission_entry(platform, incoming, now), config.submission_history_limit()
    )
    metadata["duplicateSubmissions"] = int(metadata.get("duplicateSubmissions") or 0) + 1
    metadata["lastDuplicateAt"] = now

    merged["metadata"] = metadata
    merged["updated_at"] = now
    if platform is Platform.LANDING_PAGE:
        merged["score"] = max(int(existing.get("score") or 0), int(incoming.get("score") or 0))
    return merged


def merger_for(incoming: Dict[str, Any], platform: Platform) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    """Bind an incoming submission for ``LeadStore.update_lead``."""
    def mutate(existing: Dict[str, Any]) -> Dict[str, Any]:
        return merge_duplicate_submission(existing, incoming, platform)
    return mutate
