from graph.state import ActivityType, EventStatus, LeadState, Platform, Stage, now_iso
from tools.store import get_store
from loguru import logger


def record(state: LeadState) -> LeadState:
    """Write the SUCCESS event-log entry and the lead activity for a stored lead."""
    platform = Platform(state["platform"])
    lead = state.get("lead", {})
    store = get_store()
    now = now_iso()

    try:
        if state.get("event_id"):
            store.update_event(state["event_id"], {
                "status": EventStatus.SUCCESS.value,
                "last_error": None,
                "next_retry_at": None,
                "processed_at": now,
                "updated_at": now,
            })
        else:
            event = store.add_event({
                "platform": platform.value,
                "type": f"{platform.value}_lead",
                "payload": state.get("raw"),
                "context": state.get("context") or {},
                "status": EventStatus.SUCCESS.value,
                "attempts": 1,
                "retryable": False,
                "last_error": None,
                "next_retry_at": None,
                "dead_lettered": False,
                "processed_at": now,
                "created_at": now,
                "updated_at": now,
            })
            state["event_id"] = event["id"]

        if state.get("outcome") == "duplicate":
            activity_type = ActivityType.DUPLICATE_SUBMISSION.value
            description = f"Duplicate submission received from {platform.value}"
        else:
            activity_type = ActivityType.FORM_SUBMITTED.value
            description = f"Lead created from {platform.value} webhook"

        store.add_activity({
            "lead_id": lead["id"],
            "type": activity_type,
            "description": description,
            "user_id": None,
            "metadata": {"platform": platform.value, "eventId": state.get("event_id"), "score": lead.get("score")},
            "created_at": now,
        })
    except Exception as e:
        # The lead itself is already stored; only the audit trail is incomplete
        error_msg = f"Event logging failed for lead {lead.get('id')}: {str(e)}"
        logger.error(f"{error_msg} ({platform.value}, {lead.get('email')}, event {state.get('event_id')})")
        state.setdefault("errors", []).append(error_msg)
        if state.get("result") is not None:
            state["result"].setdefault("errors", []).append(error_msg)
        return state

    state["stage"] = Stage.LOGGED.value
    return state
