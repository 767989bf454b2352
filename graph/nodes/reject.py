from graph.state import LeadState, Platform, Stage, now_iso
from tools.retry import failure_fields
from tools.store import get_store
from loguru import logger


def reject(state: LeadState) -> LeadState:
    """Record a failed item. Storage and processing failures are scheduled for retry."""
    platform = Platform(state["platform"])
    errors = state.get("errors") or ["Unknown error"]
    validation_errors = state.get("validation_errors") or []
    retryable = bool(state.get("retryable", True)) and not validation_errors
    last_error = "; ".join(validation_errors) if validation_errors else errors[-1]

    state["retryable"] = retryable
    state["stage"] = Stage.FAILED.value
    state["outcome"] = "failed"

    email = (state.get("universal") or {}).get("email")
    result = {
        "status": "failed",
        "message": "Lead validation failed" if validation_errors else "Failed to process lead",
        "errors": validation_errors or errors,
    }
    if email:
        result["email"] = email
    state["result"] = result

    store = get_store()
    try:
        if state.get("event_id"):
            # Status and attempt count of a replayed event belong to the retry worker
            store.update_event(state["event_id"], {"last_error": last_error, "updated_at": now_iso()})
        else:
            event = {
                "platform": platform.value,
                "type": f"{platform.value}_lead",
                "payload": state.get("raw"),
                "context": state.get("context") or {},
                "processed_at": None,
                "created_at": now_iso(),
            }
            event.update(failure_fields(last_error, retryable))
            state["event_id"] = store.add_event(event)["id"]
    except Exception as e:
        error_msg = f"Failed to record failed {platform.value} event: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)

    if retryable:
        logger.error(f"{platform.value} lead failed, scheduled for retry: {last_error}")
    else:
        logger.warning(f"{platform.value} lead rejected: {last_error}")
    return state
