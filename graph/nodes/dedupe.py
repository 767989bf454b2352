from graph.state import LeadState, Platform, Stage
from tools.errors import DuplicateLeadError, StoreError
from tools.merge import merger_for, seed_history
from tools.store import get_store
from loguru import logger


def _merge(state: LeadState, platform: Platform, processed) -> LeadState:
    store = get_store()
    merged = store.update_lead(processed["email"], merger_for(processed, platform))
    if merged is None:
        # Lead vanished between lookup and merge; treat as new
        return _create(state, platform, processed)

    state["lead"] = merged
    state["outcome"] = "duplicate"
    state["stage"] = Stage.DUPLICATE_MERGED.value
    state["result"] = {
        "leadId": merged["id"],
        "email": merged["email"],
        "status": "duplicate",
        "score": merged.get("score"),
        "message": f"Lead already exists, {platform.value} submission added",
    }
    logger.info(
        f"Merged duplicate {platform.value} submission into {merged['email']} "
        f"({merged['metadata'].get('duplicateSubmissions')} duplicates)"
    )
    return state


def _create(state: LeadState, platform: Platform, processed) -> LeadState:
    store = get_store()
    try:
        lead = store.insert_lead(seed_history(platform, processed))
    except DuplicateLeadError:
        logger.info(f"Lost insert race for {processed['email']}, merging instead")
        return _merge(state, platform, processed)

    state["lead"] = lead
    state["outcome"] = "created"
    state["stage"] = Stage.CREATED.value
    state["result"] = {
        "leadId": lead["id"],
        "email": lead["email"],
        "status": "created",
        "score": lead.get("score"),
        "message": "Lead created successfully",
    }
    logger.info(f"Created lead {lead['id']} for {lead['email']} from {platform.value}")
    return state


def dedupe(state: LeadState) -> LeadState:
    """Insert a new lead, or merge the submission into the lead that owns this email."""
    platform = Platform(state["platform"])
    processed = state.get("processed", {})

    try:
        existing = get_store().get_lead(processed["email"])
        if existing is None:
            return _create(state, platform, processed)
        return _merge(state, platform, processed)
    except StoreError as e:
        error_msg = f"Lead storage failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        state["retryable"] = True
        state["stage"] = Stage.FAILED.value
        return state
    except Exception as e:
        error_msg = f"Lead dedupe failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        state["retryable"] = True
        state["stage"] = Stage.FAILED.value
        return state
