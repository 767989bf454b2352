from graph.state import LeadState, Stage
from tools.lead_processor import validate_lead_data
from loguru import logger


def validate(state: LeadState) -> LeadState:
    """Reject leads whose email, source, phone or age are malformed."""
    universal = state.get("universal", {})
    outcome = validate_lead_data(universal)

    if not outcome["is_valid"]:
        logger.warning(f"Lead validation failed for {universal.get('email', 'unknown')}: {outcome['errors']}")
        state["validation_errors"] = outcome["errors"]
        state.setdefault("errors", []).append("Lead validation failed")
        # Resending the same payload cannot fix it
        state["retryable"] = False
        state["stage"] = Stage.FAILED.value
        return state

    state["validation_errors"] = []
    state["stage"] = Stage.VALIDATED.value
    return state
