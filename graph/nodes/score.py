from graph.state import LeadState, Platform, Stage
from tools.lead_processor import process_lead_data
from loguru import logger


def score(state: LeadState) -> LeadState:
    """Score, tag and shape the lead into a storable record."""
    universal = state.get("universal", {})
    logger.info(f"Starting scoring for lead: {universal.get('email', 'unknown')}")

    try:
        processed = process_lead_data(universal, platform=Platform(state["platform"]))
    except Exception as e:
        error_msg = f"Lead processing failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        state["retryable"] = True
        state["stage"] = Stage.FAILED.value
        return state

    state["processed"] = processed
    state["stage"] = Stage.PROCESSED.value
    logger.info(f"Final score: {processed['score']} for {processed['email']}")
    return state
