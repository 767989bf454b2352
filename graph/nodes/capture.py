from graph.state import LeadState, Platform, Stage
from tools.errors import MappingError
from tools.mappers import map_payload
from loguru import logger


def capture(state: LeadState) -> LeadState:
    """Map a platform-native lead payload into a universal lead."""
    platform = Platform(state["platform"])
    raw = state.get("raw")
    logger.info(f"Starting capture for {platform.value} lead")

    try:
        universal = map_payload(platform, raw, state.get("context"))
    except MappingError as e:
        logger.warning(f"Mapping failed for {platform.value} lead: {e}")
        state.setdefault("errors", []).append(str(e))
        state["validation_errors"] = [str(e)]
        state["retryable"] = False
        state["stage"] = Stage.FAILED.value
        return state
    except Exception as e:
        error_msg = f"Mapper crashed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        state["retryable"] = False
        state["stage"] = Stage.FAILED.value
        return state

    state["universal"] = universal
    state["stage"] = Stage.MAPPED.value
    logger.info(f"Capture completed for {universal.get('email')}")
    return state
