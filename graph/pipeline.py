from typing import Any, Dict, Optional

from langgraph.graph import StateGraph, START, END
from loguru import logger

from graph.state import LeadState, Platform, Stage
from graph.nodes.capture import capture
from graph.nodes.validate import validate
from graph.nodes.score import score
from graph.nodes.dedupe import dedupe
from graph.nodes.record import record
from graph.nodes.reject import reject


def _continue_or_reject(next_node: str):
    def decide(state: LeadState) -> str:
        if state.get("stage") == Stage.FAILED.value:
            logger.info(f"Lead item failed at {next_node!r} boundary, rejecting")
            return "reject"
        return next_node
    return decide


def build_pipeline():
    """Build the per-lead ingestion workflow."""
    workflow = StateGraph(LeadState)

    workflow.add_node("capture", capture)
    workflow.add_node("validate", validate)
    workflow.add_node("score", score)
    workflow.add_node("dedupe", dedupe)
    workflow.add_node("record", record)
    workflow.add_node("reject", reject)

    workflow.add_edge(START, "capture")

    # Every step before the event log can fail the item
    for node, next_node in (
        ("capture", "validate"),
        ("validate", "score"),
        ("score", "dedupe"),
        ("dedupe", "record"),
    ):
        workflow.add_conditional_edges(
            node,
            _continue_or_reject(next_node),
            {next_node: next_node, "reject": "reject"},
        )

    workflow.add_edge("record", END)
    workflow.add_edge("reject", END)

    return workflow.compile()


lead_pipeline = build_pipeline()


def run_lead_item(
    platform: Platform,
    payload: Any,
    context: Optional[Dict[str, Any]] = None,
    event_id: Optional[str] = None,
) -> LeadState:
    """Run one lead payload through the pipeline. Never raises for a bad item."""
    initial_state: LeadState = {
        "platform": Platform(platform).value,
        "raw": payload,
        "context": context or {},
        "event_id": event_id,
        "stage": Stage.RECEIVED.value,
        "validation_errors": [],
        "retryable": True,
        "errors": [],
    }
    return lead_pipeline.invoke(initial_state)
