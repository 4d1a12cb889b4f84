# soc2_agent/graph/workflow.py

import asyncio
import logging
from typing import Any, Dict, Literal, Optional

# LangGraph Imports
from langgraph.graph import StateGraph, END
from langchain_core.messages import HumanMessage

from soc2_agent.models import AgentStep, PipelineResult, utc_now_iso
from soc2_agent.tools.fix_synthesizer import FixSynthesizer
from soc2_agent.tools.semantic_analyzer import SemanticAnalyzer

from .nodes import create_analyze_node, create_fix_node, parse_node, validate_node
from .state import ComplianceAgentState

logger = logging.getLogger(__name__)

# --- 1. ROUTER LOGIC ---


def route_after_parse(state: ComplianceAgentState) -> Literal["analyze", END]:
    """Rejected input ends the run at parse; everything else is analyzed."""
    if state.get("error"):
        return END
    return "analyze"


# --- 2. WORKFLOW CREATION FUNCTION ---


def create_compliance_workflow(
    analyzer: Optional[SemanticAnalyzer] = None,
    synthesizer: Optional[FixSynthesizer] = None,
    scan_mode: Optional[str] = None,
    use_llm_fixes: bool = False,
    line_tolerance: Optional[int] = None,
):
    """
    Assembles the pipeline: parse -> analyze -> generate_fixes -> validate.
    """

    # 1. Nodes that need collaborators are built by factories
    analyze_node = create_analyze_node(analyzer, scan_mode, line_tolerance)
    fix_node = create_fix_node(synthesizer, use_llm_fixes)

    # 2. Initialize the Graph Builder
    workflow = StateGraph(ComplianceAgentState)

    # 3. Add Nodes
    workflow.add_node("parse", parse_node)
    workflow.add_node("analyze", analyze_node)
    workflow.add_node("generate_fixes", fix_node)
    workflow.add_node("validate", validate_node)

    # 4. Define Edges
    workflow.set_entry_point("parse")

    workflow.add_conditional_edges(
        "parse",
        route_after_parse,
        {
            "analyze": "analyze",
            END: END,
        },
    )
    workflow.add_edge("analyze", "generate_fixes")
    workflow.add_edge("generate_fixes", "validate")
    workflow.add_edge("validate", END)

    # 5. Compile the Workflow
    return workflow.compile()


# --- 3. ENTRY POINTS ---


def initial_state(state: Dict[str, Any]) -> ComplianceAgentState:
    """Fills defaults around the caller's file_path / code / framework."""
    file_path = state.get("file_path")
    return {
        "messages": [HumanMessage(content=f"Start SOC 2 compliance scan of {file_path}")],
        "file_path": file_path,
        "code": state.get("code"),
        "framework": state.get("framework"),
        "violations": [],
        "fixes": [],
        "current_step": AgentStep.PARSE.value,
        "error": None,
        "timestamp": state.get("timestamp") or utc_now_iso(),
    }


async def run_pipeline(
    state: Dict[str, Any],
    analyzer: Optional[SemanticAnalyzer] = None,
    synthesizer: Optional[FixSynthesizer] = None,
    scan_mode: Optional[str] = None,
    use_llm_fixes: bool = False,
    line_tolerance: Optional[int] = None,
) -> PipelineResult:
    """
    Runs the whole pipeline for one file.

    Rejected input and unexpected failures come back as success=False with
    the error message; they are not raised.
    """
    start = initial_state(state)
    app = create_compliance_workflow(analyzer, synthesizer, scan_mode, use_llm_fixes, line_tolerance)

    try:
        final_state = await app.ainvoke(start)
    except Exception as e:
        logger.exception("Pipeline failed for %s", start["file_path"])
        failed = dict(start, error=f"pipeline failed: {e}")
        return PipelineResult(state=failed, success=False, error=failed["error"])

    error = final_state.get("error")
    success = error is None and final_state.get("current_step") == AgentStep.VALIDATED.value
    return PipelineResult(
        state=final_state,
        success=success,
        violations=final_state.get("violations", []),
        fixes=final_state.get("fixes", []),
        error=error,
    )


def run_pipeline_sync(state: Dict[str, Any], **kwargs) -> PipelineResult:
    """Blocking wrapper around run_pipeline for callers without an event loop."""
    return asyncio.run(run_pipeline(state, **kwargs))
