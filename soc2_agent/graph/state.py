# soc2_agent/graph/state.py

from typing import TypedDict, Annotated, List, Optional
import operator
from langchain_core.messages import BaseMessage

from soc2_agent.models import Fix, Violation

# messages uses operator.add as its reducer: a node's returned list is
# appended to the trace. Every other key is overwritten by the node that returns it.


class ComplianceAgentState(TypedDict):
    """
    Shared state for the per-file compliance pipeline.
    """

    # 1. Trace of what each node did (appended)
    messages: Annotated[List[BaseMessage], operator.add]

    # 2. Input (set by the caller)
    file_path: str
    code: str

    # 3. Framework (supplied by the caller or filled in by parse)
    framework: str

    # 4. Results (replaced by analyze / generate_fixes / validate)
    violations: List[Violation]
    fixes: List[Fix]

    # 5. Control flow: parse -> analyzed -> fixes_generated -> validated
    current_step: str

    # 6. Set by parse when the input is rejected; the run ends there
    error: Optional[str]

    # 7. ISO-8601 time the run was accepted
    timestamp: str
