# soc2_agent/errors.py

"""
Exception hierarchy for the compliance agent.

Only UnknownControlError and InvalidTransitionError are meant to reach a
caller; the others are raised inside a stage and handled at its boundary.
"""


class ComplianceAgentError(Exception):
    """Base class for every error raised by the agent."""


class UnknownControlError(ComplianceAgentError, KeyError):
    """Raised when a control id is not present in the registry."""

    def __init__(self, control_id: str):
        self.control_id = control_id
        super().__init__(control_id)

    def __str__(self) -> str:
        return f"Unknown control: {self.control_id}"


class InvalidTransitionError(ComplianceAgentError):
    """Raised when the pipeline step would regress or skip a stage."""


class SemanticAnalysisError(ComplianceAgentError):
    """The model call or its output could not be turned into violations."""


class FixSynthesisError(ComplianceAgentError):
    """A fix could not be produced for a violation."""


class FixParseError(FixSynthesisError):
    """The model's fix output was not valid code for the target language."""


class CostGovernorError(ComplianceAgentError):
    """Invalid use of the cost governor (e.g. responding when not suspended)."""
