"""
Error taxonomy for the orchestration core.

Only ConfigurationError and ResourceExhaustedError are allowed to escape a
turn. Everything else is converted into an Event (possibly a negative one) so
the conversation can continue.
"""

from __future__ import annotations

from typing import Any, Dict


class FlowError(Exception):
    """Base error carrying a stable code, mirroring the HTTP error envelope."""

    code = "FLOW_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None):
        self.message = message
        if code is not None:
            self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(FlowError):
    """Raised at setup time: unknown model identifier, duplicate tool name, bad agent tree."""

    code = "CONFIGURATION_ERROR"


class ResourceExhaustedError(FlowError):
    """Raised when a turn exceeds its model-call ceiling."""

    code = "MAX_LLM_CALLS_EXCEEDED"


class CodeExecutionInfraError(FlowError):
    """The sandbox itself failed (unreachable, timed out), as opposed to the executed program."""

    code = "CODE_EXECUTION_UNAVAILABLE"


class ModelGatewayError(FlowError):
    """Vendor-level failure; adapters convert it into an error LlmResponse."""

    code = "MODEL_ERROR"


class AgentLoadError(ConfigurationError):
    """Raised when an agent definition cannot be loaded or validated."""

    code = "AGENT_DEFINITION_INVALID"


class EvalFileError(FlowError):
    """Raised when an eval case or threshold file is malformed."""

    code = "EVAL_FILE_INVALID"
