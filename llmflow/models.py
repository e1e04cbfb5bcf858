"""
Data models for the orchestration core.

Defines Part (and its five payload kinds), Content, EventActions, Event,
Session, ToolDeclaration, RunConfig, Blob and MemoryEntry.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def new_id() -> str:
    return str(uuid.uuid4())


class FunctionCall(BaseModel):
    """A model's request to invoke a tool."""

    id: Optional[str] = None
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class FunctionResponse(BaseModel):
    """The result of a tool invocation, addressed to the call that produced it."""

    id: Optional[str] = None
    name: str
    response: Dict[str, Any] = Field(default_factory=dict)


class ExecutableCode(BaseModel):
    code: str
    language: str = "python"


class CodeExecutionResult(BaseModel):
    outcome: Literal["OK", "FAILED"] = "OK"
    stdout: str = ""
    stderr: str = ""
    output_files: List[str] = Field(default_factory=list)


_PAYLOAD_FIELDS = ("text", "function_call", "function_response", "executable_code", "code_execution_result")


class Part(BaseModel):
    """One piece of a turn's content. Exactly one payload field is set."""

    text: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    function_response: Optional[FunctionResponse] = None
    executable_code: Optional[ExecutableCode] = None
    code_execution_result: Optional[CodeExecutionResult] = None
    # Planner reasoning: kept in history, never shown as the answer.
    thought: bool = False

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> "Part":
        populated = [name for name in _PAYLOAD_FIELDS if getattr(self, name) is not None]
        if len(populated) != 1:
            raise ValueError(f"Part must carry exactly one payload, got {populated or 'none'}")
        return self

    @classmethod
    def from_text(cls, text: str, *, thought: bool = False) -> "Part":
        return cls(text=text, thought=thought)

    @classmethod
    def from_function_call(cls, name: str, args: Dict[str, Any], call_id: Optional[str] = None) -> "Part":
        return cls(function_call=FunctionCall(id=call_id, name=name, args=args))

    @classmethod
    def from_function_response(cls, name: str, response: Dict[str, Any], call_id: Optional[str] = None) -> "Part":
        return cls(function_response=FunctionResponse(id=call_id, name=name, response=response))


class Content(BaseModel):
    """Ordered parts produced by one author. role is "user" or "model"."""

    role: str = "user"
    parts: List[Part] = Field(default_factory=list)

    @classmethod
    def from_text(cls, text: str, role: str = "user") -> "Content":
        return cls(role=role, parts=[Part.from_text(text)])


class EventActions(BaseModel):
    """Side effects applied atomically when the owning Event is committed."""

    state_delta: Dict[str, Any] = Field(default_factory=dict)
    artifact_delta: Dict[str, int] = Field(default_factory=dict)
    transfer_to_agent: Optional[str] = None
    skip_summarization: bool = False
    requested_auth_configs: Dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.state_delta
            or self.artifact_delta
            or self.transfer_to_agent
            or self.skip_summarization
            or self.requested_auth_configs
        )


class Event(BaseModel):
    """
    One atomic occurrence in a conversation.

    Events are frozen; derive a changed copy with `model_copy(update=...)`.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    invocation_id: str = ""
    author: str
    content: Optional[Content] = None
    partial: bool = False
    actions: EventActions = Field(default_factory=EventActions)
    timestamp: float = Field(default_factory=time.time)
    long_running_tool_ids: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def _parts(self) -> List[Part]:
        if self.content is None:
            return []
        return self.content.parts

    def get_function_calls(self) -> List[FunctionCall]:
        return [p.function_call for p in self._parts() if p.function_call is not None]

    def get_function_responses(self) -> List[FunctionResponse]:
        return [p.function_response for p in self._parts() if p.function_response is not None]

    def get_executable_code(self) -> Optional[ExecutableCode]:
        for part in self._parts():
            if part.executable_code is not None:
                return part.executable_code
        return None

    def has_code_execution_result(self) -> bool:
        return any(p.code_execution_result is not None for p in self._parts())

    @property
    def text(self) -> str:
        """Displayable text: every non-thought text part, concatenated."""
        return "".join(p.text for p in self._parts() if p.text is not None and not p.thought)

    def is_final_response(self) -> bool:
        if self.partial:
            return False
        if self.error_code:
            return True
        if self.actions.skip_summarization or self.long_running_tool_ids:
            return True
        return not (
            self.get_function_calls()
            or self.get_function_responses()
            or self.get_executable_code() is not None
            or self.has_code_execution_result()
        )


class Session(BaseModel):
    """One conversation thread, addressed by (app_name, user_id, id)."""

    id: str
    app_name: str
    user_id: str
    state: Dict[str, Any] = Field(default_factory=dict)
    events: List[Event] = Field(default_factory=list)
    last_update_time: float = 0.0


class ToolDeclaration(BaseModel):
    """What the model sees of a tool: name, description and a JSON-schema object of parameters."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    is_long_running: bool = False


class RunConfig(BaseModel):
    """Per-turn limits and switches."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_llm_calls: int = 500
    streaming_mode: Literal["none", "sse"] = "none"
    parallel_tool_calls: bool = True
    # tool name -> mocked result, or a callable(args) returning one.
    tool_mocks: Dict[str, Any] = Field(default_factory=dict)


class Blob(BaseModel):
    """Binary artifact payload."""

    data: bytes
    mime_type: str = "application/octet-stream"


class MemoryEntry(BaseModel):
    content: Content
    author: Optional[str] = None
    timestamp: Optional[float] = None
