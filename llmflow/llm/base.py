"""
Model gateway contract.

An LlmRequest is built by the flow's request processors and submitted to a
BaseLlm; the adapter yields one LlmResponse, or several partial ones followed
by the aggregated final response when streaming. Vendor failures never raise
out of `generate_content_async`: they come back as a response carrying
`error_code` / `error_message`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

from llmflow.models import Content, ToolDeclaration

if TYPE_CHECKING:
    from llmflow.tools.base import BaseTool

# Shared error taxonomy for adapters.
RATE_LIMITED = "RATE_LIMITED"
SAFETY = "SAFETY"
MALFORMED_REQUEST = "MALFORMED_REQUEST"
UNAUTHORIZED = "UNAUTHORIZED"
UNAVAILABLE = "UNAVAILABLE"
MODEL_ERROR = "MODEL_ERROR"


@dataclass
class LlmRequest:
    model: str = ""
    contents: List[Content] = field(default_factory=list)
    system_instruction: str = ""
    tools_dict: Dict[str, "BaseTool"] = field(default_factory=dict)
    declarations: List[ToolDeclaration] = field(default_factory=list)
    # Tuning parameters passed through to the backend (temperature, max_tokens, ...).
    config: Dict[str, Any] = field(default_factory=dict)

    def append_instructions(self, instructions: List[str]) -> None:
        text = "\n\n".join(i for i in instructions if i)
        if not text:
            return
        if self.system_instruction:
            self.system_instruction += "\n\n" + text
        else:
            self.system_instruction = text

    def append_tools(self, tools: List["BaseTool"]) -> None:
        for tool in tools:
            self.tools_dict[tool.name] = tool
            self.declarations.append(tool.declaration())


@dataclass
class LlmResponse:
    content: Optional[Content] = None
    partial: bool = False
    turn_complete: bool = True
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, code: str, message: str) -> "LlmResponse":
        return cls(error_code=code, error_message=message, finish_reason="error")


class BaseLlm(ABC):
    def __init__(self, model: str) -> None:
        self.model = model

    @classmethod
    def supported_models(cls) -> List[str]:
        """Regex patterns (full match) of model identifiers this adapter serves."""
        return []

    @abstractmethod
    def generate_content_async(self, llm_request: LlmRequest, stream: bool = False) -> AsyncIterator[LlmResponse]:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"
