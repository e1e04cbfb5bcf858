from __future__ import annotations

from llmflow.flows.auth_processor import AuthRequestProcessor
from llmflow.flows.base_flow import BaseLlmFlow
from llmflow.flows.code_execution import CodeExecutionRequestProcessor, CodeExecutionResponseProcessor
from llmflow.flows.contents import ContentsRequestProcessor
from llmflow.flows.functions import ToolsRequestProcessor
from llmflow.flows.instructions import BasicRequestProcessor, InstructionsRequestProcessor
from llmflow.flows.planning import PlanningRequestProcessor, PlanningResponseProcessor


class SingleFlow(BaseLlmFlow):
    """Tool calling and code execution for one agent; no hand-off."""

    def __init__(self) -> None:
        super().__init__()
        self.request_processors += [
            BasicRequestProcessor(),
            AuthRequestProcessor(),
            InstructionsRequestProcessor(),
            ContentsRequestProcessor(),
            PlanningRequestProcessor(),
            CodeExecutionRequestProcessor(),
            ToolsRequestProcessor(),
        ]
        self.response_processors += [
            PlanningResponseProcessor(),
            CodeExecutionResponseProcessor(),
        ]
