"""
Plan-Re-Act planning.

The model is asked to plan, reason and act under fixed tags. Everything
before the final-answer tag is kept in history as thought parts, so it never
reaches the user as the answer.
"""

from __future__ import annotations

from typing import AsyncIterator, List

from llmflow.context import InvocationContext
from llmflow.flows.base_flow import BaseLlmRequestProcessor, BaseLlmResponseProcessor
from llmflow.llm.base import LlmRequest, LlmResponse
from llmflow.models import Content, Event, Part

PLANNING_TAG = "/*PLANNING*/"
REPLANNING_TAG = "/*REPLANNING*/"
REASONING_TAG = "/*REASONING*/"
ACTION_TAG = "/*ACTION*/"
FINAL_ANSWER_TAG = "/*FINAL_ANSWER*/"

_THOUGHT_TAGS = (PLANNING_TAG, REPLANNING_TAG, REASONING_TAG, ACTION_TAG)


class PlanReActPlanner:
    def build_planning_instruction(self) -> str:
        return "\n".join(
            [
                "When answering, first write a plan under "
                f"{PLANNING_TAG}: the numbered steps and the tools each step uses.",
                f"While executing, put your reasoning under {REASONING_TAG} and the tool you call next under {ACTION_TAG}.",
                f"If the plan has to change, write the new plan under {REPLANNING_TAG}.",
                f"Finally, write the answer for the user under {FINAL_ANSWER_TAG}.",
                "Only the text after the final answer tag is shown to the user.",
            ]
        )

    def process_planning_response(self, parts: List[Part]) -> List[Part]:
        processed: List[Part] = []
        for part in parts:
            if part.text is None or part.thought:
                processed.append(part)
                continue
            text = part.text
            if FINAL_ANSWER_TAG in text:
                reasoning, answer = text.split(FINAL_ANSWER_TAG, 1)
                if reasoning.strip():
                    processed.append(Part.from_text(reasoning, thought=True))
                if answer.strip():
                    processed.append(Part.from_text(answer.strip()))
            elif text.lstrip().startswith(_THOUGHT_TAGS):
                processed.append(Part.from_text(text, thought=True))
            else:
                processed.append(part)
        return processed


class PlanningRequestProcessor(BaseLlmRequestProcessor):
    async def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        planner = ctx.agent.planner
        if planner is not None:
            llm_request.append_instructions([planner.build_planning_instruction()])
        return
        yield


class PlanningResponseProcessor(BaseLlmResponseProcessor):
    async def run_async(self, ctx: InvocationContext, llm_response: LlmResponse) -> AsyncIterator[Event]:
        planner = ctx.agent.planner
        content = llm_response.content
        if planner is not None and content is not None and not llm_response.partial:
            llm_response.content = Content(role=content.role, parts=planner.process_planning_response(content.parts))
        return
        yield
