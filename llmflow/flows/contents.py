"""
History -> model contents.

- auth request/response events are internal and never shown to the model;
- other agents' events are re-told as "For context:" user text;
- every function call is followed directly by its responses; calls that have
  no response yet, and responses with no call, are left out;
- code and code results become delimited text.
"""

from __future__ import annotations

import json
from typing import AsyncIterator, Dict, List

from llmflow.auth import REQUEST_CREDENTIAL_FUNCTION
from llmflow.code_executors.base import DEFAULT_CODE_BLOCK_DELIMITERS, DEFAULT_RESULT_DELIMITERS
from llmflow.code_executors.utils import code_parts_to_text, format_result_text
from llmflow.context import InvocationContext
from llmflow.flows.base_flow import BaseLlmRequestProcessor
from llmflow.llm.base import LlmRequest
from llmflow.models import Content, Event, Part


def _is_auth_event(event: Event) -> bool:
    return any(c.name == REQUEST_CREDENTIAL_FUNCTION for c in event.get_function_calls()) or any(
        r.name == REQUEST_CREDENTIAL_FUNCTION for r in event.get_function_responses()
    )


def _as_context(event: Event) -> Content:
    assert event.content is not None
    parts = [Part.from_text("For context:")]
    for part in event.content.parts:
        if part.thought:
            continue
        if part.text:
            parts.append(Part.from_text(f"[{event.author}] said: {part.text}"))
        elif part.function_call is not None:
            call = part.function_call
            parts.append(
                Part.from_text(
                    f"[{event.author}] called tool `{call.name}` with parameters: {json.dumps(call.args, default=str)}"
                )
            )
        elif part.function_response is not None:
            resp = part.function_response
            parts.append(
                Part.from_text(
                    f"[{event.author}] `{resp.name}` tool returned result: {json.dumps(resp.response, default=str)}"
                )
            )
        elif part.executable_code is not None:
            parts.append(Part.from_text(f"[{event.author}] ran code:\n{part.executable_code.code}"))
        elif part.code_execution_result is not None:
            parts.append(Part.from_text(f"[{event.author}] {format_result_text(part.code_execution_result)}"))
    return Content(role="user", parts=parts)


def pair_function_responses(contents: List[Content]) -> List[Content]:
    responses: Dict[str, Part] = {}
    for content in contents:
        for part in content.parts:
            if part.function_response is not None and part.function_response.id:
                responses[part.function_response.id] = part

    result: List[Content] = []
    for content in contents:
        has_calls = any(p.function_call is not None for p in content.parts)
        has_responses = any(p.function_response is not None for p in content.parts)

        if has_responses and not has_calls:
            rest = [p for p in content.parts if p.function_response is None]
            if rest:
                result.append(Content(role=content.role, parts=rest))
            continue

        if has_calls:
            kept: List[Part] = []
            answered: List[Part] = []
            for part in content.parts:
                call = part.function_call
                if call is None:
                    kept.append(part)
                elif call.id and call.id in responses:
                    kept.append(part)
                    answered.append(responses[call.id])
            if kept:
                result.append(Content(role=content.role, parts=kept))
            if answered:
                result.append(Content(role="user", parts=answered))
            continue

        result.append(content)
    return result


def build_contents(events: List[Event], agent_name: str, code_delimiter=None, result_delimiter=None) -> List[Content]:
    code_delimiter = code_delimiter or DEFAULT_CODE_BLOCK_DELIMITERS[0]
    result_delimiter = result_delimiter or DEFAULT_RESULT_DELIMITERS

    contents: List[Content] = []
    for event in events:
        if event.partial or event.content is None or not event.content.parts:
            continue
        if _is_auth_event(event):
            continue
        if event.author not in ("user", agent_name):
            contents.append(_as_context(event))
            continue
        contents.append(code_parts_to_text(event.content, code_delimiter, result_delimiter))
    return pair_function_responses(contents)


class ContentsRequestProcessor(BaseLlmRequestProcessor):
    async def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        executor = ctx.agent.code_executor
        if executor is not None:
            llm_request.contents = build_contents(
                ctx.session.events,
                ctx.agent.name,
                executor.code_block_delimiters[0],
                executor.execution_result_delimiters,
            )
        else:
            llm_request.contents = build_contents(ctx.session.events, ctx.agent.name)
        return
        yield
