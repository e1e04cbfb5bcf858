"""
The orchestration loop.

A turn is a sequence of steps; each step:
1. runs the request processors over a fresh LlmRequest (a processor may emit
   events first, e.g. a resumed tool call after authentication);
2. calls the model, counting the call against the turn's ceiling;
3. runs the response processors (planning tags, code blocks);
4. emits the model event and, when it carries function calls, one result
   event per call in request order.

The loop stops after a final response, an error event, or once
`end_invocation` is set. Events are yielded to the caller (the Runner),
which commits each non-partial event before the generator resumes, so every
step sees the history and state produced by the previous one.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

from llmflow.context import CallbackContext, InvocationContext
from llmflow.errors import ModelGatewayError
from llmflow.llm.base import LlmRequest, LlmResponse
from llmflow.models import Content, Event, EventActions, Part, new_id

if TYPE_CHECKING:
    from llmflow.tools.base import BaseTool

logger = logging.getLogger("llmflow")


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class BaseLlmRequestProcessor(ABC):
    @abstractmethod
    def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        ...


class BaseLlmResponseProcessor(ABC):
    @abstractmethod
    def run_async(self, ctx: InvocationContext, llm_response: LlmResponse) -> AsyncIterator[Event]:
        ...


def _with_call_ids(content: Content) -> Content:
    if all(p.function_call is None or p.function_call.id for p in content.parts):
        return content
    parts: List[Part] = []
    for part in content.parts:
        if part.function_call is not None and not part.function_call.id:
            call = part.function_call.model_copy(update={"id": f"call_{new_id()}"})
            part = part.model_copy(update={"function_call": call})
        parts.append(part)
    return Content(role=content.role, parts=parts)


def build_model_event(
    ctx: InvocationContext,
    llm_response: LlmResponse,
    event_id: str,
    actions: EventActions,
    tools_dict: Dict[str, "BaseTool"],
) -> Event:
    content = llm_response.content
    long_running: List[str] = []
    if content is not None and not llm_response.partial:
        content = _with_call_ids(content)
        for part in content.parts:
            call = part.function_call
            if call is not None and call.name in tools_dict and tools_dict[call.name].is_long_running:
                long_running.append(call.id or "")

    event = Event(
        id=event_id,
        invocation_id=ctx.invocation_id,
        author=ctx.agent.name,
        content=content,
        partial=llm_response.partial,
        actions=actions if not llm_response.partial else EventActions(),
        long_running_tool_ids=long_running,
        error_code=llm_response.error_code,
        error_message=llm_response.error_message,
    )

    output_key = ctx.agent.output_key
    if output_key and not event.partial and not event.error_code and event.is_final_response() and event.text:
        delta = {**event.actions.state_delta, output_key: event.text}
        event = event.model_copy(update={"actions": event.actions.model_copy(update={"state_delta": delta})})
    return event


class BaseLlmFlow:
    def __init__(self) -> None:
        self.request_processors: List[BaseLlmRequestProcessor] = []
        self.response_processors: List[BaseLlmResponseProcessor] = []

    async def run_async(self, ctx: InvocationContext) -> AsyncIterator[Event]:
        while True:
            last_event: Optional[Event] = None
            async for event in self._run_one_step_async(ctx):
                last_event = event
                yield event
            if ctx.end_invocation:
                logger.info("invocation ended invocation_id=%s agent=%s", ctx.invocation_id, ctx.agent.name)
                break
            if last_event is None or last_event.partial or last_event.is_final_response():
                break

    async def _run_one_step_async(self, ctx: InvocationContext) -> AsyncIterator[Event]:
        llm_request = LlmRequest()

        for processor in self.request_processors:
            async for event in processor.run_async(ctx, llm_request):
                yield event
            if ctx.end_invocation:
                return

        actions = EventActions()
        event_id = new_id()
        async for llm_response in self._call_llm_async(ctx, llm_request, actions):
            async for event in self._postprocess_async(ctx, llm_request, llm_response, event_id, actions):
                yield event

    async def _call_llm_async(
        self,
        ctx: InvocationContext,
        llm_request: LlmRequest,
        actions: EventActions,
    ) -> AsyncIterator[LlmResponse]:
        agent = ctx.agent
        callback_context = CallbackContext(ctx, event_actions=actions)

        for callback in agent.before_model_callbacks:
            override = await maybe_await(callback(callback_context, llm_request))
            if override is not None:
                yield override
                return

        ctx.increment_llm_call_count()
        llm = agent.canonical_model
        stream = ctx.run_config.streaming_mode == "sse"
        logger.info(
            "model step invocation_id=%s agent=%s model=%s llm_calls=%d",
            ctx.invocation_id,
            agent.name,
            llm.model,
            ctx.llm_call_count,
        )

        try:
            async for llm_response in llm.generate_content_async(llm_request, stream=stream):
                if not llm_response.partial:
                    for callback in agent.after_model_callbacks:
                        override = await maybe_await(callback(callback_context, llm_response))
                        if override is not None:
                            llm_response = override
                            break
                yield llm_response
        except ModelGatewayError as exc:
            logger.warning("model gateway error agent=%s code=%s: %s", agent.name, exc.code, exc.message)
            yield LlmResponse.from_error(exc.code, exc.message)

    async def _postprocess_async(
        self,
        ctx: InvocationContext,
        llm_request: LlmRequest,
        llm_response: LlmResponse,
        event_id: str,
        actions: EventActions,
    ) -> AsyncIterator[Event]:
        from llmflow.flows.functions import handle_function_calls_async

        for processor in self.response_processors:
            async for event in processor.run_async(ctx, llm_response):
                yield event

        if llm_response.content is None and llm_response.error_code is None:
            return

        model_event = build_model_event(ctx, llm_response, event_id, actions, llm_request.tools_dict)
        yield model_event

        if model_event.partial or not model_event.get_function_calls():
            return
        async for event in handle_function_calls_async(ctx, model_event, llm_request.tools_dict):
            yield event
