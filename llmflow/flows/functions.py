"""
Tool dispatch for function calls found in a model reply.

Each call gets its own EventActions (state delta, artifacts, auth requests)
and produces at most one result event. Calls may run concurrently; result
events are always emitted in the order the model issued the calls, so writes
to the same state key resolve last-writer-wins in request order.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel

from llmflow.auth import PENDING_AUTH_STATE_KEY, REQUEST_CREDENTIAL_FUNCTION, AuthenticationPending
from llmflow.context import InvocationContext, ToolContext
from llmflow.errors import ConfigurationError, ResourceExhaustedError
from llmflow.flows.base_flow import BaseLlmRequestProcessor, maybe_await
from llmflow.llm.base import LlmRequest
from llmflow.models import Content, Event, EventActions, FunctionCall, Part, new_id

if TYPE_CHECKING:
    from llmflow.agents import LlmAgent
    from llmflow.tools.base import BaseTool

logger = logging.getLogger("llmflow")


@dataclass
class CallOutcome:
    call: FunctionCall
    actions: EventActions
    # None with no `pending`: long-running tool still in progress.
    response: Optional[Dict[str, Any]] = None
    pending: Optional[AuthenticationPending] = None


def as_response(result: Any) -> Dict[str, Any]:
    if isinstance(result, BaseModel):
        result = result.model_dump()
    if isinstance(result, dict):
        return result
    return {"result": result}


async def execute_function_call(
    ctx: InvocationContext,
    call: FunctionCall,
    tools_dict: Dict[str, "BaseTool"],
    *,
    agent: Optional["LlmAgent"] = None,
) -> CallOutcome:
    agent = agent or ctx.agent
    actions = EventActions()
    args = dict(call.args)

    mocks = ctx.run_config.tool_mocks
    if call.name in mocks:
        mock = mocks[call.name]
        result = await maybe_await(mock(args)) if callable(mock) else copy.deepcopy(mock)
        logger.info("tool mocked name=%s call_id=%s", call.name, call.id)
        return CallOutcome(call=call, actions=actions, response=as_response(result))

    tool = tools_dict.get(call.name)
    if tool is None:
        logger.warning("unknown tool requested name=%s agent=%s", call.name, agent.name)
        return CallOutcome(
            call=call,
            actions=actions,
            response={
                "error": f"Tool '{call.name}' is not available to agent '{agent.name}'",
                "error_type": "ToolNotFound",
            },
        )

    errors = tool.validate_args(args)
    if errors:
        logger.warning("invalid tool arguments name=%s errors=%d", call.name, len(errors))
        return CallOutcome(
            call=call,
            actions=actions,
            response={
                "error": f"Invalid arguments for tool '{call.name}'",
                "error_type": "InvalidArguments",
                "details": errors,
            },
        )

    tool_context = ToolContext(ctx, function_call_id=call.id or "", event_actions=actions)

    result: Any = None
    for callback in agent.before_tool_callbacks:
        result = await maybe_await(callback(tool, args, tool_context))
        if result is not None:
            break

    if result is None:
        try:
            result = await tool.invoke(args, tool_context)
        except (ConfigurationError, ResourceExhaustedError):
            raise
        except Exception as exc:
            logger.warning("tool failed name=%s call_id=%s: %s", call.name, call.id, exc)
            result = {"error": str(exc), "error_type": type(exc).__name__}

    if isinstance(result, AuthenticationPending):
        logger.info("tool awaiting credential name=%s call_id=%s", call.name, call.id)
        return CallOutcome(call=call, actions=actions, pending=result)
    if result is None and tool.is_long_running:
        logger.info("long-running tool started name=%s call_id=%s", call.name, call.id)
        return CallOutcome(call=call, actions=actions)

    for callback in agent.after_tool_callbacks:
        override = await maybe_await(callback(tool, args, tool_context, result))
        if override is not None:
            result = override
            break

    logger.info("tool finished name=%s call_id=%s", call.name, call.id)
    return CallOutcome(call=call, actions=actions, response=as_response(result))


def build_result_event(ctx: InvocationContext, outcome: CallOutcome, author: str) -> Event:
    assert outcome.response is not None
    return Event(
        invocation_id=ctx.invocation_id,
        author=author,
        content=Content(
            role="user",
            parts=[Part.from_function_response(outcome.call.name, outcome.response, outcome.call.id)],
        ),
        actions=outcome.actions,
    )


def build_auth_request_event(ctx: InvocationContext, outcomes: List[CallOutcome]) -> Event:
    """One `request_credential` call per pending tool call, plus the persisted pending marker."""
    marker = dict(ctx.session.state.get(PENDING_AUTH_STATE_KEY) or {})
    actions = EventActions()
    parts: List[Part] = []
    for outcome in outcomes:
        pending = outcome.pending
        assert pending is not None
        auth_request_id = f"auth_{new_id()}"
        auth_config = pending.auth_config.model_dump()
        parts.append(
            Part.from_function_call(
                REQUEST_CREDENTIAL_FUNCTION,
                {
                    "function_call_id": pending.function_call_id,
                    "auth_config": auth_config,
                    "pending_request_id": pending.pending_request_id,
                },
                auth_request_id,
            )
        )
        marker[pending.function_call_id] = {
            "function_call": outcome.call.model_dump(),
            "agent_name": ctx.agent.name,
            "auth_config": auth_config,
            "pending_request_id": pending.pending_request_id,
            "auth_request_id": auth_request_id,
        }
        actions.state_delta.update(outcome.actions.state_delta)
        actions.requested_auth_configs.update(outcome.actions.requested_auth_configs)

    actions.state_delta[PENDING_AUTH_STATE_KEY] = marker
    return Event(
        invocation_id=ctx.invocation_id,
        author=ctx.agent.name,
        content=Content(role="model", parts=parts),
        actions=actions,
        long_running_tool_ids=[p.function_call.id for p in parts if p.function_call is not None and p.function_call.id],
    )


async def handle_function_calls_async(
    ctx: InvocationContext,
    model_event: Event,
    tools_dict: Dict[str, "BaseTool"],
) -> AsyncIterator[Event]:
    calls = model_event.get_function_calls()
    if ctx.run_config.parallel_tool_calls and len(calls) > 1:
        outcomes = list(await asyncio.gather(*(execute_function_call(ctx, c, tools_dict) for c in calls)))
    else:
        outcomes = [await execute_function_call(ctx, c, tools_dict) for c in calls]

    pending: List[CallOutcome] = []
    transfer_to: Optional[str] = None
    for outcome in outcomes:
        if outcome.pending is not None:
            pending.append(outcome)
            continue
        if outcome.response is None:
            continue
        yield build_result_event(ctx, outcome, ctx.agent.name)
        if outcome.actions.transfer_to_agent:
            transfer_to = outcome.actions.transfer_to_agent

    if pending:
        yield build_auth_request_event(ctx, pending)
        ctx.end_invocation = True
        return

    if transfer_to:
        target = ctx.agent.root_agent.find_agent(transfer_to)
        if target is None:
            raise ConfigurationError(f"Transfer target {transfer_to!r} is not in the agent tree")
        logger.info("agent transfer from=%s to=%s invocation_id=%s", ctx.agent.name, target.name, ctx.invocation_id)
        ctx.agent = target


class ToolsRequestProcessor(BaseLlmRequestProcessor):
    """Declares every tool the active agent owns."""

    async def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        llm_request.append_tools(ctx.agent.canonical_tools)
        return
        yield
