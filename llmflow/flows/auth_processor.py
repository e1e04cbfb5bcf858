"""
Resumes tool calls that paused for a credential.

The pending marker lives in session state, so resumption works across turns
and process restarts. A credential is taken from a user `request_credential`
function response in the new message, or from the credential service cache
(out-of-band resolution). The original call is re-invoked and its result
event committed before the model is called.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Dict, Optional

from pydantic import ValidationError

from llmflow.auth import PENDING_AUTH_STATE_KEY, REQUEST_CREDENTIAL_FUNCTION, AuthConfig, AuthCredential
from llmflow.context import InvocationContext
from llmflow.flows.base_flow import BaseLlmRequestProcessor
from llmflow.flows.functions import build_result_event, execute_function_call
from llmflow.llm.base import LlmRequest
from llmflow.models import Content, Event, FunctionCall

logger = logging.getLogger("llmflow")


def _supplied_credentials(content: Optional[Content]) -> Dict[str, AuthCredential]:
    supplied: Dict[str, AuthCredential] = {}
    if content is None:
        return supplied
    for part in content.parts:
        resp = part.function_response
        if resp is None or resp.name != REQUEST_CREDENTIAL_FUNCTION:
            continue
        raw = resp.response.get("credential", resp.response)
        try:
            credential = AuthCredential.model_validate(raw)
        except ValidationError as exc:
            logger.warning("ignoring malformed credential response id=%s: %s", resp.id, exc)
            continue
        if resp.id:
            supplied[resp.id] = credential
        function_call_id = resp.response.get("function_call_id")
        if function_call_id:
            supplied[str(function_call_id)] = credential
    return supplied


class AuthRequestProcessor(BaseLlmRequestProcessor):
    async def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        pending = ctx.session.state.get(PENDING_AUTH_STATE_KEY) or {}
        if not pending:
            return
        service = ctx.credential_service
        if service is None:
            logger.warning("pending credential requests but no credential service configured")
            return

        supplied = _supplied_credentials(ctx.user_content)
        remaining = dict(pending)
        for call_id, entry in pending.items():
            auth_config = AuthConfig.model_validate(entry["auth_config"])
            credential = supplied.get(entry.get("auth_request_id", "")) or supplied.get(call_id)
            if credential is not None:
                await service.store_credential(
                    app_name=ctx.app_name,
                    user_id=ctx.user_id,
                    auth_config=auth_config,
                    credential=credential,
                )
            elif await service.get_cached_credential(app_name=ctx.app_name, user_id=ctx.user_id, auth_config=auth_config) is None:
                continue

            agent = ctx.agent.root_agent.find_agent(entry.get("agent_name", "")) or ctx.agent
            call = FunctionCall.model_validate(entry["function_call"])
            tools = {tool.name: tool for tool in agent.canonical_tools}
            outcome = await execute_function_call(ctx, call, tools, agent=agent)
            if outcome.pending is not None:
                continue

            remaining.pop(call_id)
            outcome.actions.state_delta[PENDING_AUTH_STATE_KEY] = dict(remaining)
            logger.info("resumed tool call after credential name=%s call_id=%s", call.name, call_id)
            if outcome.response is None:
                yield Event(invocation_id=ctx.invocation_id, author=agent.name, actions=outcome.actions)
            else:
                yield build_result_event(ctx, outcome, agent.name)
