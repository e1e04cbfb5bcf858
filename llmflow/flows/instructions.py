from __future__ import annotations

import re
from typing import Any, AsyncIterator, Mapping

from llmflow.context import InvocationContext, ReadonlyContext
from llmflow.errors import ConfigurationError
from llmflow.flows.base_flow import BaseLlmRequestProcessor
from llmflow.llm.base import LlmRequest
from llmflow.models import Event
from llmflow.state import APP_PREFIX, TEMP_PREFIX, USER_PREFIX

_PLACEHOLDER = re.compile(r"{+[^{}]*}+")


def _is_state_name(name: str) -> bool:
    for prefix in (APP_PREFIX, USER_PREFIX, TEMP_PREFIX):
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    return name.isidentifier()


def inject_session_state(template: str, state: Mapping[str, Any]) -> str:
    """
    Replace `{key}` placeholders with state values.

    `{key?}` renders empty when the key is missing; a missing required key is
    a configuration error. Braces that do not hold a state name are kept.
    """

    def replace(match: "re.Match[str]") -> str:
        raw = match.group()
        name = raw.lstrip("{").rstrip("}").strip()
        optional = name.endswith("?")
        if optional:
            name = name[:-1]
        if not _is_state_name(name):
            return raw
        if name in state:
            return str(state[name])
        if optional:
            return ""
        raise ConfigurationError(f"Instruction references missing state key {name!r}", details={"key": name})

    return _PLACEHOLDER.sub(replace, template)


class BasicRequestProcessor(BaseLlmRequestProcessor):
    async def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        llm_request.model = ctx.agent.canonical_model.model
        llm_request.config = dict(ctx.agent.generate_config)
        return
        yield


class InstructionsRequestProcessor(BaseLlmRequestProcessor):
    """Global instruction (from the root), the agent's instruction, then its identity."""

    async def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        agent = ctx.agent
        readonly = ReadonlyContext(ctx)

        instructions = []
        root = agent.root_agent
        if root.global_instruction:
            instructions.append(await root.canonical_global_instruction(readonly))
        if agent.instruction:
            instructions.append(await agent.canonical_instruction(readonly))

        identity = f'You are an agent. Your internal name is "{agent.name}".'
        if agent.description:
            identity += f' The description about you is "{agent.description}".'
        instructions.append(identity)

        llm_request.append_instructions(instructions)
        return
        yield
