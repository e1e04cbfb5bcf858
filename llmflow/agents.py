from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from llmflow.config import get_settings
from llmflow.context import InvocationContext, ReadonlyContext
from llmflow.errors import ConfigurationError
from llmflow.flows.auto_flow import AutoFlow
from llmflow.flows.base_flow import BaseLlmFlow
from llmflow.flows.instructions import inject_session_state
from llmflow.flows.single_flow import SingleFlow
from llmflow.llm.base import BaseLlm
from llmflow.llm.registry import get_registry
from llmflow.models import Event
from llmflow.tools.base import BaseTool
from llmflow.tools.function_tool import FunctionTool

if TYPE_CHECKING:
    from llmflow.code_executors.base import BaseCodeExecutor
    from llmflow.flows.planning import PlanReActPlanner

logger = logging.getLogger("llmflow")

InstructionProvider = Callable[[ReadonlyContext], Any]
ToolUnion = Union[BaseTool, Callable[..., Any]]


def _as_list(callbacks: Any) -> List[Callable[..., Any]]:
    if callbacks is None:
        return []
    if isinstance(callbacks, (list, tuple)):
        return list(callbacks)
    return [callbacks]


class LlmAgent:
    """
    A model-backed agent: instruction, tools, optional sub-agents.

    Validation happens here, at construction: names must be identifiers,
    tool names unique within the agent, agent names unique within the tree,
    and an agent can only have one parent.
    """

    def __init__(
        self,
        *,
        name: str,
        model: Union[str, BaseLlm] = "",
        instruction: Union[str, InstructionProvider] = "",
        global_instruction: Union[str, InstructionProvider] = "",
        description: str = "",
        tools: Optional[Sequence[ToolUnion]] = None,
        sub_agents: Optional[Sequence["LlmAgent"]] = None,
        code_executor: Optional["BaseCodeExecutor"] = None,
        planner: Optional["PlanReActPlanner"] = None,
        generate_config: Optional[Dict[str, Any]] = None,
        output_key: Optional[str] = None,
        disallow_transfer_to_parent: bool = False,
        disallow_transfer_to_peers: bool = False,
        before_model_callback: Any = None,
        after_model_callback: Any = None,
        before_tool_callback: Any = None,
        after_tool_callback: Any = None,
    ) -> None:
        if not name.isidentifier():
            raise ConfigurationError(f"Agent name must be a valid identifier, got {name!r}")
        if name == "user":
            raise ConfigurationError("Agent name 'user' is reserved for end-user events")

        self.name = name
        self.model = model
        self.instruction = instruction
        self.global_instruction = global_instruction
        self.description = description
        self.code_executor = code_executor
        self.planner = planner
        self.generate_config: Dict[str, Any] = dict(generate_config or {})
        self.output_key = output_key
        self.disallow_transfer_to_parent = disallow_transfer_to_parent
        self.disallow_transfer_to_peers = disallow_transfer_to_peers
        self.before_model_callbacks = _as_list(before_model_callback)
        self.after_model_callbacks = _as_list(after_model_callback)
        self.before_tool_callbacks = _as_list(before_tool_callback)
        self.after_tool_callbacks = _as_list(after_tool_callback)

        self.tools: List[BaseTool] = []
        seen = set()
        for tool in tools or []:
            wrapped = tool if isinstance(tool, BaseTool) else FunctionTool(tool)
            if wrapped.name in seen:
                raise ConfigurationError(
                    f"Duplicate tool name {wrapped.name!r} in agent {name!r}",
                    details={"agent": name, "tool": wrapped.name},
                )
            seen.add(wrapped.name)
            self.tools.append(wrapped)

        self.parent_agent: Optional["LlmAgent"] = None
        self.sub_agents: List["LlmAgent"] = list(sub_agents or [])
        for sub in self.sub_agents:
            if sub.parent_agent is not None:
                raise ConfigurationError(
                    f"Agent {sub.name!r} already has parent {sub.parent_agent.name!r}; cannot add it to {name!r}"
                )
            sub.parent_agent = self
        self._check_unique_names()

    def _check_unique_names(self) -> None:
        seen = set()
        stack = [self]
        while stack:
            agent = stack.pop()
            if agent.name in seen:
                raise ConfigurationError(f"Duplicate agent name {agent.name!r} in agent tree")
            seen.add(agent.name)
            stack.extend(agent.sub_agents)

    @property
    def root_agent(self) -> "LlmAgent":
        agent = self
        while agent.parent_agent is not None:
            agent = agent.parent_agent
        return agent

    def find_agent(self, name: str) -> Optional["LlmAgent"]:
        if self.name == name:
            return self
        for sub in self.sub_agents:
            found = sub.find_agent(name)
            if found is not None:
                return found
        return None

    @property
    def canonical_model(self) -> BaseLlm:
        """The agent's model, inherited from the nearest ancestor when unset."""
        agent: Optional[LlmAgent] = self
        while agent is not None:
            if isinstance(agent.model, BaseLlm):
                return agent.model
            if agent.model:
                return get_registry().new_llm(agent.model)
            agent = agent.parent_agent
        return get_registry().new_llm(get_settings().default_model)

    @property
    def canonical_tools(self) -> List[BaseTool]:
        return list(self.tools)

    async def _resolve(self, instruction: Union[str, InstructionProvider], ctx: ReadonlyContext) -> str:
        if callable(instruction):
            value = instruction(ctx)
            if inspect.isawaitable(value):
                value = await value
            return str(value)
        return inject_session_state(instruction, ctx.state)

    async def canonical_instruction(self, ctx: ReadonlyContext) -> str:
        return await self._resolve(self.instruction, ctx)

    async def canonical_global_instruction(self, ctx: ReadonlyContext) -> str:
        return await self._resolve(self.global_instruction, ctx)

    @property
    def llm_flow(self) -> BaseLlmFlow:
        if self.sub_agents or self.parent_agent is not None:
            return AutoFlow()
        return SingleFlow()

    async def run_async(self, ctx: InvocationContext) -> AsyncIterator[Event]:
        async for event in self.llm_flow.run_async(ctx):
            yield event

    def __repr__(self) -> str:
        return f"LlmAgent(name={self.name!r})"
