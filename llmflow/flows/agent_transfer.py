from __future__ import annotations

from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List

from llmflow.context import InvocationContext, ToolContext
from llmflow.flows.base_flow import BaseLlmRequestProcessor
from llmflow.llm.base import LlmRequest
from llmflow.models import Event
from llmflow.tools.function_tool import FunctionTool

if TYPE_CHECKING:
    from llmflow.agents import LlmAgent


def transfer_targets(agent: "LlmAgent") -> List["LlmAgent"]:
    targets = list(agent.sub_agents)
    parent = agent.parent_agent
    if parent is not None:
        if not agent.disallow_transfer_to_parent:
            targets.append(parent)
        if not agent.disallow_transfer_to_peers:
            targets.extend(peer for peer in parent.sub_agents if peer is not agent)
    return targets


def transfer_to_agent(agent_name: str, tool_context: ToolContext) -> Dict[str, Any]:
    """Transfer the conversation to another agent that is better suited to answer."""
    current = tool_context._invocation_context.agent
    names = [a.name for a in transfer_targets(current)]
    if agent_name not in names:
        raise ValueError(f"Cannot transfer to {agent_name!r}; valid targets: {', '.join(names) or 'none'}")
    tool_context.actions.transfer_to_agent = agent_name
    return {"transferred_to": agent_name}


class AgentTransferRequestProcessor(BaseLlmRequestProcessor):
    async def run_async(self, ctx: InvocationContext, llm_request: LlmRequest) -> AsyncIterator[Event]:
        targets = transfer_targets(ctx.agent)
        if not targets:
            return
        lines = [f"- {a.name}: {a.description or 'no description'}" for a in targets]
        llm_request.append_instructions(
            [
                "You can hand the conversation to another agent when it is better suited to answer. "
                "Available agents:\n" + "\n".join(lines) + "\n"
                "To hand off, call the `transfer_to_agent` function with the agent's name and do not answer yourself."
            ]
        )
        llm_request.append_tools([FunctionTool(transfer_to_agent)])
        return
        yield
