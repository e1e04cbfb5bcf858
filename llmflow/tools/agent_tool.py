from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from llmflow.context import ToolContext
from llmflow.models import Content, ToolDeclaration
from llmflow.state import is_temp_key
from llmflow.storage.session_store import InMemorySessionStore
from llmflow.tools.base import BaseTool

if TYPE_CHECKING:
    from llmflow.agents import LlmAgent

logger = logging.getLogger("llmflow")


class AgentTool(BaseTool):
    """
    Runs another agent as a tool.

    The nested agent gets a throwaway in-memory session seeded with the
    caller's state; state it changes is copied back through the caller's
    delta, so it commits with the tool's result event. Its model calls count
    against the calling turn's ceiling.
    """

    def __init__(self, agent: "LlmAgent", *, skip_summarization: bool = False) -> None:
        super().__init__(name=agent.name, description=agent.description)
        self.agent = agent
        self.skip_summarization = skip_summarization

    def declaration(self) -> ToolDeclaration:
        return ToolDeclaration(
            name=self.name,
            description=self.description,
            parameters={
                "type": "object",
                "properties": {"request": {"type": "string"}},
                "required": ["request"],
            },
        )

    async def invoke(self, args: Dict[str, Any], tool_context: ToolContext) -> Any:
        from llmflow.runner import Runner

        parent = tool_context._invocation_context
        seed_state = {k: v for k, v in tool_context.state.to_dict().items() if not is_temp_key(k)}

        store = InMemorySessionStore()
        session = await store.create_session(
            app_name=self.agent.name,
            user_id=parent.user_id,
            state=seed_state,
        )
        runner = Runner(
            app_name=self.agent.name,
            agent=self.agent,
            session_store=store,
            artifact_store=parent.artifact_store,
            memory_store=parent.memory_store,
            credential_service=parent.credential_service,
        )

        final_text = ""
        async for event in runner.run_async(
            user_id=parent.user_id,
            session_id=session.id,
            new_message=Content.from_text(str(args.get("request", ""))),
            run_config=parent.run_config,
            parent_context=parent,
        ):
            if event.is_final_response() and event.text:
                final_text = event.text

        child = await store.get_session(app_name=self.agent.name, user_id=parent.user_id, session_id=session.id)
        if child is not None:
            for key, value in child.state.items():
                if seed_state.get(key) != value:
                    tool_context.state[key] = value

        if self.skip_summarization:
            tool_context.actions.skip_summarization = True
        logger.info("agent tool finished tool=%s chars=%d", self.name, len(final_text))
        return {"result": final_text}
