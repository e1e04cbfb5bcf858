"""
Runner: the entry point for one user turn.

It resolves the session, records the user's message, picks the agent that
should answer (the last agent in the tree that spoke, else the root), and
commits every non-partial event the agent yields, in order, before the agent
continues.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, List, Optional

from llmflow.agents import LlmAgent
from llmflow.auth import BaseCredentialService, InMemoryCredentialService
from llmflow.config import get_settings
from llmflow.context import InvocationContext
from llmflow.models import Content, Event, RunConfig, Session, new_id
from llmflow.storage.artifact_store import BaseArtifactStore, InMemoryArtifactStore
from llmflow.storage.memory_store import BaseMemoryStore, InMemoryMemoryStore
from llmflow.storage.session_store import BaseSessionStore, InMemorySessionStore

logger = logging.getLogger("llmflow")


class Runner:
    def __init__(
        self,
        *,
        app_name: str,
        agent: LlmAgent,
        session_store: Optional[BaseSessionStore] = None,
        artifact_store: Optional[BaseArtifactStore] = None,
        memory_store: Optional[BaseMemoryStore] = None,
        credential_service: Optional[BaseCredentialService] = None,
    ) -> None:
        self.app_name = app_name
        self.agent = agent
        self.session_store = session_store or InMemorySessionStore()
        self.artifact_store = artifact_store or InMemoryArtifactStore()
        self.memory_store = memory_store or InMemoryMemoryStore()
        self.credential_service = credential_service or InMemoryCredentialService()

    def _find_agent_to_run(self, session: Session) -> LlmAgent:
        for event in reversed(session.events):
            if event.author == "user":
                continue
            agent = self.agent.find_agent(event.author)
            if agent is not None:
                return agent
        return self.agent

    async def run_async(
        self,
        *,
        user_id: str,
        session_id: str,
        new_message: Optional[Content] = None,
        run_config: Optional[RunConfig] = None,
        parent_context: Optional[InvocationContext] = None,
    ) -> AsyncIterator[Event]:
        """
        Run one turn, yielding every event (partial ones included).

        `parent_context` is set when this turn runs inside another turn
        (an agent used as a tool): model calls are charged to the parent and
        the nested session is not added to memory.
        """
        run_config = run_config or RunConfig(max_llm_calls=get_settings().max_llm_calls)
        session = await self.session_store.get_or_create(self.app_name, user_id, session_id)
        invocation_id = f"e-{new_id()}"

        if new_message is not None and new_message.parts:
            user_event = Event(
                invocation_id=invocation_id,
                author="user",
                content=new_message.model_copy(update={"role": "user"}),
            )
            await self.session_store.append_event(session, user_event)

        agent = self._find_agent_to_run(session)
        ctx = InvocationContext(
            invocation_id=invocation_id,
            agent=agent,
            session=session,
            session_store=self.session_store,
            user_content=new_message,
            artifact_store=self.artifact_store,
            memory_store=self.memory_store,
            credential_service=self.credential_service,
            run_config=run_config,
            parent=parent_context,
        )
        logger.info(
            "turn started invocation_id=%s app=%s user=%s session_id=%s agent=%s",
            invocation_id,
            self.app_name,
            user_id,
            session_id,
            agent.name,
        )

        count = 0
        async for event in agent.run_async(ctx):
            if not event.partial:
                event = await self.session_store.append_event(session, event)
                count += 1
            yield event

        if parent_context is None:
            await self.memory_store.add_session_to_memory(session)

        logger.info(
            "turn finished invocation_id=%s agent=%s events=%d llm_calls=%d",
            invocation_id,
            ctx.agent.name,
            count,
            ctx.llm_call_count,
        )

    async def run_to_completion(
        self,
        *,
        user_id: str,
        session_id: str,
        new_message: Optional[Content] = None,
        run_config: Optional[RunConfig] = None,
    ) -> List[Event]:
        """Collect the committed events of one turn (partial events are skipped)."""
        events: List[Event] = []
        async for event in self.run_async(
            user_id=user_id,
            session_id=session_id,
            new_message=new_message,
            run_config=run_config,
        ):
            if not event.partial:
                events.append(event)
        return events
