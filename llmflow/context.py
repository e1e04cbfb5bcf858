"""
Invocation context and the narrowed views handed to callbacks and tools.

InvocationContext is the per-turn bundle the loop threads through. Callback
and tool code never see it directly:
- ReadonlyContext: identity plus a read-only state mapping.
- CallbackContext: read-write state (through an event delta) and artifacts.
- ToolContext: CallbackContext plus credential and memory access for one call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, List, Mapping, Optional

from llmflow.auth import AuthConfig, AuthCredential, AuthenticationPending, BaseCredentialService
from llmflow.errors import ConfigurationError, ResourceExhaustedError
from llmflow.models import Blob, Content, EventActions, MemoryEntry, RunConfig, Session
from llmflow.state import State
from llmflow.storage.artifact_store import BaseArtifactStore
from llmflow.storage.memory_store import BaseMemoryStore
from llmflow.storage.session_store import BaseSessionStore

if TYPE_CHECKING:
    from llmflow.agents import LlmAgent


@dataclass
class InvocationContext:
    invocation_id: str
    agent: "LlmAgent"
    session: Session
    session_store: BaseSessionStore
    user_content: Optional[Content] = None
    artifact_store: Optional[BaseArtifactStore] = None
    memory_store: Optional[BaseMemoryStore] = None
    credential_service: Optional[BaseCredentialService] = None
    run_config: RunConfig = field(default_factory=RunConfig)
    end_invocation: bool = False
    parent: Optional["InvocationContext"] = None
    llm_call_count: int = field(default=0, init=False)

    @property
    def app_name(self) -> str:
        return self.session.app_name

    @property
    def user_id(self) -> str:
        return self.session.user_id

    def increment_llm_call_count(self) -> None:
        """
        Count a model call; raise once the configured ceiling is exceeded.

        Nested runs (an agent invoked as a tool) charge the enclosing turn, so
        the ceiling covers every model call the turn causes.
        """
        self.llm_call_count += 1
        if self.parent is not None:
            self.parent.increment_llm_call_count()
            return
        limit = self.run_config.max_llm_calls
        if limit > 0 and self.llm_call_count > limit:
            raise ResourceExhaustedError(
                f"Max number of model calls ({limit}) exceeded in invocation {self.invocation_id}",
                details={"max_llm_calls": limit},
            )


class ReadonlyContext:
    def __init__(self, invocation_context: InvocationContext) -> None:
        self._invocation_context = invocation_context

    @property
    def invocation_id(self) -> str:
        return self._invocation_context.invocation_id

    @property
    def agent_name(self) -> str:
        return self._invocation_context.agent.name

    @property
    def user_content(self) -> Optional[Content]:
        return self._invocation_context.user_content

    @property
    def state(self) -> Mapping[str, Any]:
        return MappingProxyType(self._invocation_context.session.state)


class CallbackContext(ReadonlyContext):
    def __init__(self, invocation_context: InvocationContext, event_actions: Optional[EventActions] = None) -> None:
        super().__init__(invocation_context)
        self._event_actions = event_actions or EventActions()
        self._state = State(invocation_context.session.state, self._event_actions.state_delta)

    @property
    def state(self) -> State:  # type: ignore[override]
        return self._state

    @property
    def actions(self) -> EventActions:
        return self._event_actions

    @property
    def end_invocation(self) -> bool:
        """Set to True to stop the turn once the current step finishes."""
        return self._invocation_context.end_invocation

    @end_invocation.setter
    def end_invocation(self, value: bool) -> None:
        self._invocation_context.end_invocation = value

    def _artifacts(self) -> BaseArtifactStore:
        store = self._invocation_context.artifact_store
        if store is None:
            raise ConfigurationError("Artifact store is not configured")
        return store

    async def save_artifact(self, filename: str, artifact: Blob) -> int:
        ctx = self._invocation_context
        version = await self._artifacts().save(
            app_name=ctx.app_name,
            user_id=ctx.user_id,
            session_id=ctx.session.id,
            filename=filename,
            artifact=artifact,
        )
        self._event_actions.artifact_delta[filename] = version
        return version

    async def load_artifact(self, filename: str, version: Optional[int] = None) -> Optional[Blob]:
        ctx = self._invocation_context
        return await self._artifacts().load(
            app_name=ctx.app_name,
            user_id=ctx.user_id,
            session_id=ctx.session.id,
            filename=filename,
            version=version,
        )

    async def list_artifacts(self) -> List[str]:
        ctx = self._invocation_context
        return await self._artifacts().list_keys(app_name=ctx.app_name, user_id=ctx.user_id, session_id=ctx.session.id)


class ToolContext(CallbackContext):
    def __init__(
        self,
        invocation_context: InvocationContext,
        *,
        function_call_id: str,
        event_actions: Optional[EventActions] = None,
    ) -> None:
        super().__init__(invocation_context, event_actions)
        self.function_call_id = function_call_id

    def _credentials(self) -> BaseCredentialService:
        service = self._invocation_context.credential_service
        if service is None:
            raise ConfigurationError("Credential service is not configured")
        return service

    async def get_auth_credential(self, auth_config: AuthConfig) -> Optional[AuthCredential]:
        ctx = self._invocation_context
        return await self._credentials().get_cached_credential(
            app_name=ctx.app_name, user_id=ctx.user_id, auth_config=auth_config
        )

    async def request_credential(self, auth_config: AuthConfig) -> AuthenticationPending:
        ctx = self._invocation_context
        pending_request_id = await self._credentials().request_credential(
            app_name=ctx.app_name, user_id=ctx.user_id, auth_config=auth_config
        )
        self._event_actions.requested_auth_configs[self.function_call_id] = auth_config.model_dump()
        return AuthenticationPending(
            function_call_id=self.function_call_id,
            pending_request_id=pending_request_id,
            auth_config=auth_config,
        )

    async def search_memory(self, query: str) -> List[MemoryEntry]:
        ctx = self._invocation_context
        if ctx.memory_store is None:
            raise ConfigurationError("Memory store is not configured")
        return await ctx.memory_store.search_memory(app_name=ctx.app_name, user_id=ctx.user_id, query=query)
