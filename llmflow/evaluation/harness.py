from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from llmflow.agents import LlmAgent
from llmflow.auth import REQUEST_CREDENTIAL_FUNCTION
from llmflow.evaluation.eval_case import EvalCase, EvalTurn
from llmflow.models import Blob, Content, RunConfig
from llmflow.runner import Runner
from llmflow.storage.artifact_store import InMemoryArtifactStore
from llmflow.storage.session_store import InMemorySessionStore

logger = logging.getLogger("llmflow")


@dataclass
class TurnTrace:
    query: str
    actual_tool_use: List[Dict[str, Any]] = field(default_factory=list)
    response: str = ""
    expected_tool_use: List[Dict[str, Any]] = field(default_factory=list)
    reference: str = ""


def _mocks_for(turn: EvalTurn) -> Dict[str, Any]:
    return {t.tool_name: t.mock_tool_output for t in turn.expected_tool_use if t.has_mock}


async def run_eval_case(
    agent: LlmAgent,
    case: EvalCase,
    *,
    app_name: str = "eval",
    user_id: str = "eval_user",
    max_llm_calls: Optional[int] = None,
) -> List[TurnTrace]:
    """Drive a fresh session turn by turn, with mocked tool outputs, and record what happened."""
    session_store = InMemorySessionStore()
    artifact_store = InMemoryArtifactStore()
    initial = case.initial_session
    session = await session_store.create_session(
        app_name=app_name,
        user_id=user_id,
        state=dict(initial.state) if initial else None,
    )
    if initial:
        for filename, text in initial.artifacts.items():
            await artifact_store.save(
                app_name=app_name,
                user_id=user_id,
                session_id=session.id,
                filename=filename,
                artifact=Blob(data=text.encode("utf-8"), mime_type="text/plain"),
            )

    runner = Runner(app_name=app_name, agent=agent, session_store=session_store, artifact_store=artifact_store)
    traces: List[TurnTrace] = []
    for turn in case.data:
        run_config = RunConfig(tool_mocks=_mocks_for(turn))
        if max_llm_calls is not None:
            run_config.max_llm_calls = max_llm_calls

        trace = TurnTrace(
            query=turn.query,
            expected_tool_use=[t.as_call() for t in turn.expected_tool_use],
            reference=turn.reference,
        )
        async for event in runner.run_async(
            user_id=user_id,
            session_id=session.id,
            new_message=Content.from_text(turn.query),
            run_config=run_config,
        ):
            if event.partial:
                continue
            for call in event.get_function_calls():
                if call.name == REQUEST_CREDENTIAL_FUNCTION:
                    continue
                trace.actual_tool_use.append({"tool_name": call.name, "tool_input": dict(call.args)})
            if event.is_final_response() and event.text:
                trace.response = event.text
        traces.append(trace)
        logger.info("eval turn case=%s tools=%d", case.name, len(trace.actual_tool_use))
    return traces
