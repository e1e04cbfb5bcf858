import os
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Union

import pytest

from llmflow.llm.base import BaseLlm, LlmRequest, LlmResponse
from llmflow.models import Content, Part

Step = Union[LlmResponse, Content, str, Callable[[LlmRequest], Any]]


def text(value: str) -> Content:
    return Content(role="model", parts=[Part.from_text(value)])


def call(name: str, args: Dict[str, Any], call_id: str = "") -> Part:
    return Part.from_function_call(name, args, call_id or None)


def calls(*parts: Part) -> Content:
    return Content(role="model", parts=list(parts))


class ScriptedLlm(BaseLlm):
    """
    Test double that replays a fixed script of replies, one per model call.

    A step may be an LlmResponse, a Content, plain text, or a callable that
    receives the LlmRequest and returns any of those. Every request is kept
    in `requests` so tests can inspect what the model saw.
    """

    def __init__(self, steps: List[Step], model: str = "scripted") -> None:
        super().__init__(model)
        self.steps = list(steps)
        self.requests: List[LlmRequest] = []

    def _next(self, request: LlmRequest) -> LlmResponse:
        if not self.steps:
            raise AssertionError("ScriptedLlm ran out of scripted replies")
        step = self.steps.pop(0)
        if callable(step) and not isinstance(step, (LlmResponse, Content)):
            step = step(request)
        if isinstance(step, str):
            step = text(step)
        if isinstance(step, Content):
            step = LlmResponse(content=step)
        return step

    async def generate_content_async(self, llm_request: LlmRequest, stream: bool = False):
        self.requests.append(llm_request)
        response = self._next(llm_request)
        if stream and response.content is not None and response.content.parts and response.content.parts[0].text:
            full = response.content.parts[0].text
            middle = len(full) // 2
            for chunk in (full[:middle], full[middle:]):
                yield LlmResponse(
                    content=Content(role="model", parts=[Part.from_text(chunk)]),
                    partial=True,
                    turn_complete=False,
                )
        yield response


@contextmanager
def env_vars(env: Dict[str, str]):
    """
    Temporarily set environment variables for a test.

    Restores previous values afterwards, even if the test fails.
    """
    old_values: Dict[str, Any] = {}
    for key, value in env.items():
        old_values[key] = os.environ.get(key)
        os.environ[key] = value
    try:
        yield
    finally:
        for key, old in old_values.items():
            if old is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Keep tests independent of a developer's .env and local data directory."""
    for key in (
        "LLMFLOW_MODEL",
        "OPENAI_API_KEY",
        "OPENROUTER_API_KEY",
        "SESSION_BACKEND",
        "DATABASE_URL",
        "AUTH_TOKEN",
        "JWT_SECRET",
        "MAX_LLM_CALLS",
        "ALLOW_UNSAFE_CODE_EXECUTION",
        "CODE_EXECUTOR_URL",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DB_PATH", str(tmp_path / "sessions.db"))
    monkeypatch.setenv("AGENTS_DIR", str(tmp_path / "agents"))
