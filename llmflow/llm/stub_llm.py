from __future__ import annotations

import json
from typing import AsyncIterator, List

from llmflow.llm.base import BaseLlm, LlmRequest, LlmResponse
from llmflow.models import Content, Part


def _reply_for(request: LlmRequest) -> str:
    if not request.contents:
        return "stub: (no input)"
    last = request.contents[-1]
    responses = [p.function_response for p in last.parts if p.function_response is not None]
    if responses:
        rendered = ", ".join(f"{r.name} -> {json.dumps(r.response, sort_keys=True, default=str)}" for r in responses)
        return f"stub: tool results {rendered}"
    text = "".join(p.text or "" for p in last.parts if p.text is not None and not p.thought)
    return f"stub: {text}" if text else "stub: (no text)"


class StubLlm(BaseLlm):
    """
    Deterministic offline backend.

    Never calls tools: it echoes the latest user text, or summarises the
    latest tool results. Used when no API key is configured and by the CLI's
    doctor/setup paths.
    """

    @classmethod
    def supported_models(cls) -> List[str]:
        return [r"stub.*"]

    async def generate_content_async(self, llm_request: LlmRequest, stream: bool = False) -> AsyncIterator[LlmResponse]:
        text = _reply_for(llm_request)
        if stream:
            words = text.split(" ")
            for i, word in enumerate(words):
                chunk = word if i == 0 else " " + word
                yield LlmResponse(content=Content(role="model", parts=[Part.from_text(chunk)]), partial=True, turn_complete=False)
        yield LlmResponse(content=Content(role="model", parts=[Part.from_text(text)]), finish_reason="stop")
