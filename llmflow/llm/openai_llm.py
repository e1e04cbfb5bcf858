"""
OpenAI-compatible Chat Completions adapters (OpenAI and OpenRouter).

Request translation:
- system instruction -> leading "system" message
- model contents -> "assistant" messages (text + tool_calls)
- function responses -> "tool" messages keyed by tool_call_id
- declarations -> "tools" of type "function"
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from llmflow.config import get_settings
from llmflow.errors import ConfigurationError, ModelGatewayError
from llmflow.llm.base import (
    MALFORMED_REQUEST,
    MODEL_ERROR,
    RATE_LIMITED,
    SAFETY,
    UNAUTHORIZED,
    UNAVAILABLE,
    BaseLlm,
    LlmRequest,
    LlmResponse,
)
from llmflow.models import Content, Part, new_id

logger = logging.getLogger("llmflow")

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def _error_for_status(status_code: int, body: str) -> ModelGatewayError:
    detail = body[:200]
    try:
        parsed = json.loads(body)
        if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
            detail = parsed["error"].get("message") or detail
    except json.JSONDecodeError:
        pass

    if status_code == 429:
        code = RATE_LIMITED
    elif status_code in (401, 403):
        code = UNAUTHORIZED
    elif status_code in (400, 404, 422):
        code = MALFORMED_REQUEST
    elif status_code >= 500:
        code = UNAVAILABLE
    else:
        code = MODEL_ERROR
    return ModelGatewayError(f"HTTP {status_code}: {detail}", code=code, details={"status_code": status_code})


def _text_of(part: Part) -> Optional[str]:
    if part.text is not None:
        return part.text
    if part.executable_code is not None:
        return f"```python\n{part.executable_code.code}\n```"
    if part.code_execution_result is not None:
        result = part.code_execution_result
        return f"Code execution {result.outcome}:\n{result.stdout or result.stderr}"
    return None


def _to_messages(request: LlmRequest) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if request.system_instruction:
        messages.append({"role": "system", "content": request.system_instruction})

    for content in request.contents:
        texts = [t for t in (_text_of(p) for p in content.parts) if t]
        calls = [p.function_call for p in content.parts if p.function_call is not None]
        responses = [p.function_response for p in content.parts if p.function_response is not None]

        if content.role == "model":
            msg: Dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
            if calls:
                msg["tool_calls"] = [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": json.dumps(c.args)},
                    }
                    for c in calls
                ]
            messages.append(msg)
            continue

        for r in responses:
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": r.id,
                    "content": json.dumps(r.response, default=str),
                }
            )
        if texts:
            messages.append({"role": "user", "content": "\n".join(texts)})
    return messages


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("model returned non-JSON tool arguments: %s", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _to_content(text: str, tool_calls: List[Dict[str, Any]]) -> Content:
    parts: List[Part] = []
    if text:
        parts.append(Part.from_text(text))
    for tc in tool_calls:
        func = tc.get("function") or {}
        parts.append(
            Part.from_function_call(
                func.get("name", ""),
                _parse_arguments(func.get("arguments")),
                tc.get("id") or f"call_{new_id()}",
            )
        )
    return Content(role="model", parts=parts)


class OpenAILlm(BaseLlm):
    """Chat Completions over httpx. `transport` is for tests (httpx.MockTransport)."""

    api_key_env = "OPENAI_API_KEY"

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(model)
        self.api_key = api_key or self._default_api_key()
        if not self.api_key:
            raise ConfigurationError(f"{self.api_key_env} is required for model {model!r}")
        self.base_url = (base_url or self._default_base_url()).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def supported_models(cls) -> List[str]:
        return [r"gpt-.*", r"o[0-9].*", r"openai/.*"]

    def _default_api_key(self) -> Optional[str]:
        return get_settings().openai_api_key

    def _default_base_url(self) -> str:
        return get_settings().openai_base_url

    def _wire_model(self) -> str:
        return self.model[len("openai/"):] if self.model.startswith("openai/") else self.model

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _body(self, request: LlmRequest, stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": self._wire_model(), "messages": _to_messages(request)}
        body.update(request.config)
        if request.declarations:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {"name": d.name, "description": d.description, "parameters": d.parameters},
                }
                for d in request.declarations
            ]
        if stream:
            body["stream"] = True
        return body

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def generate_content_async(self, llm_request: LlmRequest, stream: bool = False) -> AsyncIterator[LlmResponse]:
        logger.info(
            "model call model=%s contents=%d tools=%d stream=%s",
            self.model,
            len(llm_request.contents),
            len(llm_request.declarations),
            stream,
        )
        try:
            if stream:
                async for response in self._stream(llm_request):
                    yield response
            else:
                yield await self._complete(llm_request)
        except ModelGatewayError as exc:
            logger.warning("model error model=%s code=%s: %s", self.model, exc.code, exc.message)
            yield LlmResponse.from_error(exc.code, exc.message)
        except httpx.TimeoutException as exc:
            yield LlmResponse.from_error(UNAVAILABLE, f"Model request timed out: {exc}")
        except httpx.RequestError as exc:
            yield LlmResponse.from_error(UNAVAILABLE, f"Cannot reach model backend: {exc}")

    async def _complete(self, request: LlmRequest) -> LlmResponse:
        async with self._client() as client:
            resp = await client.post("/chat/completions", json=self._body(request, stream=False), headers=self._headers())
        if resp.status_code >= 400:
            raise _error_for_status(resp.status_code, resp.text)
        data = resp.json()

        choices = data.get("choices") or []
        if not choices:
            raise ModelGatewayError("Model returned no choices", code=MODEL_ERROR)
        choice = choices[0]
        finish_reason = choice.get("finish_reason")
        if finish_reason == "content_filter":
            raise ModelGatewayError("Response blocked by the provider's content filter", code=SAFETY)

        message = choice.get("message") or {}
        if message.get("refusal"):
            raise ModelGatewayError(str(message["refusal"]), code=SAFETY)
        return LlmResponse(
            content=_to_content(message.get("content") or "", message.get("tool_calls") or []),
            finish_reason=finish_reason,
            usage=data.get("usage") or {},
        )

    async def _stream(self, request: LlmRequest) -> AsyncIterator[LlmResponse]:
        text = ""
        tool_calls: Dict[int, Dict[str, Any]] = {}
        finish_reason: Optional[str] = None

        async with self._client() as client:
            async with client.stream(
                "POST",
                "/chat/completions",
                json=self._body(request, stream=True),
                headers={**self._headers(), "Accept": "text/event-stream"},
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise _error_for_status(resp.status_code, body)

                async for line in resp.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data_str = line[len("data: "):].strip()
                    if data_str == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data_str)
                    except json.JSONDecodeError:
                        logger.warning("skipping malformed stream chunk: %s", data_str[:200])
                        continue

                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    finish_reason = choices[0].get("finish_reason") or finish_reason

                    piece = delta.get("content")
                    if piece:
                        text += piece
                        yield LlmResponse(
                            content=Content(role="model", parts=[Part.from_text(piece)]),
                            partial=True,
                            turn_complete=False,
                        )

                    for tc_delta in delta.get("tool_calls") or []:
                        slot = tool_calls.setdefault(
                            tc_delta.get("index", 0),
                            {"id": "", "function": {"name": "", "arguments": ""}},
                        )
                        if tc_delta.get("id"):
                            slot["id"] = tc_delta["id"]
                        func = tc_delta.get("function") or {}
                        slot["function"]["name"] += func.get("name") or ""
                        slot["function"]["arguments"] += func.get("arguments") or ""

        if finish_reason == "content_filter":
            raise ModelGatewayError("Response blocked by the provider's content filter", code=SAFETY)
        yield LlmResponse(
            content=_to_content(text, [tool_calls[i] for i in sorted(tool_calls)]),
            finish_reason=finish_reason or "stop",
        )


class OpenRouterLlm(OpenAILlm):
    """One key, many vendors: `openrouter/<vendor>/<model>`."""

    api_key_env = "OPENROUTER_API_KEY"

    @classmethod
    def supported_models(cls) -> List[str]:
        return [r"openrouter/.*"]

    def _default_api_key(self) -> Optional[str]:
        return get_settings().openrouter_api_key

    def _default_base_url(self) -> str:
        return OPENROUTER_BASE_URL

    def _wire_model(self) -> str:
        return self.model[len("openrouter/"):]
