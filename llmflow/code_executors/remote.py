from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import httpx

from llmflow.code_executors.base import BaseCodeExecutor, CodeExecutionInput, CodeExecutionOutput, File
from llmflow.config import get_settings
from llmflow.errors import CodeExecutionInfraError, ConfigurationError

if TYPE_CHECKING:
    from llmflow.context import InvocationContext

logger = logging.getLogger("llmflow")


class RemoteCodeExecutor(BaseCodeExecutor):
    """
    Delegates to an HTTP execution service.

    Contract: POST {base_url}/execute with {code, language, files, session_id?}
    -> {stdout, stderr, exit_code, files: [{name, content (base64), mime_type}]}.
    When stateful, the execution id is sent as session_id so the service keeps
    variable bindings between calls.
    """

    supports_stateful = True

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        settings = get_settings()
        self.base_url = (base_url or settings.code_executor_url or "").rstrip("/")
        if not self.base_url:
            raise ConfigurationError("RemoteCodeExecutor needs base_url or CODE_EXECUTOR_URL")
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else settings.code_execution_timeout
        self._transport = transport

    async def execute_code(
        self,
        invocation_context: "InvocationContext",
        code_input: CodeExecutionInput,
    ) -> CodeExecutionOutput:
        payload: Dict[str, Any] = {
            "code": self.prelude() + code_input.code,
            "language": "python",
            "files": [
                {
                    "name": f.name,
                    "content": base64.b64encode(f.content).decode("ascii"),
                    "mime_type": f.mime_type,
                }
                for f in code_input.input_files
            ],
        }
        if self.stateful and code_input.execution_id:
            payload["session_id"] = code_input.execution_id

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        try:
            async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport, timeout=self.timeout) as client:
                resp = await client.post("/execute", json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise CodeExecutionInfraError(f"Remote code executor failed: {exc}") from exc
        except ValueError as exc:
            raise CodeExecutionInfraError("Remote code executor returned invalid JSON") from exc

        files = [
            File(
                name=str(f.get("name", "output")),
                content=base64.b64decode(f.get("content", "")),
                mime_type=str(f.get("mime_type", "application/octet-stream")),
            )
            for f in data.get("files") or []
        ]
        logger.info("remote execution finished exit_code=%s", data.get("exit_code", 0))
        return CodeExecutionOutput(
            stdout=str(data.get("stdout", "")),
            stderr=str(data.get("stderr", "")),
            exit_code=int(data.get("exit_code", 0) or 0),
            output_files=files,
        )
