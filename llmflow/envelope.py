from __future__ import annotations

import uuid
from typing import Any, Dict, Tuple

from fastapi.responses import JSONResponse

from llmflow.errors import FlowError

_STATUS_BY_CODE = {
    "AGENT_NOT_FOUND": 404,
    "NOT_FOUND": 404,
    "MALFORMED_REQUEST": 400,
    "UNAUTHORIZED": 401,
    "EVAL_FILE_INVALID": 400,
    "ALREADY_EXISTS": 409,
    # Loop Detected: the agent kept calling the model past the turn's ceiling.
    "MAX_LLM_CALLS_EXCEEDED": 508,
}


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": {"request_id": request_id},
    }
    return status_code, body


def error_response(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


def flow_error_response(exc: FlowError) -> JSONResponse:
    return error_response(_STATUS_BY_CODE.get(exc.code, 500), exc.code, exc.message, exc.details)
