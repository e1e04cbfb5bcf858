"""
Run API: POST /run (collect the turn's events) and POST /run_sse (stream them).

Both take { app_name, user_id, session_id, new_message }. The session is
created on first use.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from llmflow.config import get_settings
from llmflow.dependencies import AuthError, RunnerFactory, enforce_auth, get_runner_factory
from llmflow.envelope import error_response, flow_error_response, new_request_id
from llmflow.errors import FlowError
from llmflow.models import Content, RunConfig
from llmflow.runner import Runner

logger = logging.getLogger("llmflow")

router = APIRouter(tags=["runs"])


class RunRequest(BaseModel):
    app_name: str
    user_id: str
    session_id: str
    new_message: Optional[Content] = None
    max_llm_calls: Optional[int] = None


async def _parse_run_request(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        return None, error_response(400, "MALFORMED_REQUEST", "Request body must be valid JSON")
    try:
        return RunRequest.model_validate(payload), None
    except ValidationError as exc:
        details = [{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()]
        return None, error_response(400, "MALFORMED_REQUEST", "Invalid run request", details=details)


def _run_config(body: RunRequest, *, streaming: bool) -> RunConfig:
    max_llm_calls = body.max_llm_calls if body.max_llm_calls is not None else get_settings().max_llm_calls
    return RunConfig(max_llm_calls=max_llm_calls, streaming_mode="sse" if streaming else "none")


async def _prepare(request: Request, runner_factory: RunnerFactory):
    body, error = await _parse_run_request(request)
    if error is not None:
        return None, None, error
    try:
        enforce_auth(request, body.user_id)
    except AuthError as exc:
        return None, None, error_response(401, "UNAUTHORIZED", str(exc))
    try:
        runner = runner_factory(body.app_name)
    except FlowError as exc:
        return None, None, flow_error_response(exc)
    return body, runner, None


@router.post("/run")
async def run(request: Request, runner_factory: RunnerFactory = Depends(get_runner_factory)) -> JSONResponse:
    """
    Run one user turn to completion.
    Returns 200 with { events: [...], meta: { request_id } }.
    """
    body, runner, error = await _prepare(request, runner_factory)
    if error is not None:
        return error

    request_id = new_request_id()
    try:
        events = await runner.run_to_completion(
            user_id=body.user_id,
            session_id=body.session_id,
            new_message=body.new_message,
            run_config=_run_config(body, streaming=False),
        )
    except FlowError as exc:
        logger.warning("run failed request_id=%s app=%s code=%s", request_id, body.app_name, exc.code)
        return flow_error_response(exc)

    return JSONResponse(
        status_code=200,
        content={
            "events": [event.model_dump(mode="json") for event in events],
            "meta": {"request_id": request_id},
        },
    )


async def _event_stream(runner: Runner, body: RunRequest) -> AsyncIterator[str]:
    try:
        async for event in runner.run_async(
            user_id=body.user_id,
            session_id=body.session_id,
            new_message=body.new_message,
            run_config=_run_config(body, streaming=True),
        ):
            yield f"data: {event.model_dump_json()}\n\n"
    except FlowError as exc:
        logger.warning("run_sse failed app=%s code=%s", body.app_name, exc.code)
        yield f"event: error\ndata: {json.dumps({'error': exc.to_dict()})}\n\n"


@router.post("/run_sse")
async def run_sse(request: Request, runner_factory: RunnerFactory = Depends(get_runner_factory)):
    """
    Server-sent events stream of one turn. Partial events are streamed too;
    only non-partial ones are persisted.
    """
    body, runner, error = await _prepare(request, runner_factory)
    if error is not None:
        return error
    return StreamingResponse(_event_stream(runner, body), media_type="text/event-stream")
