"""
Session API under /apps/{app_name}/users/{user_id}/sessions.

Contract: POST 201 + session; GET list 200; GET one 200 or 404; DELETE 204 or 404.
Error responses use the build_error_envelope body (400/401/404).
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from llmflow.dependencies import AuthError, enforce_auth, get_session_store
from llmflow.envelope import error_response
from llmflow.storage.session_store import BaseSessionStore

router = APIRouter(prefix="/apps/{app_name}/users/{user_id}/sessions", tags=["sessions"])


def _session_payload(session, *, with_events: bool = True) -> Dict[str, Any]:
    exclude = None if with_events else {"events"}
    return session.model_dump(mode="json", exclude=exclude)


@router.post("", status_code=201)
async def create_session(
    app_name: str,
    user_id: str,
    request: Request,
    store: BaseSessionStore = Depends(get_session_store),
) -> JSONResponse:
    """
    Create a session. Body optional: { "state": {...}, "session_id": "..." }.
    Returns 201 with the session.
    """
    try:
        enforce_auth(request, user_id)
    except AuthError as exc:
        return error_response(401, "UNAUTHORIZED", str(exc))

    body: Any = {}
    raw = await request.body()
    if raw.strip():
        try:
            body = await request.json()
        except ValueError:
            return error_response(400, "MALFORMED_REQUEST", "Request body must be valid JSON")
    if not isinstance(body, dict):
        return error_response(400, "MALFORMED_REQUEST", "Request body must be a JSON object")
    state = body.get("state")
    if state is not None and not isinstance(state, dict):
        return error_response(
            400,
            "MALFORMED_REQUEST",
            "'state' must be an object",
            details=[{"path": ["state"], "message": "expected object"}],
        )
    session_id = body.get("session_id")
    try:
        session = await store.create_session(
            app_name=app_name,
            user_id=user_id,
            state=state,
            session_id=str(session_id) if session_id is not None else None,
        )
    except ValueError as exc:
        return error_response(409, "ALREADY_EXISTS", str(exc))
    return JSONResponse(status_code=201, content=_session_payload(session))


@router.get("")
async def list_sessions(
    app_name: str,
    user_id: str,
    request: Request,
    store: BaseSessionStore = Depends(get_session_store),
) -> JSONResponse:
    try:
        enforce_auth(request, user_id)
    except AuthError as exc:
        return error_response(401, "UNAUTHORIZED", str(exc))
    sessions = await store.list_sessions(app_name=app_name, user_id=user_id)
    return JSONResponse(
        status_code=200,
        content={"sessions": [_session_payload(s, with_events=False) for s in sessions]},
    )


@router.get("/{session_id}")
async def get_session(
    app_name: str,
    user_id: str,
    session_id: str,
    request: Request,
    store: BaseSessionStore = Depends(get_session_store),
) -> JSONResponse:
    """Get one session with its events, or 404."""
    try:
        enforce_auth(request, user_id)
    except AuthError as exc:
        return error_response(401, "UNAUTHORIZED", str(exc))
    session = await store.get_session(app_name=app_name, user_id=user_id, session_id=session_id)
    if session is None:
        return error_response(404, "NOT_FOUND", f"Session not found: {session_id}")
    return JSONResponse(status_code=200, content=_session_payload(session))


@router.delete("/{session_id}", status_code=204)
async def delete_session(
    app_name: str,
    user_id: str,
    session_id: str,
    request: Request,
    store: BaseSessionStore = Depends(get_session_store),
):
    try:
        enforce_auth(request, user_id)
    except AuthError as exc:
        return error_response(401, "UNAUTHORIZED", str(exc))
    deleted = await store.delete_session(app_name=app_name, user_id=user_id, session_id=session_id)
    if not deleted:
        return error_response(404, "NOT_FOUND", f"Session not found: {session_id}")
    return Response(status_code=204)
