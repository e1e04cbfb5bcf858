from __future__ import annotations

from functools import lru_cache
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Request

from llmflow.agent_loader import load_agent
from llmflow.auth import BaseCredentialService, InMemoryCredentialService
from llmflow.config import get_settings
from llmflow.runner import Runner
from llmflow.storage.artifact_store import BaseArtifactStore, InMemoryArtifactStore
from llmflow.storage.memory_store import BaseMemoryStore, InMemoryMemoryStore
from llmflow.storage.session_store import BaseSessionStore, build_session_store

RunnerFactory = Callable[[str], Runner]


class AuthError(RuntimeError):
    """Raised when authentication fails."""


@lru_cache(maxsize=1)
def get_session_store() -> BaseSessionStore:
    """
    Process-wide session store.

    Tests override this (and `get_runner_factory`) via FastAPI's
    dependency_overrides.
    """
    return build_session_store()


@lru_cache(maxsize=1)
def get_artifact_store() -> BaseArtifactStore:
    return InMemoryArtifactStore()


@lru_cache(maxsize=1)
def get_memory_store() -> BaseMemoryStore:
    return InMemoryMemoryStore()


@lru_cache(maxsize=1)
def get_credential_service() -> BaseCredentialService:
    return InMemoryCredentialService()


def get_runner_factory() -> RunnerFactory:
    """Dependency returning app_name -> Runner, loading agents from AGENTS_DIR."""

    def build(app_name: str) -> Runner:
        return Runner(
            app_name=app_name,
            agent=load_agent(app_name),
            session_store=get_session_store(),
            artifact_store=get_artifact_store(),
            memory_store=get_memory_store(),
            credential_service=get_credential_service(),
        )

    return build


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def _verify_jwt(token: str, secret: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, secret, algorithms=["HS256"], options={"require": ["sub"]})
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid or expired bearer token") from exc


def enforce_auth(request: Request, user_id: str) -> None:
    """
    Auth guard for every session and run endpoint.

    Priority:
    - If AUTH_TOKEN is set, accept only that bearer token.
    - Otherwise, if JWT_SECRET is set, require an HS256 JWT whose `sub` is the user.
    - If neither is configured, authentication is disabled.
    """
    settings = get_settings()
    if settings.auth_token:
        supplied = _get_bearer_token(request)
        if supplied is None:
            raise AuthError("Missing or invalid Authorization header")
        if supplied != settings.auth_token:
            raise AuthError("Invalid bearer token")
        return

    if settings.jwt_secret:
        token = _get_bearer_token(request)
        if token is None:
            raise AuthError("Missing bearer token")
        claims = _verify_jwt(token, settings.jwt_secret)
        if str(claims.get("sub")) != user_id:
            raise AuthError("Token subject does not match the requested user")
        return
