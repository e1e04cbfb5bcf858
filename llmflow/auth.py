"""
Credential collaborator.

Tools that need user-mediated credentials declare an AuthConfig. When no
credential is cached the tool asks for one and returns AuthenticationPending;
the loop turns that into a user-facing "authentication required" event and
records a pending marker in session state so a later turn can resume the call.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from llmflow.models import new_id

logger = logging.getLogger("llmflow")

REQUEST_CREDENTIAL_FUNCTION = "request_credential"
PENDING_AUTH_STATE_KEY = "_pending_credential_requests"

AuthType = Literal["api_key", "http_bearer", "oauth2"]


class AuthScheme(BaseModel):
    type: AuthType
    # Header or query parameter name for api_key schemes.
    name: str = ""
    location: Literal["header", "query"] = "header"
    authorization_url: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)


class AuthCredential(BaseModel):
    type: AuthType
    api_key: Optional[str] = None
    token: Optional[str] = None


class AuthConfig(BaseModel):
    auth_scheme: AuthScheme
    raw_credential: Optional[AuthCredential] = None
    credential_key: str = ""

    @model_validator(mode="after")
    def _derive_key(self) -> "AuthConfig":
        if not self.credential_key:
            scheme = self.auth_scheme
            self.credential_key = ":".join(
                [scheme.type, scheme.name or "-", scheme.authorization_url or "-", ",".join(sorted(scheme.scopes))]
            )
        return self


@dataclass
class AuthenticationPending:
    """Sentinel returned by a tool that cannot finish until the user supplies a credential."""

    function_call_id: str
    pending_request_id: str
    auth_config: AuthConfig


def apply_credential(
    scheme: AuthScheme,
    credential: AuthCredential,
    headers: Dict[str, str],
    params: Dict[str, Any],
) -> None:
    """Attach a credential to an outgoing HTTP request."""
    if scheme.type == "api_key":
        name = scheme.name or "X-API-Key"
        if scheme.location == "query":
            params[name] = credential.api_key
        else:
            headers[name] = credential.api_key or ""
        return
    headers["Authorization"] = f"Bearer {credential.token or ''}"


class BaseCredentialService(ABC):
    @abstractmethod
    async def request_credential(self, *, app_name: str, user_id: str, auth_config: AuthConfig) -> str:
        """Start out-of-band acquisition; return a pending request id."""

    @abstractmethod
    async def get_cached_credential(self, *, app_name: str, user_id: str, auth_config: AuthConfig) -> Optional[AuthCredential]:
        ...

    @abstractmethod
    async def store_credential(
        self,
        *,
        app_name: str,
        user_id: str,
        auth_config: AuthConfig,
        credential: AuthCredential,
    ) -> None:
        ...


class InMemoryCredentialService(BaseCredentialService):
    def __init__(self) -> None:
        self._pending: Dict[str, Tuple[str, str, AuthConfig]] = {}
        self._credentials: Dict[Tuple[str, str, str], AuthCredential] = {}

    async def request_credential(self, *, app_name: str, user_id: str, auth_config: AuthConfig) -> str:
        pending_request_id = new_id()
        self._pending[pending_request_id] = (app_name, user_id, auth_config)
        logger.info(
            "credential requested pending_request_id=%s user=%s key=%s",
            pending_request_id,
            user_id,
            auth_config.credential_key,
        )
        return pending_request_id

    async def get_cached_credential(self, *, app_name: str, user_id: str, auth_config: AuthConfig) -> Optional[AuthCredential]:
        return self._credentials.get((app_name, user_id, auth_config.credential_key))

    async def store_credential(
        self,
        *,
        app_name: str,
        user_id: str,
        auth_config: AuthConfig,
        credential: AuthCredential,
    ) -> None:
        self._credentials[(app_name, user_id, auth_config.credential_key)] = credential

    async def resolve(self, pending_request_id: str, credential: AuthCredential) -> None:
        """Complete a pending request, e.g. after the user finished a browser login."""
        try:
            app_name, user_id, auth_config = self._pending.pop(pending_request_id)
        except KeyError as exc:
            raise KeyError(f"Unknown pending credential request: {pending_request_id}") from exc
        await self.store_credential(app_name=app_name, user_id=user_id, auth_config=auth_config, credential=credential)
