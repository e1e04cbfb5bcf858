from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from jsonschema import Draft7Validator

from llmflow.auth import AuthConfig, AuthCredential, AuthenticationPending
from llmflow.context import ToolContext
from llmflow.models import ToolDeclaration


class BaseTool(ABC):
    """
    Uniform capability exposed to the model.

    Every variant provides a declaration (name, description, parameter
    schema) and an asynchronous `invoke`.
    """

    def __init__(
        self,
        *,
        name: str,
        description: str = "",
        is_long_running: bool = False,
        auth_config: Optional[AuthConfig] = None,
    ) -> None:
        self.name = name
        self.description = description
        self.is_long_running = is_long_running
        self.auth_config = auth_config

    @abstractmethod
    def declaration(self) -> ToolDeclaration:
        ...

    @abstractmethod
    async def invoke(self, args: Dict[str, Any], tool_context: ToolContext) -> Any:
        ...

    def validate_args(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        validator = Draft7Validator(self.declaration().parameters)
        errors: List[Dict[str, Any]] = []
        for err in validator.iter_errors(args):
            errors.append({"path": list(err.path), "message": err.message})
        return errors

    async def _credential_or_pending(self, tool_context: ToolContext) -> Union[AuthCredential, AuthenticationPending]:
        assert self.auth_config is not None
        credential = await tool_context.get_auth_credential(self.auth_config)
        if credential is not None:
            return credential
        return await tool_context.request_credential(self.auth_config)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
