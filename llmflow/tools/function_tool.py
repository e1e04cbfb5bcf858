from __future__ import annotations

import inspect
import typing
from typing import Any, Callable, Dict, List, Optional

from llmflow.auth import AuthConfig, AuthenticationPending
from llmflow.context import ToolContext
from llmflow.models import ToolDeclaration
from llmflow.tools.base import BaseTool

# Parameters filled by the framework, never by the model.
_INJECTED_PARAMS = {"tool_context", "credential"}

_SCALAR_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


def _schema_for(annotation: Any) -> Dict[str, Any]:
    """Very small annotation -> JSON-schema mapper for tool parameters."""
    if annotation is inspect.Parameter.empty or annotation is Any:
        return {}
    if annotation in _SCALAR_TYPES:
        return {"type": _SCALAR_TYPES[annotation]}

    origin = typing.get_origin(annotation)
    args = [a for a in typing.get_args(annotation) if a is not type(None)]

    if origin is typing.Union or (origin is not None and getattr(origin, "__name__", "") == "UnionType"):
        if len(args) == 1:
            return _schema_for(args[0])
        return {"anyOf": [_schema_for(a) for a in args]}
    if annotation is list or origin in (list, List):
        schema: Dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _schema_for(args[0])
        return schema
    if annotation is dict or origin in (dict, Dict):
        return {"type": "object"}
    return {}


def _is_optional(annotation: Any) -> bool:
    return type(None) in typing.get_args(annotation)


def build_parameters_schema(func: Callable[..., Any]) -> Dict[str, Any]:
    signature = inspect.signature(func)
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        hints = {}

    properties: Dict[str, Any] = {}
    required: List[str] = []
    for name, param in signature.parameters.items():
        if name in _INJECTED_PARAMS or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = hints.get(name, param.annotation)
        properties[name] = _schema_for(annotation)
        if param.default is inspect.Parameter.empty and not _is_optional(annotation):
            required.append(name)

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


class FunctionTool(BaseTool):
    """Wraps a plain (sync or async) callable."""

    def __init__(
        self,
        func: Callable[..., Any],
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_long_running: bool = False,
        auth_config: Optional[AuthConfig] = None,
    ) -> None:
        super().__init__(
            name=name or func.__name__,
            description=description if description is not None else (inspect.getdoc(func) or ""),
            is_long_running=is_long_running,
            auth_config=auth_config,
        )
        self.func = func
        self._signature = inspect.signature(func)
        self._parameters = build_parameters_schema(func)

    def declaration(self) -> ToolDeclaration:
        return ToolDeclaration(
            name=self.name,
            description=self.description,
            parameters=self._parameters,
            is_long_running=self.is_long_running,
        )

    async def invoke(self, args: Dict[str, Any], tool_context: ToolContext) -> Any:
        params = self._signature.parameters
        accepts_kwargs = any(p.kind == p.VAR_KEYWORD for p in params.values())
        call_args = {k: v for k, v in args.items() if accepts_kwargs or (k in params and k not in _INJECTED_PARAMS)}

        if self.auth_config is not None:
            credential = await self._credential_or_pending(tool_context)
            if isinstance(credential, AuthenticationPending):
                return credential
            if "credential" in params:
                call_args["credential"] = credential

        if "tool_context" in params:
            call_args["tool_context"] = tool_context

        result = self.func(**call_args)
        if inspect.isawaitable(result):
            result = await result
        return result
