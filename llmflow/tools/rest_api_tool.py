"""
Tools described by an OpenAPI-style document.

Each operation becomes one RestApiTool: path/query/header parameters and the
JSON request body's properties are flattened into a single argument schema.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx
import yaml

from llmflow.auth import AuthConfig, AuthScheme, AuthenticationPending, apply_credential
from llmflow.context import ToolContext
from llmflow.errors import ConfigurationError
from llmflow.models import ToolDeclaration
from llmflow.tools.base import BaseTool

logger = logging.getLogger("llmflow")

_HTTP_METHODS = {"get", "post", "put", "patch", "delete"}


@dataclass
class ApiParameter:
    name: str
    location: str  # "path" | "query" | "header" | "body"
    schema: Dict[str, Any] = field(default_factory=dict)
    required: bool = False
    description: str = ""


class RestApiTool(BaseTool):
    def __init__(
        self,
        *,
        name: str,
        description: str,
        method: str,
        url: str,
        parameters: Optional[List[ApiParameter]] = None,
        auth_scheme: Optional[AuthScheme] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(
            name=name,
            description=description,
            auth_config=AuthConfig(auth_scheme=auth_scheme) if auth_scheme is not None else None,
        )
        self.method = method.upper()
        self.url = url
        self.parameters = parameters or []
        self._transport = transport
        self._timeout = timeout

    def declaration(self) -> ToolDeclaration:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for param in self.parameters:
            schema = dict(param.schema)
            if param.description and "description" not in schema:
                schema["description"] = param.description
            properties[param.name] = schema
            if param.required:
                required.append(param.name)
        parameters: Dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            parameters["required"] = required
        return ToolDeclaration(name=self.name, description=self.description, parameters=parameters)

    async def invoke(self, args: Dict[str, Any], tool_context: ToolContext) -> Any:
        headers: Dict[str, str] = {}
        query: Dict[str, Any] = {}
        body: Dict[str, Any] = {}
        path_values: Dict[str, Any] = {}

        for param in self.parameters:
            if param.name not in args:
                continue
            value = args[param.name]
            if param.location == "path":
                path_values[param.name] = value
            elif param.location == "query":
                query[param.name] = value
            elif param.location == "header":
                headers[param.name] = str(value)
            else:
                body[param.name] = value

        if self.auth_config is not None:
            credential = await self._credential_or_pending(tool_context)
            if isinstance(credential, AuthenticationPending):
                return credential
            apply_credential(self.auth_config.auth_scheme, credential, headers, query)

        url = self.url.format(**path_values)
        logger.info("rest tool request tool=%s method=%s url=%s", self.name, self.method, url)
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            response = await client.request(
                self.method,
                url,
                params=query or None,
                headers=headers or None,
                json=body or None,
            )
        response.raise_for_status()
        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return {"text": response.text}


def _tool_name(operation_id: str) -> str:
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", operation_id).lower()
    return re.sub(r"[^a-z0-9_]", "_", snake)


def _scheme_from_openapi(raw: Dict[str, Any]) -> AuthScheme:
    kind = raw.get("type")
    if kind == "apiKey":
        return AuthScheme(type="api_key", name=str(raw.get("name", "")), location=raw.get("in", "header"))
    if kind == "http" and str(raw.get("scheme", "")).lower() == "bearer":
        return AuthScheme(type="http_bearer")
    if kind == "oauth2":
        flows = raw.get("flows") or {}
        flow = next(iter(flows.values()), {}) if isinstance(flows, dict) else {}
        return AuthScheme(
            type="oauth2",
            authorization_url=flow.get("authorizationUrl"),
            scopes=sorted((flow.get("scopes") or {}).keys()),
        )
    raise ConfigurationError(f"Unsupported security scheme: {raw}")


def load_rest_api_tools(
    document: Union[str, Dict[str, Any]],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[RestApiTool]:
    """Build one tool per operation of an OpenAPI document (YAML/JSON text or mapping)."""
    spec = yaml.safe_load(document) if isinstance(document, str) else document
    if not isinstance(spec, dict) or not isinstance(spec.get("paths"), dict):
        raise ConfigurationError("OpenAPI document must be a mapping with 'paths'")

    servers = spec.get("servers") or [{}]
    base_url = str(servers[0].get("url", "")).rstrip("/")
    security_schemes = (spec.get("components") or {}).get("securitySchemes") or {}
    global_security = spec.get("security") or []

    tools: List[RestApiTool] = []
    for path, item in spec["paths"].items():
        for method, operation in item.items():
            if method.lower() not in _HTTP_METHODS or not isinstance(operation, dict):
                continue
            operation_id = operation.get("operationId") or f"{method}_{path}"
            params: List[ApiParameter] = []
            for raw in operation.get("parameters") or []:
                params.append(
                    ApiParameter(
                        name=raw["name"],
                        location=raw.get("in", "query"),
                        schema=raw.get("schema") or {},
                        required=bool(raw.get("required", raw.get("in") == "path")),
                        description=raw.get("description", ""),
                    )
                )
            body_schema = (
                ((operation.get("requestBody") or {}).get("content") or {}).get("application/json") or {}
            ).get("schema") or {}
            body_required = set(body_schema.get("required") or [])
            for prop, prop_schema in (body_schema.get("properties") or {}).items():
                params.append(ApiParameter(name=prop, location="body", schema=prop_schema, required=prop in body_required))

            auth_scheme = None
            for requirement in operation.get("security", global_security):
                for scheme_name in requirement:
                    if scheme_name in security_schemes:
                        auth_scheme = _scheme_from_openapi(security_schemes[scheme_name])
                        break
                if auth_scheme is not None:
                    break

            tools.append(
                RestApiTool(
                    name=_tool_name(operation_id),
                    description=operation.get("description") or operation.get("summary") or "",
                    method=method,
                    url=base_url + path,
                    parameters=params,
                    auth_scheme=auth_scheme,
                    transport=transport,
                )
            )
    return tools
