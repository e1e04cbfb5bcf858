from __future__ import annotations

import importlib
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator

from llmflow.agents import LlmAgent
from llmflow.code_executors.utils import build_code_executor
from llmflow.config import get_settings
from llmflow.errors import AgentLoadError, ConfigurationError
from llmflow.flows.planning import PlanReActPlanner

logger = logging.getLogger("llmflow")

_NAME_PATTERN = "^[A-Za-z_][A-Za-z0-9_]*$"

AGENT_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["name"],
    "additionalProperties": False,
    "properties": {
        "name": {"type": "string", "pattern": _NAME_PATTERN},
        "model": {"type": "string"},
        "description": {"type": "string"},
        "instruction": {"type": "string"},
        "global_instruction": {"type": "string"},
        "tools": {"type": "array", "items": {"type": "string", "pattern": "^[\\w.]+:[\\w.]+$"}},
        "sub_agents": {"type": "array", "items": {"type": "string"}},
        "code_executor": {
            "type": "object",
            "required": ["type"],
            "properties": {
                "type": {"enum": ["unsafe_local", "subprocess", "remote"]},
                "stateful": {"type": "boolean"},
                "error_retry_attempts": {"type": "integer", "minimum": 0},
            },
        },
        "planner": {"enum": ["plan_react"]},
        "generate_config": {"type": "object"},
        "output_key": {"type": "string"},
        "disallow_transfer_to_parent": {"type": "boolean"},
        "disallow_transfer_to_peers": {"type": "boolean"},
    },
}

_VALIDATOR = Draft7Validator(AGENT_SCHEMA)


def resolve_reference(ref: str) -> Any:
    """Import `package.module:attr` (attr may be dotted)."""
    module_name, _, attr_path = ref.partition(":")
    if not module_name or not attr_path:
        raise AgentLoadError(f"Expected 'module:attr' reference, got {ref!r}")
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise AgentLoadError(f"Cannot import module {module_name!r} for {ref!r}: {exc}") from exc
    for attr in attr_path.split("."):
        try:
            obj = getattr(obj, attr)
        except AttributeError as exc:
            raise AgentLoadError(f"{ref!r} does not resolve: missing attribute {attr!r}") from exc
    return obj


def validate_definition(raw: Any) -> List[Dict[str, Any]]:
    return [{"path": list(err.path), "message": err.message} for err in _VALIDATOR.iter_errors(raw)]


def _read_definition(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise AgentLoadError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise AgentLoadError(f"Agent definition {path} must deserialize to a mapping")
    errors = validate_definition(data)
    if errors:
        raise AgentLoadError(f"Agent definition {path} is invalid", details=errors)
    return data


def _load_tools(refs: List[str]) -> List[Any]:
    tools: List[Any] = []
    for ref in refs:
        obj = resolve_reference(ref)
        if isinstance(obj, (list, tuple)):
            tools.extend(obj)
        else:
            tools.append(obj)
    return tools


def load_agent_file(path: Path) -> LlmAgent:
    raw = _read_definition(path)
    sub_agents = [load_agent(ref, base_dir=path.parent) for ref in raw.get("sub_agents", [])]
    try:
        code_executor = build_code_executor(raw["code_executor"]) if raw.get("code_executor") else None
        agent = LlmAgent(
            name=raw["name"],
            model=raw.get("model", ""),
            description=raw.get("description", ""),
            instruction=raw.get("instruction", ""),
            global_instruction=raw.get("global_instruction", ""),
            tools=_load_tools(raw.get("tools", [])),
            sub_agents=sub_agents,
            code_executor=code_executor,
            planner=PlanReActPlanner() if raw.get("planner") == "plan_react" else None,
            generate_config=raw.get("generate_config"),
            output_key=raw.get("output_key"),
            disallow_transfer_to_parent=bool(raw.get("disallow_transfer_to_parent", False)),
            disallow_transfer_to_peers=bool(raw.get("disallow_transfer_to_peers", False)),
        )
    except AgentLoadError:
        raise
    except ConfigurationError as exc:
        raise AgentLoadError(f"Agent definition {path}: {exc.message}", details=exc.details) from exc

    logger.info("loaded agent name=%s from=%s tools=%d", agent.name, path, len(agent.tools))
    return agent


def load_agent(ref: str, *, base_dir: Optional[Path] = None) -> LlmAgent:
    """
    Resolve an agent reference.

    Accepted forms: a YAML file path, a directory holding `agent.yaml`, a
    `module:attr` reference to an LlmAgent, or a bare name looked up as
    `<AGENTS_DIR>/<name>.yaml`.
    """
    candidates = []
    path = Path(ref)
    if base_dir is not None and not path.is_absolute():
        candidates.append(base_dir / path)
    candidates.append(path)
    for candidate in candidates:
        if candidate.is_dir():
            candidate = candidate / "agent.yaml"
        if candidate.is_file():
            return load_agent_file(candidate)

    if ":" in ref:
        obj = resolve_reference(ref)
        if not isinstance(obj, LlmAgent):
            raise AgentLoadError(f"{ref!r} is not an LlmAgent (got {type(obj).__name__})")
        return obj

    for suffix in (".yaml", ".yml"):
        named = Path(get_settings().agents_dir) / f"{ref}{suffix}"
        if named.is_file():
            return load_agent_file(named)
    raise AgentLoadError(f"Agent not found: {ref!r}", code="AGENT_NOT_FOUND")


def list_agent_names(agents_dir: Optional[str] = None) -> List[str]:
    """Discover agent names from <AGENTS_DIR>/*.yaml (file stem = name)."""
    root = Path(agents_dir or get_settings().agents_dir)
    if not root.is_dir():
        return []
    return sorted({p.stem for p in root.iterdir() if p.is_file() and p.suffix in (".yaml", ".yml")})
