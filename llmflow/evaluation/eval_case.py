"""
Eval case and threshold files.

A case file is JSON or YAML holding one case, a list of cases, or
{"eval_cases": [...]}. Each case:

  name: add_numbers
  initial_session: {state: {...}, artifacts: {filename: text}}
  data:
    - query: "What is 5 plus 7?"
      expected_tool_use:
        - {tool_name: add, tool_input: {a: 5, b: 7}, mock_tool_output: 30}
      reference: "5 plus 7 is 30"

A threshold file: {criteria: {tool_trajectory_avg_score: 1.0, response_match_score: 0.8}}.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from llmflow.errors import EvalFileError


class ExpectedToolUse(BaseModel):
    tool_name: str
    tool_input: Dict[str, Any] = Field(default_factory=dict)
    mock_tool_output: Any = None

    @property
    def has_mock(self) -> bool:
        return "mock_tool_output" in self.model_fields_set

    def as_call(self) -> Dict[str, Any]:
        return {"tool_name": self.tool_name, "tool_input": self.tool_input}


class EvalTurn(BaseModel):
    query: str
    expected_tool_use: List[ExpectedToolUse] = Field(default_factory=list)
    reference: str = ""


class InitialSession(BaseModel):
    state: Dict[str, Any] = Field(default_factory=dict)
    artifacts: Dict[str, str] = Field(default_factory=dict)


class EvalCase(BaseModel):
    name: str
    data: List[EvalTurn]
    initial_session: Optional[InitialSession] = None


class EvalCriteria(BaseModel):
    tool_trajectory_avg_score: float = 1.0
    response_match_score: float = 0.8


def _read_structured(path: Path) -> Any:
    if not path.is_file():
        raise EvalFileError(f"File not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise EvalFileError(f"Cannot parse {path}: {exc}") from exc


def _validation_details(exc: ValidationError) -> List[Dict[str, Any]]:
    return [{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()]


def load_eval_cases(path: Union[str, Path]) -> List[EvalCase]:
    path = Path(path)
    raw = _read_structured(path)
    if isinstance(raw, dict) and "eval_cases" in raw:
        raw = raw["eval_cases"]
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list) or not raw:
        raise EvalFileError(f"{path} holds no eval cases")

    cases: List[EvalCase] = []
    for index, item in enumerate(raw):
        try:
            cases.append(EvalCase.model_validate(item))
        except ValidationError as exc:
            raise EvalFileError(f"Eval case #{index} in {path} is invalid", details=_validation_details(exc)) from exc
    return cases


def load_criteria(path: Optional[Union[str, Path]] = None) -> EvalCriteria:
    if path is None:
        return EvalCriteria()
    path = Path(path)
    raw = _read_structured(path) or {}
    if not isinstance(raw, dict):
        raise EvalFileError(f"{path} must hold a mapping")
    try:
        return EvalCriteria.model_validate(raw.get("criteria", raw))
    except ValidationError as exc:
        raise EvalFileError(f"Threshold file {path} is invalid", details=_validation_details(exc)) from exc
