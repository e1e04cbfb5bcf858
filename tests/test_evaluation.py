from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import ScriptedLlm, call, calls
from llmflow.agents import LlmAgent
from llmflow.auth import AuthConfig, AuthCredential, AuthScheme
from llmflow.errors import EvalFileError
from llmflow.evaluation.eval_case import EvalCase, EvalCriteria, load_criteria, load_eval_cases
from llmflow.evaluation.evaluator import evaluate, format_report, rouge1_f
from llmflow.evaluation.harness import run_eval_case
from llmflow.llm.base import LlmRequest
from llmflow.tools.function_tool import FunctionTool


def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


def _answer_from_tool(request: LlmRequest) -> str:
    result = request.contents[-1].parts[0].function_response.response["result"]
    return f"The answer is {result}"


def _calculator() -> LlmAgent:
    llm = ScriptedLlm([calls(call("add", {"a": 5, "b": 7})), _answer_from_tool])
    return LlmAgent(name="calculator", model=llm, tools=[add])


CASE = EvalCase.model_validate(
    {
        "name": "add_with_mock",
        "data": [
            {
                "query": "What is 5 plus 7?",
                "expected_tool_use": [{"tool_name": "add", "tool_input": {"a": 5, "b": 7}, "mock_tool_output": 30}],
                "reference": "The answer is 30",
            }
        ],
    }
)


@pytest.mark.asyncio
async def test_mocked_tool_output_drives_the_response() -> None:
    traces = await run_eval_case(_calculator(), CASE)

    assert traces[0].actual_tool_use == [{"tool_name": "add", "tool_input": {"a": 5, "b": 7}}]
    assert traces[0].response == "The answer is 30"


@pytest.mark.asyncio
async def test_evaluate_scores_and_passes() -> None:
    results = await evaluate(_calculator(), [CASE], EvalCriteria())

    result = results[0]
    assert result.scores == {"tool_trajectory_avg_score": 1.0, "response_match_score": 1.0}
    assert result.passed
    assert "[PASS] add_with_mock" in format_report(results)


@pytest.mark.asyncio
async def test_evaluation_is_repeatable() -> None:
    first = await evaluate(_calculator(), [CASE], EvalCriteria())
    second = await evaluate(_calculator(), [CASE], EvalCriteria())
    assert first[0].scores == second[0].scores


@pytest.mark.asyncio
async def test_wrong_trajectory_fails_and_is_reported() -> None:
    llm = ScriptedLlm([calls(call("add", {"a": 7, "b": 5})), "The answer is 30"])
    agent = LlmAgent(name="calculator", model=llm, tools=[add])

    results = await evaluate(agent, [CASE], EvalCriteria())

    assert results[0].scores["tool_trajectory_avg_score"] == 0.0
    assert not results[0].passed
    report = format_report(results)
    assert "[FAIL] add_with_mock" in report
    assert "0/1 eval cases passed" in report


@pytest.mark.asyncio
async def test_case_that_exhausts_the_ceiling_fails_alone() -> None:
    llm = ScriptedLlm(
        [
            calls(call("add", {"a": 1, "b": 1})),
            calls(call("add", {"a": 1, "b": 1})),
            calls(call("add", {"a": 5, "b": 7})),
            _answer_from_tool,
        ]
    )
    agent = LlmAgent(name="calculator", model=llm, tools=[add])
    looping = EvalCase.model_validate({"name": "keeps_adding", "data": [{"query": "add forever"}]})

    results = await evaluate(agent, [looping, CASE], EvalCriteria(), max_llm_calls=2)

    assert [r.case_name for r in results] == ["keeps_adding", "add_with_mock"]
    assert results[0].error_code == "MAX_LLM_CALLS_EXCEEDED"
    assert not results[0].passed
    assert results[1].passed
    report = format_report(results)
    assert "error MAX_LLM_CALLS_EXCEEDED" in report
    assert "1/2 eval cases passed" in report


@pytest.mark.asyncio
async def test_credential_requests_are_not_part_of_the_trajectory() -> None:
    def get_weather(city: str, credential: AuthCredential) -> dict:
        """Current weather for a city."""
        return {"city": city}

    auth_config = AuthConfig(auth_scheme=AuthScheme(type="api_key", name="X-Weather-Key"))
    llm = ScriptedLlm([calls(call("get_weather", {"city": "Paris"}, "c1"))])
    agent = LlmAgent(name="weather", model=llm, tools=[FunctionTool(get_weather, auth_config=auth_config)])
    case = EvalCase.model_validate(
        {
            "name": "needs_login",
            "data": [
                {
                    "query": "Weather in Paris?",
                    "expected_tool_use": [{"tool_name": "get_weather", "tool_input": {"city": "Paris"}}],
                }
            ],
        }
    )

    traces = await run_eval_case(agent, case)

    assert traces[0].actual_tool_use == [{"tool_name": "get_weather", "tool_input": {"city": "Paris"}}]

@pytest.mark.asyncio
async def test_initial_session_seeds_state() -> None:
    llm = ScriptedLlm(["Hello Ada"])
    agent = LlmAgent(name="greeter", model=llm, instruction="The user's name is {user:name}.")
    case = EvalCase.model_validate(
        {
            "name": "greets_by_name",
            "initial_session": {"state": {"user:name": "Ada"}, "artifacts": {"notes.txt": "likes tea"}},
            "data": [{"query": "hi", "reference": "Hello Ada"}],
        }
    )

    traces = await run_eval_case(agent, case)

    assert "The user's name is Ada." in llm.requests[0].system_instruction
    assert traces[0].response == "Hello Ada"


def test_rouge1_f() -> None:
    assert rouge1_f("the cat sat", "The cat sat.") == 1.0
    assert rouge1_f("dogs bark", "cats meow") == 0.0
    assert rouge1_f("the cat", "the cat sat down") == pytest.approx(2 * 1.0 * 0.5 / 1.5)


def test_load_eval_cases_accepts_yaml_and_json(tmp_path: Path) -> None:
    yaml_path = tmp_path / "cases.yaml"
    yaml_path.write_text(
        "eval_cases:\n"
        "  - name: one\n"
        "    data:\n"
        "      - query: hi\n"
        "        reference: hello\n",
        encoding="utf-8",
    )
    json_path = tmp_path / "case.json"
    json_path.write_text(json.dumps({"name": "two", "data": [{"query": "yo"}]}), encoding="utf-8")

    assert [c.name for c in load_eval_cases(yaml_path)] == ["one"]
    assert [c.name for c in load_eval_cases(json_path)] == ["two"]


def test_invalid_eval_files_raise_with_details(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps([{"name": "missing data"}]), encoding="utf-8")
    with pytest.raises(EvalFileError) as exc:
        load_eval_cases(bad)
    assert exc.value.details[0]["path"] == ["data"]

    with pytest.raises(EvalFileError):
        load_eval_cases(tmp_path / "missing.yaml")


def test_load_criteria(tmp_path: Path) -> None:
    path = tmp_path / "test_config.json"
    path.write_text(json.dumps({"criteria": {"tool_trajectory_avg_score": 0.5}}), encoding="utf-8")

    criteria = load_criteria(path)

    assert criteria.tool_trajectory_avg_score == 0.5
    assert criteria.response_match_score == 0.8
    assert load_criteria() == EvalCriteria()
