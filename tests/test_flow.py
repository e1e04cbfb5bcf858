from __future__ import annotations

import asyncio
from typing import Any, Dict

import pytest

from conftest import ScriptedLlm, call, calls, text
from llmflow.agents import LlmAgent
from llmflow.code_executors.unsafe_local import UnsafeLocalCodeExecutor
from llmflow.context import ToolContext
from llmflow.errors import ConfigurationError, ResourceExhaustedError
from llmflow.flows.code_execution import CODE_EXECUTION_FAILED
from llmflow.flows.planning import PlanReActPlanner
from llmflow.llm.base import LlmResponse
from llmflow.models import Content, RunConfig
from llmflow.runner import Runner
from llmflow.storage.session_store import InMemorySessionStore
from llmflow.tools.agent_tool import AgentTool
from llmflow.tools.function_tool import FunctionTool


def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


def _runner(agent: LlmAgent, store: InMemorySessionStore | None = None) -> Runner:
    return Runner(app_name="test", agent=agent, session_store=store or InMemorySessionStore())


async def _turn(runner: Runner, message: str, *, session_id: str = "s1", run_config: RunConfig | None = None):
    return await runner.run_to_completion(
        user_id="u1",
        session_id=session_id,
        new_message=Content.from_text(message),
        run_config=run_config,
    )


@pytest.mark.asyncio
async def test_single_tool_call_produces_call_result_and_answer() -> None:
    llm = ScriptedLlm([calls(call("add", {"a": 5, "b": 7})), "The sum is 12."])
    agent = LlmAgent(name="calculator", model=llm, instruction="Use the add tool.", tools=[add])
    store = InMemorySessionStore()
    runner = _runner(agent, store)

    events = await _turn(runner, "What is 5 plus 7?")

    assert len(events) == 3
    model_call, result, answer = events
    assert model_call.get_function_calls()[0].name == "add"
    assert model_call.get_function_calls()[0].id
    response = result.get_function_responses()[0]
    assert response.response == {"result": 12}
    assert response.id == model_call.get_function_calls()[0].id
    assert result.content.role == "user"
    assert answer.is_final_response()
    assert answer.text == "The sum is 12."

    # The second model call sees the question, the call and its result, in order.
    second = llm.requests[1]
    assert [c.role for c in second.contents] == ["user", "model", "user"]
    assert second.contents[2].parts[0].function_response.response == {"result": 12}
    assert "Use the add tool." in second.system_instruction
    assert second.declarations[0].name == "add"

    session = await store.get_session(app_name="test", user_id="u1", session_id="s1")
    assert [e.author for e in session.events] == ["user", "calculator", "calculator", "calculator"]


@pytest.mark.asyncio
async def test_parallel_calls_emit_results_in_request_order() -> None:
    async def slow_echo(value: str, delay: float) -> Dict[str, Any]:
        await asyncio.sleep(delay)
        return {"value": value}

    llm = ScriptedLlm(
        [
            calls(
                call("slow_echo", {"value": "first", "delay": 0.05}),
                call("slow_echo", {"value": "second", "delay": 0.0}),
                call("slow_echo", {"value": "third", "delay": 0.02}),
            ),
            "done",
        ]
    )
    agent = LlmAgent(name="echoer", model=llm, tools=[slow_echo])

    events = await _turn(_runner(agent), "go")

    results = [e.get_function_responses()[0].response["value"] for e in events if e.get_function_responses()]
    assert results == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_state_writes_from_parallel_calls_resolve_in_request_order() -> None:
    async def remember(value: str, delay: float, tool_context: ToolContext) -> str:
        await asyncio.sleep(delay)
        tool_context.state["last"] = value
        return value

    llm = ScriptedLlm(
        [
            calls(
                call("remember", {"value": "a", "delay": 0.0}),
                call("remember", {"value": "b", "delay": 0.05}),
            ),
            "ok",
        ]
    )
    store = InMemorySessionStore()
    agent = LlmAgent(name="memo", model=llm, tools=[remember])

    await _turn(_runner(agent, store), "remember")

    session = await store.get_session(app_name="test", user_id="u1", session_id="s1")
    assert session.state["last"] == "b"


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result_and_turn_continues() -> None:
    def explode() -> None:
        raise ValueError("boom")

    llm = ScriptedLlm([calls(call("explode", {})), "The tool failed."])
    agent = LlmAgent(name="brittle", model=llm, tools=[explode])

    events = await _turn(_runner(agent), "try it")

    assert events[1].get_function_responses()[0].response == {"error": "boom", "error_type": "ValueError"}
    assert events[-1].text == "The tool failed."


@pytest.mark.asyncio
async def test_unknown_tool_and_invalid_arguments_are_reported_to_the_model() -> None:
    llm = ScriptedLlm(
        [
            calls(call("multiply", {"a": 2}), call("add", {"a": "five"})),
            "Sorry.",
        ]
    )
    agent = LlmAgent(name="calculator", model=llm, tools=[add])

    events = await _turn(_runner(agent), "2 times something")

    unknown = events[1].get_function_responses()[0].response
    invalid = events[2].get_function_responses()[0].response
    assert unknown["error_type"] == "ToolNotFound"
    assert invalid["error_type"] == "InvalidArguments"
    messages = " ".join(d["message"] for d in invalid["details"])
    assert "'b' is a required property" in messages
    assert "'five' is not of type 'integer'" in messages


@pytest.mark.asyncio
async def test_max_llm_calls_boundary() -> None:
    exact = ScriptedLlm([calls(call("add", {"a": 1, "b": 1})), "2"])
    agent = LlmAgent(name="calculator", model=exact, tools=[add])
    events = await _turn(_runner(agent), "1+1", run_config=RunConfig(max_llm_calls=2))
    assert events[-1].text == "2"

    looping = ScriptedLlm([calls(call("add", {"a": 1, "b": 1}))] * 3)
    agent = LlmAgent(name="looper", model=looping, tools=[add])
    with pytest.raises(ResourceExhaustedError):
        await _turn(_runner(agent), "loop", run_config=RunConfig(max_llm_calls=2))
    assert len(looping.requests) == 2


def _delegating_agents():
    inner_llm = ScriptedLlm([calls(call("add", {"a": 2, "b": 2})), "inner says 4"])
    inner = LlmAgent(name="adder", description="Adds numbers.", model=inner_llm, tools=[add])
    outer_llm = ScriptedLlm([calls(call("adder", {"request": "2+2"})), "outer done"])
    outer = LlmAgent(name="front_desk", model=outer_llm, tools=[AgentTool(inner)])
    return outer, outer_llm, inner_llm


@pytest.mark.asyncio
async def test_nested_agent_model_calls_count_against_the_turn_ceiling() -> None:
    outer, outer_llm, inner_llm = _delegating_agents()

    with pytest.raises(ResourceExhaustedError):
        await _turn(_runner(outer), "2+2?", run_config=RunConfig(max_llm_calls=3))

    assert len(inner_llm.requests) == 2
    assert len(outer_llm.requests) == 1

    outer, _, _ = _delegating_agents()
    events = await _turn(_runner(outer), "2+2?", run_config=RunConfig(max_llm_calls=4))
    assert events[-1].text == "outer done"


@pytest.mark.asyncio
async def test_tool_can_end_the_invocation() -> None:
    def hand_off(reason: str, tool_context: ToolContext) -> str:
        """Escalate to a human and stop the turn."""
        tool_context.end_invocation = True
        return f"escalated: {reason}"

    llm = ScriptedLlm([calls(call("hand_off", {"reason": "refund"})), "never sent"])
    agent = LlmAgent(name="support", model=llm, tools=[hand_off])

    events = await _turn(_runner(agent), "I want a refund")

    assert len(llm.requests) == 1
    assert [e.get_function_responses()[0].response for e in events[1:]] == [{"result": "escalated: refund"}]
    assert len(events) == 2

    follow_up = await _turn(_runner(agent), "hello again", session_id="s2")
    assert follow_up[-1].text == "never sent"


@pytest.mark.asyncio
async def test_streaming_partials_are_yielded_but_not_persisted() -> None:
    llm = ScriptedLlm(["Hello there, friend."])
    store = InMemorySessionStore()
    agent = LlmAgent(name="greeter", model=llm)
    runner = _runner(agent, store)

    seen = []
    async for event in runner.run_async(
        user_id="u1",
        session_id="s1",
        new_message=Content.from_text("hi"),
        run_config=RunConfig(streaming_mode="sse"),
    ):
        seen.append(event)

    assert [e.partial for e in seen] == [True, True, False]
    assert "".join(e.text for e in seen if e.partial) == "Hello there, friend."
    session = await store.get_session(app_name="test", user_id="u1", session_id="s1")
    assert len(session.events) == 2
    assert not any(e.partial for e in session.events)


@pytest.mark.asyncio
async def test_model_error_is_committed_as_final_event() -> None:
    llm = ScriptedLlm([LlmResponse.from_error("RATE_LIMITED", "slow down")])
    agent = LlmAgent(name="limited", model=llm)

    events = await _turn(_runner(agent), "hello")

    assert len(events) == 1
    assert events[0].error_code == "RATE_LIMITED"
    assert events[0].is_final_response()


@pytest.mark.asyncio
async def test_transfer_switches_agent_within_turn_and_next_turn_resumes_there() -> None:
    billing_llm = ScriptedLlm(["Your invoice is paid.", "Anything else about billing?"])
    billing = LlmAgent(name="billing", description="Handles invoices.", model=billing_llm)
    root_llm = ScriptedLlm([calls(call("transfer_to_agent", {"agent_name": "billing"}))])
    root = LlmAgent(name="triage", model=root_llm, sub_agents=[billing])
    runner = _runner(root)

    events = await _turn(runner, "Is my invoice paid?")

    assert [e.author for e in events] == ["triage", "triage", "billing"]
    assert events[1].actions.transfer_to_agent == "billing"
    assert events[2].text == "Your invoice is paid."
    assert "billing: Handles invoices." in root_llm.requests[0].system_instruction
    # Other agents' events are re-told to billing as context.
    context_texts = [p.text for c in billing_llm.requests[0].contents for p in c.parts if p.text]
    assert "For context:" in context_texts

    await _turn(runner, "thanks")
    assert len(billing_llm.requests) == 2
    assert len(root_llm.requests) == 1


@pytest.mark.asyncio
async def test_transfer_to_unknown_agent_is_a_tool_error() -> None:
    helper = LlmAgent(name="helper", model=ScriptedLlm([]))
    root_llm = ScriptedLlm([calls(call("transfer_to_agent", {"agent_name": "ghost"})), "I'll handle it."])
    root = LlmAgent(name="root", model=root_llm, sub_agents=[helper])

    events = await _turn(_runner(root), "help")

    assert "ghost" in events[1].get_function_responses()[0].response["error"]
    assert events[-1].author == "root"


@pytest.mark.asyncio
async def test_plan_react_planner_hides_reasoning() -> None:
    llm = ScriptedLlm(["/*PLANNING*/ 1. Think hard.\n/*FINAL_ANSWER*/ 42"])
    agent = LlmAgent(name="planner", model=llm, planner=PlanReActPlanner())

    events = await _turn(_runner(agent), "meaning of life?")

    assert events[-1].text == "42"
    assert any(p.thought for p in events[-1].content.parts)
    assert "/*FINAL_ANSWER*/" in llm.requests[0].system_instruction


@pytest.mark.asyncio
async def test_code_execution_result_is_fed_back_to_the_model() -> None:
    llm = ScriptedLlm(["Let me compute.\n```python\nprint(2 + 3)\n```", "The answer is 5."])
    executor = UnsafeLocalCodeExecutor(allow_unsafe=True)
    agent = LlmAgent(name="coder", model=llm, code_executor=executor)

    events = await _turn(_runner(agent), "What is 2 + 3?")

    code_event, result_event, answer = events
    assert code_event.get_executable_code().code == "print(2 + 3)"
    result = result_event.content.parts[0].code_execution_result
    assert result.outcome == "OK"
    assert result.stdout == "5\n"
    assert answer.text == "The answer is 5."
    history = "".join(p.text or "" for c in llm.requests[1].contents for p in c.parts)
    assert "```tool_code\nprint(2 + 3)\n```" in history
    assert "Code execution result:\n5" in history


@pytest.mark.asyncio
async def test_code_execution_gives_up_after_retry_budget() -> None:
    failing = "```python\nraise ValueError('bad input')\n```"
    llm = ScriptedLlm([failing, failing])
    executor = UnsafeLocalCodeExecutor(allow_unsafe=True, error_retry_attempts=1)
    agent = LlmAgent(name="coder", model=llm, code_executor=executor)

    events = await _turn(_runner(agent), "crash please")

    assert len(llm.requests) == 2
    assert len(events) == 5
    assert events[-1].error_code == CODE_EXECUTION_FAILED
    assert "ValueError: bad input" in events[-1].error_message


@pytest.mark.asyncio
async def test_output_key_and_instruction_templating_use_session_state() -> None:
    llm = ScriptedLlm(["Cats are great."])
    store = InMemorySessionStore()
    await store.create_session(app_name="test", user_id="u1", session_id="s1", state={"topic": "cats"})
    agent = LlmAgent(
        name="writer",
        model=llm,
        instruction="Write about {topic}. {style?}",
        output_key="draft",
    )

    await _turn(_runner(agent, store), "go")

    assert "Write about cats." in llm.requests[0].system_instruction
    session = await store.get_session(app_name="test", user_id="u1", session_id="s1")
    assert session.state["draft"] == "Cats are great."


@pytest.mark.asyncio
async def test_missing_required_state_key_in_instruction_raises() -> None:
    agent = LlmAgent(name="writer", model=ScriptedLlm(["unused"]), instruction="Write about {topic}.")
    with pytest.raises(ConfigurationError):
        await _turn(_runner(agent), "go")


@pytest.mark.asyncio
async def test_long_running_tool_ends_step_without_result() -> None:
    def start_job(job: str) -> None:
        return None

    llm = ScriptedLlm([calls(call("start_job", {"job": "export"}))])
    agent = LlmAgent(name="ops", model=llm, tools=[FunctionTool(start_job, is_long_running=True)])

    events = await _turn(_runner(agent), "export everything")

    assert len(events) == 1
    assert events[0].long_running_tool_ids == [events[0].get_function_calls()[0].id]
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_before_model_callback_can_short_circuit_the_model() -> None:
    def cached(callback_context, llm_request):
        callback_context.state["temp:cache_hit"] = True
        return LlmResponse(content=text("from cache"))

    llm = ScriptedLlm([])
    agent = LlmAgent(name="cached", model=llm, before_model_callback=cached)
    store = InMemorySessionStore()

    events = await _turn(_runner(agent, store), "hi")

    assert events[-1].text == "from cache"
    assert llm.requests == []
    session = await store.get_session(app_name="test", user_id="u1", session_id="s1")
    assert "temp:cache_hit" not in session.state


@pytest.mark.asyncio
async def test_tool_mocks_replace_tool_execution() -> None:
    llm = ScriptedLlm([calls(call("add", {"a": 5, "b": 7})), "The sum is 30."])
    agent = LlmAgent(name="calculator", model=llm, tools=[add])

    events = await _turn(_runner(agent), "5+7?", run_config=RunConfig(tool_mocks={"add": 30}))

    assert events[1].get_function_responses()[0].response == {"result": 30}


def test_agent_tree_validation() -> None:
    with pytest.raises(ConfigurationError):
        LlmAgent(name="not valid")
    with pytest.raises(ConfigurationError):
        LlmAgent(name="user")
    with pytest.raises(ConfigurationError):
        LlmAgent(name="dup", tools=[add, FunctionTool(add)])

    child = LlmAgent(name="child")
    LlmAgent(name="parent_a", sub_agents=[child])
    with pytest.raises(ConfigurationError):
        LlmAgent(name="parent_b", sub_agents=[child])
    with pytest.raises(ConfigurationError):
        LlmAgent(name="same", sub_agents=[LlmAgent(name="same")])
