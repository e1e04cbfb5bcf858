from __future__ import annotations

import pytest
from pydantic import ValidationError

from llmflow.models import Content, Event, EventActions, ExecutableCode, Part
from llmflow.state import State, merge_scoped_state, split_state_delta, strip_temp_keys


def test_part_requires_exactly_one_payload() -> None:
    with pytest.raises(ValidationError):
        Part()
    with pytest.raises(ValidationError):
        Part(text="hi", executable_code=ExecutableCode(code="print(1)"))
    assert Part.from_text("hi").text == "hi"


def test_event_is_frozen() -> None:
    event = Event(author="agent", content=Content.from_text("hi", role="model"))
    with pytest.raises(ValidationError):
        event.author = "other"
    assert event.model_copy(update={"author": "other"}).author == "other"


def test_final_response_classification() -> None:
    answer = Event(author="a", content=Content.from_text("done", role="model"))
    tool_call = Event(author="a", content=Content(role="model", parts=[Part.from_function_call("f", {}, "c1")]))
    long_running = tool_call.model_copy(update={"long_running_tool_ids": ["c1"]})
    partial = answer.model_copy(update={"partial": True})
    error = Event(author="a", error_code="SAFETY", error_message="blocked")
    skipped = Event(
        author="a",
        content=Content(role="user", parts=[Part.from_function_response("f", {"ok": True}, "c1")]),
        actions=EventActions(skip_summarization=True),
    )

    assert answer.is_final_response()
    assert not tool_call.is_final_response()
    assert long_running.is_final_response()
    assert not partial.is_final_response()
    assert error.is_final_response()
    assert skipped.is_final_response()


def test_event_text_skips_thoughts() -> None:
    event = Event(
        author="a",
        content=Content(role="model", parts=[Part.from_text("plan", thought=True), Part.from_text("answer")]),
    )
    assert event.text == "answer"


def test_event_json_round_trip_keeps_actions() -> None:
    event = Event(
        author="a",
        content=Content(role="model", parts=[Part.from_function_call("lookup", {"q": "x"}, "c9")]),
        actions=EventActions(state_delta={"k": 1}, transfer_to_agent="b"),
    )
    restored = Event.model_validate_json(event.model_dump_json())
    assert restored == event


def test_split_and_merge_scoped_state() -> None:
    app, user, session = split_state_delta({"app:v": 1, "user:lang": "en", "topic": "tea", "temp:x": 0})
    assert app == {"v": 1}
    assert user == {"lang": "en"}
    assert session == {"topic": "tea"}
    assert merge_scoped_state(app, user, session) == {"app:v": 1, "user:lang": "en", "topic": "tea"}
    assert strip_temp_keys({"temp:x": 0, "y": 1}) == {"y": 1}


def test_state_writes_only_touch_the_delta() -> None:
    committed = {"a": 1}
    delta = {}
    state = State(committed, delta)

    state["b"] = 2
    state["a"] = 10

    assert committed == {"a": 1}
    assert delta == {"b": 2, "a": 10}
    assert state["a"] == 10
    assert "b" in state
    assert state.get("missing", "default") == "default"
    assert state.to_dict() == {"a": 10, "b": 2}
