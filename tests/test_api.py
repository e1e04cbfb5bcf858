import json
from pathlib import Path
from typing import Any, Dict

import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedLlm, call, calls
from llmflow.agents import LlmAgent
from llmflow.dependencies import get_runner_factory, get_session_store
from llmflow.main import app as fastapi_app
from llmflow.runner import Runner
from llmflow.storage.session_store import InMemorySessionStore

SECRET = "test-signing-secret-of-sufficient-length"


def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def client(store):
    """
    TestClient with an isolated session store and a scripted calculator agent.

    Apps other than "calculator" fall through to the real agent loader.
    """
    real_factory = get_runner_factory()

    def factory(app_name: str) -> Runner:
        if app_name != "calculator":
            return real_factory(app_name)
        llm = ScriptedLlm([calls(call("add", {"a": 2, "b": 3})), "2 + 3 = 5"])
        agent = LlmAgent(name="calculator", model=llm, tools=[add])
        return Runner(app_name=app_name, agent=agent, session_store=store)

    fastapi_app.dependency_overrides[get_session_store] = lambda: store
    fastapi_app.dependency_overrides[get_runner_factory] = lambda: factory
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()


def _assert_error_envelope(resp_json: Dict[str, Any], expected_code: str):
    assert "error" in resp_json, "Error responses must include 'error' envelope"
    assert "meta" in resp_json, "Error responses must include 'meta' envelope"
    assert resp_json["error"].get("code") == expected_code
    assert isinstance(resp_json["meta"].get("request_id"), str)


def _run_body(**overrides) -> Dict[str, Any]:
    body = {
        "app_name": "calculator",
        "user_id": "u1",
        "session_id": "s1",
        "new_message": {"role": "user", "parts": [{"text": "What is 2 + 3?"}]},
    }
    body.update(overrides)
    return body


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_session_crud(client):
    base = "/apps/calculator/users/u1/sessions"

    created = client.post(base, json={"state": {"mood": "curious"}, "session_id": "abc"})
    assert created.status_code == 201
    assert created.json()["id"] == "abc"
    assert created.json()["state"] == {"mood": "curious"}

    duplicate = client.post(base, json={"session_id": "abc"})
    assert duplicate.status_code == 409
    _assert_error_envelope(duplicate.json(), "ALREADY_EXISTS")

    listed = client.get(base)
    assert [s["id"] for s in listed.json()["sessions"]] == ["abc"]

    fetched = client.get(f"{base}/abc")
    assert fetched.status_code == 200
    assert fetched.json()["events"] == []

    assert client.delete(f"{base}/abc").status_code == 204
    missing = client.get(f"{base}/abc")
    assert missing.status_code == 404
    _assert_error_envelope(missing.json(), "NOT_FOUND")
    assert client.delete(f"{base}/abc").status_code == 404


def test_create_session_without_body(client):
    resp = client.post("/apps/calculator/users/u1/sessions")
    assert resp.status_code == 201
    assert resp.json()["id"]


def test_create_session_rejects_non_object_state(client):
    resp = client.post("/apps/calculator/users/u1/sessions", json={"state": [1, 2]})
    assert resp.status_code == 400
    _assert_error_envelope(resp.json(), "MALFORMED_REQUEST")


def test_run_returns_committed_events(client):
    resp = client.post("/run", json=_run_body())

    assert resp.status_code == 200
    data = resp.json()
    assert isinstance(data["meta"]["request_id"], str)
    events = data["events"]
    assert len(events) == 3
    assert events[0]["content"]["parts"][0]["function_call"]["name"] == "add"
    assert events[1]["content"]["parts"][0]["function_response"]["response"] == {"result": 5}
    assert events[2]["content"]["parts"][0]["text"] == "2 + 3 = 5"

    session = client.get("/apps/calculator/users/u1/sessions/s1").json()
    assert [e["author"] for e in session["events"]] == ["user", "calculator", "calculator", "calculator"]


def test_run_rejects_malformed_body(client):
    resp = client.post("/run", json={"app_name": "calculator"})
    assert resp.status_code == 400
    body = resp.json()
    _assert_error_envelope(body, "MALFORMED_REQUEST")
    assert {tuple(d["path"]) for d in body["error"]["details"]} >= {("user_id",), ("session_id",)}

    not_json = client.post("/run", content=b"{oops", headers={"content-type": "application/json"})
    assert not_json.status_code == 400


def test_run_unknown_app_is_404(client):
    resp = client.post("/run", json=_run_body(app_name="nope"))
    assert resp.status_code == 404
    _assert_error_envelope(resp.json(), "AGENT_NOT_FOUND")


def test_run_over_model_call_ceiling_is_loop_detected(client):
    resp = client.post("/run", json=_run_body(max_llm_calls=1))

    assert resp.status_code == 508
    body = resp.json()
    _assert_error_envelope(body, "MAX_LLM_CALLS_EXCEEDED")
    assert body["error"]["details"] == {"max_llm_calls": 1}


def test_run_sse_streams_events(client):
    resp = client.post("/run_sse", json=_run_body())

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
    assert events[-1]["content"]["parts"][0]["text"] == "2 + 3 = 5"
    assert any(e["partial"] for e in events)
    assert not events[-1]["partial"]


def test_static_token_auth(client, monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN", "letmein")
    base = "/apps/calculator/users/u1/sessions"

    unauthorized = client.get(base)
    assert unauthorized.status_code == 401
    _assert_error_envelope(unauthorized.json(), "UNAUTHORIZED")

    assert client.get(base, headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get(base, headers={"Authorization": "Bearer letmein"}).status_code == 200


def test_jwt_subject_must_match_user(client, monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    token = jwt.encode({"sub": "u1"}, SECRET, algorithm="HS256")
    headers = {"Authorization": f"Bearer {token}"}

    assert client.get("/apps/calculator/users/u1/sessions", headers=headers).status_code == 200
    assert client.get("/apps/calculator/users/u2/sessions", headers=headers).status_code == 401
    assert client.post("/run", json=_run_body(user_id="u2"), headers=headers).status_code == 401

    forged = jwt.encode({"sub": "u1"}, "another-secret-of-sufficient-length", algorithm="HS256")
    assert client.get(
        "/apps/calculator/users/u1/sessions", headers={"Authorization": f"Bearer {forged}"}
    ).status_code == 401


def test_list_apps_reads_agents_dir(client, tmp_path: Path, monkeypatch):
    agents_dir = tmp_path / "defs"
    agents_dir.mkdir()
    (agents_dir / "helper.yaml").write_text("name: helper\nmodel: stub\n", encoding="utf-8")
    (agents_dir / "notes.txt").write_text("not an agent", encoding="utf-8")
    monkeypatch.setenv("AGENTS_DIR", str(agents_dir))

    assert client.get("/apps").json() == {"apps": ["helper"]}

    resp = client.post("/run", json=_run_body(app_name="helper"))
    assert resp.status_code == 200
    assert resp.json()["events"][-1]["content"]["parts"][0]["text"] == "stub: What is 2 + 3?"
