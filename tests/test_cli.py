from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from llmflow import cli


def _write_echo_agent(tmp_path: Path) -> Path:
    path = tmp_path / "echo.yaml"
    path.write_text("name: echo\nmodel: stub\ndescription: Echoes the user.\n", encoding="utf-8")
    return path


def _write_cases(tmp_path: Path, reference: str) -> Path:
    path = tmp_path / "cases.yaml"
    path.write_text(
        "name: greeting\n"
        "data:\n"
        "  - query: hello\n"
        f"    reference: \"{reference}\"\n",
        encoding="utf-8",
    )
    return path


def test_print_help_lists_subcommands(capsys: pytest.CaptureFixture[str]) -> None:
    cli._print_help()
    output = capsys.readouterr().out
    assert "llmflow run <agent>" in output
    assert "llmflow eval <agent> <cases>" in output
    assert "llmflow doctor" in output


def test_main_setup_subcommand_prints_setup_and_exits(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {}

    def fake_get_settings() -> SimpleNamespace:
        return SimpleNamespace(default_model="stub", log_level="INFO")

    def fake_setup_banner(model: str, port: int, *, for_startup: bool) -> None:
        calls["model"] = model
        calls["port"] = port
        calls["for_startup"] = for_startup

    monkeypatch.setattr("llmflow.config.get_settings", fake_get_settings)
    monkeypatch.setattr(cli, "_print_setup_banner", fake_setup_banner)
    monkeypatch.setattr(cli.sys, "argv", ["llmflow", "setup"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 0
    assert calls == {"model": "stub", "port": 8000, "for_startup": False}


def test_unknown_subcommand_exits_with_usage(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cli.sys, "argv", ["llmflow", "frobnicate"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 2
    assert "Unknown command: frobnicate" in capsys.readouterr().err


def test_print_doctor_reports_runtime_info(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cli.shutil, "which", lambda _name: "/tmp/llmflow")
    monkeypatch.setenv("OPENROUTER_API_KEY", "or-key")

    cli._print_doctor()
    output = capsys.readouterr().out
    assert "llmflow Doctor" in output
    assert "PATH bin: /tmp/llmflow" in output
    assert "stub.*" in output
    assert "OpenAI key:     missing" in output
    assert "OpenRouter key: set" in output


def test_run_requires_an_agent(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli._run_chat([]) == 2
    assert "Usage: llmflow run" in capsys.readouterr().err


def test_run_reports_unknown_agent(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli._run_chat(["does_not_exist"]) == 1
    assert "AGENT_NOT_FOUND" in capsys.readouterr().err


def test_run_chats_until_empty_line(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    agent_path = _write_echo_agent(tmp_path)
    lines = iter(["hi there", ""])
    monkeypatch.setattr("builtins.input", lambda _prompt: next(lines))

    assert cli._run_chat([str(agent_path), "--session", "s-cli"]) == 0
    output = capsys.readouterr().out
    assert "Chatting with echo (session s-cli)" in output
    assert "echo> stub: hi there" in output


def test_eval_passes_with_matching_reference(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    agent_path = _write_echo_agent(tmp_path)
    cases_path = _write_cases(tmp_path, "stub: hello")

    assert cli._run_eval([str(agent_path), str(cases_path)]) == 0
    output = capsys.readouterr().out
    assert "[PASS] greeting" in output
    assert "1/1 eval cases passed" in output


def test_eval_fails_below_threshold(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    agent_path = _write_echo_agent(tmp_path)
    cases_path = _write_cases(tmp_path, "a completely unrelated answer")

    assert cli._run_eval([str(agent_path), str(cases_path)]) == 1
    assert "[FAIL] greeting" in capsys.readouterr().out


def test_eval_reports_invalid_threshold_file(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    agent_path = _write_echo_agent(tmp_path)
    cases_path = _write_cases(tmp_path, "stub: hello")
    config = tmp_path / "thresholds.json"
    config.write_text('{"criteria": {"response_match_score": "high"}}', encoding="utf-8")

    assert cli._run_eval([str(agent_path), str(cases_path), "--config", str(config)]) == 1
    assert "EVAL_FILE_INVALID" in capsys.readouterr().err
