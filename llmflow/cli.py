"""CLI entry point for the llmflow package."""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import sys
import uuid
from typing import List, Optional

OPENROUTER_KEYS_URL = "https://openrouter.ai/keys"
MIN_PYTHON = (3, 10)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _print_setup_banner(model: str, port: int, *, for_startup: bool = True) -> None:
    """Print setup/LLM instructions. If for_startup, show the 'server started' line; else the 'Setup' header."""
    model_note = "no API key required" if model.startswith("stub") else "API key from .env"
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("llmflow server started, default model: {} ({})".format(model, model_note))
    else:
        print("llmflow Setup")
        print("Default model: {} ({})".format(model, model_note))
    print()
    print("Docs:     {}/docs".format(base))
    print("Apps:     {}/apps".format(base))
    print()
    print("Get an API key from OpenRouter (one key for many models):")
    print("   {}".format(OPENROUTER_KEYS_URL))
    print()
    print("Put agent definitions in ./agents/<name>.yaml (or set AGENTS_DIR), then")
    print("copy the block below into .env and replace YOUR_KEY_HERE with your key:")
    print()
    print("   LLMFLOW_MODEL=openrouter/openai/gpt-4o-mini")
    print("   OPENROUTER_API_KEY=YOUR_KEY_HERE")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _ensure_supported_python() -> None:
    if sys.version_info < MIN_PYTHON:
        print(
            "Error: Python {} detected. llmflow requires Python {}.{}+.".format(
                _python_version_str(),
                MIN_PYTHON[0],
                MIN_PYTHON[1],
            ),
            file=sys.stderr,
        )
        sys.exit(2)


def _print_help() -> None:
    print("llmflow CLI")
    print()
    print("Usage:")
    print("  llmflow                                    Start the HTTP server")
    print("  llmflow serve                              Start the HTTP server")
    print("  llmflow run <agent> [--user U] [--session S]")
    print("                                             Chat with an agent in the terminal")
    print("  llmflow eval <agent> <cases> [--config thresholds.json]")
    print("                                             Score an agent against eval cases")
    print("  llmflow setup                              Print setup/env guidance")
    print("  llmflow doctor                             Print environment diagnostics")
    print()


def _print_doctor() -> None:
    from .config import get_settings
    from .llm.registry import get_registry

    settings = get_settings()
    print("llmflow Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('llmflow') or 'not found'}")
    print(f"Model:    {settings.default_model}")
    print(f"Models:   {', '.join(get_registry().patterns())}")
    print(f"Sessions: {settings.session_backend} ({settings.db_path})")
    print(f"Agents:   {settings.agents_dir}")
    print(f"OpenAI key:     {'set' if settings.openai_api_key else 'missing'}")
    print(f"OpenRouter key: {'set' if settings.openrouter_api_key else 'missing'}")
    if sys.version_info < MIN_PYTHON:
        print(f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}.")


def _option(args: List[str], flag: str) -> Optional[str]:
    if flag in args:
        index = args.index(flag)
        if index + 1 < len(args):
            return args[index + 1]
        print(f"Error: {flag} requires a value", file=sys.stderr)
        sys.exit(2)
    return None


async def _chat(agent_ref: str, user_id: str, session_id: str) -> None:
    from .agent_loader import load_agent
    from .models import Content
    from .runner import Runner
    from .storage.session_store import build_session_store

    agent = load_agent(agent_ref)
    runner = Runner(app_name=agent.name, agent=agent, session_store=build_session_store())
    print(f"Chatting with {agent.name} (session {session_id}). Empty line or Ctrl+D to quit.")
    while True:
        try:
            line = input("you> ").strip()
        except EOFError:
            break
        if not line:
            break
        async for event in runner.run_async(
            user_id=user_id,
            session_id=session_id,
            new_message=Content.from_text(line),
        ):
            if event.error_code:
                print(f"[{event.author}] error {event.error_code}: {event.error_message}")
                continue
            for call in event.get_function_calls():
                print(f"[{event.author}] -> {call.name}({call.args})")
            if event.text:
                print(f"{event.author}> {event.text}")


def _run_chat(args: List[str]) -> int:
    if not args:
        print("Usage: llmflow run <agent> [--user U] [--session S]", file=sys.stderr)
        return 2
    from .errors import FlowError

    user_id = _option(args, "--user") or "cli_user"
    session_id = _option(args, "--session") or str(uuid.uuid4())
    try:
        asyncio.run(_chat(args[0], user_id, session_id))
    except FlowError as exc:
        print(f"Error [{exc.code}]: {exc.message}", file=sys.stderr)
        return 1
    return 0


def _run_eval(args: List[str]) -> int:
    if len(args) < 2:
        print("Usage: llmflow eval <agent> <cases> [--config thresholds.json]", file=sys.stderr)
        return 2
    from .agent_loader import load_agent
    from .errors import FlowError
    from .evaluation.eval_case import load_criteria, load_eval_cases
    from .evaluation.evaluator import evaluate, format_report

    try:
        agent = load_agent(args[0])
        cases = load_eval_cases(args[1])
        criteria = load_criteria(_option(args, "--config"))
        results = asyncio.run(evaluate(agent, cases, criteria))
    except FlowError as exc:
        print(f"Error [{exc.code}]: {exc.message}", file=sys.stderr)
        if exc.details:
            print(f"Details: {exc.details}", file=sys.stderr)
        return 1
    print(format_report(results))
    return 0 if all(r.passed for r in results) else 1


def main() -> None:
    """Run the HTTP server or handle run/eval/setup/doctor commands."""
    from .config import get_settings

    _ensure_supported_python()
    port = int(os.environ.get("PORT", "8000"))
    host = os.environ.get("HOST", "0.0.0.0")
    settings = get_settings()
    _configure_logging(settings.log_level)

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(model=settings.default_model, port=port, for_startup=False)
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        if subcommand == "run":
            sys.exit(_run_chat(sys.argv[2:]))
        if subcommand == "eval":
            sys.exit(_run_eval(sys.argv[2:]))
        if subcommand != "serve":
            print(f"Unknown command: {sys.argv[1]}", file=sys.stderr)
            _print_help()
            sys.exit(2)

    import uvicorn

    _print_setup_banner(model=settings.default_model, port=port, for_startup=True)
    uvicorn.run(
        "llmflow.main:app",
        host=host,
        port=port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
