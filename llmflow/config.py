import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so model names and API keys are set automatically.
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    default_model: str
    openai_api_key: Optional[str]
    openai_base_url: str
    openrouter_api_key: Optional[str]
    session_backend: str = "memory"
    db_path: str = "./data/sessions.db"
    agents_dir: str = "./agents"
    max_llm_calls: int = 500
    allow_unsafe_code_execution: bool = False
    code_executor_url: Optional[str] = None
    code_execution_timeout: float = 30.0
    auth_token: Optional[str] = None
    jwt_secret: Optional[str] = None
    cors_origins: str = "*"
    log_level: str = "INFO"

    service_name: str = "llmflow"
    http_port: int = 8000


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    NOTE: only defaults are cached here. `get_settings` below re-creates
    Settings each time from the current environment, since tests mutate
    os.environ between cases.
    """

    return Settings(
        default_model="stub",
        openai_api_key=None,
        openai_base_url="https://api.openai.com/v1",
        openrouter_api_key=None,
    )


def get_settings() -> Settings:
    """Return Settings built from the *current* environment."""

    base = _base_settings()

    max_llm_calls_raw = os.getenv("MAX_LLM_CALLS")
    timeout_raw = os.getenv("CODE_EXECUTION_TIMEOUT")

    return Settings(
        default_model=os.getenv("LLMFLOW_MODEL") or base.default_model,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_base_url=(os.getenv("OPENAI_BASE_URL") or base.openai_base_url).rstrip("/"),
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        session_backend=(os.getenv("SESSION_BACKEND") or base.session_backend).lower(),
        db_path=os.getenv("DB_PATH") or base.db_path,
        agents_dir=os.getenv("AGENTS_DIR") or base.agents_dir,
        max_llm_calls=int(max_llm_calls_raw) if max_llm_calls_raw else base.max_llm_calls,
        allow_unsafe_code_execution=_env_bool("ALLOW_UNSAFE_CODE_EXECUTION"),
        code_executor_url=os.getenv("CODE_EXECUTOR_URL") or None,
        code_execution_timeout=float(timeout_raw) if timeout_raw else base.code_execution_timeout,
        auth_token=os.getenv("AUTH_TOKEN") or None,
        jwt_secret=os.getenv("JWT_SECRET") or None,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        service_name=base.service_name,
        http_port=base.http_port,
    )
