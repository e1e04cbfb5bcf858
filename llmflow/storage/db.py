"""
Database helpers for SQLite (local) and Postgres.
"""

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from llmflow.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str


def _database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL") or None


def get_db_info(db_path: Optional[str] = None) -> DbInfo:
    database_url = _database_url()
    path = db_path or get_settings().db_path
    if database_url:
        return DbInfo(dialect="postgres", database_url=database_url, db_path=path)
    return DbInfo(dialect="sqlite", database_url=None, db_path=path)


def is_postgres() -> bool:
    return get_db_info().dialect == "postgres"


def ensure_sqlite_dir(db_path: str) -> None:
    if is_postgres() or db_path == ":memory:":
        return
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def connect(db_path: Optional[str] = None) -> Any:
    info = get_db_info(db_path)
    if info.dialect == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres connections")
        return psycopg.connect(info.database_url, row_factory=dict_row)
    conn = sqlite3.connect(info.db_path)
    conn.row_factory = sqlite3.Row
    return conn


def sql(query: str) -> str:
    """
    Convert parameter placeholders for the active dialect.
    SQLite uses '?', Postgres uses '%s'.
    """
    if is_postgres():
        return query.replace("?", "%s")
    return query
