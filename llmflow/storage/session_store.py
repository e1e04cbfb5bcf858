"""
Session store: ordered event log plus scoped key-value state per conversation.

Two backends share one contract:
- InMemorySessionStore: dictionaries, for tests, the CLI and nested agent runs.
- SqliteSessionStore: SQLite by default, Postgres when DATABASE_URL is set.

Tables (SQL backend):
  sessions    (app_name, user_id, id, state, create_time, update_time)
  events      (seq, id, app_name, user_id, session_id, invocation_id, author, timestamp, event_data)
  app_states  (app_name, state, update_time)
  user_states (app_name, user_id, state, update_time)

Appends to one session are serialised; partial events are never stored.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
import weakref
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from llmflow.models import Event, Session, new_id
from llmflow.state import merge_scoped_state, split_state_delta, strip_temp_keys
from llmflow.storage.db import connect, ensure_sqlite_dir, is_postgres, sql

logger = logging.getLogger("llmflow")

SessionKey = Tuple[str, str, str]


class SessionNotFound(LookupError):
    """Raised when an operation targets a session that does not exist."""


class BaseSessionStore(ABC):
    """Contract shared by every session backend."""

    def __init__(self) -> None:
        # Entries vanish once no coroutine holds the lock.
        self._locks: "weakref.WeakValueDictionary[SessionKey, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, app_name: str, user_id: str, session_id: str) -> asyncio.Lock:
        key = (app_name, user_id, session_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @abstractmethod
    async def create_session(
        self,
        *,
        app_name: str,
        user_id: str,
        state: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        ...

    @abstractmethod
    async def get_session(self, *, app_name: str, user_id: str, session_id: str) -> Optional[Session]:
        """Return a fresh copy of the session, or None when not found. Do not raise."""

    @abstractmethod
    async def list_sessions(self, *, app_name: str, user_id: str) -> List[Session]:
        """Return the user's sessions without their events."""

    @abstractmethod
    async def delete_session(self, *, app_name: str, user_id: str, session_id: str) -> bool:
        ...

    @abstractmethod
    async def _commit(self, session: Session, event: Event) -> Event:
        """Persist `event` (already temp-stripped) and return it with its final timestamp."""

    async def get_or_create(self, app_name: str, user_id: str, session_id: str) -> Session:
        async with self._lock_for(app_name, user_id, session_id):
            session = await self.get_session(app_name=app_name, user_id=user_id, session_id=session_id)
            if session is not None:
                return session
            logger.info("creating session app=%s user=%s session_id=%s", app_name, user_id, session_id)
            return await self.create_session(app_name=app_name, user_id=user_id, session_id=session_id)

    async def append_event(self, session: Session, event: Event) -> Event:
        """
        Commit an event to the session's log and apply its state delta.

        The live `session` object also receives `temp:` keys so later steps of
        the same turn can read them; storage never does.
        """
        if event.partial:
            return event

        persisted = event
        if any(k.startswith("temp:") for k in event.actions.state_delta):
            actions = event.actions.model_copy(update={"state_delta": strip_temp_keys(event.actions.state_delta)})
            persisted = event.model_copy(update={"actions": actions})

        async with self._lock_for(session.app_name, session.user_id, session.id):
            committed = await self._commit(session, persisted)

        session.state.update(event.actions.state_delta)
        session.events.append(committed)
        session.last_update_time = committed.timestamp
        return committed


def _clamp_timestamp(event: Event, last_update_time: float) -> Event:
    if event.timestamp < last_update_time:
        return event.model_copy(update={"timestamp": last_update_time})
    return event


class InMemorySessionStore(BaseSessionStore):
    """Process-local store. Returned sessions are deep copies."""

    def __init__(self) -> None:
        super().__init__()
        self._sessions: Dict[SessionKey, Session] = {}
        self._app_state: Dict[str, Dict[str, Any]] = {}
        self._user_state: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def _merged_copy(self, stored: Session, *, with_events: bool = True) -> Session:
        merged = merge_scoped_state(
            self._app_state.get(stored.app_name, {}),
            self._user_state.get((stored.app_name, stored.user_id), {}),
            stored.state,
        )
        return Session(
            id=stored.id,
            app_name=stored.app_name,
            user_id=stored.user_id,
            state=copy.deepcopy(merged),
            events=list(stored.events) if with_events else [],
            last_update_time=stored.last_update_time,
        )

    async def create_session(
        self,
        *,
        app_name: str,
        user_id: str,
        state: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        session_id = session_id or new_id()
        key = (app_name, user_id, session_id)
        if key in self._sessions:
            raise ValueError(f"Session already exists: {session_id}")
        app_delta, user_delta, session_state = split_state_delta(state or {})
        self._app_state.setdefault(app_name, {}).update(app_delta)
        self._user_state.setdefault((app_name, user_id), {}).update(user_delta)
        stored = Session(
            id=session_id,
            app_name=app_name,
            user_id=user_id,
            state=session_state,
            last_update_time=time.time(),
        )
        self._sessions[key] = stored
        return self._merged_copy(stored)

    async def get_session(self, *, app_name: str, user_id: str, session_id: str) -> Optional[Session]:
        stored = self._sessions.get((app_name, user_id, session_id))
        if stored is None:
            return None
        return self._merged_copy(stored)

    async def list_sessions(self, *, app_name: str, user_id: str) -> List[Session]:
        return [
            self._merged_copy(stored, with_events=False)
            for (app, user, _), stored in self._sessions.items()
            if app == app_name and user == user_id
        ]

    async def delete_session(self, *, app_name: str, user_id: str, session_id: str) -> bool:
        return self._sessions.pop((app_name, user_id, session_id), None) is not None

    async def _commit(self, session: Session, event: Event) -> Event:
        stored = self._sessions.get((session.app_name, session.user_id, session.id))
        if stored is None:
            raise SessionNotFound(f"Session not found: {session.id}")
        committed = _clamp_timestamp(event, stored.last_update_time)
        app_delta, user_delta, session_delta = split_state_delta(committed.actions.state_delta)
        if app_delta:
            self._app_state.setdefault(session.app_name, {}).update(app_delta)
        if user_delta:
            self._user_state.setdefault((session.app_name, session.user_id), {}).update(user_delta)
        stored.state.update(session_delta)
        stored.events.append(committed)
        stored.last_update_time = committed.timestamp
        return committed


class SqliteSessionStore(BaseSessionStore):
    """SQL-backed store; blocking work runs in a worker thread."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        super().__init__()
        self._db_path = db_path
        self._write_lock = asyncio.Lock()
        self._initialised = False

    # -- schema -----------------------------------------------------------

    def init_db(self) -> None:
        """Create tables. Idempotent."""
        if self._initialised:
            return
        if not is_postgres():
            from llmflow.config import get_settings

            ensure_sqlite_dir(self._db_path or get_settings().db_path)
        with connect(self._db_path) as conn:
            if not is_postgres():
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
                conn.execute("PRAGMA busy_timeout=3000")
                seq_column = "seq INTEGER PRIMARY KEY AUTOINCREMENT"
            else:
                seq_column = "seq BIGSERIAL PRIMARY KEY"
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    app_name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    create_time DOUBLE PRECISION NOT NULL,
                    update_time DOUBLE PRECISION NOT NULL,
                    PRIMARY KEY (app_name, user_id, id)
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS events (
                    {seq_column},
                    id TEXT NOT NULL UNIQUE,
                    app_name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    invocation_id TEXT,
                    author TEXT NOT NULL,
                    timestamp DOUBLE PRECISION NOT NULL,
                    event_data TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_states (
                    app_name TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    update_time DOUBLE PRECISION NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_states (
                    app_name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    update_time DOUBLE PRECISION NOT NULL,
                    PRIMARY KEY (app_name, user_id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_session ON events (app_name, user_id, session_id, seq)"
            )
            conn.commit()
        self._initialised = True

    async def init(self) -> None:
        await asyncio.to_thread(self.init_db)
        logger.info("session database initialised")

    # -- sync helpers (run in worker threads) -----------------------------

    @staticmethod
    def _load_json(raw: Any) -> Dict[str, Any]:
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return {}
        return value if isinstance(value, dict) else {}

    def _read_scoped(self, conn: Any, app_name: str, user_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        app_row = conn.execute(sql("SELECT state FROM app_states WHERE app_name = ?"), (app_name,)).fetchone()
        user_row = conn.execute(
            sql("SELECT state FROM user_states WHERE app_name = ? AND user_id = ?"),
            (app_name, user_id),
        ).fetchone()
        app_state = self._load_json(app_row["state"]) if app_row else {}
        user_state = self._load_json(user_row["state"]) if user_row else {}
        return app_state, user_state

    def _upsert_scoped(self, conn: Any, app_name: str, user_id: str, app_delta: Dict[str, Any], user_delta: Dict[str, Any], now: float) -> None:
        if not app_delta and not user_delta:
            return
        app_state, user_state = self._read_scoped(conn, app_name, user_id)
        if app_delta:
            app_state.update(app_delta)
            conn.execute(
                sql(
                    "INSERT INTO app_states (app_name, state, update_time) VALUES (?, ?, ?) "
                    "ON CONFLICT (app_name) DO UPDATE SET state = excluded.state, update_time = excluded.update_time"
                ),
                (app_name, json.dumps(app_state), now),
            )
        if user_delta:
            user_state.update(user_delta)
            conn.execute(
                sql(
                    "INSERT INTO user_states (app_name, user_id, state, update_time) VALUES (?, ?, ?, ?) "
                    "ON CONFLICT (app_name, user_id) DO UPDATE SET state = excluded.state, update_time = excluded.update_time"
                ),
                (app_name, user_id, json.dumps(user_state), now),
            )

    def _create_sync(self, app_name: str, user_id: str, state: Dict[str, Any], session_id: str) -> Session:
        self.init_db()
        now = time.time()
        app_delta, user_delta, session_state = split_state_delta(state)
        with connect(self._db_path) as conn:
            existing = conn.execute(
                sql("SELECT id FROM sessions WHERE app_name = ? AND user_id = ? AND id = ?"),
                (app_name, user_id, session_id),
            ).fetchone()
            if existing is not None:
                raise ValueError(f"Session already exists: {session_id}")
            conn.execute(
                sql(
                    "INSERT INTO sessions (app_name, user_id, id, state, create_time, update_time) "
                    "VALUES (?, ?, ?, ?, ?, ?)"
                ),
                (app_name, user_id, session_id, json.dumps(session_state), now, now),
            )
            self._upsert_scoped(conn, app_name, user_id, app_delta, user_delta, now)
            conn.commit()
            app_state, user_state = self._read_scoped(conn, app_name, user_id)
        return Session(
            id=session_id,
            app_name=app_name,
            user_id=user_id,
            state=merge_scoped_state(app_state, user_state, session_state),
            last_update_time=now,
        )

    def _get_sync(self, app_name: str, user_id: str, session_id: str, with_events: bool = True) -> Optional[Session]:
        self.init_db()
        with connect(self._db_path) as conn:
            row = conn.execute(
                sql("SELECT id, state, update_time FROM sessions WHERE app_name = ? AND user_id = ? AND id = ?"),
                (app_name, user_id, session_id),
            ).fetchone()
            if row is None:
                return None
            app_state, user_state = self._read_scoped(conn, app_name, user_id)
            events: List[Event] = []
            if with_events:
                rows = conn.execute(
                    sql(
                        "SELECT event_data FROM events WHERE app_name = ? AND user_id = ? AND session_id = ? "
                        "ORDER BY seq"
                    ),
                    (app_name, user_id, session_id),
                ).fetchall()
                events = [Event.model_validate_json(r["event_data"]) for r in rows]
        return Session(
            id=row["id"],
            app_name=app_name,
            user_id=user_id,
            state=merge_scoped_state(app_state, user_state, self._load_json(row["state"])),
            events=events,
            last_update_time=float(row["update_time"]),
        )

    def _list_sync(self, app_name: str, user_id: str) -> List[Session]:
        self.init_db()
        with connect(self._db_path) as conn:
            rows = conn.execute(
                sql("SELECT id FROM sessions WHERE app_name = ? AND user_id = ? ORDER BY create_time"),
                (app_name, user_id),
            ).fetchall()
        sessions = []
        for r in rows:
            session = self._get_sync(app_name, user_id, r["id"], with_events=False)
            if session is not None:
                sessions.append(session)
        return sessions

    def _delete_sync(self, app_name: str, user_id: str, session_id: str) -> bool:
        self.init_db()
        with connect(self._db_path) as conn:
            conn.execute(
                sql("DELETE FROM events WHERE app_name = ? AND user_id = ? AND session_id = ?"),
                (app_name, user_id, session_id),
            )
            cur = conn.execute(
                sql("DELETE FROM sessions WHERE app_name = ? AND user_id = ? AND id = ?"),
                (app_name, user_id, session_id),
            )
            conn.commit()
            return (cur.rowcount or 0) > 0

    def _commit_sync(self, session: Session, event: Event) -> Event:
        self.init_db()
        with connect(self._db_path) as conn:
            row = conn.execute(
                sql("SELECT state, update_time FROM sessions WHERE app_name = ? AND user_id = ? AND id = ?"),
                (session.app_name, session.user_id, session.id),
            ).fetchone()
            if row is None:
                raise SessionNotFound(f"Session not found: {session.id}")
            committed = _clamp_timestamp(event, float(row["update_time"]))
            app_delta, user_delta, session_delta = split_state_delta(committed.actions.state_delta)
            session_state = self._load_json(row["state"])
            session_state.update(session_delta)
            conn.execute(
                sql(
                    "INSERT INTO events (id, app_name, user_id, session_id, invocation_id, author, timestamp, event_data) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    committed.id,
                    session.app_name,
                    session.user_id,
                    session.id,
                    committed.invocation_id,
                    committed.author,
                    committed.timestamp,
                    committed.model_dump_json(),
                ),
            )
            conn.execute(
                sql("UPDATE sessions SET state = ?, update_time = ? WHERE app_name = ? AND user_id = ? AND id = ?"),
                (json.dumps(session_state), committed.timestamp, session.app_name, session.user_id, session.id),
            )
            self._upsert_scoped(conn, session.app_name, session.user_id, app_delta, user_delta, committed.timestamp)
            conn.commit()
        return committed

    # -- async contract ---------------------------------------------------

    async def create_session(
        self,
        *,
        app_name: str,
        user_id: str,
        state: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        async with self._write_lock:
            return await asyncio.to_thread(self._create_sync, app_name, user_id, state or {}, session_id or new_id())

    async def get_session(self, *, app_name: str, user_id: str, session_id: str) -> Optional[Session]:
        return await asyncio.to_thread(self._get_sync, app_name, user_id, session_id)

    async def list_sessions(self, *, app_name: str, user_id: str) -> List[Session]:
        return await asyncio.to_thread(self._list_sync, app_name, user_id)

    async def delete_session(self, *, app_name: str, user_id: str, session_id: str) -> bool:
        async with self._write_lock:
            deleted = await asyncio.to_thread(self._delete_sync, app_name, user_id, session_id)
        return deleted

    async def _commit(self, session: Session, event: Event) -> Event:
        # App/user rows are shared across sessions, so every commit takes the store-wide lock.
        async with self._write_lock:
            return await asyncio.to_thread(self._commit_sync, session, event)


def build_session_store() -> BaseSessionStore:
    """Factory that chooses the backend from SESSION_BACKEND."""
    from llmflow.config import get_settings

    settings = get_settings()
    if settings.session_backend == "sqlite" or is_postgres():
        return SqliteSessionStore(settings.db_path)
    return InMemorySessionStore()
