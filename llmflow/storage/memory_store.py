from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Dict, List, Set, Tuple

from llmflow.models import MemoryEntry, Session

_WORD_RE = re.compile(r"[A-Za-z0-9]+")


def _words(text: str) -> Set[str]:
    return {w.lower() for w in _WORD_RE.findall(text)}


class BaseMemoryStore(ABC):
    """Long-term recall across sessions."""

    @abstractmethod
    async def add_session_to_memory(self, session: Session) -> None:
        ...

    @abstractmethod
    async def search_memory(self, *, app_name: str, user_id: str, query: str) -> List[MemoryEntry]:
        ...


class InMemoryMemoryStore(BaseMemoryStore):
    """Keyword-matching memory kept per (app, user)."""

    def __init__(self) -> None:
        self._sessions: Dict[Tuple[str, str], Dict[str, List[MemoryEntry]]] = {}

    async def add_session_to_memory(self, session: Session) -> None:
        entries = [
            MemoryEntry(content=event.content, author=event.author, timestamp=event.timestamp)
            for event in session.events
            if event.content is not None and event.text
        ]
        self._sessions.setdefault((session.app_name, session.user_id), {})[session.id] = entries

    async def search_memory(self, *, app_name: str, user_id: str, query: str) -> List[MemoryEntry]:
        wanted = _words(query)
        if not wanted:
            return []
        matches: List[MemoryEntry] = []
        for entries in self._sessions.get((app_name, user_id), {}).values():
            for entry in entries:
                text = "".join(p.text or "" for p in entry.content.parts)
                if wanted & _words(text):
                    matches.append(entry)
        return matches
