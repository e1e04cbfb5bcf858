"""
Versioned artifact storage, reached by tools and callbacks through a narrowed context.

Filenames prefixed with `user:` are shared by all sessions of the same user.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from llmflow.models import Blob

ArtifactKey = Tuple[str, str, str, str]


class BaseArtifactStore(ABC):
    @abstractmethod
    async def save(self, *, app_name: str, user_id: str, session_id: str, filename: str, artifact: Blob) -> int:
        """Store a new version and return its number (0-based)."""

    @abstractmethod
    async def load(
        self,
        *,
        app_name: str,
        user_id: str,
        session_id: str,
        filename: str,
        version: Optional[int] = None,
    ) -> Optional[Blob]:
        ...

    @abstractmethod
    async def list_keys(self, *, app_name: str, user_id: str, session_id: str) -> List[str]:
        ...

    @abstractmethod
    async def list_versions(self, *, app_name: str, user_id: str, session_id: str, filename: str) -> List[int]:
        ...

    @abstractmethod
    async def delete(self, *, app_name: str, user_id: str, session_id: str, filename: str) -> None:
        ...


def _scope(session_id: str, filename: str) -> str:
    return "user" if filename.startswith("user:") else session_id


class InMemoryArtifactStore(BaseArtifactStore):
    def __init__(self) -> None:
        self._artifacts: Dict[ArtifactKey, List[Blob]] = {}

    def _key(self, app_name: str, user_id: str, session_id: str, filename: str) -> ArtifactKey:
        return (app_name, user_id, _scope(session_id, filename), filename)

    async def save(self, *, app_name: str, user_id: str, session_id: str, filename: str, artifact: Blob) -> int:
        versions = self._artifacts.setdefault(self._key(app_name, user_id, session_id, filename), [])
        versions.append(artifact)
        return len(versions) - 1

    async def load(
        self,
        *,
        app_name: str,
        user_id: str,
        session_id: str,
        filename: str,
        version: Optional[int] = None,
    ) -> Optional[Blob]:
        versions = self._artifacts.get(self._key(app_name, user_id, session_id, filename))
        if not versions:
            return None
        if version is None:
            return versions[-1]
        if 0 <= version < len(versions):
            return versions[version]
        return None

    async def list_keys(self, *, app_name: str, user_id: str, session_id: str) -> List[str]:
        keys = {
            filename
            for (app, user, scope, filename) in self._artifacts
            if app == app_name and user == user_id and scope in (session_id, "user")
        }
        return sorted(keys)

    async def list_versions(self, *, app_name: str, user_id: str, session_id: str, filename: str) -> List[int]:
        versions = self._artifacts.get(self._key(app_name, user_id, session_id, filename), [])
        return list(range(len(versions)))

    async def delete(self, *, app_name: str, user_id: str, session_id: str, filename: str) -> None:
        self._artifacts.pop(self._key(app_name, user_id, session_id, filename), None)
