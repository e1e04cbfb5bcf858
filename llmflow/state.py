"""
Scoped session state.

Keys are partitioned by prefix: no prefix (session), `user:`, `app:` and
`temp:` (single turn, never persisted). A `State` is a view over the
committed snapshot plus a pending delta; writes only ever land in the delta,
which travels on an Event's actions and is applied when that Event commits.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, Mapping, Tuple

APP_PREFIX = "app:"
USER_PREFIX = "user:"
TEMP_PREFIX = "temp:"


def is_temp_key(key: str) -> bool:
    return key.startswith(TEMP_PREFIX)


def strip_temp_keys(delta: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in delta.items() if not is_temp_key(k)}


def split_state_delta(delta: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
    """
    Split a delta into (app, user, session) partitions.

    App and user keys are returned without their prefix; temp keys are dropped.
    """
    app_delta: Dict[str, Any] = {}
    user_delta: Dict[str, Any] = {}
    session_delta: Dict[str, Any] = {}
    for key, value in delta.items():
        if key.startswith(APP_PREFIX):
            app_delta[key[len(APP_PREFIX):]] = value
        elif key.startswith(USER_PREFIX):
            user_delta[key[len(USER_PREFIX):]] = value
        elif not is_temp_key(key):
            session_delta[key] = value
    return app_delta, user_delta, session_delta


def merge_scoped_state(
    app_state: Mapping[str, Any],
    user_state: Mapping[str, Any],
    session_state: Mapping[str, Any],
) -> Dict[str, Any]:
    merged = dict(session_state)
    for key, value in app_state.items():
        merged[APP_PREFIX + key] = value
    for key, value in user_state.items():
        merged[USER_PREFIX + key] = value
    return merged


class State:
    """Committed snapshot with a write-through-to-delta overlay."""

    def __init__(self, value: Mapping[str, Any], delta: Dict[str, Any]):
        self._value = value
        self._delta = delta

    def __getitem__(self, key: str) -> Any:
        if key in self._delta:
            return self._delta[key]
        return self._value[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._delta[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._delta or key in self._value

    def __iter__(self) -> Iterator[str]:
        return iter(self.to_dict())

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self:
            return default
        return self[key]

    def update(self, delta: Mapping[str, Any]) -> None:
        self._delta.update(delta)

    def has_delta(self) -> bool:
        return bool(self._delta)

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self._value)
        result.update(self._delta)
        return result
