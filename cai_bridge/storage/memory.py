"""In-memory store backends with insertion-order eviction."""

from __future__ import annotations

import threading
from typing import Any

from ..core.store import KeyValueStore, TurnStore
from ..types import Turn


class MemoryKeyValueStore(KeyValueStore):
    """Dict-backed cache bounded to *capacity* entries.

    Relies on dict insertion order: the first key is always the oldest.
    Re-setting a key updates the value in place without refreshing it.
    """

    def __init__(self, capacity: int) -> None:
        self.capacity = max(1, int(capacity))
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            while len(self._data) > self.capacity:
                del self._data[next(iter(self._data))]

    def delete(self, key: str) -> Any:
        with self._lock:
            return self._data.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class MemoryTurnStore(TurnStore):
    """Turn logs held in a bounded ``MemoryKeyValueStore``."""

    def __init__(
        self,
        capacity: int = 2000,
        max_turns: int = 24,
        max_content_chars: int = 8000,
    ) -> None:
        self.max_turns = max_turns
        self.max_content_chars = max_content_chars
        self._sessions = MemoryKeyValueStore(capacity)

    def get(self, session_key: str) -> list[Turn]:
        turns = self._sessions.get(session_key) or []
        return [Turn(role=t.role, content=t.content) for t in turns]

    def replace(self, session_key: str, turns: list[Turn]) -> list[Turn]:
        clamped = self.clamp(turns)
        self._sessions.set(session_key, clamped)
        return [Turn(role=t.role, content=t.content) for t in clamped]

    def delete(self, session_key: str) -> None:
        self._sessions.delete(session_key)

    def session_count(self) -> int:
        return len(self._sessions)
