"""Storage interfaces for turn logs, runtime state, and alias caches."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..types import CONVERSATION_ROLES, Turn


def clamp_text(value: Any, limit: int) -> str:
    """Trim *value* and cut it to *limit* chars with a ``...`` suffix."""
    text = value.strip() if isinstance(value, str) else ""
    if not text or limit <= 0 or len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def clamp_turns(turns: list[Turn], max_turns: int, max_chars: int) -> list[Turn]:
    """Keep the most recent *max_turns* user/assistant turns, each clamped."""
    clamped = [
        Turn(role=t.role, content=clamp_text(t.content, max_chars))
        for t in turns
        if t.role in CONVERSATION_ROLES
    ]
    clamped = [t for t in clamped if t.content]
    if max_turns > 0:
        clamped = clamped[-max_turns:]
    return clamped


class KeyValueStore(ABC):
    """Bounded key/value cache. Eviction drops the oldest-inserted key."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default*."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Insert or overwrite. Overwriting keeps the key's position."""

    @abstractmethod
    def delete(self, key: str) -> Any:
        """Remove *key*; returns the old value or None."""

    @abstractmethod
    def __len__(self) -> int: ...

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class TurnStore(ABC):
    """Per-session turn log."""

    max_turns: int = 24
    max_content_chars: int = 8000

    @abstractmethod
    def get(self, session_key: str) -> list[Turn]:
        """Return a copy of the stored turns (empty list if none)."""

    @abstractmethod
    def replace(self, session_key: str, turns: list[Turn]) -> list[Turn]:
        """Store *turns* (clamped). Returns what was stored."""

    @abstractmethod
    def delete(self, session_key: str) -> None:
        """Forget a session's turns."""

    @abstractmethod
    def session_count(self) -> int: ...

    def clamp(self, turns: list[Turn]) -> list[Turn]:
        return clamp_turns(turns, self.max_turns, self.max_content_chars)
