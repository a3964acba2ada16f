"""CharacterClient base class: the stateful character service contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CharacterClient(ABC):
    """Async client for a character service that keeps its own history.

    A handle is whatever ``connect()`` returns; the bridge treats it as
    opaque and only hands it back to the same client.  Implementations raise
    ``UpstreamError`` for failures the bridge may retry.
    """

    name: str = "base"

    @abstractmethod
    async def connect(self, credential: str, character_id: str) -> Any:
        """Authenticate and open a session with *character_id*."""

    @abstractmethod
    async def reset_conversation(self, handle: Any) -> None:
        """Start a new server-side conversation for the handle's character."""

    @abstractmethod
    async def send_message(self, handle: Any, text: str) -> str:
        """Send one user message and return the character's reply."""

    @abstractmethod
    async def disconnect(self, handle: Any) -> None:
        """Close the session behind *handle*."""

    async def aclose(self) -> None:
        """Release client-wide resources (connection pools)."""
