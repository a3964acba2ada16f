"""EchoClient: offline stand-in for the character service.

Keeps a per-handle conversation so resets and replays behave like the real
thing, and replies deterministically.  Used by ``cai-bridge serve`` when no
relay is configured and for local previews.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field

from ..types import UpstreamError
from .base import CharacterClient

_handle_ids = itertools.count(1)


@dataclass
class EchoHandle:
    character_id: str
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    received: list[str] = field(default_factory=list)
    resets: int = 0
    closed: bool = False


class EchoClient(CharacterClient):
    name = "echo"

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix

    async def connect(self, credential: str, character_id: str) -> EchoHandle:
        if not credential:
            raise UpstreamError("Echo client requires a credential")
        return EchoHandle(character_id=character_id)

    async def reset_conversation(self, handle: EchoHandle) -> None:
        handle.received.clear()
        handle.resets += 1

    async def send_message(self, handle: EchoHandle, text: str) -> str:
        if handle.closed:
            raise UpstreamError("Echo handle is closed")
        handle.received.append(text)
        last_line = text.strip().splitlines()[-1] if text.strip() else ""
        prefix = self.prefix or f"[{handle.character_id}]"
        return f"{prefix} #{len(handle.received)}: {last_line}"

    async def disconnect(self, handle: EchoHandle) -> None:
        handle.closed = True
