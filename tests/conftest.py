"""Shared fixtures for cai-bridge tests."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from cai_bridge.config import load_config
from cai_bridge.engine import BridgeEngine
from cai_bridge.types import BridgeConfig, UpstreamError
from cai_bridge.upstream.base import CharacterClient


@dataclass
class FakeHandle:
    character_id: str
    number: int
    sent: list[str] = field(default_factory=list)
    resets: int = 0
    closed: bool = False


class FakeCharacterClient(CharacterClient):
    """Records every upstream call; can be told to fail the next N sends."""

    name = "fake"

    def __init__(self, reply: str | None = None, fail_sends: int = 0, fail_with=None):
        self.reply = reply
        self.fail_sends = fail_sends
        self.fail_with = fail_with or UpstreamError("character service unavailable")
        self.handles: list[FakeHandle] = []
        self.sent: list[str] = []
        self.resets = 0
        self.disconnects = 0
        self.closed = False

    async def connect(self, credential: str, character_id: str) -> FakeHandle:
        handle = FakeHandle(character_id=character_id, number=len(self.handles) + 1)
        self.handles.append(handle)
        return handle

    async def reset_conversation(self, handle: FakeHandle) -> None:
        handle.sent.clear()
        handle.resets += 1
        self.resets += 1

    async def send_message(self, handle: FakeHandle, text: str) -> str:
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise self.fail_with
        handle.sent.append(text)
        self.sent.append(text)
        if self.reply is not None:
            return self.reply
        return f"reply {len(self.sent)}"

    async def disconnect(self, handle: FakeHandle) -> None:
        handle.closed = True
        self.disconnects += 1

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def bridge_config() -> BridgeConfig:
    return load_config(config_dict={
        "character_id": "char-1",
        "models": {"cai-alt": "char-2"},
        "memory": {"max_turns": 24, "max_content_chars": 8000},
    }, environ={})


@pytest.fixture
def fake_client() -> FakeCharacterClient:
    return FakeCharacterClient()


@pytest.fixture
def engine(bridge_config, fake_client) -> BridgeEngine:
    return BridgeEngine(config=bridge_config, client=fake_client)


@pytest.fixture
def make_body():
    """Build a chat-completions body for the default model."""

    def _make(*pairs: tuple[str, str], **extra) -> dict:
        body = {
            "model": "cai-default",
            "messages": [{"role": role, "content": content} for role, content in pairs],
        }
        body.update(extra)
        return body

    return _make
