"""Upstream sync strategy: turn a reconcile decision into character-service calls.

Prompt sync flattens the conversation into one transcript message.  Replay
sync resets the upstream conversation and resends each user turn so the
character's own history matches.  Either way a failed attempt is retried
once on a freshly connected handle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import Any, TypeVar

from ..types import (
    BridgeError,
    InvalidRequestError,
    ReconcileResult,
    ReplayExhaustedError,
    SyncConfig,
    SyncMode,
    SyncOutcome,
    Turn,
    UpstreamConfig,
    UpstreamError,
    UpstreamTimeoutError,
)
from ..upstream.base import CharacterClient
from .identity import credential_fingerprint

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 2


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------

def build_transcript_prompt(system_text: str, turns: list[Turn]) -> str:
    """Flatten system text and turns into ``SYSTEM:/USER:/ASSISTANT:`` blocks.

    A lone user turn with no system text is returned as-is.
    """
    conversation = [t for t in turns if t.role in ("user", "assistant") and t.content]
    system = system_text.strip() if system_text else ""
    if not system and len(conversation) == 1 and conversation[0].role == "user":
        return conversation[0].content

    parts = [f"SYSTEM:\n{system}"] if system else []
    parts.extend(f"{t.role.upper()}:\n{t.content}" for t in conversation)
    return "\n\n".join(parts).strip()


def replay_bootstrap_message(system_text: str, user_message: str, include_system: bool) -> str:
    user = user_message.strip()
    system = system_text.strip() if system_text else ""
    if not user:
        return ""
    if not system or not include_system:
        return user
    return f"SYSTEM:\n{system}\n\nUSER:\n{user}"


def select_replay_turns(turns: list[Turn], limit: int) -> tuple[list[str], bool]:
    """User contents to replay, keeping the most recent *limit* (0 = all)."""
    users = [t.content.strip() for t in turns if t.role == "user" and t.content.strip()]
    if limit <= 0 or len(users) <= limit:
        return users, False
    return users[-limit:], True


# ---------------------------------------------------------------------------
# Handle pool
# ---------------------------------------------------------------------------

class HandlePool:
    """Bounded cache of connected upstream handles.

    Keyed by ``(credential fingerprint, character, session)``.  The oldest
    handle is evicted and disconnected when the pool is full.  Stale handles
    are only discovered when a call through them fails.
    """

    def __init__(self, client: CharacterClient, config: UpstreamConfig) -> None:
        self.client = client
        self.config = config
        self._handles: dict[str, Any] = {}

    @staticmethod
    def make_key(credential: str, character_id: str, session_id: str) -> str:
        return f"{credential_fingerprint(credential)}::{character_id}::{session_id}"

    def __len__(self) -> int:
        return len(self._handles)

    async def _connect(self, credential: str, character_id: str) -> Any:
        return await call_upstream(
            self.client.connect(credential, character_id),
            self.config.connect_timeout,
            "connect",
        )

    async def acquire(self, credential: str, character_id: str, session_id: str) -> Any:
        key = self.make_key(credential, character_id, session_id)
        handle = self._handles.get(key)
        if handle is not None:
            return handle

        handle = await self._connect(credential, character_id)
        self._handles[key] = handle
        while len(self._handles) > self.config.handle_capacity:
            oldest = next(iter(self._handles))
            await self._disconnect(self._handles.pop(oldest))
        return handle

    async def discard(self, credential: str, character_id: str, session_id: str) -> None:
        handle = self._handles.pop(self.make_key(credential, character_id, session_id), None)
        if handle is not None:
            await self._disconnect(handle)

    async def _disconnect(self, handle: Any) -> None:
        try:
            await asyncio.wait_for(
                self.client.disconnect(handle), self.config.disconnect_timeout,
            )
        except Exception as e:
            logger.warning("Upstream disconnect failed: %s", e)

    async def close_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await self._disconnect(handle)

    async def probe(self, credential: str, character_id: str) -> dict:
        """Connect and disconnect a throwaway handle; report latency."""
        start = time.monotonic()
        handle = await self._connect(credential, character_id)
        await self._disconnect(handle)
        return {"ok": True, "latency_ms": round((time.monotonic() - start) * 1000, 1)}


async def call_upstream(awaitable: Awaitable[T], timeout: float, stage: str) -> T:
    """Await an upstream call under *timeout*, normalising failures to UpstreamError."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise UpstreamTimeoutError(f"Timeout during {stage}") from e
    except BridgeError:
        raise
    except Exception as e:
        raise UpstreamError(f"Upstream {stage} failed: {e}") from e


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

class UpstreamSync:
    """Runs prompt or replay sync for one request with a single retry."""

    def __init__(self, pool: HandlePool, config: SyncConfig) -> None:
        self.pool = pool
        self.config = config

    @property
    def upstream_config(self) -> UpstreamConfig:
        return self.pool.config

    async def run(
        self,
        *,
        credential: str,
        character_id: str,
        session_id: str,
        mode: SyncMode,
        reconcile: ReconcileResult,
        system_text: str,
        live_message: str,
    ) -> SyncOutcome:
        use_replay = mode is SyncMode.REPLAY and reconcile.full_sync_needed
        reset = reconcile.reset_conversation or use_replay

        if use_replay:
            user_turns, truncated = select_replay_turns(
                reconcile.effective_turns, self.config.replay_max_user_turns,
            )
            if not user_turns:
                raise ReplayExhaustedError("Replay sync requires at least one user turn.")
            messages = [
                replay_bootstrap_message(system_text, content, self.config.replay_include_system)
                if i == 0 else content
                for i, content in enumerate(user_turns)
            ]
            outcome_mode = "replay-full-sync"
        else:
            truncated = False
            if reconcile.full_sync_needed:
                message = build_transcript_prompt(system_text, reconcile.effective_turns)
                outcome_mode = "prompt-full-sync"
            else:
                message = live_message
                outcome_mode = "continuation"
            if not message:
                raise InvalidRequestError(
                    "No valid messages to send upstream", code="invalid_messages",
                )
            messages = [message]

        logger.info(
            "Upstream sync: session=%s mode=%s reset=%s messages=%d",
            session_id[:12], outcome_mode, reset, len(messages),
        )

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                handle = await self.pool.acquire(credential, character_id, session_id)
                if reset:
                    await self._soft_reset(handle)
                text = ""
                for message in messages:
                    text = await call_upstream(
                        self.pool.client.send_message(handle, message),
                        self.upstream_config.request_timeout,
                        "send",
                    )
                return SyncOutcome(
                    text=text or "",
                    mode=outcome_mode,
                    replayed_user_turns=len(messages) if use_replay else 0,
                    truncated=truncated,
                    attempts=attempt,
                )
            except UpstreamError as e:
                await self.pool.discard(credential, character_id, session_id)
                if attempt >= MAX_ATTEMPTS:
                    raise
                logger.warning(
                    "Upstream attempt %d failed for session %s, retrying on a fresh handle: %s",
                    attempt, session_id[:12], e,
                )

        raise UpstreamError("Upstream retries exhausted")

    async def _soft_reset(self, handle: Any) -> None:
        try:
            await asyncio.wait_for(
                self.pool.client.reset_conversation(handle),
                self.upstream_config.reset_timeout,
            )
        except Exception as e:
            logger.warning("Upstream reset failed, continuing: %s", e)
