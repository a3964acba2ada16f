"""BridgeEngine: orchestrates one chat-completion request end to end."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import load_config
from .core.identity import SessionResolver
from .core.normalizer import (
    ensure_trailing_user,
    last_user_message,
    normalize_messages,
    split_system,
)
from .core.postprocess import clamp_reply, commit_exchange, get_runtime_state
from .core.reconciler import reconcile
from .core.store import KeyValueStore, TurnStore, clamp_text, clamp_turns
from .core.sync import HandlePool, UpstreamSync
from .storage.memory import MemoryKeyValueStore, MemoryTurnStore
from .types import (
    AuthenticationError,
    BridgeConfig,
    CompletionResult,
    InvalidRequestError,
    ModelNotFoundError,
    SyncMode,
)
from .upstream import CharacterClient, build_client

logger = logging.getLogger(__name__)

SYNC_MODE_HEADER = "x-cai-sync-mode"


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionLocks:
    """Per-session-key asyncio locks; a key's lock is dropped once idle."""

    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def resolve_sync_mode(
    headers: Mapping[str, Any], body: Mapping[str, Any], default: str,
) -> SyncMode:
    """Header ``x-cai-sync-mode``, then body ``proxy_sync_mode``/``sync_mode``, then config."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    header_mode = lowered.get(SYNC_MODE_HEADER)
    body_mode = body.get("proxy_sync_mode")
    if not isinstance(body_mode, str):
        body_mode = body.get("sync_mode")
    for candidate in (header_mode, body_mode, default):
        if isinstance(candidate, str) and candidate.strip():
            return SyncMode.parse(candidate)
    return SyncMode.PROMPT


class BridgeEngine:
    """Maps OpenAI-style requests onto a stateful character session.

    Usage:
        engine = BridgeEngine(config=load_config())
        result = await engine.complete(body, headers, credential)

    Stores and the character client are injectable; by default everything is
    in memory and the client comes from ``upstream.client``.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: BridgeConfig | None = None,
        client: CharacterClient | None = None,
        turn_store: TurnStore | None = None,
        runtime_store: KeyValueStore | None = None,
        alias_store: KeyValueStore | None = None,
        context_alias_store: KeyValueStore | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        mem = self.config.memory

        self.turn_store = turn_store or MemoryTurnStore(
            capacity=mem.session_capacity,
            max_turns=mem.max_turns,
            max_content_chars=mem.max_content_chars,
        )
        self.runtime_store = runtime_store or MemoryKeyValueStore(mem.runtime_capacity)
        self.resolver = SessionResolver(
            self.config.identity,
            context_aliases=context_alias_store or MemoryKeyValueStore(mem.context_alias_capacity),
            aliases=alias_store or MemoryKeyValueStore(mem.alias_capacity),
        )

        self.client = client or build_client(self.config.upstream)
        self.pool = HandlePool(self.client, self.config.upstream)
        self.sync = UpstreamSync(self.pool, self.config.sync)
        self.locks = SessionLocks()

    # ------------------------------------------------------------------
    # Model lookup
    # ------------------------------------------------------------------

    def list_models(self) -> list[str]:
        return list(self.config.models) or [self.config.default_model]

    def resolve_character(self, model: str) -> str:
        character_id = self.config.models.get(model.strip()) if model else None
        if not character_id:
            raise ModelNotFoundError(
                f'Unknown model "{model}". Configure CAI_MODEL_MAP_JSON or '
                f"CAI_CHARACTER_ID (default alias: {self.config.default_model}).",
                extra={"available_models": list(self.config.models)},
            )
        return character_id

    def choice_count(self, body: Mapping[str, Any]) -> int:
        if not self.config.response.allow_multi_choice:
            return 1
        try:
            requested = int(body.get("n") or 1)
        except (TypeError, ValueError):
            requested = 1
        return max(1, min(self.config.response.max_choices, requested))

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete(
        self,
        body: Mapping[str, Any],
        headers: Mapping[str, Any],
        credential: str,
    ) -> CompletionResult:
        """Answer one completion request.

        Validation happens before any state is touched; the turn log and
        runtime state are committed only after the upstream replies.
        """
        start = time.monotonic()

        model = body.get("model")
        model = model.strip() if isinstance(model, str) else ""
        if not model:
            raise InvalidRequestError("Missing required field: model", code="invalid_model")

        turns = normalize_messages(body.get("messages"))
        live_message = last_user_message(turns)
        if not live_message:
            raise InvalidRequestError(
                "At least one user message is required", code="invalid_messages",
            )

        if not credential:
            raise AuthenticationError(
                "Missing token. Send Authorization: Bearer <token>. Optional server "
                "fallback requires CAI_ALLOW_SERVER_TOKEN=true and CAI_TOKEN."
            )

        character_id = self.resolve_character(model)
        incoming_system, conversation = split_system(turns)

        resolution = self.resolver.resolve(
            credential=credential,
            model=model,
            headers=headers,
            body=body,
            system_text=incoming_system,
            turns=conversation,
            live_message=live_message,
        )
        mode = resolve_sync_mode(headers, body, self.config.sync.mode)
        authoritative = (
            self.config.sync.replay_authoritative_history
            if mode is SyncMode.REPLAY
            else self.config.sync.authoritative_history
        )

        max_chars = self.config.memory.max_content_chars
        live = clamp_text(live_message, max_chars)
        incoming = clamp_turns(ensure_trailing_user(conversation, live_message), 0, max_chars)

        async with self.locks.hold(resolution.session_key):
            runtime = get_runtime_state(self.runtime_store, resolution.session_key)
            previous = self.turn_store.get(resolution.session_key)
            system_text = incoming_system or runtime.system_text

            assume_continuation = (
                mode is SyncMode.REPLAY
                and self.config.sync.replay_assume_continuation
                and not runtime.bootstrapped
                and any(t.role == "assistant" for t in conversation)
            )

            decision = reconcile(
                previous,
                incoming,
                live,
                body=body,
                bootstrapped=runtime.bootstrapped,
                authoritative=authoritative,
                force_fresh=resolution.fresh_start and not resolution.explicit,
                assume_continuation=assume_continuation,
                history_cap=self.turn_store.max_turns,
            )
            logger.info(
                "Reconciled session %s: %s (reset=%s full_sync=%s)",
                resolution.session_id[:12], decision.classification.value,
                decision.reset_conversation, decision.full_sync_needed,
            )

            outcome = await self.sync.run(
                credential=credential,
                character_id=character_id,
                session_id=resolution.session_id,
                mode=mode,
                reconcile=decision,
                system_text=system_text,
                live_message=live,
            )

            reply = clamp_reply(outcome.text, self.config.memory.max_assistant_chars)
            commit_exchange(
                self.turn_store,
                self.runtime_store,
                resolution.session_key,
                decision.effective_turns,
                reply,
                system_text,
            )

        outcome.text = reply
        return CompletionResult(
            model=model,
            text=reply,
            resolution=resolution,
            reconcile=decision,
            outcome=outcome,
            requested_mode=mode,
            authoritative=authoritative,
            assume_continuation=assume_continuation,
            choice_count=self.choice_count(body),
            stream=body.get("stream") is True,
            elapsed_ms=round((time.monotonic() - start) * 1000, 1),
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def probe(self, credential: str) -> dict:
        """Live check against the default model's character."""
        if not credential:
            return {
                "ok": False,
                "reason": "No token provided. Set CAI_TOKEN or send Authorization/X-API-Key.",
            }
        character_id = self.config.models.get(self.config.default_model)
        if not character_id:
            return {
                "ok": False,
                "reason": "Default model is not mapped to a character. "
                          "Configure CAI_CHARACTER_ID or CAI_MODEL_MAP_JSON.",
            }
        try:
            return await self.pool.probe(credential, character_id)
        except Exception as e:
            logger.warning("Live upstream probe failed: %s", e)
            return {"ok": False, "reason": str(e) or "Live check failed"}

    def stats(self) -> dict:
        return {
            "sessions": self.turn_store.session_count(),
            "handles": len(self.pool),
            "active_locks": len(self.locks),
        }

    async def aclose(self) -> None:
        await self.pool.close_all()
        await self.client.aclose()
