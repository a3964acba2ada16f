"""End-to-end tests for BridgeEngine against a fake character service."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeCharacterClient

from cai_bridge.config import load_config
from cai_bridge.core.identity import make_session_key
from cai_bridge.engine import BridgeEngine, SessionLocks, resolve_sync_mode
from cai_bridge.types import (
    AuthenticationError,
    Classification,
    InvalidRequestError,
    ModelNotFoundError,
    SessionSource,
    SyncMode,
    Turn,
    UpstreamError,
)

SESSION = {"x-session-id": "s1"}
SYSTEM = ("system", "You are Bob.")


def _engine(client=None, **overrides) -> BridgeEngine:
    raw = {"character_id": "char-1"}
    raw.update(overrides)
    return BridgeEngine(config=load_config(config_dict=raw, environ={}), client=client or FakeCharacterClient())


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.asyncio
    async def test_missing_model_checked_first(self, engine):
        with pytest.raises(InvalidRequestError) as exc:
            await engine.complete({"messages": []}, {}, "")
        assert exc.value.code == "invalid_model"

    @pytest.mark.asyncio
    async def test_requires_user_message(self, engine, make_body):
        with pytest.raises(InvalidRequestError) as exc:
            await engine.complete(make_body(("assistant", "hi")), {}, "tok")
        assert exc.value.code == "invalid_messages"

    @pytest.mark.asyncio
    async def test_requires_credential(self, engine, make_body):
        with pytest.raises(AuthenticationError) as exc:
            await engine.complete(make_body(("user", "hi")), {}, "")
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_model(self, engine, fake_client):
        body = {"model": "nope", "messages": [{"role": "user", "content": "hi"}]}
        with pytest.raises(ModelNotFoundError) as exc:
            await engine.complete(body, {}, "tok")
        assert exc.value.extra["available_models"] == ["cai-alt", "cai-default"]
        assert fake_client.handles == []

    def test_list_models(self, engine):
        assert engine.list_models() == ["cai-alt", "cai-default"]

    def test_list_models_unconfigured(self):
        engine = BridgeEngine(config=load_config(config_dict={}, environ={}), client=FakeCharacterClient())
        assert engine.list_models() == ["cai-default"]


# ---------------------------------------------------------------------------
# Conversation flows
# ---------------------------------------------------------------------------


class TestConversationFlow:
    @pytest.mark.asyncio
    async def test_short_greeting_starts_fresh(self, engine, fake_client, make_body):
        result = await engine.complete(make_body(("user", "Hi")), {}, "tok")
        assert result.reconcile.classification is Classification.FIRST_SYNC
        assert result.reconcile.reset_conversation
        assert result.resolution.fresh_start
        assert result.resolution.source is SessionSource.FALLBACK_EPHEMERAL
        assert fake_client.sent == ["Hi"]
        assert fake_client.resets == 1

        again = await engine.complete(make_body(("user", "Hi")), {}, "tok")
        assert again.resolution.session_key != result.resolution.session_key
        assert again.reconcile.classification is Classification.FIRST_SYNC

    @pytest.mark.asyncio
    async def test_append_only_then_rewrite(self, engine, fake_client, make_body):
        first = await engine.complete(make_body(SYSTEM, ("user", "hello there friend")), SESSION, "tok")
        assert first.reconcile.classification is Classification.FIRST_SYNC
        assert first.outcome.mode == "prompt-full-sync"
        assert fake_client.sent[-1] == "SYSTEM:\nYou are Bob.\n\nUSER:\nhello there friend"

        second = await engine.complete(make_body(
            SYSTEM,
            ("user", "hello there friend"),
            ("assistant", first.text),
            ("user", "what next"),
        ), SESSION, "tok")
        assert second.reconcile.classification is Classification.APPEND_ONLY
        assert not second.reconcile.reset_conversation
        assert second.outcome.mode == "continuation"
        assert fake_client.sent[-1] == "what next"
        assert fake_client.resets == 0

        third = await engine.complete(make_body(
            SYSTEM,
            ("user", "hello there friend"),
            ("assistant", "an edited reply"),
            ("user", "what next"),
        ), SESSION, "tok")
        assert third.reconcile.classification is Classification.REWRITE
        assert third.reconcile.reset_conversation
        assert third.outcome.mode == "prompt-full-sync"
        assert "ASSISTANT:\nan edited reply" in fake_client.sent[-1]
        assert fake_client.resets == 1

        stored = engine.turn_store.get(third.resolution.session_key)
        assert stored == [
            Turn("user", "hello there friend"),
            Turn("assistant", "an edited reply"),
            Turn("user", "what next"),
            Turn("assistant", third.text),
        ]

    @pytest.mark.asyncio
    async def test_same_context_same_session(self, engine, make_body):
        opening = ("user", "Ahoy, tell me about your ship and its crew.")
        system = ("system", "You are a pirate captain.")
        first = await engine.complete(make_body(system, opening), {}, "tok")
        assert first.resolution.source is SessionSource.IMPLICIT_CONTEXT

        second = await engine.complete(make_body(
            system, opening, ("assistant", first.text), ("user", "Where do we sail?"),
        ), {}, "tok")
        assert second.resolution.source is SessionSource.CONTEXT_ALIAS
        assert second.resolution.session_key == first.resolution.session_key
        assert second.reconcile.classification is Classification.APPEND_ONLY

    @pytest.mark.asyncio
    async def test_system_text_remembered(self, engine, make_body):
        await engine.complete(make_body(SYSTEM, ("user", "hello there friend")), SESSION, "tok")
        key = make_session_key("tok", "cai-default", "s1")
        state = engine.runtime_store.get(key)
        assert state.bootstrapped
        assert state.system_text == "You are Bob."

    @pytest.mark.asyncio
    async def test_serialized_blob_request(self, engine, fake_client, make_body):
        blob = (
            "You are Bob.\n\n"
            "Conversation history:\n"
            "User: hi\n"
            "Assistant: hello\n"
            "Current user message:\n"
            "how are you"
        )
        result = await engine.complete(make_body(("user", blob)), {}, "tok")
        assert result.reconcile.effective_turns == [
            Turn("user", "hi"), Turn("assistant", "hello"), Turn("user", "how are you"),
        ]
        assert fake_client.sent[-1] == (
            "SYSTEM:\nYou are Bob.\n\nUSER:\nhi\n\nASSISTANT:\nhello\n\nUSER:\nhow are you"
        )


# ---------------------------------------------------------------------------
# Memory bounds
# ---------------------------------------------------------------------------


class TestMemoryBounds:
    @pytest.mark.asyncio
    @pytest.mark.regression("MEM-001")
    async def test_turn_cap_respected_and_window_stays_append_only(self, make_body):
        engine = _engine(memory={"max_turns": 4})
        history: list[tuple[str, str]] = []
        for i in range(1, 6):
            history.append(("user", f"message number {i}"))
            result = await engine.complete(make_body(*history), SESSION, "tok")
            history.append(("assistant", result.text))
            stored = engine.turn_store.get(result.resolution.session_key)
            assert len(stored) <= 4
            if i > 1:
                assert result.reconcile.classification is Classification.APPEND_ONLY
                assert not result.reconcile.reset_conversation

    @pytest.mark.asyncio
    async def test_reply_clamped(self, make_body):
        engine = _engine(FakeCharacterClient(reply="a very long reply"), memory={"max_assistant_chars": 6})
        result = await engine.complete(make_body(("user", "hello there")), SESSION, "tok")
        assert result.text == "a very..."
        stored = engine.turn_store.get(result.resolution.session_key)
        assert stored[-1] == Turn("assistant", "a very...")


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_retry_once_then_succeed(self, engine, fake_client, make_body):
        fake_client.fail_sends = 1
        result = await engine.complete(make_body(("user", "hello there")), SESSION, "tok")
        assert result.outcome.attempts == 2

    @pytest.mark.asyncio
    @pytest.mark.regression("SYNC-004")
    async def test_failure_commits_nothing(self, engine, fake_client, make_body):
        fake_client.fail_sends = 2
        with pytest.raises(UpstreamError):
            await engine.complete(make_body(("user", "hello there")), SESSION, "tok")

        key = make_session_key("tok", "cai-default", "s1")
        assert engine.turn_store.get(key) == []
        assert engine.runtime_store.get(key) is None
        assert len(engine.locks) == 0

        result = await engine.complete(make_body(("user", "hello there")), SESSION, "tok")
        assert result.reconcile.classification is Classification.FIRST_SYNC

    @pytest.mark.asyncio
    async def test_failed_request_keeps_previous_log(self, engine, fake_client, make_body):
        first = await engine.complete(make_body(("user", "hello there")), SESSION, "tok")
        before = engine.turn_store.get(first.resolution.session_key)

        fake_client.fail_sends = 2
        with pytest.raises(UpstreamError):
            await engine.complete(make_body(
                ("user", "hello there"), ("assistant", "edited"), ("user", "again"),
            ), SESSION, "tok")
        assert engine.turn_store.get(first.resolution.session_key) == before


# ---------------------------------------------------------------------------
# Sync modes
# ---------------------------------------------------------------------------


class TestSyncModes:
    def test_resolve_sync_mode_precedence(self):
        assert resolve_sync_mode({"X-CAI-Sync-Mode": "replay"}, {"sync_mode": "prompt"}, "prompt") is SyncMode.REPLAY
        assert resolve_sync_mode({}, {"proxy_sync_mode": "replay"}, "prompt") is SyncMode.REPLAY
        assert resolve_sync_mode({}, {"sync_mode": "replay"}, "prompt") is SyncMode.REPLAY
        assert resolve_sync_mode({}, {}, "replay") is SyncMode.REPLAY
        assert resolve_sync_mode({}, {"sync_mode": "bogus"}, "replay") is SyncMode.PROMPT

    @pytest.mark.asyncio
    async def test_replay_assumes_continuation(self, engine, fake_client, make_body):
        headers = {**SESSION, "x-cai-sync-mode": "replay"}
        body = make_body(SYSTEM, ("user", "a"), ("assistant", "b"), ("user", "c"))
        result = await engine.complete(body, headers, "tok")
        assert result.requested_mode is SyncMode.REPLAY
        assert result.assume_continuation
        assert result.outcome.mode == "continuation"
        assert fake_client.sent == ["c"]

    @pytest.mark.asyncio
    async def test_replay_full_sync(self, make_body):
        client = FakeCharacterClient()
        engine = _engine(client, sync={"mode": "replay", "replay_assume_continuation": False})
        body = make_body(SYSTEM, ("user", "a"), ("assistant", "b"), ("user", "c"))
        result = await engine.complete(body, SESSION, "tok")
        assert result.outcome.mode == "replay-full-sync"
        assert result.outcome.replayed_user_turns == 2
        assert client.resets == 1
        assert client.sent == ["SYSTEM:\nYou are Bob.\n\nUSER:\na", "c"]

    @pytest.mark.asyncio
    async def test_authoritative_history(self, make_body):
        engine = _engine(sync={"authoritative_history": True})
        await engine.complete(make_body(("user", "hello there")), SESSION, "tok")
        result = await engine.complete(make_body(
            ("user", "hello there"), ("assistant", "whatever"), ("user", "next"),
        ), SESSION, "tok")
        assert result.authoritative
        assert result.reconcile.classification is Classification.AUTHORITATIVE_OVERRIDE
        assert result.reconcile.reset_conversation


# ---------------------------------------------------------------------------
# Concurrency, health, lifecycle
# ---------------------------------------------------------------------------


class TestEngineLifecycle:
    @pytest.mark.asyncio
    async def test_concurrent_requests_serialized(self, engine, make_body):
        a, b = await asyncio.gather(
            engine.complete(make_body(("user", "first message")), SESSION, "tok"),
            engine.complete(make_body(("user", "second message")), SESSION, "tok"),
        )
        stored = engine.turn_store.get(a.resolution.session_key)
        assert [t.content for t in stored] == ["first message", a.text, "second message", b.text]
        assert b.reconcile.classification is Classification.NO_HISTORY

    @pytest.mark.asyncio
    async def test_session_locks_released(self):
        locks = SessionLocks()
        async with locks.hold("k"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_probe(self, engine):
        assert (await engine.probe(""))["ok"] is False
        assert (await engine.probe("tok"))["ok"] is True

    @pytest.mark.asyncio
    async def test_probe_unmapped_default(self):
        engine = _engine(default_model="other", character_id="")
        result = await engine.probe("tok")
        assert result["ok"] is False
        assert "Default model" in result["reason"]

    @pytest.mark.asyncio
    async def test_stats_and_close(self, engine, fake_client, make_body):
        await engine.complete(make_body(("user", "hello there")), SESSION, "tok")
        assert engine.stats() == {"sessions": 1, "handles": 1, "active_locks": 0}
        await engine.aclose()
        assert fake_client.closed
        assert fake_client.handles[0].closed
        assert len(engine.pool) == 0

    @pytest.mark.asyncio
    async def test_stream_and_choices(self, make_body):
        engine = _engine(response={"allow_multi_choice": True, "max_choices": 3})
        result = await engine.complete(make_body(("user", "hello there"), stream=True, n=5), SESSION, "tok")
        assert result.stream
        assert result.choice_count == 3
