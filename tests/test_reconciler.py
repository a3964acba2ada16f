"""Tests for cai_bridge.core.reconciler."""

from __future__ import annotations

import pytest

from cai_bridge.core.reconciler import (
    common_prefix_length,
    divergence_reason,
    has_explicit_rewrite_signal,
    is_append_only,
    is_windowed_extension,
    looks_like_continuation,
    reconcile,
)
from cai_bridge.types import Classification, Turn


def u(text: str) -> Turn:
    return Turn("user", text)


def a(text: str) -> Turn:
    return Turn("assistant", text)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestPrefixHelpers:
    def test_common_prefix(self):
        assert common_prefix_length([u("1"), a("2")], [u("1"), a("x")]) == 1
        assert common_prefix_length([], [u("1")]) == 0

    def test_role_matters(self):
        assert common_prefix_length([u("1")], [a("1")]) == 0

    def test_append_only(self):
        assert is_append_only([u("1"), a("2")], [u("1"), a("2"), u("3")])
        assert is_append_only([], [u("1")])
        assert not is_append_only([u("1"), a("2")], [u("1")])
        assert not is_append_only([u("1"), a("2")], [u("1"), a("2 "), u("3")])

    def test_windowed_extension(self):
        stored = [u("2"), a("2"), u("3"), a("3")]
        incoming = [u("1"), a("1"), u("2"), a("2"), u("3"), a("3"), u("4")]
        assert is_windowed_extension(stored, incoming)
        assert not is_windowed_extension(stored, stored + [u("4")])  # offset 0 is plain append
        assert not is_windowed_extension(stored, [u("1"), a("1"), u("2"), a("X"), u("3")])
        assert not is_windowed_extension([], incoming)


class TestRewriteSignal:
    @pytest.mark.parametrize("body", [
        {"regenerate": True},
        {"isRegen": True},
        {"edited": True},
        {"action": "Regenerate"},
        {"operation": "delete_message"},
        {"event": "edit"},
    ])
    def test_detected(self, body):
        assert has_explicit_rewrite_signal(body)

    @pytest.mark.parametrize("body", [
        None,
        {},
        {"regenerate": "yes"},
        {"mode": "chat"},
        {"action": 3},
    ])
    def test_absent(self, body):
        assert not has_explicit_rewrite_signal(body)


class TestContinuationHeuristic:
    def test_user_side_grew(self):
        previous = [u("1"), a("1")]
        incoming = [u("1 reformatted"), a("1"), u("2")]
        assert looks_like_continuation(previous, incoming, "2")

    def test_stored_ends_on_user(self):
        assert not looks_like_continuation([u("1")], [u("x"), a("y"), u("2")], "2")

    def test_live_must_end_incoming(self):
        assert not looks_like_continuation([u("1"), a("1")], [u("x"), a("y"), u("2")], "3")

    def test_same_user_count(self):
        assert not looks_like_continuation(
            [u("1"), a("1"), u("2"), a("2")], [u("1"), a("X"), u("2")], "2",
        )


class TestDivergenceReason:
    def test_truncated(self):
        previous = [u("1"), a("1"), u("2"), a("2")]
        assert divergence_reason(previous, [u("1"), a("1"), u("2")]) == "truncated"

    def test_tail_edit(self):
        previous = [u("1"), a("1"), u("2"), a("2")]
        assert divergence_reason(previous, [u("1"), a("1"), u("2 edited")]) == "tail-edit"

    def test_history_edit(self):
        previous = [u("1"), a("1"), u("2"), a("2"), u("3"), a("3")]
        incoming = [u("1"), a("X"), u("2"), a("2"), u("3")]
        assert divergence_reason(previous, incoming) == "history-edit"


# ---------------------------------------------------------------------------
# reconcile()
# ---------------------------------------------------------------------------


class TestReconcile:
    def test_first_sync(self):
        result = reconcile([], [u("hello there")], "hello there")
        assert result.classification is Classification.FIRST_SYNC
        assert result.full_sync_needed
        assert not result.reset_conversation
        assert result.effective_turns == [u("hello there")]

    def test_first_sync_short_message_resets(self):
        result = reconcile([], [u("Hi")], "Hi", force_fresh=True)
        assert result.classification is Classification.FIRST_SYNC
        assert result.reset_conversation
        assert result.full_sync_needed

    def test_first_sync_assume_continuation(self):
        result = reconcile([], [u("1"), a("1"), u("2")], "2", assume_continuation=True)
        assert result.classification is Classification.FIRST_SYNC
        assert not result.full_sync_needed

    def test_forced_fresh(self):
        result = reconcile([u("old"), a("reply")], [u("Hi")], "Hi", bootstrapped=True, force_fresh=True)
        assert result.classification is Classification.FORCED_FRESH
        assert result.reset_conversation
        assert result.full_sync_needed
        assert result.effective_turns == [u("Hi")]

    def test_no_history_appends_live(self):
        previous = [u("1"), a("1")]
        result = reconcile(previous, [u("2")], "2", bootstrapped=True)
        assert result.classification is Classification.NO_HISTORY
        assert result.effective_turns == [u("1"), a("1"), u("2")]
        assert not result.reset_conversation
        assert not result.full_sync_needed

    def test_no_history_skips_repeated_live_message(self):
        previous = [u("1"), a("1"), u("2")]
        result = reconcile(previous, [u("2")], "2", bootstrapped=True)
        assert result.classification is Classification.NO_HISTORY
        assert result.effective_turns == previous

    def test_no_history_repeats_after_reply(self):
        previous = [u("2"), a("ok")]
        result = reconcile(previous, [u("2")], "2", bootstrapped=True)
        assert result.effective_turns == [u("2"), a("ok"), u("2")]

    def test_no_history_before_bootstrap_syncs(self):
        result = reconcile([u("1"), a("1")], [u("2")], "2", bootstrapped=False)
        assert result.full_sync_needed

    def test_append_only(self):
        previous = [u("1"), a("1")]
        incoming = [u("1"), a("1"), u("2")]
        result = reconcile(previous, incoming, "2", bootstrapped=True)
        assert result.classification is Classification.APPEND_ONLY
        assert not result.reset_conversation
        assert not result.full_sync_needed
        assert not result.rewrite_requested
        assert result.effective_turns == incoming

    def test_append_only_with_rewrite_flag_stays_append(self):
        previous = [u("1"), a("1")]
        incoming = [u("1"), a("1"), u("2")]
        result = reconcile(previous, incoming, "2", body={"regenerate": True}, bootstrapped=True)
        assert result.classification is Classification.APPEND_ONLY
        assert result.rewrite_requested
        assert not result.reset_conversation

    @pytest.mark.regression("SYNC-001")
    def test_middle_edit_rewrites(self):
        previous = [u("a"), a("b"), u("c")]
        incoming = [u("a"), a("X"), u("c")]
        result = reconcile(previous, incoming, "c", bootstrapped=True)
        assert result.classification is Classification.REWRITE
        assert result.reset_conversation
        assert result.full_sync_needed
        assert result.rewrite_requested
        assert result.effective_turns == incoming

    def test_regenerate_truncates(self):
        previous = [u("1"), a("1"), u("2"), a("2")]
        incoming = [u("1"), a("1"), u("2")]
        result = reconcile(previous, incoming, "2", bootstrapped=True)
        assert result.classification is Classification.REWRITE
        assert result.reason == "truncated"

    def test_explicit_reason(self):
        previous = [u("1"), a("1"), u("2"), a("2")]
        incoming = [u("1"), a("1"), u("2")]
        result = reconcile(previous, incoming, "2", body={"action": "regenerate"}, bootstrapped=True)
        assert result.reason == "explicit"

    def test_continuation_keeps_stored_log(self):
        previous = [u("1"), a("1")]
        incoming = [u("1 reformatted"), a("1"), u("2")]
        result = reconcile(previous, incoming, "2", bootstrapped=True)
        assert result.classification is Classification.CONTINUATION
        assert result.effective_turns == [u("1"), a("1"), u("2")]
        assert not result.reset_conversation
        assert not result.rewrite_requested

    def test_continuation_appends_live_once(self):
        previous = [u("1"), a("1"), u("2"), a("2")]
        incoming = [u("1 edited"), a("1"), u("2 edited"), a("2"), u("3")]
        result = reconcile(previous, incoming, "3", bootstrapped=True)
        assert result.classification is Classification.CONTINUATION
        assert result.effective_turns == previous + [u("3")]
        again = reconcile(result.effective_turns, [u("3")], "3", bootstrapped=True)
        assert len(again.effective_turns) == len(result.effective_turns)

    def test_authoritative_override(self):
        previous = [u("1"), a("1")]
        incoming = [u("1"), a("1"), u("2")]
        result = reconcile(previous, incoming, "2", bootstrapped=True, authoritative=True)
        assert result.classification is Classification.AUTHORITATIVE_OVERRIDE
        assert result.reset_conversation
        assert result.full_sync_needed
        assert result.effective_turns == incoming

    def test_authoritative_before_bootstrap_no_reset(self):
        result = reconcile([u("1"), a("1")], [u("1"), a("1"), u("2")], "2", authoritative=True)
        assert not result.reset_conversation
        assert result.full_sync_needed

    @pytest.mark.regression("SYNC-002")
    def test_capped_log_window_is_append_only(self):
        stored = [u("2"), a("2"), u("3"), a("3")]
        incoming = [u("1"), a("1"), u("2"), a("2"), u("3"), a("3"), u("4")]
        result = reconcile(stored, incoming, "4", bootstrapped=True, history_cap=4)
        assert result.classification is Classification.APPEND_ONLY
        assert not result.reset_conversation

    def test_window_ignored_below_cap(self):
        stored = [u("2"), a("2"), u("3"), a("3")]
        incoming = [u("1"), a("1"), u("2"), a("2"), u("3"), a("3"), u("4")]
        result = reconcile(stored, incoming, "4", bootstrapped=True, history_cap=10)
        assert result.classification is not Classification.APPEND_ONLY

    def test_inputs_not_mutated(self):
        previous = [u("1"), a("1")]
        incoming = [u("1"), a("1"), u("2")]
        result = reconcile(previous, incoming, "2")
        result.effective_turns[0].content = "changed"
        assert incoming[0].content == "1"
        assert previous == [u("1"), a("1")]
