"""Reconciliation engine: decide how incoming history relates to stored history.

``reconcile()`` is pure.  It classifies the request, picks the turns that
should become the stored log once the upstream replies, and says whether the
upstream session must be reset and/or fully resynchronised.  The caller
commits ``effective_turns`` only after a confirmed reply.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ..patterns import REWRITE_FLAG_FIELDS, REWRITE_TEXT_FIELDS, REWRITE_TEXT_RE
from ..types import Classification, ReconcileResult, Turn

logger = logging.getLogger(__name__)


def _same(a: Turn, b: Turn) -> bool:
    return a.role == b.role and a.content == b.content


def common_prefix_length(previous: list[Turn], incoming: list[Turn]) -> int:
    matched = 0
    for prev, nxt in zip(previous, incoming):
        if not _same(prev, nxt):
            break
        matched += 1
    return matched


def is_append_only(previous: list[Turn], incoming: list[Turn]) -> bool:
    """True when *previous* is a byte-identical prefix of *incoming*."""
    if len(incoming) < len(previous):
        return False
    return common_prefix_length(previous, incoming) == len(previous)


def is_windowed_extension(previous: list[Turn], incoming: list[Turn]) -> bool:
    """True when a capped stored log appears intact inside *incoming*.

    Once the stored log hits its turn cap the oldest turns are gone, so the
    log lines up with a later slice of the client's full history.
    """
    size = len(previous)
    if not size or len(incoming) <= size:
        return False
    for offset in range(1, len(incoming) - size + 1):
        if all(_same(p, n) for p, n in zip(previous, incoming[offset:offset + size])):
            return True
    return False


def has_explicit_rewrite_signal(body: Mapping[str, Any] | None) -> bool:
    """True when the request body flags a regenerate/edit/delete action."""
    if not isinstance(body, Mapping):
        return False
    if any(body.get(key) is True for key in REWRITE_FLAG_FIELDS):
        return True
    for key in REWRITE_TEXT_FIELDS:
        value = body.get(key)
        if isinstance(value, str) and REWRITE_TEXT_RE.search(value.strip().lower()):
            return True
    return False


def count_role(turns: list[Turn], role: str) -> int:
    return sum(1 for t in turns if t.role == role)


def looks_like_continuation(
    previous: list[Turn], incoming: list[Turn], live_message: str,
) -> bool:
    """Divergent history that still reads as "the user said one more thing".

    Typical of clients that send a sliding window or lightly reformat older
    turns: the stored log ended on an assistant reply, the new list ends on
    the live message, and the user side grew.
    """
    live = live_message.strip()
    if not previous or not incoming or not live:
        return False
    if previous[-1].role != "assistant":
        return False
    if incoming[-1].role != "user" or incoming[-1].content != live:
        return False

    prev_users, next_users = count_role(previous, "user"), count_role(incoming, "user")
    prev_assistants = count_role(previous, "assistant")
    next_assistants = count_role(incoming, "assistant")

    if next_users >= prev_users + 1 and next_assistants >= prev_assistants:
        return True
    return next_users > prev_users and len(incoming) >= len(previous)


def divergence_reason(previous: list[Turn], incoming: list[Turn]) -> str:
    prefix = common_prefix_length(previous, incoming)
    if prefix == len(incoming) and len(incoming) < len(previous):
        return "truncated"
    if prefix >= min(len(previous), len(incoming)) - 2:
        return "tail-edit"
    return "history-edit"


def _append_live(previous: list[Turn], live_message: str) -> list[Turn]:
    turns = [Turn(role=t.role, content=t.content) for t in previous]
    if not live_message:
        return turns
    if turns and turns[-1].role == "user" and turns[-1].content == live_message:
        return turns
    return turns + [Turn(role="user", content=live_message)]


def reconcile(
    previous: list[Turn],
    incoming: list[Turn],
    live_message: str,
    *,
    body: Mapping[str, Any] | None = None,
    bootstrapped: bool = False,
    authoritative: bool = False,
    force_fresh: bool = False,
    assume_continuation: bool = False,
    history_cap: int = 0,
) -> ReconcileResult:
    """Classify one request against the stored turn log.

    Args:
        previous: Stored user/assistant turns for the session.
        incoming: Normalized user/assistant turns, ending with the live message.
        live_message: The user message this request is answering.
        body: Raw request body, checked for explicit rewrite flags.
        bootstrapped: The upstream session already completed an exchange.
        authoritative: Treat multi-turn incoming history as the truth.
        force_fresh: Short one-off request; start the upstream over.
        assume_continuation: Skip the first full sync (replay shortcut).
        history_cap: Stored-log turn cap; enables windowed append detection.
    """
    baseline_full_sync = not bootstrapped and not assume_continuation
    incoming = [Turn(role=t.role, content=t.content) for t in incoming]

    if force_fresh and previous:
        return ReconcileResult(
            classification=Classification.FORCED_FRESH,
            effective_turns=incoming or _append_live([], live_message),
            reset_conversation=True,
            full_sync_needed=True,
        )

    if not previous:
        return ReconcileResult(
            classification=Classification.FIRST_SYNC,
            effective_turns=incoming or _append_live([], live_message),
            reset_conversation=force_fresh,
            full_sync_needed=baseline_full_sync or force_fresh,
        )

    if len(incoming) <= 1:
        return ReconcileResult(
            classification=Classification.NO_HISTORY,
            effective_turns=_append_live(previous, live_message),
            full_sync_needed=baseline_full_sync,
        )

    explicit = has_explicit_rewrite_signal(body)
    append_only = is_append_only(previous, incoming) or (
        history_cap > 0
        and len(previous) >= history_cap
        and is_windowed_extension(previous, incoming)
    )
    continuation = looks_like_continuation(previous, incoming, live_message)
    heuristic = not append_only and not continuation
    rewrite_requested = explicit or heuristic

    if authoritative and len(incoming) >= 2:
        return ReconcileResult(
            classification=Classification.AUTHORITATIVE_OVERRIDE,
            effective_turns=incoming,
            reset_conversation=bootstrapped,
            full_sync_needed=True,
            rewrite_requested=rewrite_requested,
        )

    if append_only:
        return ReconcileResult(
            classification=Classification.APPEND_ONLY,
            effective_turns=incoming,
            full_sync_needed=baseline_full_sync,
            rewrite_requested=rewrite_requested,
        )

    if rewrite_requested:
        reason = "explicit" if explicit else divergence_reason(previous, incoming)
        logger.info("History rewrite detected (%s)", reason)
        return ReconcileResult(
            classification=Classification.REWRITE,
            effective_turns=incoming,
            reset_conversation=True,
            full_sync_needed=True,
            rewrite_requested=True,
            reason=reason,
        )

    return ReconcileResult(
        classification=Classification.CONTINUATION,
        effective_turns=_append_live(previous, live_message),
        full_sync_needed=baseline_full_sync,
    )
