"""Response post-processing: clamp the reply and commit the exchange."""

from __future__ import annotations

import logging

from ..types import RuntimeState, Turn
from .store import KeyValueStore, TurnStore, clamp_text

logger = logging.getLogger(__name__)


def clamp_reply(text: str, max_chars: int) -> str:
    """Trim the reply; ``max_chars`` of 0 means unlimited."""
    return clamp_text(text or "", max_chars)


def get_runtime_state(runtime_store: KeyValueStore, session_key: str) -> RuntimeState:
    state = runtime_store.get(session_key)
    return state if isinstance(state, RuntimeState) else RuntimeState()


def commit_exchange(
    turn_store: TurnStore,
    runtime_store: KeyValueStore,
    session_key: str,
    effective_turns: list[Turn],
    reply: str,
    system_text: str,
) -> list[Turn]:
    """Persist ``effective_turns`` plus the reply and mark the session bootstrapped.

    Only called once the upstream has answered.  An empty reply stores the
    effective turns without an assistant turn.
    """
    turns = list(effective_turns)
    if reply:
        turns.append(Turn(role="assistant", content=reply))
    stored = turn_store.replace(session_key, turns)
    runtime_store.set(session_key, RuntimeState(bootstrapped=True, system_text=system_text))
    logger.debug("Committed %d turns for %s", len(stored), session_key)
    return stored
