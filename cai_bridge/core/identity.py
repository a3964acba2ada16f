"""Session identity resolution.

A request maps to an upstream character session through a session key
``"{credential fp}::{model}::{session id}"``.  The session id comes from, in
order: an explicit id on the request, the context-fingerprint alias cache, an
implicit id hashed from the opening context, the credential/model alias
(opt-in), or a fresh ephemeral id.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import time
from collections.abc import Mapping
from typing import Any

from ..types import IdentityConfig, SessionResolution, SessionSource, Turn
from .store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_MODEL_PART = "default-model"
DEFAULT_SESSION_PART = "default-session"
SESSION_HEADERS = ("x-session-id", "x-conversation-id")

_WS_RE = re.compile(r"\s+")


def _sha1(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def credential_fingerprint(credential: str) -> str:
    return _sha1(str(credential or ""))[:12]


def _model_part(model: str) -> str:
    return model.strip() if isinstance(model, str) and model.strip() else DEFAULT_MODEL_PART


def make_session_key(credential: str, model: str, session_id: str) -> str:
    session = (
        session_id.strip()
        if isinstance(session_id, str) and session_id.strip()
        else DEFAULT_SESSION_PART
    )
    return f"{credential_fingerprint(credential)}::{_model_part(model)}::{session}"


def make_alias_key(credential: str, model: str) -> str:
    return f"{credential_fingerprint(credential)}::{_model_part(model)}"


def normalize_hash_text(value: str, max_length: int) -> str:
    """Collapse whitespace and cut to *max_length* chars."""
    text = _WS_RE.sub(" ", value or "").strip()
    return text[:max_length] if max_length else text


def make_context_alias_key(
    credential: str, model: str, system_text: str, first_user: str,
) -> str:
    signature = (
        f"{normalize_hash_text(system_text, 800)}\n---\n"
        f"{normalize_hash_text(first_user, 700)}"
    )
    return f"{make_alias_key(credential, model)}::ctx-{_sha1(signature)[:16]}"


def implicit_session_id(system_text: str, first_user: str) -> str:
    parts = [
        normalize_hash_text(system_text, 1500),
        normalize_hash_text(first_user, 900),
    ]
    signature = "\n---\n".join(p for p in parts if p)
    if not signature:
        return ""
    return f"auto-{_sha1(signature)[:16]}"


def ephemeral_session_id() -> str:
    seed = f"{time.time_ns()}-{os.urandom(8).hex()}"
    return f"auto-{_sha1(seed)[:16]}"


def first_user_content(turns: list[Turn], fallback: str = "") -> str:
    for turn in turns:
        if turn.role == "user" and turn.content.strip():
            return turn.content.strip()
    return fallback.strip()


def has_implicit_context(system_text: str, turns: list[Turn]) -> bool:
    """True when the opening context is specific enough to hash."""
    if system_text.strip():
        return True
    if any(t.role == "assistant" for t in turns):
        return True
    return len(turns) > 1


def _header_value(headers: Mapping[str, Any], name: str) -> str:
    value = headers.get(name)
    if isinstance(value, (list, tuple)):
        value = next((v for v in value if isinstance(v, str) and v.strip()), "")
    return value.strip() if isinstance(value, str) else ""


class SessionResolver:
    """Resolves a session id for each request, remembering alias mappings."""

    def __init__(
        self,
        config: IdentityConfig,
        context_aliases: KeyValueStore,
        aliases: KeyValueStore,
    ) -> None:
        self.config = config
        self.context_aliases = context_aliases
        self.aliases = aliases

    def explicit_session_id(self, headers: Mapping[str, Any], body: Mapping[str, Any]) -> str:
        """Return the caller-supplied session id, or ``""``."""
        lowered = {str(k).lower(): v for k, v in headers.items()}
        candidates = [_header_value(lowered, name) for name in SESSION_HEADERS]
        fields = list(self.config.body_fields)
        if self.config.use_body_user:
            fields.append("user")
        for name in fields:
            value = body.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                value = str(value)
            candidates.append(value.strip() if isinstance(value, str) else "")

        for value in candidates:
            if value:
                return value[: self.config.max_session_id_chars]
        return ""

    def is_short_history(
        self, explicit_id: str, system_text: str, turns: list[Turn],
    ) -> bool:
        if explicit_id or system_text.strip():
            return False
        if any(t.role == "assistant" for t in turns):
            return False
        users = [t for t in turns if t.role == "user"]
        if len(users) != 1:
            return False
        return len(users[0].content) <= self.config.short_message_chars

    def resolve(
        self,
        *,
        credential: str,
        model: str,
        headers: Mapping[str, Any],
        body: Mapping[str, Any],
        system_text: str,
        turns: list[Turn],
        live_message: str = "",
    ) -> SessionResolution:
        explicit_id = self.explicit_session_id(headers, body)
        first_user = first_user_content(turns, live_message)
        fresh_start = self.is_short_history(explicit_id, system_text, turns)

        context_key = ""
        if system_text.strip() or first_user:
            context_key = make_context_alias_key(credential, model, system_text, first_user)
        alias_key = make_alias_key(credential, model)

        session_id = ""
        source = SessionSource.FALLBACK_EPHEMERAL

        if explicit_id:
            session_id, source = explicit_id, SessionSource.EXPLICIT

        if not session_id and context_key and not fresh_start:
            mapped = self.context_aliases.get(context_key)
            if isinstance(mapped, str) and mapped.strip():
                session_id, source = mapped.strip(), SessionSource.CONTEXT_ALIAS

        if not session_id and has_implicit_context(system_text, turns):
            derived = implicit_session_id(system_text, first_user)
            if derived:
                session_id, source = derived, SessionSource.IMPLICIT_CONTEXT

        if not session_id and self.config.alias_fallback and not fresh_start:
            remembered = self.aliases.get(alias_key)
            if isinstance(remembered, str) and remembered.strip():
                session_id, source = remembered.strip(), SessionSource.ALIAS_FALLBACK

        if not session_id:
            session_id, source = ephemeral_session_id(), SessionSource.FALLBACK_EPHEMERAL

        if context_key:
            self.context_aliases.set(context_key, session_id)
        if self.config.alias_fallback:
            self.aliases.set(alias_key, session_id)

        resolution = SessionResolution(
            session_id=session_id,
            session_key=make_session_key(credential, model, session_id),
            source=source,
            explicit=bool(explicit_id),
            fresh_start=fresh_start,
        )
        logger.info(
            "Session resolved: id=%s source=%s fresh=%s",
            session_id[:12], source.value, fresh_start,
        )
        return resolution
