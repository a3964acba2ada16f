"""All dataclasses, enums, and exceptions for cai-bridge."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

VALID_ROLES = ("system", "user", "assistant")
CONVERSATION_ROLES = ("user", "assistant")


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------

@dataclass
class Turn:
    role: str  # "system", "user", "assistant"
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Turn:
        return cls(role=str(raw.get("role", "")), content=str(raw.get("content", "")))


@dataclass
class RuntimeState:
    """Whether the upstream session has completed at least one exchange."""
    bootstrapped: bool = False
    system_text: str = ""
    updated_at: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Blob reconstruction
# ---------------------------------------------------------------------------

@dataclass
class BlobMatch:
    """A transcript recovered from a single serialized message."""
    system_text: str
    turns: list[Turn]
    current_message: str = ""
    has_markers: bool = False


# ---------------------------------------------------------------------------
# Session identity
# ---------------------------------------------------------------------------

class SessionSource(str, Enum):
    EXPLICIT = "explicit"
    CONTEXT_ALIAS = "context-alias"
    IMPLICIT_CONTEXT = "implicit-context"
    ALIAS_FALLBACK = "alias-fallback"
    FALLBACK_EPHEMERAL = "fallback-ephemeral"


@dataclass
class SessionResolution:
    session_id: str
    session_key: str
    source: SessionSource
    explicit: bool = False
    fresh_start: bool = False  # short one-off request, forced onto a new id


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

class Classification(str, Enum):
    FIRST_SYNC = "first_sync"
    NO_HISTORY = "no_history"
    APPEND_ONLY = "append_only"
    REWRITE = "rewrite"
    AUTHORITATIVE_OVERRIDE = "authoritative_override"
    FORCED_FRESH = "forced_fresh"
    CONTINUATION = "continuation"


@dataclass
class ReconcileResult:
    classification: Classification
    effective_turns: list[Turn]
    reset_conversation: bool = False
    full_sync_needed: bool = False
    rewrite_requested: bool = False
    reason: str = ""  # "explicit", "tail-edit", "history-edit", "truncated"


# ---------------------------------------------------------------------------
# Upstream sync
# ---------------------------------------------------------------------------

class SyncMode(str, Enum):
    PROMPT = "prompt"
    REPLAY = "replay"

    @classmethod
    def parse(cls, value: object) -> SyncMode:
        mode = str(value or "").strip().lower()
        return cls.REPLAY if mode == "replay" else cls.PROMPT


@dataclass
class SyncOutcome:
    text: str
    mode: str  # "replay-full-sync", "prompt-full-sync", "continuation"
    replayed_user_turns: int = 0
    truncated: bool = False
    attempts: int = 1


@dataclass
class CompletionResult:
    """Everything the HTTP layer needs to answer one completion request."""
    model: str
    text: str
    resolution: SessionResolution
    reconcile: ReconcileResult
    outcome: SyncOutcome
    requested_mode: SyncMode
    authoritative: bool = False
    assume_continuation: bool = False
    choice_count: int = 1
    stream: bool = False
    elapsed_ms: float = 0.0


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BridgeError(Exception):
    """Base error carrying the OpenAI-style error envelope fields."""

    status_code: int = 500
    error_type: str = "server_error"
    code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        extra: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}

    def to_payload(self) -> dict:
        error = {"message": self.message, "type": self.error_type, "code": self.code}
        error.update(self.extra)
        return {"error": error}


class InvalidRequestError(BridgeError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"


class AuthenticationError(InvalidRequestError):
    status_code = 401
    code = "missing_api_key"


class ModelNotFoundError(InvalidRequestError):
    code = "model_not_found"


class UpstreamError(BridgeError):
    """The character service failed to connect, reset, or reply."""
    code = "upstream_error"


class UpstreamTimeoutError(UpstreamError):
    code = "upstream_timeout"


class ReplayExhaustedError(UpstreamError):
    """Replay sync found no user turns to resend. Never retried."""
    code = "replay_exhausted"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    allow_server_token: bool = False
    token: str = ""


@dataclass
class MemoryConfig:
    max_turns: int = 24
    max_content_chars: int = 8000
    max_assistant_chars: int = 0  # 0 = unlimited
    session_capacity: int = 2000
    runtime_capacity: int = 2000
    alias_capacity: int = 5000
    context_alias_capacity: int = 10_000


@dataclass
class IdentityConfig:
    alias_fallback: bool = False
    use_body_user: bool = False
    short_message_chars: int = 160
    max_session_id_chars: int = 80
    body_fields: list[str] = field(default_factory=lambda: [
        "conversation_id", "conversationId", "chat_id", "chatId",
        "session_id", "sessionId", "dialog_id", "dialogId",
        "id_chata", "id_dialoga",
    ])


@dataclass
class SyncConfig:
    mode: str = "prompt"
    authoritative_history: bool = False
    replay_authoritative_history: bool = False
    replay_include_system: bool = True
    replay_max_user_turns: int = 0  # 0 = unlimited
    replay_assume_continuation: bool = True


@dataclass
class UpstreamConfig:
    client: str = "echo"  # "echo", "relay", or "package.module:attr"
    relay_url: str = ""
    connect_timeout: float = 45.0
    request_timeout: float = 60.0
    reset_timeout: float = 5.0
    disconnect_timeout: float = 3.0
    handle_capacity: int = 256


@dataclass
class ResponseConfig:
    allow_multi_choice: bool = False
    max_choices: int = 8
    debug_sync_headers: bool = False


@dataclass
class BridgeConfig:
    version: str = "1.0"
    default_model: str = "cai-default"
    models: dict[str, str] = field(default_factory=dict)  # alias -> character id
    server: ServerConfig = field(default_factory=ServerConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    response: ResponseConfig = field(default_factory=ResponseConfig)
