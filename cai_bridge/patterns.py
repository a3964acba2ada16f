"""Label vocabularies and regex patterns for transcript-blob detection.

Kept in a standalone module so the normalizer, blob reconstructor, and
transcript builder share one vocabulary.  English and Russian labels are
listed; every label is lowercase with collapsed whitespace.
"""

import re

# "Label: content" line.  Labels are short and never contain a colon.
ROLE_LINE_RE = re.compile(r"^\s*(?:[-*]\s*)?([^:\n]{1,64})\s*:\s*(.*)$")
ROLE_LINE_MULTI_RE = re.compile(r"^\s*(?:[-*]\s*)?[^:\n]{1,64}\s*:\s*", re.MULTILINE)
NONEMPTY_ROLE_LINE_RE = re.compile(r"^\s*(?:[-*]\s*)?[^:\n]{1,64}\s*:\s*.+$", re.MULTILINE)

HISTORY_MARKERS: list[str] = [
    "conversation history",
    "chat history",
    "history",
    "история диалога",
    "история чата",
    "история",
]

CURRENT_MESSAGE_MARKERS: list[str] = [
    "current user message",
    "current user input",
    "current message",
    "user message",
    "текущее сообщение пользователя",
    "сообщение пользователя",
    "текущее сообщение",
]

HISTORY_MARKER_RES = [
    re.compile(rf"^\s*{re.escape(label)}\s*[:\-]", re.IGNORECASE | re.MULTILINE)
    for label in HISTORY_MARKERS
]
CURRENT_MESSAGE_MARKER_RES = [
    re.compile(rf"^\s*{re.escape(label)}\s*[:\-]", re.IGNORECASE | re.MULTILINE)
    for label in CURRENT_MESSAGE_MARKERS
]

ASSISTANT_LABELS = frozenset({
    "assistant", "ассистент",
    "ai", "bot", "бот", "ии",
    "character", "персонаж",
    "model", "модель",
})

USER_LABELS = frozenset({
    "user", "пользователь", "юзер",
    "human", "человек",
    "me", "я",
    "client", "клиент",
    "you",
})

SYSTEM_LABELS: list[str] = [
    "system",
    "system rule",
    "system_rule",
    "proxy policy",
    "configuration",
    "config",
    "roleplay_rule",
    "roleplay info",
    "client system prompt",
    *HISTORY_MARKERS,
    *CURRENT_MESSAGE_MARKERS,
    "система",
    "системное правило",
]

# Keywords that betray a serialized transcript even when parsing fails
TRANSCRIPT_KEYWORDS_RE = re.compile(
    r"(conversation history|chat history|current user message|current user input"
    r"|история чата|история диалога|текущее сообщение)",
    re.IGNORECASE,
)
EXPLICIT_ROLE_LINE_RE = re.compile(
    r"^\s*(?:[-*]\s*)?(assistant|user|ассистент|пользователь|юзер)\s*:\s*.+$",
    re.IGNORECASE | re.MULTILINE,
)

# Serialized {"role": ..., "content": ...} pairs inside non-JSON text
ROLE_CONTENT_PAIR_RE = re.compile(
    r'"role"\s*:\s*"((?:\\.|[^"\\])*)"\s*,\s*"content"\s*:\s*"((?:\\.|[^"\\])*)"'
)
LOOSE_OBJECT_KEY_RE = re.compile(r'"[A-Za-z0-9_]+"\s*:')

# Explicit edit/regenerate signals carried on the request body
REWRITE_FLAG_FIELDS: tuple[str, ...] = (
    "regenerate", "is_regenerate", "isRegenerate", "is_regen", "isRegen",
    "rewrite", "is_rewrite", "isRewrite",
    "edited", "is_edited", "isEdited",
    "deleted", "is_deleted", "isDeleted",
    "replace_last", "replaceLast",
)
REWRITE_TEXT_FIELDS: tuple[str, ...] = ("action", "operation", "event", "mode")
REWRITE_TEXT_RE = re.compile(r"(regen|regenerate|rewrite|edit|delete|remove)")
