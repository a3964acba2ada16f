"""Message normalizer: coerce arbitrary client payloads into ordered turns.

Clients send ``messages`` as a proper list, as a JSON string (sometimes
encoded twice), as a single message object, or as a numeric-keyed object.
Everything funnels into ``normalize_messages()``, which returns a list of
``Turn`` restricted to system/user/assistant with non-empty content and then
hands the list to the blob reconstructor.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ..patterns import LOOSE_OBJECT_KEY_RE, ROLE_CONTENT_PAIR_RE
from ..types import CONVERSATION_ROLES, VALID_ROLES, InvalidRequestError, Turn
from .blob import rebuild_from_blob, sanitize_serialized_user_message

logger = logging.getLogger(__name__)

MAX_JSON_DEPTH = 4

_UNPARSED = object()


# ---------------------------------------------------------------------------
# JSON unwrapping
# ---------------------------------------------------------------------------

def parse_nested_json(value: Any, max_depth: int = MAX_JSON_DEPTH) -> Any:
    """Unwrap a value that may be JSON encoded up to *max_depth* times.

    Returns the first non-string result.  An empty string decodes to ``{}``.
    When the very first decode fails the sentinel ``_UNPARSED`` is returned;
    a later failure returns the last successfully decoded string.
    """
    current = value
    for depth in range(max_depth):
        if not isinstance(current, str):
            return current
        trimmed = current.strip()
        if not trimmed:
            return {}
        try:
            current = json.loads(trimmed)
        except json.JSONDecodeError:
            return _UNPARSED if depth == 0 else current
    return current


def parse_loose_object(raw: str) -> dict | None:
    """Parse an object body that lost its outer braces.

    ``"model": "x", "messages": [...]`` is accepted; anything that already
    looks like JSON (leading ``{``/``[``) or has no quoted keys is not.
    """
    trimmed = raw.strip()
    if not trimmed:
        return {}
    if trimmed.startswith(("{", "[")):
        return None
    if not LOOSE_OBJECT_KEY_RE.search(trimmed):
        return None

    attempts = [trimmed]
    if '\\"' in trimmed:
        attempts.append(trimmed.replace('\\"', '"'))
    for candidate in attempts:
        try:
            parsed = json.loads("{" + candidate + "}")
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def parse_request_body(body: Any) -> dict:
    """Decode a request body into a dict or raise ``InvalidRequestError``."""
    if body is None:
        return {}
    if isinstance(body, (bytes, bytearray)):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidRequestError("Invalid JSON body", code="invalid_json") from e
    if isinstance(body, dict):
        return body
    if isinstance(body, str):
        parsed = parse_nested_json(body)
        if isinstance(parsed, dict):
            return parsed
        if isinstance(parsed, str) or parsed is _UNPARSED:
            loose = parse_loose_object(parsed if isinstance(parsed, str) else body)
            if loose is not None:
                return loose
    raise InvalidRequestError("Invalid JSON body", code="invalid_json")


# ---------------------------------------------------------------------------
# Content flattening
# ---------------------------------------------------------------------------

def flatten_content(content: Any) -> str:
    """Return message text; list content keeps only ``type: "text"`` parts."""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
            and isinstance(part.get("text"), str) and part.get("text")
        ]
        return "\n".join(parts).strip()
    return ""


def _decode_escaped(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return (
            value.replace("\\n", "\n")
            .replace("\\r", "\r")
            .replace("\\t", "\t")
            .replace('\\"', '"')
            .replace("\\\\", "\\")
        )


def extract_role_content_pairs(raw: str) -> list[Turn]:
    """Mine ``"role": "...", "content": "..."`` pairs out of arbitrary text."""
    if not raw or not raw.strip():
        return []

    inputs = [raw]
    if '\\"role\\"' in raw:
        inputs.append(raw.replace('\\"', '"'))

    for text in inputs:
        turns: list[Turn] = []
        for match in ROLE_CONTENT_PAIR_RE.finditer(text):
            role = _decode_escaped(match.group(1)).strip().lower()
            content = _decode_escaped(match.group(2)).strip()
            if role in VALID_ROLES and content:
                turns.append(Turn(role=role, content=content))
        if turns:
            return turns
    return []


# ---------------------------------------------------------------------------
# Shape coercion
# ---------------------------------------------------------------------------

def coerce_messages(messages: Any) -> list:
    """Coerce any accepted ``messages`` shape into a list of raw items.

    Raises ``InvalidRequestError`` for input that cannot be interpreted.
    """
    if messages is None:
        return []
    if isinstance(messages, list):
        return messages

    if isinstance(messages, str):
        nested = parse_nested_json(messages)
        if nested is not _UNPARSED and nested != messages:
            if isinstance(nested, dict) and "messages" in nested:
                return coerce_messages(nested["messages"])
            if not isinstance(nested, str):
                return coerce_messages(nested)
        pairs = extract_role_content_pairs(messages)
        if pairs:
            return [turn.to_dict() for turn in pairs]
        raise InvalidRequestError("Could not parse messages", code="invalid_messages")

    if isinstance(messages, dict):
        if isinstance(messages.get("messages"), list):
            return messages["messages"]
        if isinstance(messages.get("role"), str) and "content" in messages:
            return [messages]
        numeric_keys = sorted((k for k in messages if str(k).isdecimal()), key=int)
        if numeric_keys:
            return [messages[k] for k in numeric_keys if messages[k]]
        if not messages:
            return []

    raise InvalidRequestError("Could not parse messages", code="invalid_messages")


def _to_turns(items: list) -> list[Turn]:
    turns: list[Turn] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = flatten_content(item.get("content"))
        if role in VALID_ROLES and content:
            turns.append(Turn(role=role, content=content))
    return turns


def normalize_messages(messages: Any) -> list[Turn]:
    """Normalize a raw ``messages`` value into canonical turns.

    A last user message that carries a whole serialized conversation is
    expanded into structured turns; failing that, only its current-message
    segment is kept.
    """
    turns = _to_turns(coerce_messages(messages))
    if not turns:
        return []

    rebuilt = rebuild_from_blob(turns)
    if rebuilt is not None:
        logger.info(
            "Rebuilt %d turns from serialized transcript blob", len(rebuilt),
        )
        return rebuilt
    return sanitize_serialized_user_message(turns)


# ---------------------------------------------------------------------------
# Turn-list helpers
# ---------------------------------------------------------------------------

def last_user_message(turns: list[Turn]) -> str:
    for turn in reversed(turns):
        if turn.role == "user":
            return turn.content
    return ""


def split_system(turns: list[Turn]) -> tuple[str, list[Turn]]:
    """Separate system text (joined by blank lines) from conversation turns."""
    systems = [t.content for t in turns if t.role == "system" and t.content]
    conversation = [
        Turn(role=t.role, content=t.content)
        for t in turns
        if t.role in CONVERSATION_ROLES and t.content
    ]
    return "\n\n".join(systems).strip(), conversation


def ensure_trailing_user(turns: list[Turn], live_message: str) -> list[Turn]:
    """Return conversation turns guaranteed to end with the live user message."""
    conversation = [t for t in turns if t.role in CONVERSATION_ROLES and t.content]
    if not live_message:
        return conversation
    if conversation and conversation[-1].role == "user" and conversation[-1].content == live_message:
        return conversation
    return conversation + [Turn(role="user", content=live_message)]
