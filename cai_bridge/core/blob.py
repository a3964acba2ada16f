"""Blob reconstructor: recover structured turns from a serialized transcript.

Some chat front-ends flatten the whole conversation into the final user
message::

    You are Bob.

    Conversation history:
    User: hi
    Assistant: hello
    Current user message:
    how are you

``parse_blob()`` runs a pure pipeline (detect markers → split sections →
classify each ``label: content`` line → rebuild) and returns a ``BlobMatch``
or ``None``.  Nothing here raises on ambiguous input; when in doubt the
caller keeps the incoming message list.

Role classification precedence for a label line:

1. explicit role tokens and their localized synonyms
2. the per-blob label memo (a label resolves the same way every time)
3. system-like labels (banners, policy headers) are dropped
4. content equal to the current message → user
5. alternating speakers: after user → assistant, otherwise → user
"""

from __future__ import annotations

import re

from ..patterns import (
    ASSISTANT_LABELS,
    CURRENT_MESSAGE_MARKER_RES,
    CURRENT_MESSAGE_MARKERS,
    EXPLICIT_ROLE_LINE_RE,
    HISTORY_MARKER_RES,
    HISTORY_MARKERS,
    NONEMPTY_ROLE_LINE_RE,
    ROLE_LINE_MULTI_RE,
    ROLE_LINE_RE,
    SYSTEM_LABELS,
    TRANSCRIPT_KEYWORDS_RE,
    USER_LABELS,
)
from ..types import BlobMatch, Turn

_WS_RE = re.compile(r"\s+")
_TRAILING_SEP_RE = re.compile(r"\s*[:\-]\s*$")
_LABEL_EDGE_RE = re.compile(r"^['\"`(\[{<\s]+|['\"`)\]}>]+$")

_GENERIC_LINES_MIN = 2
_LOOSE_LINES_MIN = 4
_LOOSE_CHARS_MIN = 200


def _marker_line_re(label: str) -> re.Pattern[str]:
    words = r"\s+".join(re.escape(w) for w in label.split())
    return re.compile(rf"^\s*(?:[-*]\s*)?{words}\s*(?:[:\-]\s*(.*))?$", re.IGNORECASE)


_HISTORY_LINE_RES = [_marker_line_re(label) for label in HISTORY_MARKERS]
_CURRENT_LINE_RES = [_marker_line_re(label) for label in CURRENT_MESSAGE_MARKERS]


# ---------------------------------------------------------------------------
# Label normalization
# ---------------------------------------------------------------------------

def normalize_label(value: str) -> str:
    """Lowercase, collapse whitespace, drop a trailing ``:``/``-``."""
    text = _WS_RE.sub(" ", str(value or "").strip().lower())
    return _TRAILING_SEP_RE.sub("", text)


def normalize_role_label(value: str) -> str:
    """``normalize_label`` plus stripping of wrapping quotes and brackets."""
    return _LABEL_EDGE_RE.sub("", normalize_label(value)).strip()


def role_token(label: str) -> str:
    """Map an explicit role label (or synonym) to ``user``/``assistant``."""
    role = normalize_role_label(label)
    if role in ASSISTANT_LABELS:
        return "assistant"
    if role in USER_LABELS:
        return "user"
    return ""


def is_system_like_label(label: str) -> bool:
    normalized = normalize_role_label(label)
    if not normalized:
        return False
    return any(
        normalized == item or normalized.startswith(item + " ")
        for item in SYSTEM_LABELS
    )


def _match_marker_line(line: str, patterns: list[re.Pattern[str]]) -> str | None:
    """Return the inline remainder of a marker line, or None if not a marker."""
    for pattern in patterns:
        m = pattern.match(line)
        if m:
            return (m.group(1) or "").strip()
    return None


def _find_marker(content: str, patterns: list[re.Pattern[str]]) -> bool:
    return any(p.search(content) for p in patterns)


# ---------------------------------------------------------------------------
# Role inference
# ---------------------------------------------------------------------------

class RoleInferrer:
    """Classifies speaker labels within one blob, memoising each decision."""

    def __init__(self, current_message: str = "") -> None:
        self.current_message = current_message.strip()
        self.memo: dict[str, str] = {}
        self.last_role = ""

    def infer(self, raw_label: str, content: str) -> str:
        """Return ``user``/``assistant``, or ``""`` for non-turn labels."""
        label = normalize_role_label(raw_label)
        if not label:
            return ""

        explicit = role_token(label)
        if explicit:
            self.memo[label] = explicit
            return explicit

        if label in self.memo:
            return self.memo[label]

        if is_system_like_label(label):
            return ""

        text = content.strip()
        if self.current_message and text and text == self.current_message:
            role = "user"
        elif self.last_role == "user":
            role = "assistant"
        else:
            role = "user"
        self.memo[label] = role
        return role

    def observe(self, role: str) -> None:
        if role:
            self.last_role = role


def parse_history_turns(section: str, current_message: str = "") -> list[Turn]:
    """Split a history section into turns; unlabeled lines continue the last turn."""
    if not section or not section.strip():
        return []

    turns: list[Turn] = []
    inferrer = RoleInferrer(current_message)

    for line in section.splitlines():
        m = ROLE_LINE_RE.match(line)
        if m:
            raw_label, content = m.group(1), m.group(2).strip()
            role = inferrer.infer(raw_label, content)
            if role:
                turns.append(Turn(role=role, content=content))
                inferrer.observe(role)
                continue
            if is_system_like_label(raw_label):
                continue

        continuation = line.rstrip()
        if turns and continuation:
            last = turns[-1]
            last.content = f"{last.content}\n{continuation}" if last.content else continuation

    return [t for t in turns if t.content]


def _first_role_line(lines: list[str], current_message: str) -> int:
    for i, line in enumerate(lines):
        m = ROLE_LINE_RE.match(line)
        if not m or is_system_like_label(m.group(1)):
            continue
        if RoleInferrer(current_message).infer(m.group(1), m.group(2)):
            return i
    return -1


# ---------------------------------------------------------------------------
# Blob parsing
# ---------------------------------------------------------------------------

def parse_blob(content: str) -> BlobMatch | None:
    """Parse a serialized conversation out of a single message body."""
    if not content or not content.strip():
        return None

    has_history = _find_marker(content, HISTORY_MARKER_RES)
    has_current = _find_marker(content, CURRENT_MESSAGE_MARKER_RES)
    has_markers = has_history or has_current
    if not has_markers and len(ROLE_LINE_MULTI_RE.findall(content)) < _GENERIC_LINES_MIN:
        return None

    lines = content.splitlines()
    history_line = current_line = -1
    history_inline = current_inline = ""
    for i, line in enumerate(lines):
        if history_line < 0:
            inline = _match_marker_line(line, _HISTORY_LINE_RES)
            if inline is not None:
                history_line, history_inline = i, inline
                continue
        if current_line < 0:
            inline = _match_marker_line(line, _CURRENT_LINE_RES)
            if inline is not None:
                current_line, current_inline = i, inline

    history_start = history_line + 1 if history_line >= 0 else 0
    history_end = current_line if current_line >= 0 else len(lines)
    if history_end < history_start:
        return None

    section_lines = lines[history_start:history_end]
    if history_inline:
        section_lines = [history_inline] + section_lines
    section = "\n".join(section_lines).strip()

    current_message = ""
    if current_line >= 0:
        current_lines = lines[current_line + 1:]
        if current_inline:
            current_lines = [current_inline] + current_lines
        current_message = "\n".join(current_lines).strip()

    turns = parse_history_turns(section, current_message)
    if current_message:
        last = turns[-1] if turns else None
        if last is None or last.role != "user" or last.content != current_message:
            turns.append(Turn(role="user", content=current_message))

    if not turns:
        return None

    system_text = ""
    if history_line > 0:
        system_text = "\n".join(lines[:history_line]).strip()
    elif history_line < 0:
        first_role = _first_role_line(lines, current_message)
        if first_role > 0:
            system_text = "\n".join(lines[:first_role]).strip()

    if not has_markers:
        roles = {t.role for t in turns}
        if not {"user", "assistant"} <= roles:
            return None

    return BlobMatch(
        system_text=system_text,
        turns=turns,
        current_message=current_message or (turns[-1].content if turns[-1].role == "user" else ""),
        has_markers=has_markers,
    )


def extract_current_message(content: str) -> str:
    """Pull just the live user message out of a transcript blob."""
    if not content or not content.strip():
        return ""

    lines = content.splitlines()
    for i, line in enumerate(lines):
        inline = _match_marker_line(line, _CURRENT_LINE_RES)
        if inline is not None:
            rest = lines[i + 1:]
            if inline:
                rest = [inline] + rest
            return "\n".join(rest).strip()

    fallback = ""
    inferrer = RoleInferrer()
    for line in lines:
        m = ROLE_LINE_RE.match(line)
        if not m:
            continue
        role = inferrer.infer(m.group(1), m.group(2))
        if not role:
            continue
        inferrer.observe(role)
        if role == "user":
            fallback = m.group(2).strip()
    return fallback


def looks_like_serialized_conversation(content: str) -> bool:
    if not content or not content.strip():
        return False
    if TRANSCRIPT_KEYWORDS_RE.search(content):
        return True
    if len(EXPLICIT_ROLE_LINE_RE.findall(content)) >= _GENERIC_LINES_MIN:
        return True
    return (
        len(NONEMPTY_ROLE_LINE_RE.findall(content)) >= _LOOSE_LINES_MIN
        and len(content) >= _LOOSE_CHARS_MIN
    )


# ---------------------------------------------------------------------------
# Message-list rewrites
# ---------------------------------------------------------------------------

def _last_user_index(turns: list[Turn]) -> int:
    for i in range(len(turns) - 1, -1, -1):
        if turns[i].role == "user" and turns[i].content:
            return i
    return -1


def rebuild_from_blob(turns: list[Turn]) -> list[Turn] | None:
    """Replace the message list with the transcript encoded in the last user message.

    Returns None when the last user message is not a blob.  Existing system
    messages are merged ahead of any system text found inside the blob.
    """
    idx = _last_user_index(turns)
    if idx < 0:
        return None

    match = parse_blob(turns[idx].content)
    if match is None or not match.turns:
        return None

    existing_system = "\n\n".join(
        t.content for t in turns if t.role == "system" and t.content
    ).strip()
    merged_system = "\n\n".join(
        part for part in (existing_system, match.system_text) if part
    ).strip()

    rebuilt: list[Turn] = []
    if merged_system:
        rebuilt.append(Turn(role="system", content=merged_system))
    return rebuilt + [Turn(role=t.role, content=t.content) for t in match.turns]


def sanitize_serialized_user_message(turns: list[Turn]) -> list[Turn]:
    """Narrow fallback: keep only the current-message segment of a blob."""
    idx = _last_user_index(turns)
    if idx < 0:
        return turns

    content = turns[idx].content
    if not looks_like_serialized_conversation(content):
        return turns

    extracted = extract_current_message(content)
    if not extracted:
        return turns

    sanitized = list(turns)
    sanitized[idx] = Turn(role="user", content=extracted)
    return sanitized


# ---------------------------------------------------------------------------
# Inverse rendering
# ---------------------------------------------------------------------------

def build_transcript_blob(
    system_text: str,
    turns: list[Turn],
    *,
    history_marker: str = "Conversation history:",
    current_marker: str = "Current user message:",
) -> str:
    """Render turns back into the marker-delimited blob form.

    The trailing user turn becomes the current message; everything before it
    is listed under the history marker.
    """
    conversation = [t for t in turns if t.role in ("user", "assistant") and t.content]
    current = ""
    if conversation and conversation[-1].role == "user":
        current = conversation[-1].content
        conversation = conversation[:-1]

    lines: list[str] = []
    if system_text and system_text.strip():
        lines.extend([system_text.strip(), ""])
    lines.append(history_marker)
    for turn in conversation:
        label = "User" if turn.role == "user" else "Assistant"
        lines.append(f"{label}: {turn.content}")
    lines.append(current_marker)
    if current:
        lines.append(current)
    return "\n".join(lines)
