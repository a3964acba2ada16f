"""OpenAI chat-completions response shapes.

Usage:

    body = build_chat_completion(model, ["hello"])
    frames = emit_single_chunk_sse(model, "hello")
"""

from __future__ import annotations

import json
import os
import time

OWNED_BY = "character-ai-bridge"


def _now() -> int:
    return int(time.time())


def completion_id() -> str:
    return f"chatcmpl-{int(time.time() * 1000)}-{os.urandom(4).hex()}"


def build_chat_completion(model: str, contents: list[str]) -> dict:
    """A ``chat.completion`` object with one choice per entry in *contents*."""
    contents = contents or [""]
    return {
        "id": completion_id(),
        "object": "chat.completion",
        "created": _now(),
        "model": model,
        "choices": [
            {
                "index": index,
                "message": {"role": "assistant", "content": text or ""},
                "finish_reason": "stop",
            }
            for index, text in enumerate(contents)
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def _sse(payload: dict | str) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode()


def emit_single_chunk_sse(model: str, content: str) -> list[bytes]:
    """Full reply as one delta frame, then a stop frame, then ``[DONE]``."""
    cid = completion_id()
    created = _now()
    base = {"id": cid, "object": "chat.completion.chunk", "created": created, "model": model}
    chunk = {
        **base,
        "choices": [{
            "index": 0,
            "delta": {"role": "assistant", "content": content},
            "finish_reason": None,
        }],
    }
    done = {**base, "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}
    return [_sse(chunk), _sse(done), _sse("[DONE]")]


def build_model_list(model_ids: list[str]) -> dict:
    return {
        "object": "list",
        "data": [
            {"id": model_id, "object": "model", "created": 0, "owned_by": OWNED_BY}
            for model_id in model_ids
        ],
    }
