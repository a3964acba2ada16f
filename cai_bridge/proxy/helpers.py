"""Pure helper functions for the proxy server.

No engine dependency: credential extraction, debug headers, and URL
construction.
"""

from __future__ import annotations

from collections.abc import Mapping

from ..types import CompletionResult, Classification, ServerConfig

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, X-Session-Id, X-Conversation-Id, "
        "X-API-Key, X-CAI-Sync-Mode"
    ),
}


def resolve_credential(headers: Mapping[str, str], server: ServerConfig) -> str:
    """Bearer token, then ``X-API-Key``, then the server token if allowed."""
    lowered = {str(k).lower(): v for k, v in headers.items()}

    auth = lowered.get("authorization", "")
    if isinstance(auth, str) and auth.startswith("Bearer "):
        token = auth[len("Bearer "):].strip()
        if token:
            return token

    for name in ("x-api-key", "x_api_key"):
        value = lowered.get(name, "")
        if isinstance(value, str) and value.strip():
            return value.strip()

    if server.allow_server_token and server.token.strip():
        return server.token.strip()
    return ""


def _flag(value: bool) -> str:
    return "true" if value else "false"


def debug_headers(result: CompletionResult) -> dict[str, str]:
    """``X-Proxy-*`` headers describing how the request was synced."""
    decision = result.reconcile
    outcome = result.outcome
    return {
        "X-Proxy-Sync-Mode": outcome.mode,
        "X-Proxy-Sync-Requested-Mode": result.requested_mode.value,
        "X-Proxy-Authoritative-Mode": _flag(result.authoritative),
        "X-Proxy-Replay-Assume-Continuation": _flag(result.assume_continuation),
        "X-Proxy-Rewrite-Requested": _flag(decision.rewrite_requested),
        "X-Proxy-Rewrite-Applied": _flag(decision.classification is Classification.REWRITE),
        "X-Proxy-Fresh-Reset": _flag(result.resolution.fresh_start),
        "X-Proxy-Session-Source": result.resolution.source.value,
        "X-Proxy-Session-Id": result.resolution.session_id,
        "X-Proxy-Classification": decision.classification.value,
        "X-Proxy-Replayed-User-Turns": str(outcome.replayed_user_turns),
        "X-Proxy-Replay-Truncated": _flag(outcome.truncated),
    }


def base_url(headers: Mapping[str, str], fallback_scheme: str = "http") -> str:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    proto = lowered.get("x-forwarded-proto") or fallback_scheme
    host = lowered.get("x-forwarded-host") or lowered.get("host") or "localhost"
    return f"{proto}://{host}"
