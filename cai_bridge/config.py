"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .types import (
    BridgeConfig,
    IdentityConfig,
    MemoryConfig,
    ResponseConfig,
    ServerConfig,
    SyncConfig,
    UpstreamConfig,
)

CONFIG_FILENAMES = [
    "cai-bridge.yaml",
    "cai-bridge.yml",
    "cai-bridge.json",
]

DEFAULT_MODEL_ALIAS = "cai-default"

# env var -> (section, key, kind)
ENV_OVERRIDES: dict[str, tuple[str | None, str, str]] = {
    "CAI_MODEL_ALIAS": (None, "default_model", "str"),
    "CAI_CHARACTER_ID": (None, "character_id", "str"),
    "CAI_MODEL_MAP_JSON": (None, "models", "model_map"),
    "CAI_TOKEN": ("server", "token", "str"),
    "CAI_ALLOW_SERVER_TOKEN": ("server", "allow_server_token", "flag"),
    "CAI_MEMORY_MAX_TURNS": ("memory", "max_turns", "int"),
    "CAI_MEMORY_MAX_CHARS": ("memory", "max_content_chars", "int"),
    "CAI_MAX_ASSISTANT_CHARS": ("memory", "max_assistant_chars", "int"),
    "CAI_SESSION_ALIAS_FALLBACK": ("identity", "alias_fallback", "flag"),
    "CAI_SESSION_USE_BODY_USER": ("identity", "use_body_user", "flag"),
    "CAI_SYNC_MODE": ("sync", "mode", "str"),
    "CAI_AUTHORITATIVE_HISTORY": ("sync", "authoritative_history", "flag"),
    "CAI_REPLAY_AUTHORITATIVE_HISTORY": ("sync", "replay_authoritative_history", "flag"),
    "CAI_REPLAY_INCLUDE_SYSTEM": ("sync", "replay_include_system", "flag"),
    "CAI_REPLAY_MAX_USER_TURNS": ("sync", "replay_max_user_turns", "int"),
    "CAI_REPLAY_ASSUME_CONTINUATION": ("sync", "replay_assume_continuation", "flag"),
    "CAI_CONNECT_TIMEOUT_MS": ("upstream", "connect_timeout", "ms"),
    "CAI_REQUEST_TIMEOUT_MS": ("upstream", "request_timeout", "ms"),
    "CAI_UPSTREAM_CLIENT": ("upstream", "client", "str"),
    "CAI_RELAY_URL": ("upstream", "relay_url", "str"),
    "CAI_ALLOW_MULTI_CHOICE": ("response", "allow_multi_choice", "flag"),
    "CAI_DEBUG_SYNC_HEADERS": ("response", "debug_sync_headers", "flag"),
}


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def parse_model_map(raw: Any) -> dict[str, str]:
    """Parse an alias -> character id mapping from a dict or JSON string.

    Invalid input yields an empty mapping; blank keys or values are dropped.
    """
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    if not isinstance(raw, Mapping):
        return {}

    mapping: dict[str, str] = {}
    for model, character_id in raw.items():
        if (
            isinstance(model, str) and model.strip()
            and isinstance(character_id, str) and character_id.strip()
        ):
            mapping[model.strip()] = character_id.strip()
    return mapping


_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off"})


def _parse_flag(value: str) -> bool | None:
    text = value.strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None


def _parse_int(value: str) -> int | None:
    try:
        number = int(float(value.strip()))
    except (ValueError, OverflowError):
        return None
    return number


def _apply_env_overrides(raw: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overlay ``CAI_*`` environment variables onto a raw config dict."""
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw.items()}
    for var, (section, key, kind) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or not value.strip():
            continue

        parsed: Any
        if kind == "flag":
            parsed = _parse_flag(value)
        elif kind == "int":
            parsed = _parse_int(value)
        elif kind == "ms":
            ms = _parse_int(value)
            parsed = ms / 1000.0 if ms and ms > 0 else None
        elif kind == "model_map":
            parsed = {**parse_model_map(merged.get("models", {})), **parse_model_map(value)}
        else:
            parsed = value.strip()
        if parsed is None:
            continue

        if section is None:
            merged[key] = parsed
        else:
            target = merged.setdefault(section, {})
            if not isinstance(target, dict):
                target = merged[section] = {}
            target[key] = parsed
    return merged


def _flag(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = _parse_flag(value)
        return default if parsed is None else parsed
    if isinstance(value, int):
        return value != 0
    return default


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if number > 0 else default


def _non_negative_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if number >= 0 else default


def _positive_float(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _build_config(raw: dict[str, Any]) -> BridgeConfig:
    """Build a BridgeConfig from a raw dict."""
    default_model = str(raw.get("default_model") or DEFAULT_MODEL_ALIAS).strip()

    # Models: explicit map plus the single-character shortcut
    models = parse_model_map(raw.get("models", {}))
    character_id = str(raw.get("character_id") or "").strip()
    if character_id and default_model not in models:
        models[default_model] = character_id

    server_raw = raw.get("server", {}) or {}
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=_positive_int(server_raw.get("port"), 3000),
        allow_server_token=_flag(server_raw.get("allow_server_token"), False),
        token=str(server_raw.get("token") or "").strip(),
    )

    memory_raw = raw.get("memory", {}) or {}
    memory = MemoryConfig(
        max_turns=_positive_int(memory_raw.get("max_turns"), 24),
        max_content_chars=_positive_int(memory_raw.get("max_content_chars"), 8000),
        max_assistant_chars=_non_negative_int(memory_raw.get("max_assistant_chars"), 0),
        session_capacity=_positive_int(memory_raw.get("session_capacity"), 2000),
        runtime_capacity=_positive_int(memory_raw.get("runtime_capacity"), 2000),
        alias_capacity=_positive_int(memory_raw.get("alias_capacity"), 5000),
        context_alias_capacity=_positive_int(memory_raw.get("context_alias_capacity"), 10_000),
    )

    identity_raw = raw.get("identity", {}) or {}
    identity = IdentityConfig(
        alias_fallback=_flag(identity_raw.get("alias_fallback"), False),
        use_body_user=_flag(identity_raw.get("use_body_user"), False),
        short_message_chars=_non_negative_int(identity_raw.get("short_message_chars"), 160),
        max_session_id_chars=_positive_int(identity_raw.get("max_session_id_chars"), 80),
    )
    if isinstance(identity_raw.get("body_fields"), list):
        identity.body_fields = [str(f) for f in identity_raw["body_fields"] if str(f).strip()]

    sync_raw = raw.get("sync", {}) or {}
    sync = SyncConfig(
        mode=str(sync_raw.get("mode", "prompt")).strip().lower() or "prompt",
        authoritative_history=_flag(sync_raw.get("authoritative_history"), False),
        replay_authoritative_history=_flag(sync_raw.get("replay_authoritative_history"), False),
        replay_include_system=_flag(sync_raw.get("replay_include_system"), True),
        replay_max_user_turns=_non_negative_int(sync_raw.get("replay_max_user_turns"), 0),
        replay_assume_continuation=_flag(sync_raw.get("replay_assume_continuation"), True),
    )

    upstream_raw = raw.get("upstream", {}) or {}
    upstream = UpstreamConfig(
        client=str(upstream_raw.get("client", "echo")).strip() or "echo",
        relay_url=str(upstream_raw.get("relay_url") or "").strip(),
        connect_timeout=_positive_float(upstream_raw.get("connect_timeout"), 45.0),
        request_timeout=_positive_float(upstream_raw.get("request_timeout"), 60.0),
        reset_timeout=_positive_float(upstream_raw.get("reset_timeout"), 5.0),
        disconnect_timeout=_positive_float(upstream_raw.get("disconnect_timeout"), 3.0),
        handle_capacity=_positive_int(upstream_raw.get("handle_capacity"), 256),
    )

    response_raw = raw.get("response", {}) or {}
    response = ResponseConfig(
        allow_multi_choice=_flag(response_raw.get("allow_multi_choice"), False),
        max_choices=_positive_int(response_raw.get("max_choices"), 8),
        debug_sync_headers=_flag(response_raw.get("debug_sync_headers"), False),
    )

    return BridgeConfig(
        version=str(raw.get("version", "1.0")),
        default_model=default_model,
        models=models,
        server=server,
        memory=memory,
        identity=identity,
        sync=sync,
        upstream=upstream,
        response=response,
    )


def validate_config(config: BridgeConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if not config.models:
        errors.append(
            "No model is mapped to a character; set character_id or models "
            "(CAI_CHARACTER_ID / CAI_MODEL_MAP_JSON)"
        )

    if config.sync.mode not in ("prompt", "replay"):
        errors.append(f"sync.mode must be 'prompt' or 'replay', got '{config.sync.mode}'")

    if config.memory.max_turns < 2:
        errors.append("memory.max_turns must be >= 2")

    if config.upstream.client == "relay" and not config.upstream.relay_url:
        errors.append("upstream.relay_url is required when upstream.client is 'relay'")

    if (
        config.upstream.client not in ("echo", "relay")
        and ":" not in config.upstream.client
    ):
        errors.append(
            f"upstream.client '{config.upstream.client}' must be 'echo', 'relay', "
            f"or a 'package.module:attr' path"
        )

    if config.server.allow_server_token and not config.server.token:
        errors.append("server.allow_server_token is set but server.token is empty")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeConfig:
    """Load config from dict, explicit path, or auto-discover.

    ``CAI_*`` environment variables override file values.  Pass
    ``environ={}`` to ignore the process environment (tests do).
    """
    env = os.environ if environ is None else environ

    if config_dict is not None:
        return _build_config(_apply_env_overrides(config_dict, env))

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return _build_config(_apply_env_overrides({}, env))

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(_apply_env_overrides(raw, env))
