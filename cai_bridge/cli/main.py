"""CLI: cai-bridge serve, config validate, reconstruct, models."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from ..config import load_config, validate_config
from ..core.normalizer import (
    last_user_message,
    normalize_messages,
    parse_request_body,
    split_system,
)
from ..types import InvalidRequestError, Turn


def cmd_serve(args):
    """Start the OpenAI-compatible bridge server."""
    try:
        import uvicorn
        from ..proxy import create_app
    except ImportError:
        print("Run: pip install cai-bridge", file=sys.stderr)
        sys.exit(1)

    # Uvicorn force-cancels streaming responses after the graceful-shutdown
    # timeout; the resulting CancelledError tracebacks are noise.
    import asyncio
    import logging as _logging

    class _SuppressCancelled(_logging.Filter):
        def filter(self, record: _logging.LogRecord) -> bool:
            if record.exc_info:
                exc_type = record.exc_info[0]
                if exc_type is asyncio.CancelledError:
                    return False
            return True

    class _SuppressHealthAccess(_logging.Filter):
        """Hide repetitive GET /v1/health access logs."""
        def filter(self, record: _logging.LogRecord) -> bool:
            msg = record.getMessage()
            if "GET /v1/health" in msg and "200" in msg:
                return False
            return True

    _logging.basicConfig(
        level=_logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())
    _logging.getLogger("uvicorn.access").addFilter(_SuppressHealthAccess())

    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        for err in errors:
            print(f"Warning: {err}", file=sys.stderr)

    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config=config)
    print(f"cai-bridge on {host}:{port} (upstream: {config.upstream.client}, sync: {config.sync.mode})")
    uvicorn.run(
        app, host=host, port=port, log_level="info",
        timeout_graceful_shutdown=2,
    )


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Models: {', '.join(sorted(config.models))}")
        print(f"  Default model: {config.default_model}")
        print(f"  Sync mode: {config.sync.mode}")
        print(f"  Upstream: {config.upstream.client}")
        print(f"  Memory: {config.memory.max_turns} turns, {config.memory.max_content_chars:,} chars/turn")


def _load_turns(text: str) -> list[Turn]:
    """Turns from a request body, a messages array, or raw transcript text."""
    try:
        body = parse_request_body(text)
    except InvalidRequestError:
        body = None
    if body and "messages" in body:
        return normalize_messages(body["messages"])

    try:
        turns = normalize_messages(text)
    except InvalidRequestError:
        turns = []
    if turns:
        return turns
    return normalize_messages([{"role": "user", "content": text}])


def cmd_reconstruct(args):
    """Run the normalizer and blob reconstructor on a file."""
    path = Path(args.file)
    if not path.is_file():
        print(f"File not found: {path}", file=sys.stderr)
        sys.exit(1)

    try:
        turns = _load_turns(path.read_text(encoding="utf-8"))
    except InvalidRequestError as e:
        print(f"Could not parse messages: {e.message}", file=sys.stderr)
        sys.exit(1)

    system_text, conversation = split_system(turns)
    print(json.dumps({
        "system": system_text,
        "turns": [t.to_dict() for t in conversation],
        "live_message": last_user_message(turns),
    }, indent=2, ensure_ascii=False))


def cmd_models(args):
    """List configured model aliases."""
    config = load_config(args.config)
    if not config.models:
        print(f"No models configured (default alias: {config.default_model}).")
        return
    for model, character_id in sorted(config.models.items()):
        marker = " (default)" if model == config.default_model else ""
        print(f"  {model} -> {character_id}{marker}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="cai-bridge",
        description="OpenAI-compatible bridge for stateful character chat services",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP bridge")
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument("--host", default=None)

    # reconstruct
    reconstruct_parser = subparsers.add_parser(
        "reconstruct", help="Show the turns recovered from a request body or transcript",
    )
    reconstruct_parser.add_argument("file", help="JSON request body, messages array, or raw text")

    # models
    subparsers.add_parser("models", help="List configured model aliases")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "reconstruct":
        cmd_reconstruct(args)
    elif args.command == "models":
        cmd_models(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: cai-bridge config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
