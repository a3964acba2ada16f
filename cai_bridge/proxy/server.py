"""OpenAI-compatible HTTP surface for the character bridge.

Accepts chat-completions requests from any OpenAI client, routes them
through ``BridgeEngine``, and answers in the OpenAI response shape (JSON or
a single-chunk SSE stream).

Usage:
    cai-bridge -c cai-bridge.yaml serve --port 3000
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import load_config
from ..core.normalizer import parse_request_body
from ..engine import BridgeEngine
from ..types import BridgeConfig, BridgeError, CompletionResult, UpstreamError
from .formats import build_chat_completion, build_model_list, emit_single_chunk_sse
from .helpers import CORS_HEADERS, base_url, debug_headers, resolve_credential
from .metrics import ProxyMetrics

logger = logging.getLogger(__name__)

SERVICE_NAME = "cai-bridge"

_STATUS_CODES = {
    404: "not_found",
    405: "method_not_allowed",
}


def _error_response(status_code: int, message: str, code: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        {"error": {"message": message, "type": error_type, "code": code}},
        status_code=status_code,
    )


def _record_request(metrics: ProxyMetrics, result: CompletionResult) -> None:
    metrics.record({
        "type": "request",
        "model": result.model,
        "classification": result.reconcile.classification.value,
        "sync_mode": result.outcome.mode,
        "requested_mode": result.requested_mode.value,
        "session_source": result.resolution.source.value,
        "session_id": result.resolution.session_id[:12],
        "attempts": result.outcome.attempts,
        "stream": result.stream,
        "elapsed_ms": result.elapsed_ms,
    })


def create_app(
    config_path: str | None = None,
    *,
    config: BridgeConfig | None = None,
    shared_engine: BridgeEngine | None = None,
    shared_metrics: ProxyMetrics | None = None,
) -> FastAPI:
    """Create the FastAPI bridge application.

    Args:
        config_path: Path to a cai-bridge config file.
        config: Pre-built config (takes precedence over *config_path*).
        shared_engine: Reuse an existing engine (tests inject fakes here).
        shared_metrics: Reuse an existing metrics collector.
    """
    if shared_engine is not None:
        engine = shared_engine
    else:
        engine = BridgeEngine(config=config or load_config(config_path))
    cfg = engine.config
    metrics = shared_metrics or ProxyMetrics()

    logger.info(
        "Bridge ready: models=%s sync=%s upstream=%s",
        ",".join(engine.list_models()), cfg.sync.mode, cfg.upstream.client,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        await engine.aclose()

    app = FastAPI(title="cai-bridge", lifespan=lifespan)
    app.state.engine = engine
    app.state.metrics = metrics

    # --------------- Errors ---------------

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
        if isinstance(exc, UpstreamError):
            logger.error("Upstream failure (%s): %s", exc.code, exc.message, exc_info=exc)
        else:
            logger.info("Rejected request (%s): %s", exc.code, exc.message)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = _STATUS_CODES.get(exc.status_code, "http_error")
        message = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
        return _error_response(exc.status_code, message, code, "invalid_request_error")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
        return _error_response(500, "Internal server error", "internal_error", "server_error")

    # --------------- Routes ---------------

    @app.middleware("http")
    async def cors(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.post("/v1/chat/completions")
    @app.post("/chat/completions")
    async def chat_completions(request: Request):
        body = parse_request_body(await request.body())
        credential = resolve_credential(request.headers, cfg.server)

        try:
            result = await engine.complete(body, request.headers, credential)
        except UpstreamError as e:
            metrics.record({"type": "upstream_error", "code": e.code, "message": e.message})
            raise
        _record_request(metrics, result)

        headers: dict[str, str] = {}
        if cfg.response.debug_sync_headers:
            headers.update(debug_headers(result))

        if result.stream:
            frames = emit_single_chunk_sse(result.model, result.text)

            async def stream_generator():
                for frame in frames:
                    yield frame

            headers["Cache-Control"] = "no-cache"
            return StreamingResponse(
                stream_generator(), media_type="text/event-stream", headers=headers,
            )

        return JSONResponse(
            build_chat_completion(result.model, [result.text] * result.choice_count),
            headers=headers,
        )

    @app.get("/v1/models")
    @app.get("/models")
    async def list_models() -> JSONResponse:
        return JSONResponse(build_model_list(engine.list_models()))

    @app.get("/v1/health")
    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        root = base_url(request.headers, request.url.scheme)
        models = list(cfg.models)
        result = {
            "status": "ok",
            "service": SERVICE_NAME,
            "time": datetime.now(timezone.utc).isoformat(),
            "endpoints": {
                "chat_completions": f"{root}/v1/chat/completions",
                "models": f"{root}/v1/models",
                "health": f"{root}/v1/health",
            },
            "config": {
                "models_configured": len(models),
                "default_model": cfg.default_model,
                "has_default_character_mapping": cfg.default_model in cfg.models,
                "has_server_token": bool(cfg.server.token),
                "sync_mode": cfg.sync.mode,
                "upstream_client": cfg.upstream.client,
                "memory_enabled": True,
            },
            "checks": {"endpoint_ready": bool(models)},
            "engine": engine.stats(),
            "metrics": metrics.snapshot(),
        }

        params = request.query_params
        if params.get("live") == "1" or params.get("check") == "live":
            credential = resolve_credential(request.headers, cfg.server)
            result["checks"]["live"] = await engine.probe(credential)

        return JSONResponse(result)

    return app
