"""HTTP gateway exposing the backend session as OpenAI/Anthropic chat APIs.

Every chat route goes through the single ``SessionManager`` owned by the
app, so pacing, rotation and connection sharing apply to all callers.

Usage:
    iflow-bridge -c iflow-bridge.yaml serve --port 28002
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from ..core.sanitizer import redact_for_log
from ..core.session_manager import SessionManager
from ..types import (
    BackendTimeoutError,
    BridgeConfig,
    BridgeError,
    ChatRequest,
    StreamChunk,
    ValidationError,
)
from .formats import PayloadFormat, get_format
from .metrics import RequestLog

logger = logging.getLogger(__name__)

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _status_for(exc: Exception) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, BackendTimeoutError):
        return 504
    if isinstance(exc, BridgeError):
        return 502
    return 500


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(
    config: BridgeConfig | None = None,
    *,
    manager: SessionManager | None = None,
    request_log: RequestLog | None = None,
) -> FastAPI:
    """Create the FastAPI gateway application.

    Args:
        config: Bridge configuration; defaults are used when omitted.
        manager: Pre-built session manager (tests inject one wired to a
            fake backend). Built from *config* when omitted.
        request_log: Shared request log; a fresh one sized from
            ``config.server.log_max_entries`` when omitted.
    """
    config = config or BridgeConfig()
    if manager is None:
        manager = SessionManager.from_config(config)
    log = request_log or RequestLog(config.server.log_max_entries)
    pacing = config.pacing

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        if config.server.connect_on_startup:
            try:
                await manager.ensure_connected()
            except BridgeError as e:
                # Not fatal: the first request retries the connection.
                logger.warning(
                    "Startup connection to backend failed: %s", redact_for_log(str(e)),
                )
        yield
        await manager.disconnect()

    app = FastAPI(title="iflow-bridge", lifespan=lifespan)
    app.state.manager = manager
    app.state.request_log = log
    app.state.config = config

    if config.server.cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # --------------- Status routes ---------------

    @app.get("/health")
    async def health():
        stats = manager.get_stats()
        return {
            "status": "ok",
            "timestamp": _now_iso(),
            "stats": {
                "total_requests": stats.total_requests,
                "recent_requests": stats.recent_requests,
                "limit_per_minute": pacing.max_requests_per_minute,
            },
        }

    @app.get("/stats")
    async def stats():
        s = manager.get_stats()
        return {
            "uptime_s": round(time.time() - log.start_time, 1),
            "requests": {
                "total": s.total_requests,
                "recent_per_minute": s.recent_requests,
                "limit_per_minute": pacing.max_requests_per_minute,
            },
            "session": {
                "count": s.session_count,
                "current_age_s": s.session_age_s,
                "max_age_s": pacing.max_session_age_s,
                "max_requests": pacing.max_requests_per_session,
            },
            "pacing": {
                "interval_ms": [pacing.min_interval_ms, pacing.max_interval_ms],
                "rate_limit_jitter_ms": list(pacing.rate_limit_jitter_ms),
                "rotation_cooldown_ms": list(pacing.rotation_cooldown_ms),
            },
            "backend": {
                "connected": manager.is_connected,
                "model": manager.current_model,
                "state": manager.state.value,
            },
            "logs": log.tail(20),
        }

    @app.get("/logs")
    async def logs(limit: int = 50, status: str | None = None):
        return {"total": log.total, "logs": log.entries(limit=limit, status=status)}

    @app.get("/v1/models")
    async def list_models():
        created = int(time.time())
        return {
            "object": "list",
            "data": [
                {"id": model_id, "object": "model", "created": created, "owned_by": "iflow"}
                for model_id in manager.models.model_ids()
            ],
        }

    # --------------- Chat routes ---------------

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        return await _handle_chat(request, get_format("openai"), manager, log)

    @app.post("/v1/messages")
    async def messages(request: Request):
        return await _handle_chat(request, get_format("anthropic"), manager, log)

    return app


async def _handle_chat(
    request: Request,
    fmt: PayloadFormat,
    manager: SessionManager,
    log: RequestLog,
):
    """Parse, dispatch and shape one chat call; record it in *log*."""
    started = time.monotonic()
    request_id = log.new_request_id()

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(fmt.error_body("request body must be valid JSON"), status_code=400)
    try:
        chat_request = fmt.parse_request(body)
    except ValidationError as e:
        return JSONResponse(fmt.error_body(str(e)), status_code=400)

    model = chat_request.model or manager.current_model
    if chat_request.stream:
        return await _handle_streaming(
            chat_request, fmt, manager, log, request_id=request_id, model=model, started=started,
        )

    try:
        result = await manager.chat(chat_request)
    except Exception as e:
        return _failure(e, fmt, log, request_id=request_id, model=model, started=started)

    latency_ms = (time.monotonic() - started) * 1000
    log.record(
        api=fmt.name, model=model, tier="sync", latency_ms=latency_ms,
        chars=len(result.text), request_id=request_id,
    )
    logger.info(
        "[%s] %s stream=False model=%s latency=%dms chars=%d",
        request_id, fmt.name, model, int(latency_ms), len(result.text),
    )
    return JSONResponse(fmt.build_response(result, fmt.new_response_id()))


def _failure(
    exc: Exception,
    fmt: PayloadFormat,
    log: RequestLog,
    *,
    request_id: str,
    model: str,
    started: float,
) -> JSONResponse:
    """Log and record a call that failed before any response byte was sent."""
    status = _status_for(exc)
    message = redact_for_log(str(exc)) or type(exc).__name__
    if isinstance(exc, BridgeError):
        logger.error("[%s] %s request failed: %s", request_id, fmt.name, message)
    else:
        logger.error("[%s] %s request failed: %s", request_id, fmt.name, message, exc_info=True)
    log.record(
        api=fmt.name, model=model, tier="error",
        latency_ms=(time.monotonic() - started) * 1000,
        error=message, request_id=request_id,
    )
    return JSONResponse(fmt.error_body(message), status_code=status)


async def _handle_streaming(
    chat_request: ChatRequest,
    fmt: PayloadFormat,
    manager: SessionManager,
    log: RequestLog,
    *,
    request_id: str,
    model: str,
    started: float,
) -> StreamingResponse | JSONResponse:
    """Prime the stream, then hand the rest to a ``StreamingResponse``.

    The first chunk is pulled before the response starts so pacing, connect
    and send failures still come back as a JSON error with a real status.
    """
    stream = manager.chat_stream(chat_request)
    try:
        first: StreamChunk | None = await stream.__anext__()
    except StopAsyncIteration:
        first = None
    except Exception as e:
        await stream.aclose()
        return _failure(e, fmt, log, request_id=request_id, model=model, started=started)

    response_id = fmt.new_response_id()
    created = int(time.time())

    async def sse_generator() -> AsyncIterator[bytes]:
        chars = 0
        error: str | None = None
        completed = False
        try:
            if first is not None:
                for event in fmt.encode_chunk(first, response_id, model, created):
                    yield event
                async for chunk in stream:
                    chars += len(chunk.text or "")
                    for event in fmt.encode_chunk(chunk, response_id, model, created):
                        yield event
            for event in fmt.stream_epilogue():
                yield event
            completed = True
        except BridgeError as e:
            error = redact_for_log(str(e)) or type(e).__name__
            logger.error("[%s] %s stream failed: %s", request_id, fmt.name, error)
            yield fmt.encode_error(error)
        except Exception as e:
            error = type(e).__name__
            logger.error("[%s] %s stream failed", request_id, fmt.name, exc_info=True)
            raise
        finally:
            if not completed and error is None:
                error = "client disconnected"
            latency_ms = (time.monotonic() - started) * 1000
            log.record(
                api=fmt.name, model=model, tier="error" if error else "stream",
                latency_ms=latency_ms, chars=chars, error=error, request_id=request_id,
            )
            if not error:
                logger.info(
                    "[%s] %s stream=True model=%s latency=%dms chars=%d",
                    request_id, fmt.name, model, int(latency_ms), chars,
                )
            await stream.aclose()

    return StreamingResponse(
        sse_generator(), media_type="text/event-stream", headers=_SSE_HEADERS,
    )
