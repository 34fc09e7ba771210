"""FastAPI application wiring for the OpenAI-compatible Claude bridge."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .audit import AuditEvent, AuditLogger, now_ms, prompt_fingerprint
from .auth import AuthContext, require_api_key
from .backends.factory import ExecutorFactory
from .config import Settings
from .errors import BackendInvocationError, BridgeError, RateLimitExceeded, RequestTooLarge, ValidationError
from .limits import SlidingWindowRateLimiter, rate_limit_headers
from .logging_config import setup_logging
from .metrics import MetricsCollector, format_prometheus
from .models import BackendInvocation, ChatCompletionsRequest, ErrorBody, ErrorResponse
from .routing import ModelRouter, Route
from .security import client_id, validate_chat_request
from .translate_request import build_invocation
from .translate_response import (
    GENERIC_BACKEND_MESSAGE,
    CharacterUsageEstimator,
    StreamOutcome,
    build_chat_response,
    generate_id,
    sse_stream,
    track_outcome,
    translate_stream,
)

VERSION = "1.0.0"

settings = Settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

router = ModelRouter.from_settings(settings)
rate_limiter = SlidingWindowRateLimiter(
    window_s=settings.rate_limit_window_s,
    max_requests=settings.rate_limit_max_requests,
)
executor_factory = ExecutorFactory(settings)
usage_estimator = CharacterUsageEstimator()
audit = AuditLogger(store_prompt=settings.audit_store_prompt)
metrics = MetricsCollector()

app = FastAPI(title="Claude Bridge", version=VERSION)


def error_payload(
    message: str, error_type: str, param: str | None = None, code: str | None = None
) -> dict:
    return ErrorResponse(
        error=ErrorBody(message=message, type=error_type, param=param, code=code)
    ).model_dump()


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    """Render bridge errors in the OpenAI error envelope."""
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = "0"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.public_message(), exc.error_type, exc.param, exc.code),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    param = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or None
    return JSONResponse(
        status_code=400,
        content=error_payload(
            f"Invalid request: {first.get('msg', 'malformed body')}",
            "invalid_request_error",
            param=param,
        ),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled error on %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(
        status_code=500, content=error_payload(GENERIC_BACKEND_MESSAGE, "internal_error")
    )


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    t0 = time.perf_counter()
    response = await call_next(request)
    metrics.record(
        request.url.path,
        success=response.status_code < 400,
        duration_ms=(time.perf_counter() - t0) * 1000,
    )
    return response


def get_auth_context(
    authorization: str | None = Header(default=None),
) -> AuthContext:
    """Resolve the caller's API key against the optional allow list."""
    return require_api_key(settings.allowed_api_keys, authorization)


def get_rate_limiter() -> SlidingWindowRateLimiter:
    return rate_limiter


def get_executor_factory() -> ExecutorFactory:
    return executor_factory


@app.get("/health")
def health() -> dict[str, str | float]:
    """Return a lightweight readiness signal for probes and monitors."""
    return {
        "status": "ok",
        "service": "claude-bridge",
        "version": VERSION,
        "backend_strategy": router.strategy.value,
        "uptime": round(metrics.uptime_s(), 3),
    }


@app.get("/v1/models")
def list_models() -> dict[str, object]:
    return {"object": "list", "data": router.list_models()}


@app.get("/metrics")
def metrics_endpoint(request: Request):
    accept = request.headers.get("accept", "")
    snap = metrics.snapshot()
    if "text/plain" in accept or "application/openmetrics-text" in accept:
        return PlainTextResponse(
            format_prometheus(snap), media_type="text/plain; version=0.0.4; charset=utf-8"
        )
    return {
        "service": "claude-bridge",
        "version": VERSION,
        "uptime": round(metrics.uptime_s(), 3),
        "endpoints": snap,
        "rate_limiter": rate_limiter.stats(),
    }


@app.post("/v1/completions")
def legacy_completions() -> None:
    raise ValidationError(
        "Legacy completions endpoint not supported. Use /v1/chat/completions instead.",
        code="deprecated_endpoint",
    )


def _audit_event(
    *,
    request_id: str,
    cid: str,
    path: str,
    t0: float,
    status_code: int,
    body: ChatCompletionsRequest,
    route: Route,
    invocation: BackendInvocation,
    output_tokens: int = 0,
    error: str | None = None,
) -> AuditEvent:
    return AuditEvent(
        request_id=request_id,
        ts_ms=now_ms(),
        client=cid,
        path=path,
        status_code=status_code,
        latency_ms=int((time.time() - t0) * 1000),
        client_model=body.model,
        backend_model=route.backend_model,
        strategy=route.strategy.value,
        stream=body.stream,
        estimated_input_tokens=usage_estimator.count(invocation.prompt),
        estimated_output_tokens=output_tokens,
        prompt_fingerprint_sha256=prompt_fingerprint(invocation.prompt),
        prompt=invocation.prompt,
        error=error,
    )


# Status recorded for a stream that already answered 200 over HTTP.
STREAM_ERROR_STATUS = {"timeout_error": 504, "insufficient_quota": 402}


def stream_audit_status(outcome: StreamOutcome) -> tuple[int, str | None]:
    if outcome.error is not None:
        return STREAM_ERROR_STATUS.get(outcome.error.type, 502), f"stream {outcome.error.type}"
    if outcome.finish_reason is None:
        return 200, "stream interrupted before completion"
    return 200, None

@app.post("/v1/chat/completions")
async def chat_completions(
    req: Request,
    body: ChatCompletionsRequest,
    ctx: Annotated[AuthContext, Depends(get_auth_context)],
    limiter: Annotated[SlidingWindowRateLimiter, Depends(get_rate_limiter)],
    factory: Annotated[ExecutorFactory, Depends(get_executor_factory)],
):
    """Validate, rate-limit, route and execute a chat request against the backend."""
    t0 = time.time()
    request_id = audit.new_request_id()

    raw_bytes = await req.body()
    if len(raw_bytes) > settings.max_request_bytes:
        raise RequestTooLarge("Request too large")

    cid = client_id(req.headers, req.client.host if req.client else None, ctx.api_key)
    decision = limiter.check(cid)
    headers = rate_limit_headers(decision, wall_offset=time.time() - time.monotonic())

    validate_chat_request(body, max_chars=settings.max_content_chars)

    route = router.resolve(body.model)
    invocation = build_invocation(body, route, settings)
    executor = factory.for_route(route)
    response_id = generate_id()
    path = str(req.url.path)

    if body.stream:
        outcome = StreamOutcome()
        chunks = track_outcome(
            translate_stream(
                executor.stream(invocation), body, invocation, response_id=response_id
            ),
            outcome,
        )

        async def frames() -> AsyncIterator[str]:
            try:
                async for frame in sse_stream(chunks):
                    yield frame
            finally:
                status_code, error = stream_audit_status(outcome)
                audit.write(
                    _audit_event(
                        request_id=request_id,
                        cid=cid,
                        path=path,
                        t0=t0,
                        status_code=status_code,
                        body=body,
                        route=route,
                        invocation=invocation,
                        output_tokens=usage_estimator.count(outcome.text),
                        error=error,
                    )
                )

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={**headers, "Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    try:
        output = await executor.invoke(invocation)
    except BackendInvocationError as e:
        logger.error(
            "backend invocation failed model=%s strategy=%s exit=%s: %s | stderr=%.500s | stdout=%.500s",
            route.backend_model,
            e.strategy,
            e.exit_code,
            e.message,
            e.stderr or "",
            e.stdout or "",
        )
        audit.write(
            _audit_event(
                request_id=request_id,
                cid=cid,
                path=path,
                t0=t0,
                status_code=e.status_code,
                body=body,
                route=route,
                invocation=invocation,
                error=f"{type(e).__name__}: {e.message}",
            )
        )
        raise
    except Exception as e:
        audit.write(
            _audit_event(
                request_id=request_id,
                cid=cid,
                path=path,
                t0=t0,
                status_code=500,
                body=body,
                route=route,
                invocation=invocation,
                error=f"{type(e).__name__}: {e}",
            )
        )
        raise

    resp = build_chat_response(
        output, body, invocation, estimator=usage_estimator, response_id=response_id
    )
    audit.write(
        _audit_event(
            request_id=request_id,
            cid=cid,
            path=path,
            t0=t0,
            status_code=200,
            body=body,
            route=route,
            invocation=invocation,
            output_tokens=resp.usage.completion_tokens,
        )
    )
    return JSONResponse(content=resp.model_dump(), headers=headers)
