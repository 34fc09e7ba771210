"""Backend output → chat-completions responses, chunks and SSE frames."""

from __future__ import annotations

import json
import logging
import math
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Protocol

from .models import (
    AssistantMessage,
    BackendInvocation,
    BackendOutput,
    BackendOutputEvent,
    ChatCompletionChunk,
    ChatCompletionsRequest,
    ChatCompletionsResponse,
    Choice,
    ChunkChoice,
    Delta,
    ErrorBody,
    ErrorEvent,
    ResultEvent,
    TextEvent,
    Usage,
)

logger = logging.getLogger(__name__)

DONE = "data: [DONE]\n\n"
GENERIC_BACKEND_MESSAGE = "The backend failed to produce a response"


class UsageEstimator(Protocol):
    def count(self, text: str) -> int: ...


class CharacterUsageEstimator:
    """Approximate token count from characters (about four per token).

    This is an estimate, not a tokenizer.
    """

    chars_per_token = 4

    def count(self, text: str) -> int:
        if not text:
            return 0
        return max(1, math.ceil(len(text) / self.chars_per_token))


def generate_id(prefix: str = "chatcmpl") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:24]}"


def notes_suffix(has_text: bool, notes: tuple[str, ...]) -> str:
    if not notes:
        return ""
    joined = "\n".join(notes)
    return f"\n\n{joined}" if has_text else joined


def assemble_content(text: str, notes: tuple[str, ...]) -> str:
    return text + notes_suffix(bool(text), notes)


def build_usage(
    output: BackendOutput,
    invocation: BackendInvocation,
    content: str,
    estimator: UsageEstimator,
) -> Usage:
    if output.usage is not None:
        p, c = output.usage.input_tokens, output.usage.output_tokens
    else:
        prompt = invocation.prompt
        p, c = estimator.count(prompt), estimator.count(content)
    return Usage(prompt_tokens=p, completion_tokens=c, total_tokens=p + c)


def build_chat_response(
    output: BackendOutput,
    request: ChatCompletionsRequest,
    invocation: BackendInvocation,
    *,
    estimator: UsageEstimator | None = None,
    response_id: str | None = None,
) -> ChatCompletionsResponse:
    content = assemble_content(output.text, invocation.notes)
    finish = output.finish_reason if output.finish_reason in ("stop", "length") else "stop"
    return ChatCompletionsResponse(
        id=response_id or generate_id(),
        created=int(time.time()),
        model=request.model,
        choices=[Choice(index=0, message=AssistantMessage(content=content), finish_reason=finish)],
        usage=build_usage(output, invocation, content, estimator or CharacterUsageEstimator()),
        system_fingerprint=output.session_id or f"bridge-{output.strategy or 'backend'}",
    )


def stream_error(event: ErrorEvent) -> ErrorBody:
    """Client-safe error body; raw backend text stays in the logs."""
    if event.kind == "timeout":
        return ErrorBody(message=event.message, type="timeout_error", code="timeout")
    if event.kind == "quota":
        return ErrorBody(
            message="Backend credit or quota exhausted",
            type="insufficient_quota",
            code="insufficient_quota",
        )
    return ErrorBody(message=GENERIC_BACKEND_MESSAGE, type="backend_error")


async def translate_stream(
    events: AsyncGenerator[BackendOutputEvent, None],
    request: ChatCompletionsRequest,
    invocation: BackendInvocation,
    *,
    response_id: str | None = None,
) -> AsyncIterator[ChatCompletionChunk]:
    """Role chunk, content chunks, then exactly one terminal chunk.

    Backend failures (error events or unexpected exceptions) become one
    diagnostic chunk carrying ``error`` followed by a terminal chunk with
    ``finish_reason="error"``.
    """
    rid = response_id or generate_id()
    created = int(time.time())

    def chunk(
        delta: Delta, finish: str | None = None, error: ErrorBody | None = None
    ) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=rid,
            created=created,
            model=request.model,
            choices=[ChunkChoice(index=0, delta=delta, finish_reason=finish)],
            error=error,
        )

    yield chunk(Delta(role="assistant", content=""))

    emitted = False
    finish = "stop"
    error: ErrorBody | None = None
    try:
        async with aclosing(events) as it:
            async for ev in it:
                if isinstance(ev, TextEvent):
                    if ev.content:
                        emitted = True
                        yield chunk(Delta(content=ev.content))
                elif isinstance(ev, ResultEvent):
                    if not emitted and ev.output.text:
                        emitted = True
                        yield chunk(Delta(content=ev.output.text))
                    if ev.output.finish_reason == "length":
                        finish = "length"
                elif isinstance(ev, ErrorEvent):
                    logger.error("backend stream error (%s): %s", ev.kind, ev.message)
                    error = stream_error(ev)
                    break
    except Exception:
        logger.exception("backend stream failed for model %s", request.model)
        error = ErrorBody(message=GENERIC_BACKEND_MESSAGE, type="backend_error")

    if error is not None:
        yield chunk(Delta(), error=error)
        yield chunk(Delta(), "error")
        return

    suffix = notes_suffix(emitted, invocation.notes)
    if suffix:
        yield chunk(Delta(content=suffix))
    yield chunk(Delta(), finish)


@dataclass
class StreamOutcome:
    """What a finished (or abandoned) stream actually delivered."""

    finish_reason: str | None = None
    error: ErrorBody | None = None
    parts: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.parts)


async def track_outcome(
    chunks: AsyncGenerator[ChatCompletionChunk, None], outcome: StreamOutcome
) -> AsyncIterator[ChatCompletionChunk]:
    async with aclosing(chunks) as it:
        async for c in it:
            choice = c.choices[0]
            if choice.delta.content:
                outcome.parts.append(choice.delta.content)
            if c.error is not None:
                outcome.error = c.error
            if choice.finish_reason is not None:
                outcome.finish_reason = choice.finish_reason
            yield c


def chunk_payload(chunk: ChatCompletionChunk) -> dict[str, Any]:
    data = chunk.model_dump()
    for choice in data["choices"]:
        choice["delta"] = {k: v for k, v in choice["delta"].items() if v is not None}
    if data.get("error") is None:
        data.pop("error", None)
    return data


def sse_event(chunk: ChatCompletionChunk) -> str:
    return f"data: {json.dumps(chunk_payload(chunk), ensure_ascii=False)}\n\n"


async def sse_stream(chunks: AsyncGenerator[ChatCompletionChunk, None]) -> AsyncIterator[str]:
    """Frame chunks as SSE; the end sentinel always closes the stream."""
    async with aclosing(chunks) as it:
        async for c in it:
            yield sse_event(c)
    yield DONE
