"""Anthropic Messages API executor."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from anthropic import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
)

from ..errors import BackendInvocationError, BackendTimeout, QuotaExhaustedError
from ..models import (
    BackendInvocation,
    BackendOutput,
    BackendOutputEvent,
    BackendUsage,
    ErrorEvent,
    ResultEvent,
    TextEvent,
)
from .base import (
    FINISH_REASONS,
    BackendExecutor,
    Deadline,
    is_quota_message,
    next_before,
    timeout_message,
)

logger = logging.getLogger(__name__)


def map_status_error(error: APIStatusError) -> BackendInvocationError:
    """Convert an SDK status error; credit/quota problems are terminal."""
    message = str(getattr(error, "message", None) or error)
    status_code = getattr(error, "status_code", None)
    if status_code == 402 or is_quota_message(message):
        return QuotaExhaustedError(message, strategy="api", stderr=message)
    return BackendInvocationError(
        f"Anthropic API error ({status_code}): {message}", strategy="api", stderr=message
    )


class ApiExecutor(BackendExecutor):
    name = "api"

    def __init__(self, *, api_key: str, client: AsyncAnthropic | None = None) -> None:
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        """Lazy-initialized Anthropic client."""
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    def build_request(self, invocation: BackendInvocation) -> dict[str, Any]:
        req: dict[str, Any] = {
            "model": invocation.target_model,
            "max_tokens": invocation.max_tokens,
            "temperature": invocation.temperature,
            "messages": [dict(m) for m in invocation.messages],
        }
        if invocation.system:
            req["system"] = invocation.system
        if invocation.stop_sequences:
            req["stop_sequences"] = list(invocation.stop_sequences)
        return req

    def to_output(self, message: Any) -> BackendOutput:
        text = "".join(
            getattr(b, "text", "") for b in message.content if getattr(b, "type", None) == "text"
        )
        usage = None
        if getattr(message, "usage", None) is not None:
            usage = BackendUsage(
                int(message.usage.input_tokens), int(message.usage.output_tokens)
            )
        return BackendOutput(
            text=text,
            finish_reason=FINISH_REASONS.get(str(message.stop_reason), "stop"),
            usage=usage,
            session_id=getattr(message, "id", None),
            strategy="api",
        )

    async def invoke(self, invocation: BackendInvocation) -> BackendOutput:
        try:
            message = await asyncio.wait_for(
                self.client.messages.create(**self.build_request(invocation)),
                timeout=invocation.timeout_s,
            )
        except (asyncio.TimeoutError, APITimeoutError) as e:
            raise BackendTimeout(timeout_message(invocation.timeout_s), strategy="api") from e
        except APIStatusError as e:
            raise map_status_error(e) from e
        except APIConnectionError as e:
            raise BackendInvocationError(
                f"Failed to connect to Anthropic: {e}", strategy="api", stderr=str(e)
            ) from e
        except APIError as e:
            raise BackendInvocationError(
                f"Anthropic API error: {e}", strategy="api", stderr=str(e)
            ) from e
        return self.to_output(message)

    async def stream(self, invocation: BackendInvocation) -> AsyncIterator[BackendOutputEvent]:
        deadline = Deadline(invocation.timeout_s)
        try:
            async with self.client.messages.stream(**self.build_request(invocation)) as stream:
                texts = stream.text_stream.__aiter__()
                while True:
                    try:
                        text = await next_before(texts, deadline)
                    except StopAsyncIteration:
                        break
                    if text:
                        yield TextEvent(text)
                final = await asyncio.wait_for(
                    stream.get_final_message(), timeout=deadline.remaining()
                )
            yield ResultEvent(self.to_output(final))
        except (asyncio.TimeoutError, APITimeoutError):
            logger.warning("Anthropic stream timed out after %gs", invocation.timeout_s)
            yield ErrorEvent(timeout_message(invocation.timeout_s), kind="timeout")
        except APIStatusError as e:
            err = map_status_error(e)
            logger.error("Anthropic stream failed: %s", err.message)
            yield ErrorEvent(err.message, kind="quota" if isinstance(err, QuotaExhaustedError) else "backend")
        except APIConnectionError as e:
            logger.error("Anthropic stream connection failed: %s", e)
            yield ErrorEvent(f"Failed to connect to Anthropic: {e}")
        except APIError as e:
            logger.error("Anthropic stream failed: %s", e)
            yield ErrorEvent(f"Anthropic API error: {e}")
