"""Backend executor contract shared by the CLI and API strategies."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import replace
from typing import TypeVar

from ..errors import BackendInvocationError, BackendTimeout, is_retryable
from ..models import BackendInvocation, BackendOutput, BackendOutputEvent, ErrorEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "error_max_turns": "length",
}

_QUOTA = re.compile(r"credit|quota|billing", re.IGNORECASE)


def is_quota_message(message: str) -> bool:
    return bool(_QUOTA.search(message))


def timeout_message(timeout_s: float) -> str:
    return f"Backend request timed out after {timeout_s:g}s"


class Deadline:
    """Wall-clock ceiling for a whole invocation."""

    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        self.at = time.monotonic() + timeout_s

    def remaining(self) -> float:
        return max(0.0, self.at - time.monotonic())


async def next_before(it: AsyncIterator[T], deadline: Deadline) -> T:
    """``anext`` bounded by the deadline; raises ``asyncio.TimeoutError``."""
    return await asyncio.wait_for(it.__anext__(), timeout=deadline.remaining())


class BackendExecutor(ABC):
    """Single-shot and incremental execution of one invocation.

    ``invoke`` raises ``BackendInvocationError`` (or its ``BackendTimeout`` /
    ``QuotaExhaustedError`` subclasses). ``stream`` never raises for backend
    failures: it yields one ``ErrorEvent`` and stops.
    """

    name: str = "backend"

    @abstractmethod
    async def invoke(self, invocation: BackendInvocation) -> BackendOutput: ...

    @abstractmethod
    def stream(self, invocation: BackendInvocation) -> AsyncIterator[BackendOutputEvent]: ...


class FallbackExecutor(BackendExecutor):
    """Retry once on the secondary strategy unless the failure is terminal.

    Quota exhaustion and timeouts are terminal. Both strategies share one
    deadline: the secondary only gets what the primary left over. In streaming
    mode the switch only happens before any output has been produced.
    """

    def __init__(self, primary: BackendExecutor, secondary: BackendExecutor) -> None:
        self.primary = primary
        self.secondary = secondary
        self.name = primary.name

    async def invoke(self, invocation: BackendInvocation) -> BackendOutput:
        deadline = Deadline(invocation.timeout_s)
        try:
            return await self.primary.invoke(invocation)
        except BackendInvocationError as e:
            if not is_retryable(e):
                raise
            remaining = deadline.remaining()
            if remaining <= 0:
                raise BackendTimeout(
                    timeout_message(invocation.timeout_s), strategy=self.primary.name
                ) from e
            logger.warning(
                "%s invocation failed (%s); retrying via %s with %.1fs left",
                self.primary.name,
                e.message,
                self.secondary.name,
                remaining,
            )
            return await self.secondary.invoke(replace(invocation, timeout_s=remaining))

    async def stream(self, invocation: BackendInvocation) -> AsyncIterator[BackendOutputEvent]:
        deadline = Deadline(invocation.timeout_s)
        switch = False
        async with aclosing(self.primary.stream(invocation)) as events:
            started = False
            async for ev in events:
                if not started and isinstance(ev, ErrorEvent) and ev.retryable:
                    logger.warning(
                        "%s stream failed before output (%s); retrying via %s",
                        self.primary.name,
                        ev.message,
                        self.secondary.name,
                    )
                    switch = True
                    break
                started = True
                yield ev

        if switch:
            remaining = deadline.remaining()
            if remaining <= 0:
                yield ErrorEvent(timeout_message(invocation.timeout_s), kind="timeout")
                return
            retry = replace(invocation, timeout_s=remaining)
            async with aclosing(self.secondary.stream(retry)) as events:
                async for ev in events:
                    yield ev
