import asyncio
import json
from collections.abc import AsyncIterator

import pytest
from fastapi.testclient import TestClient

from bridge import main
from bridge.backends.base import BackendExecutor
from bridge.limits import SlidingWindowRateLimiter
from bridge.models import (
    BackendInvocation,
    BackendOutput,
    BackendOutputEvent,
    ErrorEvent,
    ResultEvent,
    TextEvent,
)


class StubExecutor(BackendExecutor):
    """Deterministic backend: the stream yields ``pieces`` then a result with their join."""

    def __init__(
        self,
        pieces: tuple[str, ...] = ("Hi", " there"),
        *,
        name: str = "stub",
        error: Exception | None = None,
        stream_events: list[BackendOutputEvent] | None = None,
    ) -> None:
        self.pieces = pieces
        self.name = name
        self.error = error
        self.stream_events = stream_events
        self.invocations: list[BackendInvocation] = []
        self.closed = False

    async def invoke(self, invocation: BackendInvocation) -> BackendOutput:
        self.invocations.append(invocation)
        if self.error is not None:
            raise self.error
        return BackendOutput(text="".join(self.pieces), strategy=self.name)

    async def stream(self, invocation: BackendInvocation) -> AsyncIterator[BackendOutputEvent]:
        self.invocations.append(invocation)
        try:
            if self.stream_events is not None:
                for ev in self.stream_events:
                    yield ev
                return
            for p in self.pieces:
                yield TextEvent(p)
            yield ResultEvent(BackendOutput(text="".join(self.pieces), strategy=self.name))
        finally:
            self.closed = True


class StubFactory:
    def __init__(self, executor: BackendExecutor) -> None:
        self.executor = executor
        self.routes = []

    def for_route(self, route):
        self.routes.append(route)
        return self.executor


def collect(agen) -> list:
    async def _run() -> list:
        return [x async for x in agen]

    return asyncio.run(_run())


def sse_frames(text: str) -> list[str]:
    return [f for f in text.split("\n\n") if f]


def sse_payloads(text: str) -> list[dict]:
    out = []
    for frame in sse_frames(text):
        assert frame.startswith("data: ")
        body = frame[len("data: ") :]
        if body != "[DONE]":
            out.append(json.loads(body))
    return out


@pytest.fixture
def stub_executor() -> StubExecutor:
    return StubExecutor()


@pytest.fixture
def client(stub_executor: StubExecutor):
    limiter = SlidingWindowRateLimiter(window_s=60, max_requests=1000)
    main.app.dependency_overrides[main.get_executor_factory] = lambda: StubFactory(stub_executor)
    main.app.dependency_overrides[main.get_rate_limiter] = lambda: limiter
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def hello_body(**extra) -> dict:
    body = {"model": "gpt-4", "messages": [{"role": "user", "content": "Hello"}], "stream": False}
    body.update(extra)
    return body


def error_events(kind: str = "backend") -> list[BackendOutputEvent]:
    return [ErrorEvent("raw backend failure", kind=kind)]
