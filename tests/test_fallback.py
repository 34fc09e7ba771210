import asyncio
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import StubExecutor, collect

from bridge.backends.api import ApiExecutor
from bridge.backends.base import BackendExecutor, FallbackExecutor
from bridge.backends.cli import CliExecutor
from bridge.backends.factory import ExecutorFactory
from bridge.config import Settings
from bridge.errors import BackendInvocationError, BackendTimeout, QuotaExhaustedError
from bridge.models import BackendInvocation, BackendOutput, ErrorEvent, ResultEvent, TextEvent
from bridge.routing import Route, Strategy

INVOCATION = BackendInvocation(
    client_model="gpt-4",
    target_model="claude-3-5-sonnet-20241022",
    prompt="Human: Hello",
    messages=({"role": "user", "content": "Hello"},),
    system=None,
    working_directory="/tmp",
    max_turns=5,
    timeout_s=10.0,
    max_tokens=2048,
    temperature=0.7,
)


def test_invoke_retries_generic_failure_on_secondary() -> None:
    primary = StubExecutor(name="api", error=BackendInvocationError("overloaded"))
    secondary = StubExecutor(("from cli",), name="cli")
    out = asyncio.run(FallbackExecutor(primary, secondary).invoke(INVOCATION))
    assert out.text == "from cli"
    assert len(primary.invocations) == len(secondary.invocations) == 1


@pytest.mark.parametrize(
    "error",
    [QuotaExhaustedError("Credit balance is too low"), BackendTimeout("timed out")],
)
def test_terminal_failures_are_not_retried(error: BackendInvocationError) -> None:
    primary = StubExecutor(name="api", error=error)
    secondary = StubExecutor(name="cli")
    with pytest.raises(type(error)):
        asyncio.run(FallbackExecutor(primary, secondary).invoke(INVOCATION))
    assert secondary.invocations == []


def test_secondary_failure_propagates() -> None:
    primary = StubExecutor(name="api", error=BackendInvocationError("down"))
    secondary = StubExecutor(name="cli", error=BackendInvocationError("also down"))
    with pytest.raises(BackendInvocationError, match="also down"):
        asyncio.run(FallbackExecutor(primary, secondary).invoke(INVOCATION))


def test_stream_switches_before_output() -> None:
    primary = StubExecutor(name="api", stream_events=[ErrorEvent("connection refused")])
    secondary = StubExecutor(("Hi",), name="cli")
    events = collect(FallbackExecutor(primary, secondary).stream(INVOCATION))
    assert events[0] == TextEvent("Hi")
    assert isinstance(events[-1], ResultEvent)
    assert primary.closed and secondary.closed


def test_stream_does_not_switch_after_output() -> None:
    primary = StubExecutor(name="api", stream_events=[TextEvent("Hi"), ErrorEvent("reset")])
    secondary = StubExecutor(name="cli")
    events = collect(FallbackExecutor(primary, secondary).stream(INVOCATION))
    assert events == [TextEvent("Hi"), ErrorEvent("reset")]
    assert secondary.invocations == []


@pytest.mark.parametrize("kind", ["quota", "timeout"])
def test_stream_terminal_errors_are_not_retried(kind: str) -> None:
    primary = StubExecutor(name="api", stream_events=[ErrorEvent("no", kind=kind)])
    secondary = StubExecutor(name="cli")
    events = collect(FallbackExecutor(primary, secondary).stream(INVOCATION))
    assert events == [ErrorEvent("no", kind=kind)]
    assert secondary.invocations == []


def test_factory_wires_routes(tmp_path: Path) -> None:
    factory = ExecutorFactory(Settings(anthropic_api_key="sk-test", working_directory=tmp_path))

    plain = factory.for_route(Route("gpt-4", "claude-x", Strategy.CLI, None))
    assert isinstance(plain, CliExecutor)

    chained = factory.for_route(Route("gpt-4", "claude-x", Strategy.API, Strategy.CLI))
    assert isinstance(chained, FallbackExecutor)
    assert isinstance(chained.primary, ApiExecutor)
    assert chained.secondary is plain
    assert factory.executor(Strategy.API) is chained.primary


def test_factory_refuses_api_without_key() -> None:
    with pytest.raises(ValueError):
        ExecutorFactory(Settings(anthropic_api_key=None)).executor(Strategy.API)


class SlowExecutor(BackendExecutor):
    """Sleeps ``delay`` then answers or fails; records the timeout it was given."""

    def __init__(self, delay: float, *, name: str, error: Exception | None = None) -> None:
        self.delay = delay
        self.name = name
        self.error = error
        self.timeouts: list[float] = []

    async def _wait(self, invocation: BackendInvocation) -> None:
        self.timeouts.append(invocation.timeout_s)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def invoke(self, invocation: BackendInvocation) -> BackendOutput:
        await self._wait(invocation)
        return BackendOutput(text="ok", strategy=self.name)

    async def stream(self, invocation: BackendInvocation):
        try:
            await self._wait(invocation)
        except BackendInvocationError as e:
            yield ErrorEvent(e.message)
            return
        yield TextEvent("ok")


def test_secondary_gets_only_the_remaining_time() -> None:
    primary = SlowExecutor(0.3, name="api", error=BackendInvocationError("overloaded"))
    secondary = SlowExecutor(0.0, name="cli")
    inv = replace(INVOCATION, timeout_s=1.0)

    assert asyncio.run(FallbackExecutor(primary, secondary).invoke(inv)).text == "ok"
    assert primary.timeouts == [1.0]
    assert 0 < secondary.timeouts[0] <= 0.75

    secondary.timeouts.clear()
    assert collect(FallbackExecutor(primary, secondary).stream(inv)) == [TextEvent("ok")]
    assert 0 < secondary.timeouts[0] <= 0.75


def test_no_retry_once_the_deadline_has_passed() -> None:
    primary = SlowExecutor(0.3, name="api", error=BackendInvocationError("overloaded"))
    secondary = SlowExecutor(0.0, name="cli")
    inv = replace(INVOCATION, timeout_s=0.2)

    with pytest.raises(BackendTimeout):
        asyncio.run(FallbackExecutor(primary, secondary).invoke(inv))

    events = collect(FallbackExecutor(primary, secondary).stream(inv))
    assert len(events) == 1 and events[0].kind == "timeout"
    assert secondary.timeouts == []
