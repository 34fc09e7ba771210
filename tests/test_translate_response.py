import json

from conftest import collect, sse_frames

from bridge.models import (
    BackendInvocation,
    BackendOutput,
    BackendUsage,
    ChatCompletionsRequest,
    ErrorEvent,
    ResultEvent,
    TextEvent,
)
from bridge.translate_response import (
    DONE,
    CharacterUsageEstimator,
    build_chat_response,
    sse_stream,
    translate_stream,
)

REQUEST = ChatCompletionsRequest(model="gpt-4", messages=[{"role": "user", "content": "Hello"}])


def _invocation(notes: tuple[str, ...] = ()) -> BackendInvocation:
    return BackendInvocation(
        client_model="gpt-4",
        target_model="claude-3-5-sonnet-20241022",
        prompt="Human: Hello",
        messages=({"role": "user", "content": "Hello"},),
        system=None,
        working_directory="/tmp",
        max_turns=5,
        timeout_s=30,
        max_tokens=2048,
        temperature=0.7,
        notes=notes,
    )


async def _events(*events):
    for ev in events:
        yield ev


async def _exploding():
    yield TextEvent("partial")
    raise RuntimeError("pipe broke")


def test_estimator_is_character_based() -> None:
    est = CharacterUsageEstimator()
    assert est.count("") == 0
    assert est.count("abc") == 1
    assert est.count("a" * 9) == 3


def test_chat_response_estimates_usage() -> None:
    resp = build_chat_response(BackendOutput(text="Hi there"), REQUEST, _invocation())
    assert resp.model == "gpt-4"
    assert resp.choices[0].message.content == "Hi there"
    assert resp.choices[0].finish_reason == "stop"
    assert resp.usage.prompt_tokens == 3
    assert resp.usage.completion_tokens == 2
    assert resp.usage.total_tokens == 5
    assert resp.id.startswith("chatcmpl-")


def test_chat_response_prefers_exact_usage_and_length() -> None:
    out = BackendOutput(
        text="cut", finish_reason="length", usage=BackendUsage(11, 7), session_id="sess-1"
    )
    resp = build_chat_response(out, REQUEST, _invocation())
    assert resp.usage.model_dump() == {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18}
    assert resp.choices[0].finish_reason == "length"
    assert resp.system_fingerprint == "sess-1"


def test_stream_order_and_single_terminal() -> None:
    chunks = collect(
        translate_stream(
            _events(TextEvent("Hi"), TextEvent(" there"), ResultEvent(BackendOutput(text="Hi there"))),
            REQUEST,
            _invocation(),
            response_id="chatcmpl-x",
        )
    )
    assert chunks[0].choices[0].delta.role == "assistant"
    assert chunks[0].choices[0].delta.content == ""
    assert [c.choices[0].delta.content for c in chunks[1:-1]] == ["Hi", " there"]
    assert [c.choices[0].finish_reason for c in chunks] == [None, None, None, "stop"]
    assert {c.id for c in chunks} == {"chatcmpl-x"}
    assert all(c.model == "gpt-4" for c in chunks)


def test_result_text_used_when_nothing_streamed() -> None:
    chunks = collect(
        translate_stream(
            _events(ResultEvent(BackendOutput(text="Hi there", finish_reason="length"))),
            REQUEST,
            _invocation(),
        )
    )
    assert [c.choices[0].delta.content for c in chunks[1:-1]] == ["Hi there"]
    assert chunks[-1].choices[0].finish_reason == "length"


def test_error_event_yields_diagnostic_then_terminal() -> None:
    chunks = collect(
        translate_stream(
            _events(TextEvent("Hi"), ErrorEvent("stderr: segfault at 0x0"), TextEvent("never")),
            REQUEST,
            _invocation(),
        )
    )
    assert [c.choices[0].finish_reason for c in chunks] == [None, None, None, "error"]
    diag = chunks[2]
    assert diag.error is not None
    assert diag.error.type == "backend_error"
    assert "segfault" not in diag.error.message


def test_timeout_and_quota_error_types() -> None:
    timeout = collect(
        translate_stream(_events(ErrorEvent("timed out after 5s", kind="timeout")), REQUEST, _invocation())
    )
    assert timeout[-2].error.type == "timeout_error"
    quota = collect(
        translate_stream(_events(ErrorEvent("Credit balance is too low", kind="quota")), REQUEST, _invocation())
    )
    assert quota[-2].error.type == "insufficient_quota"


def test_unexpected_exception_still_terminates() -> None:
    chunks = collect(translate_stream(_exploding(), REQUEST, _invocation()))
    assert chunks[1].choices[0].delta.content == "partial"
    assert chunks[-1].choices[0].finish_reason == "error"
    assert sum(1 for c in chunks if c.choices[0].finish_reason) == 1


def test_notes_are_streamed_last() -> None:
    note = "[Note: 1 image(s) were included but cannot be processed]"
    chunks = collect(translate_stream(_events(TextEvent("Hi")), REQUEST, _invocation((note,))))
    text = "".join(c.choices[0].delta.content or "" for c in chunks)
    plain = build_chat_response(BackendOutput(text="Hi"), REQUEST, _invocation((note,)))
    assert text == plain.choices[0].message.content == f"Hi\n\n{note}"


def test_sse_framing_ends_with_done_even_on_error() -> None:
    frames = collect(
        sse_stream(translate_stream(_events(ErrorEvent("boom")), REQUEST, _invocation()))
    )
    assert frames[-1] == DONE
    assert all(f.endswith("\n\n") for f in frames)

    parsed = [json.loads(f[len("data: ") :]) for f in frames[:-1]]
    assert "error" not in parsed[0]
    assert parsed[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert parsed[-1]["choices"][0] == {"index": 0, "delta": {}, "finish_reason": "error"}
    assert parsed[-2]["error"]["type"] == "backend_error"
    assert sse_frames("".join(frames))[-1] == "data: [DONE]"
