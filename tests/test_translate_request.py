from pathlib import Path

from bridge.config import Settings
from bridge.models import ChatCompletionsRequest
from bridge.routing import Route, Strategy
from bridge.translate_request import build_invocation, calculate_max_turns

ROUTE = Route(
    client_model="gpt-4",
    backend_model="claude-3-5-sonnet-20241022",
    strategy=Strategy.CLI,
    fallback=None,
)


def _settings(**kw) -> Settings:
    base = dict(working_directory=Path("/srv/work"), max_turns=10, backend_timeout_s=42.0)
    base.update(kw)
    return Settings(**base)


def _request(messages, **kw) -> ChatCompletionsRequest:
    return ChatCompletionsRequest(model="gpt-4", messages=messages, **kw)


def test_system_messages_merge_into_leading_block() -> None:
    req = _request(
        [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi!"},
            {"role": "system", "content": "Answer in French."},
            {"role": "user", "content": "How are you?"},
        ]
    )
    inv = build_invocation(req, ROUTE, _settings())

    assert inv.system == "Be brief.\n\nAnswer in French."
    assert inv.prompt == (
        "System: Be brief.\n\nAnswer in French.\n\n"
        "Human: Hello\n\n"
        "Assistant: Hi!\n\n"
        "Human: How are you?"
    )
    assert inv.messages == (
        {"role": "user", "content": "Hello"},
        {"role": "assistant", "content": "Hi!"},
        {"role": "user", "content": "How are you?"},
    )


def test_images_become_notes() -> None:
    req = _request(
        [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Compare"},
                    {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                    {"type": "text", "text": "these"},
                    {"type": "image_url", "image_url": {"url": "https://e.x/b.png", "detail": "low"}},
                ],
            }
        ]
    )
    inv = build_invocation(req, ROUTE, _settings())
    note = "[Note: 2 image(s) were included but cannot be processed]"
    assert inv.prompt == f"Human: Compare these {note}"
    assert inv.notes == (note,)
    assert "base64" not in inv.prompt


def test_defaults_and_passthrough() -> None:
    inv = build_invocation(_request([{"role": "user", "content": "Hi"}]), ROUTE, _settings())
    assert inv.client_model == "gpt-4"
    assert inv.target_model == "claude-3-5-sonnet-20241022"
    assert inv.max_tokens == 2048
    assert inv.temperature == 0.7
    assert inv.timeout_s == 42.0
    assert inv.working_directory == "/srv/work"
    assert inv.stop_sequences == ()
    assert inv.notes == ()

    inv = build_invocation(
        _request([{"role": "user", "content": "Hi"}], max_tokens=10, temperature=1.6, stop="END"),
        ROUTE,
        _settings(),
    )
    assert inv.max_tokens == 10
    assert inv.temperature == 1.0
    assert inv.stop_sequences == ("END",)

    inv = build_invocation(
        _request([{"role": "user", "content": "Hi"}], temperature=0), ROUTE, _settings()
    )
    assert inv.temperature == 0.0


def test_max_turns_scale_with_conversation_and_respect_ceiling() -> None:
    def req(n: int) -> ChatCompletionsRequest:
        return _request([{"role": "user", "content": "x"}] * n)

    assert calculate_max_turns(req(1), 10) == 5
    assert calculate_max_turns(req(6), 10) == 7
    assert calculate_max_turns(req(11), 10) == 10
    assert calculate_max_turns(req(11), 3) == 3


def test_function_role_and_consecutive_turns() -> None:
    req = _request(
        [
            {"role": "assistant", "content": "Earlier answer"},
            {"role": "user", "content": "Run it"},
            {"role": "function", "name": "lookup", "content": "42"},
        ]
    )
    inv = build_invocation(req, ROUTE, _settings())
    assert "Function lookup: 42" in inv.prompt
    assert inv.messages == (
        {"role": "user", "content": "(continue)"},
        {"role": "assistant", "content": "Earlier answer"},
        {"role": "user", "content": "Run it\n\nFunction lookup returned: 42"},
    )
