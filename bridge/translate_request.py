"""Chat-completions request → backend invocation."""

from __future__ import annotations

from typing import Any

from .config import Settings
from .models import BackendInvocation, ChatCompletionsRequest, ChatMessage
from .routing import Route

DEFAULT_TEMPERATURE = 0.7


def image_note(count: int) -> str:
    return f"[Note: {count} image(s) were included but cannot be processed]"


def flatten_content(msg: ChatMessage) -> str:
    """Join text parts; images become a note since the backend path takes text only."""
    text = " ".join(t for t in msg.text_parts() if t)
    n = msg.image_count()
    if n:
        note = image_note(n)
        text = f"{text} {note}" if text else note
    return text


def calculate_max_turns(request: ChatCompletionsRequest, ceiling: int) -> int:
    """Longer conversations get more agent turns, never above the configured ceiling."""
    count = len(request.messages)
    if count > 10:
        turns = 10
    elif count > 5:
        turns = 7
    else:
        turns = 5
    return max(1, min(turns, ceiling))


def merge_system(messages: list[ChatMessage]) -> str | None:
    parts = [flatten_content(m) for m in messages if m.role == "system"]
    parts = [p for p in parts if p]
    return "\n\n".join(parts) if parts else None


def build_prompt(messages: list[ChatMessage], system: str | None) -> str:
    """Serialize the conversation into a single prompt for the CLI."""
    parts: list[str] = []
    if system:
        parts.append(f"System: {system}")
    for m in messages:
        if m.role == "system":
            continue
        content = flatten_content(m)
        if m.role == "user":
            parts.append(f"Human: {content}")
        elif m.role == "assistant":
            parts.append(f"Assistant: {content}")
        else:
            parts.append(f"Function {m.name or 'function'}: {content}")
    return "\n\n".join(parts)


def build_api_messages(messages: list[ChatMessage]) -> tuple[dict[str, Any], ...]:
    """Alternating user/assistant turns for the Messages API.

    Function results are folded into the user side and consecutive turns of
    the same role are merged.
    """
    out: list[dict[str, Any]] = []
    for m in messages:
        if m.role == "system":
            continue
        role = "assistant" if m.role == "assistant" else "user"
        content = flatten_content(m)
        if m.role == "function":
            content = f"Function {m.name or 'function'} returned: {content}"
        if out and out[-1]["role"] == role:
            out[-1] = {"role": role, "content": f"{out[-1]['content']}\n\n{content}"}
        else:
            out.append({"role": role, "content": content})
    if not out or out[0]["role"] != "user":
        out.insert(0, {"role": "user", "content": "(continue)"})
    return tuple(out)


def build_invocation(
    request: ChatCompletionsRequest,
    route: Route,
    settings: Settings,
) -> BackendInvocation:
    messages = list(request.messages)
    system = merge_system(messages)

    images = sum(m.image_count() for m in messages)
    notes: tuple[str, ...] = ()
    if images:
        notes = (image_note(images),)

    temperature = DEFAULT_TEMPERATURE if request.temperature is None else request.temperature

    return BackendInvocation(
        client_model=request.model,
        target_model=route.backend_model,
        prompt=build_prompt(messages, system),
        messages=build_api_messages(messages),
        system=system,
        working_directory=str(settings.working_directory),
        max_turns=calculate_max_turns(request, settings.max_turns),
        timeout_s=settings.backend_timeout_s,
        max_tokens=request.max_tokens or settings.default_max_tokens,
        temperature=min(1.0, max(0.0, temperature)),
        stop_sequences=tuple(request.stop_sequences()),
        notes=notes,
    )
