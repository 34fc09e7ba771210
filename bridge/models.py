"""Wire schemas for the chat-completions surface and internal backend types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "function"]
FinishReason = Literal["stop", "length", "error"]


class ImageURL(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    detail: Literal["low", "high", "auto"] | None = None


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str = ""


class ImagePart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


ContentPart = Union[TextPart, ImagePart]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | list[ContentPart] = Field(default="")
    name: str | None = None

    def text_parts(self) -> list[str]:
        if isinstance(self.content, str):
            return [self.content]
        return [p.text for p in self.content if isinstance(p, TextPart)]

    def image_count(self) -> int:
        if isinstance(self.content, str):
            return 0
        return sum(1 for p in self.content if isinstance(p, ImagePart))


class ChatCompletionsRequest(BaseModel):
    model: str = Field(min_length=1)
    messages: list[ChatMessage] = Field(min_length=1)
    stream: bool = False
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0, le=2)
    stop: str | list[str] | None = None

    # Accepted for compatibility, not forwarded.
    top_p: float | None = Field(default=None, ge=0, le=1)
    n: int | None = Field(default=None, ge=1, le=1)
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    user: str | None = None

    def stop_sequences(self) -> list[str]:
        if self.stop is None:
            return []
        if isinstance(self.stop, str):
            return [self.stop]
        return list(self.stop)


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class Choice(BaseModel):
    index: int = 0
    message: AssistantMessage
    finish_reason: FinishReason


class ChatCompletionsResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: list[Choice]
    usage: Usage
    system_fingerprint: str | None = None


class Delta(BaseModel):
    role: Literal["assistant"] | None = None
    content: str | None = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: Delta
    finish_reason: FinishReason | None = None


class ErrorBody(BaseModel):
    message: str
    type: str
    param: str | None = None
    code: str | None = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChunkChoice]
    error: ErrorBody | None = None


class ErrorResponse(BaseModel):
    error: ErrorBody


# Internal backend types


@dataclass(frozen=True)
class BackendInvocation:
    client_model: str
    target_model: str
    prompt: str
    messages: tuple[dict[str, Any], ...]
    system: str | None
    working_directory: str
    max_turns: int
    timeout_s: float
    max_tokens: int
    temperature: float
    stop_sequences: tuple[str, ...] = ()
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class BackendUsage:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class BackendOutput:
    text: str
    finish_reason: str = "stop"
    usage: BackendUsage | None = None
    session_id: str | None = None
    strategy: str | None = None


@dataclass(frozen=True)
class TextEvent:
    content: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    kind: str = "backend"  # "backend" | "timeout" | "quota"

    @property
    def retryable(self) -> bool:
        return self.kind == "backend"


@dataclass(frozen=True)
class ResultEvent:
    output: BackendOutput = field(default_factory=lambda: BackendOutput(text=""))


BackendOutputEvent = Union[TextEvent, ErrorEvent, ResultEvent]
