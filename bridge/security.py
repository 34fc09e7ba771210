"""Content validation, model-name sanitising and client identification."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

from .errors import ValidationError
from .models import ChatCompletionsRequest


@dataclass(frozen=True)
class ContentCheck:
    valid: bool
    reason: str | None = None


_SUSPICIOUS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("script_tag", re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)),
    ("javascript_uri", re.compile(r"javascript:", re.IGNORECASE)),
    ("event_handler", re.compile(r"\bon\w+\s*=", re.IGNORECASE)),
    ("eval_call", re.compile(r"\beval\s*\(", re.IGNORECASE)),
    ("document_cookie", re.compile(r"document\.cookie", re.IGNORECASE)),
)

_MODEL_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9\-._]")


def check_content(text: str, *, max_chars: int) -> ContentCheck:
    if not text:
        return ContentCheck(False, "Empty content")
    if len(text) > max_chars:
        return ContentCheck(False, "Content too long")
    for _, pat in _SUSPICIOUS:
        if pat.search(text):
            return ContentCheck(False, "Potentially malicious content detected")
    return ContentCheck(True)


def validate_content(text: str, *, max_chars: int, param: str | None = None) -> None:
    res = check_content(text, max_chars=max_chars)
    if not res.valid:
        raise ValidationError(res.reason or "Invalid content", param=param)


def validate_chat_request(request: ChatCompletionsRequest, *, max_chars: int) -> None:
    """Reject the request before any backend work if a message is unacceptable.

    Every text part is checked on its own; a message made only of images has
    nothing to check. A message with no text and no images is rejected as
    empty.
    """
    for i, msg in enumerate(request.messages):
        param = f"messages[{i}].content"
        texts = [t for t in msg.text_parts() if t]
        if not texts and msg.image_count() == 0:
            raise ValidationError("Empty content", param=param)
        for t in texts:
            validate_content(t, max_chars=max_chars, param=param)


def sanitize_model_name(model: str) -> str:
    return _MODEL_NAME_UNSAFE.sub("", model)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    token = re.sub(r"^Bearer\s+", "", authorization.strip(), flags=re.IGNORECASE).strip()
    return token or None


def client_id(headers: Mapping[str, str], peer: str | None, api_key: str | None = None) -> str:
    """Identify the caller for rate limiting: API key first, then proxy headers."""
    if api_key:
        return f"key:{api_key}"
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    for h in ("x-real-ip", "cf-connecting-ip"):
        v = headers.get(h)
        if v and v.strip():
            return v.strip()
    return (peer or "").strip() or "unknown"
