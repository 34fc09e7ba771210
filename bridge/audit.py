"""Audit event model and JSON-line emission through the ``bridge.audit`` logger."""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class AuditEvent:
    request_id: str
    ts_ms: int
    client: str
    path: str
    status_code: int
    latency_ms: int
    client_model: str | None = None
    backend_model: str | None = None
    strategy: str | None = None
    stream: bool = False
    estimated_input_tokens: int = 0
    estimated_output_tokens: int = 0
    prompt_fingerprint_sha256: str | None = None
    prompt: str | None = None
    error: str | None = None


class AuditLogger:
    def __init__(self, logger: logging.Logger | None = None, *, store_prompt: bool = False) -> None:
        self.logger = logger or logging.getLogger("bridge.audit")
        self.store_prompt = store_prompt

    def new_request_id(self) -> str:
        return uuid.uuid4().hex

    def write(self, ev: AuditEvent) -> None:
        data = dict(ev.__dict__)
        if not self.store_prompt:
            data.pop("prompt", None)
        level = logging.INFO if ev.status_code < 500 else logging.WARNING
        self.logger.log(level, json.dumps(data, ensure_ascii=False))


def now_ms() -> int:
    return int(time.time() * 1000)


def prompt_fingerprint(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
