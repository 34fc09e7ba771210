"""Environment-backed settings and model-rule / API-key loading utilities."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

BALANCED_MODEL = "claude-3-5-sonnet-20241022"
FAST_MODEL = "claude-3-5-haiku-20241022"


@dataclass(frozen=True)
class ModelRule:
    match: str
    target: str
    kind: str = "exact"  # "exact" | "contains" | "prefix"
    listed: bool = False

    def matches(self, name: str) -> bool:
        n = name.lower()
        m = self.match.lower()
        if self.kind == "contains":
            return m in n
        if self.kind == "prefix":
            return n.startswith(m)
        return n == m


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    if raw.startswith("["):
        return tuple(str(k).strip() for k in json.loads(raw) if str(k).strip())
    return tuple(k.strip() for k in raw.split(",") if k.strip())


@dataclass(frozen=True)
class Settings:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    anthropic_api_key: str | None = os.getenv("ANTHROPIC_API_KEY") or None
    backend_strategy: str = os.getenv("BACKEND_STRATEGY", "auto")
    claude_cli_path: str = os.getenv("CLAUDE_CLI_PATH", "claude")
    working_directory: Path = Path(os.getenv("WORKING_DIRECTORY", os.getcwd()))
    max_turns: int = int(os.getenv("MAX_TURNS", "10"))
    backend_timeout_s: float = float(os.getenv("BACKEND_TIMEOUT_S", "300"))
    default_max_tokens: int = int(os.getenv("DEFAULT_MAX_TOKENS", "2048"))
    default_backend_model: str = os.getenv("DEFAULT_BACKEND_MODEL", BALANCED_MODEL)
    cli_accept_nonzero_exit: bool = _env_bool("CLI_ACCEPT_NONZERO_EXIT", "1")

    rate_limit_window_s: float = float(os.getenv("RATE_LIMIT_WINDOW_S", "60"))
    rate_limit_max_requests: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))

    max_content_chars: int = int(os.getenv("MAX_CONTENT_CHARS", "50000"))
    max_request_bytes: int = int(os.getenv("MAX_REQUEST_BYTES", str(2 * 1024 * 1024)))

    allowed_api_keys: tuple[str, ...] = field(default_factory=lambda: _env_list("ALLOWED_API_KEYS"))
    audit_store_prompt: bool = _env_bool("AUDIT_STORE_PROMPT", "0")


def default_model_rules() -> list[ModelRule]:
    """Built-in routing table, evaluated top to bottom."""
    return [
        ModelRule("gpt-4", BALANCED_MODEL, listed=True),
        ModelRule("gpt-4-turbo", BALANCED_MODEL, listed=True),
        ModelRule("gpt-4o", BALANCED_MODEL, listed=True),
        ModelRule("gpt-3.5-turbo", FAST_MODEL, listed=True),
        ModelRule("gpt-4o-mini", FAST_MODEL, listed=True),
        ModelRule("gpt-4-legacy", "claude-3-opus-20240229"),
        ModelRule("gpt-3.5-turbo-legacy", "claude-3-haiku-20240307"),
        ModelRule("claude-", "", kind="prefix"),
        ModelRule("mini", FAST_MODEL, kind="contains"),
        ModelRule("turbo", FAST_MODEL, kind="contains"),
        ModelRule("3.5", FAST_MODEL, kind="contains"),
        ModelRule("haiku", FAST_MODEL, kind="contains"),
        ModelRule("opus", "claude-3-opus-20240229", kind="contains"),
    ]


def load_model_rules() -> list[ModelRule]:
    raw = os.getenv("MODEL_RULES_JSON")
    if not raw:
        return default_model_rules()
    rules: list[ModelRule] = []
    for it in json.loads(raw):
        rules.append(
            ModelRule(
                match=str(it["match"]),
                target=str(it.get("target", "")),
                kind=str(it.get("kind", "exact")),
                listed=bool(it.get("listed", it.get("kind", "exact") == "exact")),
            )
        )
    return rules
