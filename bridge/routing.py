"""Client model name → backend model + invocation strategy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .config import ModelRule, Settings, load_model_rules
from .security import sanitize_model_name

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    API = "api"
    CLI = "cli"


@dataclass(frozen=True)
class Route:
    client_model: str
    backend_model: str
    strategy: Strategy
    fallback: Strategy | None


def select_strategy(settings: Settings) -> tuple[Strategy, Strategy | None]:
    """Pick the primary strategy and the fallback that is actually usable.

    The API needs a credential; the CLI is always assumed installed.
    """
    has_key = bool(settings.anthropic_api_key)
    choice = settings.backend_strategy.lower()
    if choice == "cli":
        return Strategy.CLI, (Strategy.API if has_key else None)
    if choice == "api" and has_key:
        return Strategy.API, Strategy.CLI
    if choice == "api":
        logger.warning("BACKEND_STRATEGY=api without ANTHROPIC_API_KEY; using the CLI")
        return Strategy.CLI, None
    if has_key:
        return Strategy.API, Strategy.CLI
    return Strategy.CLI, None


class ModelRouter:
    """Ordered (predicate, target) rules ending in a fixed default.

    A rule with an empty target passes the (sanitised) name through as-is.
    Resolution never fails.
    """

    def __init__(self, rules: list[ModelRule], *, default_model: str, settings: Settings) -> None:
        self.rules = list(rules)
        self.default_model = default_model
        self.settings = settings
        self.strategy, self.fallback = select_strategy(settings)

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelRouter:
        return cls(
            load_model_rules(),
            default_model=settings.default_backend_model,
            settings=settings,
        )

    def map_model(self, client_model: str) -> str:
        name = sanitize_model_name(client_model)
        for rule in self.rules:
            if rule.matches(name):
                return rule.target or name
        return self.default_model

    def resolve(self, client_model: str) -> Route:
        backend_model = self.map_model(client_model)
        logger.debug(
            "routed model %r -> %s via %s", client_model, backend_model, self.strategy.value
        )
        return Route(
            client_model=client_model,
            backend_model=backend_model,
            strategy=self.strategy,
            fallback=self.fallback,
        )

    def list_models(self) -> list[dict[str, object]]:
        out: list[dict[str, object]] = []
        for rule in self.rules:
            if rule.kind != "exact" or not rule.listed:
                continue
            out.append(
                {
                    "id": rule.match,
                    "object": "model",
                    "created": 1686935002,
                    "owned_by": "bridge",
                    "description": f"Maps to {rule.target or rule.match}",
                }
            )
        return out
