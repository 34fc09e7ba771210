"""Strategy → executor wiring."""

from __future__ import annotations

from ..config import Settings
from ..routing import Route, Strategy
from .api import ApiExecutor
from .base import BackendExecutor, FallbackExecutor
from .cli import CliExecutor


class ExecutorFactory:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._executors: dict[Strategy, BackendExecutor] = {}

    def executor(self, strategy: Strategy) -> BackendExecutor:
        ex = self._executors.get(strategy)
        if ex is None:
            ex = self._build(strategy)
            self._executors[strategy] = ex
        return ex

    def _build(self, strategy: Strategy) -> BackendExecutor:
        if strategy is Strategy.API:
            if not self.settings.anthropic_api_key:
                raise ValueError("API strategy requires ANTHROPIC_API_KEY")
            return ApiExecutor(api_key=self.settings.anthropic_api_key)
        return CliExecutor(
            cli_path=self.settings.claude_cli_path,
            accept_nonzero_exit=self.settings.cli_accept_nonzero_exit,
        )

    def for_route(self, route: Route) -> BackendExecutor:
        primary = self.executor(route.strategy)
        if route.fallback is None:
            return primary
        return FallbackExecutor(primary, self.executor(route.fallback))
