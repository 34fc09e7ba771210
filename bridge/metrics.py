"""In-memory per-endpoint request metrics."""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass


@dataclass
class EndpointMetrics:
    total: int = 0
    successful: int = 0
    failed: int = 0
    total_duration_ms: float = 0.0

    @property
    def avg_duration_ms(self) -> float:
        done = self.successful + self.failed
        return self.total_duration_ms / done if done else 0.0


class MetricsCollector:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._endpoints: dict[str, EndpointMetrics] = {}
        self.started_at = time.time()

    def record(self, endpoint: str, *, success: bool, duration_ms: float) -> None:
        with self._lock:
            m = self._endpoints.setdefault(endpoint, EndpointMetrics())
            m.total += 1
            m.total_duration_ms += duration_ms
            if success:
                m.successful += 1
            else:
                m.failed += 1

    def snapshot(self) -> dict[str, dict[str, float]]:
        with self._lock:
            return {
                ep: {**asdict(m), "avg_duration_ms": round(m.avg_duration_ms, 2)}
                for ep, m in self._endpoints.items()
            }

    def uptime_s(self) -> float:
        return time.time() - self.started_at


def format_prometheus(snapshot: dict[str, dict[str, float]]) -> str:
    series = (
        ("bridge_requests_total", "counter", "Total number of requests", "total"),
        ("bridge_requests_successful_total", "counter", "Number of successful requests", "successful"),
        ("bridge_requests_failed_total", "counter", "Number of failed requests", "failed"),
        ("bridge_request_duration_ms_avg", "gauge", "Average request duration in ms", "avg_duration_ms"),
    )
    lines: list[str] = []
    for name, kind, help_text, field in series:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {kind}")
        for ep, m in sorted(snapshot.items()):
            lines.append(f'{name}{{endpoint="{ep}"}} {m[field]}')
    return "\n".join(lines) + "\n"
