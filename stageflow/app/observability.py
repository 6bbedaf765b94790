from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("stageflow")

PREFIX = "stageflow"


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    transitions_total: int


def _block(name: str, kind: str, help_text: str, samples: list[tuple[str, object]]) -> list[str]:
    lines = [f"# HELP {PREFIX}_{name} {help_text}", f"# TYPE {PREFIX}_{name} {kind}"]
    lines.extend(f"{PREFIX}_{name}{labels} {value}" for labels, value in samples)
    return lines


class MetricsRegistry:
    """Process-local counters rendered in the Prometheus text format."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: Counter[tuple[str, int]] = Counter()
        self._transitions: Counter[str] = Counter()
        self._stage_emails: Counter[str] = Counter()

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            self._by_route_status[(route, status_code)] += 1

    def record_transition(self, to_stage: str) -> None:
        with self._lock:
            self._transitions[to_stage] += 1

    def record_notification(self, outcome: str) -> None:
        # outcome: sent, failed, skipped or disabled
        with self._lock:
            self._stage_emails[outcome] += 1

    def notification_count(self, outcome: str) -> int:
        with self._lock:
            return self._stage_emails[outcome]

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                transitions_total=sum(self._transitions.values()),
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        with self._lock:
            routes = sorted(self._by_route_status.items())
            transitions = sorted(self._transitions.items())
            emails = sorted(self._stage_emails.items())

        lines: list[str] = []
        lines += _block("requests_total", "counter", "Total HTTP requests", [("", snap.requests_total)])
        lines += _block(
            "requests_5xx_total", "counter", "Total 5xx HTTP requests", [("", snap.requests_5xx)]
        )
        lines += _block(
            "request_avg_latency_ms",
            "gauge",
            "Average request latency ms",
            [("", f"{avg_latency:.2f}")],
        )
        lines += _block(
            "route_requests_total",
            "counter",
            "HTTP requests by route template and status",
            [(f'{{route="{route}",status="{code}"}}', count) for (route, code), count in routes],
        )
        lines += _block(
            "stage_transitions_total",
            "counter",
            "Candidate stage transitions by target stage",
            [(f'{{to_stage="{stage}"}}', count) for stage, count in transitions],
        )
        lines += _block(
            "stage_emails_total",
            "counter",
            "Stage notification outcomes",
            [(f'{{outcome="{outcome}"}}', count) for outcome, count in emails],
        )
        return "\n".join(lines) + "\n"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _route_label(request: Request) -> str:
    # Path templates keep candidate and job ids out of the metric labels.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=_route_label(request), status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            latency_ms,
        )
        raise

    latency_ms = (time.perf_counter() - start) * 1000.0
    metrics.record(route=_route_label(request), status_code=response.status_code, latency_ms=latency_ms)
    logger.info(
        "request_complete method=%s path=%s status=%s latency_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response
