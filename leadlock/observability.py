from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Optional

from fastapi import Request

from leadlock.models import ServiceMetricsModel, to_iso, utc_now

logger = logging.getLogger("leadlock")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float


class MetricsRegistry:
    """HTTP request counters plus the service counters reported by ``/api/status``."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}

        self.started_at = utc_now()
        self._webhook_events = 0
        self._ended_counted = 0
        self._queued = 0
        self._flushes = 0
        self._last_flush_at: Optional[datetime] = None
        self._unlock_sweeps = 0
        self._last_unlock_sweep_at: Optional[datetime] = None
        self._locked_total = 0
        self._unlocked_total = 0
        self._last_error: Optional[str] = None

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_webhook_event(self) -> None:
        with self._lock:
            self._webhook_events += 1

    def record_counted_event(self, queued: int = 1) -> None:
        with self._lock:
            self._ended_counted += 1
            self._queued += queued

    def record_flush(self, *, locked: int, at: datetime) -> None:
        with self._lock:
            self._flushes += 1
            self._locked_total += locked
            self._last_flush_at = at

    def record_sweep(self, *, unlocked: int, at: datetime) -> None:
        with self._lock:
            self._unlock_sweeps += 1
            self._unlocked_total += unlocked
            self._last_unlock_sweep_at = at

    def record_error(self, task: str, error: object) -> None:
        with self._lock:
            self._last_error = f"{task}: {error}"

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
            )

    def service_snapshot(self) -> ServiceMetricsModel:
        with self._lock:
            return ServiceMetricsModel(
                started_at=to_iso(self.started_at),
                webhook_events=self._webhook_events,
                ended_counted=self._ended_counted,
                queued=self._queued,
                flushes=self._flushes,
                last_flush_at=to_iso(self._last_flush_at) if self._last_flush_at else None,
                unlock_sweeps=self._unlock_sweeps,
                last_unlock_sweep_at=(
                    to_iso(self._last_unlock_sweep_at) if self._last_unlock_sweep_at else None
                ),
                locked_total=self._locked_total,
                unlocked_total=self._unlocked_total,
                last_error=self._last_error,
            )

    def to_prometheus(self, *, pending_phones: int = 0) -> str:
        snap = self.snapshot()
        service = self.service_snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP leadlock_requests_total Total HTTP requests",
            "# TYPE leadlock_requests_total counter",
            f"leadlock_requests_total {snap.requests_total}",
            "# HELP leadlock_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE leadlock_requests_5xx_total counter",
            f"leadlock_requests_5xx_total {snap.requests_5xx}",
            "# HELP leadlock_request_avg_latency_ms Average request latency ms",
            "# TYPE leadlock_request_avg_latency_ms gauge",
            f"leadlock_request_avg_latency_ms {avg_latency:.2f}",
            "# HELP leadlock_webhook_events_total Telephony webhook events received",
            "# TYPE leadlock_webhook_events_total counter",
            f"leadlock_webhook_events_total {service.webhook_events}",
            "# HELP leadlock_ended_counted_total Call-ended events counted",
            "# TYPE leadlock_ended_counted_total counter",
            f"leadlock_ended_counted_total {service.ended_counted}",
            "# HELP leadlock_flushes_total Completed flushes",
            "# TYPE leadlock_flushes_total counter",
            f"leadlock_flushes_total {service.flushes}",
            "# HELP leadlock_unlock_sweeps_total Completed unlock sweeps",
            "# TYPE leadlock_unlock_sweeps_total counter",
            f"leadlock_unlock_sweeps_total {service.unlock_sweeps}",
            "# HELP leadlock_rows_locked_total Lead rows hidden",
            "# TYPE leadlock_rows_locked_total counter",
            f"leadlock_rows_locked_total {service.locked_total}",
            "# HELP leadlock_rows_unlocked_total Lead rows unhidden",
            "# TYPE leadlock_rows_unlocked_total counter",
            f"leadlock_rows_unlocked_total {service.unlocked_total}",
            "# HELP leadlock_pending_phones Phones waiting for the next flush",
            "# TYPE leadlock_pending_phones gauge",
            f"leadlock_pending_phones {pending_phones}",
        ]
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                metric_line = (
                    "leadlock_route_requests_total"
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
                lines.append(metric_line)
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
