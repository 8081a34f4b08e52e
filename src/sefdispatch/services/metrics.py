"""
Observability sink for queue and submission metrics.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def record_job(
        self,
        queue: str,
        job_type: str,
        status: str,
        duration: float,
        reason: Optional[str] = None,
    ) -> None: ...

    def record_invoice_sent(
        self, status: str, environment: str, company_id: str, duration: float
    ) -> None: ...

    def set_queue_depth(self, queue: str, depth: int) -> None: ...


class InMemoryMetrics:
    """Counters and gauges kept in process, exposed through ``snapshot()``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: Dict[Tuple[str, ...], int] = defaultdict(int)
        self.durations: Dict[Tuple[str, ...], float] = defaultdict(float)
        self.gauges: Dict[str, int] = {}

    def record_job(self, queue, job_type, status, duration, reason=None) -> None:
        key = ("job", queue, job_type, status, reason or "")
        with self._lock:
            self.counters[key] += 1
            self.durations[key] += duration

    def record_invoice_sent(self, status, environment, company_id, duration) -> None:
        key = ("invoice_sent", status, environment, company_id)
        with self._lock:
            self.counters[key] += 1
            self.durations[key] += duration

    def set_queue_depth(self, queue, depth) -> None:
        with self._lock:
            self.gauges[queue] = depth

    def count(self, *key: str) -> int:
        with self._lock:
            return self.counters.get(tuple(key), 0)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": {":".join(k): v for k, v in self.counters.items()},
                "queue_depth": dict(self.gauges),
            }


class LoggingMetrics:
    def record_job(self, queue, job_type, status, duration, reason=None) -> None:
        logger.debug(
            "metric job queue=%s type=%s status=%s reason=%s duration=%.3fs",
            queue,
            job_type,
            status,
            reason,
            duration,
        )

    def record_invoice_sent(self, status, environment, company_id, duration) -> None:
        logger.debug(
            "metric invoice_sent status=%s environment=%s company_id=%s duration=%.3fs",
            status,
            environment,
            company_id,
            duration,
        )

    def set_queue_depth(self, queue, depth) -> None:
        logger.debug("metric queue_depth queue=%s depth=%s", queue, depth)
