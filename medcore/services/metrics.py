"""CloudWatch custom metrics for the booking assistant.

Two families of data points:

* **Dependency/** — one count + latency per model or store call, tagged
  with the dependency and operation, plus an error count on failure.
* **Dialogue/** — one count per executed action, tagged with the action
  name and its outcome (``ok``, ``invalid``, ``not_found``, ``conflict``,
  ``unsupported``, ``loop_cap``).

Data points are buffered under a lock and flushed by a daemon thread every
``FLUSH_INTERVAL_SECONDS``.  Unless ``METRICS_ENABLED=true`` nothing leaves
the process; points are only logged at DEBUG.

>>> from medcore.services.metrics import metrics
>>> metrics.record_action("create_booking", "ok")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "MedCoreBooking"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Dependency calls ──────────────────────────────────────────────

    def record_success(self, dependency: str, operation: str, latency_ms: float) -> None:
        """Record a successful model or store call."""
        now = datetime.now(UTC)
        dims = [{"Name": "Dependency", "Value": dependency}]
        self._append(_point(
            "Dependency/RequestCount",
            dims + [{"Name": "Status", "Value": "success"}],
            now, 1, "Count",
        ))
        self._append(_point(
            "Dependency/Latency",
            dims + [{"Name": "Operation", "Value": operation}],
            now, latency_ms, "Milliseconds",
        ))
        logger.debug("Metric: %s %s success latency=%.1fms", dependency, operation, latency_ms)

    def record_failure(
        self,
        dependency: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed model or store call."""
        now = datetime.now(UTC)
        dims = [{"Name": "Dependency", "Value": dependency}]
        self._append(_point(
            "Dependency/RequestCount",
            dims + [{"Name": "Status", "Value": "failure"}],
            now, 1, "Count",
        ))
        self._append(_point(
            "Dependency/ErrorCount",
            dims + [{"Name": "ErrorType", "Value": error_type}],
            now, 1, "Count",
        ))
        if latency_ms > 0:
            self._append(_point(
                "Dependency/Latency",
                dims + [{"Name": "Operation", "Value": operation}],
                now, latency_ms, "Milliseconds",
            ))
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            dependency, operation, error_type, latency_ms,
        )

    # ── Dialogue actions ──────────────────────────────────────────────

    def record_action(self, action: str, outcome: str) -> None:
        """Record one executed (or refused) dialogue action."""
        self._append(_point(
            "Dialogue/ActionCount",
            [
                {"Name": "Action", "Value": action},
                {"Name": "Outcome", "Value": outcome},
            ],
            datetime.now(UTC), 1, "Count",
        ))
        logger.debug("Metric: action %s outcome=%s", action, outcome)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


def _point(
    name: str, dimensions: list[dict[str, str]], timestamp: datetime, value: float, unit: str,
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": dimensions,
        "Timestamp": timestamp,
        "Value": value,
        "Unit": unit,
    }


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
