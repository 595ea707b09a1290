"""
Interface for tracing important events and collecting metrics of a session

Marks are exported just by logging, assuming to be parsed later. We log at debug level since this
is assumed to be high level tracing. Metrics are kept in memory and handed to whoever owns the
session -- typically a telemetry layer outside of this package
"""

import logging
import threading
import time
from enum import Enum
from typing import Any

d: dict[str, str] = {}

logger = logging.getLogger(__name__)


class SessionLifecycle(str, Enum):
    setup = "setup"
    launched = "launched"
    connected = "connected"
    negotiated = "negotiated"
    dispatched = "dispatched"
    aborted = "aborted"
    cancelled = "cancelled"
    closed = "closed"


class Metric(str, Enum):
    time_to_start_engine = "run.time_taken_to_start_engine"


def _labels(labels: dict) -> str:
    return ";".join(f"{k}={v}" for k, v in labels.items())


def label(key: str, value: str) -> None:
    """Makes all subsequent marks contain this KV"""
    global d
    d[key] = value


def mark(labels: dict) -> None:
    at = time.perf_counter_ns()
    global d
    event = _labels({**d, **labels})
    logger.debug(f"{event};{at=}")


class MetricsCollection:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.metrics: dict[str, Any] = {}

    def record(self, key: Metric | str, value: Any) -> None:
        k = key.value if isinstance(key, Metric) else key
        with self.lock:
            self.metrics[k] = value
        logger.debug(f"metric {k}={value}")

    def get(self, key: Metric | str) -> Any:
        k = key.value if isinstance(key, Metric) else key
        with self.lock:
            return self.metrics.get(k)

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            return dict(self.metrics)
