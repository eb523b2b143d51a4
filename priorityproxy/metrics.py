"""Per-request metrics and the process-wide collector that receives them."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

CollectFn = Callable[["RequestMetrics"], None]


@dataclass
class RequestMetrics:
    """Metrics recorded for a single proxied request."""

    model: str = ""
    input_tokens: int = 0
    processing_time: float = 0.0  # seconds
    retry_count: int = 0
    tools: List[str] = field(default_factory=list)
    endpoint_path: str = ""
    priority: int = 0
    preempted: bool = False
    status_code: int = 0


def default_collect(metrics: RequestMetrics) -> None:
    """Report a request's metrics on standard output."""
    print(
        f"Collecting metrics: {metrics.model}, {metrics.input_tokens} tokens, "
        f"{metrics.processing_time:g}s"
    )


class MetricsCollector:
    """Serialises metric reports to a collection function."""

    def __init__(
        self,
        url: str = "",
        token: str = "",
        org: str = "",
        bucket: str = "",
        collect_fn: Optional[CollectFn] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.org = org
        self.bucket = bucket
        self.collect_fn: CollectFn = collect_fn or default_collect
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def collect(self, metrics: RequestMetrics) -> None:
        """Hand one set of metrics to the collection function."""
        with self._lock:
            self.collect_fn(metrics)

    def close(self) -> None:
        """Shut the collector down."""
        with self._lock:
            self._closed = True

    def __enter__(self) -> "MetricsCollector":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


_collector: Optional[MetricsCollector] = None
_collector_lock = threading.Lock()


def new_metrics_collector(url: str, token: str, org: str, bucket: str) -> MetricsCollector:
    """Create the shared collector, or return it if it already exists."""
    global _collector
    with _collector_lock:
        if _collector is None:
            _collector = MetricsCollector(url, token, org, bucket)
        return _collector


def get_collector() -> MetricsCollector:
    """Return the shared collector; raise RuntimeError if none was created."""
    if _collector is None:
        raise RuntimeError("metrics collector not initialized")
    return _collector


def reset_collector() -> None:
    """Forget the shared collector so that the next one can be created."""
    global _collector
    with _collector_lock:
        _collector = None