"""
Prometheus metrics for the sync engine.

Organized into: scheduler, cache, subscriptions, degradation.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server


class SyncMetrics:
    """Metrics shared by every component of one session."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Scheduler ===
        self.scheduler_calls = Counter(
            'pixelsync_scheduler_calls_total',
            'Remote calls settled by the scheduler',
            labelnames=['method', 'outcome'],
            registry=reg
        )
        self.scheduler_queue_depth = Gauge(
            'pixelsync_scheduler_queue_depth',
            'Calls waiting for dispatch',
            registry=reg
        )
        self.scheduler_concurrency = Gauge(
            'pixelsync_scheduler_concurrency',
            'Calls dispatched per batch',
            registry=reg
        )
        self.scheduler_delay_sec = Gauge(
            'pixelsync_scheduler_delay_sec',
            'Delay between dispatches (seconds)',
            registry=reg
        )

        # === Cache ===
        self.chunk_fetches = Counter(
            'pixelsync_chunk_fetches_total',
            'Chunk fetches by outcome',
            labelnames=['outcome'],
            registry=reg
        )
        self.cached_chunks = Gauge(
            'pixelsync_cached_chunks',
            'Chunks present in the cache',
            registry=reg
        )

        # === Subscriptions ===
        self.events_received = Counter(
            'pixelsync_events_received_total',
            'Push notifications received',
            labelnames=['kind'],
            registry=reg
        )
        self.reconnects = Counter(
            'pixelsync_reconnects_total',
            'Successful subscription reconnects',
            registry=reg
        )
        self.subscription_state = Gauge(
            'pixelsync_subscription_state',
            'Subscription state (0 connecting, 1 connected, 2 reconnecting, 3 abandoned, 4 unsubscribed)',
            registry=reg
        )

        # === Degradation ===
        self.degraded = Gauge(
            'pixelsync_degraded',
            '1 when serving from the synthetic source',
            registry=reg
        )
        self.writes = Counter(
            'pixelsync_writes_total',
            'Cell writes by outcome',
            labelnames=['status'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry


def start_metrics_server(metrics: SyncMetrics, port: int) -> None:
    """Expose ``metrics`` over HTTP on ``port``; no-op when port is 0."""
    if port:
        start_http_server(port, registry=metrics.registry)
