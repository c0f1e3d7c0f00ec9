"""Prometheus metrics for the HTTP layer and the task scheduler."""

from __future__ import annotations

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class CrawlMetrics:
    """Metric collectors bound to one registry.

    Each service instance owns its registry so tests can build as many
    schedulers as they like without colliding on metric names.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # HTTP Request Metrics
        self.http_requests_total = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status_code'],
            registry=self.registry
        )
        self.http_request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration in seconds',
            ['method', 'endpoint'],
            registry=self.registry
        )

        # Task Processing Metrics
        self.tasks_total = Counter(
            'crawl_tasks_total',
            'Tasks reaching a terminal status',
            ['task_type', 'status'],
            registry=self.registry
        )
        self.task_failures_total = Counter(
            'crawl_task_failures_total',
            'Failed tasks by failure reason',
            ['task_type', 'reason'],
            registry=self.registry
        )
        self.task_duration = Histogram(
            'crawl_task_duration_seconds',
            'Task execution duration in seconds',
            ['task_type'],
            buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1200],
            registry=self.registry
        )
        self.task_retries_total = Counter(
            'crawl_task_retries_total',
            'Retries with a fresh browser context',
            ['task_type', 'reason'],
            registry=self.registry
        )
        self.running_tasks = Gauge(
            'crawl_running_tasks',
            'Tasks currently holding a concurrency slot',
            registry=self.registry
        )
        self.queued_tasks = Gauge(
            'crawl_queued_tasks',
            'Tasks waiting for a concurrency slot',
            registry=self.registry
        )
        self.extracted_items_total = Counter(
            'crawl_extracted_items_total',
            'Records extracted',
            ['task_type'],
            registry=self.registry
        )

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float) -> None:
        self.http_requests_total.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
        self.http_request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def render(self) -> bytes:
        return generate_latest(self.registry)
