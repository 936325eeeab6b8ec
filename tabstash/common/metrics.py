"""Metrics collection for tabstash.

Provides a thin convenience wrapper around ``prometheus_client`` so components
can consistently record HTTP, search, embedding, cache, gateway and import
metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Each collector owns its registry, so tests and multiple apps never collide
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection.

    Parameters
    - service_name: Logical name of the owning service
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)

    Exposes typed helpers for common events to keep label sets consistent.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        # HTTP
        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        # Search
        self.search_requests = Counter(
            'tabstash_search_requests_total',
            'Total search requests',
            ['mode'],
            registry=self.registry
        )

        self.search_duration = Histogram(
            'tabstash_search_duration_seconds',
            'Search duration',
            ['mode'],
            registry=self.registry
        )

        # Embeddings
        self.embedding_requests = Counter(
            'tabstash_embedding_requests_total',
            'Embedding requests by task and outcome (api, cache, fallback)',
            ['task', 'outcome'],
            registry=self.registry
        )

        self.embedding_duration = Histogram(
            'tabstash_embedding_duration_seconds',
            'Embedding provider call duration',
            ['task'],
            registry=self.registry
        )

        # Cache
        self.cache_hits = Counter(
            'tabstash_cache_hits_total',
            'Total cache hits',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_misses = Counter(
            'tabstash_cache_misses_total',
            'Total cache misses',
            ['cache_type'],
            registry=self.registry
        )

        # Gateway
        self.gateway_dispatches = Counter(
            'tabstash_gateway_dispatches_total',
            'Operations dispatched through the rate-limited gateway',
            ['service', 'status'],
            registry=self.registry
        )

        self.gateway_waits = Counter(
            'tabstash_gateway_waits_total',
            'Times a gateway service waited for a free slot',
            ['service'],
            registry=self.registry
        )

        self.gateway_queue_depth = Gauge(
            'tabstash_gateway_queue_depth',
            'Pending requests per gateway service',
            ['service'],
            registry=self.registry
        )

        # Import queue
        self.import_jobs = Counter(
            'tabstash_import_jobs_total',
            'Bulk import jobs by terminal status',
            ['status'],
            registry=self.registry
        )

        self.import_records = Counter(
            'tabstash_import_records_total',
            'Bulk import records by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.import_active_jobs = Gauge(
            'tabstash_import_active_jobs',
            'Bulk import jobs currently importing or processing',
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_search(self, mode: str, duration: float) -> None:
        """Record search metrics."""
        self.search_requests.labels(mode=mode).inc()
        self.search_duration.labels(mode=mode).observe(duration)

    def record_embedding(self, task: str, outcome: str) -> None:
        """Record an embedding request by outcome (api, cache, fallback)."""
        self.embedding_requests.labels(task=task, outcome=outcome).inc()

    def record_embedding_duration(self, task: str, duration: float) -> None:
        self.embedding_duration.labels(task=task).observe(duration)

    def record_cache_hit(self, cache_type: str) -> None:
        self.cache_hits.labels(cache_type=cache_type).inc()

    def record_cache_miss(self, cache_type: str) -> None:
        self.cache_misses.labels(cache_type=cache_type).inc()

    def record_gateway_dispatch(self, service: str, status: str) -> None:
        self.gateway_dispatches.labels(service=service, status=status).inc()

    def record_gateway_wait(self, service: str) -> None:
        self.gateway_waits.labels(service=service).inc()

    def set_gateway_queue_depth(self, service: str, depth: int) -> None:
        self.gateway_queue_depth.labels(service=service).set(depth)

    def record_import_job(self, status: str) -> None:
        self.import_jobs.labels(status=status).inc()

    def record_import_records(self, outcome: str, count: int) -> None:
        if count > 0:
            self.import_records.labels(outcome=outcome).inc(count)

    def set_import_active_jobs(self, count: int) -> None:
        self.import_active_jobs.set(count)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')
