"""
Prometheus instrumentation for detection runs.
"""

from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server

logger = structlog.get_logger(__name__)

DURATION_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


class DetectorMetrics:
    """Histograms and counters shared by every job, labelled by job name"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.function_duration = Histogram(
            "anomaly_function_duration_seconds",
            "Time spent inside one anomaly function call",
            ["job"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.results_persisted = Counter(
            "anomaly_detection_results_total",
            "Anomaly results committed to the result store",
            ["job"],
            registry=self.registry,
        )
        self.failures = Counter(
            "anomaly_detection_failures_total",
            "Failures while running detection, by stage",
            ["job", "stage"],
            registry=self.registry,
        )

    def observe_duration(self, job_name: str, seconds: float) -> None:
        self.function_duration.labels(job=job_name).observe(seconds)

    def record_results(self, job_name: str, count: int) -> None:
        self.results_persisted.labels(job=job_name).inc(count)

    def record_failure(self, job_name: str, stage: str) -> None:
        self.failures.labels(job=job_name, stage=stage).inc()

    def serve(self, port: int) -> None:
        """Expose the registry on ``port`` from a daemon thread"""
        start_http_server(port, registry=self.registry)
        logger.info("Prometheus exporter started", port=port)
