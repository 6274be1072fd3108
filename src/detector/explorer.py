"""
Dimension exploration for one detection run.

The run's metric is queried once as a whole and once per explore dimension.
Every returned slice with enough buckets goes through the anomaly function;
results already stored are dropped.
"""

import time
from collections import deque
from datetime import datetime
from typing import Optional, Protocol

import structlog

from .functions import AnomalyFunction
from .metrics import DetectorMetrics
from .models import AnomalyResult, DetectionRequest, DimensionKey, MetricTimeSeries

logger = structlog.get_logger(__name__)

MIN_BUCKETS = 2


class MetricClient(Protocol):
    def execute(self, request: DetectionRequest) -> dict[DimensionKey, MetricTimeSeries]: ...


def build_requests(
    collection: str,
    metric_function: str,
    start: datetime,
    end: datetime,
    explore_dimensions: list[str],
) -> deque[DetectionRequest]:
    """Root request first, then one group-by clone per dimension in order"""
    root = DetectionRequest(
        collection=collection,
        metric_function=metric_function,
        start=start,
        end=end,
    )
    queue = deque([root])
    for dimension in explore_dimensions:
        queue.append(root.with_group_by(dimension))
    return queue


class DimensionExplorer:
    """Drives detection requests through the metric client and the function"""

    def __init__(
        self,
        function: AnomalyFunction,
        metric_client: MetricClient,
        metrics: DetectorMetrics,
        job_name: str,
    ):
        self.function = function
        self.metric_client = metric_client
        self.metrics = metrics
        self.job_name = job_name

    def explore(
        self,
        queue: deque[DetectionRequest],
        window_start: datetime,
        window_end: datetime,
        known_anomalies: Optional[list[AnomalyResult]] = None,
    ) -> list[AnomalyResult]:
        """Drain ``queue`` once, FIFO, and collect the new anomalies"""
        known_anomalies = known_anomalies or []
        known = {anomaly.identity() for anomaly in known_anomalies}

        results: list[AnomalyResult] = []
        explored = 0
        while queue:
            request = queue.popleft()
            explored += 1
            results.extend(
                self._explore_request(request, window_start, window_end, known_anomalies, known)
            )

        logger.info(
            "Exploration finished",
            job=self.job_name,
            requests=explored,
            anomalies=len(results),
        )
        return results

    def _explore_request(
        self,
        request: DetectionRequest,
        window_start: datetime,
        window_end: datetime,
        known_anomalies: list[AnomalyResult],
        known: set[tuple],
    ) -> list[AnomalyResult]:
        logger.info("Exploring", job=self.job_name, request=str(request))

        try:
            response = self.metric_client.execute(request)
        except Exception as e:
            self.metrics.record_failure(self.job_name, "query")
            logger.error(
                "Metric query failed, skipping request",
                job=self.job_name,
                request=str(request),
                error=str(e),
            )
            return []

        function_id = self.function.spec.id
        found: list[AnomalyResult] = []
        for dimension_key, series in response.items():
            if series.size < MIN_BUCKETS:
                logger.warning(
                    "Insufficient data to run anomaly function",
                    job=self.job_name,
                    dimension_key=str(dimension_key),
                    buckets=series.size,
                )
                continue

            try:
                started = time.perf_counter()
                candidates = self.function.analyze(
                    dimension_key, series, window_start, window_end, known_anomalies
                )
                self.metrics.observe_duration(self.job_name, time.perf_counter() - started)
            except Exception as e:
                self.metrics.record_failure(self.job_name, "analysis")
                logger.error(
                    "Could not compute anomalies",
                    job=self.job_name,
                    dimension_key=str(dimension_key),
                    error=str(e),
                    exc_info=True,
                )
                continue

            new = [result for result in candidates if result.identity(function_id) not in known]
            if new:
                logger.info(
                    "Anomalies found",
                    job=self.job_name,
                    dimension_key=str(dimension_key),
                    count=len(new),
                    window_start=window_start.isoformat(),
                    window_end=window_end.isoformat(),
                )
            found.extend(new)

        return found
