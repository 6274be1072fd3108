"""
One end-to-end detection run for one anomaly function.

This is what the scheduler fires: resolve the window, load the anomalies
already stored for it, explore the metric and commit the new anomalies in a
single transaction.
"""

from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional, Protocol

import structlog

from .errors import ExecutionError, PersistenceError, ValidationError
from .explorer import DimensionExplorer, MetricClient, build_requests
from .functions import AnomalyFunction
from .metrics import DetectorMetrics
from .models import AnomalyResult
from .window import compute_window, metric_function

logger = structlog.get_logger(__name__)


class ResultStore(Protocol):
    def transaction(self) -> AbstractContextManager[Any]: ...

    def find_all_by_collection_time_and_function(
        self, tx: Any, collection: str, start: datetime, end: datetime, function_id: int
    ) -> list[AnomalyResult]: ...

    def create(self, tx: Any, result: AnomalyResult) -> None: ...


@dataclass(frozen=True)
class ExecutionContext:
    """Everything one firing of a job needs"""

    job_name: str
    function: AnomalyFunction
    metric_client: MetricClient
    result_store: ResultStore
    metrics: DetectorMetrics
    window_start: Optional[str] = None
    window_end: Optional[str] = None


class AnomalyDetectionJob:
    """Runs detection once per call to ``run``"""

    def __init__(self, context: ExecutionContext, clock: Optional[Callable[[], datetime]] = None):
        self.context = context
        self.clock = clock or (lambda: datetime.now(UTC))

    def __call__(self) -> list[AnomalyResult]:
        return self.run()

    def run(self) -> list[AnomalyResult]:
        """Execute one detection pass

        Returns:
            The results committed by this pass

        Raises:
            ValidationError: If the window is empty or the function cannot be queried
            ExecutionError: If reading known anomalies or committing results failed
        """
        ctx = self.context
        spec = ctx.function.spec

        window_start, window_end = compute_window(
            spec, ctx.window_start, ctx.window_end, now=self.clock()
        )
        if window_start >= window_end:
            raise ValidationError(
                f"Empty detection window for function {spec.id}: "
                f"{window_start.isoformat()} >= {window_end.isoformat()}"
            )
        aggregation = metric_function(spec)

        logger.info(
            "Starting detection run",
            job=ctx.job_name,
            function_id=spec.id,
            collection=spec.collection,
            metric_function=aggregation,
            window_start=window_start.isoformat(),
            window_end=window_end.isoformat(),
        )

        known_anomalies = self._load_known_anomalies(spec.collection, window_start, window_end)

        explorer = DimensionExplorer(ctx.function, ctx.metric_client, ctx.metrics, ctx.job_name)
        # Functions compare the window against history queried before it
        queue = build_requests(
            spec.collection,
            aggregation,
            window_start - ctx.function.lookback,
            window_end,
            spec.explore_dimension_names(),
        )
        results = explorer.explore(queue, window_start, window_end, known_anomalies)

        for result in results:
            result.function_id = spec.id
            result.function_type = spec.type
            result.function_properties = dict(spec.properties)

        self._persist(results)

        logger.info(
            "Detection run completed",
            job=ctx.job_name,
            function_id=spec.id,
            known=len(known_anomalies),
            persisted=len(results),
        )
        return results

    def _load_known_anomalies(
        self, collection: str, window_start: datetime, window_end: datetime
    ) -> list[AnomalyResult]:
        ctx = self.context
        try:
            with ctx.result_store.transaction() as tx:
                return ctx.result_store.find_all_by_collection_time_and_function(
                    tx, collection, window_start, window_end, ctx.function.spec.id
                )
        except PersistenceError as e:
            ctx.metrics.record_failure(ctx.job_name, "persistence")
            raise ExecutionError(f"{ctx.job_name}: could not load known anomalies: {e}") from e

    def _persist(self, results: list[AnomalyResult]) -> None:
        """Commit every result or none of them"""
        if not results:
            return

        ctx = self.context
        try:
            with ctx.result_store.transaction() as tx:
                for result in results:
                    ctx.result_store.create(tx, result)
        except PersistenceError as e:
            ctx.metrics.record_failure(ctx.job_name, "persistence")
            raise ExecutionError(
                f"{ctx.job_name}: could not persist {len(results)} anomalies: {e}"
            ) from e

        ctx.metrics.record_results(ctx.job_name, len(results))
