"""
Registry of scheduled anomaly detection jobs.

The manager owns the only shared mutable state of the detector: which
function ids currently have a recurring schedule. Every operation holds the
same lock, including the calls it makes into the scheduler.
"""

import threading
import uuid
from collections.abc import Callable
from typing import Optional, Protocol

import structlog

from .errors import ConflictError, DetectorError, NotFoundError
from .explorer import MetricClient
from .functions import AnomalyFunction, from_spec
from .job import AnomalyDetectionJob, ExecutionContext, ResultStore
from .metrics import DetectorMetrics
from .models import AnomalyFunctionSpec
from .window import parse_instant

logger = structlog.get_logger(__name__)

SCHEDULED_JOB_NAME = "scheduled_anomaly_function_job_{}"
AD_HOC_JOB_NAME = "ad_hoc_anomaly_function_job_{}"


class SpecStore(Protocol):
    def find_function_by_id(self, function_id: int) -> Optional[AnomalyFunctionSpec]: ...

    def find_active_functions(self) -> list[AnomalyFunctionSpec]: ...


class Scheduler(Protocol):
    def schedule_recurring(self, job_key: str, cron: str, runnable: Callable[[], object]): ...

    def schedule_once(self, job_key: str, runnable: Callable[[], object]): ...

    def cancel(self, job_key: str): ...


class AnomalyDetectionJobManager:
    """Starts, stops and runs anomaly functions on the scheduler"""

    def __init__(
        self,
        scheduler: Scheduler,
        metric_client: MetricClient,
        spec_store: SpecStore,
        result_store: ResultStore,
        metrics: Optional[DetectorMetrics] = None,
        function_factory: Callable[[AnomalyFunctionSpec], AnomalyFunction] = from_spec,
    ):
        self.scheduler = scheduler
        self.metric_client = metric_client
        self.spec_store = spec_store
        self.result_store = result_store
        self.metrics = metrics or DetectorMetrics()
        self.function_factory = function_factory
        self._lock = threading.Lock()
        self._job_keys: dict[int, str] = {}

    def list_active_jobs(self) -> list[int]:
        """Sorted ids of functions with a live recurring schedule"""
        with self._lock:
            return sorted(self._job_keys)

    def start(self, function_id: int) -> str:
        """Schedule ``function_id`` on its cron expression

        Returns:
            The scheduler job key

        Raises:
            ConflictError: If the function is already scheduled; stop it first
            NotFoundError: If no function has this id
            ValidationError: If the cron expression or the function config is invalid
        """
        with self._lock:
            if function_id in self._job_keys:
                raise ConflictError(
                    f"Function {function_id} is already scheduled as {self._job_keys[function_id]}"
                )

            spec = self._find_spec(function_id)
            job_key = SCHEDULED_JOB_NAME.format(spec.id)
            job = self._build_job(spec, job_key)

            self.scheduler.schedule_recurring(job_key, spec.cron, job.run)
            self._job_keys[function_id] = job_key

            logger.info("Started", job=job_key, function_id=spec.id, cron=spec.cron, type=spec.type)
            return job_key

    def stop(self, function_id: int) -> None:
        """Cancel the schedule of ``function_id``; a running pass is not interrupted

        A scheduler job that is already gone is logged and otherwise ignored:
        once the function was registered, ``stop`` always unregisters it.

        Raises:
            NotFoundError: If the function is not scheduled
        """
        with self._lock:
            job_key = self._job_keys.pop(function_id, None)
            if job_key is None:
                raise NotFoundError(f"No scheduled job for function id {function_id}")

            try:
                self.scheduler.cancel(job_key)
            except NotFoundError as e:
                logger.warning("Scheduler job already gone", job=job_key, error=str(e))

            logger.info("Stopped", job=job_key, function_id=function_id)

    def run_ad_hoc(
        self,
        function_id: int,
        window_start: Optional[str] = None,
        window_end: Optional[str] = None,
    ) -> str:
        """Run ``function_id`` once, now, optionally on an explicit window

        The run is not tracked as an active job.

        Args:
            function_id: Function to run
            window_start: ISO-8601 start, defaults to the function's window
            window_end: ISO-8601 end, defaults to now minus the function's delay

        Returns:
            The scheduler job key of this run

        Raises:
            NotFoundError: If no function has this id
            ValidationError: If a timestamp or the function config is invalid
        """
        for value in (window_start, window_end):
            if value is not None:
                parse_instant(value)

        with self._lock:
            spec = self._find_spec(function_id)
            job_name = AD_HOC_JOB_NAME.format(spec.id)
            job = self._build_job(spec, job_name, window_start, window_end)

            # Distinct key per run so back-to-back requests don't replace each other
            job_key = f"{job_name}_{uuid.uuid4().hex[:8]}"
            self.scheduler.schedule_once(job_key, job.run)

            logger.info(
                "Started",
                job=job_key,
                function_id=spec.id,
                window_start=window_start,
                window_end=window_end,
            )
            return job_key

    def start_all_active(self) -> list[int]:
        """Start every active function that is not scheduled yet

        A function that fails to start is logged and skipped.

        Returns:
            Ids started by this call
        """
        started = []
        for spec in self.spec_store.find_active_functions():
            try:
                self.start(spec.id)
                started.append(spec.id)
            except ConflictError:
                continue
            except DetectorError as e:
                logger.error("Could not start function", function_id=spec.id, error=str(e))
        return started

    def stop_all(self) -> None:
        """Cancel every recurring schedule"""
        for function_id in self.list_active_jobs():
            try:
                self.stop(function_id)
            except NotFoundError as e:
                logger.warning("Job already gone", function_id=function_id, error=str(e))

    def _find_spec(self, function_id: int) -> AnomalyFunctionSpec:
        spec = self.spec_store.find_function_by_id(function_id)
        if spec is None:
            raise NotFoundError(f"No function with id {function_id}")
        return spec

    def _build_job(
        self,
        spec: AnomalyFunctionSpec,
        job_name: str,
        window_start: Optional[str] = None,
        window_end: Optional[str] = None,
    ) -> AnomalyDetectionJob:
        context = ExecutionContext(
            job_name=job_name,
            function=self.function_factory(spec),
            metric_client=self.metric_client,
            result_store=self.result_store,
            metrics=self.metrics,
            window_start=window_start,
            window_end=window_end,
        )
        return AnomalyDetectionJob(context)
