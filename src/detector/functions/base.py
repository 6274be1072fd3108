"""
Base abstract interface for anomaly functions.

An anomaly function is bound to one AnomalyFunctionSpec and must implement:
- analyze(): flag abnormal buckets of one dimension slice inside the window
"""

from abc import ABC, abstractmethod
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any, Optional

import pandas as pd

from ..errors import ValidationError
from ..models import AnomalyFunctionSpec, AnomalyResult, DimensionKey, MetricTimeSeries, TimeUnit


class AnomalyFunction(ABC):
    """Abstract base class for all anomaly functions

    Each function is built once per schedule (or ad-hoc run) from its spec and
    called once per dimension slice, possibly from several scheduler threads
    at once: ``analyze`` must not mutate instance state.
    """

    def __init__(self, spec: AnomalyFunctionSpec):
        self.spec = spec

    @property
    @abstractmethod
    def name(self) -> str:
        """Type tag under which the function is registered"""
        pass

    @abstractmethod
    def analyze(
        self,
        dimension_key: DimensionKey,
        series: MetricTimeSeries,
        window_start: datetime,
        window_end: datetime,
        known_anomalies: list[AnomalyResult],
    ) -> list[AnomalyResult]:
        """Detect anomalies in one dimension slice

        Args:
            dimension_key: Slice being analyzed
            series: Bucketed metric values for the slice, may extend before
                the window to provide history
            window_start: Inclusive start of the detection window
            window_end: Exclusive end of the detection window
            known_anomalies: Results already stored for this function and window

        Returns:
            Anomalies whose time range falls inside the window
        """
        pass

    @abstractmethod
    def get_config(self) -> dict[str, Any]:
        """Get the effective configuration of this function"""
        pass

    @property
    def bucket_width(self) -> timedelta:
        return TimeUnit.parse(self.spec.bucket_unit).to_timedelta(self.spec.bucket_size)

    @property
    def lookback(self) -> timedelta:
        """History queried before the window start so ``analyze`` has a baseline"""
        return timedelta(0)

    @staticmethod
    def load_config(config_class, properties: dict[str, Any]):
        """Build ``config_class`` from a function's property bag.

        Unknown keys are ignored; values are cast to the type of the field
        default, so string properties such as ``"3.5"`` are accepted.
        """
        kwargs = {}
        for config_field in fields(config_class):
            if config_field.name not in properties:
                continue
            value = properties[config_field.name]
            caster = type(config_field.default)
            if value is not None and caster is not type(None):
                try:
                    value = caster(value)
                except (TypeError, ValueError) as e:
                    raise ValidationError(
                        f"Invalid value for property {config_field.name!r}: {value!r}"
                    ) from e
            kwargs[config_field.name] = value
        return config_class(**kwargs)

    @staticmethod
    def window_values(series: MetricTimeSeries, window_start: datetime, window_end: datetime) -> pd.Series:
        """Clean, sorted values with bucket starts inside ``[start, end)``"""
        values = series.values.dropna().sort_index()
        return values[(values.index >= window_start) & (values.index < window_end)]

    def is_known(
        self,
        known_anomalies: list[AnomalyResult],
        dimension_key: DimensionKey,
        start: datetime,
        end: datetime,
    ) -> bool:
        """Whether a stored anomaly already covers this bucket"""
        return any(
            known.dimension_key == dimension_key and known.start_time <= start and end <= known.end_time
            for known in known_anomalies
        )

    def build_result(
        self,
        dimension_key: DimensionKey,
        bucket_start: datetime,
        score: float,
        weight: float,
        properties: Optional[dict[str, Any]] = None,
    ) -> AnomalyResult:
        """Result spanning exactly one bucket"""
        start = pd.Timestamp(bucket_start).to_pydatetime()
        return AnomalyResult(
            collection=self.spec.collection,
            metric=self.spec.metric,
            dimension_key=dimension_key,
            start_time=start,
            end_time=start + self.bucket_width,
            score=float(score),
            weight=float(weight),
            properties=properties or {},
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(function_id={self.spec.id}, config={self.get_config()})"
