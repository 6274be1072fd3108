"""
Data models and configuration for the scheduled anomaly detector.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import pandas as pd

from .errors import ValidationError

ALL_VALUES = "*"


@dataclass
class DetectorConfig:
    """Configuration for the detector service"""

    # PostgreSQL settings
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "mlops_db"
    postgres_user: str = "mlops"
    postgres_password: str = "mlops_password"
    postgres_min_connections: int = 1
    postgres_max_connections: int = 10

    # Metric tables are time-bucketed on this column
    timestamp_column: str = "timestamp"

    # Scheduler behavior
    scheduler_threads: int = 10
    misfire_grace_seconds: int = 60

    # Prometheus exporter, disabled when None
    metrics_port: Optional[int] = None


class TimeUnit(str, Enum):
    """Units used by window, delay and bucket sizes"""

    MILLISECONDS = "MILLISECONDS"
    SECONDS = "SECONDS"
    MINUTES = "MINUTES"
    HOURS = "HOURS"
    DAYS = "DAYS"

    @classmethod
    def parse(cls, value: "str | TimeUnit") -> "TimeUnit":
        if isinstance(value, TimeUnit):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError as e:
            raise ValidationError(f"Unknown time unit: {value!r}") from e

    def to_timedelta(self, amount: int) -> timedelta:
        return timedelta(**{self.value.lower(): amount})

    def to_millis(self, amount: int) -> int:
        return int(self.to_timedelta(amount) / timedelta(milliseconds=1))


@dataclass(frozen=True)
class AnomalyFunctionSpec:
    """Stored configuration of one anomaly function. Never mutated here."""

    id: int
    collection: str
    metric: str
    type: str
    cron: str
    window_size: int
    window_unit: TimeUnit
    bucket_size: int
    bucket_unit: TimeUnit
    window_delay: Optional[int] = None
    window_delay_unit: Optional[TimeUnit] = None
    explore_dimensions: Optional[str] = None
    properties: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    def explore_dimension_names(self) -> list[str]:
        """Explore dimensions in declaration order"""
        if not self.explore_dimensions:
            return []
        return [name.strip() for name in self.explore_dimensions.split(",") if name.strip()]

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AnomalyFunctionSpec":
        """Build a spec from an ``anomaly_functions`` row"""
        properties = row.get("properties") or {}
        if isinstance(properties, str):
            properties = json.loads(properties)

        delay_unit = row.get("window_delay_unit")
        return cls(
            id=row["id"],
            collection=row["collection"],
            metric=row["metric"],
            type=row["type"],
            cron=row["cron"],
            window_size=row["window_size"],
            window_unit=TimeUnit.parse(row["window_unit"]),
            bucket_size=row["bucket_size"],
            bucket_unit=TimeUnit.parse(row["bucket_unit"]),
            window_delay=row.get("window_delay"),
            window_delay_unit=TimeUnit.parse(delay_unit) if delay_unit else None,
            explore_dimensions=row.get("explore_dimensions"),
            properties=properties,
            is_active=bool(row.get("is_active", True)),
        )


@dataclass(frozen=True)
class DetectionRequest:
    """One metric query issued while exploring a function's collection"""

    collection: str
    metric_function: str
    start: datetime
    end: datetime
    group_by: Optional[str] = None

    def with_group_by(self, dimension: str) -> "DetectionRequest":
        return replace(self, group_by=dimension)

    def __str__(self) -> str:
        group_by = f" group_by={self.group_by}" if self.group_by else ""
        return (
            f"{self.metric_function} FROM {self.collection} "
            f"[{self.start.isoformat()}, {self.end.isoformat()}){group_by}"
        )


@dataclass(frozen=True)
class DimensionKey:
    """Ordered dimension values identifying one time series slice"""

    values: tuple[str, ...]

    @classmethod
    def of(cls, *values: str) -> "DimensionKey":
        return cls(tuple(values))

    def to_json(self) -> str:
        return json.dumps(list(self.values))

    @classmethod
    def from_json(cls, data: str) -> "DimensionKey":
        return cls(tuple(json.loads(data)))

    def __str__(self) -> str:
        return "[" + ", ".join(self.values) + "]"


@dataclass
class MetricTimeSeries:
    """Bucketed observations of one metric for one dimension key"""

    metric: str
    values: pd.Series

    @property
    def size(self) -> int:
        """Number of buckets"""
        return len(self.values)


@dataclass
class AnomalyResult:
    """A detected anomaly.

    Two results are equal when collection, dimension key, time range and
    function id match; every other field is ignored by ``==``.
    """

    collection: str
    dimension_key: DimensionKey
    start_time: datetime
    end_time: datetime
    function_id: Optional[int] = None
    metric: Optional[str] = field(default=None, compare=False)
    score: float = field(default=0.0, compare=False)
    weight: float = field(default=0.0, compare=False)
    properties: dict[str, Any] = field(default_factory=dict, compare=False)
    function_type: Optional[str] = field(default=None, compare=False)
    function_properties: dict[str, Any] = field(default_factory=dict, compare=False)
    id: Optional[int] = field(default=None, compare=False)

    def identity(self, function_id: Optional[int] = None) -> tuple:
        """Equality key, optionally as if stamped with ``function_id``"""
        return (
            self.collection,
            self.dimension_key,
            self.start_time,
            self.end_time,
            self.function_id if function_id is None else function_id,
        )

    def to_db_dict(self) -> dict:
        """Convert to dict for database insertion"""
        return {
            "collection": self.collection,
            "metric": self.metric,
            "dimensions": self.dimension_key.to_json(),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "score": self.score,
            "weight": self.weight,
            "properties": json.dumps(self.properties),
            "function_id": self.function_id,
            "function_type": self.function_type,
            "function_properties": json.dumps(self.function_properties),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AnomalyResult":
        """Build a result from an ``anomaly_results`` row"""

        def _json(value, default):
            if value is None:
                return default
            return json.loads(value) if isinstance(value, str) else value

        dimensions = row["dimensions"]
        return cls(
            id=row.get("id"),
            collection=row["collection"],
            metric=row.get("metric"),
            dimension_key=(
                DimensionKey.from_json(dimensions)
                if isinstance(dimensions, str)
                else DimensionKey(tuple(dimensions))
            ),
            start_time=row["start_time"],
            end_time=row["end_time"],
            score=row.get("score") or 0.0,
            weight=row.get("weight") or 0.0,
            properties=_json(row.get("properties"), {}),
            function_id=row.get("function_id"),
            function_type=row.get("function_type"),
            function_properties=_json(row.get("function_properties"), {}),
        )
