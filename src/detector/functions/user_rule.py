"""
Baseline comparison rule.

Compares every bucket in the window with the bucket one baseline period
earlier (week over week by default) and flags relative changes that cross
``change_threshold``. A negative threshold flags drops, a positive one flags
rises.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from ..errors import ValidationError
from ..models import AnomalyResult, DimensionKey, MetricTimeSeries
from .base import AnomalyFunction

logger = structlog.get_logger(__name__)

BASELINE_OFFSETS = {
    "h/h": timedelta(hours=1),
    "d/d": timedelta(days=1),
    "w/w": timedelta(weeks=1),
    "w/2w": timedelta(weeks=2),
    "w/3w": timedelta(weeks=3),
}


@dataclass
class UserRuleConfig:
    baseline: str = "w/w"
    change_threshold: float = -0.1
    average_volume_threshold: float = 0.0


class UserRuleFunction(AnomalyFunction):
    """Relative change against a shifted baseline"""

    def __init__(self, spec):
        super().__init__(spec)
        self.config = self.load_config(UserRuleConfig, spec.properties)
        if self.config.baseline not in BASELINE_OFFSETS:
            available = ", ".join(BASELINE_OFFSETS)
            raise ValidationError(
                f"Unknown baseline '{self.config.baseline}'. Available baselines: {available}"
            )
        if self.config.change_threshold == 0:
            raise ValidationError("change_threshold must be non-zero")

    @property
    def name(self) -> str:
        return "user_rule"

    @property
    def lookback(self) -> timedelta:
        return BASELINE_OFFSETS[self.config.baseline]

    def get_config(self) -> dict[str, Any]:
        return {
            "baseline": self.config.baseline,
            "change_threshold": self.config.change_threshold,
            "average_volume_threshold": self.config.average_volume_threshold,
        }

    def analyze(
        self,
        dimension_key: DimensionKey,
        series: MetricTimeSeries,
        window_start: datetime,
        window_end: datetime,
        known_anomalies: list[AnomalyResult],
    ) -> list[AnomalyResult]:
        values = series.values.dropna().sort_index().astype(float)
        current = self.window_values(series, window_start, window_end).astype(float)
        if current.empty:
            return []

        # Low-volume slices are too noisy for relative changes
        if current.mean() < self.config.average_volume_threshold:
            logger.debug(
                "Below average volume threshold",
                function_id=self.spec.id,
                dimension_key=str(dimension_key),
                average=round(float(current.mean()), 4),
            )
            return []

        offset = BASELINE_OFFSETS[self.config.baseline]
        baseline = values.reindex(current.index - offset).to_numpy()
        threshold = self.config.change_threshold

        results = []
        for bucket_start, actual, base in zip(current.index, current.to_numpy(), baseline, strict=True):
            if base != base or base == 0:  # NaN or empty baseline
                continue

            change = (actual - base) / base
            crossed = change <= threshold if threshold < 0 else change >= threshold
            if not crossed:
                continue

            bucket_end = bucket_start + self.bucket_width
            if self.is_known(known_anomalies, dimension_key, bucket_start, bucket_end):
                continue

            results.append(
                self.build_result(
                    dimension_key,
                    bucket_start,
                    score=abs(change),
                    weight=change,
                    properties={
                        "baseline": self.config.baseline,
                        "actual_value": round(float(actual), 4),
                        "baseline_value": round(float(base), 4),
                        "change": round(float(change), 4),
                    },
                )
            )

        return results
