"""
STL + Z-Score anomaly function.

Decomposes the slice's time series into Trend + Seasonal + Residual using STL,
then flags window buckets whose residual z-score exceeds the threshold.

Workflow:
1. Fit STL on the whole series (history before the window included)
2. Standardize the residuals over the whole series
3. Report every bucket inside the window with |z| > z_score_threshold
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import numpy as np
import structlog
from statsmodels.tsa.seasonal import STL

from ..errors import AnalysisError
from ..models import AnomalyResult, DimensionKey, MetricTimeSeries
from .base import AnomalyFunction

logger = structlog.get_logger(__name__)


@dataclass
class STLZScoreConfig:
    """Configuration for STL + Z-Score, read from the function properties"""

    seasonal_period: int = 24  # 24 = one day of hourly buckets
    trend_period: Optional[int] = None  # must be odd and > seasonal_period when set
    z_score_threshold: float = 3.0
    min_points: int = 0  # at least 2 * seasonal_period is always required


class STLZScoreFunction(AnomalyFunction):
    """STL decomposition + Z-score on residuals"""

    def __init__(self, spec):
        super().__init__(spec)
        self.config = self.load_config(STLZScoreConfig, spec.properties)
        if self.config.trend_period is not None:
            self.config.trend_period = int(self.config.trend_period)

    @property
    def name(self) -> str:
        return "stl_zscore"

    @property
    def lookback(self) -> timedelta:
        # History alone satisfies the STL minimum
        points = max(self.config.min_points, 2 * self.config.seasonal_period)
        return points * self.bucket_width

    def get_config(self) -> dict[str, Any]:
        return {
            "seasonal_period": self.config.seasonal_period,
            "trend_period": self.config.trend_period,
            "z_score_threshold": self.config.z_score_threshold,
            "min_points": self.config.min_points,
        }

    def analyze(
        self,
        dimension_key: DimensionKey,
        series: MetricTimeSeries,
        window_start: datetime,
        window_end: datetime,
        known_anomalies: list[AnomalyResult],
    ) -> list[AnomalyResult]:
        ts = series.values.dropna().sort_index().astype(float)

        required = max(self.config.min_points, 2 * self.config.seasonal_period)
        if len(ts) < required:
            raise AnalysisError(
                f"Insufficient points for STL: {len(ts)} < {required} "
                f"(need at least 2x seasonal_period)"
            )

        # Ensure seasonal smoother is odd (STL requirement)
        seasonal = self.config.seasonal_period
        if seasonal % 2 == 0:
            seasonal += 1

        try:
            stl = STL(
                ts.to_numpy(),
                period=self.config.seasonal_period,
                seasonal=seasonal,
                trend=self.config.trend_period,
                robust=True,
            ).fit()
        except Exception as e:
            raise AnalysisError(f"STL fit failed for {dimension_key}: {e}") from e

        residual_std = float(np.std(stl.resid))
        if residual_std == 0:
            return []
        z_scores = (stl.resid - float(np.mean(stl.resid))) / residual_std
        expected = stl.trend + stl.seasonal

        results = []
        for position, bucket_start in enumerate(ts.index):
            if not (window_start <= bucket_start < window_end):
                continue

            z_score = float(z_scores[position])
            if abs(z_score) <= self.config.z_score_threshold:
                continue

            bucket_end = bucket_start + self.bucket_width
            if self.is_known(known_anomalies, dimension_key, bucket_start, bucket_end):
                continue

            actual = float(ts.iloc[position])
            baseline = float(expected[position])
            weight = (actual - baseline) / baseline if baseline else 0.0
            results.append(
                self.build_result(
                    dimension_key,
                    bucket_start,
                    score=abs(z_score),
                    weight=weight,
                    properties={
                        "z_score": round(z_score, 4),
                        "actual_value": round(actual, 4),
                        "expected_value": round(baseline, 4),
                        "threshold": self.config.z_score_threshold,
                    },
                )
            )

        logger.debug(
            "STL z-score analyzed",
            function_id=self.spec.id,
            dimension_key=str(dimension_key),
            points=len(ts),
            anomalies=len(results),
        )
        return results
