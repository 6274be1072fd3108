"""
Scheduled Anomaly Detector

Runs anomaly functions against bucketed metrics on cron schedules.

Architecture:
- Job manager: thread-safe registry of scheduled functions (start/stop/ad-hoc)
- Detection job: one run = window, known anomalies, exploration, atomic commit
- Explorer: queries the metric as a whole and broken out by each explore dimension
- Pluggable functions: registered by type tag (stl_zscore, user_rule)

Usage:
    # Schedule every active function
    python -m src.detector.run

    # Run one function once on an explicit window
    python -m src.detector.run --ad-hoc 3 --window-start 2025-10-01T00:00:00Z
"""

from .job import AnomalyDetectionJob, ExecutionContext
from .manager import AnomalyDetectionJobManager
from .models import AnomalyFunctionSpec, AnomalyResult, DetectorConfig

__all__ = [
    "AnomalyDetectionJob",
    "AnomalyDetectionJobManager",
    "AnomalyFunctionSpec",
    "AnomalyResult",
    "DetectorConfig",
    "ExecutionContext",
]
