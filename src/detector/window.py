"""
Detection window and bucket aggregation helpers.

Both are pure functions of an AnomalyFunctionSpec: the window decides which
``[start, end)`` range one run evaluates, the metric function string tells the
metric client how to bucket the metric inside that range.
"""

import re
from datetime import UTC, datetime, timedelta
from typing import Optional

from .errors import ValidationError
from .models import AnomalyFunctionSpec, TimeUnit

METRIC_FUNCTION_PATTERN = re.compile(r"^AGGREGATE_(\d+)_([A-Z]+)\((.+)\)$")


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip())
    except (AttributeError, ValueError) as e:
        raise ValidationError(f"Malformed ISO-8601 timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def compute_window(
    spec: AnomalyFunctionSpec,
    window_start: Optional[str] = None,
    window_end: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[datetime, datetime]:
    """Resolve the ``[start, end)`` range for one run of ``spec``.

    Args:
        spec: Function spec providing window size and delay
        window_start: Explicit ISO-8601 start, overrides the computed one
        window_end: Explicit ISO-8601 end, overrides ``now - delay``
        now: Reference instant, defaults to the current UTC time

    Returns:
        (start, end) as timezone-aware UTC datetimes. ``start < end`` is not
        enforced here.
    """
    if window_end is None:
        delay_millis = 0
        if spec.window_delay is not None:
            delay_unit = spec.window_delay_unit or spec.window_unit
            delay_millis = TimeUnit.parse(delay_unit).to_millis(spec.window_delay)
        reference = now or datetime.now(UTC)
        end = reference - timedelta(milliseconds=delay_millis)
    else:
        end = parse_instant(window_end)

    if window_start is None:
        window_millis = TimeUnit.parse(spec.window_unit).to_millis(spec.window_size)
        start = end - timedelta(milliseconds=window_millis)
    else:
        start = parse_instant(window_start)

    return start, end


def metric_function(spec: AnomalyFunctionSpec) -> str:
    """Aggregation identifier, e.g. ``AGGREGATE_1_HOURS(page_views)``"""
    if spec.bucket_size is None or spec.bucket_unit is None or not spec.metric:
        raise ValidationError(
            f"Function {spec.id} needs bucket_size, bucket_unit and metric to build a query"
        )
    unit = TimeUnit.parse(spec.bucket_unit)
    return f"AGGREGATE_{spec.bucket_size}_{unit.value}({spec.metric})"


def parse_metric_function(value: str) -> tuple[timedelta, str]:
    """Inverse of metric_function: returns (bucket width, metric name)"""
    match = METRIC_FUNCTION_PATTERN.match(value)
    if match is None:
        raise ValidationError(f"Malformed metric function: {value!r}")
    size, unit, metric = match.groups()
    return TimeUnit.parse(unit).to_timedelta(int(size)), metric
