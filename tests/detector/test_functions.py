"""
Tests for anomaly functions and the function factory.
"""

from dataclasses import replace
from datetime import timedelta

import numpy as np
import pytest

from src.detector.errors import AnalysisError, ValidationError
from src.detector.functions import (
    FUNCTION_REGISTRY,
    STLZScoreFunction,
    UserRuleFunction,
    from_spec,
    list_functions,
)
from src.detector.models import DimensionKey
from tests.fakes import NOW, make_result, make_series

KEY = DimensionKey.of("*", "*")


@pytest.fixture
def stl_spec(function_spec):
    return replace(
        function_spec,
        type="stl_zscore",
        properties={"seasonal_period": "24", "z_score_threshold": "3.0"},
    )


def _seasonal_values(days=7, spike_at=None, spike=0.0):
    """Hourly sine with a daily period, optionally with one spike"""
    hours = np.arange(days * 24)
    values = 100 + 20 * np.sin(2 * np.pi * hours / 24)
    if spike_at is not None:
        values[spike_at] += spike
    return values


class TestFactory:
    """Tests for from_spec."""

    def test_registry(self):
        assert list_functions() == ["stl_zscore", "user_rule"]
        assert FUNCTION_REGISTRY["user_rule"] is UserRuleFunction

    def test_builds_by_type(self, function_spec, stl_spec):
        assert isinstance(from_spec(function_spec), UserRuleFunction)
        assert isinstance(from_spec(stl_spec), STLZScoreFunction)

    def test_type_is_case_insensitive(self, function_spec):
        assert isinstance(from_spec(replace(function_spec, type="USER_RULE")), UserRuleFunction)

    def test_unknown_type(self, function_spec):
        with pytest.raises(ValidationError, match="Unknown function type 'prophet'"):
            from_spec(replace(function_spec, type="prophet"))

    def test_function_is_bound_to_spec(self, function_spec):
        function = from_spec(function_spec)

        assert function.spec is function_spec
        assert function.bucket_width == timedelta(hours=1)
        assert "function_id=7" in repr(function)


class TestSTLZScoreFunction:
    """Tests for STLZScoreFunction."""

    def test_config_from_string_properties(self, stl_spec):
        """Test string properties are cast to the config field types."""
        function = STLZScoreFunction(stl_spec)

        assert function.get_config() == {
            "seasonal_period": 24,
            "trend_period": None,
            "z_score_threshold": 3.0,
            "min_points": 0,
        }

    def test_invalid_property(self, stl_spec):
        with pytest.raises(ValidationError, match="z_score_threshold"):
            STLZScoreFunction(replace(stl_spec, properties={"z_score_threshold": "high"}))

    def test_detects_spike_in_window(self, stl_spec):
        """Test a spike inside the window is reported on its bucket."""
        start = NOW - timedelta(days=7)
        series = make_series(_seasonal_values(spike_at=160, spike=200.0), start=start)
        spike_bucket = start + timedelta(hours=160)

        results = STLZScoreFunction(stl_spec).analyze(
            KEY, series, NOW - timedelta(days=1), NOW, known_anomalies=[]
        )

        assert [result.start_time for result in results] == [spike_bucket]
        result = results[0]
        assert result.end_time == spike_bucket + timedelta(hours=1)
        assert result.dimension_key == KEY
        assert result.collection == "web"
        assert result.score > 3.0
        assert result.weight > 0
        assert result.properties["threshold"] == 3.0

    def test_spike_before_window_is_ignored(self, stl_spec):
        """Test anomalies in the history are not reported."""
        start = NOW - timedelta(days=7)
        series = make_series(_seasonal_values(spike_at=30, spike=200.0), start=start)

        results = STLZScoreFunction(stl_spec).analyze(
            KEY, series, NOW - timedelta(days=1), NOW, known_anomalies=[]
        )

        assert results == []

    def test_known_anomaly_is_skipped(self, stl_spec):
        start = NOW - timedelta(days=7)
        series = make_series(_seasonal_values(spike_at=160, spike=200.0), start=start)
        known = make_result(key=KEY.values, start=start + timedelta(hours=160), function_id=7)

        results = STLZScoreFunction(stl_spec).analyze(
            KEY, series, NOW - timedelta(days=1), NOW, known_anomalies=[known]
        )

        assert results == []

    def test_insufficient_points(self, stl_spec):
        """Test fewer than two seasonal periods raise AnalysisError."""
        series = make_series(_seasonal_values(days=1))

        with pytest.raises(AnalysisError, match="Insufficient points"):
            STLZScoreFunction(stl_spec).analyze(KEY, series, NOW - timedelta(days=1), NOW, [])


class TestUserRuleFunction:
    """Tests for UserRuleFunction."""

    def test_detects_drop_against_previous_hour(self, function_spec):
        """Test an hour-over-hour drop beyond the threshold is flagged."""
        values = [100.0] * 24
        values[20] = 30.0
        series = make_series(values)
        drop_bucket = NOW - timedelta(hours=4)

        results = UserRuleFunction(function_spec).analyze(
            KEY, series, NOW - timedelta(days=1), NOW, known_anomalies=[]
        )

        assert [result.start_time for result in results] == [drop_bucket]
        assert results[0].weight == pytest.approx(-0.7)
        assert results[0].score == pytest.approx(0.7)
        assert results[0].properties["baseline_value"] == 100.0

    def test_rise_with_positive_threshold(self, function_spec):
        """Test a positive threshold flags rises and ignores drops."""
        spec = replace(function_spec, properties={"baseline": "h/h", "change_threshold": 0.5})
        values = [100.0] * 24
        values[10] = 200.0
        series = make_series(values)

        results = UserRuleFunction(spec).analyze(KEY, series, NOW - timedelta(days=1), NOW, [])

        # The fall back to 100 the next hour is a -50% change, not a rise
        assert [result.start_time for result in results] == [NOW - timedelta(hours=14)]

    def test_known_anomaly_is_skipped(self, function_spec):
        values = [100.0] * 24
        values[20] = 30.0
        known = make_result(key=KEY.values, start=NOW - timedelta(hours=4), function_id=7)

        results = UserRuleFunction(function_spec).analyze(
            KEY, make_series(values), NOW - timedelta(days=1), NOW, [known]
        )

        assert results == []

    def test_low_volume_is_ignored(self, function_spec):
        spec = replace(
            function_spec,
            properties={"baseline": "h/h", "change_threshold": -0.5, "average_volume_threshold": 1000},
        )
        values = [100.0] * 24
        values[20] = 30.0

        assert UserRuleFunction(spec).analyze(KEY, make_series(values), NOW - timedelta(days=1), NOW, []) == []

    def test_missing_baseline_is_skipped(self, function_spec):
        """Test buckets without a baseline bucket are not compared."""
        spec = replace(function_spec, properties={"baseline": "w/w", "change_threshold": -0.5})
        values = [100.0] * 24
        values[20] = 30.0

        assert UserRuleFunction(spec).analyze(KEY, make_series(values), NOW - timedelta(days=1), NOW, []) == []

    def test_unknown_baseline(self, function_spec):
        with pytest.raises(ValidationError, match="Unknown baseline"):
            UserRuleFunction(replace(function_spec, properties={"baseline": "y/y"}))

    def test_zero_threshold(self, function_spec):
        with pytest.raises(ValidationError, match="non-zero"):
            UserRuleFunction(replace(function_spec, properties={"change_threshold": 0}))


class TestLookback:
    """Tests for the history each function needs before the window."""

    def test_user_rule_looks_back_one_baseline(self, function_spec):
        assert UserRuleFunction(function_spec).lookback == timedelta(hours=1)
        assert UserRuleFunction(replace(function_spec, properties={})).lookback == timedelta(weeks=1)
        assert UserRuleFunction(replace(function_spec, properties={"baseline": "w/3w"})).lookback == timedelta(weeks=3)

    def test_stl_looks_back_two_seasons(self, stl_spec):
        """Test the default period needs 48 hourly buckets of history."""
        assert STLZScoreFunction(replace(stl_spec, properties={})).lookback == timedelta(hours=48)

    def test_stl_min_points_extend_lookback(self, stl_spec):
        spec = replace(stl_spec, properties={"seasonal_period": 24, "min_points": 100})
        assert STLZScoreFunction(spec).lookback == timedelta(hours=100)

    def test_stl_lookback_follows_bucket_width(self, stl_spec):
        spec = replace(stl_spec, bucket_size=2, properties={"seasonal_period": 12})
        assert STLZScoreFunction(spec).lookback == timedelta(hours=48)
