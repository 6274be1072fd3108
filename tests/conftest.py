"""
Pytest configuration and shared fixtures.
"""

import pytest

from src.detector.metrics import DetectorMetrics
from src.detector.models import AnomalyFunctionSpec, DetectorConfig, TimeUnit
from tests.fakes import FakeScheduler


@pytest.fixture
def function_spec():
    """A one-day window on hourly buckets, explored by country then browser."""
    return AnomalyFunctionSpec(
        id=7,
        collection="web",
        metric="page_views",
        type="user_rule",
        cron="0 * * * *",
        window_size=1,
        window_unit=TimeUnit.DAYS,
        bucket_size=1,
        bucket_unit=TimeUnit.HOURS,
        window_delay=0,
        explore_dimensions="country,browser",
        properties={"baseline": "h/h", "change_threshold": "-0.5"},
    )


@pytest.fixture
def detector_config():
    """Detector configuration pointing at a test database."""
    return DetectorConfig(
        postgres_host="localhost",
        postgres_port=5432,
        postgres_database="test_db",
        postgres_user="test_user",
        postgres_password="test_password",
    )


@pytest.fixture
def metrics():
    """Metrics on a private registry so tests don't collide."""
    return DetectorMetrics()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()
