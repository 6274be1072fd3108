"""
Tests for the detector CLI.
"""

from unittest.mock import MagicMock, patch

from src.detector.errors import ExecutionError, NotFoundError
from src.detector.run import build_config, main, parse_arguments


class TestArguments:
    """Tests for argument parsing and configuration."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("METRICS_PORT", raising=False)
        monkeypatch.delenv("DETECTOR_THREADS", raising=False)

        args = parse_arguments([])

        assert args.function_ids is None
        assert args.ad_hoc is None
        assert args.threads == 10
        assert args.metrics_port is None

    def test_repeated_function_ids(self):
        args = parse_arguments(["--function-id", "3", "--function-id", "7"])
        assert args.function_ids == [3, 7]

    def test_environment_defaults(self, monkeypatch):
        """Test environment variables provide defaults."""
        monkeypatch.setenv("POSTGRES_HOST", "db.internal")
        monkeypatch.setenv("METRICS_PORT", "9108")

        args = parse_arguments([])

        assert args.postgres_host == "db.internal"
        assert args.metrics_port == 9108

    def test_build_config(self):
        """Test the pool is sized above the scheduler thread count."""
        args = parse_arguments(
            ["--postgres-host", "pg", "--postgres-db", "metrics", "--threads", "4", "--timestamp-column", "ts"]
        )

        config = build_config(args)

        assert config.postgres_host == "pg"
        assert config.postgres_database == "metrics"
        assert config.scheduler_threads == 4
        assert config.postgres_max_connections == 6
        assert config.timestamp_column == "ts"


class TestMain:
    """Tests for the main entry point."""

    @patch("src.detector.run.CronScheduler")
    @patch("src.detector.run.AnomalyDatabase")
    def test_unhealthy_database(self, mock_db_class, mock_scheduler_class):
        """Test an unreachable database exits with an error code."""
        mock_db_class.return_value.check_health.return_value = False

        assert main(["--log-level", "ERROR"]) == 1

        mock_scheduler_class.assert_not_called()
        mock_db_class.return_value.close.assert_called_once()

    @patch("src.detector.run.AnomalyDetectionJobManager")
    @patch("src.detector.run.CronScheduler")
    @patch("src.detector.run.AnomalyDatabase")
    def test_ad_hoc_runs_once_and_exits(self, mock_db_class, mock_scheduler_class, mock_manager_class):
        """Test --ad-hoc hands off one run and waits for it."""
        mock_db_class.return_value.check_health.return_value = True
        scheduler = mock_scheduler_class.return_value
        scheduler.has_job.return_value = False
        scheduler.job_error.return_value = None
        manager = mock_manager_class.return_value
        manager.run_ad_hoc.return_value = "ad_hoc_anomaly_function_job_3_abcd1234"

        exit_code = main(
            ["--ad-hoc", "3", "--window-start", "2025-10-01T00:00:00Z", "--log-level", "ERROR"]
        )

        assert exit_code == 0
        mock_db_class.return_value.ensure_tables_exist.assert_called_once()
        manager.run_ad_hoc.assert_called_once_with(3, "2025-10-01T00:00:00Z", None)
        scheduler.start.assert_called_once()
        scheduler.shutdown.assert_called_with(wait=True)
        manager.start.assert_not_called()
        mock_db_class.return_value.close.assert_called_once()

    @patch("src.detector.run.AnomalyDetectionJobManager")
    @patch("src.detector.run.CronScheduler")
    @patch("src.detector.run.AnomalyDatabase")
    def test_failed_ad_hoc_run_exits_with_error(self, mock_db_class, mock_scheduler_class, mock_manager_class):
        """Test a one-shot run that raised inside the scheduler exits with an error code."""
        mock_db_class.return_value.check_health.return_value = True
        scheduler = mock_scheduler_class.return_value
        scheduler.has_job.return_value = False
        scheduler.job_error.return_value = ExecutionError("could not persist 3 anomalies")
        manager = mock_manager_class.return_value
        manager.run_ad_hoc.return_value = "ad_hoc_anomaly_function_job_3_abcd1234"

        assert main(["--ad-hoc", "3", "--log-level", "ERROR"]) == 1

        scheduler.job_error.assert_called_once_with("ad_hoc_anomaly_function_job_3_abcd1234")
        manager.stop_all.assert_called_once()
        mock_db_class.return_value.close.assert_called_once()

    @patch("src.detector.run.AnomalyDetectionJobManager")
    @patch("src.detector.run.CronScheduler")
    @patch("src.detector.run.AnomalyDatabase")
    def test_unknown_function_fails(self, mock_db_class, mock_scheduler_class, mock_manager_class):
        """Test a detector error stops everything and exits with an error code."""
        mock_db_class.return_value.check_health.return_value = True
        manager = mock_manager_class.return_value
        manager.start.side_effect = NotFoundError("No function with id 42")

        assert main(["--function-id", "42", "--log-level", "ERROR"]) == 1

        manager.stop_all.assert_called_once()
        mock_scheduler_class.return_value.shutdown.assert_called_once_with(wait=True)
        mock_db_class.return_value.close.assert_called_once()

    @patch("src.detector.run.signal.signal")
    @patch("src.detector.run.threading.Event")
    @patch("src.detector.run.AnomalyDetectionJobManager")
    @patch("src.detector.run.CronScheduler")
    @patch("src.detector.run.AnomalyDatabase")
    def test_schedules_active_functions_until_interrupted(
        self, mock_db_class, mock_scheduler_class, mock_manager_class, mock_event_class, mock_signal
    ):
        """Test the default mode starts every active function and stops them on exit."""
        mock_db_class.return_value.check_health.return_value = True
        mock_event_class.return_value = MagicMock(wait=MagicMock(side_effect=KeyboardInterrupt))
        manager = mock_manager_class.return_value

        assert main(["--log-level", "ERROR"]) == 0

        manager.start_all_active.assert_called_once()
        manager.stop_all.assert_called_once()
        mock_scheduler_class.return_value.shutdown.assert_called_once_with(wait=True)
