"""
CLI for the scheduled anomaly detector.

Usage:
    python -m src.detector.run [options]
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time

import structlog

from src.core.logger import setup_logging

from .client import PostgresMetricClient
from .database import AnomalyDatabase
from .errors import DetectorError
from .functions import list_functions
from .manager import AnomalyDetectionJobManager
from .metrics import DetectorMetrics
from .models import DetectorConfig
from .scheduler import CronScheduler

logger = structlog.get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Run anomaly functions on their cron schedules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Schedule every active function
        python -m src.detector.run

        # Schedule only functions 3 and 7, expose Prometheus metrics
        python -m src.detector.run --function-id 3 --function-id 7 --metrics-port 9108

        # Re-run function 3 on a past window and exit
        python -m src.detector.run --ad-hoc 3 \\
            --window-start 2025-10-01T00:00:00Z --window-end 2025-10-02T00:00:00Z
        """,
    )

    # Functions
    parser.add_argument(
        "--function-id",
        type=int,
        action="append",
        dest="function_ids",
        help="Function to schedule, repeatable (default: every active function)",
    )
    parser.add_argument(
        "--ad-hoc",
        type=int,
        metavar="FUNCTION_ID",
        help="Run one function once on the given window, then exit",
    )
    parser.add_argument("--window-start", help="ISO-8601 window start for --ad-hoc")
    parser.add_argument("--window-end", help="ISO-8601 window end for --ad-hoc")

    # PostgreSQL settings
    parser.add_argument(
        "--postgres-host",
        default=os.getenv("POSTGRES_HOST", "localhost"),
        help="PostgreSQL host (default: localhost or POSTGRES_HOST env var)",
    )
    parser.add_argument(
        "--postgres-port",
        type=int,
        default=int(os.getenv("POSTGRES_PORT", "5432")),
        help="PostgreSQL port (default: 5432)",
    )
    parser.add_argument(
        "--postgres-db",
        default=os.getenv("POSTGRES_DB", "mlops_db"),
        help="PostgreSQL database (default: mlops_db)",
    )
    parser.add_argument(
        "--postgres-user",
        default=os.getenv("POSTGRES_USER", "mlops"),
        help="PostgreSQL user (default: mlops)",
    )
    parser.add_argument(
        "--postgres-password",
        default=os.getenv("POSTGRES_PASSWORD", "mlops_password"),
        help="PostgreSQL password",
    )
    parser.add_argument(
        "--timestamp-column",
        default=os.getenv("METRIC_TIMESTAMP_COLUMN", "timestamp"),
        help="Timestamp column of metric tables (default: timestamp)",
    )

    # Scheduler and metrics
    parser.add_argument(
        "--threads",
        type=int,
        default=int(os.getenv("DETECTOR_THREADS", "10")),
        help="Concurrent detection runs (default: 10)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=int(os.getenv("METRICS_PORT")) if os.getenv("METRICS_PORT") else None,
        help="Expose Prometheus metrics on this port (default: disabled)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_config(args) -> DetectorConfig:
    """Build configuration from arguments"""
    return DetectorConfig(
        postgres_host=args.postgres_host,
        postgres_port=args.postgres_port,
        postgres_database=args.postgres_db,
        postgres_user=args.postgres_user,
        postgres_password=args.postgres_password,
        postgres_max_connections=max(args.threads, 1) + 2,
        timestamp_column=args.timestamp_column,
        scheduler_threads=args.threads,
        metrics_port=args.metrics_port,
    )


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    setup_logging(level=getattr(logging, args.log_level))

    logger.info("Starting anomaly detector", functions=list_functions())

    config = build_config(args)
    db = None
    scheduler = None
    manager = None
    try:
        db = AnomalyDatabase(config)
        if not db.check_health():
            raise RuntimeError("Database health check failed")
        db.ensure_tables_exist()

        metrics = DetectorMetrics()
        if config.metrics_port:
            metrics.serve(config.metrics_port)

        scheduler = CronScheduler(
            max_workers=config.scheduler_threads,
            misfire_grace_seconds=config.misfire_grace_seconds,
        )
        manager = AnomalyDetectionJobManager(
            scheduler=scheduler,
            metric_client=PostgresMetricClient(db, config.timestamp_column),
            spec_store=db,
            result_store=db,
            metrics=metrics,
        )
        scheduler.start()

        if args.ad_hoc is not None:
            job_key = manager.run_ad_hoc(args.ad_hoc, args.window_start, args.window_end)
            while scheduler.has_job(job_key):
                time.sleep(0.5)
            # Blocks until the handed-off run finishes
            scheduler.shutdown(wait=True)

            error = scheduler.job_error(job_key)
            if error is not None:
                logger.error("Ad-hoc run failed", job=job_key, error=str(error))
                return 1
            logger.info("Ad-hoc run completed", job=job_key)
            return 0

        if args.function_ids:
            for function_id in args.function_ids:
                manager.start(function_id)
        else:
            manager.start_all_active()

        logger.info("Detector running", active_jobs=manager.list_active_jobs())

        stop_event = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
        stop_event.wait()
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except DetectorError as e:
        logger.error("Detector failed", error=str(e))
        return 1

    except Exception as e:
        logger.error("Detector failed", error=str(e), exc_info=True)
        return 1

    finally:
        if manager is not None:
            manager.stop_all()
        if scheduler is not None:
            scheduler.shutdown(wait=True)
        if db is not None:
            db.close()


if __name__ == "__main__":
    sys.exit(main())
