"""
PostgreSQL operations for the anomaly detector.

Handles:
- Loading anomaly function specs
- Querying anomalies already stored for a function and window
- Inserting detected anomalies inside caller-owned transactions
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

import psycopg2
import structlog

from src.core.database import PostgresConnection

from .errors import PersistenceError
from .models import AnomalyFunctionSpec, AnomalyResult, DetectorConfig

logger = structlog.get_logger(__name__)

FUNCTION_COLUMNS = """
    id, collection, metric, type, cron,
    window_size, window_unit, window_delay, window_delay_unit,
    bucket_size, bucket_unit, explore_dimensions, properties, is_active
"""

RESULT_COLUMNS = """
    id, collection, metric, dimensions, start_time, end_time,
    score, weight, properties, function_id, function_type, function_properties
"""


def _rows(cursor) -> list[dict[str, Any]]:
    columns = [desc[0] for desc in cursor.description]
    return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]


class AnomalyDatabase(PostgresConnection):
    """Function spec store and anomaly result store"""

    def __init__(self, config: DetectorConfig):
        super().__init__(
            host=config.postgres_host,
            port=config.postgres_port,
            database=config.postgres_database,
            user=config.postgres_user,
            password=config.postgres_password,
            min_connections=config.postgres_min_connections,
            max_connections=config.postgres_max_connections,
        )
        self.config = config

    @contextmanager
    def transaction(self):
        """One transaction on its own pooled connection

        Yields the cursor to pass to the result store calls. Everything done
        with it is committed together or rolled back together.

        Raises:
            PersistenceError: If the database rejects the transaction
        """
        try:
            with self.get_cursor() as cursor:
                yield cursor
        except psycopg2.Error as e:
            raise PersistenceError(str(e)) from e

    # ========================================
    # Function specs
    # ========================================

    def find_function_by_id(self, function_id: int) -> Optional[AnomalyFunctionSpec]:
        """Load one function spec

        Returns:
            The spec, or None if no function has this id
        """
        query = f"SELECT {FUNCTION_COLUMNS} FROM anomaly_functions WHERE id = %s"
        with self.transaction() as cursor:
            cursor.execute(query, (function_id,))
            rows = _rows(cursor)
        return AnomalyFunctionSpec.from_row(rows[0]) if rows else None

    def find_active_functions(self) -> list[AnomalyFunctionSpec]:
        """Load every function flagged active, ordered by id"""
        query = f"SELECT {FUNCTION_COLUMNS} FROM anomaly_functions WHERE is_active ORDER BY id"
        with self.transaction() as cursor:
            cursor.execute(query)
            rows = _rows(cursor)
        logger.info("Loaded active functions", count=len(rows))
        return [AnomalyFunctionSpec.from_row(row) for row in rows]

    # ========================================
    # Anomaly results
    # ========================================

    def find_all_by_collection_time_and_function(
        self,
        tx,
        collection: str,
        start: datetime,
        end: datetime,
        function_id: int,
    ) -> list[AnomalyResult]:
        """Stored anomalies of ``function_id`` overlapping ``[start, end)``

        Args:
            tx: Cursor yielded by ``transaction()``
        """
        query = f"""
            SELECT {RESULT_COLUMNS}
            FROM anomaly_results
            WHERE collection = %(collection)s
              AND function_id = %(function_id)s
              AND start_time < %(end)s
              AND end_time > %(start)s
            ORDER BY start_time
        """
        try:
            tx.execute(
                query,
                {"collection": collection, "function_id": function_id, "start": start, "end": end},
            )
            results = [AnomalyResult.from_row(row) for row in _rows(tx)]
        except psycopg2.Error as e:
            logger.error(
                "Failed to query known anomalies",
                collection=collection,
                function_id=function_id,
                error=str(e),
            )
            raise PersistenceError(str(e)) from e

        logger.debug(
            "Queried known anomalies",
            collection=collection,
            function_id=function_id,
            count=len(results),
        )
        return results

    def create(self, tx, result: AnomalyResult) -> None:
        """Insert one anomaly and record its generated id

        Args:
            tx: Cursor yielded by ``transaction()``; nothing is visible until
                that transaction commits
        """
        query = """
            INSERT INTO anomaly_results (
                collection, metric, dimensions, start_time, end_time,
                score, weight, properties, function_id, function_type, function_properties
            ) VALUES (
                %(collection)s, %(metric)s, %(dimensions)s, %(start_time)s, %(end_time)s,
                %(score)s, %(weight)s, %(properties)s, %(function_id)s, %(function_type)s,
                %(function_properties)s
            )
            RETURNING id
        """
        try:
            tx.execute(query, result.to_db_dict())
            result.id = tx.fetchone()[0]
        except psycopg2.Error as e:
            logger.error(
                "Failed to insert anomaly",
                function_id=result.function_id,
                dimension_key=str(result.dimension_key),
                error=str(e),
            )
            raise PersistenceError(str(e)) from e

    def ensure_tables_exist(self):
        """Create the function and result tables if they don't exist"""
        query = """
            CREATE TABLE IF NOT EXISTS anomaly_functions (
                id SERIAL PRIMARY KEY,
                collection VARCHAR(100) NOT NULL,
                metric VARCHAR(100) NOT NULL,
                type VARCHAR(50) NOT NULL,
                cron VARCHAR(100) NOT NULL,
                window_size INTEGER NOT NULL,
                window_unit VARCHAR(16) NOT NULL,
                window_delay INTEGER,
                window_delay_unit VARCHAR(16),
                bucket_size INTEGER NOT NULL,
                bucket_unit VARCHAR(16) NOT NULL,
                explore_dimensions TEXT,
                properties JSONB NOT NULL DEFAULT '{}',
                is_active BOOLEAN NOT NULL DEFAULT TRUE
            );

            CREATE TABLE IF NOT EXISTS anomaly_results (
                id BIGSERIAL PRIMARY KEY,
                collection VARCHAR(100) NOT NULL,
                metric VARCHAR(100),
                dimensions JSONB NOT NULL,
                start_time TIMESTAMPTZ NOT NULL,
                end_time TIMESTAMPTZ NOT NULL,
                score DOUBLE PRECISION,
                weight DOUBLE PRECISION,
                properties JSONB,
                function_id INTEGER NOT NULL REFERENCES anomaly_functions(id),
                function_type VARCHAR(50),
                function_properties JSONB,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_anomaly_results_lookup
            ON anomaly_results(collection, function_id, start_time, end_time);
        """

        with self.transaction() as cursor:
            cursor.execute(query)
        logger.info("Ensured anomaly tables exist")
