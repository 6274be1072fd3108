"""
Metric client answering detection requests from PostgreSQL/TimescaleDB.

A collection is a table with one timestamp column, metric columns and text
dimension columns. ``AGGREGATE_<n>_<UNIT>(<metric>)`` becomes a
``time_bucket`` SUM over the request window.
"""

import threading

import pandas as pd
import psycopg2
import structlog
from psycopg2 import sql

from src.core.database import PostgresConnection

from .errors import QueryError, ValidationError
from .models import ALL_VALUES, DetectionRequest, DimensionKey, MetricTimeSeries
from .window import parse_metric_function

logger = structlog.get_logger(__name__)

DIMENSION_TYPES = ("text", "character varying", "character")


class PostgresMetricClient:
    """Thread-safe metric client; dimension columns are cached per collection"""

    def __init__(self, db: PostgresConnection, timestamp_column: str = "timestamp"):
        self.db = db
        self.timestamp_column = timestamp_column
        self._dimensions: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def dimensions(self, collection: str) -> list[str]:
        """Text columns of ``collection``, in table order"""
        with self._lock:
            if collection in self._dimensions:
                return self._dimensions[collection]

        query = """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = %s
              AND data_type IN %s
            ORDER BY ordinal_position
        """
        with self.db.get_cursor() as cursor:
            cursor.execute(query, (collection, DIMENSION_TYPES))
            names = [row[0] for row in cursor.fetchall()]

        logger.debug("Discovered dimensions", collection=collection, dimensions=names)
        with self._lock:
            self._dimensions[collection] = names
        return names

    def execute(self, request: DetectionRequest) -> dict[DimensionKey, MetricTimeSeries]:
        """Run one request

        Returns:
            One series per dimension key. Without group-by there is a single
            key with every position set to ``*``.

        Raises:
            QueryError: If the request is malformed or the query fails
        """
        try:
            bucket, metric = parse_metric_function(request.metric_function)
            dimensions = self.dimensions(request.collection)
            if request.group_by is not None and request.group_by not in dimensions:
                raise ValidationError(
                    f"Unknown dimension '{request.group_by}' for collection {request.collection}"
                )
            df = self._query(request, bucket, metric)
        except (psycopg2.Error, ValidationError) as e:
            raise QueryError(f"{request}: {e}") from e

        if df.empty:
            return {}

        df["bucket"] = pd.to_datetime(df["bucket"], utc=True)
        df["value"] = df["value"].astype(float)

        if request.group_by is None:
            key = DimensionKey(tuple(ALL_VALUES for _ in dimensions))
            return {key: MetricTimeSeries(metric, df.set_index("bucket")["value"])}

        position = dimensions.index(request.group_by)
        response = {}
        for value, group in df.groupby("dimension_value", dropna=False):
            values = [ALL_VALUES] * len(dimensions)
            values[position] = "" if pd.isna(value) else str(value)
            response[DimensionKey(tuple(values))] = MetricTimeSeries(
                metric, group.set_index("bucket")["value"]
            )
        return response

    def _query(self, request: DetectionRequest, bucket, metric: str) -> pd.DataFrame:
        timestamp = sql.Identifier(self.timestamp_column)
        if request.group_by is None:
            query = sql.SQL("""
                SELECT time_bucket(%(bucket)s, {ts}) AS bucket, SUM({metric}) AS value
                FROM {table}
                WHERE {ts} >= %(start)s AND {ts} < %(end)s
                GROUP BY 1
                ORDER BY 1
            """).format(ts=timestamp, metric=sql.Identifier(metric), table=sql.Identifier(request.collection))
            columns = ["bucket", "value"]
        else:
            query = sql.SQL("""
                SELECT time_bucket(%(bucket)s, {ts}) AS bucket, {dimension} AS dimension_value,
                       SUM({metric}) AS value
                FROM {table}
                WHERE {ts} >= %(start)s AND {ts} < %(end)s
                GROUP BY 1, 2
                ORDER BY 1
            """).format(
                ts=timestamp,
                dimension=sql.Identifier(request.group_by),
                metric=sql.Identifier(metric),
                table=sql.Identifier(request.collection),
            )
            columns = ["bucket", "dimension_value", "value"]

        params = {"bucket": bucket, "start": request.start, "end": request.end}
        with self.db.get_cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()

        logger.debug("Queried metric", request=str(request), rows=len(rows))
        return pd.DataFrame(rows, columns=columns)
