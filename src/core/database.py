"""
Pooled PostgreSQL connection management.

Each unit of work borrows its own connection from a thread-safe pool, so
concurrent scheduler threads never share a transaction.
"""

from contextlib import contextmanager

import structlog
from psycopg2.pool import ThreadedConnectionPool

logger = structlog.get_logger(__name__)


class PostgresConnection:
    """Base class for pooled PostgreSQL access"""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_connections: int = 1,
        max_connections: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_connections = min_connections
        self.max_connections = max_connections
        self.pool = None
        self._connect()

    def _connect(self):
        """Create the connection pool"""
        try:
            self.pool = ThreadedConnectionPool(
                self.min_connections,
                self.max_connections,
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                connect_timeout=10,
            )
            logger.info(
                "PostgreSQL pool established",
                host=self.host,
                database=self.database,
                max_connections=self.max_connections,
            )
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", error=str(e))
            raise

    @contextmanager
    def get_cursor(self):
        """Borrow a connection and yield a cursor inside one transaction.

        Commits when the block exits normally, rolls back and re-raises
        otherwise. The connection always goes back to the pool.
        """
        connection = self.pool.getconn()
        cursor = connection.cursor()
        try:
            yield cursor
            connection.commit()
        except Exception as e:
            connection.rollback()
            logger.error("Database operation failed", error=str(e))
            raise
        finally:
            cursor.close()
            self.pool.putconn(connection)

    def check_health(self) -> bool:
        """Check if the database answers"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0] == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def close(self):
        """Close every pooled connection"""
        if self.pool:
            self.pool.closeall()
            self.pool = None
            logger.info("PostgreSQL pool closed")
