"""
CRM AI Database Connection
==========================

PostgreSQL access shared by the pgvector store and the audit log.
Uses psycopg2 with a lazily created ThreadedConnectionPool; callers run the
blocking work in a worker thread (asyncio.to_thread).
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from psycopg2 import pool as pg_pool

from ..config import DatabaseConfig

logger = logging.getLogger(__name__)


class Database:
    """
    Lazy psycopg2 connection pool.

    Args:
        config: DatabaseConfig with connection parameters and pool bounds
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool: Optional[pg_pool.ThreadedConnectionPool] = None

    def get_pool(self) -> pg_pool.ThreadedConnectionPool:
        """Get or create connection pool."""
        if self._pool is None:
            params = self.config.connection_dict
            self._pool = pg_pool.ThreadedConnectionPool(
                self.config.pool_min_size,
                self.config.pool_max_size,
                **params,
            )
            logger.info(f"DB pool created: {params['host']}:{params['port']}/{params['dbname']}")
        return self._pool

    @contextmanager
    def connection(self):
        """Get a connection from the pool; commits on success, rolls back on error."""
        pool = self.get_pool()
        conn = pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            pool.putconn(conn)

    def check_health(self) -> Dict[str, Any]:
        """
        Check database health. Returns status dict.
        Returns 'disconnected' if DB is not reachable.
        """
        try:
            with self.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
            return {"status": "connected"}
        except Exception as e:
            logger.warning(f"DB health check failed: {e}")
            return {"status": "disconnected", "error": str(e)}

    def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("DB pool closed")
