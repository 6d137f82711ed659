"""
Pooled PostgreSQL access for the instrument directory and fundamentals store.

One process-wide ``PostgresConnection`` backs every repository call. The
psycopg3 pool owns the connections; a semaphore in front of it bounds how
long a caller may wait for one.
"""

import atexit
import threading
import time
from contextlib import contextmanager
from typing import Any, Generator, Optional

from psycopg.conninfo import make_conninfo
from psycopg_pool import ConnectionPool

from src.data_collector.config import krx_config
from src.utils.core.logger import get_logger

logger = get_logger(__name__, utility="database")

HEALTH_CHECK_INTERVAL = 30.0


class PostgresConnection:
    """psycopg3 ``ConnectionPool`` with an acquire timeout and cached health check."""

    def __init__(self, minconn: int, maxconn: int, **conn_kwargs: Any):
        if not conn_kwargs.get("password"):
            raise ValueError("DB_PASSWORD must be set before opening the KRX database pool")

        params = {k: v for k, v in conn_kwargs.items() if v not in (None, "")}
        self._pool = ConnectionPool(
            conninfo=make_conninfo(**params),
            min_size=minconn,
            max_size=maxconn,
            open=True,
        )
        self._sem = threading.Semaphore(maxconn)
        self._closed = False
        self._healthy = True
        self._checked_at = 0.0

    def check_health(self, force: bool = False) -> bool:
        now = time.time()
        if not force and now - self._checked_at < HEALTH_CHECK_INTERVAL:
            return self._healthy

        try:
            with self._pool.connection() as conn, conn.cursor() as cur:
                cur.execute("SELECT 1")
                row = cur.fetchone()
            self._healthy = bool(row) and row[0] == 1
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Database health check failed: {exc}")
            self._healthy = False
        self._checked_at = now
        return self._healthy

    @contextmanager
    def connection(self, timeout: float = 5.0) -> Generator[Any, None, None]:
        """Borrow a connection, waiting at most ``timeout`` seconds.

        Raises RuntimeError when the pool has been closed or no slot frees up.
        """
        if self._closed:
            raise RuntimeError("KRX database pool is closed")
        if not self._sem.acquire(timeout=timeout):
            logger.error(f"No pooled connection became free within {timeout}s")
            raise RuntimeError("Timed out waiting for a pooled connection")

        try:
            with self._pool.connection(timeout=timeout) as conn:
                yield conn
        except Exception as exc:
            logger.error(f"Pooled connection failed: {exc}")
            raise
        finally:
            self._sem.release()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._pool.close()
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Closing the database pool failed: {exc}")


_pool: Optional[PostgresConnection] = None
_pool_lock = threading.RLock()


def init_global_pool(minconn: int = 1, maxconn: int = 10) -> PostgresConnection:
    """Create the shared pool from ``krx_config`` on first call, then reuse it."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = PostgresConnection(
                minconn,
                maxconn,
                host=krx_config.DB_HOST,
                port=krx_config.DB_PORT,
                dbname=krx_config.DB_NAME,
                user=krx_config.DB_USER,
                password=krx_config.DB_PASSWORD,
            )
        return _pool


def get_global_pool() -> PostgresConnection:
    return _pool if _pool is not None else init_global_pool()


def close_global_pool() -> None:
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is not None:
        pool.close()


def check_database_health() -> bool:
    """Force a health check of the shared pool; any failure reads as unhealthy."""
    try:
        return get_global_pool().check_health(force=True)
    except Exception as exc:  # noqa: BLE001
        logger.error(f"Database unavailable: {exc}")
        return False


atexit.register(close_global_pool)
