from __future__ import annotations

from contextlib import contextmanager
from threading import BoundedSemaphore
from typing import Iterator

from psycopg2.extensions import connection as PgConnection
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from miniapp_notify.config import Settings


class DatabaseConfigError(RuntimeError):
    """Raised when the database cannot be configured from settings."""


class Database:
    """Owns a small, bounded psycopg2 pool for the life of the process."""

    def __init__(
        self,
        dsn: str,
        *,
        min_connections: int = 1,
        max_connections: int = 2,
        connect_timeout_seconds: int = 5,
        sslmode: str | None = None,
    ) -> None:
        if not dsn:
            raise DatabaseConfigError("Missing DATABASE_URL")
        kwargs: dict[str, object] = {"connect_timeout": connect_timeout_seconds}
        if sslmode:
            kwargs["sslmode"] = sslmode
        self._pool = ThreadedConnectionPool(min_connections, max_connections, dsn, **kwargs)
        # getconn raises instead of waiting once every connection is checked out.
        self._slots = BoundedSemaphore(max_connections)

    @contextmanager
    def connection(self) -> Iterator[PgConnection]:
        self._slots.acquire()
        try:
            conn = self._pool.getconn()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self._pool.putconn(conn)
        finally:
            self._slots.release()

    @contextmanager
    def cursor(self) -> Iterator[RealDictCursor]:
        with self.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur

    def close(self) -> None:
        if not self._pool.closed:
            self._pool.closeall()


def create_database(settings: Settings) -> Database:
    if not settings.database_url:
        raise DatabaseConfigError("Missing DATABASE_URL")
    return Database(
        settings.database_url,
        min_connections=settings.database_pool_min,
        max_connections=settings.database_pool_max,
        connect_timeout_seconds=settings.database_connect_timeout_seconds,
        sslmode=settings.database_sslmode,
    )
