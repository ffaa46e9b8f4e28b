import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from outbox_pipeline.domain.errors import ConflictError, StoreError


class PostgresPool:
    """Thread-safe connection pool shared by the writer, the dispatcher and the scanner."""

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 8, timeout: float = 10.0):
        try:
            self._pool = ThreadedConnectionPool(minconn, maxconn, dsn=dsn, cursor_factory=RealDictCursor)
        except psycopg2.Error as exc:
            raise StoreError(f"cannot connect to postgres: {exc}") from exc
        # getconn raises instead of blocking once maxconn are out.
        self._slots = threading.BoundedSemaphore(maxconn)
        self.timeout = timeout
        self.dsn = dsn

    @contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        if not self._slots.acquire(timeout=self.timeout):
            raise StoreError(f"no postgres connection available within {self.timeout}s")
        try:
            try:
                conn = self._pool.getconn()
            except psycopg2.Error as exc:
                raise StoreError(f"no postgres connection available: {exc}") from exc
            try:
                yield conn
            finally:
                self._pool.putconn(conn)
        finally:
            self._slots.release()

    @contextmanager
    def transaction(self) -> Iterator[psycopg2.extensions.connection]:
        """Yield a connection whose statements commit together on clean exit."""
        with self.connection() as conn:
            conn.autocommit = False
            try:
                with translate_errors():
                    yield conn
                    conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def close(self) -> None:
        self._pool.closeall()


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map psycopg2 failures onto the pipeline's error taxonomy."""
    try:
        yield
    except pg_errors.UniqueViolation as exc:
        raise ConflictError(str(exc).strip()) from exc
    except psycopg2.Error as exc:
        raise StoreError(str(exc).strip()) from exc


def fetch_one(conn, query: str, params: Optional[tuple] = None):
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        return cur.fetchone()


def fetch_all(conn, query: str, params: Optional[tuple] = None):
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        return cur.fetchall()


def execute(conn, query: str, params: Optional[tuple] = None, commit: bool = True) -> int:
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        affected = cur.rowcount
    if commit:
        conn.commit()
    return affected
