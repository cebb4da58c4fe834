from contextlib import contextmanager
from typing import Optional

import psycopg
from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings
from .errors import LedgerError, TransactionError

# Created on first use so importing the engine never opens sockets.
_pool: Optional[ConnectionPool] = None


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        # Note: we keep row_factory=dict_row; every query in the engine reads rows by column name.
        _pool = ConnectionPool(
            conninfo=settings.db_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            kwargs={"row_factory": dict_row},
        )
    return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:`
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_get_pool())


def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    try:
        _pool.close()
    finally:
        _pool = None


@contextmanager
def atomic(conn):
    """
    One unit of work: BEGIN on entry, COMMIT on success, ROLLBACK on any exception.

    Business errors (LedgerError) propagate unchanged after the rollback.
    Storage-layer failures are re-raised as TransactionError so callers can tell
    "the store refused the write" from "the input was wrong".
    """
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                yield cur
    except LedgerError:
        raise
    except psycopg.Error as exc:
        raise TransactionError(f"transaction rolled back: {exc}") from exc
