"""SQLAlchemy engine factory and the single transaction scope.

Every store operation runs inside ``store_transaction(engine)``: one
connection, one transaction, commit on success, rollback on any error.
SQLAlchemy errors leaving the scope are translated into
``TransientStoreError`` so callers deal with one retryable type.

SQLite needs two adjustments to behave like a row-locking store:

* pysqlite's implicit ``BEGIN`` is disabled and every transaction starts
  with ``BEGIN IMMEDIATE``, taking the write lock up front. Two processes
  racing for the last permit therefore serialize instead of both reading
  the same ``AVAILABLE_PERMITS`` (``SELECT ... FOR UPDATE`` is a no-op on
  SQLite).
* a busy timeout, so the loser waits for the lock instead of failing
  immediately with ``database is locked``.

Tags:
    engine, sqlalchemy, transaction, sqlite, dbsemaphore

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from dbsemaphore.core.errors import ErrorContext, TransientStoreError


def create_semaphore_engine(
    url: str = "sqlite:///dbsemaphore.db",
    *,
    echo: bool = False,
    busy_timeout_seconds: float = 30.0,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    pool_timeout: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine suitable for the semaphore tables.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql://…``, etc.)
    echo:
        If ``True``, log all SQL to stdout.
    busy_timeout_seconds:
        SQLite only: how long a writer waits for the database lock.
    pool_size, max_overflow, pool_timeout:
        Connection pool parameters (ignored for SQLite).
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", busy_timeout_seconds)
        engine = _sa_create_engine(url, echo=echo, connect_args=connect_args, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn: Connection) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    pool_kwargs: dict[str, Any] = {}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow
    if pool_timeout is not None:
        pool_kwargs["pool_timeout"] = pool_timeout

    return _sa_create_engine(url, echo=echo, **pool_kwargs, **kwargs)


@contextmanager
def store_transaction(
    engine: Engine,
    *,
    operation: str | None = None,
    semaphore: str | None = None,
    owner: str | None = None,
) -> Iterator[Connection]:
    """Run a block inside one store transaction.

    The block may call ``conn.rollback()`` itself to abandon its changes;
    the final commit is then a no-op. Non-SQLAlchemy exceptions (our own
    ``OverReleaseError`` and friends) propagate unchanged after rollback.

    Example::

        with store_transaction(engine, operation="try_grant") as conn:
            row = conn.execute(select(...).with_for_update()).first()
    """
    try:
        with engine.connect() as conn:
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
    except SQLAlchemyError as exc:
        context = ErrorContext(semaphore=semaphore, owner=owner, operation=operation)
        raise TransientStoreError(
            f"Store operation {operation or 'transaction'} failed: {exc}",
            context=context,
            cause=exc,
        ) from exc


__all__ = ["create_semaphore_engine", "store_transaction"]
