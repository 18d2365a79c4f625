"""SQL dialect abstraction for the store-side clock.

Staleness decisions must never use a client's wall clock: two processes
whose clocks drift apart would disagree about who is dead. Instead every
heartbeat write and every staleness read embeds a dialect-specific SQL
expression that evaluates to "milliseconds since the epoch" on the
database server, so the store is the single authoritative clock.

Everything else that differs between backends (placeholders, quoting,
``FOR UPDATE``) is handled by SQLAlchemy Core; a dialect here only owns
the clock expression.

Architecture::

    ┌──────────┐ ┌──────────────┐ ┌────────┐ ┌────────┐ ┌──────────┐ ┌───────┐
    │ SQLite   │ │ PostgreSQL   │ │ MySQL  │ │ MSSQL  │ │  Oracle  │ │  DB2  │
    │julianday │ │ extract(...) │ │UNIX_TS │ │DATEDIFF│ │ SYSDATE  │ │ CURR. │
    └──────────┘ └──────────────┘ └────────┘ └────────┘ └──────────┘ └───────┘

Examples:
    >>> from dbsemaphore.core.dialect import get_dialect
    >>> get_dialect("postgresql").now_millis()
    'CAST(EXTRACT(EPOCH FROM clock_timestamp()) * 1000 AS BIGINT)'

Guardrails:
    ❌ DON'T: Compare heartbeat columns against ``time.time()``
    ✅ DO: Embed ``dialect.now_millis()`` in the same statement as the read

Tags:
    dialect, sql, clock-skew, portability, dbsemaphore

Doc-Types:
    - API Reference
    - Database Portability Guide
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract.

    ``now_millis()`` returns a SQL fragment that evaluates to an integer
    count of milliseconds since 1970-01-01T00:00:00Z on the server.
    """

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    def now_millis(self) -> str:
        """SQL expression for the server's current epoch millis."""
        ...


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect:
    """SQLite dialect. ``julianday('now')`` carries millisecond precision."""

    @property
    def name(self) -> str:
        return "sqlite"

    def now_millis(self) -> str:
        return "CAST((julianday('now') - 2440587.5) * 86400000.0 AS INTEGER)"


class PostgreSQLDialect:
    """PostgreSQL dialect.

    ``clock_timestamp()`` rather than ``now()``: ``now()`` is frozen at the
    start of the transaction, which would age a heartbeat written inside a
    long transaction.
    """

    @property
    def name(self) -> str:
        return "postgresql"

    def now_millis(self) -> str:
        return "CAST(EXTRACT(EPOCH FROM clock_timestamp()) * 1000 AS BIGINT)"


class MySQLDialect:
    """MySQL / MariaDB dialect."""

    @property
    def name(self) -> str:
        return "mysql"

    def now_millis(self) -> str:
        return "CAST(UNIX_TIMESTAMP(NOW(3)) * 1000 AS SIGNED)"


class MSSQLDialect:
    """SQL Server dialect (``DATEDIFF_BIG`` needs SQL Server 2016+)."""

    @property
    def name(self) -> str:
        return "mssql"

    def now_millis(self) -> str:
        return "DATEDIFF_BIG(ms, '1970-01-01 00:00:00', SYSUTCDATETIME())"


class OracleDialect:
    """Oracle dialect. Date arithmetic yields days, scaled to millis."""

    @property
    def name(self) -> str:
        return "oracle"

    def now_millis(self) -> str:
        return (
            "ROUND((CAST(SYS_EXTRACT_UTC(SYSTIMESTAMP) AS DATE) "
            "- DATE '1970-01-01') * 86400000)"
        )


class DB2Dialect:
    """IBM DB2 dialect."""

    @property
    def name(self) -> str:
        return "db2"

    def now_millis(self) -> str:
        return (
            "BIGINT((DAYS(CURRENT TIMESTAMP - CURRENT TIMEZONE) - DAYS('1970-01-01')) "
            "* 86400000 + MIDNIGHT_SECONDS(CURRENT TIMESTAMP - CURRENT TIMEZONE) * 1000 "
            "+ MICROSECOND(CURRENT TIMESTAMP) / 1000)"
        )


# =========================================================================
# Registry / Factory
# =========================================================================

# Dialects are stateless; share one instance each.
_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),
    "mysql": MySQLDialect(),
    "mariadb": MySQLDialect(),
    "mssql": MSSQLDialect(),
    "oracle": OracleDialect(),
    "db2": DB2Dialect(),
    "ibm_db_sa": DB2Dialect(),
}


def get_dialect(db_type: str) -> Dialect:
    """Get a dialect by database type name.

    Args:
        db_type: One of ``'sqlite'``, ``'postgresql'``, ``'mysql'``,
                 ``'mssql'``, ``'oracle'``, ``'db2'`` (aliases accepted).

    Raises:
        ValueError: If ``db_type`` is not recognised.
    """
    key = db_type.lower()
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{db_type}'. Supported: {sorted(_DIALECTS)}"
        )
    return _DIALECTS[key]


def register_dialect(name: str, dialect: Dialect) -> None:
    """Register a custom dialect implementation (third-party drivers, test doubles)."""
    _DIALECTS[name.lower()] = dialect


def dialect_for_engine(engine: Engine) -> Dialect:
    """Pick the dialect matching a SQLAlchemy engine's backend."""
    return get_dialect(engine.dialect.name)


__all__ = [
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "MySQLDialect",
    "MSSQLDialect",
    "OracleDialect",
    "DB2Dialect",
    "get_dialect",
    "register_dialect",
    "dialect_for_engine",
]
