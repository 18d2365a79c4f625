"""Table descriptors and DDL for the heartbeat, pool and ledger tables.

Deployments often already own these tables under different names, so the
table and column names are data, not code: a descriptor names them and
every statement the stores issue is built from the descriptor.

Default layout::

    CREATE TABLE HEARTBEATS (
        OWNER VARCHAR(255) NOT NULL PRIMARY KEY,
        INTERVAL_MILLIS BIGINT NOT NULL,
        LAST_HEARTBEAT_INSTANT_MILLIS BIGINT NOT NULL
    );

    CREATE TABLE SEMAPHORES (
        NAME VARCHAR(255) NOT NULL PRIMARY KEY,
        TOTAL_PERMITS INTEGER NOT NULL,
        AVAILABLE_PERMITS INTEGER NOT NULL
    );

    CREATE TABLE PERMITS_BY_OWNER (
        SEMAPHORE_NAME VARCHAR(255) NOT NULL,
        OWNER VARCHAR(255) NOT NULL,
        HELD_PERMITS INTEGER NOT NULL,
        PRIMARY KEY (SEMAPHORE_NAME, OWNER)
    );

Identifiers are emitted unquoted, so a pre-existing ``heartbeats`` table
created without quotes on PostgreSQL is found under the default upper-case
name.

Tags:
    schema, ddl, descriptors, sqlalchemy, dbsemaphore

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dbsemaphore.core.dialect import Dialect, get_dialect
from dbsemaphore.core.errors import InvalidConfigError, TransientStoreError
from dbsemaphore.core.logging import get_logger

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")
_MAX_IDENTIFIER_LENGTH = 128
OWNER_LENGTH = 255


def check_identifier(key: str, value: str) -> None:
    """Reject anything that is not a plain SQL identifier.

    Descriptor names are interpolated into DDL and DML, so this is the
    only thing standing between a config file and SQL injection.
    """
    if not isinstance(value, str) or not _IDENTIFIER.match(value):
        raise InvalidConfigError(key, value, f"{key} is not a valid SQL identifier: {value!r}")
    if len(value) > _MAX_IDENTIFIER_LENGTH:
        raise InvalidConfigError(key, value, f"{key} exceeds {_MAX_IDENTIFIER_LENGTH} characters")


@dataclass(frozen=True)
class HeartbeatTableDesc:
    """Heartbeat table layout plus the store's "current time" expression.

    ``now_millis_sql`` overrides the dialect's expression for stores the
    built-in dialects do not cover.
    """

    table_name: str = "HEARTBEATS"
    owner_column: str = "OWNER"
    interval_column: str = "INTERVAL_MILLIS"
    last_heartbeat_column: str = "LAST_HEARTBEAT_INSTANT_MILLIS"
    dialect: str = "sqlite"
    now_millis_sql: str | None = None

    def __post_init__(self) -> None:
        check_identifier("table_name", self.table_name)
        check_identifier("owner_column", self.owner_column)
        check_identifier("interval_column", self.interval_column)
        check_identifier("last_heartbeat_column", self.last_heartbeat_column)
        try:
            get_dialect(self.dialect)
        except ValueError as exc:
            raise InvalidConfigError("dialect", self.dialect, str(exc)) from exc

    @property
    def sql_dialect(self) -> Dialect:
        return get_dialect(self.dialect)

    @property
    def current_time_millis_sql(self) -> str:
        return self.now_millis_sql or self.sql_dialect.now_millis()

    def with_dialect(self, dialect: str) -> HeartbeatTableDesc:
        return replace(self, dialect=dialect)


@dataclass(frozen=True)
class SemaphoreTablesDesc:
    """Pool table and per-owner ledger table layout."""

    pool_table: str = "SEMAPHORES"
    name_column: str = "NAME"
    total_column: str = "TOTAL_PERMITS"
    available_column: str = "AVAILABLE_PERMITS"
    ledger_table: str = "PERMITS_BY_OWNER"
    ledger_name_column: str = "SEMAPHORE_NAME"
    ledger_owner_column: str = "OWNER"
    held_column: str = "HELD_PERMITS"

    def __post_init__(self) -> None:
        for key in (
            "pool_table",
            "name_column",
            "total_column",
            "available_column",
            "ledger_table",
            "ledger_name_column",
            "ledger_owner_column",
            "held_column",
        ):
            check_identifier(key, getattr(self, key))
        if self.pool_table.lower() == self.ledger_table.lower():
            raise InvalidConfigError(
                "ledger_table", self.ledger_table, "pool and ledger tables must differ"
            )


def heartbeat_table(metadata: MetaData, desc: HeartbeatTableDesc) -> Table:
    return Table(
        desc.table_name,
        metadata,
        Column(desc.owner_column, String(OWNER_LENGTH), primary_key=True, quote=False),
        Column(desc.interval_column, BigInteger, nullable=False, quote=False),
        Column(desc.last_heartbeat_column, BigInteger, nullable=False, quote=False),
        quote=False,
    )


def pool_table(metadata: MetaData, desc: SemaphoreTablesDesc) -> Table:
    return Table(
        desc.pool_table,
        metadata,
        Column(desc.name_column, String(OWNER_LENGTH), primary_key=True, quote=False),
        Column(desc.total_column, Integer, nullable=False, quote=False),
        Column(desc.available_column, Integer, nullable=False, quote=False),
        quote=False,
    )


def ledger_table(metadata: MetaData, desc: SemaphoreTablesDesc) -> Table:
    return Table(
        desc.ledger_table,
        metadata,
        Column(desc.ledger_name_column, String(OWNER_LENGTH), primary_key=True, quote=False),
        Column(desc.ledger_owner_column, String(OWNER_LENGTH), primary_key=True, quote=False),
        Column(desc.held_column, Integer, nullable=False, quote=False),
        quote=False,
    )


def build_metadata(
    hb_desc: HeartbeatTableDesc | None = None,
    sem_desc: SemaphoreTablesDesc | None = None,
) -> MetaData:
    """Build a ``MetaData`` holding whichever tables were described."""
    metadata = MetaData()
    if hb_desc is not None:
        heartbeat_table(metadata, hb_desc)
    if sem_desc is not None:
        pool_table(metadata, sem_desc)
        ledger_table(metadata, sem_desc)
    return metadata


def _table_exists(engine: Engine, name: str) -> bool:
    # Unquoted identifiers fold to lower case (PostgreSQL) or upper case (Oracle).
    inspector = inspect(engine)
    return any(inspector.has_table(candidate) for candidate in {name, name.lower(), name.upper()})


def ensure_schema(
    engine: Engine,
    hb_desc: HeartbeatTableDesc | None = None,
    sem_desc: SemaphoreTablesDesc | None = None,
) -> list[str]:
    """Create the described tables that do not exist yet.

    Safe to call from many processes at once: if another process wins the
    race to ``CREATE TABLE``, the failure is swallowed only after the table
    is confirmed to exist.

    Returns:
        Names of the tables this call created.
    """
    metadata = build_metadata(hb_desc, sem_desc)
    created: list[str] = []
    try:
        for table in metadata.sorted_tables:
            if _table_exists(engine, table.name):
                continue
            try:
                table.create(engine, checkfirst=True)
                created.append(table.name)
                logger.info("table_created", table=table.name)
            except SQLAlchemyError:
                if not _table_exists(engine, table.name):
                    raise
                logger.debug("table_created_concurrently", table=table.name)
    except SQLAlchemyError as exc:
        raise TransientStoreError(f"Schema creation failed: {exc}", cause=exc) from exc
    return created


__all__ = [
    "HeartbeatTableDesc",
    "SemaphoreTablesDesc",
    "check_identifier",
    "heartbeat_table",
    "pool_table",
    "ledger_table",
    "build_metadata",
    "ensure_schema",
]
