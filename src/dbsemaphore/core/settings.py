"""Environment-driven settings for dbsemaphore.

Every tunable of the protocol (heartbeat pacing, staleness grace, acquire
backoff, table and column names) can be set through ``DBSEM_*``
environment variables or a ``.env`` file, so the same binary can join a
deployment whose tables were created by someone else.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not on first acquire
    - **Environment-driven:** Reads from env vars and .env files
    - **Sensible defaults:** 10s heartbeat, 2x grace, works out of the box

Examples:
    >>> from dbsemaphore.core.settings import SemaphoreSettings
    >>> settings = SemaphoreSettings(heartbeat_interval_ms=1000)
    >>> settings.grace_window_ms
    2000

Tags:
    settings, configuration, pydantic, environment, dbsemaphore

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dbsemaphore.core.errors import TransientStoreError
from dbsemaphore.core.retry import ExponentialBackoff
from dbsemaphore.core.schema import HeartbeatTableDesc, SemaphoreTablesDesc


class SemaphoreSettings(BaseSettings):
    """All recognised options, read from ``DBSEM_``-prefixed env vars.

    Fields
    ──────
    database_url            : SQLAlchemy URL used by the CLI and helpers
    dialect                 : Clock dialect; None infers it from the engine
    now_millis_sql          : Custom "current epoch millis" SQL expression
    heartbeat_interval_ms   : Promised maximum gap between heartbeats
    grace_multiplier        : Staleness threshold = interval * multiplier
    acquire_backoff_*       : Floor/ceiling/jitter of the acquire loop
    *_table / *_column      : Names of pre-existing tables and columns
    log_level / log_json    : Logging used by the dbsem CLI (json None = auto)
    """

    model_config = SettingsConfigDict(
        env_prefix="DBSEM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    database_url: str = "sqlite:///dbsemaphore.db"
    dialect: str | None = None
    now_millis_sql: str | None = None
    auto_create_schema: bool = True

    # ── Heartbeat ────────────────────────────────────────────────
    heartbeat_interval_ms: int = Field(default=10_000, gt=0)
    grace_multiplier: float = Field(default=2.0, gt=1.0)
    heartbeat_max_retries: int = Field(default=3, ge=0)
    heartbeat_retry_base_ms: int = Field(default=100, gt=0)

    # ── Acquire ──────────────────────────────────────────────────
    acquire_backoff_floor_ms: int = Field(default=50, gt=0)
    acquire_backoff_ceiling_ms: int = Field(default=2_000, gt=0)
    acquire_backoff_jitter: float = Field(default=0.25, ge=0.0, le=1.0)
    default_acquire_timeout_seconds: float = Field(default=60.0, ge=0.0)
    reap_on_contention: bool = True
    background_reap: bool = False

    # ── Heartbeat table ──────────────────────────────────────────
    heartbeat_table: str = "HEARTBEATS"
    heartbeat_owner_column: str = "OWNER"
    heartbeat_interval_column: str = "INTERVAL_MILLIS"
    heartbeat_last_column: str = "LAST_HEARTBEAT_INSTANT_MILLIS"

    # ── Semaphore tables ─────────────────────────────────────────
    semaphore_table: str = "SEMAPHORES"
    semaphore_name_column: str = "NAME"
    semaphore_total_column: str = "TOTAL_PERMITS"
    semaphore_available_column: str = "AVAILABLE_PERMITS"
    ledger_table: str = "PERMITS_BY_OWNER"
    ledger_name_column: str = "SEMAPHORE_NAME"
    ledger_owner_column: str = "OWNER"
    ledger_held_column: str = "HELD_PERMITS"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "WARNING"
    log_json: bool | None = None

    @model_validator(mode="after")
    def _check_backoff(self) -> SemaphoreSettings:
        if self.acquire_backoff_ceiling_ms < self.acquire_backoff_floor_ms:
            raise ValueError("acquire_backoff_ceiling_ms must be >= acquire_backoff_floor_ms")
        return self

    @property
    def grace_window_ms(self) -> int:
        return int(self.heartbeat_interval_ms * self.grace_multiplier)

    def heartbeat_table_desc(self, dialect: str | None = None) -> HeartbeatTableDesc:
        return HeartbeatTableDesc(
            table_name=self.heartbeat_table,
            owner_column=self.heartbeat_owner_column,
            interval_column=self.heartbeat_interval_column,
            last_heartbeat_column=self.heartbeat_last_column,
            dialect=self.dialect or dialect or "sqlite",
            now_millis_sql=self.now_millis_sql,
        )

    def semaphore_tables_desc(self) -> SemaphoreTablesDesc:
        return SemaphoreTablesDesc(
            pool_table=self.semaphore_table,
            name_column=self.semaphore_name_column,
            total_column=self.semaphore_total_column,
            available_column=self.semaphore_available_column,
            ledger_table=self.ledger_table,
            ledger_name_column=self.ledger_name_column,
            ledger_owner_column=self.ledger_owner_column,
            held_column=self.ledger_held_column,
        )

    def acquire_backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            max_retries=None,
            base_delay=self.acquire_backoff_floor_ms / 1000.0,
            max_delay=self.acquire_backoff_ceiling_ms / 1000.0,
            jitter=self.acquire_backoff_jitter > 0,
            jitter_range=self.acquire_backoff_jitter,
        )

    def heartbeat_retry(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            max_retries=self.heartbeat_max_retries,
            base_delay=self.heartbeat_retry_base_ms / 1000.0,
            # Retries of one beat must finish well inside the interval.
            max_delay=self.heartbeat_interval_ms / 1000.0 / 4,
            jitter=True,
            retryable_errors=(TransientStoreError,),
        )


__all__ = ["SemaphoreSettings"]
