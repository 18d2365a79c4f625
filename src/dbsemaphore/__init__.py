"""
dbsemaphore - distributed counting semaphores on a shared relational store.

Processes that share nothing but a database coordinate permits through
three tables: a heartbeat table proving each owner is alive, a pool table
with total and available permits, and a per-owner ledger. Permits held by
an owner that stops heartbeating are reclaimed by whichever process next
contends for them.

Quick start::

    from dbsemaphore import DbSemaphore, create_semaphore_engine

    engine = create_semaphore_engine("postgresql://app@db/app")
    with DbSemaphore(engine, "exports", total_permits=3) as sem:
        sem.acquire(2, timeout=30)
        try:
            run_export()
        finally:
            sem.release(2)
"""

__version__ = "0.1.0"

from dbsemaphore.core.engine import create_semaphore_engine, store_transaction
from dbsemaphore.core.errors import (
    AcquireCancelledError,
    CapacityConflictError,
    ConfigError,
    ErrorCategory,
    InvalidArgumentError,
    InvalidConfigError,
    OverReleaseError,
    SemaphoreError,
    TimeoutExceededError,
    TransientStoreError,
    UnknownSemaphoreError,
)
from dbsemaphore.core.retry import CancellationToken
from dbsemaphore.core.schema import HeartbeatTableDesc, SemaphoreTablesDesc, ensure_schema
from dbsemaphore.core.settings import SemaphoreSettings
from dbsemaphore.heartbeat import EmitterRegistry, HeartbeatEmitter, HeartbeatStore, default_owner_id
from dbsemaphore.semaphore import DbSemaphore, Reaper, ReapResult, SemaphoreStore

__all__ = [
    "__version__",
    # Client
    "DbSemaphore",
    "CancellationToken",
    # Stores & reaping
    "HeartbeatStore",
    "HeartbeatEmitter",
    "EmitterRegistry",
    "default_owner_id",
    "SemaphoreStore",
    "Reaper",
    "ReapResult",
    # Schema & config
    "HeartbeatTableDesc",
    "SemaphoreTablesDesc",
    "ensure_schema",
    "SemaphoreSettings",
    "create_semaphore_engine",
    "store_transaction",
    # Errors
    "ErrorCategory",
    "SemaphoreError",
    "TransientStoreError",
    "CapacityConflictError",
    "InvalidArgumentError",
    "UnknownSemaphoreError",
    "OverReleaseError",
    "TimeoutExceededError",
    "AcquireCancelledError",
    "ConfigError",
    "InvalidConfigError",
]
