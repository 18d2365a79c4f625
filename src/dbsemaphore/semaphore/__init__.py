"""Permit accounting, reclaiming and the public client."""

from dbsemaphore.semaphore.client import DbSemaphore
from dbsemaphore.semaphore.reaper import Reaper, ReapResult
from dbsemaphore.semaphore.store import PermitLedgerEntry, SemaphorePool, SemaphoreStore

__all__ = [
    "DbSemaphore",
    "Reaper",
    "ReapResult",
    "SemaphoreStore",
    "SemaphorePool",
    "PermitLedgerEntry",
]
