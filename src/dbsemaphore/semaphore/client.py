"""DbSemaphore: a counting semaphore shared through a relational store.

┌──────────────────────────────────────────────────────────────────────────────┐
│  ACQUIRE LOOP                                                                 │
│                                                                               │
│   deadline = now + timeout                                                    │
│   loop:                                                                       │
│       cancelled?                    → AcquireCancelledError                   │
│       try_grant(name, owner, n)     → granted: return                         │
│       reaper.run()                  → reclaimed something: retry now          │
│       deadline passed?              → TimeoutExceededError / False            │
│       token.wait(min(backoff, remaining))                                     │
│                                                                               │
│   Store errors inside the loop are logged and retried until the deadline.    │
│   The deadline is only checked between attempts, never mid-transaction,      │
│   so a timed-out acquire never leaves a partial grant behind.                 │
└──────────────────────────────────────────────────────────────────────────────┘

Example::

    engine = create_semaphore_engine("sqlite:///jobs.db")
    with DbSemaphore(engine, "exports", total_permits=3) as sem:
        with sem.permits(2, timeout=30):
            run_export()

Tags:
    semaphore, distributed, heartbeat, sqlalchemy, dbsemaphore

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

from sqlalchemy.engine import Engine

from dbsemaphore.core.clock import SYSTEM_CLOCK, Clock
from dbsemaphore.core.errors import (
    AcquireCancelledError,
    ErrorContext,
    InvalidArgumentError,
    OverReleaseError,
    TimeoutExceededError,
    TransientStoreError,
    UnknownSemaphoreError,
)
from dbsemaphore.core.logging import LogContext, get_logger
from dbsemaphore.core.retry import CancellationToken, Deadline, RetryStrategy
from dbsemaphore.core.schema import HeartbeatTableDesc, SemaphoreTablesDesc, ensure_schema
from dbsemaphore.core.settings import SemaphoreSettings
from dbsemaphore.heartbeat.emitter import DEFAULT_REGISTRY, EmitterRegistry, HeartbeatEmitter
from dbsemaphore.heartbeat.store import HeartbeatStore
from dbsemaphore.semaphore.reaper import Reaper, ReapResult
from dbsemaphore.semaphore.store import SemaphorePool, SemaphoreStore

logger = get_logger(__name__)

Timeout = float | int | timedelta | None


class DbSemaphore:
    """Counting semaphore whose permits live in the store.

    Schema, pool row and heartbeat registration are set up lazily on first
    use (or by ``open()``). Every ``DbSemaphore`` on the same engine and owner
    shares one heartbeat emitter through ``registry``.

    Args:
        engine: SQLAlchemy engine for the store
        name: pool name
        total_permits: pool capacity; must match an existing pool
        owner: owner id; defaults to this process's id
        settings: tunables; defaults to ``SemaphoreSettings()`` (env driven)
        hb_desc: heartbeat table layout; defaults from settings
        sem_desc: pool and ledger table layout; defaults from settings
        registry: emitter registry; defaults to the process-wide one
        clock: local clock for deadlines and backoff
    """

    def __init__(
        self,
        engine: Engine,
        name: str,
        total_permits: int,
        *,
        owner: str | None = None,
        settings: SemaphoreSettings | None = None,
        hb_desc: HeartbeatTableDesc | None = None,
        sem_desc: SemaphoreTablesDesc | None = None,
        registry: EmitterRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        if not isinstance(name, str) or not name:
            raise InvalidArgumentError("name must be a non-empty string", field="name", value=name)
        if isinstance(total_permits, bool) or not isinstance(total_permits, int) or total_permits <= 0:
            raise InvalidArgumentError(
                f"total_permits must be a positive integer, got {total_permits!r}",
                field="total_permits",
                value=total_permits,
            )

        self._engine = engine
        self._name = name
        self._total_permits = total_permits
        self._requested_owner = owner
        self._settings = settings or SemaphoreSettings()
        self._hb_desc = hb_desc or self._settings.heartbeat_table_desc(dialect=engine.dialect.name)
        self._sem_desc = sem_desc or self._settings.semaphore_tables_desc()
        self._registry = registry or DEFAULT_REGISTRY
        self._clock = clock or SYSTEM_CLOCK

        self._heartbeats = HeartbeatStore(engine, self._hb_desc)
        self._store = SemaphoreStore(engine, self._sem_desc, heartbeat_desc=self._hb_desc)

        self._lock = threading.Lock()
        self._emitter: HeartbeatEmitter | None = None
        self._reaper: Reaper | None = None
        self._closed = False
        self._held = 0
        self._pending: set[CancellationToken] = set()

    # -- properties --------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def owner(self) -> str:
        return self._ensure_open().owner

    @property
    def settings(self) -> SemaphoreSettings:
        return self._settings

    @property
    def store(self) -> SemaphoreStore:
        return self._store

    @property
    def heartbeat_store(self) -> HeartbeatStore:
        return self._heartbeats

    @property
    def emitter(self) -> HeartbeatEmitter | None:
        return self._emitter

    @property
    def closed(self) -> bool:
        return self._closed

    # -- lifecycle ---------------------------------------------------------

    def open(self) -> DbSemaphore:
        """Create schema and pool if needed, then start heartbeating."""
        self._ensure_open()
        return self

    def _ensure_open(self) -> HeartbeatEmitter:
        with self._lock:
            if self._closed:
                raise AcquireCancelledError(
                    f"Semaphore {self._name!r} is closed",
                    context=ErrorContext(semaphore=self._name),
                )
            if self._emitter is not None:
                return self._emitter

            if self._settings.auto_create_schema:
                ensure_schema(self._engine, self._hb_desc, self._sem_desc)
            self._store.create_pool_if_absent(self._name, self._total_permits)

            emitter = self._registry.acquire(
                self._heartbeats, self._settings, owner=self._requested_owner, clock=self._clock
            )
            self._reaper = Reaper(
                self._heartbeats,
                self._store,
                grace_multiplier=self._settings.grace_multiplier,
                scope=[self._name],
                self_owner=emitter.owner,
            )
            if self._settings.background_reap:
                emitter.add_post_beat_task(self._reaper.run)
            self._emitter = emitter
            logger.debug("semaphore_opened", semaphore=self._name, owner=emitter.owner)
            return emitter

    def close(self) -> None:
        """Cancel pending acquires, give back held permits, drop the emitter.

        When this is the last open semaphore sharing the owner's emitter,
        every permit the owner still holds on the pool is returned, including
        ones granted outside this instance. Otherwise only the permits this
        instance acquired are released, since a sibling may still hold the
        rest. Failures are logged; removing the heartbeat row still lets
        other processes reclaim whatever is left.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            pending = list(self._pending)
            emitter, reaper = self._emitter, self._reaper

        for token in pending:
            token.cancel()

        if emitter is None:
            return

        held, self._held = self._held, 0
        last_user = self._registry.references(emitter) <= 1
        try:
            if last_user:
                released = self._store.reclaim(self._name, emitter.owner)
            elif held > 0:
                self._store.release(self._name, emitter.owner, held)
                released = held
            else:
                released = 0
            if released:
                logger.debug(
                    "permits_released", semaphore=self._name, owner=emitter.owner, permits=released
                )
        except (TransientStoreError, OverReleaseError) as exc:
            logger.warning(
                "close_release_failed",
                semaphore=self._name,
                owner=emitter.owner,
                permits=held,
                error=exc.to_dict(),
            )
        if reaper is not None:
            emitter.remove_post_beat_task(reaper.run)
        self._registry.release(emitter)
        logger.debug("semaphore_closed", semaphore=self._name, owner=emitter.owner)

    def __enter__(self) -> DbSemaphore:
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- acquire / release -------------------------------------------------

    def _check_request(self, permits: int) -> None:
        if isinstance(permits, bool) or not isinstance(permits, int) or permits <= 0:
            raise InvalidArgumentError(
                f"permits must be a positive integer, got {permits!r}",
                field="permits",
                value=permits,
            )
        if permits > self._total_permits:
            raise InvalidArgumentError(
                f"Cannot acquire {permits} permits from {self._name!r} "
                f"with capacity {self._total_permits}",
                field="permits",
                value=permits,
            )

    def _timeout_seconds(self, timeout: Timeout) -> float:
        if timeout is None:
            return self._settings.default_acquire_timeout_seconds
        if isinstance(timeout, timedelta):
            return max(0.0, timeout.total_seconds())
        return max(0.0, float(timeout))

    def acquire(
        self,
        permits: int = 1,
        timeout: Timeout = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Block until ``permits`` are granted.

        Args:
            permits: number of permits, ``1 <= permits <= total_permits``
            timeout: seconds or ``timedelta``; None uses the configured default
            cancel: token that aborts the wait; ``close()`` cancels it too

        Raises:
            InvalidArgumentError: the request can never be satisfied.
            TimeoutExceededError: the deadline passed first.
            AcquireCancelledError: cancelled by the token or by ``close()``.
        """
        granted, last_error = self._acquire(permits, timeout, cancel)
        if granted:
            return
        owner = self._emitter.owner if self._emitter is not None else None
        raise TimeoutExceededError(
            f"Timed out acquiring {permits} permits from {self._name!r}",
            context=ErrorContext(semaphore=self._name, owner=owner, permits=permits),
            cause=last_error,
        ) from last_error

    def try_acquire(
        self,
        permits: int = 1,
        timeout: Timeout = 0.0,
        *,
        cancel: CancellationToken | None = None,
    ) -> bool:
        """Like ``acquire`` but returns False instead of raising on timeout."""
        granted, _ = self._acquire(permits, timeout, cancel)
        return granted

    def _acquire(
        self,
        permits: int,
        timeout: Timeout,
        cancel: CancellationToken | None,
    ) -> tuple[bool, TransientStoreError | None]:
        """Run the acquire loop.

        The lazy first-use setup runs inside the loop, so a store that is
        unreachable at first is retried like any failed grant.

        Returns ``(granted, last_store_error)``.
        """
        self._check_request(permits)
        deadline = Deadline.after(self._timeout_seconds(timeout), self._clock)
        token = cancel or CancellationToken()
        backoff = self._settings.acquire_backoff()

        with self._lock:
            if self._closed:
                raise AcquireCancelledError(
                    f"Semaphore {self._name!r} is closed",
                    context=ErrorContext(semaphore=self._name, permits=permits),
                )
            self._pending.add(token)
        try:
            with LogContext(semaphore=self._name):
                return self._acquire_loop(permits, deadline, token, backoff)
        finally:
            with self._lock:
                self._pending.discard(token)

    def _acquire_loop(
        self,
        permits: int,
        deadline: Deadline,
        token: CancellationToken,
        backoff: RetryStrategy,
    ) -> tuple[bool, TransientStoreError | None]:
        attempt = 0
        owner = self._emitter.owner if self._emitter is not None else self._requested_owner
        last_error: TransientStoreError | None = None
        while True:
            if token.cancelled:
                raise AcquireCancelledError(
                    f"Acquire of {permits} permits from {self._name!r} was cancelled",
                    context=ErrorContext(semaphore=self._name, owner=owner, permits=permits),
                )
            try:
                owner = self._ensure_open().owner
                if self._store.try_grant(self._name, owner, permits):
                    self._on_granted(owner, permits)
                    return True, None
                if self._settings.reap_on_contention and self._reap().reclaimed:
                    continue
            except TransientStoreError as exc:
                last_error = exc
                logger.warning(
                    "acquire_store_error",
                    owner=owner,
                    attempt=attempt,
                    error=exc.to_dict(),
                )

            remaining = deadline.remaining()
            if remaining <= 0:
                logger.info("acquire_timed_out", owner=owner, permits=permits)
                return False, last_error
            delay = min(backoff.next_delay(attempt), remaining)
            attempt += 1
            token.wait(delay, self._clock)

    def _on_granted(self, owner: str, permits: int) -> None:
        with self._lock:
            closed = self._closed
            if not closed:
                self._held += permits
        if closed:
            # close() ran while the grant was in flight; hand the permits back.
            self._store.release(self._name, owner, permits)
            raise AcquireCancelledError(
                f"Semaphore {self._name!r} was closed during acquire",
                context=ErrorContext(semaphore=self._name, owner=owner, permits=permits),
            )
        logger.debug("permits_acquired", semaphore=self._name, owner=owner, permits=permits)

    def _reap(self) -> ReapResult:
        self._ensure_open()
        assert self._reaper is not None
        return self._reaper.run()

    def reap(self) -> ReapResult:
        """Run one reclaim pass scoped to this pool."""
        return self._reap()

    def release(self, permits: int = 1) -> None:
        """Return ``permits`` to the pool.

        Raises:
            OverReleaseError: the owner holds fewer permits. Not retried.
        """
        if isinstance(permits, bool) or not isinstance(permits, int) or permits <= 0:
            raise InvalidArgumentError(
                f"permits must be a positive integer, got {permits!r}",
                field="permits",
                value=permits,
            )
        owner = self._ensure_open().owner
        self._store.release(self._name, owner, permits)
        with self._lock:
            self._held = max(0, self._held - permits)
        logger.debug("permits_released", semaphore=self._name, owner=owner, permits=permits)

    def release_all(self) -> int:
        """Release everything this owner holds on the pool; returns the count."""
        owner = self._ensure_open().owner
        released = self._store.reclaim(self._name, owner)
        with self._lock:
            self._held = 0
        if released:
            logger.debug("permits_released", semaphore=self._name, owner=owner, permits=released)
        return released

    @contextmanager
    def permits(self, permits: int = 1, timeout: Timeout = None) -> Iterator[DbSemaphore]:
        """Hold ``permits`` for the duration of a ``with`` block."""
        self.acquire(permits, timeout)
        try:
            yield self
        finally:
            self.release(permits)

    # -- queries -----------------------------------------------------------

    def _pool(self) -> SemaphorePool:
        self._ensure_open()
        pool = self._store.get_pool(self._name)
        if pool is None:
            raise UnknownSemaphoreError(self._name)
        return pool

    def available_permits(self) -> int:
        return self._pool().available_permits

    def total_permits(self) -> int:
        return self._pool().total_permits

    def permits_owned(self) -> int:
        """Permits held by this owner on the pool, as recorded in the store."""
        owner = self._ensure_open().owner
        return self._store.held_permits(self._name, owner)

    def health(self) -> dict[str, Any]:
        return {
            "semaphore": self._name,
            "closed": self._closed,
            "held_locally": self._held,
            "emitter": self._emitter.health() if self._emitter is not None else None,
        }

    def __repr__(self) -> str:
        owner = self._emitter.owner if self._emitter is not None else self._requested_owner
        return f"DbSemaphore(name={self._name!r}, total_permits={self._total_permits}, owner={owner!r})"


__all__ = ["DbSemaphore"]
