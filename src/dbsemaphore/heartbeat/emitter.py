"""Heartbeat emitter that keeps this process's owner row fresh.

┌──────────────────────────────────────────────────────────────────────────────┐
│  HEARTBEAT EMITTER                                                            │
│                                                                               │
│   STOPPED ──start()──► RUNNING ──stop()──► STOPPED                            │
│                                                                               │
│   start()                                                                     │
│      ├── register_or_refresh(owner)   synchronous, raises on failure          │
│      └── daemon thread:                                                       │
│             while not stop_event.wait(interval):                              │
│                 beat()   ── bounded retries, never raises                     │
│                    └── post-beat tasks (background reaping)                   │
│                                                                               │
│   stop(deregister=True)                                                       │
│      ├── stop_event.set()                                                     │
│      ├── thread.join()        in-flight refresh finishes first                │
│      └── remove(owner)        best effort, permits reclaimable at once        │
└──────────────────────────────────────────────────────────────────────────────┘

A failed beat is logged and counted, never fatal: missing one only risks
this owner being reclaimed by someone else, it cannot corrupt the pool.

Processes normally run one emitter per store; ``EmitterRegistry`` hands the
same reference-counted emitter to every ``DbSemaphore`` sharing an engine.
"""

from __future__ import annotations

import atexit
import functools
import os
import socket
import threading
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any

from dbsemaphore.core.clock import SYSTEM_CLOCK, Clock
from dbsemaphore.core.errors import TransientStoreError
from dbsemaphore.core.logging import LogContext, get_logger
from dbsemaphore.core.retry import ExponentialBackoff, RetryContext, RetryStrategy
from dbsemaphore.core.settings import SemaphoreSettings
from dbsemaphore.heartbeat.store import HeartbeatStore

logger = get_logger(__name__)


class EmitterState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@functools.lru_cache(maxsize=None)
def _owner_for_pid(pid: int) -> str:
    return f"{socket.gethostname()}-{pid}-{uuid.uuid4().hex[:8]}"


def default_owner_id() -> str:
    """Owner id of this process: ``{hostname}-{pid}-{random8}``.

    Keyed by pid so a forked child never inherits its parent's identity.
    """
    return _owner_for_pid(os.getpid())


class HeartbeatEmitter:
    """Periodically refreshes one owner's heartbeat row.

    Example:
        >>> emitter = HeartbeatEmitter(store, owner="worker-1", interval_millis=1000)
        >>> emitter.start()
        >>> # ... later ...
        >>> emitter.stop()
    """

    def __init__(
        self,
        store: HeartbeatStore,
        owner: str | None = None,
        *,
        interval_millis: int = 10_000,
        grace_multiplier: float = 2.0,
        retry_strategy: RetryStrategy | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if interval_millis <= 0:
            raise ValueError("interval_millis must be positive")
        self._store = store
        self._owner = owner or default_owner_id()
        self._interval_millis = interval_millis
        self._grace_multiplier = grace_multiplier
        self._retry_strategy = retry_strategy or ExponentialBackoff(
            max_retries=3,
            base_delay=0.1,
            max_delay=interval_millis / 4000.0,
            retryable_errors=(TransientStoreError,),
        )
        self._clock = clock

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state = EmitterState.STOPPED

        self._beat_count = 0
        self._failure_count = 0
        self._last_beat: float | None = None
        self._failure_listeners: list[Callable[[BaseException], Any]] = []
        self._post_beat_tasks: list[Callable[[], Any]] = []

    # -- properties --------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def interval_millis(self) -> int:
        return self._interval_millis

    @property
    def grace_multiplier(self) -> float:
        return self._grace_multiplier

    @property
    def store(self) -> HeartbeatStore:
        return self._store

    @property
    def state(self) -> EmitterState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EmitterState.RUNNING

    @property
    def beat_count(self) -> int:
        return self._beat_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    # -- listeners ---------------------------------------------------------

    def add_failure_listener(self, listener: Callable[[BaseException], Any]) -> None:
        """Called with the last error whenever a beat exhausts its retries."""
        self._failure_listeners.append(listener)

    def add_post_beat_task(self, task: Callable[[], Any]) -> None:
        """Run ``task`` on the heartbeat thread after every successful beat."""
        self._post_beat_tasks.append(task)

    def remove_post_beat_task(self, task: Callable[[], Any]) -> None:
        try:
            self._post_beat_tasks.remove(task)
        except ValueError:
            pass

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Register the owner and start beating.

        Raises:
            TransientStoreError: the initial registration failed after retries.
        """
        with self._lock:
            if self._state is EmitterState.RUNNING:
                logger.warning("heartbeat_already_running", owner=self._owner)
                return

            self._stop_event.clear()
            self._refresh()
            self._record_success()

            self._thread = threading.Thread(
                target=self._loop,
                daemon=True,
                name=f"dbsem-heartbeat-{self._owner}",
            )
            self._state = EmitterState.RUNNING
            self._thread.start()
            logger.info(
                "heartbeat_started",
                owner=self._owner,
                interval_ms=self._interval_millis,
            )

    def stop(self, deregister: bool = True, timeout: float | None = 30.0) -> None:
        """Stop beating, then (by default) remove the owner's row.

        Waits for an in-flight refresh so it can never re-create the row
        after it was removed. ``deregister=False`` leaves the row to go
        stale, exactly as a crash would.
        """
        with self._lock:
            if self._state is EmitterState.STOPPED:
                return

            self._stop_event.set()
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning("heartbeat_stop_timeout", owner=self._owner)
                    deregister = False

            self._thread = None
            self._state = EmitterState.STOPPED

        if deregister:
            try:
                self._store.remove(self._owner)
            except TransientStoreError as exc:
                logger.warning("heartbeat_deregister_failed", owner=self._owner, error=str(exc))

        logger.info("heartbeat_stopped", owner=self._owner, deregistered=deregister)

    # -- beating -----------------------------------------------------------

    def beat(self) -> bool:
        """Refresh once with bounded retries. Never raises.

        Returns:
            True if the row was refreshed.
        """
        try:
            created = self._refresh()
        except TransientStoreError as exc:
            self._failure_count += 1
            logger.error(
                "heartbeat_failed",
                owner=self._owner,
                failures=self._failure_count,
                error=exc.to_dict(),
            )
            for listener in list(self._failure_listeners):
                try:
                    listener(exc)
                except Exception:
                    logger.exception("heartbeat_listener_failed", owner=self._owner)
            return False

        if created:
            logger.warning("heartbeat_row_recreated", owner=self._owner)
        self._record_success()

        for task in list(self._post_beat_tasks):
            try:
                task()
            except Exception:
                logger.exception("post_beat_task_failed", owner=self._owner)
        return True

    def _refresh(self) -> bool:
        ctx = RetryContext(
            strategy=self._retry_strategy,
            on_retry=self._on_retry,
            sleep=self._stop_event.wait,
        )
        return ctx.run(self._store.register_or_refresh, self._owner, self._interval_millis)

    def _on_retry(self, attempt: int, error: BaseException, delay: float) -> None:
        logger.warning(
            "heartbeat_retry",
            owner=self._owner,
            attempt=attempt,
            delay_s=round(delay, 3),
            error=str(error),
        )

    def _record_success(self) -> None:
        now = self._clock.monotonic()
        if self._last_beat is not None:
            gap_ms = (now - self._last_beat) * 1000
            if gap_ms > self._interval_millis * self._grace_multiplier:
                logger.warning("heartbeat_overdue", owner=self._owner, gap_ms=int(gap_ms))
        self._last_beat = now
        self._beat_count += 1

    def _loop(self) -> None:
        interval = self._interval_millis / 1000.0
        with LogContext(owner=self._owner):
            while not self._stop_event.wait(interval):
                self.beat()

    def health(self) -> dict[str, Any]:
        return {
            "owner": self._owner,
            "state": self._state.value,
            "healthy": self.is_running and self._thread is not None and self._thread.is_alive(),
            "beat_count": self._beat_count,
            "failure_count": self._failure_count,
            "interval_ms": self._interval_millis,
            "seconds_since_last_beat": (
                None if self._last_beat is None else self._clock.monotonic() - self._last_beat
            ),
        }


class EmitterRegistry:
    """One shared, reference-counted emitter per (store URL, table, owner).

    ``acquire`` starts the emitter on first use; ``release`` stops it (and
    removes the heartbeat row) when the last user lets go.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str, str], list[Any]] = {}

    @staticmethod
    def _key(store: HeartbeatStore, owner: str) -> tuple[str, str, str]:
        url = store.engine.url.render_as_string(hide_password=True)
        return url, store.desc.table_name.lower(), owner

    def acquire(
        self,
        store: HeartbeatStore,
        settings: SemaphoreSettings,
        owner: str | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> HeartbeatEmitter:
        owner = owner or default_owner_id()
        key = self._key(store, owner)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry[1] += 1
                return entry[0]

            emitter = HeartbeatEmitter(
                store,
                owner,
                interval_millis=settings.heartbeat_interval_ms,
                grace_multiplier=settings.grace_multiplier,
                retry_strategy=settings.heartbeat_retry(),
                clock=clock,
            )
            emitter.start()
            self._entries[key] = [emitter, 1]
            return emitter

    def release(self, emitter: HeartbeatEmitter, deregister: bool = True) -> None:
        key = self._key(emitter.store, emitter.owner)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[0] is not emitter:
                return
            entry[1] -= 1
            if entry[1] > 0:
                return
            del self._entries[key]
        emitter.stop(deregister=deregister)

    def references(self, emitter: HeartbeatEmitter) -> int:
        entry = self._entries.get(self._key(emitter.store, emitter.owner))
        return entry[1] if entry is not None and entry[0] is emitter else 0

    def shutdown(self) -> None:
        """Stop every emitter (registered with ``atexit`` for the default registry)."""
        with self._lock:
            emitters = [entry[0] for entry in self._entries.values()]
            self._entries.clear()
        for emitter in emitters:
            emitter.stop()


DEFAULT_REGISTRY = EmitterRegistry()
atexit.register(DEFAULT_REGISTRY.shutdown)


__all__ = [
    "EmitterState",
    "HeartbeatEmitter",
    "EmitterRegistry",
    "DEFAULT_REGISTRY",
    "default_owner_id",
]
