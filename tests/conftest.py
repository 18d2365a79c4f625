"""
Shared pytest fixtures for dbsemaphore tests.

This module provides:
- A file-backed SQLite engine with every table created (WAL, BEGIN IMMEDIATE)
- Fast settings (short heartbeat interval, tight acquire backoff)
- A private emitter registry per test, shut down on teardown
- Fakes for the local clock and the heartbeat store

Usage:
    def test_something(engine, settings, registry):
        sem = DbSemaphore(engine, "pool", 3, settings=settings, registry=registry)
"""

from __future__ import annotations

import os
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

# Ensure dbsemaphore is importable from a plain checkout
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sqlalchemy.engine import Engine

from dbsemaphore.core.engine import create_semaphore_engine
from dbsemaphore.core.errors import TransientStoreError
from dbsemaphore.core.schema import HeartbeatTableDesc, SemaphoreTablesDesc, ensure_schema
from dbsemaphore.core.settings import SemaphoreSettings
from dbsemaphore.heartbeat.emitter import EmitterRegistry
from dbsemaphore.heartbeat.store import HeartbeatStore
from dbsemaphore.semaphore.store import SemaphoreStore


# =============================================================================
# Environment isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop any DBSEM_* variables leaking in from the developer's shell."""
    for key in list(os.environ):
        if key.startswith("DBSEM_"):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Store fixtures
# =============================================================================


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'semaphores.db'}"


@pytest.fixture()
def engine(db_url: str) -> Generator[Engine, None, None]:
    """File-backed SQLite engine with the heartbeat, pool and ledger tables."""
    eng = create_semaphore_engine(db_url)
    ensure_schema(eng, HeartbeatTableDesc(), SemaphoreTablesDesc())
    yield eng
    eng.dispose()


@pytest.fixture()
def heartbeats(engine: Engine) -> HeartbeatStore:
    return HeartbeatStore(engine)


@pytest.fixture()
def semaphores(engine: Engine) -> SemaphoreStore:
    return SemaphoreStore(engine)


@pytest.fixture()
def settings() -> SemaphoreSettings:
    """Settings tuned for tests: 500ms beats, 3x grace, 10-50ms backoff."""
    return SemaphoreSettings(
        _env_file=None,
        heartbeat_interval_ms=500,
        grace_multiplier=3.0,
        heartbeat_retry_base_ms=10,
        acquire_backoff_floor_ms=10,
        acquire_backoff_ceiling_ms=50,
        default_acquire_timeout_seconds=2.0,
    )


@pytest.fixture()
def registry(engine: Engine) -> Generator[EmitterRegistry, None, None]:
    """A private emitter registry, stopped before the engine is disposed."""
    reg = EmitterRegistry()
    yield reg
    reg.shutdown()


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def monotonic(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def wait(self, event: threading.Event, timeout: float) -> bool:
        if not event.is_set():
            self.advance(timeout)
        return event.is_set()


class FakeHeartbeatStore:
    """In-memory stand-in for ``HeartbeatStore`` with scripted failures."""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.rows: dict[str, int] = {}
        self.calls: list[tuple[str, int]] = []
        self.removed: list[str] = []

    def register_or_refresh(self, owner: str, interval_millis: int) -> bool:
        self.calls.append((owner, interval_millis))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientStoreError("store unavailable")
        created = owner not in self.rows
        self.rows[owner] = interval_millis
        return created

    def remove(self, owner: str) -> bool:
        self.removed.append(owner)
        return self.rows.pop(owner, None) is not None


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_store() -> FakeHeartbeatStore:
    return FakeHeartbeatStore()


# =============================================================================
# Helpers
# =============================================================================


def wait_until(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def assert_pool_invariant(store: SemaphoreStore, name: str) -> None:
    """available + sum(held) == total, and no negative ledger entries."""
    pool = store.get_pool(name)
    assert pool is not None
    holders = store.list_holders(name)
    assert all(entry.held_permits > 0 for entry in holders)
    assert pool.available_permits + sum(e.held_permits for e in holders) == pool.total_permits
    assert 0 <= pool.available_permits <= pool.total_permits
