"""Tests for dbsemaphore.semaphore.client: the public DbSemaphore API.

Covers:
- acquire / try_acquire / release with argument validation
- Timeouts leave the pool untouched
- Recovery from an owner that stops heartbeating
- Cancellation by token and by close()
- Shared emitters and background reaping
- Store failures retried until the deadline
"""

from __future__ import annotations

import sqlite3
import threading
import time
from datetime import timedelta

import pytest
import structlog
from sqlalchemy import event

from conftest import assert_pool_invariant, wait_until
from dbsemaphore.core.engine import create_semaphore_engine
from dbsemaphore.core.errors import (
    AcquireCancelledError,
    CapacityConflictError,
    InvalidArgumentError,
    OverReleaseError,
    TimeoutExceededError,
    TransientStoreError,
)
from dbsemaphore.core.retry import CancellationToken
from dbsemaphore.semaphore.client import DbSemaphore


@pytest.fixture()
def make_sem(engine, settings, registry):
    created: list[DbSemaphore] = []

    def factory(owner: str, total: int = 3, name: str = "jobs", **kwargs) -> DbSemaphore:
        kwargs.setdefault("settings", settings)
        sem = DbSemaphore(engine, name, total, owner=owner, registry=registry, **kwargs)
        created.append(sem)
        return sem

    yield factory
    for sem in created:
        sem.close()


def crash(sem: DbSemaphore) -> None:
    """Stop heartbeating without cleaning up, as a killed process would."""
    sem.emitter.stop(deregister=False)


# ── Basics ───────────────────────────────────────────────────────────────


class TestAcquireRelease:
    def test_lazy_open(self, make_sem, heartbeats):
        sem = make_sem("x")
        assert sem.emitter is None
        assert heartbeats.get("x") is None
        sem.open()
        assert sem.owner == "x"
        assert heartbeats.get("x") is not None

    def test_acquire_and_release(self, make_sem, semaphores):
        sem = make_sem("x")
        sem.acquire(2)
        assert sem.available_permits() == 1
        assert sem.permits_owned() == 2
        sem.release(2)
        assert sem.available_permits() == 3
        assert semaphores.list_holders("jobs") == []

    def test_total_permits(self, make_sem):
        assert make_sem("x").total_permits() == 3

    def test_permits_context_manager(self, make_sem):
        sem = make_sem("x")
        with sem.permits(2, timeout=1.0):
            assert sem.permits_owned() == 2
        assert sem.permits_owned() == 0

    def test_release_all(self, make_sem):
        sem = make_sem("x")
        sem.acquire(1)
        sem.acquire(2)
        assert sem.release_all() == 3
        assert sem.available_permits() == 3

    def test_over_release(self, make_sem):
        sem = make_sem("x")
        sem.acquire(1)
        with pytest.raises(OverReleaseError):
            sem.release(2)
        assert sem.permits_owned() == 1

    def test_capacity_conflict_on_open(self, make_sem):
        make_sem("x").open()
        with pytest.raises(CapacityConflictError):
            make_sem("y", total=5).open()


class TestValidation:
    @pytest.mark.parametrize("permits", [0, -1, 4])
    def test_unsatisfiable_requests(self, make_sem, permits):
        with pytest.raises(InvalidArgumentError):
            make_sem("x").acquire(permits, timeout=0.1)

    def test_bad_release_argument(self, make_sem):
        with pytest.raises(InvalidArgumentError):
            make_sem("x").release(0)

    @pytest.mark.parametrize("total", [0, -3])
    def test_bad_capacity(self, engine, total):
        with pytest.raises(InvalidArgumentError):
            DbSemaphore(engine, "jobs", total)

    def test_empty_name(self, engine):
        with pytest.raises(InvalidArgumentError):
            DbSemaphore(engine, "", 1)


# ── Timeouts ─────────────────────────────────────────────────────────────


class TestTimeouts:
    def test_contended_acquire_times_out_without_side_effects(self, make_sem, semaphores):
        """Capacity 3, X holds 2, Y wants 2 for one second."""
        x, y = make_sem("X"), make_sem("Y")
        x.acquire(2)

        started = time.monotonic()
        with pytest.raises(TimeoutExceededError):
            y.acquire(2, timeout=1.0)
        assert time.monotonic() - started < 3.0

        assert x.available_permits() == 1
        assert x.permits_owned() == 2
        assert y.permits_owned() == 0
        assert_pool_invariant(semaphores, "jobs")

    def test_try_acquire(self, make_sem):
        x, y = make_sem("X"), make_sem("Y")
        assert x.try_acquire(3) is True
        assert y.try_acquire(1) is False
        assert y.try_acquire(1, timeout=timedelta(milliseconds=100)) is False

    def test_timedelta_timeout(self, make_sem):
        x, y = make_sem("X"), make_sem("Y")
        x.acquire(3)
        with pytest.raises(TimeoutExceededError):
            y.acquire(1, timeout=timedelta(milliseconds=200))

    def test_default_timeout_from_settings(self, make_sem, settings):
        fast = settings.model_copy(update={"default_acquire_timeout_seconds": 0.2})
        x = make_sem("X")
        y = make_sem("Y", settings=fast)
        x.acquire(3)
        with pytest.raises(TimeoutExceededError):
            y.acquire(1)

    def test_waiter_served_after_release(self, make_sem):
        x, y = make_sem("X"), make_sem("Y")
        x.acquire(3)
        threading.Timer(0.2, x.release, args=(2,)).start()
        y.acquire(2, timeout=5.0)
        assert y.permits_owned() == 2


# ── Recovery ─────────────────────────────────────────────────────────────


class TestRecovery:
    def test_crashed_owner_is_reclaimed(self, make_sem, heartbeats, semaphores, settings):
        """X takes everything and dies; Y gets a permit within its 5s timeout."""
        one_second = settings.model_copy(
            update={"heartbeat_interval_ms": 1000, "grace_multiplier": 2.0}
        )
        x = make_sem("X", settings=one_second)
        y = make_sem("Y", settings=one_second)
        x.acquire(3)
        crash(x)

        started = time.monotonic()
        y.acquire(1, timeout=5.0)
        assert time.monotonic() - started < 5.0

        assert y.permits_owned() == 1
        assert semaphores.held_permits("jobs", "X") == 0
        assert heartbeats.get("X") is None
        assert_pool_invariant(semaphores, "jobs")

    def test_no_reaping_when_disabled(self, make_sem, settings):
        quiet = settings.model_copy(
            update={"heartbeat_interval_ms": 100, "reap_on_contention": False}
        )
        x = make_sem("X", settings=quiet)
        y = make_sem("Y", settings=quiet)
        x.acquire(3)
        crash(x)
        assert y.try_acquire(1, timeout=1.0) is False

    def test_background_reaping(self, make_sem, semaphores, settings):
        quick = settings.model_copy(update={"heartbeat_interval_ms": 100, "grace_multiplier": 2.0})
        x = make_sem("X", settings=quick)
        x.acquire(3)
        crash(x)

        background = quick.model_copy(update={"background_reap": True})
        make_sem("Y", settings=background).open()
        assert wait_until(lambda: semaphores.get_pool("jobs").available_permits == 3)

    def test_explicit_reap(self, make_sem, heartbeats, semaphores):
        semaphores.create_pool_if_absent("jobs", 3)
        semaphores.try_grant("jobs", "dead", 2)
        heartbeats.register_or_refresh("dead", 1)
        time.sleep(0.05)

        result = make_sem("Y").reap()
        assert result.reclaimed == {("jobs", "dead"): 2}


# ── Cancellation and shutdown ────────────────────────────────────────────


class TestCancellation:
    def test_cancelled_token(self, make_sem):
        x, y = make_sem("X"), make_sem("Y")
        x.acquire(3)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AcquireCancelledError):
            y.acquire(1, timeout=5.0, cancel=token)

    def test_cancel_interrupts_wait(self, make_sem):
        x, y = make_sem("X"), make_sem("Y")
        x.acquire(3)
        token = CancellationToken()
        threading.Timer(0.1, token.cancel).start()

        started = time.monotonic()
        with pytest.raises(AcquireCancelledError):
            y.acquire(1, timeout=10.0, cancel=token)
        assert time.monotonic() - started < 5.0
        assert y.permits_owned() == 0

    def test_close_cancels_pending_acquire(self, make_sem):
        x, y = make_sem("X"), make_sem("Y")
        x.acquire(3)
        y.open()
        outcome: list[BaseException] = []

        def wait_for_permit() -> None:
            try:
                y.acquire(1, timeout=10.0)
            except BaseException as exc:  # inspected below
                outcome.append(exc)

        waiter = threading.Thread(target=wait_for_permit)
        waiter.start()
        time.sleep(0.2)
        y.close()
        waiter.join(timeout=5.0)

        assert not waiter.is_alive()
        assert len(outcome) == 1
        assert isinstance(outcome[0], AcquireCancelledError)

    def test_closed_semaphore_refuses_work(self, make_sem):
        sem = make_sem("x")
        sem.close()
        assert sem.closed is True
        with pytest.raises(AcquireCancelledError):
            sem.acquire(1)


class TestClose:
    def test_close_releases_held_permits_and_heartbeat(self, make_sem, heartbeats, semaphores):
        x = make_sem("X")
        x.acquire(2)
        x.close()
        assert semaphores.get_pool("jobs").available_permits == 3
        assert heartbeats.get("X") is None

    def test_close_is_idempotent(self, make_sem):
        x = make_sem("X")
        x.open()
        x.close()
        x.close()

    def test_context_manager(self, engine, settings, registry, heartbeats):
        with DbSemaphore(engine, "jobs", 3, owner="X", settings=settings, registry=registry) as sem:
            sem.acquire(1)
            assert heartbeats.get("X") is not None
        assert sem.closed
        assert heartbeats.get("X") is None
        assert sem.store.get_pool("jobs").available_permits == 3

    def test_close_after_reclaim_does_not_raise(self, make_sem, semaphores):
        x = make_sem("X")
        x.acquire(2)
        semaphores.reclaim("jobs", "X")
        x.close()
        assert semaphores.get_pool("jobs").available_permits == 3


class TestSharedEmitter:
    def test_same_owner_shares_heartbeat(self, make_sem, registry):
        a = make_sem("X", name="jobs")
        b = make_sem("X", name="reports", total=1)
        a.open()
        b.open()
        assert a.emitter is b.emitter
        assert registry.references(a.emitter) == 2

    def test_heartbeat_outlives_first_close(self, make_sem, heartbeats):
        a = make_sem("X", name="jobs")
        b = make_sem("X", name="reports", total=1)
        a.open()
        b.open()
        a.close()
        assert heartbeats.get("X") is not None
        b.close()
        assert heartbeats.get("X") is None

    def test_health(self, make_sem):
        sem = make_sem("X")
        assert sem.health()["emitter"] is None
        sem.open()
        health = sem.health()
        assert health["semaphore"] == "jobs"
        assert health["emitter"]["owner"] == "X"


class TestLogContext:
    def test_acquire_binds_semaphore_to_log_context(self, make_sem, monkeypatch):
        sem = make_sem("X")
        sem.open()
        seen: list[dict] = []
        grant = sem.store.try_grant

        def recording_grant(*args):
            seen.append(structlog.contextvars.get_contextvars())
            return grant(*args)

        monkeypatch.setattr(sem.store, "try_grant", recording_grant)
        sem.acquire(1)
        assert seen[0]["semaphore"] == "jobs"
        assert "semaphore" not in structlog.contextvars.get_contextvars()


class TestCloseReturnsOwnerPermits:
    def test_last_user_returns_permits_granted_elsewhere(self, make_sem, semaphores):
        x = make_sem("X")
        x.acquire(1)
        semaphores.try_grant("jobs", "X", 1)
        x.close()
        assert semaphores.held_permits("jobs", "X") == 0
        assert semaphores.get_pool("jobs").available_permits == 3
        assert_pool_invariant(semaphores, "jobs")

    def test_sibling_keeps_its_permits(self, make_sem, semaphores):
        a = make_sem("X")
        b = make_sem("X")
        a.acquire(1)
        b.acquire(1)
        a.close()
        assert semaphores.held_permits("jobs", "X") == 1
        b.close()
        assert semaphores.held_permits("jobs", "X") == 0
        assert semaphores.get_pool("jobs").available_permits == 3


# ── Store failures ───────────────────────────────────────────────────────


class TestStoreFailures:
    def test_unreachable_store_at_first_use_is_retried(self, db_url, settings, registry):
        """The first two connections fail; the third acquire attempt is granted."""
        flaky = create_semaphore_engine(db_url)
        failures = {"left": 2}

        @event.listens_for(flaky, "do_connect")
        def _refuse(dialect, conn_rec, cargs, cparams):
            if failures["left"] > 0:
                failures["left"] -= 1
                raise sqlite3.OperationalError("unable to open database file")

        sem = DbSemaphore(flaky, "jobs", 3, owner="X", settings=settings, registry=registry)
        try:
            sem.acquire(1, timeout=5.0)
            assert failures["left"] == 0
            assert sem.permits_owned() == 1
        finally:
            sem.close()
            flaky.dispose()

    def test_setup_failures_end_in_timeout_with_cause(self, make_sem, monkeypatch):
        import dbsemaphore.semaphore.client as client_module

        def unavailable(*args, **kwargs):
            raise TransientStoreError("Schema creation failed: db restarting")

        monkeypatch.setattr(client_module, "ensure_schema", unavailable)
        sem = make_sem("X")
        with pytest.raises(TimeoutExceededError) as info:
            sem.acquire(1, timeout=0.3)
        assert isinstance(info.value.cause, TransientStoreError)
        assert info.value.__cause__ is info.value.cause
        assert sem.emitter is None

    def test_grant_failures_retried_until_deadline(self, make_sem, semaphores, monkeypatch):
        sem = make_sem("X")
        sem.open()
        calls: list[int] = []

        def locked(*args):
            calls.append(1)
            raise TransientStoreError("database is locked")

        monkeypatch.setattr(sem.store, "try_grant", locked)
        started = time.monotonic()
        with pytest.raises(TimeoutExceededError) as info:
            sem.acquire(1, timeout=0.5)
        assert time.monotonic() - started >= 0.4
        assert len(calls) >= 2
        assert isinstance(info.value.__cause__, TransientStoreError)
        assert "locked" in info.value.cause.message
        assert semaphores.get_pool("jobs").available_permits == 3


class TestInjectedClock:
    def test_deadline_and_backoff_follow_the_clock(self, make_sem, settings, fake_clock):
        slow_backoff = settings.model_copy(
            update={"acquire_backoff_floor_ms": 1_000, "acquire_backoff_ceiling_ms": 2_000}
        )
        x = make_sem("X")
        y = make_sem("Y", settings=slow_backoff, clock=fake_clock)
        x.acquire(3)

        started = time.monotonic()
        with pytest.raises(TimeoutExceededError):
            y.acquire(1, timeout=30.0)
        assert fake_clock.now >= 1030.0
        assert time.monotonic() - started < 10.0
        assert y.permits_owned() == 0
