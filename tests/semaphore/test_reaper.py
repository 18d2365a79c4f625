"""Tests for dbsemaphore.semaphore.reaper: reclaiming from dead owners."""

from __future__ import annotations

import time

import pytest

from conftest import assert_pool_invariant
from dbsemaphore.semaphore.reaper import Reaper


@pytest.fixture()
def pool(semaphores):
    semaphores.create_pool_if_absent("jobs", 3)
    return "jobs"


def make_stale(heartbeats, owner: str) -> None:
    """Register ``owner`` with a 1ms interval and let it lapse."""
    heartbeats.register_or_refresh(owner, 1)
    time.sleep(0.05)


class TestStaleOwners:
    def test_reclaims_and_removes_stale_owner(self, heartbeats, semaphores, pool):
        semaphores.try_grant(pool, "dead", 3)
        make_stale(heartbeats, "dead")

        result = Reaper(heartbeats, semaphores).run()

        assert result.stale_owners == ["dead"]
        assert result.reclaimed == {(pool, "dead"): 3}
        assert result.removed_owners == ["dead"]
        assert result.total_reclaimed == 3
        assert semaphores.get_pool(pool).available_permits == 3
        assert heartbeats.get("dead") is None
        assert_pool_invariant(semaphores, pool)

    def test_second_run_is_a_noop(self, heartbeats, semaphores, pool):
        semaphores.try_grant(pool, "dead", 2)
        make_stale(heartbeats, "dead")
        reaper = Reaper(heartbeats, semaphores)
        reaper.run()

        before = semaphores.get_pool(pool)
        again = reaper.run()
        assert again.reclaimed == {}
        assert again.stale_owners == []
        assert semaphores.get_pool(pool) == before

    def test_live_owner_untouched(self, heartbeats, semaphores, pool):
        semaphores.try_grant(pool, "alive", 2)
        heartbeats.register_or_refresh("alive", 60_000)

        result = Reaper(heartbeats, semaphores).run()
        assert result.reclaimed == {}
        assert semaphores.held_permits(pool, "alive") == 2

    def test_never_reaps_itself(self, heartbeats, semaphores, pool):
        semaphores.try_grant(pool, "me", 2)
        make_stale(heartbeats, "me")

        result = Reaper(heartbeats, semaphores, self_owner="me").run()
        assert result.stale_owners == []
        assert semaphores.held_permits(pool, "me") == 2
        assert heartbeats.get("me") is not None

    def test_reclaims_across_every_pool_held(self, heartbeats, semaphores, pool):
        semaphores.create_pool_if_absent("other", 2)
        semaphores.try_grant(pool, "dead", 1)
        semaphores.try_grant("other", "dead", 2)
        make_stale(heartbeats, "dead")

        result = Reaper(heartbeats, semaphores).run()
        assert result.reclaimed == {(pool, "dead"): 1, ("other", "dead"): 2}
        assert semaphores.semaphores_held_by("dead") == []


class TestScope:
    def test_out_of_scope_holdings_keep_heartbeat_row(self, heartbeats, semaphores, pool):
        semaphores.create_pool_if_absent("other", 2)
        semaphores.try_grant(pool, "dead", 1)
        semaphores.try_grant("other", "dead", 2)
        make_stale(heartbeats, "dead")

        result = Reaper(heartbeats, semaphores, scope=[pool]).run()

        assert result.reclaimed == {(pool, "dead"): 1}
        assert result.removed_owners == []
        assert semaphores.held_permits("other", "dead") == 2
        assert heartbeats.get("dead") is not None

    def test_scope_is_exposed(self, heartbeats, semaphores):
        assert Reaper(heartbeats, semaphores, scope=["a", "b"]).scope == frozenset({"a", "b"})
        assert Reaper(heartbeats, semaphores).scope is None


class TestOrphans:
    def test_reclaims_owner_without_heartbeat_row(self, heartbeats, semaphores, pool):
        semaphores.try_grant(pool, "ghost", 2)

        result = Reaper(heartbeats, semaphores, scope=[pool]).run()

        assert result.orphan_owners == ["ghost"]
        assert result.reclaimed == {(pool, "ghost"): 2}
        assert_pool_invariant(semaphores, pool)

    def test_self_owner_never_treated_as_orphan(self, heartbeats, semaphores, pool):
        semaphores.try_grant(pool, "me", 1)
        result = Reaper(heartbeats, semaphores, scope=[pool], self_owner="me").run()
        assert result.orphan_owners == []
        assert semaphores.held_permits(pool, "me") == 1


class TestResult:
    def test_to_dict(self, heartbeats, semaphores, pool):
        semaphores.try_grant(pool, "dead", 1)
        make_stale(heartbeats, "dead")
        data = Reaper(heartbeats, semaphores).run().to_dict()
        assert data["stale_owners"] == ["dead"]
        assert data["reclaimed"] == [{"semaphore": pool, "owner": "dead", "permits": 1}]
