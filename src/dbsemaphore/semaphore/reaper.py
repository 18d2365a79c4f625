"""Reclaims permits held by owners that stopped heartbeating.

Any process may run a Reaper at any time, several at once. Every step is
idempotent: a second Reaper arriving after the first finds nothing to
reclaim and no heartbeat row to delete, and treats both as success.

    1. stale owners      ← heartbeat table, judged by the store clock
    2. for each owner    → reclaim on every pool it holds (within scope)
                         → delete its heartbeat row once its ledger is empty
    3. orphans           → ledger owners of scoped pools with no heartbeat
                           row at all are reclaimed too
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from dbsemaphore.core.logging import get_logger
from dbsemaphore.heartbeat.store import HeartbeatStore
from dbsemaphore.semaphore.store import SemaphoreStore

logger = get_logger(__name__)


@dataclass
class ReapResult:
    stale_owners: list[str] = field(default_factory=list)
    orphan_owners: list[str] = field(default_factory=list)
    removed_owners: list[str] = field(default_factory=list)
    reclaimed: dict[tuple[str, str], int] = field(default_factory=dict)

    @property
    def total_reclaimed(self) -> int:
        return sum(self.reclaimed.values())

    def to_dict(self) -> dict:
        return {
            "stale_owners": list(self.stale_owners),
            "orphan_owners": list(self.orphan_owners),
            "removed_owners": list(self.removed_owners),
            "reclaimed": [
                {"semaphore": name, "owner": owner, "permits": permits}
                for (name, owner), permits in self.reclaimed.items()
            ],
        }


class Reaper:
    """Stateless reclaim pass over the heartbeat and semaphore stores.

    Args:
        heartbeats: heartbeat table access
        semaphores: pool and ledger access
        grace_multiplier: staleness threshold as a multiple of each
            owner's own interval
        scope: semaphore names this reaper may reclaim on; None means all
        self_owner: owner id of the running process, never reaped
    """

    def __init__(
        self,
        heartbeats: HeartbeatStore,
        semaphores: SemaphoreStore,
        *,
        grace_multiplier: float = 2.0,
        scope: Iterable[str] | None = None,
        self_owner: str | None = None,
    ) -> None:
        self._heartbeats = heartbeats
        self._semaphores = semaphores
        self._grace_multiplier = grace_multiplier
        self._scope = frozenset(scope) if scope is not None else None
        self._self_owner = self_owner

    @property
    def scope(self) -> frozenset[str] | None:
        return self._scope

    def _in_scope(self, name: str) -> bool:
        return self._scope is None or name in self._scope

    def _reclaim(self, result: ReapResult, name: str, owner: str) -> None:
        permits = self._semaphores.reclaim(name, owner)
        if permits:
            result.reclaimed[(name, owner)] = result.reclaimed.get((name, owner), 0) + permits
            logger.warning("permits_reclaimed", semaphore=name, owner=owner, permits=permits)

    def run(self) -> ReapResult:
        result = ReapResult()

        for owner in self._heartbeats.list_stale_owners(grace_multiplier=self._grace_multiplier):
            if owner == self._self_owner:
                continue
            result.stale_owners.append(owner)
            for name in self._semaphores.semaphores_held_by(owner):
                if self._in_scope(name):
                    self._reclaim(result, name, owner)
            # Out-of-scope holdings keep the row so another reaper still sees the owner.
            if not self._semaphores.semaphores_held_by(owner):
                if self._heartbeats.remove(owner):
                    result.removed_owners.append(owner)
                    logger.info("stale_owner_removed", owner=owner)

        orphan_names = sorted(self._scope) if self._scope is not None else [
            pool.name for pool in self._semaphores.list_pools()
        ]
        for name in orphan_names:
            for owner in self._semaphores.list_orphan_owners(name):
                if owner == self._self_owner:
                    continue
                if owner not in result.orphan_owners:
                    result.orphan_owners.append(owner)
                self._reclaim(result, name, owner)

        if result.reclaimed or result.removed_owners:
            logger.info(
                "reap_completed",
                stale=len(result.stale_owners),
                orphans=len(result.orphan_owners),
                reclaimed=result.total_reclaimed,
            )
        return result


__all__ = ["Reaper", "ReapResult"]
