"""CRUD against the heartbeat table.

One row per live owner. The row's timestamp is always written with the
store's own clock expression, and staleness is always evaluated in SQL
against that same clock, so no two processes ever compare wall clocks.

The store keeps nothing in memory between calls: several uncoordinated
processes may be reaping at the same time, and each must see committed
state.

Example::

    store = HeartbeatStore(engine, HeartbeatTableDesc())
    store.register_or_refresh("host-a-4242-1f2e3d4c", interval_millis=10_000)
    store.list_stale_owners(grace_multiplier=2.0)   # -> []
    store.remove("host-a-4242-1f2e3d4c")
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import BigInteger, MetaData, delete, insert, literal, literal_column, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.sql.elements import ColumnElement

from dbsemaphore.core.engine import store_transaction
from dbsemaphore.core.schema import HeartbeatTableDesc, heartbeat_table


@dataclass(frozen=True)
class HeartbeatRecord:
    """One owner's liveness row."""

    owner: str
    interval_millis: int
    last_heartbeat_millis: int

    def is_stale(self, now_millis: int, grace_multiplier: float) -> bool:
        return now_millis - self.last_heartbeat_millis > self.interval_millis * grace_multiplier


class HeartbeatStore:
    """Heartbeat table access, one transaction per call."""

    def __init__(self, engine: Engine, desc: HeartbeatTableDesc | None = None) -> None:
        self._engine = engine
        self._desc = desc or HeartbeatTableDesc()
        self._table = heartbeat_table(MetaData(), self._desc)
        self._owner = self._table.c[self._desc.owner_column]
        self._interval = self._table.c[self._desc.interval_column]
        self._last = self._table.c[self._desc.last_heartbeat_column]

    @property
    def desc(self) -> HeartbeatTableDesc:
        return self._desc

    @property
    def engine(self) -> Engine:
        return self._engine

    def _now(self) -> ColumnElement[int]:
        return literal_column(f"({self._desc.current_time_millis_sql})", BigInteger)

    def register_or_refresh(self, owner: str, interval_millis: int) -> bool:
        """Upsert the owner's row, stamping it with the store's current time.

        Returns:
            True when no row existed and one was inserted. A refresh that
            has to insert means the owner was reaped (or never registered).
        """
        with store_transaction(self._engine, operation="register_or_refresh", owner=owner) as conn:
            result = conn.execute(
                update(self._table)
                .where(self._owner == owner)
                .values({self._interval: interval_millis, self._last: self._now()})
            )
            if result.rowcount:
                return False
            conn.execute(
                insert(self._table).values(
                    {self._owner: owner, self._interval: interval_millis, self._last: self._now()}
                )
            )
            return True

    def list_stale_owners(
        self,
        now_millis: int | None = None,
        grace_multiplier: float = 2.0,
    ) -> list[str]:
        """Owners whose last beat is older than ``interval * grace_multiplier``.

        ``now_millis=None`` evaluates "now" with the store clock inside the
        query itself; pass a value only to pin time in tests or tooling.
        """
        now = self._now() if now_millis is None else literal(now_millis, BigInteger)
        stmt = (
            select(self._owner)
            .where(now - self._last > self._interval * grace_multiplier)
            .order_by(self._owner)
        )
        with store_transaction(self._engine, operation="list_stale_owners") as conn:
            return [row[0] for row in conn.execute(stmt)]

    def remove(self, owner: str) -> bool:
        """Delete the owner's row; a missing row is not an error."""
        with store_transaction(self._engine, operation="remove_heartbeat", owner=owner) as conn:
            result = conn.execute(delete(self._table).where(self._owner == owner))
            return bool(result.rowcount)

    def get(self, owner: str) -> HeartbeatRecord | None:
        stmt = select(self._owner, self._interval, self._last).where(self._owner == owner)
        with store_transaction(self._engine, operation="get_heartbeat", owner=owner) as conn:
            row = conn.execute(stmt).first()
        return HeartbeatRecord(row[0], int(row[1]), int(row[2])) if row else None

    def list_all(self) -> list[HeartbeatRecord]:
        stmt = select(self._owner, self._interval, self._last).order_by(self._owner)
        with store_transaction(self._engine, operation="list_heartbeats") as conn:
            return [HeartbeatRecord(r[0], int(r[1]), int(r[2])) for r in conn.execute(stmt)]

    def current_time_millis(self) -> int:
        """The store clock, as used for every heartbeat comparison."""
        with store_transaction(self._engine, operation="current_time_millis") as conn:
            return int(conn.execute(select(self._now())).scalar_one())


__all__ = ["HeartbeatRecord", "HeartbeatStore"]
