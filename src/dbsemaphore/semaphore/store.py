"""Transactional permit accounting against the pool and ledger tables.

Every operation runs in exactly one store transaction that touches the pool
row and the relevant ledger row together, which keeps

    AVAILABLE_PERMITS + SUM(HELD_PERMITS) == TOTAL_PERMITS

true for every pool at every commit. Writers always lock the pool row
first (``SELECT ... FOR UPDATE``; on SQLite the whole database via
``BEGIN IMMEDIATE``) so concurrent grants, releases and reclaims on the same
pool serialize in one order and cannot deadlock each other.

``try_grant`` is the only path that increases a ledger entry.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import MetaData, and_, delete, exists, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from dbsemaphore.core.engine import store_transaction
from dbsemaphore.core.errors import (
    CapacityConflictError,
    ErrorContext,
    InvalidArgumentError,
    OverReleaseError,
    TransientStoreError,
    UnknownSemaphoreError,
)
from dbsemaphore.core.logging import get_logger
from dbsemaphore.core.schema import (
    HeartbeatTableDesc,
    SemaphoreTablesDesc,
    heartbeat_table,
    ledger_table,
    pool_table,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class SemaphorePool:
    name: str
    total_permits: int
    available_permits: int

    @property
    def checked_out(self) -> int:
        return self.total_permits - self.available_permits


@dataclass(frozen=True)
class PermitLedgerEntry:
    semaphore_name: str
    owner: str
    held_permits: int


def _check_permits(field: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgumentError(
            f"{field} must be a positive integer, got {value!r}", field=field, value=value
        )


class SemaphoreStore:
    """Pool and ledger access, one transaction per call.

    ``heartbeat_desc`` is only needed to find orphaned ledger owners (rows
    whose owner has no heartbeat row at all).
    """

    def __init__(
        self,
        engine: Engine,
        desc: SemaphoreTablesDesc | None = None,
        heartbeat_desc: HeartbeatTableDesc | None = None,
    ) -> None:
        self._engine = engine
        self._desc = desc or SemaphoreTablesDesc()
        self._heartbeat_desc = heartbeat_desc or HeartbeatTableDesc()

        metadata = MetaData()
        self._pool = pool_table(metadata, self._desc)
        self._ledger = ledger_table(metadata, self._desc)
        self._heartbeats = heartbeat_table(metadata, self._heartbeat_desc)

        self._p_name = self._pool.c[self._desc.name_column]
        self._p_total = self._pool.c[self._desc.total_column]
        self._p_avail = self._pool.c[self._desc.available_column]
        self._l_name = self._ledger.c[self._desc.ledger_name_column]
        self._l_owner = self._ledger.c[self._desc.ledger_owner_column]
        self._l_held = self._ledger.c[self._desc.held_column]
        self._hb_owner = self._heartbeats.c[self._heartbeat_desc.owner_column]

    @property
    def desc(self) -> SemaphoreTablesDesc:
        return self._desc

    @property
    def engine(self) -> Engine:
        return self._engine

    # -- row helpers (inside a transaction) --------------------------------

    def _lock_pool(self, conn: Connection, name: str) -> tuple[int, int] | None:
        row = conn.execute(
            select(self._p_total, self._p_avail).where(self._p_name == name).with_for_update()
        ).first()
        return (int(row[0]), int(row[1])) if row else None

    def _held(self, conn: Connection, name: str, owner: str, lock: bool = False) -> int:
        stmt = select(self._l_held).where(and_(self._l_name == name, self._l_owner == owner))
        if lock:
            stmt = stmt.with_for_update()
        held = conn.execute(stmt).scalar()
        return int(held) if held is not None else 0

    def _ledger_key(self, name: str, owner: str):
        return and_(self._l_name == name, self._l_owner == owner)

    def _add_available(self, conn: Connection, name: str, delta: int) -> None:
        conn.execute(
            update(self._pool)
            .where(self._p_name == name)
            .values({self._p_avail: self._p_avail + delta})
        )

    # -- pool lifecycle ----------------------------------------------------

    def create_pool_if_absent(self, name: str, total_permits: int) -> bool:
        """Create the pool with every permit available.

        Returns:
            True if this call created the pool, False if it already existed
            with the same capacity.

        Raises:
            CapacityConflictError: the pool exists with a different total.
        """
        _check_permits("total_permits", total_permits)
        try:
            return self._create_pool(name, total_permits)
        except TransientStoreError as exc:
            if not isinstance(exc.cause, IntegrityError):
                raise
            # Another process inserted first; its row decides.
            return self._create_pool(name, total_permits)

    def _create_pool(self, name: str, total_permits: int) -> bool:
        with store_transaction(self._engine, operation="create_pool", semaphore=name) as conn:
            existing = conn.execute(select(self._p_total).where(self._p_name == name)).scalar()
            if existing is not None:
                if int(existing) != total_permits:
                    raise CapacityConflictError(
                        f"Semaphore {name!r} exists with {existing} permits, "
                        f"requested {total_permits}",
                        existing_total=int(existing),
                        requested_total=total_permits,
                        context=ErrorContext(semaphore=name),
                    )
                return False
            conn.execute(
                insert(self._pool).values(
                    {self._p_name: name, self._p_total: total_permits, self._p_avail: total_permits}
                )
            )
        logger.info("semaphore_created", semaphore=name, total_permits=total_permits)
        return True

    def resize_pool(self, name: str, new_total: int) -> SemaphorePool:
        """Change a pool's capacity, shifting available permits by the delta.

        Raises:
            UnknownSemaphoreError: no such pool.
            CapacityConflictError: more permits are checked out than
                ``new_total`` allows.
        """
        _check_permits("new_total", new_total)
        with store_transaction(self._engine, operation="resize_pool", semaphore=name) as conn:
            locked = self._lock_pool(conn, name)
            if locked is None:
                raise UnknownSemaphoreError(name)
            total, available = locked
            checked_out = total - available
            if new_total < checked_out:
                raise CapacityConflictError(
                    f"Cannot resize {name!r} to {new_total}: {checked_out} permits checked out",
                    existing_total=total,
                    requested_total=new_total,
                    context=ErrorContext(semaphore=name),
                )
            conn.execute(
                update(self._pool)
                .where(self._p_name == name)
                .values({self._p_total: new_total, self._p_avail: new_total - checked_out})
            )
        logger.info("semaphore_resized", semaphore=name, old_total=total, new_total=new_total)
        return SemaphorePool(name, new_total, new_total - checked_out)

    # -- permit transfers --------------------------------------------------

    def try_grant(self, name: str, owner: str, permits: int) -> bool:
        """Debit the pool and credit the owner's ledger entry, or do nothing.

        Raises:
            UnknownSemaphoreError: no such pool.
        """
        _check_permits("permits", permits)
        with store_transaction(
            self._engine, operation="try_grant", semaphore=name, owner=owner
        ) as conn:
            locked = self._lock_pool(conn, name)
            if locked is None:
                raise UnknownSemaphoreError(name)
            _, available = locked
            if available < permits:
                conn.rollback()
                return False

            self._add_available(conn, name, -permits)
            result = conn.execute(
                update(self._ledger)
                .where(self._ledger_key(name, owner))
                .values({self._l_held: self._l_held + permits})
            )
            if not result.rowcount:
                conn.execute(
                    insert(self._ledger).values(
                        {self._l_name: name, self._l_owner: owner, self._l_held: permits}
                    )
                )
            return True

    def release(self, name: str, owner: str, permits: int) -> None:
        """Return ``permits`` from the owner's ledger entry to the pool.

        Raises:
            OverReleaseError: the owner holds fewer than ``permits``; nothing
                was changed.
            UnknownSemaphoreError: no such pool.
        """
        _check_permits("permits", permits)
        with store_transaction(
            self._engine, operation="release", semaphore=name, owner=owner
        ) as conn:
            if self._lock_pool(conn, name) is None:
                raise UnknownSemaphoreError(name)
            held = self._held(conn, name, owner, lock=True)
            if permits > held:
                raise OverReleaseError(
                    f"Owner {owner!r} holds {held} permits on {name!r}, cannot release {permits}",
                    held=held,
                    requested=permits,
                    context=ErrorContext(semaphore=name, owner=owner, permits=permits),
                )

            if permits == held:
                conn.execute(delete(self._ledger).where(self._ledger_key(name, owner)))
            else:
                conn.execute(
                    update(self._ledger)
                    .where(self._ledger_key(name, owner))
                    .values({self._l_held: self._l_held - permits})
                )
            self._add_available(conn, name, permits)

    def reclaim(self, name: str, owner: str) -> int:
        """Return everything the owner holds on the pool. Idempotent.

        Returns:
            Permits reclaimed; 0 when the owner held nothing (or the pool
            is gone).
        """
        with store_transaction(
            self._engine, operation="reclaim", semaphore=name, owner=owner
        ) as conn:
            if self._lock_pool(conn, name) is None:
                return 0
            held = self._held(conn, name, owner, lock=True)
            if held <= 0:
                conn.rollback()
                return 0
            conn.execute(delete(self._ledger).where(self._ledger_key(name, owner)))
            self._add_available(conn, name, held)
        return held

    # -- queries -----------------------------------------------------------

    def get_pool(self, name: str) -> SemaphorePool | None:
        stmt = select(self._p_name, self._p_total, self._p_avail).where(self._p_name == name)
        with store_transaction(self._engine, operation="get_pool", semaphore=name) as conn:
            row = conn.execute(stmt).first()
        return SemaphorePool(row[0], int(row[1]), int(row[2])) if row else None

    def list_pools(self) -> list[SemaphorePool]:
        stmt = select(self._p_name, self._p_total, self._p_avail).order_by(self._p_name)
        with store_transaction(self._engine, operation="list_pools") as conn:
            return [SemaphorePool(r[0], int(r[1]), int(r[2])) for r in conn.execute(stmt)]

    def held_permits(self, name: str, owner: str) -> int:
        with store_transaction(
            self._engine, operation="held_permits", semaphore=name, owner=owner
        ) as conn:
            return self._held(conn, name, owner)

    def list_holders(self, name: str) -> list[PermitLedgerEntry]:
        stmt = (
            select(self._l_name, self._l_owner, self._l_held)
            .where(self._l_name == name)
            .order_by(self._l_owner)
        )
        with store_transaction(self._engine, operation="list_holders", semaphore=name) as conn:
            return [PermitLedgerEntry(r[0], r[1], int(r[2])) for r in conn.execute(stmt)]

    def semaphores_held_by(self, owner: str) -> list[str]:
        """Names of every pool the owner currently holds permits on."""
        stmt = (
            select(self._l_name)
            .where(and_(self._l_owner == owner, self._l_held > 0))
            .order_by(self._l_name)
        )
        with store_transaction(self._engine, operation="semaphores_held_by", owner=owner) as conn:
            return [r[0] for r in conn.execute(stmt)]

    def list_orphan_owners(self, name: str) -> list[str]:
        """Ledger owners of ``name`` that have no heartbeat row at all."""
        has_heartbeat = exists().where(self._hb_owner == self._l_owner)
        stmt = (
            select(self._l_owner)
            .where(and_(self._l_name == name, ~has_heartbeat))
            .order_by(self._l_owner)
        )
        with store_transaction(self._engine, operation="list_orphan_owners", semaphore=name) as conn:
            return [r[0] for r in conn.execute(stmt)]


__all__ = ["SemaphorePool", "PermitLedgerEntry", "SemaphoreStore"]
