"""Order repository adapter.

Puts the order store behind one async contract. The engine checks
``supports_transactions`` to decide whether one order's writes can be
grouped into a single transaction, without knowing which store it talks to.
"""

import asyncio
import copy
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple, TypeVar

from .database import Database
from .models import CanonicalOrder, IDENTITY_FIELDS, TenantKey, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageError(Exception):
    """Raised when the order store fails to find, create, update or get an order."""
    pass


class OrderRepository(ABC):
    """Uniform contract over the order store."""

    supports_transactions: bool = False

    @abstractmethod
    async def find_existing(
        self,
        external_order_id: str,
        marketplace_name: str,
        tenant: TenantKey,
    ) -> Optional[CanonicalOrder]:
        """Find a stored order by its idempotency key."""

    @abstractmethod
    async def create(self, order: CanonicalOrder) -> str:
        """Store a new order and return its ID."""

    @abstractmethod
    async def update(self, order_id: str, fields: Dict[str, Any]) -> None:
        """Apply a partial update; refreshes updated_at."""

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[CanonicalOrder]:
        """Get a stored order by ID."""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["OrderRepository"]:
        """Yield a repository whose operations share one transaction.

        Stores without transactions yield themselves; each operation is
        then committed on its own.
        """
        yield self


# =============================================================================
# SQLITE
# =============================================================================

class SQLiteOrderRepository(OrderRepository):
    """Transactional repository backed by the SQLite database.

    Blocking sqlite3 calls run in worker threads so sibling orders keep
    making progress while one waits on the database. SQLite has a single
    writer, so writers queue on an asyncio lock before taking a thread;
    otherwise threads stuck waiting for the database lock could starve the
    transaction that holds it. Reads outside a transaction take no lock
    (WAL lets them run next to the writer), and callers keep transactions
    short: no network calls while one is open.
    """

    supports_transactions = True

    def __init__(
        self,
        database: Database,
        connection: Optional[sqlite3.Connection] = None,
        write_lock: Optional[asyncio.Lock] = None,
    ):
        """Initialize repository.

        Args:
            database: Database instance
            connection: Connection bound to an open transaction (internal use)
            write_lock: Lock shared with the parent repository (internal use)
        """
        self.db = database
        self._conn = connection
        self._write_lock = write_lock or asyncio.Lock()

    async def _in_transaction(self, func: Callable[..., T], *args: Any) -> T:
        call = asyncio.ensure_future(asyncio.to_thread(func, *args, conn=self._conn))
        try:
            return await asyncio.shield(call)
        except asyncio.CancelledError:
            # The statement must finish before the transaction is rolled back
            await asyncio.wait([call])
            if not call.cancelled():
                call.exception()
            raise

    async def _run(self, action: str, func: Callable[..., T], *args: Any) -> T:
        try:
            if self._conn is not None:
                return await self._in_transaction(func, *args)
            return await asyncio.to_thread(func, *args, conn=None)
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Failed to {action}: duplicate order ({e})") from e
        except sqlite3.Error as e:
            raise StorageError(f"Failed to {action}: {e}") from e
        except ValueError as e:
            # Stored document no longer validates after merging the update
            raise StorageError(f"Failed to {action}: {e}") from e

    async def find_existing(
        self,
        external_order_id: str,
        marketplace_name: str,
        tenant: TenantKey,
    ) -> Optional[CanonicalOrder]:
        return await self._run(
            f"find order {external_order_id}",
            self.db.find_order,
            external_order_id,
            marketplace_name,
            tenant.user_id,
            tenant.organization_id,
        )

    async def _write(self, action: str, func: Callable[..., T], *args: Any) -> T:
        if self._conn is not None:
            # Bound to a transaction that already holds the write lock
            return await self._run(action, func, *args)
        async with self._write_lock:
            return await self._run(action, func, *args)

    async def create(self, order: CanonicalOrder) -> str:
        return await self._write(
            f"create order {order.external_order_id}",
            self.db.insert_order,
            order,
        )

    async def update(self, order_id: str, fields: Dict[str, Any]) -> None:
        updated = await self._write(
            f"update order {order_id}",
            self.db.update_order,
            order_id,
            fields,
        )
        if not updated:
            raise StorageError(f"Failed to update order {order_id}: not found")

    async def get_by_id(self, order_id: str) -> Optional[CanonicalOrder]:
        return await self._run(
            f"get order {order_id}",
            self.db.get_order,
            order_id,
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLiteOrderRepository"]:
        """Open a connection, begin, and commit or roll back on exit.

        The write lock is held for the whole transaction. Rollback also
        happens when the surrounding task is cancelled.
        """
        if self._conn is not None:
            # Already inside a transaction
            yield self
            return

        async with self._write_lock:
            try:
                conn = await asyncio.to_thread(self.db.open_connection)
            except sqlite3.Error as e:
                raise StorageError(f"Failed to open connection: {e}") from e

            try:
                try:
                    await asyncio.to_thread(self.db.begin, conn)
                except sqlite3.Error as e:
                    raise StorageError(f"Failed to begin transaction: {e}") from e

                yield SQLiteOrderRepository(self.db, connection=conn, write_lock=self._write_lock)

                try:
                    await asyncio.to_thread(self.db.commit, conn)
                except sqlite3.Error as e:
                    raise StorageError(f"Failed to commit transaction: {e}") from e
            except BaseException:
                await asyncio.shield(asyncio.to_thread(self.db.rollback, conn))
                logger.debug("Rolled back order transaction")
                raise
            finally:
                await asyncio.shield(asyncio.to_thread(conn.close))


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryOrderRepository(OrderRepository):
    """Non-transactional repository keeping orders in a dict.

    Each operation is atomic on its own document. Stored and returned
    orders are copies, so callers never share state with the store.
    """

    supports_transactions = False

    def __init__(self):
        self._orders: Dict[str, CanonicalOrder] = {}
        self._keys: Dict[Tuple[str, str, str, str], str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(external_order_id: str, marketplace_name: str, tenant: TenantKey) -> Tuple[str, str, str, str]:
        return (external_order_id, marketplace_name, tenant.user_id or "", tenant.organization_id or "")

    def count(self) -> int:
        """Number of stored orders."""
        with self._lock:
            return len(self._orders)

    def all(self) -> list:
        """Copies of every stored order."""
        with self._lock:
            return [copy.deepcopy(order) for order in self._orders.values()]

    async def find_existing(
        self,
        external_order_id: str,
        marketplace_name: str,
        tenant: TenantKey,
    ) -> Optional[CanonicalOrder]:
        with self._lock:
            order_id = self._keys.get(self._key(external_order_id, marketplace_name, tenant))
            if order_id is None:
                return None
            return copy.deepcopy(self._orders[order_id])

    async def create(self, order: CanonicalOrder) -> str:
        key = self._key(order.external_order_id, order.marketplace_name, order.tenant_key)
        now = utc_now()
        with self._lock:
            if key in self._keys:
                raise StorageError(
                    f"Failed to create order {order.external_order_id}: duplicate order"
                )
            order_id = uuid.uuid4().hex
            self._orders[order_id] = order.model_copy(deep=True, update={
                "id": order_id,
                "created_at": order.created_at or now,
                "updated_at": order.updated_at or now,
            })
            self._keys[key] = order_id
        return order_id

    async def update(self, order_id: str, fields: Dict[str, Any]) -> None:
        protected = IDENTITY_FIELDS | {"created_at"}
        changes = {name: value for name, value in fields.items() if name not in protected}
        with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise StorageError(f"Failed to update order {order_id}: not found")
            try:
                merged = CanonicalOrder.model_validate({
                    **current.model_dump(),
                    **copy.deepcopy(changes),
                    "updated_at": utc_now(),
                })
            except ValueError as e:
                raise StorageError(f"Failed to update order {order_id}: {e}") from e
            self._orders[order_id] = merged

    async def get_by_id(self, order_id: str) -> Optional[CanonicalOrder]:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None
