"""SQLite storage for canonical orders and ingestion history.

Each order is stored as a JSON document next to the columns that make up
its idempotency key. A UNIQUE index on those columns guarantees at most
one stored order per (external order ID, marketplace, tenant).
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import CanonicalOrder, IDENTITY_FIELDS, IngestionRun, utc_now

logger = logging.getLogger(__name__)


class Database:
    """SQLite database manager for orders and ingestion runs."""

    SCHEMA = """
    -- Canonical orders, one JSON document per order
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        external_order_id TEXT NOT NULL,
        marketplace_name TEXT NOT NULL,
        user_id TEXT NOT NULL DEFAULT '',
        organization_id TEXT NOT NULL DEFAULT '',
        data TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Idempotency key: at most one order per external order and tenant
    CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_idempotency_key
    ON orders(external_order_id, marketplace_name, user_id, organization_id);

    -- Track ingestion runs for auditing
    CREATE TABLE IF NOT EXISTS ingestion_runs (
        run_id TEXT PRIMARY KEY,
        marketplace_id TEXT NOT NULL,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        status TEXT NOT NULL,
        created INTEGER DEFAULT 0,
        updated INTEGER DEFAULT 0,
        skipped INTEGER DEFAULT 0,
        invoices_created INTEGER DEFAULT 0,
        errors TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_runs_started_at
    ON ingestion_runs(started_at DESC);
    """

    def __init__(self, db_path: Path):
        """Initialize database file and schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._ensure_directory()
        self._init_schema()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self) -> None:
        """Initialize database schema if not exists."""
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)
            logger.info(f"Database initialized at {self.db_path}")

    # =========================================================================
    # CONNECTIONS & TRANSACTIONS
    # =========================================================================

    def open_connection(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode.

        Transactions are controlled explicitly with begin/commit/rollback.
        The connection may be used from worker threads, one at a time.
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0,  # Wait up to 30 seconds for the write lock
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield an autocommit connection and close it afterwards."""
        conn = self.open_connection()
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def begin(conn: sqlite3.Connection) -> None:
        """Start a write transaction, taking the database write lock up front."""
        conn.execute("BEGIN IMMEDIATE")

    @staticmethod
    def commit(conn: sqlite3.Connection) -> None:
        conn.execute("COMMIT")

    @staticmethod
    def rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @contextmanager
    def transaction(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Run a block inside one transaction.

        When ``conn`` is already inside a transaction the block joins it and
        the outer owner decides on commit or rollback.
        """
        if conn is not None and conn.in_transaction:
            yield conn
            return

        with self.connect() if conn is None else _borrowed(conn) as active:
            self.begin(active)
            try:
                yield active
                self.commit(active)
            except BaseException:
                self.rollback(active)
                raise

    # =========================================================================
    # ORDERS
    # =========================================================================

    def find_order(
        self,
        external_order_id: str,
        marketplace_name: str,
        user_id: Optional[str],
        organization_id: Optional[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[CanonicalOrder]:
        """Find an order by its idempotency key.

        Args:
            external_order_id: Marketplace-assigned order ID
            marketplace_name: Marketplace name
            user_id: Owning user (None matches orders without a user)
            organization_id: Owning organization (None matches orders without one)
            conn: Connection to reuse, e.g. inside a transaction

        Returns:
            CanonicalOrder or None if not found
        """
        with self._reuse(conn) as active:
            row = active.execute(
                """
                SELECT id, data FROM orders
                WHERE external_order_id = ? AND marketplace_name = ?
                  AND user_id = ? AND organization_id = ?
                """,
                (external_order_id, marketplace_name, user_id or "", organization_id or "")
            ).fetchone()
            return self._row_to_order(row) if row else None

    def get_order(
        self,
        order_id: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[CanonicalOrder]:
        """Get an order by its store ID.

        Args:
            order_id: Store-assigned order ID
            conn: Connection to reuse

        Returns:
            CanonicalOrder or None if not found
        """
        with self._reuse(conn) as active:
            row = active.execute(
                "SELECT id, data FROM orders WHERE id = ?",
                (order_id,)
            ).fetchone()
            return self._row_to_order(row) if row else None

    def insert_order(
        self,
        order: CanonicalOrder,
        conn: Optional[sqlite3.Connection] = None,
    ) -> str:
        """Insert a new order.

        Sets created_at/updated_at when unset.

        Args:
            order: Order to store
            conn: Connection to reuse

        Returns:
            ID of the stored order

        Raises:
            sqlite3.IntegrityError: If an order with the same idempotency key exists
        """
        now = utc_now()
        order_id = uuid.uuid4().hex
        stored = order.model_copy(update={
            "id": order_id,
            "created_at": order.created_at or now,
            "updated_at": order.updated_at or now,
        })

        with self.transaction(conn) as active:
            active.execute(
                """
                INSERT INTO orders
                    (id, external_order_id, marketplace_name, user_id, organization_id,
                     data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order_id,
                    stored.external_order_id,
                    stored.marketplace_name,
                    stored.user_id or "",
                    stored.organization_id or "",
                    stored.model_dump_json(),
                    stored.created_at.isoformat(),
                    stored.updated_at.isoformat(),
                )
            )

        logger.debug(f"Inserted order {stored.external_order_id} as {order_id}")
        return order_id

    def update_order(
        self,
        order_id: str,
        fields: Dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Apply a partial update to an order.

        Identity fields and created_at are never changed; updated_at is
        always refreshed. Lists such as line_items replace the stored value.

        Args:
            order_id: Store-assigned order ID
            fields: Field values to write
            conn: Connection to reuse

        Returns:
            True if updated, False if the order does not exist
        """
        protected = IDENTITY_FIELDS | {"created_at"}
        changes = {name: value for name, value in fields.items() if name not in protected}

        with self.transaction(conn) as active:
            row = active.execute(
                "SELECT data FROM orders WHERE id = ?",
                (order_id,)
            ).fetchone()
            if row is None:
                return False

            current = json.loads(row["data"])
            merged = CanonicalOrder.model_validate({
                **current,
                **changes,
                "updated_at": utc_now(),
            })
            active.execute(
                "UPDATE orders SET data = ?, updated_at = ? WHERE id = ?",
                (merged.model_dump_json(), merged.updated_at.isoformat(), order_id)
            )

        logger.debug(f"Updated order {order_id}: {sorted(changes)}")
        return True

    def count_orders(self, marketplace_name: Optional[str] = None) -> int:
        """Count stored orders, optionally for one marketplace."""
        with self.connect() as conn:
            if marketplace_name:
                cursor = conn.execute(
                    "SELECT COUNT(*) AS count FROM orders WHERE marketplace_name = ?",
                    (marketplace_name,)
                )
            else:
                cursor = conn.execute("SELECT COUNT(*) AS count FROM orders")
            return cursor.fetchone()["count"]

    # =========================================================================
    # INGESTION HISTORY
    # =========================================================================

    def start_run(self, run_id: str, marketplace_id: str) -> None:
        """Record the start of an ingestion run.

        Args:
            run_id: Unique ID for this run
            marketplace_id: Marketplace being ingested
        """
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO ingestion_runs (run_id, marketplace_id, started_at, status, errors)
                VALUES (?, ?, ?, 'running', '[]')
                """,
                (run_id, marketplace_id, utc_now().isoformat())
            )
            logger.info(f"Started ingestion run: {run_id}")

    def complete_run(
        self,
        run_id: str,
        status: str,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        invoices_created: int = 0,
        errors: Optional[List[str]] = None,
    ) -> None:
        """Record completion of an ingestion run.

        Args:
            run_id: Run ID
            status: Final status (success, failed)
            created: Orders created
            updated: Orders updated
            skipped: Orders skipped
            invoices_created: Invoices pushed successfully
            errors: Error messages
        """
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE ingestion_runs
                SET completed_at = ?,
                    status = ?,
                    created = ?,
                    updated = ?,
                    skipped = ?,
                    invoices_created = ?,
                    errors = ?
                WHERE run_id = ?
                """,
                (
                    utc_now().isoformat(),
                    status,
                    created,
                    updated,
                    skipped,
                    invoices_created,
                    json.dumps(errors or []),
                    run_id,
                )
            )
            logger.info(f"Completed ingestion run: {run_id} with status {status}")

    def get_run_history(self, limit: int = 10) -> List[IngestionRun]:
        """Get recent ingestion runs, newest first.

        Args:
            limit: Maximum number of entries to return
        """
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM ingestion_runs ORDER BY started_at DESC LIMIT ?",
                (limit,)
            )
            return [self._row_to_run(row) for row in cursor.fetchall()]

    def get_stats(self) -> dict:
        """Get database statistics.

        Returns:
            Dictionary with order counts, invoice push counts and last run
        """
        with self.connect() as conn:
            stats = {}

            cursor = conn.execute(
                "SELECT marketplace_name, COUNT(*) AS count FROM orders GROUP BY marketplace_name"
            )
            stats["orders"] = {row["marketplace_name"]: row["count"] for row in cursor.fetchall()}

            cursor = conn.execute(
                """
                SELECT json_extract(data, '$.invoice_push_status') AS status, COUNT(*) AS count
                FROM orders GROUP BY status
                """
            )
            stats["invoice_push"] = {row["status"]: row["count"] for row in cursor.fetchall()}

            row = conn.execute(
                "SELECT * FROM ingestion_runs ORDER BY started_at DESC LIMIT 1"
            ).fetchone()
            last_run = self._row_to_run(row) if row else None
            stats["last_run"] = (
                {"run_id": last_run.run_id, "status": last_run.status,
                 "started_at": last_run.started_at.isoformat()}
                if last_run else None
            )

            return stats

    # =========================================================================
    # HELPERS
    # =========================================================================

    @contextmanager
    def _reuse(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.connect() as fresh:
                yield fresh

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> CanonicalOrder:
        order = CanonicalOrder.model_validate_json(row["data"])
        if order.id != row["id"]:
            order = order.model_copy(update={"id": row["id"]})
        return order

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> IngestionRun:
        return IngestionRun(
            run_id=row["run_id"],
            marketplace_id=row["marketplace_id"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            status=row["status"],
            created=row["created"] or 0,
            updated=row["updated"] or 0,
            skipped=row["skipped"] or 0,
            invoices_created=row["invoices_created"] or 0,
            errors=json.loads(row["errors"]) if row["errors"] else [],
        )


@contextmanager
def _borrowed(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Yield a caller-owned connection without closing it."""
    yield conn
