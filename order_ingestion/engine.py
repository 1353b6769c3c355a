"""Batch ingestion engine.

Maps raw marketplace orders to canonical orders, decides per order whether
to create, update or skip it, and hands created/updated orders to the
invoice sync coordinator. Orders are processed by a fixed pool of workers
and one order's failure never affects its siblings.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Set, Tuple

from .change_detection import detect_changes
from .config import Settings
from .constants import DEFAULT_MAX_CONCURRENCY
from .invoice_sync import InvoiceOutcome, InvoiceSyncCoordinator
from .mappers import MapperRegistry, MappingError, NoMapperError, OrderMapper
from .models import CanonicalOrder, TenantKey
from .repository import OrderRepository, StorageError

logger = logging.getLogger(__name__)


class OrderAction(str, Enum):
    """What ingestion did with one order."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class IngestionOptions:
    """Per-batch switches for ingestion."""
    skip_existing: bool = False
    update_existing: bool = True
    create_invoices: bool = True
    dry_run: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "IngestionOptions":
        return cls(
            skip_existing=settings.skip_existing,
            update_existing=settings.update_existing,
            create_invoices=settings.create_invoices,
            dry_run=settings.dry_run,
        )


@dataclass
class ItemError:
    """Failure of a single order within a batch."""
    order_id: Optional[str]
    message: str

    def __str__(self) -> str:
        return f"Order {self.order_id}: {self.message}" if self.order_id else self.message


@dataclass
class IngestionReport:
    """Aggregated result of one ingest call."""
    success: bool = True
    created: int = 0
    updated: int = 0
    skipped: int = 0
    invoices_created: int = 0
    invoices_failed: int = 0
    errors: List[ItemError] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.skipped

    @property
    def has_errors(self) -> bool:
        return not self.success or bool(self.errors)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "invoices_created": self.invoices_created,
            "invoices_failed": self.invoices_failed,
            "errors": [{"order_id": e.order_id, "message": e.message} for e in self.errors],
        }


@dataclass
class ItemOutcome:
    """Result of processing one order successfully."""
    action: OrderAction
    invoice: Optional[InvoiceOutcome] = None


def raw_order_id(raw_order: Any) -> Optional[str]:
    """Best-effort external ID of a raw order, for error reports."""
    keys = ("external_order_id", "marketplaceOrderId", "marketplace_order_id", "order_id", "id")
    for key in keys:
        value = raw_order.get(key) if isinstance(raw_order, dict) else getattr(raw_order, key, None)
        if value:
            return str(value)
    return None


class IngestionEngine:
    """Orchestrates ingestion of a batch of raw marketplace orders."""

    def __init__(
        self,
        repository: OrderRepository,
        mappers: MapperRegistry,
        invoice_sync: Optional[InvoiceSyncCoordinator] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        options: Optional[IngestionOptions] = None,
    ):
        """Initialize ingestion engine.

        Args:
            repository: Order repository adapter
            mappers: Registry of marketplace mappers
            invoice_sync: Invoice coordinator; None disables invoicing
            max_concurrency: Number of orders processed at the same time
            options: Default options for ingest calls
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.repository = repository
        self.mappers = mappers
        self.invoice_sync = invoice_sync
        self.max_concurrency = max_concurrency
        self.options = options or IngestionOptions()
        self._invoicing: Set[str] = set()

    async def ingest(
        self,
        marketplace_id: str,
        tenant: TenantKey,
        raw_orders: Iterable[Any],
        options: Optional[IngestionOptions] = None,
    ) -> IngestionReport:
        """Ingest a batch of raw orders from one marketplace.

        Returns once every order of the batch has been processed.

        Args:
            marketplace_id: ID the marketplace mapper is registered under
            tenant: User/organization the orders belong to
            raw_orders: Orders in the marketplace's own shape
            options: Overrides the engine's default options

        Returns:
            IngestionReport with counts and per-order errors
        """
        options = options or self.options
        raw_orders = list(raw_orders)
        report = IngestionReport()

        logger.info(f"Ingesting {len(raw_orders)} orders from marketplace {marketplace_id}")

        try:
            mapper = self.mappers.get_mapper(marketplace_id)
        except NoMapperError as e:
            logger.error(str(e))
            report.success = False
            report.errors.append(ItemError(order_id=None, message=str(e)))
            return report

        if not raw_orders:
            logger.info(f"No orders to process for marketplace {marketplace_id}")
            return report

        if options.dry_run:
            logger.info("DRY RUN MODE - No orders or invoices will be written")

        queue: asyncio.Queue = asyncio.Queue()
        for position, raw_order in enumerate(raw_orders):
            queue.put_nowait((position, raw_order))

        lock = asyncio.Lock()
        worker_count = min(self.max_concurrency, len(raw_orders))
        workers = [
            asyncio.create_task(self._worker(queue, mapper, tenant, options, report, lock))
            for _ in range(worker_count)
        ]

        try:
            await asyncio.gather(*workers)
        except BaseException:
            # Cancelled (or a worker crashed): stop the rest and let them clean up
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        logger.info(
            f"Ingestion complete for marketplace {marketplace_id}: "
            f"{report.created} created, {report.updated} updated, "
            f"{report.skipped} skipped, {report.invoices_created} invoices created, "
            f"{len(report.errors)} errors"
        )
        return report

    async def _worker(
        self,
        queue: asyncio.Queue,
        mapper: OrderMapper,
        tenant: TenantKey,
        options: IngestionOptions,
        report: IngestionReport,
        lock: asyncio.Lock,
    ) -> None:
        """Process orders from the queue until it is empty."""
        while True:
            try:
                position, raw_order = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            order_ref = raw_order_id(raw_order) or f"#{position}"
            try:
                order = self._map_order(mapper, raw_order, tenant)
                order_ref = order.external_order_id
                outcome = await self._reconcile(order, options)
            except Exception as e:
                logger.error(f"Error processing order {order_ref}: {e}")
                async with lock:
                    report.errors.append(ItemError(
                        order_id=order_ref,
                        message=f"Error processing order: {e}",
                    ))
                continue

            async with lock:
                self._record(report, outcome)

    @staticmethod
    def _map_order(mapper: OrderMapper, raw_order: Any, tenant: TenantKey) -> CanonicalOrder:
        """Map a raw order and check it belongs to the batch's tenant."""
        try:
            order = mapper.map_to_canonical_order(raw_order, tenant)
        except MappingError:
            raise
        except Exception as e:
            raise MappingError(f"Failed to map order: {e}") from e

        mapped_scope = (order.user_id or None, order.organization_id or None)
        if mapped_scope != (tenant.user_id or None, tenant.organization_id or None):
            raise MappingError(
                f"Mapped order {order.external_order_id} belongs to a different tenant"
            )
        return order

    async def _reconcile(self, order: CanonicalOrder, options: IngestionOptions) -> ItemOutcome:
        """Store one order, then push its invoice if it is due one.

        The order write runs in a short transaction when the store has them.
        The invoice push happens after commit with no transaction held, and
        its bookkeeping is a separate write.
        """
        if self.repository.supports_transactions and not options.dry_run:
            async with self.repository.transaction() as repo:
                action, order_id = await self._apply(order, repo, options)
        else:
            action, order_id = await self._apply(order, self.repository, options)

        invoice = None
        if order_id is not None and options.create_invoices and self.invoice_sync is not None:
            invoice = await self._sync_invoice(order_id)

        return ItemOutcome(action, invoice)

    async def _apply(
        self,
        order: CanonicalOrder,
        repo: OrderRepository,
        options: IngestionOptions,
    ) -> Tuple[OrderAction, Optional[str]]:
        """Decide create/update/skip for one order and carry it out.

        Returns:
            The action taken and the stored order's ID when it was written
        """
        external_id = order.external_order_id
        existing = await repo.find_existing(external_id, order.marketplace_name, order.tenant_key)

        if existing is None:
            if options.dry_run:
                logger.info(f"[DRY RUN] Would create order {external_id}")
                return OrderAction.CREATED, None
            order_id = await repo.create(order)
            logger.debug(f"Created new order {external_id} with ID {order_id}")
            return OrderAction.CREATED, order_id

        if options.skip_existing:
            logger.debug(f"Skipping existing order {external_id}")
            return OrderAction.SKIPPED, None

        changes = detect_changes(existing, order)
        if not changes:
            logger.debug(f"Order {external_id} unchanged, skipping")
            return OrderAction.SKIPPED, None
        if not options.update_existing:
            logger.debug(f"Skipping changed order {external_id} (update_existing=False)")
            return OrderAction.SKIPPED, None

        if options.dry_run:
            logger.info(f"[DRY RUN] Would update order {external_id}: {', '.join(changes)}")
            return OrderAction.UPDATED, None
        await repo.update(existing.id, order.business_fields())
        logger.debug(f"Updated existing order {external_id}: {', '.join(changes)}")
        return OrderAction.UPDATED, existing.id

    async def _sync_invoice(self, order_id: str) -> Optional[InvoiceOutcome]:
        """Re-fetch the stored order and push its invoice if it is due one.

        Only one push per order runs at a time within this engine. Pushes
        from other processes are deduplicated by the provider's reference
        lookup.
        """
        if order_id in self._invoicing:
            logger.debug(f"Invoice push for order {order_id} already in progress")
            return None

        self._invoicing.add(order_id)
        try:
            persisted = await self.repository.get_by_id(order_id)
            if persisted is None:
                raise StorageError(f"Order {order_id} not found after write")

            if not self.invoice_sync.is_eligible(persisted):
                return None
            return await self.invoice_sync.sync_invoice(persisted, self.repository)
        finally:
            self._invoicing.discard(order_id)

    @staticmethod
    def _record(report: IngestionReport, outcome: ItemOutcome) -> None:
        if outcome.action == OrderAction.CREATED:
            report.created += 1
        elif outcome.action == OrderAction.UPDATED:
            report.updated += 1
        else:
            report.skipped += 1

        if outcome.invoice is not None:
            if outcome.invoice.created:
                report.invoices_created += 1
            elif outcome.invoice.attempted:
                report.invoices_failed += 1
