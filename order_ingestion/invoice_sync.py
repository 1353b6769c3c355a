"""Invoice sync coordinator.

Pushes an order to the financial-sync provider at most once. Whatever the
provider answers, the outcome is written back onto the order, so a later
ingestion pass sees invoice_push_attempted and never invoices it again.
Failed pushes are left for an operator to look at.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .constants import InvoicePushStatus
from .models import CanonicalOrder, InvoiceResult, utc_now
from .repository import OrderRepository

logger = logging.getLogger(__name__)


class InvoiceSyncError(Exception):
    """Raised by providers when an invoice cannot be created."""
    pass


class InvoiceProvider(ABC):
    """Financial-sync provider (e.g. an accounting system)."""

    @abstractmethod
    def should_create_invoice(self, order: CanonicalOrder) -> bool:
        """Business rule deciding whether an order gets an invoice."""

    @abstractmethod
    async def create_invoice(self, order: CanonicalOrder) -> InvoiceResult:
        """Create the invoice for an order."""


@dataclass
class InvoiceOutcome:
    """Result of one sync_invoice call."""
    created: bool = False
    attempted: bool = False
    error: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    bookkeeping_error: Optional[str] = None


class InvoiceSyncCoordinator:
    """Drives the one-shot invoice push and its bookkeeping."""

    def __init__(self, repository: OrderRepository, provider: InvoiceProvider):
        """Initialize coordinator.

        Args:
            repository: Repository used for bookkeeping writes by default
            provider: Financial-sync provider
        """
        self.repository = repository
        self.provider = provider

    def is_eligible(self, order: CanonicalOrder) -> bool:
        """Check whether an order may get its first invoice push.

        An order that was already attempted is never eligible, whether
        that attempt succeeded or failed.
        """
        if order.invoice_push_attempted:
            return False
        if not order.id:
            return False
        return self.provider.should_create_invoice(order)

    async def sync_invoice(
        self,
        order: CanonicalOrder,
        repository: Optional[OrderRepository] = None,
    ) -> InvoiceOutcome:
        """Create the invoice for an order and record the outcome on it.

        Args:
            order: Stored order (must have an ID)
            repository: Repository for the bookkeeping write, e.g. one bound
                to the caller's transaction. Defaults to the coordinator's.

        Returns:
            InvoiceOutcome describing what happened
        """
        repo = repository or self.repository

        if order.invoice_push_attempted:
            logger.debug(
                f"Invoice push already attempted for order {order.external_order_id} "
                f"({order.invoice_push_status.value}), not retrying"
            )
            return InvoiceOutcome()

        if not order.id:
            return InvoiceOutcome(error="Order has not been stored yet")

        logger.info(f"Creating invoice for order {order.external_order_id}")

        try:
            result = await self.provider.create_invoice(order)
        except Exception as e:
            logger.error(f"Error creating invoice for order {order.external_order_id}: {e}")
            result = InvoiceResult(success=False, error=str(e) or type(e).__name__)

        pushed_at = utc_now()
        if result.success:
            fields = {
                "invoice_push_attempted": True,
                "invoice_push_date": pushed_at,
                "invoice_push_status": InvoicePushStatus.SUCCESS,
                "invoice_push_error": None,
                "invoice_id": result.invoice_id,
                "invoice_number": result.invoice_number,
            }
            outcome = InvoiceOutcome(
                created=True,
                attempted=True,
                invoice_id=result.invoice_id,
                invoice_number=result.invoice_number,
            )
            logger.info(
                f"Created invoice {result.invoice_number or result.invoice_id} "
                f"for order {order.external_order_id}"
            )
        else:
            error = result.error or "Invoice creation failed"
            fields = {
                "invoice_push_attempted": True,
                "invoice_push_date": pushed_at,
                "invoice_push_status": InvoicePushStatus.FAILED,
                "invoice_push_error": error,
            }
            outcome = InvoiceOutcome(attempted=True, error=error)
            logger.error(f"Failed to create invoice for order {order.external_order_id}: {error}")

        try:
            await repo.update(order.id, fields)
        except Exception as e:
            # The push itself is done; losing the status write is logged only
            logger.error(f"Failed to record invoice status for order {order.id}: {e}")
            outcome.bookkeeping_error = str(e)

        return outcome
