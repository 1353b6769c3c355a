"""Xero implementation of the invoice provider."""

import logging
from typing import Optional

from .constants import (
    DEFAULT_INVOICE_REFERENCE_PREFIX,
    INVOICEABLE_PAYMENT_STATUSES,
    NON_INVOICEABLE_ORDER_STATUSES,
)
from .invoice_sync import InvoiceProvider
from .models import (
    CanonicalOrder,
    InvoiceResult,
    XeroContact,
    canonical_order_to_xero_invoice,
    invoice_reference,
)
from .xero_client import XeroAPIError, XeroClient

logger = logging.getLogger(__name__)


class XeroInvoiceProvider(InvoiceProvider):
    """Raises sales invoices in Xero for paid marketplace orders."""

    def __init__(
        self,
        client: XeroClient,
        reference_prefix: str = DEFAULT_INVOICE_REFERENCE_PREFIX,
    ):
        """Initialize provider.

        Args:
            client: Initialized XeroClient
            reference_prefix: Prefix for the invoice reference
        """
        self.client = client
        self.reference_prefix = reference_prefix

    def should_create_invoice(self, order: CanonicalOrder) -> bool:
        """Invoice paid orders that were not canceled, returned or refunded."""
        if order.payment_status not in INVOICEABLE_PAYMENT_STATUSES:
            return False
        if order.order_status in NON_INVOICEABLE_ORDER_STATUSES:
            return False
        return bool(order.line_items)

    async def create_invoice(self, order: CanonicalOrder) -> InvoiceResult:
        """Create the Xero invoice for an order.

        An invoice already carrying the order's reference is reused rather
        than duplicated.
        """
        reference = invoice_reference(order, self.reference_prefix)

        try:
            existing = await self.client.find_invoice_by_reference(reference)
            if existing:
                logger.info(
                    f"Found existing Xero invoice for order {order.external_order_id}: "
                    f"{existing.InvoiceID}"
                )
                return InvoiceResult(
                    success=True,
                    invoice_id=existing.InvoiceID,
                    invoice_number=existing.InvoiceNumber,
                )

            contact_id = await self._get_contact_id(order)
            xero_invoice = canonical_order_to_xero_invoice(order, contact_id, self.reference_prefix)
            created = await self.client.create_invoice(xero_invoice)
        except XeroAPIError as e:
            return InvoiceResult(success=False, error=str(e))

        return InvoiceResult(
            success=True,
            invoice_id=created.InvoiceID,
            invoice_number=created.InvoiceNumber,
        )

    async def _get_contact_id(self, order: CanonicalOrder) -> Optional[str]:
        """Find the customer's Xero contact by email, creating it if missing."""
        if order.customer_email:
            contact = await self.client.find_contact_by_email(order.customer_email)
            if contact:
                return contact.ContactID

        name = order.customer_name or order.customer_email or f"{order.marketplace_name} customer"
        contact = await self.client.create_contact(XeroContact(
            Name=name,
            EmailAddress=order.customer_email,
        ))
        return contact.ContactID
