"""Pydantic data models for canonical orders and the accounting system.

These models provide validation and type safety for data moving between
marketplace mappers, the order store and Xero.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import (
    DEFAULT_INVOICE_REFERENCE_PREFIX,
    DEFAULT_LINE_ITEM_ACCOUNT,
    DEFAULT_TAX_TYPE,
    INVOICE_TYPE_SALES,
    FulfillmentType,
    InvoicePushStatus,
    OrderStatus,
    PaymentStatus,
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# CANONICAL ORDER MODELS
# =============================================================================

class TenantKey(BaseModel):
    """User/organization scope an order belongs to."""
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    organization_id: Optional[str] = None

    @field_validator("user_id", "organization_id", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        """Treat empty or whitespace-only parts as absent."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def require_scope(self) -> "TenantKey":
        """A tenant needs at least a user or an organization."""
        if not self.user_id and not self.organization_id:
            raise ValueError("Tenant key needs a user_id or an organization_id")
        return self

    def __str__(self) -> str:
        return f"{self.user_id or '-'}/{self.organization_id or '-'}"


class Address(BaseModel):
    """Postal address attached to an order."""
    name: Optional[str] = None
    company: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    phone: Optional[str] = None


class LineItem(BaseModel):
    """Line item in a canonical order. ``sku`` correlates items across versions."""
    sku: str
    title: Optional[str] = None
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    tax: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    marketplace_product_id: Optional[str] = None


# Fields that make up the idempotency key and are never rewritten
IDENTITY_FIELDS = frozenset({
    "id",
    "external_order_id",
    "marketplace_name",
    "user_id",
    "organization_id",
})

# Fields written only by the invoice sync coordinator
INVOICE_BOOKKEEPING_FIELDS = frozenset({
    "invoice_push_attempted",
    "invoice_push_date",
    "invoice_push_status",
    "invoice_push_error",
    "invoice_id",
    "invoice_number",
})

TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at"})


class CanonicalOrder(BaseModel):
    """Normalized representation of a marketplace sale."""

    # Identity
    id: Optional[str] = None
    external_order_id: str
    marketplace_name: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None

    # Descriptive
    marketplace_id: Optional[str] = None
    order_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    currency: str = "GBP"
    notes: Optional[str] = None
    fulfillment_type: Optional[FulfillmentType] = None
    order_date: Optional[datetime] = None

    # Business fields refreshed by ingestion
    order_status: OrderStatus = OrderStatus.NEW
    payment_status: PaymentStatus = PaymentStatus.PENDING
    line_items: List[LineItem] = Field(default_factory=list)
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    tracking_number: Optional[str] = None
    tracking_company: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None
    shipped_date: Optional[datetime] = None
    delivered_date: Optional[datetime] = None
    marketplace_data: Dict[str, Any] = Field(default_factory=dict)

    # Invoice sync bookkeeping
    invoice_push_attempted: bool = False
    invoice_push_date: Optional[datetime] = None
    invoice_push_status: InvoicePushStatus = InvoicePushStatus.NONE
    invoice_push_error: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None

    # Timestamps
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_invoice_bookkeeping(self) -> "CanonicalOrder":
        """An attempted push always carries its date and a final status."""
        if self.invoice_push_attempted:
            if self.invoice_push_date is None:
                raise ValueError("invoice_push_date is required once a push was attempted")
            if self.invoice_push_status == InvoicePushStatus.NONE:
                raise ValueError("invoice_push_status must be success or failed once attempted")
        return self

    @property
    def tenant_key(self) -> TenantKey:
        """Tenant scope of this order."""
        return TenantKey(user_id=self.user_id, organization_id=self.organization_id)

    def business_fields(self) -> Dict[str, Any]:
        """Fields an ingestion pass is allowed to overwrite on a stored order."""
        return self.model_dump(
            exclude=set(IDENTITY_FIELDS | INVOICE_BOOKKEEPING_FIELDS | TIMESTAMP_FIELDS)
        )


class InvoiceResult(BaseModel):
    """Result returned by a financial-sync provider."""
    success: bool
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# XERO MODELS
# =============================================================================

class XeroContact(BaseModel):
    """Xero contact the invoice is raised against."""
    ContactID: Optional[str] = None
    ContactStatus: str = "ACTIVE"
    Name: str
    EmailAddress: Optional[str] = None
    IsCustomer: bool = True


class XeroLineItem(BaseModel):
    """Line item in a Xero invoice."""
    Description: str
    Quantity: float = 1.0
    UnitAmount: float
    AccountCode: str = DEFAULT_LINE_ITEM_ACCOUNT
    ItemCode: Optional[str] = None
    TaxType: str = DEFAULT_TAX_TYPE
    LineAmount: Optional[float] = None


class XeroInvoice(BaseModel):
    """Xero invoice entity."""
    InvoiceID: Optional[str] = None
    InvoiceNumber: Optional[str] = None
    Reference: Optional[str] = None  # Marketplace order ID goes here
    Type: str = INVOICE_TYPE_SALES
    Status: str = "DRAFT"
    ContactID: Optional[str] = None
    LineItems: List[XeroLineItem] = Field(default_factory=list)
    Date: Optional[datetime] = None
    DueDate: Optional[datetime] = None
    CurrencyCode: str = "GBP"
    Total: Optional[float] = None


# =============================================================================
# INGESTION HISTORY
# =============================================================================

class IngestionRun(BaseModel):
    """Record of one ingestion batch."""
    run_id: str
    marketplace_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: str  # "running", "success", "failed"
    created: int = 0
    updated: int = 0
    skipped: int = 0
    invoices_created: int = 0
    errors: List[str] = Field(default_factory=list)


# =============================================================================
# CONVERSION HELPERS
# =============================================================================

def invoice_reference(order: CanonicalOrder, prefix: str = DEFAULT_INVOICE_REFERENCE_PREFIX) -> str:
    """Build the Xero invoice reference used for duplicate detection."""
    return f"{prefix}{order.external_order_id}"


def canonical_order_to_xero_invoice(
    order: CanonicalOrder,
    contact_id: str,
    reference_prefix: str = DEFAULT_INVOICE_REFERENCE_PREFIX,
) -> XeroInvoice:
    """Convert a canonical order to a Xero sales invoice.

    Args:
        order: Stored canonical order
        contact_id: Xero ContactID for the customer
        reference_prefix: Prefix for the invoice reference

    Returns:
        XeroInvoice ready for creation
    """
    line_items = [
        XeroLineItem(
            Description=item.title or item.sku,
            Quantity=float(item.quantity),
            UnitAmount=float(item.unit_price),
            ItemCode=item.sku,
        )
        for item in order.line_items
    ]

    if order.shipping > 0:
        line_items.append(XeroLineItem(
            Description="Shipping",
            UnitAmount=float(order.shipping),
        ))

    # Discount as a negative line
    if order.discount > 0:
        line_items.append(XeroLineItem(
            Description="Discount",
            UnitAmount=-float(order.discount),
        ))

    invoice_date = order.order_date or order.created_at or utc_now()
    status = "AUTHORISED" if order.payment_status == PaymentStatus.PAID else "DRAFT"

    return XeroInvoice(
        Reference=invoice_reference(order, reference_prefix),
        Status=status,
        ContactID=contact_id,
        LineItems=line_items,
        Date=invoice_date,
        DueDate=invoice_date,
        CurrencyCode=order.currency,
    )
