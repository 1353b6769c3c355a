"""Constants and status vocabularies for order ingestion.

Order and payment statuses are the canonical values every marketplace
mapper must produce. The invoice sets below decide which orders are
handed to the accounting system and may need adapting to the business.
"""

from enum import Enum


class OrderStatus(str, Enum):
    """Canonical order lifecycle status."""
    NEW = "new"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    CANCELED = "canceled"
    RETURNED = "returned"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Canonical payment status."""
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED = "failed"
    VOIDED = "voided"


class InvoicePushStatus(str, Enum):
    """Outcome of the one-shot invoice push recorded on an order."""
    NONE = "none"
    SUCCESS = "success"
    FAILED = "failed"


class FulfillmentType(str, Enum):
    """Who ships the order."""
    MARKETPLACE_FULFILLED = "marketplace_fulfilled"
    SELLER_FULFILLED = "seller_fulfilled"


# =============================================================================
# INGESTION DEFAULTS
# =============================================================================

# Number of orders processed at the same time within one batch
DEFAULT_MAX_CONCURRENCY = 10

# Marketplace ID of the mapper that accepts payloads already in canonical shape
CANONICAL_MARKETPLACE_ID = "canonical"


# =============================================================================
# INVOICE ELIGIBILITY
# =============================================================================
# An order is invoiced once it has been paid for, unless it was reversed.

INVOICEABLE_PAYMENT_STATUSES = frozenset({
    PaymentStatus.PAID,
})

NON_INVOICEABLE_ORDER_STATUSES = frozenset({
    OrderStatus.CANCELED,
    OrderStatus.RETURNED,
    OrderStatus.REFUNDED,
})


# =============================================================================
# INVOICE SETTINGS
# =============================================================================

# Invoice reference prefix (prepended to the marketplace order ID)
DEFAULT_INVOICE_REFERENCE_PREFIX = "ORD-"

# Xero sales account and tax type used for every invoice line
DEFAULT_LINE_ITEM_ACCOUNT = "200"
DEFAULT_TAX_TYPE = "OUTPUT2"

# Accounts receivable (sales) invoice
INVOICE_TYPE_SALES = "ACCREC"
