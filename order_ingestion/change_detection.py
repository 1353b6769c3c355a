"""Field-level change detection between a stored and an incoming order.

Only fields that matter downstream are compared. Anything outside the
tracked set (addresses, notes, marketplace_data, ...) is refreshed only
when a tracked field changes as well.
"""

from typing import Dict, List, Sequence

from .models import CanonicalOrder, LineItem

STATUS_FIELDS = ("order_status", "payment_status")
TRACKING_FIELDS = ("tracking_number", "tracking_company", "tracking_url")
MONEY_FIELDS = ("subtotal", "tax", "shipping", "discount", "total")

TRACKED_FIELDS = STATUS_FIELDS + TRACKING_FIELDS + MONEY_FIELDS


def line_items_changed(
    existing_items: Sequence[LineItem],
    incoming_items: Sequence[LineItem],
) -> bool:
    """Compare two line-item sequences by SKU.

    Order of items is ignored. A length mismatch is always a change;
    otherwise an incoming item is changed when its SKU is not in the
    existing set or its quantity, unit price or total differ. With
    duplicate SKUs the last existing item wins.

    Args:
        existing_items: Line items of the stored order
        incoming_items: Line items of the freshly mapped order

    Returns:
        True if the sequences differ
    """
    if len(existing_items) != len(incoming_items):
        return True

    by_sku: Dict[str, LineItem] = {item.sku: item for item in existing_items}

    for item in incoming_items:
        previous = by_sku.get(item.sku)
        if previous is None:
            return True
        if (
            previous.quantity != item.quantity
            or previous.unit_price != item.unit_price
            or previous.total != item.total
        ):
            return True

    return False


def detect_changes(existing: CanonicalOrder, incoming: CanonicalOrder) -> List[str]:
    """List the tracked fields that differ between two orders.

    Args:
        existing: Order as currently stored
        incoming: Order as just mapped from the marketplace

    Returns:
        Names of changed fields, "line_items" for the item sequence
    """
    changed = [
        name for name in TRACKED_FIELDS
        if getattr(existing, name) != getattr(incoming, name)
    ]
    if line_items_changed(existing.line_items, incoming.line_items):
        changed.append("line_items")
    return changed


def needs_update(existing: CanonicalOrder, incoming: CanonicalOrder) -> bool:
    """Check whether the stored order has to be overwritten.

    Args:
        existing: Order as currently stored
        incoming: Order as just mapped from the marketplace

    Returns:
        True if any tracked field or the line items changed
    """
    return bool(detect_changes(existing, incoming))
