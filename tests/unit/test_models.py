"""Unit tests for Pydantic data models.

Tests verify that:
- Tenant keys require a scope and are hashable
- Canonical order validation and bookkeeping invariants hold
- business_fields() leaves identity, bookkeeping and timestamps out
- Orders convert to Xero invoices correctly
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from order_ingestion.constants import InvoicePushStatus, OrderStatus, PaymentStatus
from order_ingestion.models import (
    CanonicalOrder,
    LineItem,
    TenantKey,
    canonical_order_to_xero_invoice,
    invoice_reference,
    utc_now,
)

from tests.fixtures.order_fixtures import make_order


class TestTenantKey:
    """Tests for TenantKey."""

    def test_user_only(self):
        key = TenantKey(user_id="u1")

        assert key.user_id == "u1"
        assert key.organization_id is None

    def test_organization_only(self):
        key = TenantKey(organization_id="o1")

        assert str(key) == "-/o1"

    def test_requires_scope(self):
        """Test a tenant key without user and organization is rejected."""
        with pytest.raises(ValidationError):
            TenantKey()

    def test_blank_parts_are_absent(self):
        key = TenantKey(user_id="", organization_id="o1")

        assert key.user_id is None
        assert key == TenantKey(organization_id="o1")

    def test_blank_only_rejected(self):
        with pytest.raises(ValidationError):
            TenantKey(user_id="  ", organization_id="")

    def test_hashable_and_equal(self):
        """Test equal keys hash the same."""
        a = TenantKey(user_id="u1", organization_id="o1")
        b = TenantKey(user_id="u1", organization_id="o1")

        assert a == b
        assert len({a, b}) == 1

    def test_frozen(self):
        key = TenantKey(user_id="u1")

        with pytest.raises(ValidationError):
            key.user_id = "u2"


class TestCanonicalOrder:
    """Tests for CanonicalOrder."""

    def test_defaults(self):
        order = CanonicalOrder(external_order_id="A1", marketplace_name="mp1", user_id="u1")

        assert order.id is None
        assert order.order_status == OrderStatus.NEW
        assert order.payment_status == PaymentStatus.PENDING
        assert order.invoice_push_attempted is False
        assert order.invoice_push_status == InvoicePushStatus.NONE
        assert order.line_items == []
        assert order.total == Decimal("0")

    def test_money_parsed_as_decimal(self):
        order = make_order(total="12.34")

        assert order.total == Decimal("12.34")
        assert isinstance(order.line_items[0].unit_price, Decimal)

    def test_missing_external_id(self):
        with pytest.raises(ValidationError):
            CanonicalOrder(marketplace_name="mp1", user_id="u1")

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            make_order(order_status="teleported")

    def test_attempted_push_requires_date(self):
        """Test an attempted push without a date is rejected."""
        with pytest.raises(ValidationError):
            make_order(invoice_push_attempted=True, invoice_push_status="success")

    def test_attempted_push_requires_final_status(self):
        with pytest.raises(ValidationError):
            make_order(invoice_push_attempted=True, invoice_push_date=utc_now())

    def test_attempted_push_valid(self):
        order = make_order(
            invoice_push_attempted=True,
            invoice_push_date=utc_now(),
            invoice_push_status="failed",
            invoice_push_error="boom",
        )

        assert order.invoice_push_status == InvoicePushStatus.FAILED

    def test_tenant_key(self):
        order = make_order(user_id="u1", organization_id="o1")

        assert order.tenant_key == TenantKey(user_id="u1", organization_id="o1")

    def test_business_fields_exclude_identity_and_bookkeeping(self):
        """Test the update payload never carries identity, bookkeeping or timestamps."""
        order = make_order(
            id="abc",
            created_at=utc_now(),
            updated_at=utc_now(),
            invoice_id="inv-1",
        )

        fields = order.business_fields()

        for name in ("id", "external_order_id", "marketplace_name", "user_id",
                     "organization_id", "invoice_push_attempted", "invoice_id",
                     "invoice_push_status", "created_at", "updated_at"):
            assert name not in fields
        assert fields["order_status"] == OrderStatus.SHIPPED
        assert "line_items" in fields
        assert "marketplace_data" in fields

    def test_json_round_trip_keeps_decimals(self):
        order = make_order(total="9.98")

        restored = CanonicalOrder.model_validate_json(order.model_dump_json())

        assert restored.total == Decimal("9.98")
        assert restored.line_items == order.line_items


class TestXeroInvoiceConversion:
    """Tests for canonical_order_to_xero_invoice."""

    def test_reference(self):
        order = make_order(external_order_id="A1")

        assert invoice_reference(order) == "ORD-A1"
        assert invoice_reference(order, "AMZ-") == "AMZ-A1"

    def test_line_items(self):
        order = make_order()

        invoice = canonical_order_to_xero_invoice(order, contact_id="c-1")

        assert invoice.ContactID == "c-1"
        assert invoice.Reference == "ORD-A1"
        assert invoice.Type == "ACCREC"
        assert len(invoice.LineItems) == 1
        line = invoice.LineItems[0]
        assert line.ItemCode == "WM-LAV-001"
        assert line.Quantity == 2.0
        assert line.UnitAmount == 4.99

    def test_paid_order_is_authorised(self):
        invoice = canonical_order_to_xero_invoice(make_order(payment_status="paid"), "c-1")

        assert invoice.Status == "AUTHORISED"

    def test_unpaid_order_is_draft(self):
        invoice = canonical_order_to_xero_invoice(make_order(payment_status="pending"), "c-1")

        assert invoice.Status == "DRAFT"

    def test_shipping_and_discount_lines(self):
        """Test shipping is added as a line and discount as a negative line."""
        order = make_order(shipping="3.50", discount="1.00")

        invoice = canonical_order_to_xero_invoice(order, "c-1")

        descriptions = [line.Description for line in invoice.LineItems]
        assert descriptions[-2:] == ["Shipping", "Discount"]
        assert invoice.LineItems[-2].UnitAmount == 3.5
        assert invoice.LineItems[-1].UnitAmount == -1.0

    def test_order_date_used_as_invoice_date(self):
        order_date = datetime(2024, 1, 25, 12, 0, tzinfo=timezone.utc)
        invoice = canonical_order_to_xero_invoice(make_order(order_date=order_date), "c-1")

        assert invoice.Date == order_date
        assert invoice.DueDate == order_date

    def test_line_item_without_title_uses_sku(self):
        order = make_order(line_items=[LineItem(sku="SKU-9", quantity=1, unit_price="2", total="2")])

        invoice = canonical_order_to_xero_invoice(order, "c-1")

        assert invoice.LineItems[0].Description == "SKU-9"
