"""Unit tests for the Xero API client.

The SDK is replaced with mocks; tests verify that:
- Tokens are loaded from the token file or the environment
- Refreshed tokens are persisted
- SDK objects are converted to and from our models
- Lookups build the expected filter expressions
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from xero_python.exceptions import ApiException

from order_ingestion.models import XeroContact, XeroInvoice, XeroLineItem
from order_ingestion.xero_client import XeroAPIError, XeroAuthError, XeroClient


def sdk_contact(**kwargs):
    fields = {
        "contact_id": "contact-1",
        "contact_status": "ACTIVE",
        "name": "Jane Doe",
        "email_address": "jane.doe@example.com",
        "is_customer": True,
    }
    fields.update(kwargs)
    return SimpleNamespace(**fields)


def sdk_invoice(**kwargs):
    fields = {
        "invoice_id": "inv-1",
        "invoice_number": "INV-0001",
        "reference": "ORD-A1",
        "type": "ACCREC",
        "status": "AUTHORISED",
        "contact": SimpleNamespace(contact_id="contact-1"),
        "line_items": [SimpleNamespace(
            description="Lavender Wax Melt",
            quantity=2.0,
            unit_amount=4.99,
            account_code="200",
            item_code="WM-LAV-001",
            tax_type="OUTPUT2",
            line_amount=9.98,
        )],
        "date": None,
        "due_date": None,
        "currency_code": "GBP",
        "total": 9.98,
    }
    fields.update(kwargs)
    return SimpleNamespace(**fields)


@pytest.fixture
def client(settings):
    """Client with a mocked accounting API, as if initialized."""
    client = XeroClient(settings)
    client._api_client = MagicMock()
    client._api_client.get_oauth2_token.return_value = {"access_token": "current"}
    client._accounting_api = MagicMock()
    return client


class TestTokens:
    """Tests for token loading and persistence."""

    def test_token_path_next_to_database(self, settings):
        client = XeroClient(settings)

        assert client._token_path == settings.database_path.parent / "xero_tokens.json"

    def test_initial_token_from_settings(self, settings):
        token = XeroClient(settings)._initial_token()

        assert token["access_token"] == "test_access_token"
        assert token["refresh_token"] == "test_refresh_token"
        assert "offline_access" in token["scope"]

    def test_initial_token_prefers_file(self, settings):
        client = XeroClient(settings)
        client._write_token({"access_token": "from_file"})

        assert client._initial_token() == {"access_token": "from_file"}

    def test_missing_token(self, settings):
        """Test a clear error when no token is available at all."""
        settings.xero_access_token = None

        with pytest.raises(XeroAuthError):
            XeroClient(settings)._initial_token()

    def test_corrupt_token_file(self, settings):
        client = XeroClient(settings)
        client._token_path.parent.mkdir(parents=True, exist_ok=True)
        client._token_path.write_text("{not json")

        assert client._load_token() is None

    def test_refresh_callback_persists(self, settings):
        client = XeroClient(settings)

        client._on_token_refreshed({"access_token": "refreshed"})

        assert json.loads(client._token_path.read_text()) == {"access_token": "refreshed"}


class TestContextManager:
    """Tests for async context manager."""

    @pytest.mark.asyncio
    async def test_initializes_and_saves_token(self, settings):
        with patch("order_ingestion.xero_client.ApiClient") as api_client_cls, \
                patch("order_ingestion.xero_client.AccountingApi") as accounting_cls:
            api_client = api_client_cls.return_value
            api_client.get_oauth2_token.return_value = {"access_token": "final"}

            async with XeroClient(settings) as client:
                assert client._accounting_api is accounting_cls.return_value
                api_client.set_oauth2_token.assert_called_once()
                api_client.refresh_oauth2_token.assert_called_once()

        assert json.loads(client._token_path.read_text()) == {"access_token": "final"}

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_fatal(self, settings):
        with patch("order_ingestion.xero_client.ApiClient") as api_client_cls, \
                patch("order_ingestion.xero_client.AccountingApi"):
            api_client = api_client_cls.return_value
            api_client.refresh_oauth2_token.side_effect = RuntimeError("expired")
            api_client.get_oauth2_token.return_value = None

            async with XeroClient(settings) as client:
                assert client._accounting_api is not None

    @pytest.mark.asyncio
    async def test_requires_initialization(self, settings):
        with pytest.raises(XeroAPIError):
            await XeroClient(settings).find_invoice_by_reference("ORD-A1")


class TestContacts:
    """Tests for contact operations."""

    @pytest.mark.asyncio
    async def test_find_contact_by_email(self, client):
        client._accounting_api.get_contacts.return_value = SimpleNamespace(contacts=[sdk_contact()])

        contact = await client.find_contact_by_email("jane.doe@example.com")

        assert contact.ContactID == "contact-1"
        assert contact.EmailAddress == "jane.doe@example.com"
        kwargs = client._accounting_api.get_contacts.call_args.kwargs
        assert kwargs["where"] == 'EmailAddress=="jane.doe@example.com"'
        assert kwargs["xero_tenant_id"] == "test_tenant_id"

    @pytest.mark.asyncio
    async def test_find_contact_not_found(self, client):
        client._accounting_api.get_contacts.return_value = SimpleNamespace(contacts=[])

        assert await client.find_contact_by_email("nobody@example.com") is None

    @pytest.mark.asyncio
    async def test_find_contact_empty_email(self, client):
        assert await client.find_contact_by_email("") is None
        client._accounting_api.get_contacts.assert_not_called()

    @pytest.mark.asyncio
    async def test_email_quotes_escaped(self, client):
        client._accounting_api.get_contacts.return_value = SimpleNamespace(contacts=None)

        await client.find_contact_by_email('a"b@example.com')

        assert client._accounting_api.get_contacts.call_args.kwargs["where"] == 'EmailAddress=="a\\"b@example.com"'

    @pytest.mark.asyncio
    async def test_create_contact(self, client):
        client._accounting_api.create_contacts.return_value = SimpleNamespace(contacts=[sdk_contact()])

        created = await client.create_contact(XeroContact(Name="Jane Doe", EmailAddress="jane.doe@example.com"))

        assert created.ContactID == "contact-1"
        payload = client._accounting_api.create_contacts.call_args.kwargs["contacts"]
        assert payload.contacts[0].name == "Jane Doe"

    @pytest.mark.asyncio
    async def test_create_contact_no_data(self, client):
        client._accounting_api.create_contacts.return_value = SimpleNamespace(contacts=[])

        with pytest.raises(XeroAPIError):
            await client.create_contact(XeroContact(Name="Jane Doe"))


class TestInvoices:
    """Tests for invoice operations."""

    @pytest.mark.asyncio
    async def test_find_invoice_by_reference(self, client):
        client._accounting_api.get_invoices.return_value = SimpleNamespace(invoices=[sdk_invoice()])

        invoice = await client.find_invoice_by_reference("ORD-A1")

        assert invoice.InvoiceID == "inv-1"
        assert invoice.InvoiceNumber == "INV-0001"
        assert invoice.ContactID == "contact-1"
        assert invoice.LineItems[0].ItemCode == "WM-LAV-001"
        assert client._accounting_api.get_invoices.call_args.kwargs["where"] == 'Reference=="ORD-A1"'

    @pytest.mark.asyncio
    async def test_find_invoice_not_found(self, client):
        client._accounting_api.get_invoices.return_value = SimpleNamespace(invoices=[])

        assert await client.find_invoice_by_reference("ORD-A1") is None

    @pytest.mark.asyncio
    async def test_create_invoice(self, client):
        client._accounting_api.create_invoices.return_value = SimpleNamespace(invoices=[sdk_invoice()])
        invoice = XeroInvoice(
            Reference="ORD-A1",
            Status="AUTHORISED",
            ContactID="contact-1",
            LineItems=[XeroLineItem(Description="Lavender Wax Melt", Quantity=2, UnitAmount=4.99)],
        )

        created = await client.create_invoice(invoice)

        assert created.InvoiceID == "inv-1"
        payload = client._accounting_api.create_invoices.call_args.kwargs["invoices"]
        sent = payload.invoices[0]
        assert sent.reference == "ORD-A1"
        assert sent.contact.contact_id == "contact-1"
        assert sent.line_items[0].unit_amount == 4.99

    @pytest.mark.asyncio
    async def test_create_invoice_no_data(self, client):
        client._accounting_api.create_invoices.return_value = SimpleNamespace(invoices=None)

        with pytest.raises(XeroAPIError):
            await client.create_invoice(XeroInvoice(Reference="ORD-A1"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, reason", [
        (401, "Unauthorized"),
        (429, "Too Many Requests"),
        (503, "Service Unavailable"),
    ])
    async def test_http_errors_become_api_errors(self, client, status, reason):
        client._accounting_api.create_invoices.side_effect = ApiException(status=status, reason=reason)

        with pytest.raises(XeroAPIError) as exc_info:
            await client.create_invoice(XeroInvoice(Reference="ORD-A1"))

        assert str(status) in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ApiException)


class TestConnection:
    """Tests for check_connection."""

    @pytest.mark.asyncio
    async def test_connected(self, client):
        client._accounting_api.get_organisations.return_value = SimpleNamespace(organisations=[object()])

        assert await client.check_connection() is True

    @pytest.mark.asyncio
    async def test_failure(self, client):
        client._accounting_api.get_organisations.side_effect = RuntimeError("network down")

        assert await client.check_connection() is False

    @pytest.mark.asyncio
    async def test_not_initialized(self, settings):
        assert await XeroClient(settings).check_connection() is False
