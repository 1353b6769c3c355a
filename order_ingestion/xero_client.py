"""Xero accounting client using the official xero-python SDK.

Only the calls invoice sync needs: contact lookup/creation and invoice
lookup/creation. OAuth2 tokens are loaded from the token file (or the
environment on first use) and written back whenever the SDK refreshes them.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from xero_python.accounting import (
    AccountingApi,
    Contact,
    Contacts,
    Invoice,
    Invoices,
    LineItem,
)
from xero_python.api_client import ApiClient, Configuration
from xero_python.api_client.oauth2 import OAuth2Token
from xero_python.exceptions import AccountingBadRequestException, ApiException

from .config import Settings
from .constants import DEFAULT_LINE_ITEM_ACCOUNT, DEFAULT_TAX_TYPE, INVOICE_TYPE_SALES
from .models import XeroContact, XeroInvoice, XeroLineItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

XERO_SCOPES = [
    "accounting.transactions",
    "accounting.contacts",
    "accounting.settings",
    "offline_access",
]


class XeroAPIError(Exception):
    """Base exception for Xero API errors."""
    pass


class XeroAuthError(XeroAPIError):
    """Raised when no usable Xero credentials are available."""
    pass


class XeroClient:
    """Async wrapper around the synchronous Xero SDK.

    SDK calls run in worker threads via asyncio.to_thread(). Use as an
    async context manager so tokens are set up and persisted.
    """

    TOKEN_FILE = "xero_tokens.json"

    def __init__(self, settings: Settings):
        """Initialize Xero client.

        Args:
            settings: Application settings with Xero credentials
        """
        self.settings = settings
        self._tenant_id = settings.xero_tenant_id
        self._token_path = settings.database_path.parent / self.TOKEN_FILE

        self._api_client: Optional[ApiClient] = None
        self._accounting_api: Optional[AccountingApi] = None

    async def __aenter__(self) -> "XeroClient":
        await self._initialize_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        # Persist whatever token the SDK ended up with
        if self._api_client:
            token = self._api_client.get_oauth2_token()
            if token:
                await asyncio.to_thread(self._write_token, token)

    # =========================================================================
    # TOKENS
    # =========================================================================

    def _load_token(self) -> Optional[Dict[str, Any]]:
        """Load the OAuth2 token dictionary from the token file, if any."""
        if not self._token_path.exists():
            return None

        try:
            with open(self._token_path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load Xero token from {self._token_path}: {e}")
            return None

    def _write_token(self, token: Dict[str, Any]) -> None:
        try:
            self._token_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._token_path, "w") as f:
                json.dump(token, f, indent=2)
            logger.debug("Saved Xero token to file")
        except OSError as e:
            logger.error(f"Failed to save Xero token: {e}")

    def _on_token_refreshed(self, token: Dict[str, Any]) -> None:
        """Called by the SDK after it refreshes the token."""
        logger.info("Xero token refreshed")
        self._write_token(token)

    def _initial_token(self) -> Dict[str, Any]:
        token = self._load_token()
        if token:
            return token

        if not self.settings.xero_access_token:
            raise XeroAuthError(
                "No Xero access token found. "
                "Set XERO_ACCESS_TOKEN and XERO_REFRESH_TOKEN in .env"
            )

        return {
            "access_token": self.settings.xero_access_token,
            "refresh_token": self.settings.xero_refresh_token,
            "token_type": "Bearer",
            "expires_in": 1800,
            "scope": XERO_SCOPES,
        }

    async def _initialize_client(self) -> None:
        """Build the SDK client and refresh the token once."""
        token = self._initial_token()

        self._api_client = ApiClient(
            Configuration(
                debug=False,
                oauth2_token=OAuth2Token(
                    client_id=self.settings.xero_client_id,
                    client_secret=self.settings.xero_client_secret,
                ),
            ),
            pool_threads=1,
        )
        self._api_client.oauth2_token_getter(self._load_token)
        self._api_client.oauth2_token_saver(self._on_token_refreshed)
        self._api_client.set_oauth2_token(token)

        try:
            await asyncio.to_thread(self._api_client.refresh_oauth2_token)
        except Exception as e:
            # The current access token may still be valid
            logger.debug(f"Xero token refresh on init failed: {e}")

        self._accounting_api = AccountingApi(self._api_client)
        logger.info("Xero client initialized")

    def _ensure_initialized(self) -> None:
        if not self._accounting_api:
            raise XeroAPIError("Client not initialized. Use async context manager.")

    async def _call(self, action: str, func: Callable[[], T]) -> T:
        """Run a blocking SDK call in a thread, mapping SDK errors."""
        self._ensure_initialized()

        def _run() -> T:
            try:
                return func()
            except AccountingBadRequestException as e:
                raise XeroAPIError(f"Failed to {action}: {e}") from e
            except ApiException as e:
                # Auth, rate limit and server errors
                raise XeroAPIError(f"Failed to {action}: HTTP {e.status} {e.reason}") from e

        return await asyncio.to_thread(_run)

    # =========================================================================
    # CONTACTS
    # =========================================================================

    async def find_contact_by_email(self, email: str) -> Optional[XeroContact]:
        """Find a contact by email address.

        Args:
            email: Email address to search for

        Returns:
            XeroContact or None if not found
        """
        if not email:
            return None

        safe_email = email.replace('"', '\\"')
        result = await self._call(
            "fetch contacts",
            lambda: self._accounting_api.get_contacts(
                xero_tenant_id=self._tenant_id,
                where=f'EmailAddress=="{safe_email}"',
            ),
        )
        contacts = result.contacts or []
        return self._sdk_contact_to_model(contacts[0]) if contacts else None

    async def create_contact(self, contact: XeroContact) -> XeroContact:
        """Create a new contact in Xero.

        Returns:
            Created XeroContact with ContactID populated
        """
        payload = Contacts(contacts=[self._model_to_sdk_contact(contact)])
        result = await self._call(
            "create contact",
            lambda: self._accounting_api.create_contacts(
                xero_tenant_id=self._tenant_id,
                contacts=payload,
            ),
        )
        if not result.contacts:
            raise XeroAPIError("Contact creation returned no data")

        created = self._sdk_contact_to_model(result.contacts[0])
        logger.info(f"Created Xero contact: {created.ContactID} ({created.Name})")
        return created

    # =========================================================================
    # INVOICES
    # =========================================================================

    async def find_invoice_by_reference(self, reference: str) -> Optional[XeroInvoice]:
        """Find an invoice by its reference.

        Args:
            reference: Invoice reference (built from the marketplace order ID)

        Returns:
            XeroInvoice or None if not found
        """
        if not reference:
            return None

        safe_ref = reference.replace('"', '\\"')
        result = await self._call(
            "fetch invoices",
            lambda: self._accounting_api.get_invoices(
                xero_tenant_id=self._tenant_id,
                where=f'Reference=="{safe_ref}"',
            ),
        )
        invoices: List[Invoice] = result.invoices or []
        return self._sdk_invoice_to_model(invoices[0]) if invoices else None

    async def create_invoice(self, invoice: XeroInvoice) -> XeroInvoice:
        """Create a new invoice in Xero.

        Returns:
            Created XeroInvoice with InvoiceID and InvoiceNumber populated
        """
        payload = Invoices(invoices=[self._model_to_sdk_invoice(invoice)])
        result = await self._call(
            "create invoice",
            lambda: self._accounting_api.create_invoices(
                xero_tenant_id=self._tenant_id,
                invoices=payload,
            ),
        )
        if not result.invoices:
            raise XeroAPIError("Invoice creation returned no data")

        created = self._sdk_invoice_to_model(result.invoices[0])
        logger.info(f"Created Xero invoice: {created.InvoiceID} ({created.Reference})")
        return created

    async def check_connection(self) -> bool:
        """Verify the API connection works."""
        try:
            result = await self._call(
                "fetch organisations",
                lambda: self._accounting_api.get_organisations(xero_tenant_id=self._tenant_id),
            )
        except Exception as e:
            logger.error(f"Xero API connection failed: {e}")
            return False

        ok = result.organisations is not None
        if ok:
            logger.info("Xero API connection successful")
        else:
            logger.error("Xero API connection failed: no organisation returned")
        return ok

    # =========================================================================
    # MODEL CONVERSION HELPERS
    # =========================================================================

    @staticmethod
    def _sdk_contact_to_model(sdk_contact: Contact) -> XeroContact:
        return XeroContact(
            ContactID=sdk_contact.contact_id,
            ContactStatus=sdk_contact.contact_status or "ACTIVE",
            Name=sdk_contact.name or "",
            EmailAddress=sdk_contact.email_address,
            IsCustomer=sdk_contact.is_customer or False,
        )

    @staticmethod
    def _model_to_sdk_contact(contact: XeroContact) -> Contact:
        return Contact(
            contact_id=contact.ContactID,
            name=contact.Name,
            email_address=contact.EmailAddress,
        )

    @staticmethod
    def _sdk_invoice_to_model(sdk_invoice: Invoice) -> XeroInvoice:
        line_items = [
            XeroLineItem(
                Description=li.description or "",
                Quantity=li.quantity or 1.0,
                UnitAmount=li.unit_amount or 0.0,
                AccountCode=li.account_code or DEFAULT_LINE_ITEM_ACCOUNT,
                ItemCode=li.item_code,
                TaxType=li.tax_type or DEFAULT_TAX_TYPE,
                LineAmount=li.line_amount,
            )
            for li in (sdk_invoice.line_items or [])
        ]

        return XeroInvoice(
            InvoiceID=sdk_invoice.invoice_id,
            InvoiceNumber=sdk_invoice.invoice_number,
            Reference=sdk_invoice.reference,
            Type=sdk_invoice.type or INVOICE_TYPE_SALES,
            Status=sdk_invoice.status or "DRAFT",
            ContactID=sdk_invoice.contact.contact_id if sdk_invoice.contact else None,
            LineItems=line_items,
            Date=sdk_invoice.date,
            DueDate=sdk_invoice.due_date,
            CurrencyCode=sdk_invoice.currency_code or "GBP",
            Total=sdk_invoice.total,
        )

    @staticmethod
    def _model_to_sdk_invoice(invoice: XeroInvoice) -> Invoice:
        line_items = [
            LineItem(
                description=li.Description,
                quantity=li.Quantity,
                unit_amount=li.UnitAmount,
                account_code=li.AccountCode,
                item_code=li.ItemCode,
                tax_type=li.TaxType,
            )
            for li in invoice.LineItems
        ]

        return Invoice(
            reference=invoice.Reference,
            type=invoice.Type,
            status=invoice.Status,
            contact=Contact(contact_id=invoice.ContactID) if invoice.ContactID else None,
            line_items=line_items or None,
            date=invoice.Date,
            due_date=invoice.DueDate,
            currency_code=invoice.CurrencyCode,
        )
