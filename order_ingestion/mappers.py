"""Marketplace mapper contract and registry.

A mapper turns one raw marketplace order into a CanonicalOrder. Mappers
are deterministic and do no I/O. The registry is an ordinary object that
is built once and handed to the ingestion engine.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from pydantic import ValidationError

from .constants import CANONICAL_MARKETPLACE_ID
from .models import CanonicalOrder, INVOICE_BOOKKEEPING_FIELDS, TenantKey

logger = logging.getLogger(__name__)


class MappingError(Exception):
    """Raised when a raw order cannot be normalized."""
    pass


class NoMapperError(Exception):
    """Raised when no mapper is registered for a marketplace."""

    def __init__(self, marketplace_id: str):
        self.marketplace_id = marketplace_id
        super().__init__(f"No order mapper registered for marketplace: {marketplace_id}")


class OrderMapper(ABC):
    """Normalizes raw orders of one marketplace."""

    @abstractmethod
    def map_to_canonical_order(self, raw_order: Any, tenant: TenantKey) -> CanonicalOrder:
        """Map a raw marketplace order to a canonical order.

        Args:
            raw_order: Order in the marketplace's own shape
            tenant: User/organization the order belongs to

        Returns:
            CanonicalOrder stamped with the tenant

        Raises:
            MappingError: If the raw order cannot be normalized
        """


class MapperRegistry:
    """Lookup of order mappers keyed by marketplace ID (case-insensitive)."""

    def __init__(self):
        self._mappers: Dict[str, OrderMapper] = {}

    @staticmethod
    def _normalize(marketplace_id: str) -> str:
        return marketplace_id.strip().lower()

    def register(self, marketplace_id: str, mapper: OrderMapper) -> None:
        """Register (or replace) the mapper for a marketplace."""
        key = self._normalize(marketplace_id)
        if key in self._mappers:
            logger.warning(f"Replacing order mapper for marketplace {key}")
        self._mappers[key] = mapper
        logger.debug(f"Registered order mapper for marketplace {key}")

    def unregister(self, marketplace_id: str) -> bool:
        """Remove a mapper. Returns True if one was registered."""
        return self._mappers.pop(self._normalize(marketplace_id), None) is not None

    def has_mapper(self, marketplace_id: str) -> bool:
        return self._normalize(marketplace_id) in self._mappers

    def get_mapper(self, marketplace_id: str) -> OrderMapper:
        """Get the mapper for a marketplace.

        Raises:
            NoMapperError: If none is registered
        """
        try:
            return self._mappers[self._normalize(marketplace_id)]
        except KeyError:
            raise NoMapperError(marketplace_id) from None

    def marketplaces(self) -> List[str]:
        """Registered marketplace IDs, sorted."""
        return sorted(self._mappers)


class CanonicalPayloadMapper(OrderMapper):
    """Mapper for payloads that already follow the canonical order shape.

    Used for JSON exports and tests. Tenant fields always come from the
    tenant key, never from the payload.
    """

    def __init__(self, marketplace_name: str = "Canonical"):
        self.marketplace_name = marketplace_name

    def map_to_canonical_order(self, raw_order: Any, tenant: TenantKey) -> CanonicalOrder:
        if not isinstance(raw_order, dict):
            raise MappingError(f"Expected an order object, got {type(raw_order).__name__}")

        payload = dict(raw_order)
        # Store-owned fields are never taken from the marketplace
        for field in ("id", "created_at", "updated_at", *INVOICE_BOOKKEEPING_FIELDS):
            payload.pop(field, None)
        payload.setdefault("marketplace_name", self.marketplace_name)
        payload.setdefault("marketplace_id", CANONICAL_MARKETPLACE_ID)
        payload["user_id"] = tenant.user_id
        payload["organization_id"] = tenant.organization_id

        try:
            return CanonicalOrder.model_validate(payload)
        except ValidationError as e:
            order_id = raw_order.get("external_order_id", "?")
            raise MappingError(f"Invalid canonical order {order_id}: {e}") from e
