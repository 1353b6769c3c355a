"""Pytest configuration and shared fixtures.

Provides common fixtures for:
- Temporary database and log paths
- Mock environment variables
- Databases and repositories
- Mapper registry, tenant and invoice provider
"""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest


# =============================================================================
# TEMPORARY PATHS
# =============================================================================

@pytest.fixture
def temp_db_path():
    """Create a temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_orders.db"


@pytest.fixture
def temp_log_path():
    """Create a temporary log file path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.log"


# =============================================================================
# ENVIRONMENT VARIABLES
# =============================================================================

@pytest.fixture
def mock_env_vars(monkeypatch, temp_db_path, temp_log_path):
    """Set up mock environment variables for testing.

    Xero credentials are complete, so invoice sync is enabled.
    """
    monkeypatch.setenv("DATABASE_PATH", str(temp_db_path))
    monkeypatch.setenv("LOG_FILE", str(temp_log_path))
    monkeypatch.setenv("XERO_CLIENT_ID", "test_xero_client_id")
    monkeypatch.setenv("XERO_CLIENT_SECRET", "test_xero_client_secret")
    monkeypatch.setenv("XERO_TENANT_ID", "test_tenant_id")
    monkeypatch.setenv("XERO_ACCESS_TOKEN", "test_access_token")
    monkeypatch.setenv("XERO_REFRESH_TOKEN", "test_refresh_token")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")


@pytest.fixture
def settings(mock_env_vars):
    """Settings loaded from the mock environment (no .env file)."""
    from order_ingestion.config import Settings
    return Settings(_env_file=None)


# =============================================================================
# DATABASE AND REPOSITORY FIXTURES
# =============================================================================

@pytest.fixture
def database(temp_db_path):
    """Create a real database instance for testing."""
    from order_ingestion.database import Database
    return Database(temp_db_path)


@pytest.fixture
def sqlite_repository(database):
    """Transactional repository over the temporary database."""
    from order_ingestion.repository import SQLiteOrderRepository
    return SQLiteOrderRepository(database)


@pytest.fixture
def memory_repository():
    """Non-transactional in-memory repository."""
    from order_ingestion.repository import InMemoryOrderRepository
    return InMemoryOrderRepository()


# =============================================================================
# INGESTION FIXTURES
# =============================================================================

@pytest.fixture
def tenant():
    """Tenant the test orders belong to."""
    from order_ingestion.models import TenantKey
    return TenantKey(user_id="user-1")


@pytest.fixture
def registry():
    """Registry with the canonical payload mapper under "mp1"."""
    from order_ingestion.mappers import CanonicalPayloadMapper, MapperRegistry

    registry = MapperRegistry()
    registry.register("mp1", CanonicalPayloadMapper(marketplace_name="mp1"))
    return registry


@pytest.fixture
def invoice_provider():
    """Invoice provider recording every create_invoice call."""
    from tests.fixtures.order_fixtures import RecordingInvoiceProvider
    return RecordingInvoiceProvider()


@pytest.fixture
def mock_xero_client_factory(settings):
    """Factory for creating mock Xero clients."""
    from order_ingestion.xero_client import XeroClient

    def create_mock():
        client = AsyncMock(spec=XeroClient)
        client.settings = settings
        return client

    return create_mock
