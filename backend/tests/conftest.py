"""
Pytest fixtures for audit core testing.
Provides in-memory SQLite stores, settings and wired components.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio

from audit_core.core.config import Settings, get_settings
from audit_core.db.session import DEFAULT_STORE, StoreHandle, StoreRegistry
from tests.support import AuditStack, Invoice, build_registry, build_stack, make_settings


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def registry() -> AsyncGenerator[StoreRegistry, None]:
    """Default, central and one tenant store."""
    registry = await build_registry("central", "tenant_acme")
    yield registry
    await registry.dispose()


@pytest.fixture
def store(registry: StoreRegistry) -> StoreHandle:
    return registry.get(DEFAULT_STORE)


@pytest.fixture
def stack(registry: StoreRegistry, settings: Settings) -> AuditStack:
    return build_stack(registry, settings)


@pytest.fixture
def make_stack(registry: StoreRegistry) -> Callable[..., AuditStack]:
    """Build a stack on the shared stores with settings overrides."""

    def _make(**overrides: Any) -> AuditStack:
        return build_stack(registry, make_settings(**overrides))

    return _make


@pytest.fixture
def seed_invoice(store: StoreHandle) -> Callable[..., Awaitable[Invoice]]:
    async def _seed(**values: Any) -> Invoice:
        fields = {"id": 42, "number": "INV-42", "status": "draft", "total": 100, **values}
        async with store.session() as session, session.begin():
            invoice = Invoice(**fields)
            session.add(invoice)
        return invoice

    return _seed
