"""
Tenant context and store resolution for audit operations.

The current tenant is never read from ambient state: callers pass a
``TenantContext`` (or ``None``) into every operation, and the resolver
re-evaluates it on every call.
"""

from __future__ import annotations

from dataclasses import dataclass

from audit_core.core.config import Settings, get_settings
from audit_core.core.logging import get_logger
from audit_core.db.session import DEFAULT_STORE, StoreHandle, StoreRegistry, UnknownStoreError

logger = get_logger(__name__)


class TenancyResolutionError(RuntimeError):
    """Raised when no store can be chosen for an operation."""


class TenantContextRequiredError(TenancyResolutionError):
    """Raised under the ``error`` fallback when no tenant context is active."""


@dataclass(frozen=True)
class TenantContext:
    """The tenant an operation runs on behalf of."""

    tenant_id: str
    connection_name: str | None = None

    def store_name(self, alias: str) -> str:
        """The tenant's own store name, or the conventional alias."""
        return self.connection_name or alias


class ConnectionResolver:
    """Pick the logical store for an audit or history operation."""

    def __init__(self, registry: StoreRegistry, settings: Settings | None = None) -> None:
        self._registry = registry
        self._settings = settings or get_settings()

    def resolve_name(self, context: TenantContext | None) -> str | None:
        """Return the store name to use, or ``None`` when the caller must no-op."""
        tenancy = self._settings.tenancy
        audit_store = self._settings.audit.connection or DEFAULT_STORE

        if not tenancy.enabled:
            return audit_store

        if context is not None:
            name = self._tenant_store_name(context)
            if name is not None:
                return name

        return self._fallback(context)

    def resolve(self, context: TenantContext | None) -> StoreHandle | None:
        name = self.resolve_name(context)
        if name is None:
            return None
        return self._registry.get(name)

    def _tenant_store_name(self, context: TenantContext) -> str | None:
        tenancy = self._settings.tenancy
        if tenancy.detection_method == "connection":
            # The default store is already switched to the tenant's database
            return DEFAULT_STORE
        if tenancy.detection_method == "manual":
            return self._settings.audit.connection or DEFAULT_STORE

        name = context.store_name(tenancy.tenant_connection_alias)
        if self._registry.has(name):
            return name
        if tenancy.force_tenant_connection:
            raise TenancyResolutionError(
                f"Tenant {context.tenant_id!r} has no registered store {name!r}"
            )
        logger.warning(
            "tenant_store_missing",
            tenant_id=context.tenant_id,
            store=name,
            fallback=tenancy.fallback_behavior,
        )
        return None

    def _fallback(self, context: TenantContext | None) -> str | None:
        behavior = self._settings.tenancy.fallback_behavior
        if behavior == "central":
            central = self._settings.tenancy.central_connection
            if not self._registry.has(central):
                raise UnknownStoreError(f"Central store {central!r} is not registered")
            return central
        if behavior == "skip":
            logger.debug("audit_store_skipped", tenant_id=context.tenant_id if context else None)
            return None
        raise TenantContextRequiredError(
            "No tenant context is active and tenancy.fallback_behavior is 'error'"
        )
