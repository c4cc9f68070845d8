"""
Async database session management using SQLAlchemy 2.0.

Audit data may live in several logical stores (the default store, a central
store, one store per tenant). ``StoreRegistry`` maps store names to engines
and session factories; the connection resolver picks a name per operation.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from audit_core.core.config import Settings, get_settings

DEFAULT_STORE = "default"


class UnknownStoreError(LookupError):
    """Raised when a store name has not been registered."""


@dataclass(frozen=True)
class StoreHandle:
    """A resolved logical store: its registry name and session factory."""

    name: str
    session_factory: async_sessionmaker[AsyncSession]

    def session(self) -> AsyncSession:
        return self.session_factory()


def _make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class StoreRegistry:
    """Named engines and session factories."""

    def __init__(self) -> None:
        self._engines: dict[str, AsyncEngine] = {}
        self._factories: dict[str, async_sessionmaker[AsyncSession]] = {}

    def register(self, name: str, url: str, **engine_kwargs: Any) -> StoreHandle:
        """Create an engine for *url* and register it under *name*."""
        if not url.startswith("sqlite"):
            engine_kwargs.setdefault("pool_pre_ping", True)
        return self.register_engine(name, create_async_engine(url, **engine_kwargs))

    def register_engine(self, name: str, engine: AsyncEngine) -> StoreHandle:
        self._engines[name] = engine
        self._factories[name] = _make_session_factory(engine)
        return self.get(name)

    def has(self, name: str) -> bool:
        return name in self._factories

    def get(self, name: str) -> StoreHandle:
        try:
            return StoreHandle(name=name, session_factory=self._factories[name])
        except KeyError:
            raise UnknownStoreError(f"Store {name!r} is not registered") from None

    def engine(self, name: str = DEFAULT_STORE) -> AsyncEngine:
        try:
            return self._engines[name]
        except KeyError:
            raise UnknownStoreError(f"Store {name!r} is not registered") from None

    @property
    def names(self) -> list[str]:
        return list(self._factories)

    async def dispose(self) -> None:
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()
        self._factories.clear()


def build_registry(
    settings: Settings | None = None,
    *,
    extra_stores: Mapping[str, str] | None = None,
) -> StoreRegistry:
    """Build a registry with the default store plus every configured named store."""
    settings = settings or get_settings()
    registry = StoreRegistry()

    pool_kwargs: dict[str, Any] = {"echo": settings.debug}
    if not settings.database_url.startswith("sqlite"):
        pool_kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    registry.register(DEFAULT_STORE, settings.database_url, **pool_kwargs)

    for name, url in {**settings.stores, **(extra_stores or {})}.items():
        registry.register(name, url, echo=settings.debug)
    return registry


# Global registry
_registry: StoreRegistry | None = None


async def init_db(settings: Settings | None = None) -> StoreRegistry:
    """
    Initialize the store registry.

    Called once at process start (CLI commands, workers) to establish pools.
    """
    global _registry

    _registry = build_registry(settings)
    return _registry


async def close_db() -> None:
    """Dispose every engine and clear the registry."""
    global _registry

    if _registry is not None:
        await _registry.dispose()
        _registry = None


def get_registry() -> StoreRegistry:
    if _registry is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _registry


@asynccontextmanager
async def get_background_session(
    store: str = DEFAULT_STORE,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Create an independent async session on a named store.

    The caller owns the transaction; nothing is committed implicitly.
    """
    async with get_registry().get(store).session() as session:
        yield session
