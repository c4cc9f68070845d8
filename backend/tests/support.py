"""Shared test helpers: sample live models, settings and wired components."""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import Date, DateTime, Integer, String
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from audit_core.core.config import Settings
from audit_core.core.tenancy import ConnectionResolver
from audit_core.db.models import Base
from audit_core.db.session import DEFAULT_STORE, StoreHandle, StoreRegistry
from audit_core.modules.audit.service import AuditRecorder
from audit_core.modules.history.projector import HistoryProjector
from audit_core.modules.registry import ModelRegistry
from audit_core.modules.rollback.service import RollbackEngine

TEST_DATABASE_URL = "sqlite+aiosqlite://"
TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789abcdef"


# =============================================================================
# Sample live models
# =============================================================================


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    issued_on: Mapped[date | None] = mapped_column(Date)
    internal_note: Mapped[str | None] = mapped_column(String(255))
    password: Mapped[str | None] = mapped_column(String(255))


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# =============================================================================
# Settings
# =============================================================================


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def make_settings(**overrides: Any) -> Settings:
    base: dict[str, Any] = {
        "environment": "development",
        "database_url": TEST_DATABASE_URL,
        "audit": {"signature": {"secret_key": TEST_SECRET_KEY}},
    }
    return Settings(**_merge(base, overrides))


# =============================================================================
# Stores
# =============================================================================


async def memory_engine() -> AsyncEngine:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


async def build_registry(*names: str) -> StoreRegistry:
    """A registry whose stores are each a separate in-memory database."""
    registry = StoreRegistry()
    for name in (DEFAULT_STORE, *names):
        registry.register_engine(name, await memory_engine())
    return registry


# =============================================================================
# Wired components
# =============================================================================


@dataclass
class AuditStack:
    settings: Settings
    registry: StoreRegistry
    models: ModelRegistry
    resolver: ConnectionResolver
    projector: HistoryProjector
    recorder: AuditRecorder
    rollback: RollbackEngine

    @property
    def store(self) -> StoreHandle:
        return self.registry.get(DEFAULT_STORE)


def build_models() -> ModelRegistry:
    models = ModelRegistry()
    models.register_model(
        Invoice,
        audit_exclude=("internal_note",),
        field_labels={"total": "Invoice Total"},
    )
    models.register_model(Document, soft_delete_column="deleted_at")
    return models


def build_stack(registry: StoreRegistry, settings: Settings) -> AuditStack:
    models = build_models()
    resolver = ConnectionResolver(registry, settings)
    projector = HistoryProjector(models, settings)
    recorder = AuditRecorder(resolver, projector=projector, registry=models, settings=settings)
    rollback = RollbackEngine(resolver, recorder, models, settings=settings)
    return AuditStack(
        settings=settings,
        registry=registry,
        models=models,
        resolver=resolver,
        projector=projector,
        recorder=recorder,
        rollback=rollback,
    )
