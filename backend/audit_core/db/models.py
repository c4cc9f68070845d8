"""
SQLAlchemy ORM models for the audit core.

``AuditRecord`` rows are immutable once written; ``HistoryRecord`` rows change
exactly once, when a rollback marks them terminal.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONDocument = JSON().with_variant(JSONB(), "postgresql")
RecordId = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSONDocument,
        list[dict[str, Any]]: JSONDocument,
    }


# =============================================================================
# Enums
# =============================================================================


class EventType(str, PyEnum):
    """Kinds of audited events."""

    MODEL_CRUD = "model_crud"
    UI_ACTION = "ui_action"
    SYSTEM_EVENT = "system_event"
    CUSTOM = "custom"
    BATCH_OPERATION = "batch_operation"
    ROLLBACK_ACTION = "rollback_action"


# Audit records of these kinds survive retention cleanup forever.
RETAINED_EVENT_TYPES: tuple[EventType, ...] = (EventType.ROLLBACK_ACTION, EventType.SYSTEM_EVENT)


# =============================================================================
# Audit Records
# =============================================================================


class AuditRecord(Base):
    """
    Immutable, signed log entry for one system event.

    Written once by the recorder and removed only by retention cleanup.
    """

    __tablename__ = "audit_records"

    id: Mapped[int] = mapped_column(RecordId, primary_key=True, autoincrement=True)
    audit_uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    event_type: Mapped[EventType] = mapped_column(
        Enum(
            EventType,
            name="audit_event_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    model_type: Mapped[str | None] = mapped_column(String(255))
    model_id: Mapped[str | None] = mapped_column(String(255))
    table_name: Mapped[str | None] = mapped_column(String(255))
    source_page: Mapped[str | None] = mapped_column(String(255))
    source_element: Mapped[str | None] = mapped_column(String(255))
    user_id: Mapped[str | None] = mapped_column(String(255))
    session_id: Mapped[str | None] = mapped_column(String(255))
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    device_fingerprint: Mapped[dict[str, Any] | None] = mapped_column()
    additional_data: Mapped[dict[str, Any] | None] = mapped_column()
    old_values: Mapped[dict[str, Any] | None] = mapped_column()
    new_values: Mapped[dict[str, Any] | None] = mapped_column()
    signature: Mapped[str | None] = mapped_column(
        String(128),
        comment="Hex digest over every other persisted field except id",
    )
    signature_algorithm: Mapped[str | None] = mapped_column(
        String(32),
        comment="hashlib algorithm the signature was computed with",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_audit_records_event_type", "event_type"),
        Index("ix_audit_records_model", "model_type", "model_id"),
        Index("ix_audit_records_user_created", "user_id", "created_at"),
        Index("ix_audit_records_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditRecord id={self.id} uuid={self.audit_uuid} "
            f"event={self.event_type} action={self.action_type}>"
        )


# =============================================================================
# History Records
# =============================================================================


class HistoryRecord(Base):
    """
    Human-facing projection of a crud audit record, with rollback metadata.

    ``audit_id`` is a weak lookup reference: retention may delete the audit
    row independently, so there is no foreign key.
    """

    __tablename__ = "history_records"

    id: Mapped[int] = mapped_column(RecordId, primary_key=True, autoincrement=True)
    audit_id: Mapped[int | None] = mapped_column(RecordId, index=True)
    model_type: Mapped[str] = mapped_column(String(255), nullable=False)
    model_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    field_changes: Mapped[list[dict[str, Any]] | None] = mapped_column()
    user_id: Mapped[str | None] = mapped_column(String(255))
    user_name: Mapped[str | None] = mapped_column(String(255))
    can_rollback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rollback_data: Mapped[dict[str, Any] | None] = mapped_column()
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rolled_back_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_history_records_model", "model_type", "model_id", "created_at"),
        Index("ix_history_records_user", "user_id", "created_at"),
        Index("ix_history_records_action", "action_type", "created_at"),
        Index("ix_history_records_rollback", "can_rollback", "rolled_back_at"),
    )

    @property
    def is_rolled_back(self) -> bool:
        return self.rolled_back_at is not None

    def __repr__(self) -> str:
        return (
            f"<HistoryRecord id={self.id} {self.model_type}#{self.model_id} "
            f"action={self.action_type} can_rollback={self.can_rollback}>"
        )
