"""Pydantic schemas for audit events entering the recorder."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from audit_core.db.models import EventType

_FINGERPRINT_HEADERS = {
    "user_agent": "user-agent",
    "accept_language": "accept-language",
    "accept_encoding": "accept-encoding",
    "accept": "accept",
    "referer": "referer",
    "origin": "origin",
}


def device_fingerprint_from_headers(headers: Mapping[str, str]) -> dict[str, str] | None:
    """Structured fingerprint from request headers, dropping absent values."""
    lowered = {key.lower(): value for key, value in headers.items()}
    fingerprint = {
        name: lowered[header]
        for name, header in _FINGERPRINT_HEADERS.items()
        if lowered.get(header)
    }
    return fingerprint or None


class ActorContext(BaseModel):
    """Who performed an action, and from where."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    user_name: str | None = None
    session_id: str | None = None
    ip_address: str | None = Field(default=None, max_length=45)
    user_agent: str | None = None
    device_fingerprint: dict[str, Any] | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_user_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        *,
        user_id: str | int | None = None,
        user_name: str | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
    ) -> ActorContext:
        lowered = {key.lower(): value for key, value in headers.items()}
        return cls(
            user_id=user_id,
            user_name=user_name,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=lowered.get("user-agent"),
            device_fingerprint=device_fingerprint_from_headers(headers),
        )


class AuditEvent(BaseModel):
    """An event to be signed and persisted as an ``AuditRecord``."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    action_type: str = Field(min_length=1, max_length=100)
    model_type: str | None = None
    model_id: str | None = None
    table_name: str | None = None
    source_page: str | None = None
    source_element: str | None = None
    actor: ActorContext = Field(default_factory=ActorContext)
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    additional_data: dict[str, Any] | None = None
    audit_uuid: str | None = None
    created_at: datetime | None = None

    @field_validator("model_id", mode="before")
    @classmethod
    def _coerce_model_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int | UUID) else value

    @field_validator("audit_uuid")
    @classmethod
    def _validate_uuid(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return str(UUID(value))

    def prepared(self) -> AuditEvent:
        """Return a copy with identity and timestamp assigned."""
        return self.model_copy(
            update={
                "audit_uuid": self.audit_uuid or str(uuid4()),
                "created_at": self.created_at or datetime.now(UTC),
            }
        )

    def redacted(self) -> dict[str, Any]:
        """Loggable summary without any recorded values."""
        summary = self.model_dump(
            mode="json",
            exclude={"old_values", "new_values", "additional_data", "actor"},
        )
        for name in ("old_values", "new_values", "additional_data"):
            if getattr(self, name) is not None:
                summary[name] = "[REDACTED]"
        summary["user_id"] = self.actor.user_id
        return summary
