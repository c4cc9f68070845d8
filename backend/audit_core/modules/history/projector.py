"""
Projection of crud audit records into user-facing history records.

A history record carries the diff a person reads and the snapshot the
rollback engine needs to reverse the change.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from audit_core.core.config import Settings, get_settings
from audit_core.db.models import AuditRecord, EventType, HistoryRecord
from audit_core.db.repositories import HistoryRepository
from audit_core.modules.registry import (
    DEFAULT_ROLLBACKABLE_ACTIONS,
    ModelRegistry,
    humanize_field,
)

PROJECTED_ACTIONS = frozenset({"create", "update", "delete", "restore"})
REVERSIBLE_ACTIONS = frozenset({"update", "delete"})

ROLLBACK_RESTORE_VALUES = "restore_values"
ROLLBACK_RESTORE_RECORD = "restore_record"


def model_display_name(model_type: str) -> str:
    """Short display name for a model type such as ``billing.Invoice``."""
    return model_type.rsplit(".", 1)[-1].rsplit("\\", 1)[-1]


def changed_fields(old_values: dict[str, Any], new_values: dict[str, Any]) -> list[str]:
    """Keys of *new_values* whose value differs from the old snapshot.

    Keys present only in *old_values* were not written by the update and are
    left out, so a full old snapshot next to partial new values stays exact.
    """
    return [key for key, value in new_values.items() if old_values.get(key) != value]


class HistoryProjector:
    """Derive ``HistoryRecord`` rows from crud ``AuditRecord`` rows."""

    def __init__(
        self,
        registry: ModelRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry or ModelRegistry()
        self._settings = settings or get_settings()

    def should_project(self, record: AuditRecord) -> bool:
        return (
            self._settings.history.enabled
            and record.event_type == EventType.MODEL_CRUD
            and record.action_type in PROJECTED_ACTIONS
            and bool(record.model_type)
            and record.model_id is not None
        )

    def project(self, record: AuditRecord, *, user_name: str | None = None) -> HistoryRecord | None:
        """Build (without persisting) the history record for *record*."""
        if not self.should_project(record):
            return None

        model_type = str(record.model_type)
        old_values = dict(record.old_values or {})
        new_values = dict(record.new_values or {})

        field_changes: list[dict[str, Any]] = []
        changed: list[str] = []
        if record.action_type == "update":
            changed = changed_fields(old_values, new_values)
            field_changes = self._field_changes(model_type, changed, old_values, new_values)

        rollback_data = self._rollback_data(record, changed, old_values)

        return HistoryRecord(
            audit_id=record.id,
            model_type=model_type,
            model_id=str(record.model_id),
            action_type=record.action_type,
            description=self.describe(record, changed),
            field_changes=field_changes,
            user_id=record.user_id,
            user_name=user_name,
            can_rollback=rollback_data is not None and self.is_rollbackable(
                model_type, record.action_type
            ),
            rollback_data=rollback_data,
            created_at=record.created_at,
            updated_at=record.created_at,
        )

    async def persist(
        self,
        session: AsyncSession,
        record: AuditRecord,
        *,
        user_name: str | None = None,
    ) -> HistoryRecord | None:
        history = self.project(record, user_name=user_name)
        if history is None:
            return None
        return await HistoryRepository(session).create(history)

    def is_rollbackable(self, model_type: str, action_type: str) -> bool:
        history = self._settings.history
        if not history.allow_rollback or action_type not in REVERSIBLE_ACTIONS:
            return False
        if model_type in history.non_rollbackable_models:
            return False
        model = self._registry.get(model_type)
        actions = model.rollbackable_actions if model else DEFAULT_ROLLBACKABLE_ACTIONS
        return action_type in actions

    def describe(self, record: AuditRecord, changed: list[str]) -> str:
        name = f"{model_display_name(record.model_type or '')} #{record.model_id}"
        action = record.action_type
        if action == "create":
            description = f"Created new {name}"
        elif action == "update":
            labels = ", ".join(self._label(record.model_type, field) for field in changed)
            description = f"Updated {name} - Changed: {labels or 'nothing'}"
        elif action == "delete":
            description = f"Deleted {name}"
        elif action == "restore":
            description = f"Restored {name}"
        else:
            description = f"Performed {action} on {name}"

        limit = self._settings.history.max_description_length
        if len(description) > limit:
            description = description[: limit - 3] + "..."
        return description

    def _field_changes(
        self,
        model_type: str,
        changed: list[str],
        old_values: dict[str, Any],
        new_values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        model = self._registry.get(model_type)
        hidden = set(model.history_exclude) if model else set()
        return [
            {
                "field": field,
                "old": old_values.get(field),
                "new": new_values.get(field),
                "label": self._label(model_type, field),
            }
            for field in changed
            if field not in hidden
        ]

    def _rollback_data(
        self,
        record: AuditRecord,
        changed: list[str],
        old_values: dict[str, Any],
    ) -> dict[str, Any] | None:
        if record.action_type == "update" and changed:
            return {
                "action": ROLLBACK_RESTORE_VALUES,
                "values": {field: old_values.get(field) for field in changed},
                "changed_fields": changed,
            }
        if record.action_type == "delete" and old_values:
            return {
                "action": ROLLBACK_RESTORE_RECORD,
                "values": old_values,
                "model_id": record.model_id,
            }
        return None

    def _label(self, model_type: str | None, field: str) -> str:
        model = self._registry.get(model_type)
        return model.label(field) if model else humanize_field(field)
