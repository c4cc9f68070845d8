"""Tests for projecting crud audit records into history records."""

from __future__ import annotations

from datetime import UTC, datetime

from audit_core.db.models import AuditRecord, EventType
from audit_core.modules.history.projector import (
    ROLLBACK_RESTORE_RECORD,
    ROLLBACK_RESTORE_VALUES,
    HistoryProjector,
    changed_fields,
    model_display_name,
)
from audit_core.modules.registry import ModelRegistry
from tests.support import Invoice, build_models, make_settings


def _audit(**overrides: object) -> AuditRecord:
    fields: dict[str, object] = {
        "id": 11,
        "audit_uuid": "5b3c8f0a-1d2e-4f5a-8b9c-0d1e2f3a4b5c",
        "event_type": EventType.MODEL_CRUD,
        "action_type": "update",
        "model_type": "Invoice",
        "model_id": "42",
        "user_id": "7",
        "old_values": {"status": "draft"},
        "new_values": {"status": "sent"},
        "created_at": datetime(2026, 3, 1, tzinfo=UTC),
    }
    fields.update(overrides)
    return AuditRecord(**fields)


def _projector(models: ModelRegistry | None = None, **overrides: object) -> HistoryProjector:
    return HistoryProjector(models or build_models(), make_settings(**overrides))


class TestProject:
    def test_update_diff_is_rollbackable(self) -> None:
        history = _projector().project(_audit(), user_name="Dana")

        assert history is not None
        assert history.audit_id == 11
        assert history.model_id == "42"
        assert history.user_name == "Dana"
        assert history.field_changes == [
            {"field": "status", "old": "draft", "new": "sent", "label": "Status"}
        ]
        assert history.can_rollback is True
        assert history.rollback_data == {
            "action": ROLLBACK_RESTORE_VALUES,
            "values": {"status": "draft"},
            "changed_fields": ["status"],
        }

    def test_unchanged_fields_are_ignored(self) -> None:
        history = _projector().project(
            _audit(
                old_values={"status": "draft", "total": 100},
                new_values={"status": "sent", "total": 100},
            )
        )

        assert history is not None
        assert [change["field"] for change in history.field_changes] == ["status"]
        assert history.rollback_data["values"] == {"status": "draft"}

    def test_partial_update_against_full_snapshot(self) -> None:
        history = _projector().project(
            _audit(
                old_values={"status": "draft", "total": 100},
                new_values={"status": "sent"},
            )
        )

        assert history is not None
        assert [change["field"] for change in history.field_changes] == ["status"]
        assert history.rollback_data == {
            "action": ROLLBACK_RESTORE_VALUES,
            "values": {"status": "draft"},
            "changed_fields": ["status"],
        }
        assert history.description == "Updated Invoice #42 - Changed: Status"

    def test_field_labels(self) -> None:
        history = _projector().project(
            _audit(old_values={"total": 100}, new_values={"total": 150})
        )

        assert history is not None
        assert history.field_changes[0]["label"] == "Invoice Total"
        assert history.description == "Updated Invoice #42 - Changed: Invoice Total"

    def test_create_is_not_rollbackable(self) -> None:
        history = _projector().project(
            _audit(action_type="create", old_values=None, new_values={"status": "draft"})
        )

        assert history is not None
        assert history.description == "Created new Invoice #42"
        assert history.field_changes == []
        assert history.can_rollback is False
        assert history.rollback_data is None

    def test_delete_keeps_full_snapshot(self) -> None:
        snapshot = {"id": 42, "number": "INV-42", "status": "void"}
        history = _projector().project(
            _audit(action_type="delete", old_values=snapshot, new_values=None)
        )

        assert history is not None
        assert history.description == "Deleted Invoice #42"
        assert history.can_rollback is True
        assert history.rollback_data == {
            "action": ROLLBACK_RESTORE_RECORD,
            "values": snapshot,
            "model_id": "42",
        }

    def test_non_rollbackable_model(self) -> None:
        projector = _projector(history={"non_rollbackable_models": ["Invoice"]})
        history = projector.project(_audit())

        assert history is not None
        assert history.can_rollback is False
        assert history.rollback_data is not None

    def test_rollback_disabled(self) -> None:
        history = _projector(history={"allow_rollback": False}).project(_audit())
        assert history is not None
        assert history.can_rollback is False

    def test_model_restricts_rollbackable_actions(self) -> None:
        models = ModelRegistry()
        models.register_model(Invoice, rollbackable_actions=("update",))
        history = _projector(models).project(
            _audit(action_type="delete", old_values={"status": "void"}, new_values=None)
        )

        assert history is not None
        assert history.can_rollback is False

    def test_history_exclude_hides_field_but_keeps_rollback_value(self) -> None:
        models = ModelRegistry()
        models.register_model(Invoice, history_exclude=("total",))
        history = _projector(models).project(
            _audit(
                old_values={"status": "draft", "total": 1},
                new_values={"status": "sent", "total": 2},
            )
        )

        assert history is not None
        assert [change["field"] for change in history.field_changes] == ["status"]
        assert history.rollback_data["values"] == {"status": "draft", "total": 1}

    def test_non_crud_records_are_skipped(self) -> None:
        projector = _projector()
        assert projector.project(_audit(event_type=EventType.UI_ACTION)) is None
        assert projector.project(_audit(action_type="export")) is None
        assert projector.project(_audit(model_id=None)) is None

    def test_history_disabled(self) -> None:
        assert _projector(history={"enabled": False}).project(_audit()) is None


class TestDescribe:
    def test_restore(self) -> None:
        assert _projector().describe(_audit(action_type="restore"), []) == "Restored Invoice #42"

    def test_custom_action(self) -> None:
        projector = _projector()
        assert projector.describe(_audit(action_type="archive"), []) == (
            "Performed archive on Invoice #42"
        )

    def test_truncation(self) -> None:
        projector = _projector(history={"max_description_length": 30})
        fields = [f"field_{index}" for index in range(10)]
        description = projector.describe(_audit(), fields)

        assert len(description) == 30
        assert description.endswith("...")

    def test_namespaced_model_name(self) -> None:
        assert model_display_name("billing.Invoice") == "Invoice"
        assert model_display_name("App\\Models\\Invoice") == "Invoice"


def test_changed_fields_follow_new_values() -> None:
    old = {"a": 1, "b": 2, "untouched": 3}
    new = {"b": 5, "a": 1, "added": 4}
    assert changed_fields(old, new) == ["b", "added"]
