"""Result types returned by the rollback engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from audit_core.modules.rollback.errors import ErrorCategory, RollbackError

RestorationMethod = Literal["restore_values", "hard_restore", "soft_delete_restore"]


@dataclass(frozen=True)
class FieldPreview:
    field: str
    label: str
    current: Any
    restore_to: Any

    @property
    def differs(self) -> bool:
        return self.current != self.restore_to


@dataclass(frozen=True)
class RollbackPreview:
    """Read-only description of what ``execute`` would do."""

    history_id: int
    action_type: str
    model_type: str
    model_id: str
    description: str
    eligible: bool
    blocked_reason: str | None = None
    restoration_method: RestorationMethod | None = None
    changes: list[FieldPreview] = field(default_factory=list)
    restored_values: dict[str, Any] | None = None
    record_exists: bool | None = None

    @property
    def affected_fields(self) -> list[str]:
        return [change.field for change in self.changes]


@dataclass(frozen=True)
class RollbackResult:
    """Outcome of a committed rollback."""

    history_id: int
    action_type: str
    model_type: str
    model_id: str
    restoration_method: RestorationMethod
    restored_fields: list[str]
    rolled_back_at: datetime
    rolled_back_by: str
    audit_uuid: str | None


@dataclass(frozen=True)
class RollbackOutcome:
    """Tagged result: either a ``RollbackResult`` or a classified failure."""

    history_id: int
    success: bool
    result: RollbackResult | None = None
    error_kind: str | None = None
    category: ErrorCategory | None = None
    message: str | None = None
    user_message: str | None = None
    retryable: bool = False
    suggested_action: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def succeeded(cls, result: RollbackResult) -> RollbackOutcome:
        return cls(history_id=result.history_id, success=True, result=result)

    @classmethod
    def failed(cls, history_id: int, error: RollbackError) -> RollbackOutcome:
        return cls(
            history_id=history_id,
            success=False,
            error_kind=error.kind,
            category=error.category,
            message=error.message,
            user_message=error.user_message,
            retryable=error.retryable,
            suggested_action=error.suggested_action,
            context=error.context,
        )

    @classmethod
    def not_found(cls, history_id: int) -> RollbackOutcome:
        return cls(
            history_id=history_id,
            success=False,
            error_kind="history_not_found",
            category="validation",
            message=f"History record {history_id} not found",
            user_message="The requested change could not be found.",
            suggested_action="Refresh the history and try again.",
            context={"history_id": history_id},
        )


@dataclass
class BatchRollbackResult:
    outcomes: list[RollbackOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[int]:
        return [outcome.history_id for outcome in self.outcomes if outcome.success]

    @property
    def failed(self) -> list[RollbackOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    def summary(self) -> dict[str, Any]:
        return {
            "total": len(self.outcomes),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "errors": {outcome.history_id: outcome.error_kind for outcome in self.failed},
        }
