"""Rollback error taxonomy.

Every error carries its kind, a permission/validation/system category and
structured context, so callers can decide on retries without parsing
messages. Only ``system`` errors are retryable.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, ClassVar, Literal

ErrorCategory = Literal["permission", "validation", "system"]


class RollbackError(ValueError):
    """Base rollback error."""

    kind: ClassVar[str] = "rollback_failed"
    category: ClassVar[ErrorCategory] = "system"
    code: ClassVar[int] = 500
    default_user_message: ClassVar[str] = "The rollback could not be completed."
    suggested_action: ClassVar[str] = "Contact an administrator if the problem persists."

    def __init__(
        self,
        message: str,
        *,
        history_id: int | None = None,
        rollback_type: str | None = None,
        model_type: str | None = None,
        model_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.history_id = history_id
        self.rollback_type = rollback_type
        self.model_type = model_type
        self.model_id = model_id
        self.extra = dict(context or {})
        self.timestamp = datetime.now(UTC)

    @property
    def retryable(self) -> bool:
        return self.category == "system"

    @property
    def user_message(self) -> str:
        return self.default_user_message

    @property
    def context(self) -> dict[str, Any]:
        return {
            "history_id": self.history_id,
            "rollback_type": self.rollback_type,
            "model_type": self.model_type,
            "model_id": self.model_id,
            "timestamp": self.timestamp.isoformat(),
            **self.extra,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "rollback_failed",
            "type": self.kind,
            "category": self.category,
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "context": self.context,
        }


# -- permission ---------------------------------------------------------------


class PermissionDeniedError(RollbackError):
    kind = "permission_denied"
    category = "permission"
    code = 403
    default_user_message = "You do not have permission to roll back this change."
    suggested_action = "Ask an administrator for rollback rights."


class FieldPermissionDeniedError(RollbackError):
    kind = "field_permission_denied"
    category = "permission"
    code = 403
    default_user_message = "This change touches fields that cannot be rolled back."
    suggested_action = "Restore the remaining fields manually."


class FunctionalityDisabledError(RollbackError):
    kind = "functionality_disabled"
    category = "permission"
    code = 403
    default_user_message = "Rollback is currently disabled."
    suggested_action = "Enable history.allow_rollback to use rollbacks."


# -- validation ---------------------------------------------------------------


class ValidationFailedError(RollbackError):
    kind = "validation_failed"
    category = "validation"
    code = 422
    default_user_message = "The restored values did not pass validation."
    suggested_action = "Review the record and correct it manually."


class NotRollbackableError(RollbackError):
    kind = "not_rollbackable"
    category = "validation"
    code = 422
    default_user_message = "This change cannot be rolled back."
    suggested_action = "Only updates and deletions can be rolled back."


class AlreadyRolledBackError(RollbackError):
    kind = "already_rolled_back"
    category = "validation"
    code = 409
    default_user_message = "This change has already been rolled back."
    suggested_action = "Refresh the history to see the current state."


class MissingRollbackDataError(RollbackError):
    kind = "missing_rollback_data"
    category = "validation"
    code = 422
    default_user_message = "Not enough information was recorded to roll back this change."
    suggested_action = "Restore the record manually from the audit trail."


class RecordAlreadyExistsError(RollbackError):
    kind = "record_already_exists"
    category = "validation"
    code = 409
    default_user_message = "A record with this identity already exists."
    suggested_action = "Remove or rename the existing record before restoring."


# -- system -------------------------------------------------------------------


class ModelNotFoundError(RollbackError):
    kind = "model_not_found"
    category = "system"
    code = 404
    default_user_message = "The record to roll back no longer exists."
    suggested_action = "Check whether the record was deleted after this change."


class ModelSaveFailedError(RollbackError):
    kind = "model_save_failed"
    category = "system"
    code = 500
    default_user_message = "The restored record could not be saved."
    suggested_action = "Try again in a moment."


class TransactionFailedError(RollbackError):
    kind = "transaction_failed"
    category = "system"
    code = 500
    default_user_message = "The rollback transaction failed and nothing was changed."
    suggested_action = "Try again in a moment."


class HistoryNotFoundError(LookupError):
    """Raised when a history record id does not exist."""

    def __init__(self, history_id: int) -> None:
        super().__init__(f"History record {history_id} not found")
        self.history_id = history_id


ROLLBACK_ERRORS: tuple[type[RollbackError], ...] = (
    PermissionDeniedError,
    FieldPermissionDeniedError,
    FunctionalityDisabledError,
    ValidationFailedError,
    NotRollbackableError,
    AlreadyRolledBackError,
    MissingRollbackDataError,
    RecordAlreadyExistsError,
    ModelNotFoundError,
    ModelSaveFailedError,
    TransactionFailedError,
)
