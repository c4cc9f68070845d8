"""
Rollback engine: preview and atomically reverse a recorded change.

``execute`` runs in a single transaction on the resolved store. The history
row is locked, the live model is restored, the history row moves to its
terminal state through a conditional update, and a ``rollback_action``
audit record is written. Any failure rolls all of it back.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import Column, inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from audit_core.core.config import Settings, get_settings
from audit_core.core.logging import get_logger, store_context
from audit_core.core.tenancy import ConnectionResolver, TenancyResolutionError, TenantContext
from audit_core.db.models import EventType, HistoryRecord
from audit_core.db.repositories import HistoryRepository
from audit_core.db.session import StoreHandle
from audit_core.modules.audit.schemas import ActorContext, AuditEvent
from audit_core.modules.audit.service import AuditRecorder
from audit_core.modules.history.projector import (
    REVERSIBLE_ACTIONS,
    ROLLBACK_RESTORE_RECORD,
    ROLLBACK_RESTORE_VALUES,
    model_display_name,
)
from audit_core.modules.registry import AuditableModel, ModelRegistry
from audit_core.modules.rollback.authorization import (
    Actor,
    ConfiguredRollbackAuthorizer,
    RollbackAuthorizer,
)
from audit_core.modules.rollback.errors import (
    AlreadyRolledBackError,
    FieldPermissionDeniedError,
    FunctionalityDisabledError,
    HistoryNotFoundError,
    MissingRollbackDataError,
    ModelNotFoundError,
    ModelSaveFailedError,
    NotRollbackableError,
    PermissionDeniedError,
    RecordAlreadyExistsError,
    RollbackError,
    TransactionFailedError,
    ValidationFailedError,
)
from audit_core.modules.rollback.schemas import (
    BatchRollbackResult,
    FieldPreview,
    RestorationMethod,
    RollbackOutcome,
    RollbackPreview,
    RollbackResult,
)

logger = get_logger(__name__)

ROLLBACK_ACTION_TYPE = "rollback"
ROLLBACK_SOURCE_ELEMENT = "rollback-action"


def coerce_column_value(column: Column[Any], value: Any) -> Any:
    """Convert a JSON-restored value back to the column's Python type."""
    if value is None:
        return None
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if isinstance(value, python_type) and not (python_type is int and isinstance(value, bool)):
        return value
    if python_type is datetime:
        return datetime.fromisoformat(str(value))
    if python_type is date:
        return date.fromisoformat(str(value))
    if python_type is bool:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if python_type in (int, float, Decimal, uuid.UUID):
        return python_type(str(value)) if python_type is not float else float(value)
    return value


class RollbackEngine:
    """Preview and execute reversals of history records."""

    def __init__(
        self,
        resolver: ConnectionResolver,
        recorder: AuditRecorder,
        registry: ModelRegistry,
        *,
        authorizer: RollbackAuthorizer | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._resolver = resolver
        self._recorder = recorder
        self._registry = registry
        self._authorizer = authorizer or ConfiguredRollbackAuthorizer(
            self._settings.history.rollback_permissions
        )

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    async def preview(
        self,
        history_id: int,
        *,
        context: TenantContext | None = None,
    ) -> RollbackPreview:
        """Describe the reversal without changing anything."""
        store = self._store(context)
        async with store.session() as session:
            history = await HistoryRepository(session).get(history_id)
            if history is None:
                raise HistoryNotFoundError(history_id)
            return await self._build_preview(session, history)

    async def _build_preview(
        self, session: AsyncSession, history: HistoryRecord
    ) -> RollbackPreview:
        blocked_reason = self._eligibility_error(history)
        model = self._registry.get(history.model_type)
        data = history.rollback_data or {}
        values: dict[str, Any] = dict(data.get("values") or {})
        name = f"{model_display_name(history.model_type)} #{history.model_id}"

        if data.get("action") == ROLLBACK_RESTORE_RECORD:
            existing = await self._load(session, model, history.model_id) if model else None
            method: RestorationMethod = (
                "soft_delete_restore" if self._is_trashed(model, existing) else "hard_restore"
            )
            if existing is not None and method == "hard_restore" and blocked_reason is None:
                blocked_reason = RecordAlreadyExistsError.kind
            return RollbackPreview(
                history_id=history.id,
                action_type=history.action_type,
                model_type=history.model_type,
                model_id=history.model_id,
                description=f"Restore deleted {name}",
                eligible=blocked_reason is None,
                blocked_reason=blocked_reason,
                restoration_method=method,
                restored_values=values,
                record_exists=existing is not None,
            )

        fields = list(data.get("changed_fields") or values)
        instance = await self._load(session, model, history.model_id) if model else None
        if instance is None and blocked_reason is None and history.action_type == "update":
            blocked_reason = ModelNotFoundError.kind
        changes = [
            FieldPreview(
                field=field,
                label=model.label(field) if model else field,
                current=getattr(instance, field, None) if instance is not None else None,
                restore_to=values.get(field),
            )
            for field in fields
        ]
        return RollbackPreview(
            history_id=history.id,
            action_type=history.action_type,
            model_type=history.model_type,
            model_id=history.model_id,
            description=f"Restore {len(fields)} field(s) of {name} to previous values",
            eligible=blocked_reason is None,
            blocked_reason=blocked_reason,
            restoration_method="restore_values" if values else None,
            changes=changes,
            record_exists=instance is not None,
        )

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def execute(
        self,
        history_id: int,
        actor: Actor,
        *,
        context: TenantContext | None = None,
    ) -> RollbackResult:
        """Reverse the change recorded by *history_id* in one transaction.

        Raises a ``RollbackError`` subclass on any failure; no partial state
        is ever committed.
        """
        store = self._store(context)
        tenant_id = context.tenant_id if context else None
        with store_context(store.name, tenant_id=tenant_id):
            async with store.session() as session:
                try:
                    async with session.begin():
                        result = await self._execute_in_session(session, history_id, actor)
                except (RollbackError, HistoryNotFoundError):
                    raise
                except SQLAlchemyError as exc:
                    logger.error(
                        "rollback_transaction_failed",
                        history_id=history_id,
                        actor_id=actor.id,
                        exc_info=True,
                    )
                    raise TransactionFailedError(
                        f"Rollback of history record {history_id} could not be committed",
                        history_id=history_id,
                    ) from exc

            logger.info(
                "rollback_performed",
                history_id=history_id,
                model_type=result.model_type,
                model_id=result.model_id,
                method=result.restoration_method,
                actor_id=actor.id,
            )
        return result

    async def attempt(
        self,
        history_id: int,
        actor: Actor,
        *,
        context: TenantContext | None = None,
    ) -> RollbackOutcome:
        """Like ``execute`` but returns a tagged outcome instead of raising."""
        try:
            result = await self.execute(history_id, actor, context=context)
        except HistoryNotFoundError:
            return RollbackOutcome.not_found(history_id)
        except RollbackError as exc:
            logger.warning(
                "rollback_rejected",
                history_id=history_id,
                kind=exc.kind,
                category=exc.category,
                actor_id=actor.id,
            )
            return RollbackOutcome.failed(history_id, exc)
        return RollbackOutcome.succeeded(result)

    async def batch_rollback(
        self,
        history_ids: list[int],
        actor: Actor,
        *,
        context: TenantContext | None = None,
    ) -> BatchRollbackResult:
        """Roll back several records, each in its own transaction."""
        batch = BatchRollbackResult()
        for history_id in history_ids:
            batch.outcomes.append(await self.attempt(history_id, actor, context=context))
        logger.info("rollback_batch_completed", actor_id=actor.id, **batch.summary())
        return batch

    async def _execute_in_session(
        self,
        session: AsyncSession,
        history_id: int,
        actor: Actor,
    ) -> RollbackResult:
        histories = HistoryRepository(session)
        history = await histories.get_for_update(history_id)
        if history is None:
            raise HistoryNotFoundError(history_id)

        error = self._validate(history, actor)
        if error is not None:
            raise error

        model = self._registry.get(history.model_type)
        if model is None:
            raise NotRollbackableError(
                f"Model type {history.model_type!r} is not registered for rollback",
                **self._error_context(history),
            )

        data = history.rollback_data or {}
        restoring_values = data.get("action") == ROLLBACK_RESTORE_VALUES
        existing = await self._load(session, model, history.model_id, lock=True)
        if restoring_values and existing is None:
            raise ModelNotFoundError(
                f"{history.model_type} #{history.model_id} no longer exists",
                **self._error_context(history),
            )
        values = self._restorable_values(history, model, data, actor)

        if restoring_values:
            method, before, after = self._restore_values(existing, history, model, values)
        else:
            method, before, after = self._restore_record(session, existing, history, model, values)

        try:
            await session.flush()
        except SQLAlchemyError as exc:
            raise ModelSaveFailedError(
                f"Saving {history.model_type} #{history.model_id} failed: {exc}",
                **self._error_context(history),
            ) from exc

        now = datetime.now(UTC)
        if not await histories.mark_rolled_back(
            history.id, rolled_back_by=actor.id, rolled_back_at=now
        ):
            raise AlreadyRolledBackError(
                f"History record {history.id} was rolled back concurrently",
                **self._error_context(history),
            )

        audit = await self._recorder.record_in_session(
            session,
            AuditEvent(
                event_type=EventType.ROLLBACK_ACTION,
                action_type=ROLLBACK_ACTION_TYPE,
                model_type=history.model_type,
                model_id=history.model_id,
                table_name=model.table_name,
                source_element=ROLLBACK_SOURCE_ELEMENT,
                actor=ActorContext(user_id=actor.id, user_name=actor.name),
                old_values=before,
                new_values=after,
                additional_data={
                    "original_history_id": history.id,
                    "original_audit_id": history.audit_id,
                    "original_action": history.action_type,
                    "restoration_method": method,
                    "rollback_timestamp": now.isoformat(),
                    "rollback_user_id": actor.id,
                },
            ),
        )

        return RollbackResult(
            history_id=history.id,
            action_type=history.action_type,
            model_type=history.model_type,
            model_id=history.model_id,
            restoration_method=method,
            restored_fields=sorted(values),
            rolled_back_at=now,
            rolled_back_by=actor.id,
            audit_uuid=audit.audit_uuid,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _blocking_error(self, history: HistoryRecord) -> type[RollbackError] | None:
        """The first state or configuration check that blocks rollback."""
        if history.rolled_back_at is not None:
            return AlreadyRolledBackError
        if (
            not history.can_rollback
            or history.action_type not in REVERSIBLE_ACTIONS
            or history.model_type in self._settings.history.non_rollbackable_models
        ):
            return NotRollbackableError
        if not self._settings.history.allow_rollback:
            return FunctionalityDisabledError
        data = history.rollback_data or {}
        if data.get("action") not in (ROLLBACK_RESTORE_VALUES, ROLLBACK_RESTORE_RECORD) or not (
            data.get("values")
        ):
            return MissingRollbackDataError
        return None

    def _eligibility_error(self, history: HistoryRecord) -> str | None:
        error = self._blocking_error(history)
        return error.kind if error is not None else None

    def _validate(self, history: HistoryRecord, actor: Actor) -> RollbackError | None:
        ctx = self._error_context(history)
        error = self._blocking_error(history)
        if error is not None:
            return error(f"History record {history.id} cannot be rolled back ({error.kind})", **ctx)
        if not self._authorizer.can_rollback(actor, history):
            return PermissionDeniedError(
                f"Actor {actor.id} may not roll back history record {history.id}",
                **ctx,
                context={"actor_id": actor.id},
            )
        return None

    def _restorable_values(
        self,
        history: HistoryRecord,
        model: AuditableModel,
        data: dict[str, Any],
        actor: Actor,
    ) -> dict[str, Any]:
        values: dict[str, Any] = dict(data["values"])
        if data["action"] == ROLLBACK_RESTORE_VALUES:
            changed = data.get("changed_fields") or list(values)
            values = {field: values.get(field) for field in changed}
        else:
            values.pop(model.primary_key, None)

        allowed = set(model.auditable_fields(self._settings.audit.global_excludes))
        denied = sorted(set(values) - allowed)
        if denied or not self._authorizer.can_restore_fields(actor, history, values):
            raise FieldPermissionDeniedError(
                f"Fields not restorable on {history.model_type}: {', '.join(denied) or 'policy'}",
                **self._error_context(history),
                context={"fields": denied or sorted(values)},
            )
        return values

    # ------------------------------------------------------------------
    # Restoration
    # ------------------------------------------------------------------

    def _restore_values(
        self,
        instance: Any,
        history: HistoryRecord,
        model: AuditableModel,
        values: dict[str, Any],
    ) -> tuple[RestorationMethod, dict[str, Any], dict[str, Any]]:
        before = {field: getattr(instance, field, None) for field in values}
        self._assign(instance, model, values, history)
        return "restore_values", before, dict(values)

    def _restore_record(
        self,
        session: AsyncSession,
        existing: Any | None,
        history: HistoryRecord,
        model: AuditableModel,
        values: dict[str, Any],
    ) -> tuple[RestorationMethod, dict[str, Any], dict[str, Any]]:
        if existing is not None:
            column = model.soft_delete_column
            if column is None or getattr(existing, column, None) is None:
                raise RecordAlreadyExistsError(
                    f"{history.model_type} #{history.model_id} already exists",
                    **self._error_context(history),
                )
            self._assign(existing, model, values, history)
            setattr(existing, column, None)
            return "soft_delete_restore", {column: "trashed"}, dict(values)

        instance = model.orm_class()
        setattr(
            instance,
            model.primary_key,
            self._coerce(model, model.primary_key, history.model_id, history),
        )
        self._assign(instance, model, values, history)
        session.add(instance)
        return "hard_restore", {}, dict(values)

    def _assign(
        self,
        instance: Any,
        model: AuditableModel,
        values: dict[str, Any],
        history: HistoryRecord,
    ) -> None:
        for field, value in values.items():
            setattr(instance, field, self._coerce(model, field, value, history))

    def _coerce(self, model: AuditableModel, field: str, value: Any, history: HistoryRecord) -> Any:
        columns = sa_inspect(model.orm_class).columns
        if field not in columns:
            return value
        try:
            return coerce_column_value(columns[field], value)
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise ValidationFailedError(
                f"Value for {field!r} cannot be restored: {exc}",
                **self._error_context(history),
                context={"field": field},
            ) from exc

    async def _load(
        self,
        session: AsyncSession,
        model: AuditableModel,
        model_id: str,
        *,
        lock: bool = False,
    ) -> Any | None:
        pk_column = sa_inspect(model.orm_class).primary_key[0]
        try:
            key = coerce_column_value(pk_column, model_id)
        except (TypeError, ValueError, ArithmeticError):
            return None
        return await session.get(model.orm_class, key, with_for_update=lock or None)

    @staticmethod
    def _is_trashed(model: AuditableModel | None, instance: Any | None) -> bool:
        if model is None or instance is None or model.soft_delete_column is None:
            return False
        return getattr(instance, model.soft_delete_column, None) is not None

    @staticmethod
    def _error_context(history: HistoryRecord) -> dict[str, Any]:
        data = history.rollback_data or {}
        return {
            "history_id": history.id,
            "rollback_type": data.get("action"),
            "model_type": history.model_type,
            "model_id": history.model_id,
        }

    def _store(self, context: TenantContext | None) -> StoreHandle:
        store = self._resolver.resolve(context)
        if store is None:
            raise TenancyResolutionError("No store is available for rollback in this context")
        return store

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def statistics(
        self,
        *,
        model_type: str | None = None,
        days: int = 30,
        context: TenantContext | None = None,
    ) -> dict[str, Any]:
        """Rollback counts over the last *days* days."""
        since = datetime.now(UTC) - timedelta(days=days)
        conditions = [HistoryRecord.created_at >= since]
        if model_type is not None:
            conditions.append(HistoryRecord.model_type == model_type)

        store = self._store(context)
        async with store.session() as session:
            repo = HistoryRepository(session)
            total = await repo.count(*conditions)
            rollbackable = await repo.count(
                *conditions,
                HistoryRecord.can_rollback.is_(True),
                HistoryRecord.rolled_back_at.is_(None),
            )
            rolled_back = await repo.count(*conditions, HistoryRecord.rolled_back_at.is_not(None))
            by_user = await repo.grouped_counts(
                HistoryRecord.rolled_back_by, *conditions, HistoryRecord.rolled_back_at.is_not(None)
            )
            by_model = await repo.grouped_counts(
                HistoryRecord.model_type, *conditions, HistoryRecord.rolled_back_at.is_not(None)
            )

        return {
            "period_days": days,
            "total_changes": total,
            "rollbackable": rollbackable,
            "rolled_back": rolled_back,
            "rollback_rate": round(rolled_back / total * 100, 2) if total else 0.0,
            "by_user": by_user,
            "by_model": by_model,
        }
