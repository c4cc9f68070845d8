"""
Audit recorder: build, sign and persist immutable audit records.

Audit writes run in their own short-lived session on the store chosen by the
connection resolver, unless the caller passes an open session through
``record_in_session`` (the rollback engine does, so its audit entry commits
atomically with the reversal).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from audit_core.core.config import Settings, get_settings
from audit_core.core.crypto.canonicalization import normalize_value
from audit_core.core.crypto.signature import SignatureService
from audit_core.core.logging import get_logger, store_context
from audit_core.core.tenancy import ConnectionResolver, TenantContext
from audit_core.db.models import AuditRecord, EventType
from audit_core.db.repositories import AuditRepository
from audit_core.modules.audit.schemas import ActorContext, AuditEvent
from audit_core.modules.history.projector import HistoryProjector
from audit_core.modules.registry import ModelRegistry

if TYPE_CHECKING:
    from audit_core.modules.audit.queue import AuditQueue

logger = get_logger(__name__)


class AuditRecorder:
    """Entry point for every audit write."""

    def __init__(
        self,
        resolver: ConnectionResolver,
        *,
        signer: SignatureService | None = None,
        projector: HistoryProjector | None = None,
        registry: ModelRegistry | None = None,
        queue: AuditQueue | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._resolver = resolver
        self._signer = signer or SignatureService(self._settings.audit.signature)
        self._registry = registry or ModelRegistry()
        self._projector = projector or HistoryProjector(self._registry, self._settings)
        self._queue = queue

    @property
    def signer(self) -> SignatureService:
        return self._signer

    @property
    def queued(self) -> bool:
        return self._queue is not None and self._settings.audit.queue.enabled

    async def record(
        self,
        event: AuditEvent,
        *,
        context: TenantContext | None = None,
    ) -> AuditRecord | None:
        """Sign and persist *event*.

        Returns ``None`` when auditing is disabled, when the resolver's
        ``skip`` fallback applies, or when the event was handed to the queue.
        Resolution and write errors propagate to the caller.
        """
        if not self._settings.audit.enabled:
            return None

        store = self._resolver.resolve(context)
        if store is None:
            return None

        prepared = event.prepared()
        if self._queue is not None and self._settings.audit.queue.enabled:
            await self._queue.put(prepared, store=store.name)
            return None

        tenant_id = context.tenant_id if context else None
        with store_context(store.name, tenant_id=tenant_id):
            async with store.session() as session, session.begin():
                record = await self.record_in_session(session, prepared)
            logger.debug(
                "audit_record_written",
                audit_uuid=record.audit_uuid,
                event_type=record.event_type.value,
                action_type=record.action_type,
            )
        return record

    async def record_in_session(self, session: AsyncSession, event: AuditEvent) -> AuditRecord:
        """Persist *event* inside the caller's transaction, projecting history for crud."""
        record = await AuditRepository(session).create(self.build_record(event))
        if record.event_type == EventType.MODEL_CRUD:
            await self._projector.persist(session, record, user_name=event.actor.user_name)
        return record

    def build_record(self, event: AuditEvent) -> AuditRecord:
        """Build the unsaved, signed ``AuditRecord`` for *event*."""
        event = event.prepared()
        actor = event.actor
        model = self._registry.get(event.model_type)
        excludes = set(self._settings.audit.global_excludes)
        if model is not None:
            excludes.update(model.audit_exclude)

        record = AuditRecord(
            audit_uuid=event.audit_uuid,
            event_type=event.event_type,
            action_type=event.action_type,
            model_type=event.model_type,
            model_id=event.model_id,
            table_name=event.table_name or (model.table_name if model else None),
            source_page=event.source_page,
            source_element=event.source_element,
            user_id=actor.user_id,
            session_id=actor.session_id,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            device_fingerprint=actor.device_fingerprint,
            additional_data=_strip(event.additional_data, set()),
            old_values=_strip(event.old_values, excludes),
            new_values=_strip(event.new_values, excludes),
            created_at=event.created_at,
        )
        if self._signer.is_enabled:
            record.signature = self._signer.sign_record(record)
            record.signature_algorithm = self._signer.algorithm
        return record

    # ------------------------------------------------------------------
    # Convenience builders
    # ------------------------------------------------------------------

    async def record_model_action(
        self,
        action_type: str,
        instance: Any,
        *,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        actor: ActorContext | None = None,
        context: TenantContext | None = None,
        source_page: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> AuditRecord | None:
        """Record a crud action against a registered live model instance."""
        model = self._registry.for_instance(instance)
        if model is None:
            raise LookupError(f"{type(instance).__name__} is not registered for auditing")

        if new_values is None and action_type in ("create", "update", "restore"):
            new_values = model.snapshot(instance, self._settings.audit.global_excludes)
        if old_values is None and action_type == "delete":
            old_values = model.snapshot(instance, self._settings.audit.global_excludes)

        return await self.record(
            AuditEvent(
                event_type=EventType.MODEL_CRUD,
                action_type=action_type,
                model_type=model.name,
                model_id=getattr(instance, model.primary_key),
                table_name=model.table_name,
                source_page=source_page,
                actor=actor or ActorContext(),
                old_values=old_values,
                new_values=new_values,
                additional_data=additional_data,
            ),
            context=context,
        )

    async def record_ui_action(
        self,
        action_type: str,
        *,
        source_page: str | None = None,
        source_element: str | None = None,
        actor: ActorContext | None = None,
        context: TenantContext | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> AuditRecord | None:
        if not self._settings.audit.track_ui_actions:
            return None
        return await self.record(
            AuditEvent(
                event_type=EventType.UI_ACTION,
                action_type=action_type,
                source_page=source_page,
                source_element=source_element,
                actor=actor or ActorContext(),
                additional_data=additional_data,
            ),
            context=context,
        )

    async def record_custom_action(
        self,
        action_type: str,
        *,
        event_type: EventType = EventType.CUSTOM,
        model_type: str | None = None,
        model_id: str | int | None = None,
        actor: ActorContext | None = None,
        context: TenantContext | None = None,
        additional_data: dict[str, Any] | None = None,
        source_element: str | None = None,
    ) -> AuditRecord | None:
        return await self.record(
            AuditEvent(
                event_type=event_type,
                action_type=action_type,
                model_type=model_type,
                model_id=model_id,
                actor=actor or ActorContext(),
                additional_data=additional_data,
                source_element=source_element,
            ),
            context=context,
        )


def _strip(values: dict[str, Any] | None, excludes: set[str]) -> dict[str, Any] | None:
    if values is None:
        return None
    return {key: normalize_value(value) for key, value in values.items() if key not in excludes}
