"""
Retention cleanup for audit and history records.

History records are deleted once they are terminal (``can_rollback`` is
false) and older than the history retention window. Audit records are
deleted only when an audit retention window is configured, never for
``rollback_action`` or ``system_event`` rows, and only after an explicit
double confirmation (or ``force``).

Deletes run in id-ordered batches of ``batch.chunk_size`` rows, each in its
own transaction, so locks stay short and memory stays bounded. Only rows
strictly older than the cutoff are touched, which keeps cleanup safe to run
alongside new inserts.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from audit_core.core.config import Settings, get_settings
from audit_core.core.logging import get_logger
from audit_core.db.models import RETAINED_EVENT_TYPES
from audit_core.db.repositories import AuditRepository, HistoryRepository
from audit_core.db.session import StoreHandle

logger = get_logger(__name__)

AUDIT_DELETE_PHRASE = "DELETE AUDIT RECORDS"
SAMPLE_SIZE = 5

Confirm = Callable[[str], bool]
Prompt = Callable[[str], str]
CleanupStatus = Literal["deleted", "dry_run", "skipped", "cancelled"]


class AuditDeletionRefusedError(PermissionError):
    """Raised when audit deletion is requested without confirmation or force."""


@dataclass(frozen=True)
class CleanupResult:
    """Outcome of one cleanup pass."""

    target: Literal["history", "audit"]
    status: CleanupStatus
    count: int
    cutoff: datetime | None = None
    retention_days: int | None = None
    sample: list[dict[str, Any]] = field(default_factory=list)
    reason: str | None = None


@dataclass(frozen=True)
class AuditConfirmation:
    """Interactive double confirmation for destructive audit deletion.

    ``confirm`` answers a yes/no question; ``prompt`` returns typed text,
    which must equal ``AUDIT_DELETE_PHRASE``.
    """

    confirm: Confirm
    prompt: Prompt

    def obtain(self, count: int, retention_days: int) -> bool:
        if not self.confirm(
            f"Are you ABSOLUTELY SURE you want to delete {count} audit records older "
            f"than {retention_days} days? This cannot be undone."
        ):
            return False
        typed = self.prompt(f'Type "{AUDIT_DELETE_PHRASE}" to confirm')
        return typed.strip() == AUDIT_DELETE_PHRASE


def cutoff_for(retention_days: int, now: datetime | None = None) -> datetime:
    return (now or datetime.now(UTC)) - timedelta(days=retention_days)


class RetentionManager:
    """Policy-driven bulk deletion of aged audit and history records."""

    def __init__(self, store: StoreHandle, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    @property
    def chunk_size(self) -> int:
        return self._settings.batch.chunk_size

    async def cleanup_history(
        self,
        retention_days: int | None = None,
        *,
        dry_run: bool = False,
        confirm: Confirm | None = None,
    ) -> CleanupResult:
        """Delete terminal history records older than the retention window."""
        days = (
            retention_days if retention_days is not None else self._settings.history.retention_days
        )
        if days is None:
            return CleanupResult(target="history", status="skipped", count=0, reason="keep_forever")

        cutoff = cutoff_for(days)
        conditions = HistoryRepository.retention_conditions(cutoff)
        async with self._store.session() as session:
            repo = HistoryRepository(session)
            count = await repo.count(*conditions)
            sample = [
                {
                    "id": row.id,
                    "model": f"{row.model_type}#{row.model_id}",
                    "action_type": row.action_type,
                    "created_at": row.created_at.isoformat(),
                }
                for row in await repo.oldest(*conditions, limit=SAMPLE_SIZE)
            ]

        base = {"target": "history", "cutoff": cutoff, "retention_days": days, "sample": sample}
        if dry_run or count == 0:
            return CleanupResult(status="dry_run" if dry_run else "deleted", count=count, **base)
        if confirm is not None and not confirm(
            f"Delete {count} history records older than {days} days?"
        ):
            return CleanupResult(status="cancelled", count=0, reason="not_confirmed", **base)

        deleted = await self._delete_in_batches(HistoryRepository, conditions)
        logger.info("history_records_deleted", count=deleted, retention_days=days)
        return CleanupResult(status="deleted", count=deleted, **base)

    async def cleanup_audit(
        self,
        retention_days: int | None = None,
        *,
        dry_run: bool = False,
        force: bool = False,
        confirmation: AuditConfirmation | None = None,
    ) -> CleanupResult:
        """Delete aged audit records, never touching permanently retained kinds.

        With no retention configured this is a no-op. Without ``force`` a
        double ``confirmation`` is required, otherwise
        ``AuditDeletionRefusedError`` is raised.
        """
        days = retention_days if retention_days is not None else self._settings.audit.retention_days
        if days is None:
            return CleanupResult(target="audit", status="skipped", count=0, reason="keep_forever")

        cutoff = cutoff_for(days)
        conditions = AuditRepository.retention_conditions(cutoff)
        async with self._store.session() as session:
            repo = AuditRepository(session)
            count = await repo.count(*conditions)
            sample = [
                {
                    "id": row.id,
                    "audit_uuid": row.audit_uuid,
                    "event_type": row.event_type.value,
                    "action_type": row.action_type,
                    "created_at": row.created_at.isoformat(),
                }
                for row in await repo.oldest(*conditions, limit=SAMPLE_SIZE)
            ]

        base = {"target": "audit", "cutoff": cutoff, "retention_days": days, "sample": sample}
        if dry_run or count == 0:
            return CleanupResult(status="dry_run" if dry_run else "deleted", count=count, **base)

        if not force:
            if confirmation is None:
                raise AuditDeletionRefusedError(
                    "Audit record deletion requires force or double confirmation"
                )
            if not confirmation.obtain(count, days):
                logger.warning("audit_cleanup_cancelled", candidates=count, retention_days=days)
                return CleanupResult(status="cancelled", count=0, reason="not_confirmed", **base)

        deleted = await self._delete_in_batches(AuditRepository, conditions)
        logger.critical(
            "audit_records_deleted",
            count=deleted,
            retention_days=days,
            cutoff=cutoff.isoformat(),
            retained_event_types=[kind.value for kind in RETAINED_EVENT_TYPES],
            forced=force,
        )
        return CleanupResult(status="deleted", count=deleted, **base)

    async def stats(self) -> dict[str, Any]:
        """Configured retention, cutoffs and the number of rows each cleanup would remove."""
        history_days = self._settings.history.retention_days
        audit_days = self._settings.audit.retention_days
        history_cutoff = cutoff_for(history_days) if history_days is not None else None
        audit_cutoff = cutoff_for(audit_days) if audit_days is not None else None
        async with self._store.session() as session:
            history_repo = HistoryRepository(session)
            audit_repo = AuditRepository(session)
            history_total = await history_repo.count()
            audit_total = await audit_repo.count()
            history_candidates = (
                await history_repo.count(*HistoryRepository.retention_conditions(history_cutoff))
                if history_cutoff is not None
                else 0
            )
            audit_candidates = (
                await audit_repo.count(*AuditRepository.retention_conditions(audit_cutoff))
                if audit_cutoff is not None
                else 0
            )
        return {
            "history": {
                "retention_days": history_days,
                "cutoff": history_cutoff.isoformat() if history_cutoff else None,
                "total": history_total,
                "eligible_for_cleanup": history_candidates,
            },
            "audit": {
                "retention_days": audit_days,
                "cutoff": audit_cutoff.isoformat() if audit_cutoff else None,
                "total": audit_total,
                "eligible_for_cleanup": audit_candidates,
                "retained_event_types": [kind.value for kind in RETAINED_EVENT_TYPES],
            },
            "chunk_size": self.chunk_size,
        }

    async def _delete_in_batches(
        self,
        repository: type[AuditRepository] | type[HistoryRepository],
        conditions: tuple[Any, ...],
    ) -> int:
        deleted = 0
        while True:
            async with self._store.session() as session, session.begin():
                repo = repository(session)
                ids = await repo.candidate_ids(*conditions, limit=self.chunk_size)
                if not ids:
                    break
                deleted += await repo.delete_batch(ids)
            logger.debug("retention_batch_deleted", table=repository.__name__, rows=len(ids))
            if len(ids) < self.chunk_size:
                break
        return deleted
