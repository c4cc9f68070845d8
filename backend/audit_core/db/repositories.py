"""
Explicit repositories over the audit and history tables.

Every call takes the session it runs in; nothing here opens or commits a
transaction, and no ORM event hooks are involved.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from audit_core.db.models import RETAINED_EVENT_TYPES, AuditRecord, HistoryRecord


class AuditRepository:
    """Create, find, stream and batch-delete audit records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, record: AuditRecord) -> AuditRecord:
        self._session.add(record)
        await self._session.flush()
        return record

    async def get(self, record_id: int) -> AuditRecord | None:
        return await self._session.get(AuditRecord, record_id)

    async def get_by_uuid(self, audit_uuid: str) -> AuditRecord | None:
        result = await self._session.execute(
            select(AuditRecord).where(AuditRecord.audit_uuid == audit_uuid)
        )
        return result.scalar_one_or_none()

    async def count(self, *conditions: ColumnElement[bool]) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(AuditRecord).where(*conditions)
        )
        return int(result.scalar_one())

    async def iter_batches(
        self,
        *conditions: ColumnElement[bool],
        batch_size: int,
    ) -> AsyncIterator[list[AuditRecord]]:
        """Yield matching records in id order, ``batch_size`` at a time.

        Keyset pagination on ``id`` keeps each query bounded and tolerates
        concurrent inserts and deletes between batches.
        """
        last_id = 0
        while True:
            result = await self._session.execute(
                select(AuditRecord)
                .where(AuditRecord.id > last_id, *conditions)
                .order_by(AuditRecord.id)
                .limit(batch_size)
            )
            batch = list(result.scalars().all())
            if not batch:
                return
            yield batch
            last_id = batch[-1].id
            if len(batch) < batch_size:
                return

    @staticmethod
    def retention_conditions(cutoff: datetime) -> tuple[ColumnElement[bool], ...]:
        """Rows older than *cutoff* that are not permanently retained."""
        return (
            AuditRecord.created_at < cutoff,
            AuditRecord.event_type.not_in(RETAINED_EVENT_TYPES),
        )

    async def oldest(self, *conditions: ColumnElement[bool], limit: int) -> list[AuditRecord]:
        result = await self._session.execute(
            select(AuditRecord).where(*conditions).order_by(AuditRecord.id).limit(limit)
        )
        return list(result.scalars().all())

    async def candidate_ids(self, *conditions: ColumnElement[bool], limit: int) -> list[int]:
        result = await self._session.execute(
            select(AuditRecord.id).where(*conditions).order_by(AuditRecord.id).limit(limit)
        )
        return list(result.scalars().all())

    async def delete_batch(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        result = await self._session.execute(delete(AuditRecord).where(AuditRecord.id.in_(ids)))
        return int(result.rowcount or 0)


class HistoryRepository:
    """Create, find, transition and batch-delete history records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, record: HistoryRecord) -> HistoryRecord:
        self._session.add(record)
        await self._session.flush()
        return record

    async def get(self, history_id: int) -> HistoryRecord | None:
        return await self._session.get(HistoryRecord, history_id)

    async def get_for_update(self, history_id: int) -> HistoryRecord | None:
        """Load and row-lock a history record (a no-op lock on SQLite)."""
        result = await self._session.execute(
            select(HistoryRecord)
            .where(HistoryRecord.id == history_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_rolled_back(
        self,
        history_id: int,
        *,
        rolled_back_by: str,
        rolled_back_at: datetime,
    ) -> bool:
        """Move a record to its terminal state.

        The update only matches while ``rolled_back_at`` is still NULL, so of
        two racing rollbacks exactly one sees a matched row.
        """
        result = await self._session.execute(
            update(HistoryRecord)
            .where(HistoryRecord.id == history_id, HistoryRecord.rolled_back_at.is_(None))
            .values(
                can_rollback=False,
                rolled_back_at=rolled_back_at,
                rolled_back_by=rolled_back_by,
                updated_at=rolled_back_at,
            )
            .execution_options(synchronize_session="fetch")
        )
        return (result.rowcount or 0) == 1

    async def count(self, *conditions: ColumnElement[bool]) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(HistoryRecord).where(*conditions)
        )
        return int(result.scalar_one())

    @staticmethod
    def retention_conditions(cutoff: datetime) -> tuple[ColumnElement[bool], ...]:
        """Rows older than *cutoff* that can no longer be rolled back."""
        return (HistoryRecord.created_at < cutoff, HistoryRecord.can_rollback.is_(False))

    async def oldest(self, *conditions: ColumnElement[bool], limit: int) -> list[HistoryRecord]:
        result = await self._session.execute(
            select(HistoryRecord).where(*conditions).order_by(HistoryRecord.id).limit(limit)
        )
        return list(result.scalars().all())

    async def candidate_ids(self, *conditions: ColumnElement[bool], limit: int) -> list[int]:
        result = await self._session.execute(
            select(HistoryRecord.id).where(*conditions).order_by(HistoryRecord.id).limit(limit)
        )
        return list(result.scalars().all())

    async def delete_batch(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        result = await self._session.execute(
            delete(HistoryRecord).where(HistoryRecord.id.in_(ids))
        )
        return int(result.rowcount or 0)

    async def page(
        self,
        *conditions: ColumnElement[bool],
        limit: int,
        offset: int = 0,
    ) -> list[HistoryRecord]:
        result = await self._session.execute(
            select(HistoryRecord)
            .where(*conditions)
            .order_by(HistoryRecord.created_at.desc(), HistoryRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def grouped_counts(
        self, column: Any, *conditions: ColumnElement[bool]
    ) -> dict[Any, int]:
        result = await self._session.execute(
            select(column, func.count()).where(*conditions).group_by(column)
        )
        return {key: int(total) for key, total in result.all()}
