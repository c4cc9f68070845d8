"""History queries, summaries and display formatting."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field
from sqlalchemy import ColumnElement, or_
from sqlalchemy.ext.asyncio import AsyncSession

from audit_core.core.tenancy import ConnectionResolver, TenancyResolutionError, TenantContext
from audit_core.db.models import HistoryRecord
from audit_core.db.repositories import HistoryRepository

ACTION_LABELS = {
    "create": "Created",
    "update": "Updated",
    "delete": "Deleted",
    "restore": "Restored",
}

MAX_DISPLAY_LENGTH = 100

RollbackStatus = Literal["can_rollback", "rolled_back", "not_rollbackable"]


def format_value(value: Any) -> str:
    """Render a recorded value for display."""
    if value is None or value == "":
        return "(empty)"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, dict | list):
        text = json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
    else:
        text = str(value)
    if len(text) > MAX_DISPLAY_LENGTH:
        return text[: MAX_DISPLAY_LENGTH - 3] + "..."
    return text


def action_label(action_type: str) -> str:
    return ACTION_LABELS.get(action_type, action_type.replace("_", " ").title())


class HistoryQuery(BaseModel):
    """Filters for listing history records."""

    model_type: str | None = None
    model_id: str | None = None
    action_type: str | None = None
    user_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    rollback_status: RollbackStatus | None = None
    search: str | None = Field(default=None, max_length=200)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=500)

    def conditions(self) -> list[ColumnElement[bool]]:
        conditions: list[ColumnElement[bool]] = []
        if self.model_type:
            conditions.append(HistoryRecord.model_type == self.model_type)
        if self.model_id:
            conditions.append(HistoryRecord.model_id == self.model_id)
        if self.action_type:
            conditions.append(HistoryRecord.action_type == self.action_type)
        if self.user_id:
            conditions.append(HistoryRecord.user_id == self.user_id)
        if self.date_from:
            conditions.append(HistoryRecord.created_at >= self.date_from)
        if self.date_to:
            conditions.append(HistoryRecord.created_at <= self.date_to)
        if self.rollback_status == "can_rollback":
            conditions.append(HistoryRecord.can_rollback.is_(True))
            conditions.append(HistoryRecord.rolled_back_at.is_(None))
        elif self.rollback_status == "rolled_back":
            conditions.append(HistoryRecord.rolled_back_at.is_not(None))
        elif self.rollback_status == "not_rollbackable":
            conditions.append(HistoryRecord.can_rollback.is_(False))
            conditions.append(HistoryRecord.rolled_back_at.is_(None))
        if self.search:
            pattern = f"%{self.search}%"
            conditions.append(
                or_(
                    HistoryRecord.description.ilike(pattern),
                    HistoryRecord.user_name.ilike(pattern),
                )
            )
        return conditions


@dataclass(frozen=True)
class HistoryPage:
    items: list[HistoryRecord]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return max(1, -(-self.total // self.page_size))


class HistoryService:
    """Read access to history records on the resolved store."""

    def __init__(self, resolver: ConnectionResolver) -> None:
        self._resolver = resolver

    async def search(
        self,
        query: HistoryQuery,
        *,
        context: TenantContext | None = None,
    ) -> HistoryPage:
        conditions = query.conditions()
        async with self._session(context) as session:
            repo = HistoryRepository(session)
            total = await repo.count(*conditions)
            items = await repo.page(
                *conditions,
                limit=query.page_size,
                offset=(query.page - 1) * query.page_size,
            )
        return HistoryPage(items=items, total=total, page=query.page, page_size=query.page_size)

    async def model_history(
        self,
        model_type: str,
        model_id: str | int,
        *,
        limit: int = 50,
        context: TenantContext | None = None,
    ) -> list[HistoryRecord]:
        page = await self.search(
            HistoryQuery(model_type=model_type, model_id=str(model_id), page_size=limit),
            context=context,
        )
        return page.items

    async def user_history(
        self,
        user_id: str | int,
        *,
        limit: int = 50,
        context: TenantContext | None = None,
    ) -> list[HistoryRecord]:
        page = await self.search(
            HistoryQuery(user_id=str(user_id), page_size=limit), context=context
        )
        return page.items

    async def summary(
        self,
        *,
        days: int = 30,
        model_type: str | None = None,
        context: TenantContext | None = None,
    ) -> dict[str, Any]:
        """Change counts over the last *days* days."""
        since = datetime.now(UTC) - timedelta(days=days)
        conditions: list[ColumnElement[bool]] = [HistoryRecord.created_at >= since]
        if model_type:
            conditions.append(HistoryRecord.model_type == model_type)

        async with self._session(context) as session:
            repo = HistoryRepository(session)
            total = await repo.count(*conditions)
            by_action = await repo.grouped_counts(HistoryRecord.action_type, *conditions)
            by_user = await repo.grouped_counts(HistoryRecord.user_id, *conditions)
            rollbackable = await repo.count(
                *conditions,
                HistoryRecord.can_rollback.is_(True),
                HistoryRecord.rolled_back_at.is_(None),
            )
            rolled_back = await repo.count(*conditions, HistoryRecord.rolled_back_at.is_not(None))

        return {
            "period_days": days,
            "total_changes": total,
            "by_action": {action_label(key): count for key, count in by_action.items()},
            "by_user": {key or "system": count for key, count in by_user.items()},
            "rollbackable": rollbackable,
            "rolled_back": rolled_back,
        }

    @staticmethod
    def formatted_changes(history: HistoryRecord) -> list[dict[str, str]]:
        """Field changes rendered for display."""
        return [
            {
                "field": change.get("field", ""),
                "label": change.get("label") or change.get("field", ""),
                "old": format_value(change.get("old")),
                "new": format_value(change.get("new")),
            }
            for change in history.field_changes or []
        ]

    def _session(self, context: TenantContext | None) -> AsyncSession:
        store = self._resolver.resolve(context)
        if store is None:
            raise TenancyResolutionError("No store is available for history in this context")
        return store.session()
