"""
Signature verification sweeps over stored audit records.

Records are streamed in id-ordered batches and re-signed in memory. A
mismatch is reported with identifying metadata only; the recorded values are
never echoed back. Tampering is a normal result, only an unreadable store
raises.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, Literal

from sqlalchemy import ColumnElement
from sqlalchemy.exc import SQLAlchemyError

from audit_core.core.config import Settings, get_settings
from audit_core.core.crypto.signature import SignatureConfigurationError, SignatureService
from audit_core.core.logging import get_logger
from audit_core.db.models import AuditRecord
from audit_core.db.repositories import AuditRepository
from audit_core.db.session import StoreHandle

logger = get_logger(__name__)

SelectorMode = Literal["all", "sample", "since", "days", "id", "uuid"]


class VerificationQueryError(RuntimeError):
    """Raised when audit records cannot be read from the store."""


class SignaturesDisabledError(SignatureConfigurationError):
    """Raised when verification is requested while signing is disabled."""


@dataclass(frozen=True)
class VerificationSelector:
    """Which audit records a sweep covers."""

    mode: SelectorMode = "all"
    sample_percent: int | None = None
    since: datetime | None = None
    days: int | None = None
    record_id: int | None = None
    audit_uuid: str | None = None

    @classmethod
    def all(cls) -> VerificationSelector:
        return cls(mode="all")

    @classmethod
    def sample(cls, percent: int) -> VerificationSelector:
        if not 1 <= percent <= 100:
            raise ValueError("Sample percentage must be between 1 and 100")
        return cls(mode="sample", sample_percent=percent)

    @classmethod
    def since_date(cls, value: date | datetime) -> VerificationSelector:
        if not isinstance(value, datetime):
            value = datetime.combine(value, time.min)
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return cls(mode="since", since=value)

    @classmethod
    def last_days(cls, days: int) -> VerificationSelector:
        if days < 1:
            raise ValueError("Days must be a positive integer")
        return cls(mode="days", days=days)

    @classmethod
    def by_id(cls, record_id: int) -> VerificationSelector:
        return cls(mode="id", record_id=record_id)

    @classmethod
    def by_uuid(cls, audit_uuid: str) -> VerificationSelector:
        return cls(mode="uuid", audit_uuid=audit_uuid)

    def conditions(self, now: datetime | None = None) -> list[ColumnElement[bool]]:
        if self.mode == "since" and self.since is not None:
            return [AuditRecord.created_at >= self.since]
        if self.mode == "days" and self.days is not None:
            cutoff = (now or datetime.now(UTC)) - timedelta(days=self.days)
            return [AuditRecord.created_at >= cutoff]
        return []

    def describe(self) -> str:
        if self.mode == "sample":
            return f"{self.sample_percent}% sample"
        if self.mode == "since":
            return f"records since {self.since.isoformat() if self.since else '?'}"
        if self.mode == "days":
            return f"records from the last {self.days} days"
        if self.mode == "id":
            return f"record id {self.record_id}"
        if self.mode == "uuid":
            return f"record uuid {self.audit_uuid}"
        return "all records"


@dataclass(frozen=True)
class RecordCheck:
    """Verification outcome for one record, identifying metadata only."""

    id: int
    audit_uuid: str
    created_at: str
    event_type: str
    action_type: str
    valid: bool

    def identity(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "uuid": self.audit_uuid,
            "created_at": self.created_at,
            "event_type": self.event_type,
            "action_type": self.action_type,
        }


@dataclass
class VerificationReport:
    selector: str
    valid_count: int = 0
    invalid_count: int = 0
    invalid_records: list[dict[str, Any]] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def checked(self) -> int:
        return self.valid_count + self.invalid_count

    @property
    def validity_percentage(self) -> float:
        if not self.checked:
            return 100.0
        return round(self.valid_count / self.checked * 100, 2)

    @property
    def tampered(self) -> bool:
        return self.invalid_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "selector": self.selector,
            "checked": self.checked,
            "valid_count": self.valid_count,
            "invalid_count": self.invalid_count,
            "validity_percentage": self.validity_percentage,
            "invalid_records": self.invalid_records,
            "not_found": self.not_found,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class VerificationRunner:
    """Re-verify stored audit signatures."""

    def __init__(
        self,
        store: StoreHandle,
        signer: SignatureService | None = None,
        *,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._signer = signer or SignatureService(self._settings.audit.signature)
        self._rng = rng or random.Random()

    async def verify(
        self,
        selector: VerificationSelector | None = None,
        *,
        batch_size: int | None = None,
        on_record: Callable[[RecordCheck], None] | None = None,
    ) -> VerificationReport:
        """Verify every record matched by *selector*."""
        if not self._signer.is_enabled:
            raise SignaturesDisabledError("Audit signatures are disabled; nothing to verify")

        selector = selector or VerificationSelector.all()
        batch_size = batch_size or self._settings.batch.chunk_size
        if batch_size < 1:
            raise ValueError("batch_size must be positive")

        report = VerificationReport(selector=selector.describe())
        try:
            async with self._store.session() as session:
                repo = AuditRepository(session)
                if selector.mode in ("id", "uuid"):
                    record = await self._lookup(repo, selector)
                    if record is None:
                        report.not_found.append(str(selector.record_id or selector.audit_uuid))
                    else:
                        self._check(record, report, on_record)
                else:
                    async for batch in repo.iter_batches(
                        *selector.conditions(), batch_size=batch_size
                    ):
                        for record in batch:
                            if selector.mode == "sample" and not self._sampled(selector):
                                continue
                            self._check(record, report, on_record)
                        session.expunge_all()
        except SQLAlchemyError as exc:
            raise VerificationQueryError(f"Audit records could not be read: {exc}") from exc

        report.finished_at = datetime.now(UTC)
        if report.tampered:
            logger.critical(
                "audit_tampering_detected",
                invalid_count=report.invalid_count,
                checked=report.checked,
                invalid_ids=[item["id"] for item in report.invalid_records[:100]],
                selector=report.selector,
            )
        else:
            logger.info(
                "audit_verification_passed",
                checked=report.checked,
                selector=report.selector,
            )
        return report

    async def verify_record(self, record_id: int) -> bool | None:
        """Quick check of one record; ``None`` when it does not exist."""
        report = await self.verify(VerificationSelector.by_id(record_id))
        if report.not_found:
            return None
        return not report.tampered

    def _sampled(self, selector: VerificationSelector) -> bool:
        return self._rng.random() * 100 < (selector.sample_percent or 100)

    @staticmethod
    async def _lookup(repo: AuditRepository, selector: VerificationSelector) -> AuditRecord | None:
        if selector.mode == "id" and selector.record_id is not None:
            return await repo.get(selector.record_id)
        if selector.audit_uuid is not None:
            return await repo.get_by_uuid(selector.audit_uuid)
        return None

    def _check(
        self,
        record: AuditRecord,
        report: VerificationReport,
        on_record: Callable[[RecordCheck], None] | None,
    ) -> None:
        check = RecordCheck(
            id=record.id,
            audit_uuid=record.audit_uuid,
            created_at=record.created_at.isoformat(),
            event_type=getattr(record.event_type, "value", str(record.event_type)),
            action_type=record.action_type,
            valid=self._signer.verify_record(record),
        )
        if check.valid:
            report.valid_count += 1
        else:
            report.invalid_count += 1
            report.invalid_records.append(check.identity())
        if on_record is not None:
            on_record(check)
