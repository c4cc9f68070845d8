"""Tests for signature verification sweeps."""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

import pytest
from sqlalchemy import update

from audit_core.db.models import AuditRecord, EventType
from audit_core.db.session import StoreHandle
from audit_core.modules.audit.schemas import AuditEvent
from audit_core.modules.verification.service import (
    RecordCheck,
    SignaturesDisabledError,
    VerificationRunner,
    VerificationSelector,
)
from tests.support import AuditStack


async def _seed(stack: AuditStack, count: int, *, age_days: int = 0) -> list[AuditRecord]:
    records = []
    for index in range(count):
        record = await stack.recorder.record(
            AuditEvent(
                event_type=EventType.CUSTOM,
                action_type="exported",
                new_values={"row": index},
                created_at=datetime.now(UTC) - timedelta(days=age_days),
            )
        )
        assert record is not None
        records.append(record)
    return records


async def _tamper(store: StoreHandle, record_id: int) -> None:
    async with store.session() as session, session.begin():
        await session.execute(
            update(AuditRecord)
            .where(AuditRecord.id == record_id)
            .values(new_values={"row": "forged"})
        )


def _runner(stack: AuditStack, **kwargs: object) -> VerificationRunner:
    return VerificationRunner(stack.store, stack.recorder.signer, settings=stack.settings, **kwargs)


class TestVerify:
    async def test_untouched_records_verify(self, stack: AuditStack) -> None:
        await _seed(stack, 3)

        report = await _runner(stack).verify()

        assert report.checked == 3
        assert report.valid_count == 3
        assert report.tampered is False
        assert report.validity_percentage == 100.0

    async def test_tampered_record_is_reported(self, stack: AuditStack) -> None:
        records = await _seed(stack, 4)
        await _tamper(stack.store, records[2].id)

        report = await _runner(stack).verify(batch_size=2)

        assert report.tampered is True
        assert [item["id"] for item in report.invalid_records] == [records[2].id]
        assert report.valid_count == 3
        assert "new_values" not in report.invalid_records[0]

    async def test_modified_signature_is_reported(self, stack: AuditStack) -> None:
        records = await _seed(stack, 1)
        async with stack.store.session() as session, session.begin():
            await session.execute(
                update(AuditRecord)
                .where(AuditRecord.id == records[0].id)
                .values(signature="0" * 128)
            )

        assert await _runner(stack).verify_record(records[0].id) is False

    async def test_days_selector(self, stack: AuditStack) -> None:
        await _seed(stack, 2, age_days=10)
        await _seed(stack, 1)

        report = await _runner(stack).verify(VerificationSelector.last_days(3))
        assert report.checked == 1

    async def test_since_selector(self, stack: AuditStack) -> None:
        await _seed(stack, 2, age_days=10)
        await _seed(stack, 1)

        since = date.today() - timedelta(days=2)
        report = await _runner(stack).verify(VerificationSelector.since_date(since))
        assert report.checked == 1

    async def test_sample(self, stack: AuditStack) -> None:
        await _seed(stack, 20)

        report = await _runner(stack, rng=random.Random(7)).verify(VerificationSelector.sample(50))

        assert 0 < report.checked < 20
        assert report.invalid_count == 0

    async def test_full_sample_checks_everything(self, stack: AuditStack) -> None:
        await _seed(stack, 5)
        report = await _runner(stack).verify(VerificationSelector.sample(100))
        assert report.checked == 5

    async def test_by_uuid(self, stack: AuditStack) -> None:
        records = await _seed(stack, 2)
        report = await _runner(stack).verify(VerificationSelector.by_uuid(records[1].audit_uuid))
        assert report.checked == 1
        assert report.valid_count == 1

    async def test_missing_record(self, stack: AuditStack) -> None:
        report = await _runner(stack).verify(VerificationSelector.by_id(999))
        assert report.not_found == ["999"]
        assert report.checked == 0
        assert await _runner(stack).verify_record(999) is None

    async def test_on_record_callback(self, stack: AuditStack) -> None:
        await _seed(stack, 2)
        seen: list[RecordCheck] = []

        await _runner(stack).verify(on_record=seen.append)

        assert [check.valid for check in seen] == [True, True]

    async def test_signatures_disabled(self, make_stack: Callable[..., AuditStack]) -> None:
        stack = make_stack(audit={"signature": {"enabled": False}})
        with pytest.raises(SignaturesDisabledError):
            await _runner(stack).verify()

    async def test_report_to_dict(self, stack: AuditStack) -> None:
        await _seed(stack, 1)
        payload = (await _runner(stack).verify()).to_dict()

        assert payload["checked"] == 1
        assert payload["selector"] == "all records"
        assert payload["finished_at"] is not None


class TestSelector:
    @pytest.mark.parametrize("percent", [0, 101])
    def test_sample_bounds(self, percent: int) -> None:
        with pytest.raises(ValueError):
            VerificationSelector.sample(percent)

    def test_since_date_is_utc_midnight(self) -> None:
        selector = VerificationSelector.since_date(date(2026, 3, 1))
        assert selector.since == datetime(2026, 3, 1, tzinfo=UTC)

    def test_describe(self) -> None:
        assert VerificationSelector.sample(10).describe() == "10% sample"
        assert VerificationSelector.last_days(7).describe() == "records from the last 7 days"
