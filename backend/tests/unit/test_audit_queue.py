"""Tests for queued audit persistence and the failure fallback record."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
import structlog.testing
from sqlalchemy import select

from audit_core.db.models import AuditRecord, EventType
from audit_core.db.session import StoreRegistry
from audit_core.modules.audit.queue import AuditQueue, AuditQueueWorker
from audit_core.modules.audit.schemas import AuditEvent
from audit_core.modules.audit.service import AuditRecorder
from tests.support import AuditStack


def _queued_recorder(stack: AuditStack, queue: AuditQueue) -> AuditRecorder:
    return AuditRecorder(
        stack.resolver,
        signer=stack.recorder.signer,
        projector=stack.projector,
        registry=stack.models,
        queue=queue,
        settings=stack.settings,
    )


def _event(action_type: str = "exported") -> AuditEvent:
    return AuditEvent(event_type=EventType.CUSTOM, action_type=action_type)


async def _records(stack: AuditStack) -> list[AuditRecord]:
    async with stack.store.session() as session:
        result = await session.execute(select(AuditRecord).order_by(AuditRecord.id))
        return list(result.scalars().all())


@pytest.fixture
def queued(make_stack: Callable[..., AuditStack]) -> AuditStack:
    return make_stack(audit={"queue": {"enabled": True, "max_attempts": 3}})


class TestQueuedRecording:
    async def test_record_only_enqueues(self, queued: AuditStack) -> None:
        queue = AuditQueue(max_size=10)
        recorder = _queued_recorder(queued, queue)

        assert recorder.queued is True
        assert await recorder.record(_event()) is None
        assert queue.qsize() == 1
        assert await _records(queued) == []

    async def test_drain_persists_in_order(
        self, queued: AuditStack, registry: StoreRegistry
    ) -> None:
        queue = AuditQueue(max_size=10)
        recorder = _queued_recorder(queued, queue)
        for action in ("first", "second", "third"):
            await recorder.record(_event(action))

        stats = await AuditQueueWorker(queue, recorder, registry, settings=queued.settings).drain()

        records = await _records(queued)
        assert stats.processed == 3
        assert stats.failed == 0
        assert [record.action_type for record in records] == ["first", "second", "third"]
        assert all(recorder.signer.verify_record(record) for record in records)
        assert queue.empty()

    async def test_run_stops_after_draining(
        self, queued: AuditStack, registry: StoreRegistry
    ) -> None:
        queue = AuditQueue(max_size=10)
        recorder = _queued_recorder(queued, queue)
        worker = AuditQueueWorker(queue, recorder, registry, settings=queued.settings)
        stop = asyncio.Event()

        task = asyncio.create_task(worker.run(stop))
        await recorder.record(_event())
        await queue.join()
        stop.set()
        stats = await asyncio.wait_for(task, timeout=5)

        assert stats.processed == 1
        assert len(await _records(queued)) == 1


class TestFailures:
    async def test_permanent_failure_writes_fallback_record(
        self,
        queued: AuditStack,
        registry: StoreRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        queue = AuditQueue(max_size=10)
        recorder = _queued_recorder(queued, queue)
        real_record = recorder.record_in_session
        attempts: list[str] = []

        async def flaky(session, event: AuditEvent) -> AuditRecord:
            if event.event_type != EventType.SYSTEM_EVENT:
                attempts.append(event.action_type)
                raise RuntimeError("store unavailable")
            return await real_record(session, event)

        monkeypatch.setattr(recorder, "record_in_session", flaky)
        await recorder.record(_event("exported"))
        item = queue.get_nowait()
        assert item is not None

        outcome = await AuditQueueWorker(
            queue, recorder, registry, settings=queued.settings
        ).process(item)

        assert outcome.status == "fallback"
        assert outcome.attempts == 3
        assert attempts == ["exported"] * 3

        [fallback] = await _records(queued)
        assert fallback.event_type == EventType.SYSTEM_EVENT
        assert fallback.action_type == "audit_failure"
        assert fallback.source_element == "async_audit_worker"
        assert fallback.additional_data["failed_audit_uuid"] == item.event.audit_uuid
        assert fallback.additional_data["failure_reason"] == "RuntimeError: store unavailable"
        assert fallback.additional_data["failure_class"] == "RuntimeError"
        assert fallback.additional_data["original_action_type"] == "exported"
        assert fallback.additional_data["attempts"] == 3

    async def test_transient_failure_is_retried(
        self,
        queued: AuditStack,
        registry: StoreRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        queue = AuditQueue(max_size=10)
        recorder = _queued_recorder(queued, queue)
        real_record = recorder.record_in_session
        failures = [RuntimeError("deadlock")]

        async def flaky_once(session, event: AuditEvent) -> AuditRecord:
            if failures:
                raise failures.pop()
            return await real_record(session, event)

        monkeypatch.setattr(recorder, "record_in_session", flaky_once)
        await recorder.record(_event())

        stats = await AuditQueueWorker(queue, recorder, registry, settings=queued.settings).drain()

        [record] = await _records(queued)
        assert stats.processed == 1
        assert stats.failed == 0
        assert record.action_type == "exported"

    async def test_lost_when_fallback_also_fails(
        self,
        queued: AuditStack,
        registry: StoreRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        queue = AuditQueue(max_size=10)
        recorder = _queued_recorder(queued, queue)

        async def broken(session, event: AuditEvent) -> AuditRecord:
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(recorder, "record_in_session", broken)
        await recorder.record(_event())

        stats = await AuditQueueWorker(queue, recorder, registry, settings=queued.settings).drain()

        assert stats.lost == 1
        assert await _records(queued) == []

    async def test_failures_are_logged_with_redacted_event(
        self,
        queued: AuditStack,
        registry: StoreRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        queue = AuditQueue(max_size=10)
        recorder = _queued_recorder(queued, queue)
        real_record = recorder.record_in_session

        async def failing_originals(session, event: AuditEvent) -> AuditRecord:
            if event.event_type != EventType.SYSTEM_EVENT:
                raise RuntimeError("store unavailable")
            return await real_record(session, event)

        monkeypatch.setattr(recorder, "record_in_session", failing_originals)
        await recorder.record(_event("exported"))

        with structlog.testing.capture_logs() as logs:
            stats = await AuditQueueWorker(
                queue, recorder, registry, settings=queued.settings
            ).drain()

        assert stats.failed == 1
        warnings = [entry for entry in logs if entry["event"] == "queued_audit_write_failed"]
        assert [entry["attempt"] for entry in warnings] == [1, 2, 3]
        assert warnings[0]["audit_event"]["action_type"] == "exported"
        [critical] = [
            entry for entry in logs if entry["event"] == "queued_audit_permanently_failed"
        ]
        assert critical["log_level"] == "critical"
