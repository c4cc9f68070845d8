"""Queued audit persistence.

In queued mode ``AuditRecorder.record`` only enqueues the prepared event
(identity and timestamp already assigned, so ``created_at`` keeps the
producer's order). ``AuditQueueWorker`` drains the queue, signs and persists
each event with bounded retries, and writes a ``system_event`` fallback
record when an event cannot be stored.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Literal

from audit_core.core.config import Settings, get_settings
from audit_core.core.logging import get_logger, store_context
from audit_core.db.models import EventType
from audit_core.db.session import StoreRegistry
from audit_core.modules.audit.schemas import ActorContext, AuditEvent
from audit_core.modules.audit.service import AuditRecorder

logger = get_logger(__name__)

FALLBACK_ACTION = "audit_failure"
FALLBACK_SOURCE = "async_audit_worker"


@dataclass(slots=True)
class QueuedAudit:
    """One prepared event waiting to be persisted on a named store."""

    event: AuditEvent
    store: str
    attempts: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProcessOutcome:
    status: Literal["ok", "fallback", "lost"]
    attempts: int
    reason: str | None = None


@dataclass
class WorkerStats:
    processed: int = 0
    failed: int = 0
    lost: int = 0


class AuditQueue:
    """Bounded FIFO of prepared audit events.

    ``put`` waits while the queue is full, so producers slow down instead of
    growing memory without limit.
    """

    def __init__(self, max_size: int | None = None) -> None:
        size = max_size if max_size is not None else get_settings().audit.queue.max_size
        self._queue: asyncio.Queue[QueuedAudit] = asyncio.Queue(maxsize=size)

    async def put(self, event: AuditEvent, *, store: str) -> None:
        await self._queue.put(QueuedAudit(event=event.prepared(), store=store))

    async def get(self) -> QueuedAudit:
        return await self._queue.get()

    def get_nowait(self) -> QueuedAudit | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


class AuditQueueWorker:
    """Persist queued audit events with retries and a fallback record."""

    def __init__(
        self,
        queue: AuditQueue,
        recorder: AuditRecorder,
        registry: StoreRegistry,
        *,
        settings: Settings | None = None,
        retry_delay: float = 0.0,
    ) -> None:
        self._queue = queue
        self._recorder = recorder
        self._registry = registry
        self._settings = settings or get_settings()
        self._max_attempts = self._settings.audit.queue.max_attempts
        self._retry_delay = retry_delay

    async def process(self, item: QueuedAudit) -> ProcessOutcome:
        """Persist one queued event, retrying before falling back."""
        store = self._registry.get(item.store)
        while item.attempts < self._max_attempts:
            item.attempts += 1
            try:
                async with store.session() as session, session.begin():
                    await self._recorder.record_in_session(session, item.event)
                return ProcessOutcome(status="ok", attempts=item.attempts)
            except Exception as exc:
                item.errors.append(f"{type(exc).__name__}: {exc}")
                logger.warning(
                    "queued_audit_write_failed",
                    attempt=item.attempts,
                    max_attempts=self._max_attempts,
                    audit_event=item.event.redacted(),
                    error=str(exc),
                )
                if item.attempts < self._max_attempts and self._retry_delay:
                    await asyncio.sleep(self._retry_delay * item.attempts)

        return await self._write_fallback(item)

    async def drain(self) -> WorkerStats:
        """Process everything currently queued, then return."""
        stats = WorkerStats()
        while (item := self._queue.get_nowait()) is not None:
            self._tally(stats, await self._process_and_ack(item))
        return stats

    async def run(self, stop: asyncio.Event) -> WorkerStats:
        """Process events until *stop* is set and the queue is empty."""
        stats = WorkerStats()
        while not stop.is_set():
            getter = asyncio.ensure_future(self._queue.get())
            stopper = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await getter
                break
            stopper.cancel()
            self._tally(stats, await self._process_and_ack(getter.result()))

        remaining = await self.drain()
        stats.processed += remaining.processed
        stats.failed += remaining.failed
        stats.lost += remaining.lost
        return stats

    async def _process_and_ack(self, item: QueuedAudit) -> ProcessOutcome:
        try:
            with store_context(item.store):
                return await self.process(item)
        finally:
            self._queue.task_done()

    @staticmethod
    def _tally(stats: WorkerStats, outcome: ProcessOutcome) -> None:
        stats.processed += 1
        stats.failed += int(outcome.status == "fallback")
        stats.lost += int(outcome.status == "lost")

    async def _write_fallback(self, item: QueuedAudit) -> ProcessOutcome:
        event = item.event
        reason = item.errors[-1] if item.errors else "unknown"
        logger.critical(
            "queued_audit_permanently_failed",
            attempts=item.attempts,
            audit_event=event.redacted(),
            reason=reason,
        )
        fallback = AuditEvent(
            event_type=EventType.SYSTEM_EVENT,
            action_type=FALLBACK_ACTION,
            model_type=event.model_type,
            model_id=event.model_id,
            source_element=FALLBACK_SOURCE,
            actor=ActorContext(user_id=event.actor.user_id, session_id=event.actor.session_id),
            additional_data={
                "failed_audit_uuid": event.audit_uuid,
                "failure_reason": reason,
                "failure_class": reason.split(":", 1)[0],
                "original_event_type": event.event_type.value,
                "original_action_type": event.action_type,
                "attempts": item.attempts,
            },
        )
        try:
            store = self._registry.get(item.store)
            async with store.session() as session, session.begin():
                await self._recorder.record_in_session(session, fallback)
        except Exception:
            logger.critical(
                "audit_fallback_write_failed",
                failed_audit_uuid=event.audit_uuid,
                exc_info=True,
            )
            return ProcessOutcome(status="lost", attempts=item.attempts, reason=reason)
        return ProcessOutcome(status="fallback", attempts=item.attempts, reason=reason)
