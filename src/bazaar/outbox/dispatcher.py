from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, Tuple

from structlog import get_logger

from bazaar.common.config import Settings, get_settings
from bazaar.common.db.models import AuditEvent, Order, OutboxEvent, utcnow
from bazaar.common.db.repositories import AuditRepository, OutboxRepository
from bazaar.common.db.session import SessionScope, get_db_session
from bazaar.common.errors import OutboxEventNotFoundError
from bazaar.outbox.events import ERP
from bazaar.outbox.sinks import OutboxSink

logger = get_logger()


@dataclass
class DispatchStats:
    delivered: int = 0
    retried: int = 0
    dead: int = 0

    def as_dict(self) -> dict:
        return {"delivered": self.delivered, "retried": self.retried, "dead": self.dead}


class OutboxDispatcher:
    """
    Relays PENDING outbox events to their sinks.

    At-least-once: an event is only marked DELIVERED after its sink returned.
    Failures are rescheduled with capped exponential backoff; after
    `outbox_max_attempts` an event goes DEAD, stays in the table and can be
    replayed by an operator. Nothing is dropped.

    Events are claimed in one short transaction and delivered with none
    open; a claim left by a dispatcher that died lapses after
    `outbox_claim_seconds`.
    """

    def __init__(
        self,
        sinks: Mapping[str, OutboxSink],
        settings: Optional[Settings] = None,
        session_scope: SessionScope = get_db_session,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sinks = sinks
        self.settings = settings or get_settings()
        self.session_scope = session_scope
        self.clock = clock

    def backoff_for(self, attempts: int) -> timedelta:
        seconds = self.settings.outbox_backoff_seconds * (2 ** max(0, attempts - 1))
        return timedelta(seconds=min(seconds, self.settings.outbox_max_backoff_seconds))

    async def dispatch_pending(self, limit: Optional[int] = None) -> DispatchStats:
        stats = DispatchStats()
        limit = limit or self.settings.outbox_batch_size
        now = self.clock()

        async with self.session_scope() as session:
            # Claim: push the retry time out by the lease so other dispatchers skip these rows.
            # Row locks are gone once this commits; sinks are called with no transaction open.
            events = await OutboxRepository(session).due(now, limit)
            for event in events:
                event.next_retry_at = now + timedelta(seconds=self.settings.outbox_claim_seconds)

        for event in events:
            ack, error = await self._send(event)
            await self._record(event.id, ack, error, stats)

        if events:
            logger.info("outbox_batch_dispatched", **stats.as_dict())
        return stats

    async def _send(self, event: OutboxEvent) -> Tuple[Optional[dict], Optional[str]]:
        sink = self.sinks.get(event.destination)
        try:
            if sink is None:
                raise LookupError(f"no sink registered for destination '{event.destination}'")
            return await sink.deliver(event), None
        except Exception as e:
            return None, f"{type(e).__name__}: {e}"

    async def _record(self, event_id: str, ack: Optional[dict], error: Optional[str], stats: DispatchStats) -> None:
        now = self.clock()
        async with self.session_scope() as session:
            event = await OutboxRepository(session).get(event_id, for_update=True)
            event.attempts += 1

            if error is not None:
                event.last_error = error
                if event.attempts >= self.settings.outbox_max_attempts:
                    event.status = "DEAD"
                    stats.dead += 1
                    logger.error(
                        "outbox_event_dead", event_id=event.id, event_type=event.event_type,
                        order_id=event.order_id, attempts=event.attempts, error=error,
                    )
                    await AuditRepository(session).log_event(AuditEvent(
                        order_id=event.order_id,
                        type="OUTBOX_EVENT_DEAD",
                        payload_json={"event_id": event.id, "event_type": event.event_type, "error": error},
                    ))
                else:
                    event.next_retry_at = now + self.backoff_for(event.attempts)
                    stats.retried += 1
                    logger.warning(
                        "outbox_delivery_failed", event_id=event.id, event_type=event.event_type,
                        attempts=event.attempts, next_retry_at=event.next_retry_at.isoformat(), error=error,
                    )
                return

            event.status = "DELIVERED"
            event.delivered_at = now
            event.last_error = None
            stats.delivered += 1

            if event.destination == ERP and ack and ack.get("erpReference") and event.order_id:
                order = await session.get(Order, event.order_id)
                if order is not None and not order.erp_reference:
                    order.erp_reference = str(ack["erpReference"])

        logger.info("outbox_event_delivered", event_id=event_id, event_type=event.event_type, order_id=event.order_id)

    async def replay(self, event_id: str, operator: str) -> OutboxEvent:
        """Put an event (typically DEAD) back in the queue for immediate delivery."""
        async with self.session_scope() as session:
            repo = OutboxRepository(session)
            event = await repo.get(event_id, for_update=True)
            if event is None:
                raise OutboxEventNotFoundError(event_id)

            previous = event.status
            event.status = "PENDING"
            event.attempts = 0
            event.next_retry_at = self.clock()
            await session.flush()

            await AuditRepository(session).log_event(AuditEvent(
                order_id=event.order_id,
                type="OUTBOX_EVENT_REPLAYED",
                actor=f"operator:{operator}",
                payload_json={"event_id": event.id, "event_type": event.event_type, "previous_status": previous},
            ))
        logger.info("outbox_event_replayed", event_id=event_id, operator=operator, previous_status=previous)
        return event
