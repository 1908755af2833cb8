from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bazaar.common.db.models import (
    Order, OrderSequence, PaymentAttempt, Refund, PaymentDispute, OutboxEvent, AuditEvent,
)

logger = get_logger()


class OrderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_order(self, order: Order) -> Order:
        """Create a new order."""
        self.session.add(order)
        await self.session.flush()
        return order

    async def get_order_by_id(self, order_id: str) -> Optional[Order]:
        """Fetch order by ID."""
        result = await self.session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def get_order_for_update(self, order_id: str) -> Optional[Order]:
        """
        Fetch order by ID holding its row lock until the transaction ends.
        This is the per-order serialization point for every state change.
        """
        result = await self.session.execute(
            select(Order).where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def next_order_id(self, now: datetime) -> str:
        """
        Allocate the next human-readable order id for the day: ORD-YYYYMMDD-NNNNNN.
        Upsert-with-returning keeps the counter race free on both Postgres and SQLite.
        """
        day = now.strftime("%Y%m%d")
        insert_ = pg_insert if self.session.bind.dialect.name == "postgresql" else sqlite_insert
        stmt = (
            insert_(OrderSequence)
            .values(day=day, last_value=1)
            .on_conflict_do_update(
                index_elements=[OrderSequence.day],
                set_={"last_value": OrderSequence.last_value + 1},
            )
            .returning(OrderSequence.last_value)
        )
        result = await self.session.execute(stmt)
        return f"ORD-{day}-{result.scalar_one():06d}"

    async def list_in_states(self, states: List[str], changed_before: datetime, limit: int = 100) -> List[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.state.in_(states), Order.state_changed_at <= changed_before)
            .order_by(Order.state_changed_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class PaymentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt:
        """
        Record a new attempt.
        Raises IntegrityError on idempotency key conflict or a second AWAITING_CALLBACK attempt.
        """
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def get_attempt(self, attempt_id: str, for_update: bool = False) -> Optional[PaymentAttempt]:
        stmt = select(PaymentAttempt).where(PaymentAttempt.id == attempt_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def attempts_for_order(self, order_id: str) -> List[PaymentAttempt]:
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.order_id == order_id)
            .order_by(PaymentAttempt.created_at, PaymentAttempt.id)
        )
        return list(result.scalars().all())

    async def count_attempts(self, order_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(PaymentAttempt).where(PaymentAttempt.order_id == order_id)
        )
        return result.scalar_one()

    async def expire_awaiting(self, order_id: str) -> int:
        """Move any attempt still waiting on a callback to EXPIRED."""
        result = await self.session.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.order_id == order_id, PaymentAttempt.status == "AWAITING_CALLBACK")
            .values(status="EXPIRED")
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def stale_initiated(self, now: datetime, limit: int = 100) -> List[PaymentAttempt]:
        """Attempts that never got past initiation before their expiry."""
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(
                PaymentAttempt.status == "INITIATED",
                PaymentAttempt.expires_at.is_not(None),
                PaymentAttempt.expires_at <= now,
            )
            .order_by(PaymentAttempt.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def confirmed_attempt(self, order_id: str) -> Optional[PaymentAttempt]:
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.order_id == order_id, PaymentAttempt.status == "CONFIRMED")
            .order_by(PaymentAttempt.updated_at.desc())
        )
        return result.scalars().first()

    async def create_refund(self, refund: Refund) -> Refund:
        self.session.add(refund)
        await self.session.flush()
        return refund

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        result = await self.session.execute(select(Refund).where(Refund.id == refund_id))
        return result.scalar_one_or_none()

    async def refunds_for_order(self, order_id: str) -> List[Refund]:
        result = await self.session.execute(
            select(Refund).where(Refund.order_id == order_id).order_by(Refund.created_at)
        )
        return list(result.scalars().all())

    async def refunded_total(self, attempt_id: str) -> int:
        """Sum of refunds against an attempt that succeeded or are still in flight."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(Refund.amount), 0))
            .where(Refund.attempt_id == attempt_id, Refund.status.in_(["REQUESTED", "SUCCEEDED"]))
        )
        return int(result.scalar_one())

    async def add_dispute(self, dispute: PaymentDispute) -> PaymentDispute:
        self.session.add(dispute)
        await self.session.flush()
        return dispute


class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, event: OutboxEvent) -> OutboxEvent:
        self.session.add(event)
        await self.session.flush()
        logger.info("outbox_event_recorded", event_type=event.event_type, order_id=event.order_id)
        return event

    async def get(self, event_id: str, for_update: bool = False) -> Optional[OutboxEvent]:
        stmt = select(OutboxEvent).where(OutboxEvent.id == event_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def due(self, now: datetime, limit: int) -> List[OutboxEvent]:
        """Pending events whose retry time has come, oldest first."""
        result = await self.session.execute(
            select(OutboxEvent)
            .where(OutboxEvent.status == "PENDING", OutboxEvent.next_retry_at <= now)
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def events_for_order(self, order_id: str) -> List[OutboxEvent]:
        result = await self.session.execute(
            select(OutboxEvent).where(OutboxEvent.order_id == order_id).order_by(OutboxEvent.created_at)
        )
        return list(result.scalars().all())


class AuditRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_event(self, event: AuditEvent) -> AuditEvent:
        """Append an event to the audit log."""
        self.session.add(event)
        await self.session.flush()
        logger.info("audit_event_logged", event_type=event.type, order_id=event.order_id, actor=event.actor)
        return event

    async def get_events_for_order(self, order_id: str) -> List[AuditEvent]:
        """Retrieve all audit events for a specific order."""
        result = await self.session.execute(
            select(AuditEvent).where(AuditEvent.order_id == order_id).order_by(AuditEvent.ts)
        )
        return list(result.scalars().all())

    async def get_events_by_type(self, event_type: str) -> List[AuditEvent]:
        result = await self.session.execute(
            select(AuditEvent).where(AuditEvent.type == event_type).order_by(AuditEvent.ts)
        )
        return list(result.scalars().all())
