from datetime import datetime, timezone
from typing import Optional, Any
from uuid import uuid4

from sqlalchemy import (
    String, TIMESTAMP, Integer, Boolean, JSON, ForeignKey, CheckConstraint, Index, func, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp that always comes back as UTC.
    SQLite drops tzinfo on the way out; Postgres keeps it. Both read back aware.
    """
    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(AsyncAttrs, DeclarativeBase):
    pass


class Order(Base):
    """
    One checkout attempt, from Draft to a terminal state.

    `state` only changes through bazaar.domain.states.transition(), which also
    appends to `history`. Money columns are integer minor units (poisha).
    Orders are never deleted; terminal states stay for audit.
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False, index=True, default="DRAFT")
    state_changed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    # Snapshots, not live references to the user/session service
    customer_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    address_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    delivery_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    # Free text from the shopper, kept as submitted
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    tax: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shipping: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BDT")

    collect_on_delivery: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    payment_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    erp_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    lines: Mapped[list["OrderLine"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="OrderLine.id"
    )
    history: Mapped[list["OrderStateChange"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin", order_by="OrderStateChange.id"
    )


class OrderLine(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Captured at order time; never re-read from the catalog
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    line_total: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped["Order"] = relationship(back_populates="lines")


class OrderStateChange(Base):
    """Append-only state history of an order."""
    __tablename__ = "order_state_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    from_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_state: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    ts: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    order: Mapped["Order"] = relationship(back_populates="history")


class OrderSequence(Base):
    """Per-day counter backing the human-readable order ids."""
    __tablename__ = "order_sequences"

    day: Mapped[str] = mapped_column(String(8), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class StockItem(Base):
    """
    Per-SKU stock counters. Only bazaar.inventory.ledger writes here.
    available = on_hand - reserved.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        CheckConstraint("reserved >= 0", name="ck_stock_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_stock_reserved_within_on_hand"),
    )

    sku: Mapped[str] = mapped_column(String(64), primary_key=True)
    on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class Reservation(Base):
    """
    Time-bounded claim on stock for one order.
    ACTIVE -> COMMITTED when the order is paid, ACTIVE -> RELEASED otherwise.
    """
    __tablename__ = "inventory_reservations"
    __table_args__ = (
        # At most one ACTIVE reservation per order
        Index(
            "uq_reservation_active_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE", index=True)

    reserved_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    committed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    release_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    lines: Mapped[list["ReservationLine"]] = relationship(
        back_populates="reservation", cascade="all, delete-orphan", lazy="selectin"
    )


class ReservationLine(Base):
    __tablename__ = "inventory_reservation_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reservation_id: Mapped[str] = mapped_column(
        ForeignKey("inventory_reservations.id"), nullable=False, index=True
    )
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    reservation: Mapped["Reservation"] = relationship(back_populates="lines")


class PaymentAttempt(Base):
    """
    One gateway-facing attempt to collect the order total.

    Idempotency Guarantee:
    - 'idempotency_key' is unique and is sent to the gateway on initiation,
      so a retried initiation cannot open a second charge.
    - A CONFIRMED attempt is never edited again; refunds and disputes are
      separate rows.
    """
    __tablename__ = "payment_attempts"
    __table_args__ = (
        # At most one attempt per order may be waiting on a callback
        Index(
            "uq_attempt_awaiting_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'AWAITING_CALLBACK'"),
            sqlite_where=text("status = 'AWAITING_CALLBACK'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="INITIATED", index=True)

    redirect_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    raw_callback: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    signature: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    # Past this an attempt still INITIATED is taken as abandoned (crash mid-checkout)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    attempt_id: Mapped[str] = mapped_column(ForeignKey("payment_attempts.id"), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)  # RETURN, COMPENSATION
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="REQUESTED")
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class PaymentDispute(Base):
    __tablename__ = "payment_disputes"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    attempt_id: Mapped[str] = mapped_column(ForeignKey("payment_attempts.id"), nullable=False, index=True)
    operator: Mapped[str] = mapped_column(String(128), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class OutboxEvent(Base):
    """
    A side effect that must eventually be delivered (notification, ERP push).

    Written in the same transaction as the state change that causes it.
    Delivered at-least-once; consumers deduplicate on `id`.
    """
    __tablename__ = "outbox_events"
    __table_args__ = (
        Index("ix_outbox_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    order_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    destination: Mapped[str] = mapped_column(String(32), nullable=False)  # notification, erp
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class AuditEvent(Base):
    """
    Immutable audit log: operator actions, rejected callbacks, anomalies.
    """
    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    order_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(128), nullable=False, default="system")
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    ts: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
