from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bazaar.common.db.models import Order, Reservation, ReservationLine, StockItem, utcnow
from bazaar.common.errors import (
    ActiveReservationExistsError,
    InsufficientStockError,
    ReservationNotFoundError,
    ReservationReleasedError,
    ReservationStateError,
)
from bazaar.domain.states import PAYMENT_CONFIRMED_STATES, ReservationStatus

logger = get_logger()

DEFAULT_TTL = timedelta(minutes=15)


class InventoryLedger:
    """
    Sole authority on available vs. reserved stock.

    Works inside the caller's transaction: nothing here commits. Every counter
    change is a single conditional UPDATE on the SKU row, so concurrent
    reservations for one SKU serialize on its row lock while different SKUs
    proceed in parallel. No other component writes `stock_items`.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # --- Queries ---

    async def available(self, sku: str) -> int:
        item = await self.session.get(StockItem, sku, populate_existing=True)
        return (item.on_hand - item.reserved) if item else 0

    async def stock_level(self, sku: str) -> Optional[StockItem]:
        return await self.session.get(StockItem, sku, populate_existing=True)

    async def active_reservation(self, order_id: str) -> Optional[Reservation]:
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.order_id == order_id, Reservation.status == ReservationStatus.ACTIVE.value)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def current_reservation(self, order_id: str) -> Optional[Reservation]:
        """
        The reservation that decides commit/release outcomes: the ACTIVE one if
        any, else a COMMITTED one, else the most recent RELEASED one.
        """
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.order_id == order_id)
            .order_by(
                case(
                    (Reservation.status == ReservationStatus.ACTIVE.value, 0),
                    (Reservation.status == ReservationStatus.COMMITTED.value, 1),
                    else_=2,
                ),
                Reservation.reserved_at.desc(),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    # --- Mutations ---

    async def restock(self, sku: str, quantity: int) -> StockItem:
        """Add physical stock (goods received). Creates the SKU row if needed."""
        if quantity < 0:
            raise ValueError("restock quantity must be non-negative")
        item = await self.session.get(StockItem, sku, with_for_update=True, populate_existing=True)
        if item is None:
            item = StockItem(sku=sku, on_hand=quantity, reserved=0)
            self.session.add(item)
        else:
            item.on_hand += quantity
        await self.session.flush()
        logger.info("stock_restocked", sku=sku, quantity=quantity, on_hand=item.on_hand)
        return item

    async def reserve(
        self,
        order_id: str,
        lines: Iterable[Tuple[str, int]],
        ttl: timedelta = DEFAULT_TTL,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """
        Claim stock for every line or for none.

        Raises InsufficientStockError naming every short SKU; in that case
        the counters are back where they started when this returns.
        """
        now = now or utcnow()

        requested: Dict[str, int] = {}
        for sku, quantity in lines:
            if quantity <= 0:
                raise ValueError(f"{sku}: quantity must be positive")
            requested[sku] = requested.get(sku, 0) + quantity

        if await self.active_reservation(order_id) is not None:
            raise ActiveReservationExistsError(order_id)

        claimed: List[Tuple[str, int]] = []
        shortages: Dict[str, Tuple[int, int]] = {}

        # Fixed SKU order so two multi-line reservations never lock rows in opposite orders
        for sku in sorted(requested):
            quantity = requested[sku]
            result = await self.session.execute(
                update(StockItem)
                .where(StockItem.sku == sku, StockItem.on_hand - StockItem.reserved >= quantity)
                .values(reserved=StockItem.reserved + quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append((sku, quantity))
            else:
                shortages[sku] = (quantity, await self.available(sku))

        if shortages:
            for sku, quantity in claimed:
                await self._adjust(sku, reserved_delta=-quantity)
            logger.info("reservation_rejected", order_id=order_id, shortages=shortages)
            raise InsufficientStockError(shortages)

        reservation = Reservation(
            order_id=order_id,
            status=ReservationStatus.ACTIVE.value,
            reserved_at=now,
            expires_at=now + ttl,
            lines=[ReservationLine(sku=sku, quantity=qty) for sku, qty in sorted(requested.items())],
        )
        self.session.add(reservation)
        await self.session.flush()

        logger.info(
            "stock_reserved",
            order_id=order_id,
            reservation_id=reservation.id,
            lines=dict(requested),
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation

    async def commit(self, order_id: str, now: Optional[datetime] = None) -> Reservation:
        """
        Turn the order's reservation into a permanent stock decrement.
        Idempotent: committing a COMMITTED reservation is a no-op.
        """
        reservation = await self.current_reservation(order_id)
        if reservation is None:
            raise ReservationNotFoundError(order_id)
        if reservation.status == ReservationStatus.COMMITTED.value:
            logger.info("reservation_commit_noop", order_id=order_id, reservation_id=reservation.id)
            return reservation
        if reservation.status == ReservationStatus.RELEASED.value:
            raise ReservationReleasedError(order_id)

        for line in reservation.lines:
            await self._adjust(line.sku, reserved_delta=-line.quantity, on_hand_delta=-line.quantity)

        reservation.status = ReservationStatus.COMMITTED.value
        reservation.committed_at = now or utcnow()
        await self.session.flush()
        logger.info("reservation_committed", order_id=order_id, reservation_id=reservation.id)
        return reservation

    async def release(self, order_id: str, reason: str = "released", now: Optional[datetime] = None) -> Reservation:
        """
        Return the reserved quantities to available stock.
        Idempotent: releasing a RELEASED reservation is a no-op.
        """
        reservation = await self.current_reservation(order_id)
        if reservation is None:
            raise ReservationNotFoundError(order_id)
        if reservation.status == ReservationStatus.RELEASED.value:
            logger.info("reservation_release_noop", order_id=order_id, reservation_id=reservation.id)
            return reservation
        if reservation.status == ReservationStatus.COMMITTED.value:
            raise ReservationStateError(order_id, f"Reservation for order {order_id} is already committed")

        return await self._release(reservation, reason, now)

    async def expired_reservations(self, now: Optional[datetime] = None, limit: int = 100) -> List[Reservation]:
        """ACTIVE reservations past expiry whose order never reached a payment-confirmed state."""
        now = now or utcnow()
        result = await self.session.execute(
            select(Reservation)
            .join(Order, Order.id == Reservation.order_id)
            .where(
                Reservation.status == ReservationStatus.ACTIVE.value,
                Reservation.expires_at <= now,
                Order.state.not_in([s.value for s in PAYMENT_CONFIRMED_STATES]),
            )
            .order_by(Reservation.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sweep_expired(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """Release every expired ACTIVE reservation. Returns the affected order ids."""
        now = now or utcnow()
        released: List[str] = []
        for reservation in await self.expired_reservations(now, limit):
            await self._release(reservation, "expired", now)
            released.append(reservation.order_id)
        if released:
            logger.info("reservations_swept", count=len(released), order_ids=released)
        return released

    # --- Internals ---

    async def _release(self, reservation: Reservation, reason: str, now: Optional[datetime]) -> Reservation:
        for line in reservation.lines:
            await self._adjust(line.sku, reserved_delta=-line.quantity)
        reservation.status = ReservationStatus.RELEASED.value
        reservation.released_at = now or utcnow()
        reservation.release_reason = reason
        await self.session.flush()
        logger.info(
            "reservation_released",
            order_id=reservation.order_id,
            reservation_id=reservation.id,
            reason=reason,
        )
        return reservation

    async def _adjust(self, sku: str, reserved_delta: int = 0, on_hand_delta: int = 0) -> None:
        await self.session.execute(
            update(StockItem)
            .where(StockItem.sku == sku)
            .values(
                reserved=StockItem.reserved + reserved_delta,
                on_hand=StockItem.on_hand + on_hand_delta,
            )
            .execution_options(synchronize_session=False)
        )
