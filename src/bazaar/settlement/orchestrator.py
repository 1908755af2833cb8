import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Tuple, Any

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bazaar.common.config import Settings, get_settings
from bazaar.common.db.models import (
    AuditEvent, Order, OrderLine, PaymentAttempt, PaymentDispute, Refund, utcnow,
)
from bazaar.common.db.repositories import (
    AuditRepository, OrderRepository, OutboxRepository, PaymentRepository,
)
from bazaar.common.db.session import SessionScope, get_db_session
from bazaar.common.errors import (
    AttemptNotFoundError,
    CallbackNotReadyError,
    GatewayError,
    InvalidCallbackError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentInitiationFailed,
    RefundAmountError,
    ReservationNotFoundError,
    ReservationReleasedError,
    ReturnWindowClosedError,
    ValidationError,
)
from bazaar.domain import states
from bazaar.domain.pricing import Cart, Catalog, is_bd_mobile, price_cart
from bazaar.domain.states import (
    AttemptStatus, OrderState, RefundReason, RefundStatus, RETRYABLE_STATES, open_order, transition,
)
from bazaar.inventory.ledger import InventoryLedger
from bazaar.outbox import events as outbox_events
from bazaar.payments.gateways import (
    CallbackOutcome, InitiationResult, PaymentGateway, PaymentRequest, RefundResult, VerifiedEvent,
)
from bazaar.payments.registry import GatewayRegistry

logger = get_logger()

SWEEPER = "system:sweeper"


@dataclass
class PlacedOrder:
    order_id: str
    state: str
    total: int
    currency: str
    attempt_id: str
    redirect_url: Optional[str] = None
    collect_on_delivery: bool = False


@dataclass
class CallbackAck:
    """
    Result handed back to the provider. `accepted` maps to HTTP 200; only
    integrity failures are not accepted.
    """
    accepted: bool
    detail: str
    order_id: Optional[str] = None
    duplicate: bool = False


@dataclass
class SweepResult:
    expired: int = 0
    released: int = 0
    abandoned: int = 0

    def as_dict(self) -> dict:
        return {"expired": self.expired, "released": self.released, "abandoned": self.abandoned}


class OrderLocks:
    """
    In-process per-order serialization.
    The order row lock (SELECT ... FOR UPDATE) covers other processes; this
    covers concurrent tasks in this one, including on SQLite.
    """

    def __init__(self):
        self._locks: Dict[str, list] = {}
        self._mutex = asyncio.Lock()

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        async with self._mutex:
            entry = self._locks.get(order_id)
            if entry is None:
                entry = self._locks[order_id] = [asyncio.Lock(), 0]
            entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            async with self._mutex:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(order_id, None)


class SettlementOrchestrator:
    """
    Drives orders through the state machine in response to shopper actions
    and provider callbacks.

    Owns no data beyond transient correlation state: every step is persisted
    before the next one starts, so a restart between reservation and payment
    initiation (or between initiation and the callback, hours later) loses
    nothing. Network calls never run inside a database transaction.
    """

    def __init__(
        self,
        registry: GatewayRegistry,
        catalog: Catalog,
        settings: Optional[Settings] = None,
        session_scope: SessionScope = get_db_session,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[OrderLocks] = None,
    ):
        self.registry = registry
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.session_scope = session_scope
        self.clock = clock
        self.locks = locks or OrderLocks()

    @property
    def reservation_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.reservation_ttl_minutes)

    # =========================================================================
    # Checkout
    # =========================================================================

    async def place_order(self, cart: Cart, payment_method: str, actor: str = "customer") -> PlacedOrder:
        """
        Draft -> PendingPayment: price the cart, reserve stock, start payment.

        Raises ValidationError, InsufficientStockError (nothing persisted) or
        PaymentInitiationFailed (order stays in DRAFT, reservation released).
        """
        quote = await price_cart(cart, self.catalog, self.settings)
        gateway = self.registry.for_method(payment_method)
        self._check_wallet_number(gateway, cart.wallet_number)

        now = self.clock()
        async with self.session_scope() as session:
            # Own transaction: keeps the per-day counter row lock short. Gaps are fine.
            order_id = await OrderRepository(session).next_order_id(now)

        log = logger.bind(order_id=order_id, payment_method=payment_method)

        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = Order(
                    id=order_id,
                    customer_json=dict(cart.customer or {}),
                    address_json=dict(cart.address or {}),
                    delivery_method=cart.delivery_method,
                    payment_method=payment_method,
                    notes=cart.notes,
                    subtotal=quote.subtotal,
                    tax=quote.tax,
                    shipping=quote.shipping,
                    discount=quote.discount,
                    total=quote.total,
                    currency=quote.currency,
                    created_at=now,
                    updated_at=now,
                    lines=[
                        OrderLine(
                            sku=line.sku,
                            name=line.name,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                            line_total=line.line_total,
                        )
                        for line in quote.lines
                    ],
                )
                open_order(order, actor, now)
                await OrderRepository(session).create_order(order)

                # InsufficientStockError rolls the whole transaction back: no order, no reservation
                await InventoryLedger(session).reserve(
                    order_id, [(line.sku, line.quantity) for line in quote.lines], self.reservation_ttl, now
                )
                request = await self._new_attempt(session, order, gateway, payment_method, cart.wallet_number)

        log.info("order_drafted", total=quote.total, attempt_id=request.attempt_id)
        return await self._start_payment(order_id, gateway, request, actor)

    async def retry_payment(
        self,
        order_id: str,
        payment_method: str,
        wallet_number: Optional[str] = None,
        actor: str = "customer",
    ) -> PlacedOrder:
        """
        Start a new attempt for an order whose previous attempt failed to
        initiate, was declined, or expired. Prices stay as captured.
        """
        gateway = self.registry.for_method(payment_method)
        self._check_wallet_number(gateway, wallet_number)
        now = self.clock()

        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = await self._lock_order(session, order_id)
                if OrderState(order.state) not in RETRYABLE_STATES:
                    raise InvalidTransitionError(order_id, order.state, OrderState.PENDING_PAYMENT.value)

                ledger = InventoryLedger(session)
                if await ledger.active_reservation(order_id) is None:
                    await ledger.reserve(
                        order_id, [(line.sku, line.quantity) for line in order.lines], self.reservation_ttl, now
                    )
                order.payment_method = payment_method
                request = await self._new_attempt(session, order, gateway, payment_method, wallet_number)

        logger.info("payment_retry_started", order_id=order_id, payment_method=payment_method)
        return await self._start_payment(order_id, gateway, request, actor)

    def _check_wallet_number(self, gateway: PaymentGateway, wallet_number: Optional[str]) -> None:
        if gateway.requires_wallet_number and not is_bd_mobile(wallet_number):
            raise ValidationError([f"a valid {gateway.name} wallet number is required"])

    async def _new_attempt(
        self,
        session: AsyncSession,
        order: Order,
        gateway: PaymentGateway,
        payment_method: str,
        wallet_number: Optional[str],
    ) -> PaymentRequest:
        payments = PaymentRepository(session)
        sequence = await payments.count_attempts(order.id) + 1
        attempt = await payments.create_attempt(PaymentAttempt(
            order_id=order.id,
            gateway=gateway.name,
            payment_method=payment_method,
            # Must equal the order total at creation time
            amount=order.total,
            currency=order.currency,
            status=AttemptStatus.INITIATED.value,
            idempotency_key=f"{order.id}:{sequence}",
            expires_at=self.clock() + self.reservation_ttl,
        ))
        base = self.settings.public_base_url.rstrip("/")
        return PaymentRequest(
            attempt_id=attempt.id,
            order_id=order.id,
            amount=attempt.amount,
            currency=attempt.currency,
            idempotency_key=attempt.idempotency_key,
            customer=dict(order.customer_json or {}),
            wallet_number=wallet_number,
            return_url=f"{base}/payments/return/{gateway.name}?order={order.id}",
            callback_url=f"{base}/payments/callbacks/{gateway.name}",
        )

    async def _start_payment(
        self, order_id: str, gateway: PaymentGateway, request: PaymentRequest, actor: str
    ) -> PlacedOrder:
        log = logger.bind(order_id=order_id, gateway=gateway.name, attempt_id=request.attempt_id)

        try:
            result = await gateway.initiate_payment(request)
        except GatewayError as e:
            log.warning("payment_initiation_failed", error=str(e))
            await self._abort_initiation(order_id, request.attempt_id, gateway.name, str(e))
            raise PaymentInitiationFailed(order_id, str(e)) from e

        refund_id: Optional[str] = None
        lost_reservation = False
        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = await self._lock_order(session, order_id)
                payments = PaymentRepository(session)
                attempt = await payments.get_attempt(request.attempt_id, for_update=True)

                if attempt.status != AttemptStatus.INITIATED.value:
                    # Already resolved by the sweeper; its outcome stands
                    lost_reservation = True
                elif await InventoryLedger(session).active_reservation(order_id) is None:
                    # Swept while we were talking to the gateway
                    lost_reservation = True
                    attempt.gateway_reference = result.gateway_reference
                    attempt.status = AttemptStatus.FAILED.value
                    order.last_error = "reservation_expired_before_payment_started"
                else:
                    attempt.gateway_reference = result.gateway_reference
                    attempt.redirect_url = result.redirect_url
                    order.payment_reference = result.gateway_reference
                    order.last_error = None
                    transition(
                        order, OrderState.PENDING_PAYMENT, actor,
                        reason=f"payment initiated via {gateway.name}", now=self.clock(),
                    )
                    if result.confirmed:
                        refund_id = await self._confirm_synchronously(session, order, attempt, gateway, result)
                    else:
                        attempt.status = AttemptStatus.AWAITING_CALLBACK.value

                placed = PlacedOrder(
                    order_id=order.id,
                    state=order.state,
                    total=order.total,
                    currency=order.currency,
                    attempt_id=attempt.id,
                    redirect_url=result.redirect_url,
                    collect_on_delivery=order.collect_on_delivery,
                )

        if lost_reservation:
            log.warning("payment_initiation_lost_reservation")
            raise PaymentInitiationFailed(order_id, "reservation expired before payment started")
        if refund_id:
            await self._execute_refund(refund_id)

        log.info("payment_initiated", state=placed.state, redirect=bool(placed.redirect_url))
        return placed

    async def _confirm_synchronously(
        self,
        session: AsyncSession,
        order: Order,
        attempt: PaymentAttempt,
        gateway: PaymentGateway,
        result: InitiationResult,
    ) -> Optional[str]:
        """Gateways like cash on delivery confirm at initiation; no callback will follow."""
        attempt.status = AttemptStatus.CONFIRMED.value
        order.collect_on_delivery = not gateway.requires_callback
        return await self._settle_confirmed(session, order, attempt, actor=f"gateway:{gateway.name}")

    async def _abort_initiation(self, order_id: str, attempt_id: str, gateway: str, error: str) -> None:
        """Compensate a failed initiation: release stock, mark the attempt, keep the order retryable."""
        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = await self._lock_order(session, order_id)
                attempt = await PaymentRepository(session).get_attempt(attempt_id, for_update=True)
                if attempt.status == AttemptStatus.INITIATED.value:
                    attempt.status = AttemptStatus.FAILED.value
                order.last_error = "payment_initiation_failed"
                await self._release_if_held(session, order_id, "payment_initiation_failed")
                await self._audit(session, order_id, "PAYMENT_INITIATION_FAILED", f"gateway:{gateway}",
                                  {"attempt_id": attempt_id, "error": error})

    # =========================================================================
    # Provider callbacks
    # =========================================================================

    async def handle_provider_callback(self, gateway_name: str, raw: Mapping[str, Any]) -> CallbackAck:
        """
        Verify a provider callback and drive the order accordingly.

        Duplicates and late/out-of-order callbacks are accepted (so the provider
        stops retrying) without changing state. Only payloads that fail
        structural or integrity checks are rejected, and those never touch an
        order. Raises CallbackNotReadyError if the callback overtook our own
        initiation commit; the provider should retry.
        """
        gateway = self.registry.get(gateway_name)
        if gateway is None or not gateway.requires_callback:
            await self._reject_callback(gateway_name, raw, "unknown gateway")
            return CallbackAck(accepted=False, detail="unknown gateway")

        try:
            payload = gateway.parse_callback(raw)
        except InvalidCallbackError as e:
            await self._reject_callback(gateway_name, raw, str(e))
            return CallbackAck(accepted=False, detail="invalid payload")

        async with self.session_scope() as session:
            attempt = await PaymentRepository(session).get_attempt(payload.attempt_reference)
            order_id = attempt.order_id if attempt else None
        if order_id is None:
            await self._reject_callback(gateway_name, raw, f"unknown attempt {payload.attempt_reference}")
            return CallbackAck(accepted=False, detail="unknown attempt")

        rejection: Optional[str] = None
        refund_id: Optional[str] = None
        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                # Order row first, then the attempt: same lock order as every other path
                order = await self._lock_order(session, order_id)
                attempt = await PaymentRepository(session).get_attempt(payload.attempt_reference, for_update=True)
                try:
                    event = gateway.verify_callback(payload, attempt)
                except InvalidCallbackError as e:
                    rejection = str(e)
                else:
                    ack, refund_id = await self._apply_verified(session, order, attempt, event)

        if rejection is not None:
            await self._reject_callback(gateway_name, raw, rejection, order_id=order_id)
            return CallbackAck(accepted=False, detail="verification failed", order_id=order_id)

        if refund_id:
            await self._execute_refund(refund_id)
        return ack

    async def _apply_verified(
        self, session: AsyncSession, order: Order, attempt: PaymentAttempt, event: VerifiedEvent
    ) -> Tuple[CallbackAck, Optional[str]]:
        previous = AttemptStatus(attempt.status)
        state = OrderState(order.state)
        actor = f"gateway:{event.gateway}"
        log = logger.bind(order_id=order.id, attempt_id=attempt.id, outcome=event.outcome.value,
                          attempt_status=previous.value, order_state=state.value)

        if previous is AttemptStatus.INITIATED:
            # Our initiation result is not recorded yet, whatever the order state (first try or retry)
            raise CallbackNotReadyError(f"attempt {attempt.id} is still initiating")

        if event.outcome is CallbackOutcome.CONFIRMED:
            if previous is AttemptStatus.CONFIRMED:
                log.info("callback_duplicate")
                return CallbackAck(True, "duplicate", order.id, duplicate=True), None

            attempt.status = AttemptStatus.CONFIRMED.value
            attempt.raw_callback = dict(event.raw)
            attempt.signature = event.signature
            if previous is AttemptStatus.DECLINED:
                await self._audit(session, order.id, "ANOMALY_CONFIRM_AFTER_DECLINE", actor, {"attempt_id": attempt.id})

            if state is OrderState.PENDING_PAYMENT and previous is AttemptStatus.AWAITING_CALLBACK:
                refund_id = await self._settle_confirmed(session, order, attempt, actor)
            elif state is OrderState.EXPIRED:
                transition(order, OrderState.PAYMENT_FAILED, actor,
                           reason="payment confirmed after reservation expired", now=self.clock())
                refund_id = await self._record_compensation(session, order, attempt, "reservation_expired")
            else:
                # Cancelled, failed, or already paid through another attempt: the money goes back
                log.warning("callback_confirmation_after_close")
                await self._audit(session, order.id, "ANOMALY_CONFIRMATION_AFTER_CLOSE", actor,
                                  {"attempt_id": attempt.id, "order_state": state.value})
                refund_id = await self._record_compensation(session, order, attempt, f"order_{state.value.lower()}")
            log.info("callback_confirmed_processed", new_state=order.state)
            return CallbackAck(True, "processed", order.id), refund_id

        # DECLINED
        if previous is AttemptStatus.CONFIRMED:
            # Should never happen with a correct provider; the order must not regress
            log.warning("callback_decline_after_confirm")
            await self._audit(session, order.id, "ANOMALY_DECLINE_AFTER_CONFIRM", actor,
                              {"attempt_id": attempt.id, "raw": dict(event.raw)})
            return CallbackAck(True, "ignored", order.id, duplicate=True), None
        if previous is AttemptStatus.DECLINED:
            log.info("callback_duplicate")
            return CallbackAck(True, "duplicate", order.id, duplicate=True), None

        attempt.status = AttemptStatus.DECLINED.value
        attempt.raw_callback = dict(event.raw)
        attempt.signature = event.signature

        if state is OrderState.PENDING_PAYMENT and previous is AttemptStatus.AWAITING_CALLBACK:
            transition(order, OrderState.PAYMENT_FAILED, actor, reason="payment declined", now=self.clock())
            await self._release_if_held(session, order.id, "payment_declined")
            await OutboxRepository(session).add(outbox_events.notification_event(
                order, outbox_events.ORDER_PAYMENT_FAILED,
                {"message": "Payment was not completed. Please retry or choose another payment method."},
            ))
        log.info("callback_declined_processed", new_state=order.state)
        return CallbackAck(True, "processed", order.id), None

    async def _settle_confirmed(
        self, session: AsyncSession, order: Order, attempt: PaymentAttempt, actor: str
    ) -> Optional[str]:
        """
        PendingPayment -> Paid: commit stock, transition, record outbox events.
        All in the caller's transaction. If the reservation is gone the order
        goes to PaymentFailed instead and a compensating refund is recorded;
        returns that refund's id.
        """
        now = self.clock()
        try:
            await InventoryLedger(session).commit(order.id, now)
        except (ReservationReleasedError, ReservationNotFoundError):
            transition(order, OrderState.PAYMENT_FAILED, actor,
                       reason="stock reservation lost before payment confirmation", now=now)
            return await self._record_compensation(session, order, attempt, "reservation_lost")

        transition(order, OrderState.PAID, actor, reason=f"payment confirmed by {attempt.gateway}", now=now)

        outbox = OutboxRepository(session)
        await outbox.add(outbox_events.notification_event(
            order, outbox_events.ORDER_PAID, {"paymentMethod": order.payment_method},
        ))
        payment_status = "COLLECT_ON_DELIVERY" if order.collect_on_delivery else "PAID"
        await outbox.add(outbox_events.erp_sync_event(order, payment_status))
        if order.collect_on_delivery:
            await outbox.add(outbox_events.notification_event(
                order, outbox_events.ORDER_COLLECT_ON_DELIVERY, {"amountToCollect": order.total},
            ))
        return None

    async def _record_compensation(
        self, session: AsyncSession, order: Order, attempt: PaymentAttempt, reason: str
    ) -> str:
        """Money was collected but cannot be kept: the refund is mandatory."""
        payments = PaymentRepository(session)
        amount = attempt.amount - await payments.refunded_total(attempt.id)
        refund = await payments.create_refund(Refund(
            attempt_id=attempt.id,
            order_id=order.id,
            amount=amount,
            reason=RefundReason.COMPENSATION.value,
            status=RefundStatus.REQUESTED.value,
        ))
        await OutboxRepository(session).add(outbox_events.notification_event(
            order, outbox_events.PAYMENT_COMPENSATING_REFUND, {"refundAmount": amount, "reason": reason},
        ))
        await self._audit(session, order.id, "COMPENSATING_REFUND_REQUESTED", "system",
                          {"attempt_id": attempt.id, "refund_id": refund.id, "amount": amount, "reason": reason})
        logger.warning("compensating_refund_recorded", order_id=order.id, attempt_id=attempt.id, amount=amount, reason=reason)
        return refund.id

    async def _reject_callback(
        self, gateway_name: str, raw: Any, reason: str, order_id: Optional[str] = None
    ) -> None:
        logger.warning("callback_rejected", gateway=gateway_name, order_id=order_id, reason=reason)
        async with self.session_scope() as session:
            await self._audit(session, order_id, "CALLBACK_REJECTED", f"gateway:{gateway_name}", {
                "gateway": gateway_name,
                "reason": reason,
                "raw": dict(raw) if isinstance(raw, Mapping) else repr(raw),
            })

    # =========================================================================
    # Refunds
    # =========================================================================

    async def _execute_refund(self, refund_id: str) -> str:
        """
        Send a recorded refund to the gateway and record the outcome.
        A failed refund is never retried into a guessed state: the order is
        flagged for manual reconciliation and operators are alerted.
        """
        async with self.session_scope() as session:
            payments = PaymentRepository(session)
            refund = await payments.get_refund(refund_id)
            attempt = await payments.get_attempt(refund.attempt_id)
            order_id, amount = refund.order_id, refund.amount

        gateway = self.registry.get(attempt.gateway)
        if gateway is None:
            result = RefundResult(succeeded=False, message=f"gateway {attempt.gateway} not configured")
        else:
            try:
                result = await gateway.refund(attempt, amount, refund_id)
            except GatewayError as e:
                result = RefundResult(succeeded=False, message=str(e))

        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = await self._lock_order(session, order_id)
                refund = await PaymentRepository(session).get_refund(refund_id)
                outbox = OutboxRepository(session)

                if result.succeeded:
                    refund.status = RefundStatus.SUCCEEDED.value
                    refund.gateway_reference = result.gateway_reference
                    if refund.reason == RefundReason.RETURN.value and order.state == OrderState.RETURNED.value:
                        transition(order, OrderState.REFUNDED, "system", reason="refund completed", now=self.clock())
                        await outbox.add(outbox_events.notification_event(
                            order, outbox_events.ORDER_REFUNDED, {"refundAmount": refund.amount},
                        ))
                        await outbox.add(outbox_events.erp_sync_event(order, "REFUNDED"))
                    logger.info("refund_succeeded", order_id=order_id, refund_id=refund_id, amount=amount)
                else:
                    refund.status = RefundStatus.FAILED.value
                    refund.last_error = result.message
                    order.needs_reconciliation = True
                    await outbox.add(outbox_events.operator_alert_event(
                        order_id,
                        "Refund failed; manual reconciliation required",
                        self.settings.ops_alert_recipient,
                        {"refundId": refund_id, "amount": amount, "reason": refund.reason},
                    ))
                    await self._audit(session, order_id, "REFUND_FAILED", "system",
                                      {"refund_id": refund_id, "error": result.message})
                    logger.error("refund_failed", order_id=order_id, refund_id=refund_id, error=result.message)
                return refund.status

    # =========================================================================
    # Shopper / fulfilment actions
    # =========================================================================

    async def cancel_order(self, order_id: str, actor: str = "customer", reason: Optional[str] = None) -> Order:
        """Shopper cancellation; only while payment is pending."""
        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = await self._lock_order(session, order_id)
                if order.state != OrderState.PENDING_PAYMENT.value:
                    raise InvalidTransitionError(order_id, order.state, OrderState.CANCELLED.value)

                transition(order, OrderState.CANCELLED, actor, reason=reason or "cancelled by customer", now=self.clock())
                await self._release_if_held(session, order_id, "cancelled")
                await PaymentRepository(session).expire_awaiting(order_id)

                outbox = OutboxRepository(session)
                await outbox.add(outbox_events.notification_event(order, outbox_events.ORDER_CANCELLED))
                await outbox.add(outbox_events.erp_sync_event(order, "CANCELLED"))
        return order

    async def mark_fulfilling(self, order_id: str, actor: str = "system:fulfilment") -> Order:
        return await self._simple_transition(order_id, OrderState.FULFILLING, actor, "handed to fulfilment")

    async def mark_completed(self, order_id: str, actor: str = "system:fulfilment") -> Order:
        return await self._simple_transition(order_id, OrderState.COMPLETED, actor, "delivered")

    async def _simple_transition(self, order_id: str, target: OrderState, actor: str, reason: str) -> Order:
        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = await self._lock_order(session, order_id)
                transition(order, target, actor, reason=reason, now=self.clock())
        return order

    async def request_return(
        self,
        order_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        actor: str = "customer",
    ) -> Tuple[Order, str]:
        """
        Paid/Fulfilling -> Returned within the return window, then refund.
        `amount` defaults to everything not yet refunded; partial amounts are allowed.
        Returns the order and the refund status.
        """
        now = self.clock()
        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = await self._lock_order(session, order_id)
                if not states.can_transition(OrderState(order.state), OrderState.RETURNED):
                    raise InvalidTransitionError(order_id, order.state, OrderState.RETURNED.value)
                window = timedelta(days=self.settings.return_window_days)
                if order.paid_at is None or now - order.paid_at > window:
                    raise ReturnWindowClosedError(f"Order {order_id}: return window of {window.days} days has closed")

                payments = PaymentRepository(session)
                attempt = await payments.confirmed_attempt(order_id)
                if attempt is None:
                    raise RefundAmountError(f"Order {order_id} has no confirmed payment")
                refundable = attempt.amount - await payments.refunded_total(attempt.id)
                amount = refundable if amount is None else amount
                if amount <= 0 or amount > refundable:
                    raise RefundAmountError(f"Order {order_id}: refund {amount} outside 1..{refundable}")

                transition(order, OrderState.RETURNED, actor, reason=reason or "return requested", now=now)
                refund = await payments.create_refund(Refund(
                    attempt_id=attempt.id,
                    order_id=order_id,
                    amount=amount,
                    reason=RefundReason.RETURN.value,
                    status=RefundStatus.REQUESTED.value,
                ))
                await OutboxRepository(session).add(outbox_events.notification_event(
                    order, outbox_events.ORDER_RETURNED, {"refundAmount": amount},
                ))
                refund_id = refund.id

        logger.info("return_requested", order_id=order_id, amount=amount, refund_id=refund_id)
        refund_status = await self._execute_refund(refund_id)
        return await self.get_order(order_id), refund_status

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def expire_stale_checkouts(self, limit: int = 100) -> SweepResult:
        """
        Release reservations past their expiry. Orders still waiting on payment
        move to EXPIRED; drafts left behind by a crash just get their stock back.
        Attempts still INITIATED past their expiry are marked EXPIRED so a late
        confirmation is refunded instead of being deferred forever.
        """
        now = self.clock()
        result = SweepResult()
        async with self.session_scope() as session:
            candidates = [r.order_id for r in await InventoryLedger(session).expired_reservations(now, limit)]

        for order_id in candidates:
            async with self.locks.hold(order_id):
                async with self.session_scope() as session:
                    order = await self._lock_order(session, order_id)
                    ledger = InventoryLedger(session)
                    active = await ledger.active_reservation(order_id)
                    if active is None or active.expires_at > now:
                        continue
                    await ledger.release(order_id, "expired", now)
                    result.released += 1

                    if order.state == OrderState.PENDING_PAYMENT.value:
                        transition(order, OrderState.EXPIRED, SWEEPER, reason="reservation expired", now=now)
                        await PaymentRepository(session).expire_awaiting(order_id)
                        await OutboxRepository(session).add(
                            outbox_events.notification_event(order, outbox_events.ORDER_EXPIRED)
                        )
                        result.expired += 1

        async with self.session_scope() as session:
            stale = [(a.order_id, a.id) for a in await PaymentRepository(session).stale_initiated(now, limit)]

        for order_id, attempt_id in stale:
            async with self.locks.hold(order_id):
                async with self.session_scope() as session:
                    await self._lock_order(session, order_id)
                    attempt = await PaymentRepository(session).get_attempt(attempt_id, for_update=True)
                    if attempt.status != AttemptStatus.INITIATED.value:
                        continue
                    # Initiation never recorded: any confirmation that still arrives is refunded
                    attempt.status = AttemptStatus.EXPIRED.value
                    await self._release_if_held(session, order_id, "expired")
                    await self._audit(session, order_id, "PAYMENT_ATTEMPT_ABANDONED", SWEEPER,
                                      {"attempt_id": attempt_id, "gateway": attempt.gateway})
                    result.abandoned += 1

        if candidates or stale:
            logger.info("checkout_sweep_completed", **result.as_dict())
        return result

    async def close_abandoned_orders(self, limit: int = 100) -> int:
        """Expired / PaymentFailed orders past the grace period become CANCELLED."""
        now = self.clock()
        cutoff = now - timedelta(minutes=self.settings.abandoned_order_grace_minutes)
        closable = [OrderState.EXPIRED.value, OrderState.PAYMENT_FAILED.value]

        async with self.session_scope() as session:
            order_ids = [o.id for o in await OrderRepository(session).list_in_states(closable, cutoff, limit)]

        closed = 0
        for order_id in order_ids:
            async with self.locks.hold(order_id):
                async with self.session_scope() as session:
                    order = await self._lock_order(session, order_id)
                    if order.state not in closable or order.state_changed_at > cutoff:
                        continue
                    transition(order, OrderState.CANCELLED, SWEEPER, reason="abandoned", now=now)
                    await self._release_if_held(session, order_id, "abandoned")
                    await PaymentRepository(session).expire_awaiting(order_id)
                    await OutboxRepository(session).add(outbox_events.erp_sync_event(order, "CANCELLED"))
                    closed += 1

        if closed:
            logger.info("abandoned_orders_closed", count=closed)
        return closed

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def force_release(self, order_id: str, operator: str) -> Order:
        """Release an order's stock claim by hand (stuck or expired checkout)."""
        actor = f"operator:{operator}"
        async with self.locks.hold(order_id):
            async with self.session_scope() as session:
                order = await self._lock_order(session, order_id)
                reservation = await InventoryLedger(session).release(order_id, "operator_release", self.clock())
                if order.state == OrderState.PENDING_PAYMENT.value:
                    transition(order, OrderState.EXPIRED, actor, reason="reservation released by operator", now=self.clock())
                    await PaymentRepository(session).expire_awaiting(order_id)
                    await OutboxRepository(session).add(
                        outbox_events.notification_event(order, outbox_events.ORDER_EXPIRED)
                    )
                await self._audit(session, order_id, "RESERVATION_FORCE_RELEASED", actor,
                                  {"reservation_id": reservation.id, "order_state": order.state})
        logger.info("reservation_force_released", order_id=order_id, operator=operator)
        return order

    async def mark_disputed(self, attempt_id: str, operator: str, note: Optional[str] = None) -> PaymentDispute:
        """Record a dispute against an attempt. The attempt itself is left untouched."""
        actor = f"operator:{operator}"
        async with self.session_scope() as session:
            payments = PaymentRepository(session)
            attempt = await payments.get_attempt(attempt_id)
            if attempt is None:
                raise AttemptNotFoundError(attempt_id)
            dispute = await payments.add_dispute(PaymentDispute(attempt_id=attempt_id, operator=operator, note=note))
            await self._audit(session, attempt.order_id, "PAYMENT_DISPUTED", actor,
                              {"attempt_id": attempt_id, "dispute_id": dispute.id, "note": note})
            await OutboxRepository(session).add(outbox_events.operator_alert_event(
                attempt.order_id,
                "Payment marked as disputed",
                self.settings.ops_alert_recipient,
                {"attemptId": attempt_id, "operator": operator, "note": note},
            ))
        logger.info("payment_marked_disputed", attempt_id=attempt_id, operator=operator)
        return dispute

    # =========================================================================
    # Queries / helpers
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        async with self.session_scope() as session:
            order = await OrderRepository(session).get_order_by_id(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            return order

    async def get_attempts(self, order_id: str) -> List[PaymentAttempt]:
        async with self.session_scope() as session:
            return await PaymentRepository(session).attempts_for_order(order_id)

    async def _lock_order(self, session: AsyncSession, order_id: str) -> Order:
        order = await OrderRepository(session).get_order_for_update(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _release_if_held(self, session: AsyncSession, order_id: str, reason: str) -> None:
        ledger = InventoryLedger(session)
        if await ledger.active_reservation(order_id) is not None:
            await ledger.release(order_id, reason, self.clock())

    async def _audit(self, session: AsyncSession, order_id: Optional[str], event_type: str, actor: str, payload: dict) -> None:
        await AuditRepository(session).log_event(AuditEvent(
            order_id=order_id, type=event_type, actor=actor, payload_json=payload, ts=self.clock(),
        ))
