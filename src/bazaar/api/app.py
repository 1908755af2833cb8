from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union
from urllib.parse import parse_qsl

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from structlog import get_logger

from bazaar.api.models import (
    CallbackResponse,
    CancelRequest,
    OrderLineResponse,
    OrderResponse,
    PaymentReturnResponse,
    PlaceOrderRequest,
    PlaceOrderResponse,
    RetryPaymentRequest,
    ReturnRequest,
    ErrorResponse,
    ReturnResponse,
    StateChangeResponse,
)
from bazaar.common.config import get_settings
from bazaar.common.db.models import Order
from bazaar.common.db.session import configure_database
from bazaar.common.errors import (
    AttemptNotFoundError,
    CallbackNotReadyError,
    GatewayUnavailableError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentInitiationFailed,
    RefundAmountError,
    ReturnWindowClosedError,
    SettlementError,
    ValidationError,
)
from bazaar.common.logging import configure_logging
from bazaar.domain.pricing import Cart, CartLine
from bazaar.domain.states import OrderState
from bazaar.settlement.orchestrator import PlacedOrder, SettlementOrchestrator
from bazaar.settlement.services import build_orchestrator

logger = get_logger()

# SettlementError subclass -> HTTP status. First match wins, so subclasses go first.
ERROR_STATUS = [
    (ValidationError, 422),
    (RefundAmountError, 422),
    (OrderNotFoundError, 404),
    (AttemptNotFoundError, 404),
    (InsufficientStockError, 409),
    (InvalidTransitionError, 409),
    (ReturnWindowClosedError, 409),
    (PaymentInitiationFailed, 502),
    (GatewayUnavailableError, 503),
    (CallbackNotReadyError, 503),
]


def status_for(exc: SettlementError) -> int:
    for error_cls, status in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status
    return 500


# Documented error body for every route. 422 keeps FastAPI's request validation schema.
ERROR_RESPONSES: Dict[Union[int, str], Dict[str, Any]] = {
    status: {"model": ErrorResponse} for status in sorted({status for _, status in ERROR_STATUS}) if status != 422
}


def error_detail(exc: SettlementError) -> Optional[Any]:
    if isinstance(exc, ValidationError):
        return exc.problems
    if isinstance(exc, InsufficientStockError):
        return {sku: {"requested": req, "available": avail} for sku, (req, avail) in exc.shortages.items()}
    if isinstance(exc, PaymentInitiationFailed):
        # The order stays retryable under this id
        return {"orderId": exc.order_id}
    return None


def order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        order_id=order.id,
        state=order.state,
        delivery_method=order.delivery_method,
        payment_method=order.payment_method,
        notes=order.notes,
        subtotal=order.subtotal,
        tax=order.tax,
        shipping=order.shipping,
        discount=order.discount,
        total=order.total,
        currency=order.currency,
        collect_on_delivery=order.collect_on_delivery,
        needs_reconciliation=order.needs_reconciliation,
        payment_reference=order.payment_reference,
        erp_reference=order.erp_reference,
        created_at=order.created_at,
        paid_at=order.paid_at,
        lines=[
            OrderLineResponse(
                sku=line.sku, name=line.name, quantity=line.quantity,
                unit_price=line.unit_price, line_total=line.line_total,
            )
            for line in order.lines
        ],
        history=[
            StateChangeResponse(
                from_state=change.from_state, to_state=change.to_state,
                actor=change.actor, reason=change.reason, ts=change.ts,
            )
            for change in order.history
        ],
    )


def placed_response(placed: PlacedOrder) -> PlaceOrderResponse:
    return PlaceOrderResponse(
        order_id=placed.order_id,
        state=placed.state,
        total=placed.total,
        currency=placed.currency,
        attempt_id=placed.attempt_id,
        redirect_url=placed.redirect_url,
        collect_on_delivery=placed.collect_on_delivery,
    )


def create_app(orchestrator: Optional[SettlementOrchestrator] = None) -> FastAPI:
    """
    Build the API. Pass an orchestrator to skip wiring real gateways,
    catalog and database (tests do).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging("bazaar-api")
        if orchestrator is not None:
            yield
            return

        settings = get_settings()
        configure_database(settings.database_url)
        async with httpx.AsyncClient() as http:
            app.state.orchestrator = build_orchestrator(settings, http)
            logger.info("api_started", payment_methods=app.state.orchestrator.registry.methods)
            yield
        logger.info("api_shutdown")

    app = FastAPI(title="Bazaar Settlement API", version="0.1.0", lifespan=lifespan, responses=ERROR_RESPONSES)
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
        status = status_for(exc)
        log = logger.error if status >= 500 else logger.info
        log("request_failed", path=request.url.path, status=status, error=str(exc), error_type=type(exc).__name__)
        return JSONResponse(
            status_code=status,
            content=ErrorResponse(error=exc.user_message, detail=error_detail(exc)).model_dump(),
        )

    # --- Dependencies ---

    def get_orchestrator(request: Request) -> SettlementOrchestrator:
        service = getattr(request.app.state, "orchestrator", None)
        if service is None:
            raise HTTPException(status_code=503, detail="Settlement service not available")
        return service

    # --- Orders ---

    @app.post("/orders", status_code=201, response_model=PlaceOrderResponse)
    async def place_order(
        request: PlaceOrderRequest,
        service: SettlementOrchestrator = Depends(get_orchestrator),
    ):
        """Validate, price and reserve the cart, then start payment."""
        cart = Cart(
            customer=request.customer,
            address=request.address,
            delivery_method=request.delivery_method,
            lines=[CartLine(sku=line.sku, quantity=line.quantity) for line in request.lines],
            wallet_number=request.wallet_number,
            coupon_code=request.coupon_code,
            notes=request.notes,
        )
        placed = await service.place_order(cart, request.payment_method)
        return placed_response(placed)

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    async def get_order(order_id: str, service: SettlementOrchestrator = Depends(get_orchestrator)):
        return order_response(await service.get_order(order_id))

    @app.post("/orders/{order_id}/retry-payment", response_model=PlaceOrderResponse)
    async def retry_payment(
        order_id: str,
        request: RetryPaymentRequest,
        service: SettlementOrchestrator = Depends(get_orchestrator),
    ):
        placed = await service.retry_payment(order_id, request.payment_method, request.wallet_number)
        return placed_response(placed)

    @app.post("/orders/{order_id}/cancel", response_model=OrderResponse)
    async def cancel_order(
        order_id: str,
        request: Optional[CancelRequest] = None,
        service: SettlementOrchestrator = Depends(get_orchestrator),
    ):
        await service.cancel_order(order_id, reason=request.reason if request else None)
        return order_response(await service.get_order(order_id))

    @app.post("/orders/{order_id}/fulfilment", response_model=OrderResponse)
    async def mark_fulfilling(order_id: str, service: SettlementOrchestrator = Depends(get_orchestrator)):
        await service.mark_fulfilling(order_id)
        return order_response(await service.get_order(order_id))

    @app.post("/orders/{order_id}/complete", response_model=OrderResponse)
    async def mark_completed(order_id: str, service: SettlementOrchestrator = Depends(get_orchestrator)):
        await service.mark_completed(order_id)
        return order_response(await service.get_order(order_id))

    @app.post("/orders/{order_id}/returns", response_model=ReturnResponse)
    async def request_return(
        order_id: str,
        request: ReturnRequest,
        service: SettlementOrchestrator = Depends(get_orchestrator),
    ):
        order, refund_status = await service.request_return(order_id, request.amount, request.reason)
        return ReturnResponse(order_id=order.id, state=order.state, refund_status=refund_status)

    # --- Payments ---

    @app.post("/payments/callbacks/{gateway}", response_model=CallbackResponse)
    async def provider_callback(
        gateway: str,
        request: Request,
        service: SettlementOrchestrator = Depends(get_orchestrator),
    ):
        """
        Server-to-server payment result. 200 tells the provider to stop
        retrying (processed or duplicate); 400 means the payload failed
        verification; 503 asks it to retry later.
        """
        payload = await _read_callback_body(request)
        ack = await service.handle_provider_callback(gateway, payload)
        if not ack.accepted:
            raise HTTPException(status_code=400, detail=ack.detail)
        status = "duplicate" if ack.duplicate else ack.detail
        return CallbackResponse(status=status, order_id=ack.order_id)

    @app.get("/payments/return/{gateway}", response_model=PaymentReturnResponse)
    async def payment_return(
        gateway: str,
        order: str,
        service: SettlementOrchestrator = Depends(get_orchestrator),
    ):
        """
        Where the shopper's browser lands after the hosted page.
        Reports the order state only; the callback is what settles payment.
        """
        current = await service.get_order(order)
        return PaymentReturnResponse(
            order_id=current.id,
            state=current.state,
            message=RETURN_MESSAGES.get(current.state, "We are confirming your payment."),
        )

    return app


RETURN_MESSAGES: Dict[str, str] = {
    OrderState.PAID.value: "Payment received. Thank you for your order.",
    OrderState.PENDING_PAYMENT.value: "We are confirming your payment. This page will update shortly.",
    OrderState.PAYMENT_FAILED.value: "Payment was not completed. You can retry from your order page.",
    OrderState.EXPIRED.value: "Your checkout expired. You can retry from your order page.",
    OrderState.CANCELLED.value: "This order was cancelled.",
}


async def _read_callback_body(request: Request) -> Dict[str, Any]:
    """Providers post either JSON or a classic form-encoded IPN."""
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        return dict(parse_qsl(body.decode("utf-8")))
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="callback body is not valid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="callback body must be an object")
    return data


app = create_app()


def serve() -> None:
    settings = get_settings()
    # log_config=None keeps uvicorn on the structlog chain set up in lifespan
    uvicorn.run("bazaar.api.app:app", host=settings.api_host, port=settings.api_port, log_config=None)
