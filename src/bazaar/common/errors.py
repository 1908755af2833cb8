from typing import Dict, List, Optional, Tuple


class SettlementError(Exception):
    """
    Base class for every error the settlement engine raises on purpose.

    `user_message` is safe to show to a shopper; `str(exc)` may carry
    internal detail and is only meant for logs.
    """

    user_message = "Something went wrong while processing your order."


# --- Validation / contention ---

class ValidationError(SettlementError):
    user_message = "Your order could not be placed. Please check the highlighted details."

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


class InsufficientStockError(SettlementError):
    user_message = "Some items in your cart are no longer available in the requested quantity."

    def __init__(self, shortages: Dict[str, Tuple[int, int]]):
        # sku -> (requested, available)
        self.shortages = shortages
        detail = ", ".join(f"{sku} (requested {req}, available {avail})" for sku, (req, avail) in shortages.items())
        super().__init__(f"Insufficient stock: {detail}")


# --- Lookups ---

class OrderNotFoundError(SettlementError):
    user_message = "Order not found."

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class AttemptNotFoundError(SettlementError):
    user_message = "Payment not found."

    def __init__(self, attempt_id: str):
        self.attempt_id = attempt_id
        super().__init__(f"Payment attempt {attempt_id} not found")


class OutboxEventNotFoundError(SettlementError):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Outbox event {event_id} not found")


# --- State machine ---

class InvalidTransitionError(SettlementError):
    user_message = "This action is not possible for the order in its current state."

    def __init__(self, order_id: str, source: str, target: str):
        self.order_id = order_id
        self.source = source
        self.target = target
        super().__init__(f"Order {order_id}: transition {source} -> {target} is not allowed")


class ReturnWindowClosedError(SettlementError):
    user_message = "The return window for this order has closed."


class RefundAmountError(SettlementError):
    user_message = "The requested refund amount is not valid for this order."


# --- Inventory ---

class ReservationError(SettlementError):
    def __init__(self, order_id: str, message: str):
        self.order_id = order_id
        super().__init__(message)


class ReservationNotFoundError(ReservationError):
    def __init__(self, order_id: str):
        super().__init__(order_id, f"No reservation for order {order_id}")


class ReservationReleasedError(ReservationError):
    """Commit attempted on a reservation that was already released (expired or cancelled)."""

    def __init__(self, order_id: str):
        super().__init__(order_id, f"Reservation for order {order_id} was already released")


class ReservationStateError(ReservationError):
    pass


class ActiveReservationExistsError(ReservationError):
    def __init__(self, order_id: str):
        super().__init__(order_id, f"Order {order_id} already holds an active reservation")


# --- Payments ---

class PaymentInitiationFailed(SettlementError):
    user_message = "We could not start your payment. Please try again or choose another payment method."

    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Payment initiation failed for order {order_id}: {reason}")


class GatewayError(SettlementError):
    def __init__(self, gateway: str, message: str, status_code: Optional[int] = None):
        self.gateway = gateway
        self.status_code = status_code
        super().__init__(f"[{gateway}] {message}")


class GatewayUnavailableError(GatewayError):
    """Transport failure, timeout or 5xx. Safe to retry."""


class GatewayRejectedError(GatewayError):
    """The provider refused the request (4xx). Retrying the same request will not help."""


class InvalidCallbackError(SettlementError):
    """Callback payload is structurally invalid. Never allowed to touch order state."""


class InvalidSignatureError(InvalidCallbackError):
    pass


class CallbackMismatchError(InvalidCallbackError):
    """Signature is fine but amount, currency or references disagree with the stored attempt."""


class CallbackNotReadyError(SettlementError):
    """The attempt named by the callback has not finished initiating yet; the provider should retry."""


# --- Outbox ---

class OutboxDeliveryError(SettlementError):
    def __init__(self, destination: str, message: str):
        self.destination = destination
        super().__init__(f"[{destination}] {message}")
