"""
Provider-agnostic payment gateway adapter.

Three structurally different protocols sit behind one interface so the
settlement orchestrator never branches on provider identity:

- RedirectCardGateway: hosted payment page; the shopper is redirected, the
  result arrives as a server-to-server callback (IPN). The browser return is
  UX only and never confirms anything.
- MobileWalletGateway: pending charge against a wallet number (bKash, Nagad,
  Rocket); the wallet's own OTP/PIN step happens out-of-band, the result
  again arrives as a callback.
- CashOnDeliveryGateway: no network at all; confirms synchronously and the
  order carries a collect-on-delivery obligation instead.
"""
import asyncio
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Mapping, Optional

import httpx
from structlog import get_logger

from bazaar.common.config import GatewayConfig
from bazaar.common.db.models import PaymentAttempt
from bazaar.common.errors import (
    CallbackMismatchError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InvalidCallbackError,
    InvalidSignatureError,
)
from bazaar.domain.pricing import normalize_msisdn

logger = get_logger()

CALLBACK_FIELDS = ("attemptReference", "orderReference", "amount", "currency", "status")


class CallbackOutcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"


@dataclass(frozen=True)
class PaymentRequest:
    attempt_id: str
    order_id: str
    amount: int
    currency: str
    idempotency_key: str
    customer: Mapping[str, Any] = field(default_factory=dict)
    wallet_number: Optional[str] = None
    return_url: Optional[str] = None
    callback_url: Optional[str] = None


@dataclass(frozen=True)
class InitiationResult:
    gateway_reference: Optional[str]
    redirect_url: Optional[str] = None
    # True only for gateways that settle synchronously (cash on delivery)
    confirmed: bool = False


@dataclass(frozen=True)
class CallbackPayload:
    attempt_reference: str
    order_reference: str
    amount: int
    currency: str
    status: str
    outcome: CallbackOutcome
    signature: str
    transaction_id: Optional[str]
    raw: Mapping[str, Any]


@dataclass(frozen=True)
class VerifiedEvent:
    """A callback that passed signature and attempt checks. The only input allowed to settle an order."""
    gateway: str
    attempt_id: str
    order_id: str
    outcome: CallbackOutcome
    amount: int
    currency: str
    gateway_reference: Optional[str]
    signature: str
    raw: Mapping[str, Any]


@dataclass(frozen=True)
class RefundResult:
    succeeded: bool
    gateway_reference: Optional[str] = None
    message: Optional[str] = None


def to_minor_units(value: Any) -> int:
    """
    Parse a decimal amount string ("1150.50") into poisha.
    Anything that is not an exact multiple of one poisha is rejected.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidCallbackError(f"invalid amount {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidCallbackError(f"invalid amount {value!r}")
    if not amount.is_finite() or amount < 0:
        raise InvalidCallbackError(f"invalid amount {value!r}")
    minor = amount * 100
    if minor != minor.to_integral_value():
        raise InvalidCallbackError(f"amount {value!r} is finer than one poisha")
    return int(minor)


def format_amount(minor: int) -> str:
    return f"{minor // 100}.{minor % 100:02d}"


class PaymentGateway(ABC):
    """
    Capability set: initiate_payment, parse_callback/verify_callback, refund.

    Outbound calls carry an explicit timeout and are retried a bounded number
    of times with exponential backoff on transport errors and 5xx. A 4xx is
    the provider saying no and is not retried.
    """

    name: str = "gateway"
    requires_callback: bool = True
    requires_wallet_number: bool = False
    confirmed_statuses: FrozenSet[str] = frozenset()
    declined_statuses: FrozenSet[str] = frozenset()

    def __init__(
        self,
        config: GatewayConfig,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.name = config.name
        self.client = client
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    # --- Capabilities ---

    @abstractmethod
    async def initiate_payment(self, request: PaymentRequest) -> InitiationResult:
        ...

    @abstractmethod
    async def refund(self, attempt: PaymentAttempt, amount: int, refund_id: str) -> RefundResult:
        ...

    @abstractmethod
    def compute_signature(self, fields: Mapping[str, Any]) -> str:
        ...

    def parse_callback(self, raw: Mapping[str, Any]) -> CallbackPayload:
        """Structural validation and status normalisation. Does not check the signature."""
        if not isinstance(raw, Mapping):
            raise InvalidCallbackError("callback body must be an object")
        missing = [key for key in CALLBACK_FIELDS + ("signature",) if raw.get(key) in (None, "")]
        if missing:
            raise InvalidCallbackError(f"callback missing fields: {', '.join(missing)}")

        status = str(raw["status"])
        outcome = self.normalize_status(status)
        return CallbackPayload(
            attempt_reference=str(raw["attemptReference"]),
            order_reference=str(raw["orderReference"]),
            amount=to_minor_units(raw["amount"]),
            currency=str(raw["currency"]).upper(),
            status=status,
            outcome=outcome,
            signature=str(raw["signature"]),
            transaction_id=str(raw["transactionId"]) if raw.get("transactionId") else None,
            raw=dict(raw),
        )

    def normalize_status(self, status: str) -> CallbackOutcome:
        key = status.strip().upper()
        if key in self.confirmed_statuses:
            return CallbackOutcome.CONFIRMED
        if key in self.declined_statuses:
            return CallbackOutcome.DECLINED
        raise InvalidCallbackError(f"unknown {self.name} status {status!r}")

    def verify_callback(self, payload: CallbackPayload, attempt: PaymentAttempt) -> VerifiedEvent:
        """
        Check the callback against the attempt it claims to settle.
        Signature first, then references, then exact amount and currency.
        """
        expected = self.compute_signature(payload.raw)
        if not hmac.compare_digest(expected.lower(), payload.signature.lower()):
            raise InvalidSignatureError(f"{self.name}: signature mismatch for attempt {payload.attempt_reference}")

        if attempt.gateway != self.name:
            raise CallbackMismatchError(
                f"{self.name}: attempt {attempt.id} belongs to gateway {attempt.gateway}"
            )
        if payload.attempt_reference != attempt.id or payload.order_reference != attempt.order_id:
            raise CallbackMismatchError(f"{self.name}: references do not match attempt {attempt.id}")
        if payload.amount != attempt.amount:
            raise CallbackMismatchError(
                f"{self.name}: amount {payload.amount} != expected {attempt.amount} for attempt {attempt.id}"
            )
        if payload.currency != attempt.currency:
            raise CallbackMismatchError(
                f"{self.name}: currency {payload.currency} != expected {attempt.currency} for attempt {attempt.id}"
            )
        return VerifiedEvent(
            gateway=self.name,
            attempt_id=attempt.id,
            order_id=attempt.order_id,
            outcome=payload.outcome,
            amount=payload.amount,
            currency=payload.currency,
            gateway_reference=payload.transaction_id or attempt.gateway_reference,
            signature=payload.signature,
            raw=payload.raw,
        )

    # --- Helpers ---

    def _hmac(self, message: str) -> str:
        return hmac.new(self.config.secret.encode(), message.encode(), hashlib.sha256).hexdigest()

    def _signed_fields(self, fields: Mapping[str, Any]) -> Dict[str, str]:
        signed = {key: str(fields[key]) for key in CALLBACK_FIELDS if key in fields}
        if fields.get("transactionId"):
            signed["transactionId"] = str(fields["transactionId"])
        return signed

    async def _post(self, path: str, body: Mapping[str, Any], idempotency_key: str) -> Dict[str, Any]:
        if self.client is None:
            raise GatewayUnavailableError(self.name, "no HTTP client configured")

        url = f"{self.config.base_url.rstrip('/')}{path}"
        headers = {"Idempotency-Key": idempotency_key}
        delay = self.backoff_seconds
        last_error = "unknown"

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.client.post(url, json=dict(body), headers=headers, timeout=self.timeout)
            except httpx.TransportError as e:
                # Includes connect/read timeouts
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status_code < 400:
                    return response.json()
                if response.status_code < 500:
                    raise GatewayRejectedError(self.name, f"HTTP {response.status_code} from {path}", response.status_code)
                last_error = f"HTTP {response.status_code}"

            logger.warning(
                "gateway_call_failed", gateway=self.name, path=path, attempt=attempt,
                max_attempts=self.max_attempts, error=last_error,
            )
            if attempt < self.max_attempts:
                await self._sleep(delay)
                delay *= 2

        raise GatewayUnavailableError(self.name, f"{path} failed after {self.max_attempts} attempts: {last_error}")


class RedirectCardGateway(PaymentGateway):
    """Hosted-page card gateway (SSLCommerz style session + IPN)."""

    confirmed_statuses = frozenset({"VALID", "VALIDATED", "SUCCESS"})
    declined_statuses = frozenset({"FAILED", "CANCELLED", "UNATTEMPTED", "EXPIRED"})

    async def initiate_payment(self, request: PaymentRequest) -> InitiationResult:
        body = {
            "store_id": self.config.merchant_id,
            "tran_id": request.attempt_id,
            "order_ref": request.order_id,
            "total_amount": format_amount(request.amount),
            "currency": request.currency,
            "success_url": request.return_url,
            "fail_url": request.return_url,
            "cancel_url": request.return_url,
            "ipn_url": request.callback_url,
            "cus_name": request.customer.get("name"),
            "cus_email": request.customer.get("email"),
            "cus_phone": request.customer.get("phone"),
        }
        data = await self._post("/sessions", body, request.idempotency_key)
        redirect_url = data.get("redirectUrl") or data.get("GatewayPageURL")
        if not redirect_url:
            raise GatewayRejectedError(self.name, "session created without a redirect URL")
        logger.info("card_session_created", attempt_id=request.attempt_id, session=data.get("sessionKey"))
        return InitiationResult(gateway_reference=data.get("sessionKey"), redirect_url=redirect_url)

    def compute_signature(self, fields: Mapping[str, Any]) -> str:
        signed = self._signed_fields(fields)
        return self._hmac("&".join(f"{key}={signed[key]}" for key in sorted(signed)))

    async def refund(self, attempt: PaymentAttempt, amount: int, refund_id: str) -> RefundResult:
        body = {
            "store_id": self.config.merchant_id,
            "bank_tran_id": (attempt.raw_callback or {}).get("transactionId") or attempt.gateway_reference,
            "tran_id": attempt.id,
            "refund_amount": format_amount(amount),
            "refe_id": refund_id,
        }
        try:
            data = await self._post("/refunds", body, f"refund:{refund_id}")
        except GatewayRejectedError as e:
            return RefundResult(succeeded=False, message=str(e))
        ok = str(data.get("status", "")).lower() in {"success", "processing"}
        return RefundResult(succeeded=ok, gateway_reference=data.get("refundRef"), message=data.get("errorReason"))


class MobileWalletGateway(PaymentGateway):
    """Wallet charge gateway (bKash / Nagad / Rocket style)."""

    requires_wallet_number = True
    confirmed_statuses = frozenset({"COMPLETED", "SUCCESS"})
    declined_statuses = frozenset({"FAILED", "CANCELLED", "DECLINED", "EXPIRED"})

    async def initiate_payment(self, request: PaymentRequest) -> InitiationResult:
        if not request.wallet_number:
            raise GatewayRejectedError(self.name, "wallet number is required")
        body = {
            "merchantId": self.config.merchant_id,
            "merchantInvoiceNumber": request.attempt_id,
            "orderReference": request.order_id,
            "amount": format_amount(request.amount),
            "currency": request.currency,
            "payerReference": normalize_msisdn(request.wallet_number),
            "callbackURL": request.callback_url,
        }
        data = await self._post("/charges", body, request.idempotency_key)
        payment_id = data.get("paymentID") or data.get("paymentId")
        if not payment_id:
            raise GatewayRejectedError(self.name, "charge created without a payment id")
        logger.info("wallet_charge_created", gateway=self.name, attempt_id=request.attempt_id, payment_id=payment_id)
        # Some wallets hand back a hosted OTP page, others push the OTP to the handset
        return InitiationResult(gateway_reference=payment_id, redirect_url=data.get("redirectUrl"))

    def compute_signature(self, fields: Mapping[str, Any]) -> str:
        signed = self._signed_fields(fields)
        ordered = [signed.get(key, "") for key in CALLBACK_FIELDS] + [signed.get("transactionId", "")]
        return self._hmac("|".join(ordered))

    async def refund(self, attempt: PaymentAttempt, amount: int, refund_id: str) -> RefundResult:
        body = {
            "paymentID": attempt.gateway_reference,
            "merchantInvoiceNumber": attempt.id,
            "amount": format_amount(amount),
            "trxID": (attempt.raw_callback or {}).get("transactionId"),
            "refundReference": refund_id,
            "reason": "order refund",
        }
        try:
            data = await self._post("/refunds", body, f"refund:{refund_id}")
        except GatewayRejectedError as e:
            return RefundResult(succeeded=False, message=str(e))
        ok = str(data.get("transactionStatus", "")).upper() == "COMPLETED"
        return RefundResult(succeeded=ok, gateway_reference=data.get("refundTrxID"), message=data.get("errorMessage"))


class CashOnDeliveryGateway(PaymentGateway):
    """No external interaction. Confirms immediately; cash is collected by the courier."""

    requires_callback = False

    def __init__(self, config: Optional[GatewayConfig] = None, **kwargs):
        super().__init__(config or GatewayConfig(name="cod", base_url="", secret=""), **kwargs)

    async def initiate_payment(self, request: PaymentRequest) -> InitiationResult:
        return InitiationResult(gateway_reference=f"COD-{request.attempt_id}", confirmed=True)

    def parse_callback(self, raw: Mapping[str, Any]) -> CallbackPayload:
        raise InvalidCallbackError("cash on delivery does not accept callbacks")

    def compute_signature(self, fields: Mapping[str, Any]) -> str:
        raise InvalidCallbackError("cash on delivery does not sign callbacks")

    async def refund(self, attempt: PaymentAttempt, amount: int, refund_id: str) -> RefundResult:
        # Cash handed back by the courier / customer desk; recorded, not transmitted
        return RefundResult(succeeded=True, gateway_reference=f"COD-CASH-{refund_id}", message="manual cash reversal")


def sign_callback(gateway: PaymentGateway, fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Return `fields` with the gateway's signature attached (sandbox tooling and tests)."""
    signed = dict(fields)
    signed["signature"] = gateway.compute_signature(fields)
    return signed
