from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    # camelCase on the wire, snake_case accepted too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartLineRequest(ApiModel):
    sku: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0, description="Units of this SKU")


class PlaceOrderRequest(ApiModel):
    customer: Dict[str, Any] = Field(..., description="Customer snapshot: name, email, phone")
    address: Dict[str, Any] = Field(..., description="Delivery address: recipient, phone, line1, city, ...")
    delivery_method: str = Field("standard", description="standard or express")
    payment_method: str = Field(..., description="card, bkash, nagad, rocket or cod")
    wallet_number: Optional[str] = Field(None, description="Required for mobile wallets")
    coupon_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500, description="Free text for the seller or courier")
    lines: List[CartLineRequest] = Field(..., min_length=1)


class RetryPaymentRequest(ApiModel):
    payment_method: str
    wallet_number: Optional[str] = None


class CancelRequest(ApiModel):
    reason: Optional[str] = None


class ReturnRequest(ApiModel):
    amount: Optional[int] = Field(None, gt=0, description="Poisha; defaults to everything not yet refunded")
    reason: Optional[str] = None


class PlaceOrderResponse(ApiModel):
    order_id: str
    state: str
    total: int
    currency: str
    attempt_id: str
    redirect_url: Optional[str] = None
    collect_on_delivery: bool = False


class OrderLineResponse(ApiModel):
    sku: str
    name: Optional[str] = None
    quantity: int
    unit_price: int
    line_total: int


class StateChangeResponse(ApiModel):
    from_state: Optional[str] = None
    to_state: str
    actor: str
    reason: Optional[str] = None
    ts: datetime


class OrderResponse(ApiModel):
    order_id: str
    state: str
    delivery_method: str
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    subtotal: int
    tax: int
    shipping: int
    discount: int
    total: int
    currency: str
    collect_on_delivery: bool
    needs_reconciliation: bool
    payment_reference: Optional[str] = None
    erp_reference: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    lines: List[OrderLineResponse] = []
    history: List[StateChangeResponse] = []


class ReturnResponse(ApiModel):
    order_id: str
    state: str
    refund_status: str


class CallbackResponse(ApiModel):
    status: str = Field(..., description="processed, duplicate, ignored or rejected")
    order_id: Optional[str] = None


class PaymentReturnResponse(ApiModel):
    order_id: str
    state: str
    message: str


class ErrorResponse(ApiModel):
    error: str
    detail: Optional[Any] = None
