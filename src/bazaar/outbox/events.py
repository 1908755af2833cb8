"""
Outbox event builders.

Each builder returns an unsaved OutboxEvent; callers add it in the same
session as the state change that causes it.
"""
from typing import Any, Dict, Optional

from bazaar.common.db.models import Order, OutboxEvent

NOTIFICATION = "notification"
ERP = "erp"

ORDER_PAID = "order.paid"
ORDER_PAYMENT_FAILED = "order.payment_failed"
ORDER_EXPIRED = "order.expired"
ORDER_CANCELLED = "order.cancelled"
ORDER_RETURNED = "order.returned"
ORDER_REFUNDED = "order.refunded"
ORDER_COLLECT_ON_DELIVERY = "order.collect_on_delivery"
PAYMENT_COMPENSATING_REFUND = "payment.compensating_refund"
OPERATOR_ALERT = "operator.alert"
ERP_ORDER_SYNC = "erp.order_sync"


def recipient_for(order: Order) -> Dict[str, Any]:
    customer = order.customer_json or {}
    address = order.address_json or {}
    return {
        "name": customer.get("name") or address.get("recipient"),
        "email": customer.get("email"),
        "phone": customer.get("phone") or address.get("phone"),
    }


def order_totals(order: Order) -> Dict[str, Any]:
    return {
        "subtotal": order.subtotal,
        "tax": order.tax,
        "shipping": order.shipping,
        "discount": order.discount,
        "total": order.total,
        "currency": order.currency,
    }


def notification_event(order: Order, event_type: str, template_data: Optional[Dict[str, Any]] = None) -> OutboxEvent:
    data = {"orderNumber": order.id, "total": order.total, "currency": order.currency}
    data.update(template_data or {})
    return OutboxEvent(
        order_id=order.id,
        event_type=event_type,
        destination=NOTIFICATION,
        payload={
            "orderId": order.id,
            "eventType": event_type,
            "recipient": recipient_for(order),
            "templateData": data,
        },
    )


def erp_sync_event(order: Order, payment_status: str) -> OutboxEvent:
    return OutboxEvent(
        order_id=order.id,
        event_type=ERP_ORDER_SYNC,
        destination=ERP,
        payload={
            "orderId": order.id,
            "state": order.state,
            "lines": [
                {
                    "sku": line.sku,
                    "quantity": line.quantity,
                    "unitPrice": line.unit_price,
                    "lineTotal": line.line_total,
                }
                for line in order.lines
            ],
            "totals": order_totals(order),
            "paymentStatus": payment_status,
            "paymentMethod": order.payment_method,
            "collectOnDelivery": order.collect_on_delivery,
            "notes": order.notes,
        },
    )


def operator_alert_event(order_id: Optional[str], message: str, recipient: str, details: Optional[Dict[str, Any]] = None) -> OutboxEvent:
    return OutboxEvent(
        order_id=order_id,
        event_type=OPERATOR_ALERT,
        destination=NOTIFICATION,
        payload={
            "orderId": order_id,
            "eventType": OPERATOR_ALERT,
            "recipient": {"email": recipient},
            "templateData": {"message": message, **(details or {})},
        },
    )
