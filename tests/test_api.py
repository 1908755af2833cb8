import httpx
import pytest

from bazaar.api.app import create_app
from conftest import signed_callback

CUSTOMER = {"name": "Rahim Uddin", "email": "rahim@example.com", "phone": "01712345678"}
ADDRESS = {
    "recipient": "Rahim Uddin",
    "phone": "01712345678",
    "line1": "House 12, Road 5, Dhanmondi",
    "city": "Dhaka",
    "postcode": "1205",
}


def order_body(payment_method="card", **lines):
    return {
        "customer": CUSTOMER,
        "address": ADDRESS,
        "deliveryMethod": "standard",
        "paymentMethod": payment_method,
        "lines": [{"sku": sku.replace("_", "-"), "quantity": qty} for sku, qty in (lines or {"TSHIRT_M": 2}).items()],
    }


@pytest.fixture
async def client(orchestrator):
    transport = httpx.ASGITransport(app=create_app(orchestrator))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_place_order_returns_redirect(client, seed):
    await seed({"TSHIRT-M": 5})

    response = await client.post("/orders", json=order_body())

    assert response.status_code == 201
    body = response.json()
    assert body["orderId"].startswith("ORD-20260301-")
    assert body["state"] == "PENDING_PAYMENT"
    assert body["total"] == 125000
    assert body["currency"] == "BDT"
    assert body["redirectUrl"].startswith("https://card.test/pay/")
    assert body["collectOnDelivery"] is False


@pytest.mark.asyncio
async def test_insufficient_stock_is_a_conflict(client, seed):
    await seed({"TSHIRT-M": 1})

    response = await client.post("/orders", json=order_body(TSHIRT_M=3))

    assert response.status_code == 409
    assert response.json()["detail"] == {"TSHIRT-M": {"requested": 3, "available": 1}}


@pytest.mark.asyncio
async def test_invalid_orders_are_rejected(client, seed):
    await seed({"TSHIRT-M": 5})

    # Request shape
    response = await client.post("/orders", json={**order_body(), "lines": []})
    assert response.status_code == 422

    # Business validation
    response = await client.post("/orders", json={**order_body(), "deliveryMethod": "drone"})
    assert response.status_code == 422
    assert any("delivery method" in problem for problem in response.json()["detail"])


@pytest.mark.asyncio
async def test_gateway_refusal_keeps_order_retryable(client, seed, provider):
    await seed({"TSHIRT-M": 5})
    provider.reject_initiation = True

    response = await client.post("/orders", json=order_body())

    assert response.status_code == 502
    order_id = response.json()["detail"]["orderId"]

    provider.reject_initiation = False
    response = await client.post(f"/orders/{order_id}/retry-payment", json={"paymentMethod": "card"})
    assert response.status_code == 200
    assert response.json()["state"] == "PENDING_PAYMENT"


@pytest.mark.asyncio
async def test_callback_settles_order_once(client, seed, registry):
    await seed({"TSHIRT-M": 5})
    placed = (await client.post("/orders", json=order_body())).json()
    raw = signed_callback(registry.get("card"), placed["attemptId"], placed["orderId"], placed["total"], "VALID")

    # The shopper's browser comes back first; that alone settles nothing
    landing = await client.get("/payments/return/card", params={"order": placed["orderId"]})
    assert landing.json()["state"] == "PENDING_PAYMENT"

    first = await client.post("/payments/callbacks/card", json=raw)
    second = await client.post("/payments/callbacks/card", json=raw)

    assert first.status_code == 200
    assert first.json() == {"status": "processed", "orderId": placed["orderId"]}
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"

    order = (await client.get(f"/orders/{placed['orderId']}")).json()
    assert order["state"] == "PAID"
    assert [change["toState"] for change in order["history"]] == ["DRAFT", "PENDING_PAYMENT", "PAID"]


@pytest.mark.asyncio
async def test_form_encoded_callback_is_accepted(client, seed, registry):
    await seed({"TSHIRT-M": 5})
    placed = (await client.post("/orders", json=order_body())).json()
    raw = signed_callback(registry.get("card"), placed["attemptId"], placed["orderId"], placed["total"], "FAILED")

    response = await client.post("/payments/callbacks/card", data=raw)

    assert response.status_code == 200
    assert (await client.get(f"/orders/{placed['orderId']}")).json()["state"] == "PAYMENT_FAILED"


@pytest.mark.asyncio
async def test_forged_callback_is_rejected(client, seed, registry):
    await seed({"TSHIRT-M": 5})
    placed = (await client.post("/orders", json=order_body())).json()
    raw = signed_callback(registry.get("card"), placed["attemptId"], placed["orderId"], placed["total"], "VALID")
    raw["signature"] = "0" * 64

    response = await client.post("/payments/callbacks/card", json=raw)

    assert response.status_code == 400
    assert (await client.get(f"/orders/{placed['orderId']}")).json()["state"] == "PENDING_PAYMENT"


@pytest.mark.asyncio
async def test_callback_body_must_be_an_object(client):
    response = await client.post(
        "/payments/callbacks/card", content=b"not json", headers={"content-type": "application/json"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_cod_order_fulfil_and_return(client, seed):
    await seed({"MUG-01": 2})
    placed = (await client.post("/orders", json=order_body("cod", MUG_01=1))).json()
    assert placed["state"] == "PAID"
    assert placed["collectOnDelivery"] is True

    assert (await client.post(f"/orders/{placed['orderId']}/fulfilment")).json()["state"] == "FULFILLING"

    response = await client.post(f"/orders/{placed['orderId']}/returns", json={"reason": "wrong colour"})

    assert response.status_code == 200
    assert response.json() == {"orderId": placed["orderId"], "state": "REFUNDED", "refundStatus": "SUCCEEDED"}


@pytest.mark.asyncio
async def test_paid_order_cannot_be_cancelled(client, seed):
    await seed({"MUG-01": 2})
    placed = (await client.post("/orders", json=order_body("cod", MUG_01=1))).json()

    response = await client.post(f"/orders/{placed['orderId']}/cancel")

    assert response.status_code == 409
    assert response.json()["error"] == "This action is not possible for the order in its current state."


@pytest.mark.asyncio
async def test_cancel_pending_order(client, seed, stock_of):
    await seed({"TSHIRT-M": 5})
    placed = (await client.post("/orders", json=order_body())).json()

    response = await client.post(f"/orders/{placed['orderId']}/cancel", json={"reason": "changed my mind"})

    assert response.status_code == 200
    assert response.json()["state"] == "CANCELLED"
    assert await stock_of("TSHIRT-M") == (5, 0)


@pytest.mark.asyncio
async def test_unknown_order_is_not_found(client):
    response = await client.get("/orders/ORD-20260301-999999")
    assert response.status_code == 404
    assert response.json()["error"] == "Order not found."


@pytest.mark.asyncio
async def test_order_notes_are_kept(client, seed):
    await seed({"TSHIRT-M": 5})
    body = {**order_body(), "notes": "Please call before delivery"}

    placed = (await client.post("/orders", json=body)).json()

    order = (await client.get(f"/orders/{placed['orderId']}")).json()
    assert order["notes"] == "Please call before delivery"

    response = await client.post("/orders", json={**order_body(), "notes": "x" * 501})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_error_body_is_documented(client):
    schema = (await client.get("/openapi.json")).json()

    assert "ErrorResponse" in schema["components"]["schemas"]
    responses = schema["paths"]["/orders/{order_id}"]["get"]["responses"]
    assert responses["404"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
