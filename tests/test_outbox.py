import json
from datetime import timedelta

import httpx
import pytest

from bazaar.common.db.models import Order, OutboxEvent, utcnow
from bazaar.common.db.repositories import AuditRepository, OutboxRepository
from bazaar.common.errors import OutboxEventNotFoundError
from bazaar.outbox.dispatcher import OutboxDispatcher
from bazaar.outbox.events import ERP, NOTIFICATION, erp_sync_event, notification_event
from bazaar.outbox.sinks import ErpClient, NotificationClient
from conftest import Clock, make_cart, signed_callback


class Receiver:
    """Notification + ERP endpoints behind one MockTransport."""

    def __init__(self):
        self.received = []
        self.down = False
        self.seen_keys = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            return httpx.Response(503)
        key = request.headers["Idempotency-Key"]
        if key in self.seen_keys:
            return httpx.Response(409)
        self.seen_keys.add(key)
        self.received.append((request.url.path, json.loads(request.content), dict(request.headers)))
        if request.url.path == "/orders/sync":
            return httpx.Response(200, json={"erpReference": "ERP-5501"})
        return httpx.Response(202)


@pytest.fixture
def receiver():
    return Receiver()


@pytest.fixture
def relay_clock():
    # Outbox rows are stamped with wall-clock time, so the relay runs just ahead of it
    return Clock(utcnow() + timedelta(minutes=5))


@pytest.fixture
async def dispatcher(receiver, settings, db, relay_clock):
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver.handler)) as client:
        yield OutboxDispatcher(
            sinks={
                NOTIFICATION: NotificationClient(client, "https://notify.test"),
                ERP: ErpClient(client, "https://erp.test"),
            },
            settings=settings,
            session_scope=db,
            clock=relay_clock,
        )


async def paid_order(orchestrator, seed):
    await seed({"TSHIRT-M": 5})
    placed = await orchestrator.place_order(make_cart({"TSHIRT-M": 1}), "card")
    raw = signed_callback(orchestrator.registry.get("card"), placed.attempt_id, placed.order_id, placed.total, "VALID")
    await orchestrator.handle_provider_callback("card", raw)
    return placed.order_id


async def statuses(db, order_id):
    async with db() as session:
        return {e.event_type: (e.status, e.attempts) for e in await OutboxRepository(session).events_for_order(order_id)}


@pytest.mark.asyncio
async def test_paid_order_events_reach_notification_and_erp(orchestrator, seed, dispatcher, receiver, db):
    order_id = await paid_order(orchestrator, seed)

    stats = await dispatcher.dispatch_pending()

    assert stats.as_dict() == {"delivered": 2, "retried": 0, "dead": 0}
    paths = sorted(path for path, _, _ in receiver.received)
    assert paths == ["/messages", "/orders/sync"]
    erp_payload = next(body for path, body, _ in receiver.received if path == "/orders/sync")
    assert erp_payload["paymentStatus"] == "PAID"
    assert erp_payload["lines"][0]["sku"] == "TSHIRT-M"
    _, _, headers = receiver.received[0]
    assert headers["x-order-id"] == order_id

    assert (await orchestrator.get_order(order_id)).erp_reference == "ERP-5501"
    assert await statuses(db, order_id) == {"order.paid": ("DELIVERED", 1), "erp.order_sync": ("DELIVERED", 1)}

    # Nothing left to send
    assert (await dispatcher.dispatch_pending()).delivered == 0


@pytest.mark.asyncio
async def test_failures_back_off_then_deliver(orchestrator, seed, dispatcher, receiver, db, relay_clock):
    order_id = await paid_order(orchestrator, seed)
    receiver.down = True

    assert (await dispatcher.dispatch_pending()).retried == 2
    async with db() as session:
        events = await OutboxRepository(session).events_for_order(order_id)
    assert {e.next_retry_at for e in events} == {relay_clock() + timedelta(seconds=30)}
    assert all("OutboxDeliveryError" in e.last_error for e in events)

    # Not due yet
    receiver.down = False
    assert (await dispatcher.dispatch_pending()).delivered == 0

    relay_clock.advance(seconds=31)
    assert (await dispatcher.dispatch_pending()).delivered == 2
    assert receiver.received


def test_backoff_is_exponential_and_capped(settings):
    dispatcher = OutboxDispatcher(sinks={}, settings=settings)
    assert [dispatcher.backoff_for(n).total_seconds() for n in (1, 2, 3)] == [30, 60, 120]
    assert dispatcher.backoff_for(20).total_seconds() == settings.outbox_max_backoff_seconds


@pytest.mark.asyncio
async def test_event_goes_dead_after_max_attempts_and_can_be_replayed(
    orchestrator, seed, dispatcher, receiver, db, relay_clock, settings
):
    settings.outbox_max_attempts = 2
    order_id = await paid_order(orchestrator, seed)
    receiver.down = True

    await dispatcher.dispatch_pending()
    relay_clock.advance(hours=1)
    stats = await dispatcher.dispatch_pending()

    assert stats.dead == 2
    assert await statuses(db, order_id) == {"order.paid": ("DEAD", 2), "erp.order_sync": ("DEAD", 2)}
    async with db() as session:
        dead_audits = await AuditRepository(session).get_events_by_type("OUTBOX_EVENT_DEAD")
        [paid_event] = [e for e in await OutboxRepository(session).events_for_order(order_id) if e.event_type == "order.paid"]
    assert len(dead_audits) == 2

    receiver.down = False
    replayed = await dispatcher.replay(paid_event.id, "alice")
    assert (replayed.status, replayed.attempts) == ("PENDING", 0)
    async with db() as session:
        [replay_audit] = await AuditRepository(session).get_events_by_type("OUTBOX_EVENT_REPLAYED")
    assert replay_audit.actor == "operator:alice"

    assert (await dispatcher.dispatch_pending()).delivered == 1
    assert (await statuses(db, order_id))["order.paid"] == ("DELIVERED", 1)


@pytest.mark.asyncio
async def test_redelivery_acknowledged_by_receiver_counts_as_delivered(dispatcher, receiver, db):
    async with db() as session:
        event = await OutboxRepository(session).add(OutboxEvent(
            order_id=None, event_type="operator.alert", destination=NOTIFICATION, payload={"message": "hi"},
        ))
    receiver.seen_keys.add(event.id)

    assert (await dispatcher.dispatch_pending()).delivered == 1
    assert receiver.received == []


@pytest.mark.asyncio
async def test_unknown_destination_is_retried_not_dropped(dispatcher, db):
    async with db() as session:
        await OutboxRepository(session).add(OutboxEvent(event_type="x", destination="fax", payload={}))

    stats = await dispatcher.dispatch_pending()
    assert stats.retried == 1


class ReentrantSink:
    """Runs a second dispatch pass from inside a delivery."""

    def __init__(self):
        self.dispatcher = None
        self.nested = []

    async def deliver(self, event):
        self.nested.append((await self.dispatcher.dispatch_pending()).as_dict())
        return None


@pytest.mark.asyncio
async def test_claimed_events_are_skipped_while_being_delivered(settings, db, relay_clock):
    sink = ReentrantSink()
    dispatcher = OutboxDispatcher({NOTIFICATION: sink}, settings=settings, session_scope=db, clock=relay_clock)
    sink.dispatcher = dispatcher
    async with db() as session:
        event = await OutboxRepository(session).add(OutboxEvent(
            event_type="operator.alert", destination=NOTIFICATION, payload={"message": "hi"},
        ))

    stats = await dispatcher.dispatch_pending()

    assert stats.delivered == 1
    # The claim is committed before the sink runs, so a concurrent pass finds nothing
    assert sink.nested == [{"delivered": 0, "retried": 0, "dead": 0}]
    async with db() as session:
        stored = await OutboxRepository(session).get(event.id)
    assert (stored.status, stored.attempts) == ("DELIVERED", 1)


@pytest.mark.asyncio
async def test_lapsed_claim_is_picked_up_again(settings, db, relay_clock, dispatcher, receiver):
    async with db() as session:
        event = await OutboxRepository(session).add(OutboxEvent(
            event_type="operator.alert", destination=NOTIFICATION, payload={"message": "hi"},
        ))
        # Claimed by a dispatcher that died before recording the outcome
        event.next_retry_at = relay_clock() + timedelta(seconds=settings.outbox_claim_seconds)

    assert (await dispatcher.dispatch_pending()).delivered == 0

    relay_clock.advance(seconds=settings.outbox_claim_seconds)
    assert (await dispatcher.dispatch_pending()).delivered == 1
    assert [path for path, _, _ in receiver.received] == ["/messages"]


@pytest.mark.asyncio
async def test_replay_of_missing_event(dispatcher):
    with pytest.raises(OutboxEventNotFoundError):
        await dispatcher.replay("missing", "alice")


def test_event_builders_snapshot_the_order():
    order = Order(
        id="ORD-20260301-000001", state="PAID", delivery_method="standard", payment_method="cod",
        subtotal=50000, tax=7500, shipping=10000, discount=0, total=67500, currency="BDT",
        collect_on_delivery=True, customer_json={"name": "Rahim", "email": "r@example.com"},
        address_json={"phone": "01712345678"},
        notes="Leave with the guard",
    )

    note = notification_event(order, "order.paid", {"extra": 1})
    assert note.payload["recipient"] == {"name": "Rahim", "email": "r@example.com", "phone": "01712345678"}
    assert note.payload["templateData"]["extra"] == 1

    erp = erp_sync_event(order, "COLLECT_ON_DELIVERY")
    assert erp.destination == ERP
    assert erp.payload["totals"]["total"] == 67500
    assert erp.payload["collectOnDelivery"] is True
    assert erp.payload["notes"] == "Leave with the guard"
