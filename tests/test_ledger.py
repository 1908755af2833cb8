import asyncio
from datetime import timedelta

import pytest

from bazaar.common.db.models import Order
from bazaar.common.errors import (
    ActiveReservationExistsError,
    InsufficientStockError,
    ReservationNotFoundError,
    ReservationReleasedError,
    ReservationStateError,
)
from bazaar.inventory.ledger import InventoryLedger


async def add_order(db, order_id: str, state: str = "PENDING_PAYMENT") -> None:
    async with db() as session:
        session.add(Order(
            id=order_id, state=state, delivery_method="standard", payment_method="card",
            subtotal=0, total=0,
        ))


@pytest.mark.asyncio
async def test_reserve_then_commit_moves_stock_out(db, seed, stock_of, clock):
    await seed({"TSHIRT-M": 5, "MUG-01": 3})

    async with db() as session:
        ledger = InventoryLedger(session)
        reservation = await ledger.reserve("ORD-1", [("TSHIRT-M", 2), ("MUG-01", 1)], now=clock())
        assert reservation.expires_at == clock() + timedelta(minutes=15)
        assert await ledger.available("TSHIRT-M") == 3

    assert await stock_of("TSHIRT-M") == (5, 2)

    async with db() as session:
        await InventoryLedger(session).commit("ORD-1", clock())

    assert await stock_of("TSHIRT-M") == (3, 0)
    assert await stock_of("MUG-01") == (2, 0)


@pytest.mark.asyncio
async def test_shortfall_reserves_nothing_and_names_every_short_sku(db, seed, stock_of, clock):
    await seed({"TSHIRT-M": 5, "MUG-01": 1, "PANJABI-L": 0})

    with pytest.raises(InsufficientStockError) as excinfo:
        async with db() as session:
            await InventoryLedger(session).reserve(
                "ORD-1", [("TSHIRT-M", 2), ("MUG-01", 2), ("PANJABI-L", 1)], now=clock()
            )

    assert excinfo.value.shortages == {"MUG-01": (2, 1), "PANJABI-L": (1, 0)}
    assert await stock_of("TSHIRT-M") == (5, 0)
    assert await stock_of("MUG-01") == (1, 0)


@pytest.mark.asyncio
async def test_duplicate_sku_lines_are_summed(db, seed, clock):
    await seed({"MUG-01": 3})

    with pytest.raises(InsufficientStockError):
        async with db() as session:
            await InventoryLedger(session).reserve("ORD-1", [("MUG-01", 2), ("MUG-01", 2)], now=clock())


@pytest.mark.asyncio
async def test_second_active_reservation_for_same_order_is_refused(db, seed, clock):
    await seed({"MUG-01": 3})
    async with db() as session:
        await InventoryLedger(session).reserve("ORD-1", [("MUG-01", 1)], now=clock())

    with pytest.raises(ActiveReservationExistsError):
        async with db() as session:
            await InventoryLedger(session).reserve("ORD-1", [("MUG-01", 1)], now=clock())


@pytest.mark.asyncio
async def test_commit_and_release_are_idempotent(db, seed, stock_of, clock):
    await seed({"MUG-01": 3})
    async with db() as session:
        ledger = InventoryLedger(session)
        await ledger.reserve("ORD-1", [("MUG-01", 1)], now=clock())
        await ledger.reserve("ORD-2", [("MUG-01", 1)], now=clock())

    for _ in range(2):
        async with db() as session:
            await InventoryLedger(session).commit("ORD-1", clock())
        async with db() as session:
            await InventoryLedger(session).release("ORD-2", "cancelled", clock())

    assert await stock_of("MUG-01") == (2, 0)


@pytest.mark.asyncio
async def test_commit_after_release_is_refused(db, seed, stock_of, clock):
    await seed({"MUG-01": 3})
    async with db() as session:
        ledger = InventoryLedger(session)
        await ledger.reserve("ORD-1", [("MUG-01", 2)], now=clock())
        await ledger.release("ORD-1", "expired", clock())

    with pytest.raises(ReservationReleasedError):
        async with db() as session:
            await InventoryLedger(session).commit("ORD-1", clock())

    with pytest.raises(ReservationNotFoundError):
        async with db() as session:
            await InventoryLedger(session).commit("ORD-404", clock())

    assert await stock_of("MUG-01") == (3, 0)


@pytest.mark.asyncio
async def test_release_after_commit_is_refused(db, seed, clock):
    await seed({"MUG-01": 3})
    async with db() as session:
        ledger = InventoryLedger(session)
        await ledger.reserve("ORD-1", [("MUG-01", 2)], now=clock())
        await ledger.commit("ORD-1", clock())

    with pytest.raises(ReservationStateError):
        async with db() as session:
            await InventoryLedger(session).release("ORD-1", "operator_release", clock())


@pytest.mark.asyncio
async def test_re_reserve_after_release_uses_the_new_reservation(db, seed, stock_of, clock):
    await seed({"MUG-01": 3})
    async with db() as session:
        ledger = InventoryLedger(session)
        await ledger.reserve("ORD-1", [("MUG-01", 2)], now=clock())
        await ledger.release("ORD-1", "expired", clock())

    clock.advance(minutes=1)
    async with db() as session:
        ledger = InventoryLedger(session)
        await ledger.reserve("ORD-1", [("MUG-01", 2)], now=clock())
        await ledger.commit("ORD-1", clock())

    assert await stock_of("MUG-01") == (1, 0)


@pytest.mark.asyncio
async def test_concurrent_reservations_never_oversell(db, seed, stock_of, clock):
    """20 checkouts race for 5 units: exactly 5 win, counters stay consistent."""
    await seed({"PANJABI-L": 5})

    async def checkout(n: int) -> bool:
        try:
            async with db() as session:
                await InventoryLedger(session).reserve(f"ORD-{n}", [("PANJABI-L", 1)], now=clock())
            return True
        except InsufficientStockError:
            return False

    results = await asyncio.gather(*(checkout(n) for n in range(20)))

    assert sum(results) == 5
    assert await stock_of("PANJABI-L") == (5, 5)


@pytest.mark.asyncio
async def test_sweep_releases_only_expired_unpaid_reservations(db, seed, stock_of, clock):
    await seed({"MUG-01": 10})
    await add_order(db, "ORD-STALE")
    await add_order(db, "ORD-FRESH")
    await add_order(db, "ORD-PAID", state="PAID")

    async with db() as session:
        ledger = InventoryLedger(session)
        await ledger.reserve("ORD-STALE", [("MUG-01", 1)], ttl=timedelta(minutes=15), now=clock())
        await ledger.reserve("ORD-PAID", [("MUG-01", 1)], ttl=timedelta(minutes=15), now=clock())
        await ledger.reserve("ORD-FRESH", [("MUG-01", 1)], ttl=timedelta(minutes=30), now=clock())

    clock.advance(minutes=16)
    async with db() as session:
        released = await InventoryLedger(session).sweep_expired(clock())

    assert released == ["ORD-STALE"]
    assert await stock_of("MUG-01") == (10, 2)
