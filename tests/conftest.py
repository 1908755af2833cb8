import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from temporalio.testing import WorkflowEnvironment

from bazaar.common.config import GatewayConfig, Settings
from bazaar.common.db.models import Base
from bazaar.domain.pricing import Cart, CartLine, CatalogPrice, PricedLine
from bazaar.inventory.ledger import InventoryLedger
from bazaar.payments.gateways import PaymentGateway, format_amount, sign_callback
from bazaar.payments.registry import GatewayRegistry
from bazaar.settlement.orchestrator import SettlementOrchestrator


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def temporal_env():
    async with await WorkflowEnvironment.start_time_skipping() as env:
        yield env


# --- Clock ---

class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))


# --- Database ---

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(engine):
    """Transactional scope with the same commit/rollback semantics as get_db_session()."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    @asynccontextmanager
    async def scope():
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


@pytest.fixture
def seed(db):
    async def _seed(levels: Dict[str, int]) -> None:
        async with db() as session:
            ledger = InventoryLedger(session)
            for sku, quantity in levels.items():
                await ledger.restock(sku, quantity)
    return _seed


@pytest.fixture
def stock_of(db):
    async def _stock_of(sku: str):
        async with db() as session:
            item = await InventoryLedger(session).stock_level(sku)
            return (item.on_hand, item.reserved) if item else (0, 0)
    return _stock_of


# --- Catalog ---

class StaticCatalog:
    def __init__(self, prices: Dict[str, CatalogPrice], coupons: Optional[Dict[str, int]] = None):
        self.prices = prices
        self.coupons = coupons or {}

    async def get_price(self, sku: str) -> Optional[CatalogPrice]:
        return self.prices.get(sku)

    async def get_availability(self, sku: str) -> int:
        return 100 if sku in self.prices else 0

    async def get_discount(self, coupon_code: Optional[str], subtotal: int, lines: List[PricedLine]) -> int:
        return self.coupons.get(coupon_code or "", 0)


@pytest.fixture
def catalog():
    return StaticCatalog(
        prices={
            "TSHIRT-M": CatalogPrice(50000, "Cotton T-shirt (M)"),
            "MUG-01": CatalogPrice(25000, "Ceramic mug"),
            "PANJABI-L": CatalogPrice(250000, "Eid panjabi (L)"),
        },
        coupons={"EID100": 10000},
    )


# --- Payment providers ---

class FakeProvider:
    """
    Stand-in for every hosted gateway behind httpx.MockTransport.
    Knobs: fail_initiation (count of 503s before success), reject_initiation,
    refund_fails.
    """

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.fail_initiation = 0
        self.reject_initiation = False
        self.refund_fails = False

    def calls(self, suffix: str) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r["path"].endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        path = request.url.path
        self.requests.append({
            "host": request.url.host,
            "path": path,
            "body": body,
            "idempotency_key": request.headers.get("Idempotency-Key"),
        })

        if path.endswith("/sessions") or path.endswith("/charges"):
            if self.reject_initiation:
                return httpx.Response(400, json={"error": "merchant suspended"})
            if self.fail_initiation:
                self.fail_initiation -= 1
                return httpx.Response(503)
            if path.endswith("/sessions"):
                tran_id = body["tran_id"]
                return httpx.Response(200, json={
                    "sessionKey": f"SESS-{tran_id}",
                    "redirectUrl": f"https://card.test/pay/{tran_id}",
                })
            return httpx.Response(200, json={"paymentID": f"PAY-{body['merchantInvoiceNumber']}"})

        if path.endswith("/refunds"):
            if self.refund_fails:
                return httpx.Response(503)
            if "bank_tran_id" in body:
                return httpx.Response(200, json={"status": "success", "refundRef": f"RF-{body['refe_id']}"})
            return httpx.Response(200, json={"transactionStatus": "Completed", "refundTrxID": f"RF-{body['refundReference']}"})

        return httpx.Response(404)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def http(provider):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)) as client:
        yield client


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        gateway_backoff_seconds=0.0,
        public_base_url="https://shop.test",
        gateways={
            "card": GatewayConfig(name="card", base_url="https://card.test/api", secret="card-secret", merchant_id="bazaar"),
            "bkash": GatewayConfig(name="bkash", base_url="https://bkash.test/api", secret="bkash-secret", merchant_id="M-1"),
            "nagad": GatewayConfig(name="nagad", base_url="https://nagad.test/api", secret="nagad-secret", merchant_id="M-2"),
        },
    )


@pytest.fixture
def registry(settings, http):
    return GatewayRegistry.from_settings(settings, http)


@pytest.fixture
def orchestrator(registry, catalog, settings, db, clock):
    return SettlementOrchestrator(registry, catalog, settings=settings, session_scope=db, clock=clock)


# --- Builders ---

def make_cart(lines: Dict[str, int], delivery_method: str = "standard", wallet_number: Optional[str] = None,
              coupon_code: Optional[str] = None) -> Cart:
    return Cart(
        customer={"name": "Rahim Uddin", "email": "rahim@example.com", "phone": "01712345678"},
        address={
            "recipient": "Rahim Uddin",
            "phone": "01712345678",
            "line1": "House 12, Road 5, Dhanmondi",
            "city": "Dhaka",
            "postcode": "1205",
        },
        delivery_method=delivery_method,
        lines=[CartLine(sku=sku, quantity=qty) for sku, qty in lines.items()],
        wallet_number=wallet_number,
        coupon_code=coupon_code,
    )


def signed_callback(
    gateway: PaymentGateway,
    attempt_id: str,
    order_id: str,
    amount: int,
    status: str,
    currency: str = "BDT",
    transaction_id: str = "TXN-0001",
) -> Dict[str, Any]:
    return sign_callback(gateway, {
        "attemptReference": attempt_id,
        "orderReference": order_id,
        "amount": format_amount(amount),
        "currency": currency,
        "status": status,
        "transactionId": transaction_id,
    })
