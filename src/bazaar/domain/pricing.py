import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Protocol

import httpx
from structlog import get_logger

from bazaar.common.config import Settings
from bazaar.common.errors import ValidationError, GatewayUnavailableError

logger = get_logger()

# Bangladeshi mobile numbers: 01 + operator digit 3-9 + 8 digits
BD_MOBILE_RE = re.compile(r"^(?:\+?88)?01[3-9]\d{8}$")
REQUIRED_ADDRESS_FIELDS = ("recipient", "phone", "line1", "city")


@dataclass(frozen=True)
class CartLine:
    sku: str
    quantity: int


@dataclass
class Cart:
    """
    Checkout submission as received from the storefront.
    Prices and totals are deliberately absent: they are recomputed here.
    """
    customer: Dict[str, Any]
    address: Dict[str, Any]
    delivery_method: str
    lines: List[CartLine]
    wallet_number: Optional[str] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PricedLine:
    sku: str
    name: Optional[str]
    quantity: int
    unit_price: int
    line_total: int


@dataclass
class Quote:
    lines: List[PricedLine]
    subtotal: int
    tax: int
    shipping: int
    discount: int
    currency: str
    total: int = field(init=False)

    def __post_init__(self):
        self.total = compute_total(self.subtotal, self.shipping, self.tax, self.discount)


@dataclass(frozen=True)
class CatalogPrice:
    amount: int
    name: Optional[str] = None


class Catalog(Protocol):
    """Contract consumed from the catalog service."""

    async def get_price(self, sku: str) -> Optional[CatalogPrice]: ...

    async def get_availability(self, sku: str) -> int: ...

    async def get_discount(self, coupon_code: Optional[str], subtotal: int, lines: List[PricedLine]) -> int: ...


def compute_total(subtotal: int, shipping: int, tax: int, discount: int) -> int:
    return subtotal + shipping + tax - discount


def compute_vat(subtotal: int, rate: str) -> int:
    return int((Decimal(subtotal) * Decimal(rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_msisdn(number: str) -> str:
    digits = number.strip().replace(" ", "").replace("-", "")
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("88"):
        digits = digits[2:]
    return digits


def is_bd_mobile(number: Any) -> bool:
    return isinstance(number, str) and bool(BD_MOBILE_RE.match(number.strip().replace(" ", "").replace("-", "")))


def validate_cart(cart: Cart, settings: Settings) -> None:
    problems: List[str] = []

    if not cart.lines:
        problems.append("cart has no items")
    for line in cart.lines:
        if not line.sku:
            problems.append("item without sku")
        if not isinstance(line.quantity, int) or isinstance(line.quantity, bool) or line.quantity < 1:
            problems.append(f"{line.sku}: quantity must be a positive whole number")
        elif line.quantity > settings.max_line_quantity:
            problems.append(f"{line.sku}: at most {settings.max_line_quantity} per order")

    if cart.delivery_method not in settings.shipping_fees:
        problems.append(f"unknown delivery method '{cart.delivery_method}'")

    address = cart.address or {}
    for key in REQUIRED_ADDRESS_FIELDS:
        if not str(address.get(key) or "").strip():
            problems.append(f"address.{key} is required")
    if address.get("phone") and not is_bd_mobile(address["phone"]):
        problems.append("address.phone is not a valid Bangladeshi mobile number")

    if problems:
        raise ValidationError(problems)


async def price_cart(cart: Cart, catalog: Catalog, settings: Settings) -> Quote:
    """
    Validate the cart and compute totals server-side from catalog prices.
    total = subtotal + shipping + VAT - discount
    """
    validate_cart(cart, settings)

    # Same SKU submitted twice becomes one line
    merged: Dict[str, int] = {}
    for line in cart.lines:
        merged[line.sku] = merged.get(line.sku, 0) + line.quantity

    priced: List[PricedLine] = []
    unknown: List[str] = []
    for sku, quantity in merged.items():
        if quantity > settings.max_line_quantity:
            raise ValidationError([f"{sku}: at most {settings.max_line_quantity} per order"])
        price = await catalog.get_price(sku)
        if price is None:
            unknown.append(sku)
            continue
        priced.append(PricedLine(
            sku=sku,
            name=price.name,
            quantity=quantity,
            unit_price=price.amount,
            line_total=price.amount * quantity,
        ))
    if unknown:
        raise ValidationError([f"{sku}: not available for sale" for sku in unknown])

    subtotal = sum(line.line_total for line in priced)
    discount = await catalog.get_discount(cart.coupon_code, subtotal, priced)
    discount = max(0, min(discount, subtotal))

    return Quote(
        lines=priced,
        subtotal=subtotal,
        tax=compute_vat(subtotal, settings.vat_rate),
        shipping=settings.shipping_fees[cart.delivery_method],
        discount=discount,
        currency=settings.currency,
    )


class HttpCatalogClient:
    """Catalog service client (prices in poisha)."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 5.0):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        try:
            response = await self.client.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        except httpx.TransportError as e:
            raise GatewayUnavailableError("catalog", str(e))
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise GatewayUnavailableError("catalog", f"HTTP {response.status_code}", response.status_code)
        return response.json()

    async def get_price(self, sku: str) -> Optional[CatalogPrice]:
        data = await self._get(f"/products/{sku}/price")
        if data is None or not data.get("sellable", True):
            return None
        return CatalogPrice(amount=int(data["amount"]), name=data.get("name"))

    async def get_availability(self, sku: str) -> int:
        data = await self._get(f"/products/{sku}/availability")
        return int(data["quantity"]) if data else 0

    async def get_discount(self, coupon_code: Optional[str], subtotal: int, lines: List[PricedLine]) -> int:
        if not coupon_code:
            return 0
        data = await self._get(f"/coupons/{coupon_code}", params={"subtotal": subtotal})
        if data is None:
            logger.info("coupon_not_found", coupon_code=coupon_code)
            return 0
        return int(data.get("discount", 0))
