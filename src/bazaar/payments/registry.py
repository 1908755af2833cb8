from typing import Dict, Iterable, Optional

import httpx

from bazaar.common.config import Settings, WALLET_GATEWAYS
from bazaar.common.errors import ValidationError
from bazaar.payments.gateways import (
    CashOnDeliveryGateway,
    MobileWalletGateway,
    PaymentGateway,
    RedirectCardGateway,
)

# Payment method chosen at checkout -> gateway that serves it
METHOD_GATEWAYS: Dict[str, str] = {
    "card": "card",
    "bkash": "bkash",
    "nagad": "nagad",
    "rocket": "rocket",
    "cod": "cod",
}


class GatewayRegistry:
    def __init__(self, gateways: Iterable[PaymentGateway], method_gateways: Optional[Dict[str, str]] = None):
        self._gateways: Dict[str, PaymentGateway] = {g.name: g for g in gateways}
        self._methods = dict(method_gateways or METHOD_GATEWAYS)

    @property
    def methods(self) -> list:
        return sorted(m for m, g in self._methods.items() if g in self._gateways)

    def get(self, name: str) -> Optional[PaymentGateway]:
        return self._gateways.get(name)

    def for_method(self, payment_method: str) -> PaymentGateway:
        gateway = self._gateways.get(self._methods.get(payment_method, ""))
        if gateway is None:
            raise ValidationError([f"unsupported payment method '{payment_method}'"])
        return gateway

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> "GatewayRegistry":
        common = dict(
            client=client,
            timeout=settings.gateway_timeout_seconds,
            max_attempts=settings.gateway_max_attempts,
            backoff_seconds=settings.gateway_backoff_seconds,
        )
        gateways: list = [CashOnDeliveryGateway()]
        if "card" in settings.gateways:
            gateways.append(RedirectCardGateway(settings.gateways["card"], **common))
        for wallet in WALLET_GATEWAYS:
            if wallet in settings.gateways:
                gateways.append(MobileWalletGateway(settings.gateways[wallet], **common))
        return cls(gateways)
