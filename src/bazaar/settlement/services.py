from typing import Tuple

import httpx

from bazaar.common.config import Settings
from bazaar.domain.pricing import HttpCatalogClient
from bazaar.outbox.dispatcher import OutboxDispatcher
from bazaar.outbox.events import ERP, NOTIFICATION
from bazaar.outbox.sinks import ErpClient, NotificationClient
from bazaar.payments.registry import GatewayRegistry
from bazaar.settlement.orchestrator import SettlementOrchestrator


def build_orchestrator(settings: Settings, http: httpx.AsyncClient) -> SettlementOrchestrator:
    return SettlementOrchestrator(
        registry=GatewayRegistry.from_settings(settings, http),
        catalog=HttpCatalogClient(http, settings.catalog_url),
        settings=settings,
    )


def build_dispatcher(settings: Settings, http: httpx.AsyncClient) -> OutboxDispatcher:
    return OutboxDispatcher(
        sinks={
            NOTIFICATION: NotificationClient(http, settings.notification_url),
            ERP: ErpClient(http, settings.erp_url),
        },
        settings=settings,
    )


def build_services(settings: Settings, http: httpx.AsyncClient) -> Tuple[SettlementOrchestrator, OutboxDispatcher]:
    """Wire the orchestrator and outbox dispatcher around one shared HTTP client."""
    return build_orchestrator(settings, http), build_dispatcher(settings, http)
