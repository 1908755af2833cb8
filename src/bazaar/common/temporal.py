from typing import Optional

from temporalio.client import Client
from structlog import get_logger

from bazaar.common.config import Settings, get_settings

logger = get_logger()


async def get_temporal_client(settings: Optional[Settings] = None) -> Client:
    """
    Connect to the Temporal server.
    Address and namespace come from Settings (TEMPORAL_ADDRESS / TEMPORAL_NAMESPACE).
    """
    settings = settings or get_settings()
    logger.info("connecting_to_temporal", address=settings.temporal_address, namespace=settings.temporal_namespace)

    # In production, you would configure TLS here
    client = await Client.connect(settings.temporal_address, namespace=settings.temporal_namespace)

    logger.info("connected_to_temporal", address=settings.temporal_address)
    return client
