from typing import Any, Dict

from structlog import get_logger
from temporalio import activity

from bazaar.outbox.dispatcher import OutboxDispatcher
from bazaar.settlement.orchestrator import SettlementOrchestrator

logger = get_logger()

# -----------------------------------------------------------------------------
# Retry policies (set by the workflows):
# -----------------------------------------------------------------------------
# expired_checkouts_swept:  Retry many times. Every step is idempotent; a
#                           half-finished sweep is picked up by the next run.
# abandoned_orders_closed:  Same.
# outbox_batch_dispatched:  Retry a few times, then leave it to the next cycle.
#                           Per-event failures never fail the activity.
# -----------------------------------------------------------------------------


class MaintenanceActivities:
    """
    Background jobs the worker runs on a schedule.
    Bound to an orchestrator and dispatcher so they share the worker's HTTP
    client and database engine.
    """

    def __init__(self, orchestrator: SettlementOrchestrator, dispatcher: OutboxDispatcher):
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher

    @activity.defn(name="expired_checkouts_swept")
    async def expired_checkouts_swept(self, limit: int) -> Dict[str, Any]:
        """Release expired reservations and expire the checkouts still holding them."""
        logger.info("activity_started", activity="expired_checkouts_swept", limit=limit)
        result = await self.orchestrator.expire_stale_checkouts(limit)
        logger.info("activity_completed", activity="expired_checkouts_swept", **result.as_dict())
        return result.as_dict()

    @activity.defn(name="abandoned_orders_closed")
    async def abandoned_orders_closed(self, limit: int) -> int:
        logger.info("activity_started", activity="abandoned_orders_closed", limit=limit)
        closed = await self.orchestrator.close_abandoned_orders(limit)
        logger.info("activity_completed", activity="abandoned_orders_closed", closed=closed)
        return closed

    @activity.defn(name="outbox_batch_dispatched")
    async def outbox_batch_dispatched(self, limit: int) -> Dict[str, Any]:
        logger.info("activity_started", activity="outbox_batch_dispatched", limit=limit)
        stats = await self.dispatcher.dispatch_pending(limit)
        logger.info("activity_completed", activity="outbox_batch_dispatched", **stats.as_dict())
        return stats.as_dict()

    def all(self) -> list:
        return [self.expired_checkouts_swept, self.abandoned_orders_closed, self.outbox_batch_dispatched]
