import asyncio
import signal

import httpx
from structlog import get_logger
from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.worker import Worker

from bazaar.common.config import Settings, get_settings
from bazaar.common.logging import configure_logging
from bazaar.common.temporal import get_temporal_client
from bazaar.activities.maintenance import MaintenanceActivities
from bazaar.settlement.services import build_services
from bazaar.workflows.maintenance import (
    DISPATCH_WORKFLOW_ID,
    SWEEP_WORKFLOW_ID,
    OutboxDispatchWorkflow,
    ReservationSweepWorkflow,
)

logger = get_logger()


async def ensure_schedules(client: Client, settings: Settings) -> None:
    """Start the two long-running maintenance workflows unless they already run."""
    jobs = [
        (ReservationSweepWorkflow, SWEEP_WORKFLOW_ID, [settings.sweep_interval_seconds, 100]),
        (OutboxDispatchWorkflow, DISPATCH_WORKFLOW_ID, [settings.dispatch_interval_seconds, settings.outbox_batch_size]),
    ]
    for workflow_cls, workflow_id, args in jobs:
        try:
            await client.start_workflow(
                workflow_cls.run,
                args=args,
                id=workflow_id,
                task_queue=settings.task_queue,
            )
            logger.info("maintenance_workflow_started", workflow_id=workflow_id)
        except WorkflowAlreadyStartedError:
            logger.info("maintenance_workflow_already_running", workflow_id=workflow_id)


async def main():
    configure_logging("bazaar-worker")
    settings = get_settings()
    logger.info("worker_startup", version="0.1.0", task_queue=settings.task_queue)

    client = await get_temporal_client(settings)

    interrupt_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info("signal_received", signal=sig)
        interrupt_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async with httpx.AsyncClient() as http:
        orchestrator, dispatcher = build_services(settings, http)
        activities = MaintenanceActivities(orchestrator, dispatcher)

        worker = Worker(
            client,
            task_queue=settings.task_queue,
            workflows=[ReservationSweepWorkflow, OutboxDispatchWorkflow],
            activities=activities.all(),
        )

        async with worker:
            logger.info("worker_started", task_queue=settings.task_queue)
            await ensure_schedules(client, settings)
            await interrupt_event.wait()
            logger.info("shutdown_signal_received_draining")
            # Leaving the context drains in-flight activities

    logger.info("shutdown_complete")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
