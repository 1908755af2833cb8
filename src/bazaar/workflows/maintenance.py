import asyncio
from datetime import timedelta
from typing import Any, Dict, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from bazaar.activities.maintenance import MaintenanceActivities

SWEEP_WORKFLOW_ID = "reservation-sweep"
DISPATCH_WORKFLOW_ID = "outbox-dispatch"

SWEEP_RETRY = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    maximum_interval=timedelta(seconds=30),
    maximum_attempts=10,
)

DISPATCH_RETRY = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    maximum_interval=timedelta(seconds=10),
    maximum_attempts=3,
)


class _PeriodicWorkflow:
    """
    Shared loop: run a step, wait for the interval (or a RunNow signal),
    repeat. After `cycles` iterations the history is trimmed with
    continue-as-new unless `keep_running` is False.
    """

    def __init__(self) -> None:
        self._current_step = "started"
        self._run_now = False
        self._runs = 0
        self._last_result: Optional[Dict[str, Any]] = None
        self._last_error: Optional[str] = None

    async def _step(self, batch_size: int) -> Dict[str, Any]:
        raise NotImplementedError

    async def _loop(self, interval_seconds: int, batch_size: int, cycles: int, keep_running: bool) -> Dict[str, Any]:
        for _ in range(cycles):
            self._current_step = "running"
            try:
                self._last_result = await self._step(batch_size)
                self._last_error = None
            except ActivityError as e:
                # Retries exhausted; the next cycle starts over
                self._last_error = str(e.cause or e)
                workflow.logger.warning("maintenance_step_failed: %s", self._last_error)
            self._runs += 1

            self._current_step = "waiting"
            try:
                await workflow.wait_condition(lambda: self._run_now, timeout=timedelta(seconds=interval_seconds))
            except asyncio.TimeoutError:
                pass
            self._run_now = False

        if keep_running:
            workflow.continue_as_new(args=[interval_seconds, batch_size, cycles, keep_running])

        self._current_step = "completed"
        return {"runs": self._runs, "last_result": self._last_result, "last_error": self._last_error}

    # --- Signals ---

    @workflow.signal(name="RunNow")
    def run_now(self) -> None:
        """Skip the rest of the current wait."""
        self._run_now = True

    # --- Queries ---

    @workflow.query
    def get_current_step(self) -> str:
        return self._current_step

    @workflow.query
    def get_last_result(self) -> Optional[Dict[str, Any]]:
        return self._last_result

    @workflow.query
    def get_last_error(self) -> Optional[str]:
        return self._last_error


@workflow.defn(name="ReservationSweepWorkflow")
class ReservationSweepWorkflow(_PeriodicWorkflow):
    """Expires stale checkouts, then closes abandoned orders past their grace period."""

    @workflow.run
    async def run(
        self, interval_seconds: int = 60, batch_size: int = 100, cycles: int = 100, keep_running: bool = True
    ) -> Dict[str, Any]:
        workflow.logger.info("reservation_sweep_started")
        return await self._loop(interval_seconds, batch_size, cycles, keep_running)

    async def _step(self, batch_size: int) -> Dict[str, Any]:
        swept = await workflow.execute_activity_method(
            MaintenanceActivities.expired_checkouts_swept,
            batch_size,
            start_to_close_timeout=timedelta(minutes=2),
            retry_policy=SWEEP_RETRY,
        )
        closed = await workflow.execute_activity_method(
            MaintenanceActivities.abandoned_orders_closed,
            batch_size,
            start_to_close_timeout=timedelta(minutes=2),
            retry_policy=SWEEP_RETRY,
        )
        return {**swept, "closed": closed}


@workflow.defn(name="OutboxDispatchWorkflow")
class OutboxDispatchWorkflow(_PeriodicWorkflow):
    """Relays pending outbox events to notification and ERP."""

    @workflow.run
    async def run(
        self, interval_seconds: int = 10, batch_size: int = 50, cycles: int = 100, keep_running: bool = True
    ) -> Dict[str, Any]:
        workflow.logger.info("outbox_dispatch_started")
        return await self._loop(interval_seconds, batch_size, cycles, keep_running)

    async def _step(self, batch_size: int) -> Dict[str, Any]:
        return await workflow.execute_activity_method(
            MaintenanceActivities.outbox_batch_dispatched,
            batch_size,
            start_to_close_timeout=timedelta(minutes=5),
            retry_policy=DISPATCH_RETRY,
        )
