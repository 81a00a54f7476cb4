"""Periodic redelivery sweep for failed webhook attempts.

Exports:
    WebhookRetryScheduler: AsyncIOScheduler wrapper driving
        WebhookDispatcher.retry_due on a fixed interval.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import structlog

logger = structlog.get_logger(__name__)


class WebhookRetryScheduler:
    """Runs the webhook retry sweep every ``interval_seconds``.

    A sweep that raises is logged and the next tick runs normally.
    max_instances=1 keeps a slow sweep from overlapping the next one.

    Args:
        dispatcher: WebhookDispatcher whose retry_due() is invoked.
        interval_seconds: Seconds between sweeps.
    """

    def __init__(self, dispatcher: object, interval_seconds: int = 60) -> None:
        self._dispatcher = dispatcher
        self._interval_seconds = interval_seconds
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if already running."""
        if self._started:
            return False

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id="webhook_retry_sweep",
            name="Redeliver failed webhook attempts",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info(
            "webhook.retry_scheduler_started",
            interval_seconds=self._interval_seconds,
        )
        return True

    async def run_once(self) -> int:
        """One sweep. Returns the number of redeliveries, 0 on error."""
        try:
            return await self._dispatcher.retry_due()  # type: ignore[attr-defined]
        except Exception as exc:
            logger.error("webhook.retry_sweep_failed", error=str(exc), exc_info=True)
            return 0

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("webhook.retry_scheduler_stopped")


__all__ = ["WebhookRetryScheduler"]
