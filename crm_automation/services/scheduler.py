"""
Sweep Scheduler using APScheduler.
Runs the wait-point timeout sweep and the delayed-resume job sweep at fixed intervals.
"""
from typing import Optional, TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from crm_automation.core.logging import get_logger

if TYPE_CHECKING:
    from crm_automation.core.config import Settings
    from crm_automation.services.runner import ExecutionRunner

logger = get_logger(__name__)

TIMEOUT_SWEEP_JOB_ID = "automation_timeout_sweep"
DELAY_SWEEP_JOB_ID = "automation_delay_sweep"


class SweepScheduler:
    """Owns the AsyncIOScheduler that drives ExecutionRunner sweeps."""

    def __init__(self, runner: "ExecutionRunner", settings: "Settings"):
        self.runner = runner
        self.settings = settings
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def sweep_timeouts(self) -> None:
        try:
            summary = await self.runner.sweep_timeouts()
            if summary.processed:
                logger.info("Timeout sweep finished", **summary.model_dump())
        except Exception as e:
            logger.error("Timeout sweep failed", error=str(e))

    async def sweep_delays(self) -> None:
        try:
            summary = await self.runner.process_scheduled_jobs()
            if summary.processed:
                logger.info("Delay sweep finished", **summary.model_dump())
        except Exception as e:
            logger.error("Delay sweep failed", error=str(e))

    def start(self) -> None:
        """Register both sweeps and start the scheduler if not already running."""
        if self.running:
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self.sweep_timeouts,
            trigger=IntervalTrigger(seconds=self.settings.timeout_sweep_interval_seconds),
            id=TIMEOUT_SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self.sweep_delays,
            trigger=IntervalTrigger(seconds=self.settings.delay_sweep_interval_seconds),
            id=DELAY_SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Sweep scheduler started",
                    timeout_interval=self.settings.timeout_sweep_interval_seconds,
                    delay_interval=self.settings.delay_sweep_interval_seconds)

    def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Sweep scheduler shutdown")
        self._scheduler = None

    def get_jobs(self) -> list:
        if self._scheduler is None:
            return []
        return [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]
