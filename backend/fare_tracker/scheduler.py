"""
APScheduler wiring for price polling.

A single interval job ("price_polling") fires every `poll_tick_seconds` and
runs one PricePollingService tick. Per-route intervals are enforced by the
due-query, not by the scheduler, so the tick cadence stays fixed.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore

from fare_tracker.config import Settings, get_settings
from fare_tracker.services.polling import PricePollingService, empty_summary
from fare_tracker.utils import utcnow

logger = logging.getLogger(__name__)

JOB_ID = "price_polling"


class PollingScheduler:

    def __init__(
        self,
        polling: PricePollingService,
        tick_seconds: int = 60,
        shutdown_grace_seconds: float = 30.0,
        timezone: str = "UTC",
    ):
        self.polling = polling
        self.tick_seconds = tick_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.timezone = timezone
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.last_summary: Optional[dict] = None
        self.last_tick_at: Optional[datetime] = None
        self._current_tick: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def start(self) -> None:
        """Must be called from inside a running event loop."""
        if self.running:
            logger.warning("Polling scheduler already running")
            return

        self.polling.resume()
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            timezone=self.timezone,
        )
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id=JOB_ID,
            name="Price polling tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"✅ Polling scheduler started (tick every {self.tick_seconds}s)")

        job = self.scheduler.get_job(JOB_ID)
        if job is not None:
            logger.info(f"Next '{job.name}': {job.next_run_time}")

    async def tick(self) -> dict:
        """One scheduled tick. Never raises."""
        task = asyncio.current_task()
        self._current_tick = task
        try:
            summary = await self.polling.run_tick()
        except Exception as e:
            logger.error(f"❌ Polling tick failed: {e}", exc_info=True)
            summary = empty_summary()
            summary["errors"] += 1
        finally:
            if self._current_tick is task:
                self._current_tick = None

        self.last_summary = summary
        self.last_tick_at = utcnow()
        return summary

    async def stop(self) -> None:
        """
        Stop firing ticks and wait for the one in progress.

        Cycles that have not started yet are skipped; a tick still running
        after `shutdown_grace_seconds` is cancelled.
        """
        self.polling.begin_shutdown()

        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None

        task = self._current_tick
        if task is not None and not task.done():
            logger.info(f"Waiting up to {self.shutdown_grace_seconds:.0f}s for in-flight polling cycles")
            done, _ = await asyncio.wait({task}, timeout=self.shutdown_grace_seconds)
            if not done:
                logger.warning("Polling tick did not finish within the grace period, cancelling it")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        logger.info("✅ Polling scheduler stopped")

    def status(self) -> dict:
        next_run = None
        if self.running:
            job = self.scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time:
                next_run = job.next_run_time.isoformat()

        return {
            "running": self.running,
            "tick_seconds": self.tick_seconds,
            "next_run": next_run,
            "tick_in_progress": self._current_tick is not None and not self._current_tick.done(),
            "in_flight_routes": sorted(self.polling.in_flight),
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_summary": self.last_summary,
        }


# Global scheduler instance
polling_scheduler: Optional[PollingScheduler] = None


def build_polling_service(settings: Optional[Settings] = None, session_factory=None, provider=None) -> PricePollingService:
    """Wire the polling service to the SQL repositories and the Amadeus provider."""
    from fare_tracker.database import SessionLocal
    from fare_tracker.repositories import SqlTrackedRouteRegistry, SqlPriceHistoryStore, SqlPriceAlertStore
    from fare_tracker.services.price_provider import AmadeusPriceProvider

    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal

    return PricePollingService(
        registry=SqlTrackedRouteRegistry(session_factory),
        history=SqlPriceHistoryStore(session_factory, window=settings.history_window),
        alerts=SqlPriceAlertStore(session_factory),
        provider=provider or AmadeusPriceProvider.from_settings(settings),
        max_concurrency=settings.max_concurrent_polls,
        stamp_on_error=settings.stamp_on_error,
    )


def get_polling_scheduler() -> PollingScheduler:
    """Get or create the global polling scheduler."""
    global polling_scheduler
    if polling_scheduler is None:
        settings = get_settings()
        polling_scheduler = PollingScheduler(
            build_polling_service(settings),
            tick_seconds=settings.poll_tick_seconds,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
        )
    return polling_scheduler


def start_scheduler() -> None:
    """Start the scheduler (call this from the FastAPI lifespan)."""
    get_polling_scheduler().start()


async def stop_scheduler() -> None:
    """Stop the scheduler and release the provider's HTTP client."""
    global polling_scheduler
    if polling_scheduler is None:
        return
    await polling_scheduler.stop()
    await polling_scheduler.polling.provider.aclose()
    polling_scheduler = None


def get_scheduler_status() -> dict:
    """Scheduler and provider status for the /status endpoint."""
    if polling_scheduler is None:
        return {
            "running": False,
            "next_run": None,
            "last_summary": None,
            "provider": None,
        }

    status = polling_scheduler.status()
    status["provider"] = polling_scheduler.polling.provider.status()
    return status
