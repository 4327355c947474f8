"""Recurring jobs: news fetch, high-impact alerts and the daily digest."""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from signalcopilot.config import Settings, settings as default_settings
from signalcopilot.log_config import logger
from signalcopilot.tasks.jobs import FETCH_NEWS, GENERATE_DAILY_DIGESTS, GENERATE_HIGH_IMPACT_ALERTS
from signalcopilot.tasks.queue import TaskQueue


def _submitter(queue: TaskQueue, kind: str):
    """Factory so each scheduled job closes over its own kind."""
    def submit_job():
        handle = queue.submit(kind, {})
        logger.debug(f"Scheduled {kind} submitted as job {handle.id}")
    return submit_job


def create_scheduler(queue: TaskQueue, config: Optional[Settings] = None) -> AsyncIOScheduler:
    """Build (but do not start) the scheduler; every job just submits to ``queue``."""
    config = config or default_settings
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        _submitter(queue, FETCH_NEWS),
        trigger=IntervalTrigger(minutes=config.news_fetch_interval_minutes),
        id=FETCH_NEWS,
        name="News Fetch",
        replace_existing=True,
    )
    scheduler.add_job(
        _submitter(queue, GENERATE_HIGH_IMPACT_ALERTS),
        trigger=IntervalTrigger(minutes=config.alert_check_interval_minutes),
        id=GENERATE_HIGH_IMPACT_ALERTS,
        name="High Impact Alerts",
        replace_existing=True,
    )
    scheduler.add_job(
        _submitter(queue, GENERATE_DAILY_DIGESTS),
        trigger=CronTrigger(hour=config.digest_hour_utc, minute=0, timezone="UTC"),
        id=GENERATE_DAILY_DIGESTS,
        name="Daily Digest",
        replace_existing=True,
    )
    return scheduler


def start_scheduler(queue: TaskQueue, config: Optional[Settings] = None) -> Optional[AsyncIOScheduler]:
    """Start recurring jobs on the running event loop, unless disabled."""
    config = config or default_settings
    if not config.scheduler_enabled:
        logger.info("Scheduler disabled by configuration")
        return None

    scheduler = create_scheduler(queue, config)
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")
    for job in scheduler.get_jobs():
        logger.info(f"  - {job.name} ({job.trigger})")
    return scheduler


def stop_scheduler(scheduler: Optional[AsyncIOScheduler]) -> None:
    if scheduler is not None and scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
