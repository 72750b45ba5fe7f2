"""estatefeed — Scheduler Jobs.

APScheduler daily jobs: collect + inspect at `feed_collect_hour`, sync at
`feed_sync_hour`. Every run, scheduled or manual, goes through the job guard.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from estatefeed.config import settings
from estatefeed.database import get_session
from estatefeed.scheduler.guard import JobAlreadyRunning, guard
from estatefeed.sync import pipeline
from estatefeed.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def run_collect(session, endpoints=None, client=None):
    async with guard.hold("collect"):
        return await pipeline.collect(session, endpoints=endpoints, client=client)


async def run_inspect(session, endpoints=None, reset=None):
    async with guard.hold("inspect"):
        return pipeline.inspect(session, endpoints=endpoints, reset=reset)


async def run_sync(session, dry_run=False, endpoints=None, client=None):
    async with guard.hold("sync"):
        return await pipeline.sync(
            session, dry_run=dry_run, endpoints=endpoints, client=client
        )


async def daily_collect_job():
    """Collect raw snapshots, then inspect their schema."""
    logger.info("Scheduled feed collect starting...", extra={"job": "collect"})
    session = next(get_session())
    try:
        result = await run_collect(session)
        logger.info(
            f"Scheduled collect complete: {result['fetched']} fetched, "
            f"{result['failed']} failed",
            extra={"job": "collect"},
        )
        await run_inspect(session)
    except JobAlreadyRunning as e:
        logger.warning(str(e), extra={"job": e.job})
    except Exception as e:
        logger.error(f"Scheduled collect failed: {e}", exc_info=True, extra={"job": "collect"})
    finally:
        session.close()


async def daily_sync_job():
    """Reconcile the feed into the catalog tables."""
    logger.info("Scheduled feed sync starting...", extra={"job": "sync"})
    session = next(get_session())
    try:
        summary = await run_sync(session)
        logger.info(
            f"Scheduled sync complete. Upserted: {summary.upserted}, "
            f"stale: {summary.stale_marked}",
            extra={"job": "sync"},
        )
    except JobAlreadyRunning as e:
        logger.warning(str(e), extra={"job": e.job})
    except Exception as e:
        logger.error(f"Scheduled sync failed: {e}", exc_info=True, extra={"job": "sync"})
    finally:
        session.close()


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        daily_collect_job,
        "cron",
        hour=settings.feed_collect_hour,
        minute=0,
        id="feed_collect",
        replace_existing=True,
        misfire_grace_time=3600,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        daily_sync_job,
        "cron",
        hour=settings.feed_sync_hour,
        minute=0,
        id="feed_sync",
        replace_existing=True,
        misfire_grace_time=3600,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started. Collect at {settings.feed_collect_hour}:00 UTC, "
        f"sync at {settings.feed_sync_hour}:00 UTC"
    )


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
