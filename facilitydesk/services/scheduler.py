# FacilityDesk - School Facility Equipment Checkout System
# Copyright (C) 2025 Oleg Tokmakov
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Scheduler service using APScheduler."""

import logging
import time
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from facilitydesk.config import get_settings
from facilitydesk.database import get_session_local

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get the global scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone="UTC")
    return scheduler


async def run_cron_job(job_key: str, db: Session) -> Dict[str, Any]:
    """Run a background job by key.

    Args:
        job_key: The job identifier
        db: Database session

    Returns:
        Result of the job execution.
    """
    start_time = time.time()

    if job_key == "send_notifications":
        result = await _run_send_notifications(db)
    elif job_key == "daily_cleanup":
        result = await _run_daily_cleanup(db)
    else:
        raise ValueError(f"Unknown job key: {job_key}")

    duration_ms = int((time.time() - start_time) * 1000)
    logger.info("Job %s finished in %d ms: %s", job_key, duration_ms, result)
    return result


async def _run_send_notifications(db: Session) -> Dict[str, Any]:
    from facilitydesk.services.notifications import process_pending_notifications

    return await process_pending_notifications(db)


async def _run_daily_cleanup(db: Session) -> Dict[str, Any]:
    """Purge old returned requests and finished notification rows."""
    from facilitydesk.services.lifecycle import cleanup_returned_requests
    from facilitydesk.services.notifications import purge_notification_log

    results = {}
    results["requests"] = cleanup_returned_requests(db)
    results["notification_logs_deleted"] = purge_notification_log(db)
    return results


async def run_job(job_key: str) -> None:
    """Run a job with its own database session."""
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        await run_cron_job(job_key, db)
    except Exception:
        logger.exception("Job %s failed", job_key)
    finally:
        db.close()


def setup_scheduler() -> AsyncIOScheduler:
    """Set up the scheduler with background jobs."""
    settings = get_settings()
    sched = get_scheduler()

    sched.add_job(
        run_job,
        IntervalTrigger(minutes=settings.scheduler.notification_interval_minutes),
        args=["send_notifications"],
        id="send_notifications",
        replace_existing=True,
    )

    sched.add_job(
        run_job,
        CronTrigger(hour=settings.scheduler.cleanup_hour, minute=0),
        args=["daily_cleanup"],
        id="daily_cleanup",
        replace_existing=True,
    )

    return sched


def start_scheduler():
    """Start the scheduler."""
    sched = setup_scheduler()
    if not sched.running:
        sched.start()
        logger.info("Scheduler started")
    return sched


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None
