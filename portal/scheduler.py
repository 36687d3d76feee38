"""In-process daily timers for the leave lifecycle jobs.

Started from the FastAPI lifespan when ``SCHEDULER_ENABLED`` is set.
Every slot is one asyncio task sleeping until its UTC time of day; a
failing run is logged and the slot simply waits for its next trigger.
External cron setups can use ``scripts/run_leave_job.py`` instead.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from portal.config import settings
from portal.database import async_session_factory
from portal.leave.jobs import JOBS, JobReport

logger = logging.getLogger(__name__)


async def run_job(name: str, when: Optional[datetime] = None) -> JobReport:
    """Run one job in its own session and commit it."""
    procedure, takes_datetime = JOBS[name]
    when = when or datetime.now(timezone.utc)
    async with async_session_factory() as session:
        try:
            report = await procedure(session, when if takes_datetime else when.date())
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("Job %s failed for %s", name, when.isoformat())
            raise
    return report


def parse_time_of_day(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes), tzinfo=timezone.utc)


def seconds_until(at: time, now: datetime) -> float:
    """Seconds from ``now`` to the next occurrence of ``at`` (UTC)."""
    target = datetime.combine(now.date(), at.replace(tzinfo=None), tzinfo=timezone.utc)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class LeaveScheduler:
    """Daily slots: status sweep, reminders and the approval SLA check."""

    def __init__(self) -> None:
        self.slots: dict[str, tuple[str, ...]] = {
            settings.DAILY_SWEEP_TIME: (
                "sweep_vacation_statuses",
                "process_sick_leave_requests",
                "reset_annual_allowances",
                "expire_carry_over",
            ),
            settings.DAILY_REMINDER_TIME: (
                "send_vacation_reminders",
                "send_carry_over_reminders",
            ),
            settings.SLA_CHECK_TIME: ("check_approval_deadlines",),
        }
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        for at, names in self.slots.items():
            self._tasks.append(asyncio.create_task(self._slot_loop(at, names)))
        logger.info("Leave scheduler started with %d slot(s)", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Leave scheduler stopped")

    async def _slot_loop(self, at: str, names: tuple[str, ...]) -> None:
        trigger = parse_time_of_day(at)
        while True:
            try:
                await asyncio.sleep(seconds_until(trigger, datetime.now(timezone.utc)))
                for name in names:
                    try:
                        await run_job(name)
                    except Exception:
                        # already logged by run_job; the next job in the slot still runs
                        continue
            except asyncio.CancelledError:
                break
