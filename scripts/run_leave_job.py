#!/usr/bin/env python3
"""Run one leave lifecycle job once: for external cron setups.

Usage:
    python -m scripts.run_leave_job sweep_vacation_statuses
    python -m scripts.run_leave_job reset_annual_allowances --date 2027-01-01
    python -m scripts.run_leave_job check_approval_deadlines
    python -m scripts.run_leave_job --list

Exit codes:
    0 = job finished with no failed items
    1 = job finished but some items failed
    2 = job aborted
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Load .env from project root before portal.config reads the environment
env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

from portal.common.constants import DATE_FORMAT  # noqa: E402
from portal.config import settings  # noqa: E402
from portal.leave.jobs import JOBS  # noqa: E402
from portal.scheduler import run_job  # noqa: E402

logger = logging.getLogger("run_leave_job")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run a leave lifecycle job once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("job", nargs="?", choices=sorted(JOBS), help="Job to run")
    parser.add_argument("--date", type=str,
                        help="Run as of this date (YYYY-MM-DD, default: today UTC)")
    parser.add_argument("--list", action="store_true", help="List available jobs")
    args = parser.parse_args()

    if args.list or not args.job:
        for name in sorted(JOBS):
            print(name)
        return 0

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    when = datetime.now(timezone.utc)
    if args.date:
        when = datetime.strptime(args.date, DATE_FORMAT).replace(
            hour=when.hour, minute=when.minute, tzinfo=timezone.utc,
        )

    try:
        report = asyncio.run(run_job(args.job, when))
    except Exception:
        logger.error("Job %s aborted", args.job)
        return 2

    print(
        f"{report.name}: processed={report.processed} "
        f"skipped={report.skipped} failed={report.failed}"
    )
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
