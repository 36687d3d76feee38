"""Leave lifecycle procedures run on a daily schedule.

Each procedure takes a session and the date (or time) it runs for, is
safe to run twice for the same day, and returns a :class:`JobReport`.
Items are processed in their own SAVEPOINT: one failing item is logged
with its traceback and the batch carries on. The balance jobs (annual
reset, carry-over expiry) commit each employee instead and take no
locks, so they never hold up interactive requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.common.audit import create_audit_entry
from portal.common.constants import (
    ENTITY_EMPLOYEE,
    ENTITY_REQUEST,
    ENTITY_SICK_LEAVE,
    ENTITY_VACATION,
    NotificationType,
    RequestStatus,
    SickLeaveStatus,
    StepStatus,
    VacationStatus,
)
from portal.common.exceptions import ConflictError
from portal.config import settings
from portal.core_hr.models import Employee
from portal.leave.ledger import LeaveLedger
from portal.leave.models import SickLeave, VacationSchedule
from portal.leave.service import LeaveService
from portal.notifications.service import notify
from portal.workflow.models import Request, RequestApprovalStep
from portal.workflow.service import RequestService

logger = logging.getLogger(__name__)


@dataclass
class JobReport:
    name: str
    processed: int = 0
    skipped: int = 0
    failed: int = 0

    def log(self) -> "JobReport":
        logger.info(
            "Job %s finished: processed=%d skipped=%d failed=%d",
            self.name, self.processed, self.skipped, self.failed,
        )
        return self


# ═════════════════════════════════════════════════════════════════════
# Vacation status sweep (00:01)
# ═════════════════════════════════════════════════════════════════════


async def _set_status(
    db: AsyncSession,
    schedule: VacationSchedule,
    status: VacationStatus,
) -> None:
    old_status = schedule.status
    schedule.status = status
    await LeaveService.flush_schedule(db, schedule)
    await create_audit_entry(
        db,
        action=status.value,
        entity_type=ENTITY_VACATION,
        entity_id=schedule.id,
        old_values={"status": old_status.value},
        new_values={"status": status.value},
    )


async def sweep_vacation_statuses(db: AsyncSession, today: date) -> JobReport:
    """Scheduled → Active on the start day, Active/Scheduled → Completed after the end."""
    report = JobReport("sweep_vacation_statuses")
    logger.info("Sweeping vacation statuses for %s", today)

    starting = (
        await db.execute(
            select(VacationSchedule).where(
                VacationSchedule.status == VacationStatus.scheduled,
                VacationSchedule.start_date <= today,
                VacationSchedule.end_date >= today,
            )
        )
    ).scalars().all()
    for schedule in starting:
        try:
            async with db.begin_nested():
                await _set_status(db, schedule, VacationStatus.active)
                await notify(
                    db,
                    schedule.substitute_user_id,
                    title="Substitution Started",
                    message=(
                        f"Your substitution starts today and runs until {schedule.end_date}."
                    ),
                    entity_type=ENTITY_VACATION,
                    entity_id=schedule.id,
                )
            report.processed += 1
        except Exception:
            logger.exception("Failed to activate vacation %s", schedule.id)
            report.failed += 1

    ending = (
        await db.execute(
            select(VacationSchedule).where(
                VacationSchedule.status.in_([VacationStatus.scheduled, VacationStatus.active]),
                VacationSchedule.end_date < today,
            )
        )
    ).scalars().all()
    for schedule in ending:
        try:
            async with db.begin_nested():
                await _set_status(db, schedule, VacationStatus.completed)
                await notify(
                    db,
                    schedule.user_id,
                    title="Welcome Back",
                    message=f"Your vacation ended on {schedule.end_date}. Welcome back!",
                    entity_type=ENTITY_VACATION,
                    entity_id=schedule.id,
                )
                await notify(
                    db,
                    schedule.substitute_user_id,
                    title="Substitution Ended",
                    message=f"Your substitution ended on {schedule.end_date}.",
                    entity_type=ENTITY_VACATION,
                    entity_id=schedule.id,
                )
            report.processed += 1
        except Exception:
            logger.exception("Failed to complete vacation %s", schedule.id)
            report.failed += 1

    sick = await process_sick_leave_requests(db, today)
    report.processed += sick.processed
    report.failed += sick.failed
    return report.log()


async def process_sick_leave_requests(db: AsyncSession, today: date) -> JobReport:
    """Record approved sick leave requests and close finished sick leave."""
    report = JobReport("process_sick_leave_requests")

    for request in await RequestService.list_approved_sick_requests_without_record(db):
        try:
            async with db.begin_nested():
                form = RequestService.parse_leave_form(request.form_data or {})
                await LeaveService.create_sick_leave(
                    db,
                    user_id=request.submitted_by_id,
                    start_date=form.start_date,
                    end_date=form.end_date,
                    source_request_id=request.id,
                    notes=form.notes,
                    today=today,
                )
            report.processed += 1
        except Exception:
            logger.exception("Failed to record sick leave for request %s", request.id)
            report.failed += 1

    finished = (
        await db.execute(
            select(SickLeave).where(
                SickLeave.status == SickLeaveStatus.active,
                SickLeave.end_date < today,
            )
        )
    ).scalars().all()
    for sick_leave in finished:
        try:
            async with db.begin_nested():
                sick_leave.status = SickLeaveStatus.completed
                await db.flush()
                await create_audit_entry(
                    db,
                    action="complete",
                    entity_type=ENTITY_SICK_LEAVE,
                    entity_id=sick_leave.id,
                    old_values={"status": SickLeaveStatus.active.value},
                    new_values={"status": SickLeaveStatus.completed.value},
                )
            report.processed += 1
        except Exception:
            logger.exception("Failed to complete sick leave %s", sick_leave.id)
            report.failed += 1

    return report.log()


# ═════════════════════════════════════════════════════════════════════
# Vacation reminders (08:00)
# ═════════════════════════════════════════════════════════════════════


async def _schedules_starting(db: AsyncSession, day: date) -> list[VacationSchedule]:
    result = await db.execute(
        select(VacationSchedule).where(
            VacationSchedule.status.in_([VacationStatus.scheduled, VacationStatus.active]),
            VacationSchedule.start_date == day,
        )
    )
    return list(result.scalars().all())


async def send_vacation_reminders(db: AsyncSession, today: date) -> JobReport:
    """Day-before, start-day and week-ahead reminders.

    Only exact-day matches fire: a day the job does not run loses that
    day's reminders.
    """
    report = JobReport("send_vacation_reminders")

    for schedule in await _schedules_starting(db, today + timedelta(days=7)):
        for recipient in (schedule.user_id, schedule.substitute_user_id):
            await notify(
                db,
                recipient,
                type=NotificationType.reminder,
                title="Vacation in One Week",
                message=(
                    f"The vacation from {schedule.start_date} to {schedule.end_date} "
                    "starts in one week."
                ),
                entity_type=ENTITY_VACATION,
                entity_id=schedule.id,
            )
        report.processed += 1

    for schedule in await _schedules_starting(db, today + timedelta(days=1)):
        await notify(
            db,
            schedule.user_id,
            type=NotificationType.reminder,
            title="Vacation Starts Tomorrow",
            message=f"Your vacation starts tomorrow and ends on {schedule.end_date}.",
            entity_type=ENTITY_VACATION,
            entity_id=schedule.id,
        )
        await notify(
            db,
            schedule.substitute_user_id,
            type=NotificationType.reminder,
            title="Substitution Starts Tomorrow",
            message=f"Your substitution starts tomorrow and ends on {schedule.end_date}.",
            entity_type=ENTITY_VACATION,
            entity_id=schedule.id,
        )
        report.processed += 1

    for schedule in await _schedules_starting(db, today):
        await notify(
            db,
            schedule.substitute_user_id,
            type=NotificationType.reminder,
            title="Substitution Starts Today",
            message=f"Your substitution starts today and ends on {schedule.end_date}.",
            entity_type=ENTITY_VACATION,
            entity_id=schedule.id,
        )
        report.processed += 1

    return report.log()


# ═════════════════════════════════════════════════════════════════════
# Annual reset / carry-over (daily catch-up)
# ═════════════════════════════════════════════════════════════════════


async def _active_employees(db: AsyncSession) -> list[Employee]:
    result = await db.execute(
        select(Employee).where(Employee.is_active.is_(True)).order_by(Employee.id)
    )
    return list(result.scalars().all())


async def _reset_employee(db: AsyncSession, employee_id, year: int) -> bool:
    employee = await db.get(Employee, employee_id, populate_existing=True)
    old_values = {
        "leave_year": employee.leave_year,
        "annual_vacation_days": employee.annual_vacation_days,
        "vacation_days_used": employee.vacation_days_used,
        "carried_over_vacation_days": employee.carried_over_vacation_days,
    }
    entitlement = LeaveLedger.compute_proportional_entitlement(
        employee.employment_start_date,
        settings.DEFAULT_ANNUAL_VACATION_DAYS,
        year=year,
    ) if employee.employment_start_date else None
    changed = await LeaveLedger.reset_year(
        db, employee_id, year, default_annual_days=entitlement,
    )
    if not changed:
        return False
    await create_audit_entry(
        db,
        action="annual_reset",
        entity_type=ENTITY_EMPLOYEE,
        entity_id=employee_id,
        old_values=old_values,
        new_values={
            "leave_year": year,
            "annual_vacation_days": employee.annual_vacation_days,
            "carried_over_vacation_days": employee.carried_over_vacation_days,
            "carried_over_expiry_date": (
                employee.carried_over_expiry_date.isoformat()
                if employee.carried_over_expiry_date else None
            ),
        },
    )
    return True


async def reset_annual_allowances(db: AsyncSession, today: date) -> JobReport:
    """Roll every active employee not yet in ``today.year`` into it.

    Runs daily, so a missed January 1 is caught up on the next run.
    Each employee is committed on its own and takes no lock: an employee
    changed concurrently is skipped and picked up again next run.
    """
    report = JobReport("reset_annual_allowances")
    year = today.year

    result = await db.execute(
        select(Employee.id)
        .where(
            Employee.is_active.is_(True),
            or_(Employee.leave_year.is_(None), Employee.leave_year < year),
        )
        .order_by(Employee.id)
    )
    employee_ids = list(result.scalars().all())
    if employee_ids:
        logger.info("Resetting annual allowances for %d (%d employees)", year, len(employee_ids))

    for employee_id in employee_ids:
        try:
            changed = await _reset_employee(db, employee_id, year)
            await db.commit()
        except ConflictError:
            await db.rollback()
            logger.warning(
                "Employee %s changed during annual reset; retrying next run", employee_id,
            )
            report.skipped += 1
            continue
        except Exception:
            await db.rollback()
            logger.exception("Annual reset failed for employee %s", employee_id)
            report.failed += 1
            continue
        if changed:
            report.processed += 1
        else:
            report.skipped += 1

    return report.log()


async def send_carry_over_reminders(db: AsyncSession, today: date) -> JobReport:
    """Remind employees with unused carried-over days (on the reminder date)."""
    report = JobReport("send_carry_over_reminders")
    if (today.month, today.day) != (
        settings.CARRY_OVER_REMINDER_MONTH, settings.CARRY_OVER_REMINDER_DAY,
    ):
        return report

    for employee in await _active_employees(db):
        remaining = LeaveLedger.carried_over_available(employee, today)
        if remaining <= 0:
            report.skipped += 1
            continue
        await notify(
            db,
            employee.id,
            type=NotificationType.reminder,
            title="Carried-Over Vacation Days Expiring",
            message=(
                f"You have {remaining} carried-over vacation day(s) that expire on "
                f"{employee.carried_over_expiry_date}. Plan your leave before then."
            ),
            entity_type=ENTITY_EMPLOYEE,
            entity_id=employee.id,
        )
        report.processed += 1

    return report.log()


async def _expire_employee(db: AsyncSession, employee_id, today: date) -> None:
    forfeited = await LeaveLedger.expire(db, employee_id, today)
    await create_audit_entry(
        db,
        action="carry_over_expired",
        entity_type=ENTITY_EMPLOYEE,
        entity_id=employee_id,
        new_values={"forfeited_days": forfeited},
    )
    if forfeited > 0:
        await notify(
            db,
            employee_id,
            type=NotificationType.alert,
            title="Carried-Over Vacation Days Expired",
            message=f"{forfeited} unused carried-over vacation day(s) expired.",
            entity_type=ENTITY_EMPLOYEE,
            entity_id=employee_id,
        )


async def expire_carry_over(db: AsyncSession, today: date) -> JobReport:
    """Void carried-over days whose expiry date is before ``today``.

    Committed per employee without locking, like the annual reset.
    """
    report = JobReport("expire_carry_over")

    result = await db.execute(
        select(Employee.id)
        .where(
            Employee.carried_over_expiry_date.is_not(None),
            Employee.carried_over_expiry_date < today,
        )
        .order_by(Employee.id)
    )
    for employee_id in list(result.scalars().all()):
        try:
            await _expire_employee(db, employee_id, today)
            await db.commit()
        except ConflictError:
            await db.rollback()
            logger.warning(
                "Employee %s changed during carry-over expiry; retrying next run",
                employee_id,
            )
            report.skipped += 1
            continue
        except Exception:
            await db.rollback()
            logger.exception("Carry-over expiry failed for employee %s", employee_id)
            report.failed += 1
            continue
        report.processed += 1

    return report.log()


# ═════════════════════════════════════════════════════════════════════
# Approval SLA (09:00)
# ═════════════════════════════════════════════════════════════════════


async def check_approval_deadlines(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> JobReport:
    """Remind approvers of steps waiting longer than ``APPROVAL_SLA_DAYS``."""
    now = now or datetime.now(timezone.utc)
    report = JobReport("check_approval_deadlines")
    cutoff = now - timedelta(days=settings.APPROVAL_SLA_DAYS)

    result = await db.execute(
        select(RequestApprovalStep)
        .join(Request, Request.id == RequestApprovalStep.request_id)
        .where(
            Request.status == RequestStatus.in_review,
            RequestApprovalStep.status == StepStatus.in_review,
            RequestApprovalStep.approver_id.is_not(None),
            RequestApprovalStep.started_at < cutoff,
        )
        .options(selectinload(RequestApprovalStep.request))
        .order_by(RequestApprovalStep.started_at)
    )
    for step in result.scalars().all():
        await notify(
            db,
            step.approver_id,
            type=NotificationType.reminder,
            title="Approval Overdue",
            message=(
                f"Request {step.request.request_number} has been waiting for your "
                f"decision for more than {settings.APPROVAL_SLA_DAYS} day(s)."
            ),
            entity_type=ENTITY_REQUEST,
            entity_id=step.request_id,
            action_url=f"/requests/{step.request_id}",
        )
        report.processed += 1

    return report.log()


# name → (procedure, takes a datetime instead of a date)
JOBS = {
    "sweep_vacation_statuses": (sweep_vacation_statuses, False),
    "process_sick_leave_requests": (process_sick_leave_requests, False),
    "send_vacation_reminders": (send_vacation_reminders, False),
    "reset_annual_allowances": (reset_annual_allowances, False),
    "send_carry_over_reminders": (send_carry_over_reminders, False),
    "expire_carry_over": (expire_carry_over, False),
    "check_approval_deadlines": (check_approval_deadlines, True),
}
