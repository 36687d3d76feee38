"""Leave service layer: schedules, sick leave, cancellation, summaries.

Business logic:
  - Materializing an approved request into a VacationSchedule (with the
    ledger debit) or a SickLeave record
  - Cancelling a vacation with ledger credit and authority checks
  - Vacation summary and team calendar read models
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from portal.common.audit import create_audit_entry
from portal.common.constants import (
    ADMIN_ROLES,
    ENTITY_SICK_LEAVE,
    ENTITY_VACATION,
    LeaveKind,
    NotificationType,
    SickLeaveStatus,
    StepStatus,
    VacationStatus,
)
from portal.common.exceptions import (
    ConflictError,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from portal.config import settings
from portal.core_hr.models import Employee
from portal.leave.conflicts import VacationConflictAnalyzer
from portal.leave.ledger import LeaveLedger
from portal.leave.models import SickLeave, VacationSchedule, inclusive_days
from portal.leave.schemas import (
    ConflictResult,
    TeamCalendarOut,
    VacationScheduleOut,
    VacationSummaryOut,
)
from portal.notifications.service import notify
from portal.workflow.models import RequestApprovalStep

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════
# LeaveService
# ═════════════════════════════════════════════════════════════════════


class LeaveService:
    """Async leave operations."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _get_employee(db: AsyncSession, user_id: uuid.UUID) -> Employee:
        employee = await db.get(Employee, user_id)
        if employee is None:
            raise NotFoundException("Employee", user_id)
        return employee

    @staticmethod
    async def get_schedule(db: AsyncSession, schedule_id: uuid.UUID) -> VacationSchedule:
        result = await db.execute(
            select(VacationSchedule)
            .where(VacationSchedule.id == schedule_id)
            .execution_options(populate_existing=True)
        )
        schedule = result.scalars().first()
        if schedule is None:
            raise NotFoundException("VacationSchedule", schedule_id)
        return schedule

    @staticmethod
    async def flush_schedule(db: AsyncSession, schedule: VacationSchedule) -> None:
        try:
            await db.flush()
        except StaleDataError as exc:
            raise ConflictError(ENTITY_VACATION, schedule.id) from exc

    # ─────────────────────────────────────────────────────────────────
    # Create from an approved request
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create_vacation_schedule(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        start_date: date,
        end_date: date,
        leave_kind: LeaveKind,
        substitute_user_id: Optional[uuid.UUID] = None,
        source_request_id: Optional[uuid.UUID] = None,
        reason_category: Optional[str] = None,
        has_documentation: bool = False,
        today: Optional[date] = None,
    ) -> VacationSchedule:
        """Debit the ledger and create a Scheduled vacation in one unit of work."""
        if end_date < start_date:
            raise ValidationException({"end_date": ["End date must be on or after start date."]})

        days = inclusive_days(start_date, end_date)
        draw = await LeaveLedger.debit(
            db,
            user_id,
            days,
            leave_kind,
            today=today,
            reason_category=reason_category,
            has_documentation=has_documentation,
            period=(start_date, end_date),
        )
        schedule = VacationSchedule(
            user_id=user_id,
            substitute_user_id=substitute_user_id,
            start_date=start_date,
            end_date=end_date,
            leave_kind=leave_kind,
            source_request_id=source_request_id,
            status=VacationStatus.scheduled,
            carried_over_days_drawn=draw.from_carried_over,
        )
        db.add(schedule)
        await db.flush()

        await create_audit_entry(
            db,
            action="create",
            entity_type=ENTITY_VACATION,
            entity_id=schedule.id,
            new_values={
                "user_id": str(user_id),
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "days_count": days,
                "leave_kind": leave_kind.value,
                "status": VacationStatus.scheduled.value,
                "source_request_id": str(source_request_id) if source_request_id else None,
            },
        )
        await notify(
            db,
            substitute_user_id,
            title="You Are a Substitute",
            message=(
                f"You will substitute for a colleague from {start_date} to {end_date}."
            ),
            entity_type=ENTITY_VACATION,
            entity_id=schedule.id,
        )
        logger.info(
            "Vacation %s scheduled for %s: %s..%s (%d day(s), %s)",
            schedule.id, user_id, start_date, end_date, days, leave_kind.value,
        )
        return schedule

    @staticmethod
    async def create_sick_leave(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        start_date: date,
        end_date: date,
        source_request_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        today: Optional[date] = None,
    ) -> SickLeave:
        """Record sick leave; flags the ZUS certificate above the threshold.

        Idempotent per ``source_request_id``.
        """
        if end_date < start_date:
            raise ValidationException({"end_date": ["End date must be on or after start date."]})

        if source_request_id is not None:
            existing = (
                await db.execute(
                    select(SickLeave).where(SickLeave.source_request_id == source_request_id)
                )
            ).scalars().first()
            if existing is not None:
                return existing

        today = today or date.today()
        days = inclusive_days(start_date, end_date)
        requires_zus = days > settings.ZUS_DOCUMENT_THRESHOLD_DAYS
        sick_leave = SickLeave(
            user_id=user_id,
            start_date=start_date,
            end_date=end_date,
            requires_zus_document=requires_zus,
            source_request_id=source_request_id,
            status=SickLeaveStatus.completed if end_date < today else SickLeaveStatus.active,
            notes=notes,
        )
        db.add(sick_leave)
        await db.flush()

        await create_audit_entry(
            db,
            action="create",
            entity_type=ENTITY_SICK_LEAVE,
            entity_id=sick_leave.id,
            new_values={
                "user_id": str(user_id),
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "days_count": days,
                "requires_zus_document": requires_zus,
            },
        )
        if requires_zus:
            await notify(
                db,
                user_id,
                type=NotificationType.action_required,
                title="ZUS Medical Certificate Required",
                message=(
                    f"Your sick leave from {start_date} to {end_date} lasts {days} days. "
                    f"Sick leave longer than {settings.ZUS_DOCUMENT_THRESHOLD_DAYS} days "
                    "requires a ZUS medical certificate."
                ),
                entity_type=ENTITY_SICK_LEAVE,
                entity_id=sick_leave.id,
            )
        logger.info(
            "Sick leave %s recorded for %s: %d day(s), ZUS=%s",
            sick_leave.id, user_id, days, requires_zus,
        )
        return sick_leave

    # ─────────────────────────────────────────────────────────────────
    # CancelVacation
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _approved_source_request(
        db: AsyncSession,
        source_request_id: Optional[uuid.UUID],
        actor_id: uuid.UUID,
    ) -> bool:
        if source_request_id is None:
            return False
        result = await db.execute(
            select(RequestApprovalStep.id).where(
                RequestApprovalStep.request_id == source_request_id,
                RequestApprovalStep.status == StepStatus.approved,
                (RequestApprovalStep.approver_id == actor_id)
                | (RequestApprovalStep.decided_by_id == actor_id),
            )
        )
        return result.first() is not None

    @staticmethod
    async def cancel_vacation(
        db: AsyncSession,
        schedule_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: str,
        *,
        today: Optional[date] = None,
    ) -> VacationScheduleOut:
        """Cancel a scheduled or active vacation and credit the ledger.

        Authority:
          - HR / system admins: always
          - an approver of the source request: until
            ``APPROVER_CANCELLATION_WINDOW_DAYS`` after the start date
          - the owner: only before the vacation starts
        """
        today = today or date.today()
        now = datetime.now(timezone.utc)

        schedule = await LeaveService.get_schedule(db, schedule_id)
        actor = await LeaveService._get_employee(db, actor_id)

        if schedule.status not in (VacationStatus.scheduled, VacationStatus.active):
            raise ValidationException(
                {"status": [
                    f"Cannot cancel a vacation with status '{schedule.status.value}'."
                ]}
            )

        window = settings.APPROVER_CANCELLATION_WINDOW_DAYS
        if actor.role in ADMIN_ROLES:
            pass
        elif await LeaveService._approved_source_request(
            db, schedule.source_request_id, actor_id,
        ):
            if (today - schedule.start_date).days > window:
                raise ValidationException(
                    {"status": [
                        f"Approvers can cancel a vacation only within {window} day(s) "
                        f"of its start date ({schedule.start_date})."
                    ]}
                )
        elif schedule.user_id == actor_id:
            if schedule.status != VacationStatus.scheduled:
                raise ValidationException(
                    {"status": ["You can only cancel your own vacation before it starts."]}
                )
        else:
            raise ForbiddenException("You are not allowed to cancel this vacation.")

        old_status = schedule.status
        await LeaveLedger.credit(
            db,
            schedule.user_id,
            schedule.days_count,
            schedule.leave_kind,
            from_carried_over=schedule.carried_over_days_drawn,
        )
        schedule.status = VacationStatus.cancelled
        schedule.cancelled_at = now
        schedule.cancelled_by_id = actor_id
        schedule.cancellation_reason = reason
        await LeaveService.flush_schedule(db, schedule)

        await create_audit_entry(
            db,
            action="cancel",
            entity_type=ENTITY_VACATION,
            entity_id=schedule.id,
            actor_id=actor_id,
            old_values={"status": old_status.value},
            new_values={
                "status": VacationStatus.cancelled.value,
                "days_credited": schedule.days_count,
            },
            reason=reason,
        )

        message = (
            f"The vacation from {schedule.start_date} to {schedule.end_date} "
            f"has been cancelled. Reason: {reason}"
        )
        await notify(
            db,
            schedule.user_id,
            type=NotificationType.alert,
            title="Vacation Cancelled",
            message=message,
            entity_type=ENTITY_VACATION,
            entity_id=schedule.id,
        )
        await notify(
            db,
            schedule.substitute_user_id,
            title="Substitution Cancelled",
            message=message,
            entity_type=ENTITY_VACATION,
            entity_id=schedule.id,
        )
        logger.info(
            "Vacation %s cancelled by %s, %d day(s) credited",
            schedule.id, actor_id, schedule.days_count,
        )
        return VacationScheduleOut.model_validate(schedule)

    # ─────────────────────────────────────────────────────────────────
    # GetVacationSummary
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_vacation_summary(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        today: Optional[date] = None,
    ) -> VacationSummaryOut:
        today = today or date.today()
        employee = await LeaveService._get_employee(db, user_id)

        upcoming = (
            await db.execute(
                select(VacationSchedule)
                .where(
                    VacationSchedule.user_id == user_id,
                    VacationSchedule.status.in_(
                        [VacationStatus.scheduled, VacationStatus.active]
                    ),
                    VacationSchedule.end_date >= today,
                )
                .order_by(VacationSchedule.start_date)
            )
        ).scalars().all()

        return VacationSummaryOut(
            user_id=employee.id,
            leave_year=employee.leave_year,
            annual_vacation_days=employee.annual_vacation_days,
            vacation_days_used=employee.vacation_days_used,
            vacation_days_remaining=employee.current_year_remaining,
            on_demand_vacation_days_used=employee.on_demand_vacation_days_used,
            on_demand_vacation_days_remaining=LeaveLedger.on_demand_remaining(employee),
            circumstantial_leave_days_used=employee.circumstantial_leave_days_used,
            carried_over_vacation_days=employee.carried_over_vacation_days or 0,
            carried_over_days_used=employee.carried_over_days_used or 0,
            carried_over_expiry_date=employee.carried_over_expiry_date,
            total_available_days=LeaveLedger.available_days(employee, today),
            upcoming_vacations=[VacationScheduleOut.model_validate(s) for s in upcoming],
        )

    # ─────────────────────────────────────────────────────────────────
    # Conflicts / calendar
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def analyze_conflicts(
        db: AsyncSession,
        user_id: uuid.UUID,
        start_date: date,
        end_date: date,
        *,
        substitute_user_id: Optional[uuid.UUID] = None,
    ) -> ConflictResult:
        employee = await LeaveService._get_employee(db, user_id)
        return await VacationConflictAnalyzer.analyze_conflicts(
            db,
            user_id,
            employee.department_id,
            start_date,
            end_date,
            substitute_user_id=substitute_user_id,
        )

    @staticmethod
    async def get_team_calendar(
        db: AsyncSession,
        department_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> TeamCalendarOut:
        return await VacationConflictAnalyzer.team_calendar(
            db, department_id, start_date, end_date,
        )
