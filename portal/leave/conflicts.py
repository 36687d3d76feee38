"""Vacation conflict analysis: team coverage and key-personnel checks.

Read-only: nothing here mutates schedules or counters. Used while a
vacation request is validated and for the department calendar view.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Iterable, Iterator, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.common.constants import ConflictSeverity, ConflictType, VacationStatus
from portal.common.exceptions import NotFoundException, ValidationException
from portal.config import settings
from portal.core_hr.models import Employee
from portal.leave.models import VacationSchedule
from portal.leave.schemas import (
    ConflictResult,
    DayCoverage,
    TeamCalendarOut,
    VacationConflict,
    VacationScheduleOut,
)

# Statuses that occupy a team member's time. Cancelled rows never count.
OCCUPYING_STATUSES = (
    VacationStatus.scheduled,
    VacationStatus.active,
    VacationStatus.completed,
)
OPEN_STATUSES = (VacationStatus.scheduled, VacationStatus.active)


def iter_days(start_date: date, end_date: date) -> Iterator[date]:
    day = start_date
    while day <= end_date:
        yield day
        day += timedelta(days=1)


class VacationConflictAnalyzer:
    """Coverage statistics and conflict flags for a proposed date range."""

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _team_size(db: AsyncSession, department_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(Employee)
            .where(
                Employee.department_id == department_id,
                Employee.is_active.is_(True),
            )
        )
        return result.scalar_one()

    @staticmethod
    async def list_department_schedules(
        db: AsyncSession,
        department_id: uuid.UUID,
        start_date: date,
        end_date: date,
        *,
        statuses: Sequence[VacationStatus] = OCCUPYING_STATUSES,
    ) -> list[VacationSchedule]:
        """Schedules of department members overlapping the range (any overlap)."""
        result = await db.execute(
            select(VacationSchedule)
            .join(Employee, Employee.id == VacationSchedule.user_id)
            .where(
                Employee.department_id == department_id,
                VacationSchedule.status.in_(statuses),
                VacationSchedule.start_date <= end_date,
                VacationSchedule.end_date >= start_date,
            )
            .order_by(VacationSchedule.start_date, VacationSchedule.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _user_schedules(
        db: AsyncSession,
        user_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> list[VacationSchedule]:
        result = await db.execute(
            select(VacationSchedule)
            .where(
                VacationSchedule.user_id == user_id,
                VacationSchedule.status.in_(OPEN_STATUSES),
                VacationSchedule.start_date <= end_date,
                VacationSchedule.end_date >= start_date,
            )
            .order_by(VacationSchedule.start_date)
        )
        return list(result.scalars().all())

    # ─────────────────────────────────────────────────────────────────
    # Per-day statistics
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def compute_coverage(
        start_date: date,
        end_date: date,
        team_size: int,
        schedules: Iterable[VacationSchedule],
        *,
        extra_user_id: Optional[uuid.UUID] = None,
    ) -> list[DayCoverage]:
        """Per-day coverage; ``extra_user_id`` is counted away on every day."""
        schedules = list(schedules)
        days: list[DayCoverage] = []
        for day in iter_days(start_date, end_date):
            away = {s.user_id for s in schedules if s.start_date <= day <= s.end_date}
            if extra_user_id is not None:
                away.add(extra_user_id)
            on_vacation = len(away)
            if team_size > 0:
                absence = on_vacation / team_size * 100
                coverage = (team_size - on_vacation) / team_size * 100
            else:
                absence, coverage = 0.0, 100.0
            days.append(
                DayCoverage(
                    day=day,
                    team_size=team_size,
                    on_vacation=on_vacation,
                    on_vacation_user_ids=sorted(away, key=str),
                    coverage_percent=round(coverage, 2),
                    absence_percent=round(absence, 2),
                )
            )
        return days

    @staticmethod
    def coverage_alert(day: DayCoverage) -> Optional[VacationConflict]:
        """COVERAGE_LOW at 30-49% of the team away, COVERAGE_CRITICAL at 50%+."""
        if day.team_size <= 0:
            return None
        if day.absence_percent >= settings.COVERAGE_CRITICAL_PERCENT:
            return VacationConflict(
                type=ConflictType.coverage_critical,
                severity=ConflictSeverity.critical,
                day=day.day,
                message=(
                    f"{day.on_vacation} of {day.team_size} team members away on "
                    f"{day.day} (coverage {day.coverage_percent:.0f}%)."
                ),
            )
        if day.absence_percent >= settings.COVERAGE_LOW_PERCENT:
            return VacationConflict(
                type=ConflictType.coverage_low,
                severity=ConflictSeverity.medium,
                day=day.day,
                message=(
                    f"{day.on_vacation} of {day.team_size} team members away on "
                    f"{day.day} (coverage {day.coverage_percent:.0f}%)."
                ),
            )
        return None

    # ─────────────────────────────────────────────────────────────────
    # AnalyzeConflicts
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def analyze_conflicts(
        db: AsyncSession,
        user_id: uuid.UUID,
        department_id: Optional[uuid.UUID],
        start_date: date,
        end_date: date,
        *,
        substitute_user_id: Optional[uuid.UUID] = None,
    ) -> ConflictResult:
        """Flag coverage and personnel conflicts for a proposed vacation.

        ``can_be_approved`` is False only when a conflict is critical;
        everything else is advisory.
        """
        if end_date < start_date:
            raise ValidationException({"end_date": ["End date must be on or after start date."]})

        requester = await db.get(Employee, user_id)
        if requester is None:
            raise NotFoundException("Employee", user_id)

        conflicts: list[VacationConflict] = []

        # Own overlapping leave
        for schedule in await VacationConflictAnalyzer._user_schedules(
            db, user_id, start_date, end_date,
        ):
            conflicts.append(
                VacationConflict(
                    type=ConflictType.overlapping_vacation,
                    severity=ConflictSeverity.critical,
                    user_id=user_id,
                    schedule_id=schedule.id,
                    day=max(start_date, schedule.start_date),
                    message=(
                        f"You already have a {schedule.status.value} vacation from "
                        f"{schedule.start_date} to {schedule.end_date}."
                    ),
                )
            )

        # Supervisor / substitute away
        key_people = [
            ("Your direct supervisor", requester.supervisor_id),
            ("Your substitute", substitute_user_id),
        ]
        for label, person_id in key_people:
            if person_id is None or person_id == user_id:
                continue
            for schedule in await VacationConflictAnalyzer._user_schedules(
                db, person_id, start_date, end_date,
            ):
                conflicts.append(
                    VacationConflict(
                        type=ConflictType.key_personnel_unavailable,
                        severity=ConflictSeverity.high,
                        user_id=person_id,
                        schedule_id=schedule.id,
                        day=max(start_date, schedule.start_date),
                        message=(
                            f"{label} is on vacation from {schedule.start_date} "
                            f"to {schedule.end_date}."
                        ),
                    )
                )

        # Team coverage
        coverage: list[DayCoverage] = []
        if department_id is not None:
            team_size = await VacationConflictAnalyzer._team_size(db, department_id)
            schedules = await VacationConflictAnalyzer.list_department_schedules(
                db, department_id, start_date, end_date,
            )
            coverage = VacationConflictAnalyzer.compute_coverage(
                start_date, end_date, team_size, schedules, extra_user_id=user_id,
            )
            for day in coverage:
                alert = VacationConflictAnalyzer.coverage_alert(day)
                if alert is not None:
                    conflicts.append(alert)

        return ConflictResult(
            can_be_approved=not any(
                c.severity == ConflictSeverity.critical for c in conflicts
            ),
            conflicts=conflicts,
            coverage=coverage,
            minimum_coverage_percent=(
                min(d.coverage_percent for d in coverage) if coverage else None
            ),
        )

    # ─────────────────────────────────────────────────────────────────
    # GetTeamVacationCalendar
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def team_calendar(
        db: AsyncSession,
        department_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> TeamCalendarOut:
        """Department vacations in range with per-day coverage alerts."""
        if end_date < start_date:
            raise ValidationException({"end_date": ["End date must be on or after start date."]})

        team_size = await VacationConflictAnalyzer._team_size(db, department_id)
        schedules = await VacationConflictAnalyzer.list_department_schedules(
            db, department_id, start_date, end_date,
        )
        coverage = VacationConflictAnalyzer.compute_coverage(
            start_date, end_date, team_size, schedules,
        )
        alerts = [
            alert
            for alert in (VacationConflictAnalyzer.coverage_alert(d) for d in coverage)
            if alert is not None
        ]
        return TeamCalendarOut(
            department_id=department_id,
            start_date=start_date,
            end_date=end_date,
            team_size=team_size,
            vacations=[VacationScheduleOut.model_validate(s) for s in schedules],
            coverage=coverage,
            alerts=alerts,
            average_coverage_percent=(
                round(sum(d.coverage_percent for d in coverage) / len(coverage), 2)
                if coverage else None
            ),
            max_concurrent_vacations=max((d.on_vacation for d in coverage), default=0),
        )
