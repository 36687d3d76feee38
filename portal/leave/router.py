"""Leave router: vacation cancellation, summaries, conflicts, team calendar.

All endpoints require authentication. Calendar and other people's
summaries need a manager role or higher.
"""

import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portal.auth.dependencies import get_current_user, require_role
from portal.common.constants import UserRole
from portal.common.exceptions import ValidationException
from portal.core_hr.models import Employee
from portal.database import get_db
from portal.leave.schemas import (
    AnalyzeConflictsRequest,
    CancelVacationRequest,
    ConflictResult,
    TeamCalendarOut,
    VacationScheduleOut,
    VacationSummaryOut,
)
from portal.leave.service import LeaveService

router = APIRouter(prefix="", tags=["leave"])


# ── POST /vacations/{schedule_id}/cancel ────────────────────────────

@router.post("/vacations/{schedule_id}/cancel", response_model=VacationScheduleOut)
async def cancel_vacation(
    schedule_id: uuid.UUID,
    body: CancelVacationRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a scheduled or active vacation and return its days to the balance."""
    return await LeaveService.cancel_vacation(db, schedule_id, employee.id, body.reason)


# ── GET /summary ────────────────────────────────────────────────────

@router.get("/summary", response_model=VacationSummaryOut)
async def my_vacation_summary(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Balances and upcoming vacations of the authenticated employee."""
    return await LeaveService.get_vacation_summary(db, employee.id)


# ── GET /summary/{user_id} ──────────────────────────────────────────

@router.get("/summary/{user_id}", response_model=VacationSummaryOut)
async def vacation_summary(
    user_id: uuid.UUID,
    employee: Employee = Depends(require_role(UserRole.manager)),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_vacation_summary(db, user_id)


# ── POST /analyze-conflicts ─────────────────────────────────────────

@router.post("/analyze-conflicts", response_model=ConflictResult)
async def analyze_conflicts(
    body: AnalyzeConflictsRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Preview coverage and personnel conflicts before submitting a vacation."""
    return await LeaveService.analyze_conflicts(
        db,
        employee.id,
        body.start_date,
        body.end_date,
        substitute_user_id=body.substitute_user_id,
    )


# ── GET /team-calendar ──────────────────────────────────────────────

@router.get("/team-calendar", response_model=TeamCalendarOut)
async def team_calendar(
    start_date: date = Query(...),
    end_date: date = Query(...),
    department_id: Optional[uuid.UUID] = Query(None),
    employee: Employee = Depends(require_role(UserRole.manager)),
    db: AsyncSession = Depends(get_db),
):
    """Department vacations with daily coverage. Defaults to the caller's department."""
    department_id = department_id or employee.department_id
    if department_id is None:
        raise ValidationException({"department_id": ["A department is required."]})
    return await LeaveService.get_team_calendar(db, department_id, start_date, end_date)
