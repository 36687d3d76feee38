"""Leave Pydantic v2 schemas: request / response validation.

Naming conventions:
  - *Request  → request bodies (write)
  - *Out      → response bodies (read)
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from portal.common.constants import (
    ConflictSeverity,
    ConflictType,
    LeaveKind,
    SickLeaveStatus,
    VacationStatus,
)


# ═════════════════════════════════════════════════════════════════════
# Vacation schedule
# ═════════════════════════════════════════════════════════════════════


class VacationScheduleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    substitute_user_id: Optional[uuid.UUID] = None
    start_date: date
    end_date: date
    days_count: int
    leave_kind: LeaveKind
    status: VacationStatus
    is_active: bool
    source_request_id: Optional[uuid.UUID] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class CancelVacationRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class SickLeaveOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    start_date: date
    end_date: date
    days_count: int
    requires_zus_document: bool
    status: SickLeaveStatus
    source_request_id: Optional[uuid.UUID] = None


# ═════════════════════════════════════════════════════════════════════
# Summary
# ═════════════════════════════════════════════════════════════════════


class VacationSummaryOut(BaseModel):
    user_id: uuid.UUID
    leave_year: Optional[int] = None
    annual_vacation_days: int
    vacation_days_used: int
    vacation_days_remaining: int
    on_demand_vacation_days_used: int
    on_demand_vacation_days_remaining: int
    circumstantial_leave_days_used: int
    carried_over_vacation_days: int
    carried_over_days_used: int
    carried_over_expiry_date: Optional[date] = None
    total_available_days: int
    upcoming_vacations: list[VacationScheduleOut] = []


# ═════════════════════════════════════════════════════════════════════
# Conflicts / team calendar
# ═════════════════════════════════════════════════════════════════════


class VacationConflict(BaseModel):
    type: ConflictType
    severity: ConflictSeverity
    message: str
    day: Optional[date] = None
    user_id: Optional[uuid.UUID] = None
    schedule_id: Optional[uuid.UUID] = None


class DayCoverage(BaseModel):
    day: date
    team_size: int
    on_vacation: int
    on_vacation_user_ids: list[uuid.UUID] = []
    coverage_percent: float
    absence_percent: float


class ConflictResult(BaseModel):
    can_be_approved: bool
    conflicts: list[VacationConflict] = []
    coverage: list[DayCoverage] = []
    minimum_coverage_percent: Optional[float] = None


class AnalyzeConflictsRequest(BaseModel):
    start_date: date
    end_date: date
    substitute_user_id: Optional[uuid.UUID] = None

    @model_validator(mode="after")
    def _check_range(self) -> "AnalyzeConflictsRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class TeamCalendarOut(BaseModel):
    department_id: uuid.UUID
    start_date: date
    end_date: date
    team_size: int
    vacations: list[VacationScheduleOut] = []
    coverage: list[DayCoverage] = []
    alerts: list[VacationConflict] = []
    average_coverage_percent: Optional[float] = None
    max_concurrent_vacations: int = 0
