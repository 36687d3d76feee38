"""Enums and constants for the leave portal: matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr_admin = "hr_admin"
    system_admin = "system_admin"


ADMIN_ROLES: frozenset[UserRole] = frozenset({UserRole.hr_admin, UserRole.system_admin})


# ── Leave ───────────────────────────────────────────────────────────

class LeaveKind(str, enum.Enum):
    annual = "annual"
    on_demand = "on_demand"
    circumstantial = "circumstantial"
    sick = "sick"


DEDUCTIBLE_LEAVE_KINDS: frozenset[LeaveKind] = frozenset(
    {LeaveKind.annual, LeaveKind.on_demand, LeaveKind.circumstantial}
)


class VacationStatus(str, enum.Enum):
    scheduled = "scheduled"
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class SickLeaveStatus(str, enum.Enum):
    active = "active"
    completed = "completed"


# ── Requests / approval workflow ────────────────────────────────────

class RequestStatus(str, enum.Enum):
    draft = "draft"
    in_review = "in_review"
    approved = "approved"
    rejected = "rejected"
    awaiting_survey = "awaiting_survey"


EDITABLE_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.draft, RequestStatus.in_review}
)


class StepStatus(str, enum.Enum):
    pending = "pending"
    in_review = "in_review"
    approved = "approved"
    rejected = "rejected"
    skipped = "skipped"


TERMINAL_STEP_STATUSES: frozenset[StepStatus] = frozenset(
    {StepStatus.approved, StepStatus.rejected, StepStatus.skipped}
)


class ApproverType(str, enum.Enum):
    direct_supervisor = "direct_supervisor"
    department_head = "department_head"
    specific_user = "specific_user"


class Decision(str, enum.Enum):
    approve = "approve"
    reject = "reject"


# ── Conflicts ───────────────────────────────────────────────────────

class ConflictType(str, enum.Enum):
    coverage_low = "COVERAGE_LOW"
    coverage_critical = "COVERAGE_CRITICAL"
    overlapping_vacation = "OverlappingVacation"
    key_personnel_unavailable = "KeyPersonnelUnavailable"


class ConflictSeverity(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


# ── Notifications ───────────────────────────────────────────────────

class NotificationType(str, enum.Enum):
    info = "info"
    action_required = "action_required"
    approval = "approval"
    reminder = "reminder"
    alert = "alert"


# ── Audit entity types ──────────────────────────────────────────────

ENTITY_REQUEST = "Request"
ENTITY_REQUEST_STEP = "RequestApprovalStep"
ENTITY_VACATION = "VacationSchedule"
ENTITY_SICK_LEAVE = "SickLeave"
ENTITY_EMPLOYEE = "Employee"

# ── Misc ────────────────────────────────────────────────────────────

DATE_FORMAT = "%Y-%m-%d"
