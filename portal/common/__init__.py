"""Common module: shared utilities for the leave portal."""

from portal.common.audit import AuditTrail, create_audit_entry
from portal.common.constants import (
    ADMIN_ROLES,
    DATE_FORMAT,
    ApproverType,
    ConflictSeverity,
    ConflictType,
    Decision,
    LeaveKind,
    NotificationType,
    RequestStatus,
    SickLeaveStatus,
    StepStatus,
    UserRole,
    VacationStatus,
)
from portal.common.exceptions import (
    AppException,
    ConflictError,
    ForbiddenException,
    InsufficientLeaveBalance,
    NotFoundException,
    QuizFailedException,
    ValidationException,
    register_exception_handlers,
)
from portal.common.locks import KeyedLocks, employee_locks, request_locks

__all__ = [
    # Audit
    "AuditTrail",
    "create_audit_entry",
    # Constants / Enums
    "ADMIN_ROLES",
    "DATE_FORMAT",
    "ApproverType",
    "ConflictSeverity",
    "ConflictType",
    "Decision",
    "LeaveKind",
    "NotificationType",
    "RequestStatus",
    "SickLeaveStatus",
    "StepStatus",
    "UserRole",
    "VacationStatus",
    # Exceptions
    "AppException",
    "ConflictError",
    "ForbiddenException",
    "InsufficientLeaveBalance",
    "NotFoundException",
    "QuizFailedException",
    "ValidationException",
    "register_exception_handlers",
    # Locks
    "KeyedLocks",
    "employee_locks",
    "request_locks",
]
