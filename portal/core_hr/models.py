"""Core HR ORM models: Department, Employee.

Only the columns the leave workflow reads or mutates are mapped. Leave
counters live on the employee row and are written exclusively by the
leave ledger and the lifecycle jobs.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from portal.common.constants import UserRole
from portal.database import Base


# ═════════════════════════════════════════════════════════════════════
# Department
# ═════════════════════════════════════════════════════════════════════


class Department(Base):
    """Organisational department; the head is a department-head approver."""

    __tablename__ = "departments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(150), nullable=False, unique=True)
    head_employee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("employees.id", name="fk_dept_head", use_alter=True),
    )
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("TRUE"),
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Department {self.name!r}>"


# ═════════════════════════════════════════════════════════════════════
# Employee
# ═════════════════════════════════════════════════════════════════════


class Employee(Base):
    """Portal user. Carries the per-year leave counters."""

    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    first_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    email: Mapped[str] = mapped_column(sa.String(255), unique=True, nullable=False)
    role: Mapped[UserRole] = mapped_column(
        sa.Enum(UserRole, name="user_role", create_type=False),
        default=UserRole.employee,
        server_default="employee",
    )
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("departments.id"),
    )
    supervisor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"),
    )
    employment_start_date: Mapped[Optional[date]] = mapped_column(sa.Date)
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, server_default=sa.text("TRUE"),
    )

    # ── Leave counters ──────────────────────────────────────────────
    annual_vacation_days: Mapped[int] = mapped_column(
        sa.Integer, default=26, server_default=sa.text("26"),
    )
    vacation_days_used: Mapped[int] = mapped_column(
        sa.Integer, default=0, server_default=sa.text("0"),
    )
    on_demand_vacation_days_used: Mapped[int] = mapped_column(
        sa.Integer, default=0, server_default=sa.text("0"),
    )
    circumstantial_leave_days_used: Mapped[int] = mapped_column(
        sa.Integer, default=0, server_default=sa.text("0"),
    )
    carried_over_vacation_days: Mapped[Optional[int]] = mapped_column(sa.Integer)
    carried_over_expiry_date: Mapped[Optional[date]] = mapped_column(sa.Date)
    # Part of vacation_days_used that was drawn from the carried-over pool.
    carried_over_days_used: Mapped[int] = mapped_column(
        sa.Integer, default=0, server_default=sa.text("0"),
    )
    # Calendar year the counters above belong to; guards the annual reset.
    leave_year: Mapped[Optional[int]] = mapped_column(sa.Integer)

    version_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def current_year_days_used(self) -> int:
        return self.vacation_days_used - (self.carried_over_days_used or 0)

    @property
    def carried_over_remaining(self) -> int:
        return max(0, (self.carried_over_vacation_days or 0) - (self.carried_over_days_used or 0))

    @property
    def current_year_remaining(self) -> int:
        return max(0, self.annual_vacation_days - self.current_year_days_used)

    @property
    def total_available(self) -> int:
        return self.current_year_remaining + self.carried_over_remaining

    def __repr__(self) -> str:
        return f"<Employee {self.email!r}>"
