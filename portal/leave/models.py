"""Leave ORM models: VacationSchedule, SickLeave.

Both rows are materialized from an approved request and reference it by
``source_request_id`` only; there is no ORM cascade from the request, so
deleting a request never removes the leave it produced.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from portal.common.constants import LeaveKind, SickLeaveStatus, VacationStatus
from portal.database import Base


def inclusive_days(start_date: date, end_date: date) -> int:
    """Calendar days in ``[start_date, end_date]``."""
    return (end_date - start_date).days + 1


class VacationSchedule(Base):
    __tablename__ = "vacation_schedules"
    __table_args__ = (
        sa.CheckConstraint("end_date >= start_date", name="ck_vacation_dates"),
        sa.Index("ix_vacation_user_dates", "user_id", "start_date", "end_date"),
        sa.Index("ix_vacation_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    substitute_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    source_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("requests.id"), unique=True
    )
    leave_kind: Mapped[LeaveKind] = mapped_column(
        sa.Enum(LeaveKind, name="leave_kind", create_type=False),
        default=LeaveKind.annual,
        server_default="annual",
    )
    status: Mapped[VacationStatus] = mapped_column(
        sa.Enum(VacationStatus, name="vacation_status", create_type=False),
        default=VacationStatus.scheduled,
        server_default="scheduled",
    )
    # Part of days_count that the ledger drew from the carried-over pool.
    carried_over_days_drawn: Mapped[int] = mapped_column(
        sa.Integer, default=0, server_default=sa.text("0")
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    cancelled_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    version_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def days_count(self) -> int:
        return inclusive_days(self.start_date, self.end_date)

    @property
    def is_active(self) -> bool:
        return self.status == VacationStatus.active

    def overlaps(self, start_date: date, end_date: date) -> bool:
        return self.start_date <= end_date and self.end_date >= start_date

    def __repr__(self) -> str:
        return (
            f"<VacationSchedule {self.user_id} {self.start_date}..{self.end_date} "
            f"{self.status.value if self.status else None}>"
        )


class SickLeave(Base):
    __tablename__ = "sick_leaves"
    __table_args__ = (
        sa.CheckConstraint("end_date >= start_date", name="ck_sick_leave_dates"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    requires_zus_document: Mapped[bool] = mapped_column(
        sa.Boolean, default=False, server_default=sa.text("FALSE")
    )
    zus_document_url: Mapped[Optional[str]] = mapped_column(sa.String(500))
    source_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("requests.id"), unique=True
    )
    status: Mapped[SickLeaveStatus] = mapped_column(
        sa.Enum(SickLeaveStatus, name="sick_leave_status", create_type=False),
        default=SickLeaveStatus.active,
        server_default="active",
    )
    notes: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    @property
    def days_count(self) -> int:
        return inclusive_days(self.start_date, self.end_date)

    def __repr__(self) -> str:
        return f"<SickLeave {self.user_id} {self.start_date}..{self.end_date}>"
