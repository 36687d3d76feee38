"""Request workflow ORM models.

Templates (RequestTemplate → RequestApprovalStepTemplate → QuizQuestion)
describe a request type. Submitting one produces a Request with one
RequestApprovalStep per step template; steps are owned by their request.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from portal.common.constants import ApproverType, LeaveKind, RequestStatus, StepStatus
from portal.database import Base


# ═════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════


class RequestTemplate(Base):
    __tablename__ = "request_templates"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    # None for generic requests; otherwise the leave the request produces.
    leave_kind: Mapped[Optional[LeaveKind]] = mapped_column(
        sa.Enum(LeaveKind, name="leave_kind", create_type=False)
    )
    requires_approval: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, server_default=sa.text("TRUE")
    )
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, server_default=sa.text("TRUE")
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    step_templates: Mapped[list[RequestApprovalStepTemplate]] = relationship(
        back_populates="template",
        order_by="RequestApprovalStepTemplate.step_order",
        cascade="all, delete-orphan",
    )

    @property
    def is_leave_request(self) -> bool:
        return self.leave_kind is not None


class RequestApprovalStepTemplate(Base):
    __tablename__ = "request_approval_step_templates"
    __table_args__ = (
        sa.Index("ix_step_template_order", "template_id", "step_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    template_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("request_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    approver_type: Mapped[ApproverType] = mapped_column(
        sa.Enum(ApproverType, name="approver_type", create_type=False),
        default=ApproverType.direct_supervisor,
    )
    specific_approver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    parallel_group_id: Mapped[Optional[str]] = mapped_column(sa.String(50))
    requires_quiz: Mapped[bool] = mapped_column(
        sa.Boolean, default=False, server_default=sa.text("FALSE")
    )
    passing_score: Mapped[Optional[int]] = mapped_column(sa.Integer)

    template: Mapped[RequestTemplate] = relationship(back_populates="step_templates")
    questions: Mapped[list[QuizQuestion]] = relationship(
        back_populates="step_template",
        order_by="QuizQuestion.order",
        cascade="all, delete-orphan",
    )


class QuizQuestion(Base):
    __tablename__ = "quiz_questions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    step_template_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("request_approval_step_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    question: Mapped[str] = mapped_column(sa.Text, nullable=False)
    # [{"value": "a", "label": "...", "is_correct": true}, ...]
    options: Mapped[list] = mapped_column(JSONB, nullable=False)
    order: Mapped[int] = mapped_column(sa.Integer, default=0)

    step_template: Mapped[RequestApprovalStepTemplate] = relationship(
        back_populates="questions"
    )

    @property
    def correct_values(self) -> set[str]:
        return {str(o.get("value")) for o in self.options or [] if o.get("is_correct")}


# ═════════════════════════════════════════════════════════════════════
# Requests
# ═════════════════════════════════════════════════════════════════════


class Request(Base):
    __tablename__ = "requests"
    __table_args__ = (
        sa.Index("ix_requests_submitter", "submitted_by_id"),
        sa.Index("ix_requests_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    request_number: Mapped[str] = mapped_column(sa.String(30), unique=True, nullable=False)
    template_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("request_templates.id"), nullable=False
    )
    submitted_by_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    form_data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    status: Mapped[RequestStatus] = mapped_column(
        sa.Enum(RequestStatus, name="request_status", create_type=False),
        default=RequestStatus.draft,
        server_default="draft",
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    steps: Mapped[list[RequestApprovalStep]] = relationship(
        back_populates="request",
        order_by="RequestApprovalStep.step_order",
        cascade="all, delete-orphan",
    )
    template: Mapped[RequestTemplate] = relationship()

    def __repr__(self) -> str:
        return f"<Request {self.request_number} {self.status.value if self.status else None}>"


class RequestApprovalStep(Base):
    __tablename__ = "request_approval_steps"
    __table_args__ = (
        sa.Index("ix_steps_request_order", "request_id", "step_order"),
        sa.Index("ix_steps_approver_status", "approver_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    template_step_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("request_approval_step_templates.id")
    )
    step_order: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    # None when no approver could be resolved; such steps are auto-approved.
    approver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    # Who actually acted: the approver, a delegate or a substitute.
    decided_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    status: Mapped[StepStatus] = mapped_column(
        sa.Enum(StepStatus, name="step_status", create_type=False),
        default=StepStatus.pending,
        server_default="pending",
    )
    parallel_group_id: Mapped[Optional[str]] = mapped_column(sa.String(50))
    requires_quiz: Mapped[bool] = mapped_column(
        sa.Boolean, default=False, server_default=sa.text("FALSE")
    )
    passing_score: Mapped[Optional[int]] = mapped_column(sa.Integer)
    quiz_score: Mapped[Optional[int]] = mapped_column(sa.Integer)
    quiz_passed: Mapped[Optional[bool]] = mapped_column(sa.Boolean)
    comment: Mapped[Optional[str]] = mapped_column(sa.Text)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    request: Mapped[Request] = relationship(back_populates="steps")
    quiz_answers: Mapped[list[QuizAnswer]] = relationship(
        back_populates="step",
        cascade="all, delete-orphan",
    )

    @property
    def stage_key(self) -> str:
        return self.parallel_group_id or f"step:{self.id}"

    def __repr__(self) -> str:
        return f"<RequestApprovalStep #{self.step_order} {self.status.value if self.status else None}>"


class QuizAnswer(Base):
    __tablename__ = "quiz_answers"
    __table_args__ = (
        sa.UniqueConstraint("step_id", "question_id", name="uq_quiz_answer"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    step_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("request_approval_steps.id", ondelete="CASCADE"),
        nullable=False,
    )
    question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("quiz_questions.id"), nullable=False
    )
    selected_answer: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    is_correct: Mapped[bool] = mapped_column(sa.Boolean, nullable=False)
    answered_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    step: Mapped[RequestApprovalStep] = relationship(back_populates="quiz_answers")


class RequestEditHistory(Base):
    __tablename__ = "request_edit_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    edited_by_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    old_form_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    new_form_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    change_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    edited_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


# ═════════════════════════════════════════════════════════════════════
# Delegation
# ═════════════════════════════════════════════════════════════════════


class ApprovalDelegation(Base):
    __tablename__ = "approval_delegations"
    __table_args__ = (
        sa.Index("ix_delegation_from_active", "from_user_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    from_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    to_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(sa.Date)
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, server_default=sa.text("TRUE")
    )
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    def covers(self, day: date) -> bool:
        return (
            self.is_active
            and self.start_date <= day
            and (self.end_date is None or self.end_date >= day)
        )
