"""Request workflow Pydantic v2 schemas."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from portal.common.constants import Decision, LeaveKind, RequestStatus, StepStatus


# ═════════════════════════════════════════════════════════════════════
# Leave form data
# ═════════════════════════════════════════════════════════════════════


class LeaveFormData(BaseModel):
    """The leave-specific part of ``Request.form_data``."""

    model_config = ConfigDict(extra="allow")

    start_date: date
    end_date: date
    leave_kind: Optional[LeaveKind] = None
    substitute_user_id: Optional[uuid.UUID] = None
    reason_category: Optional[str] = None
    has_documentation: bool = False
    notes: Optional[str] = None


# ═════════════════════════════════════════════════════════════════════
# Request bodies
# ═════════════════════════════════════════════════════════════════════


class SubmitRequestBody(BaseModel):
    template_id: uuid.UUID
    form_data: dict[str, Any] = Field(default_factory=dict)


class QuizAnswerIn(BaseModel):
    question_id: uuid.UUID
    selected_answer: str


class DecideStepBody(BaseModel):
    decision: Decision
    comment: Optional[str] = Field(None, max_length=2000)
    quiz_answers: Optional[list[QuizAnswerIn]] = None


class SubmitQuizAnswersBody(BaseModel):
    answers: list[QuizAnswerIn] = Field(..., min_length=1)


class EditRequestBody(BaseModel):
    form_data: dict[str, Any]
    change_reason: Optional[str] = Field(None, max_length=2000)


# ═════════════════════════════════════════════════════════════════════
# Responses
# ═════════════════════════════════════════════════════════════════════


class ApprovalStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    step_order: int
    approver_id: Optional[uuid.UUID] = None
    decided_by_id: Optional[uuid.UUID] = None
    status: StepStatus
    parallel_group_id: Optional[str] = None
    requires_quiz: bool = False
    passing_score: Optional[int] = None
    quiz_score: Optional[int] = None
    quiz_passed: Optional[bool] = None
    comment: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class RequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_number: str
    template_id: uuid.UUID
    submitted_by_id: uuid.UUID
    form_data: dict[str, Any]
    status: RequestStatus
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: list[ApprovalStepOut] = []


class StepResultOut(BaseModel):
    step: ApprovalStepOut
    request_status: RequestStatus
    request_approved: bool = False
    request_rejected: bool = False
    quiz_failed: bool = False
    activated_step_ids: list[uuid.UUID] = []
    skipped_step_ids: list[uuid.UUID] = []
    vacation_schedule_id: Optional[uuid.UUID] = None
    sick_leave_id: Optional[uuid.UUID] = None
