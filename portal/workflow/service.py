"""Request service layer: submission, decisions, edits.

Business logic:
  - Submitting a request from a template: form validation, approver
    resolution per step template, request numbering
  - Deciding approval steps and quizzes through :class:`ApprovalStepEngine`
  - Turning an approved leave request into a VacationSchedule or SickLeave
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.common.audit import create_audit_entry
from portal.common.constants import (
    ADMIN_ROLES,
    ENTITY_REQUEST,
    ApproverType,
    ConflictSeverity,
    Decision,
    LeaveKind,
    RequestStatus,
)
from portal.common.exceptions import (
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from portal.core_hr.models import Department, Employee
from portal.leave.conflicts import VacationConflictAnalyzer
from portal.leave.ledger import LeaveLedger
from portal.leave.models import SickLeave, VacationSchedule, inclusive_days
from portal.leave.service import LeaveService
from portal.workflow.engine import ApprovalStepEngine, RequestApproved, StepResult
from portal.workflow.models import (
    Request,
    RequestApprovalStep,
    RequestApprovalStepTemplate,
    RequestTemplate,
)
from portal.workflow.schemas import (
    ApprovalStepOut,
    LeaveFormData,
    QuizAnswerIn,
    RequestOut,
    StepResultOut,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════
# RequestService
# ═════════════════════════════════════════════════════════════════════


class RequestService:
    """Async request operations on top of the approval engine."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _get_template(db: AsyncSession, template_id: uuid.UUID) -> RequestTemplate:
        result = await db.execute(
            select(RequestTemplate)
            .where(RequestTemplate.id == template_id)
            .options(selectinload(RequestTemplate.step_templates))
        )
        template = result.scalars().first()
        if template is None or not template.is_active:
            raise NotFoundException("RequestTemplate", template_id)
        return template

    @staticmethod
    async def _get_employee(db: AsyncSession, user_id: uuid.UUID) -> Employee:
        employee = await db.get(Employee, user_id)
        if employee is None:
            raise NotFoundException("Employee", user_id)
        return employee

    @staticmethod
    async def _next_request_number(db: AsyncSession, year: int) -> str:
        prefix = f"REQ-{year}-"
        # Zero-padded numbers sort lexically, so MAX is the latest one.
        result = await db.execute(
            select(func.max(Request.request_number))
            .where(Request.request_number.like(f"{prefix}%"))
        )
        last = result.scalar_one_or_none()
        seq = int(last[len(prefix):]) + 1 if last else 1
        return f"{prefix}{seq:05d}"

    @staticmethod
    def parse_leave_form(form_data: dict[str, Any]) -> LeaveFormData:
        try:
            return LeaveFormData.model_validate(form_data)
        except ValidationError as exc:
            errors: dict[str, list[str]] = {}
            for err in exc.errors():
                field = ".".join(str(p) for p in err["loc"]) or "form_data"
                errors.setdefault(field, []).append(err["msg"])
            raise ValidationException(errors) from exc

    @staticmethod
    async def validate_leave_form(
        db: AsyncSession,
        submitter: Employee,
        form: LeaveFormData,
        leave_kind: LeaveKind,
        *,
        today: date,
    ) -> None:
        """Date range, substitute, balance pre-check and conflict analysis."""
        if form.end_date < form.start_date:
            raise ValidationException(
                {"end_date": ["End date must be on or after start date."]}
            )

        if form.substitute_user_id is not None:
            if form.substitute_user_id == submitter.id:
                raise ValidationException(
                    {"substitute_user_id": ["You cannot be your own substitute."]}
                )
            substitute = await db.get(Employee, form.substitute_user_id)
            if substitute is None or not substitute.is_active:
                raise ValidationException(
                    {"substitute_user_id": ["Substitute must be an active employee."]}
                )

        days = inclusive_days(form.start_date, form.end_date)
        LeaveLedger.check_debit(
            submitter,
            days,
            leave_kind,
            today=today,
            reason_category=form.reason_category,
            has_documentation=form.has_documentation,
            period=(form.start_date, form.end_date),
        )
        if leave_kind == LeaveKind.sick:
            return

        analysis = await VacationConflictAnalyzer.analyze_conflicts(
            db,
            submitter.id,
            submitter.department_id,
            form.start_date,
            form.end_date,
            substitute_user_id=form.substitute_user_id,
        )
        if not analysis.can_be_approved:
            raise ValidationException(
                {"conflicts": [
                    c.message
                    for c in analysis.conflicts
                    if c.severity == ConflictSeverity.critical
                ]},
                title="Vacation Conflict",
                detail="The requested dates conflict with existing leave or team coverage.",
            )

    @staticmethod
    async def resolve_approver(
        db: AsyncSession,
        step_template: RequestApprovalStepTemplate,
        submitter: Employee,
    ) -> Optional[uuid.UUID]:
        """Approver for one step; None when nobody valid can be found."""
        approver_id: Optional[uuid.UUID] = None
        if step_template.approver_type == ApproverType.direct_supervisor:
            approver_id = submitter.supervisor_id
        elif step_template.approver_type == ApproverType.department_head:
            if submitter.department_id is not None:
                department = await db.get(Department, submitter.department_id)
                if department is not None:
                    approver_id = department.head_employee_id
        elif step_template.approver_type == ApproverType.specific_user:
            approver_id = step_template.specific_approver_id

        if approver_id is None or approver_id == submitter.id:
            return None
        approver = await db.get(Employee, approver_id)
        if approver is None or not approver.is_active:
            return None
        return approver_id

    @staticmethod
    async def _materialize(
        db: AsyncSession,
        request: Request,
        result: StepResult,
        *,
        today: date,
    ) -> tuple[Optional[uuid.UUID], Optional[uuid.UUID]]:
        """Consume RequestApproved: create the schedule / sick leave record."""
        if not any(isinstance(e, RequestApproved) for e in result.events):
            return None, None

        template = await db.get(RequestTemplate, request.template_id)
        if template is None or not template.is_leave_request:
            return None, None
        form = RequestService.parse_leave_form(request.form_data or {})

        if template.leave_kind == LeaveKind.sick:
            sick_leave = await LeaveService.create_sick_leave(
                db,
                user_id=request.submitted_by_id,
                start_date=form.start_date,
                end_date=form.end_date,
                source_request_id=request.id,
                notes=form.notes,
                today=today,
            )
            return None, sick_leave.id

        existing = (
            await db.execute(
                select(VacationSchedule).where(VacationSchedule.source_request_id == request.id)
            )
        ).scalars().first()
        if existing is not None:
            return existing.id, None

        schedule = await LeaveService.create_vacation_schedule(
            db,
            user_id=request.submitted_by_id,
            start_date=form.start_date,
            end_date=form.end_date,
            leave_kind=template.leave_kind,
            substitute_user_id=form.substitute_user_id,
            source_request_id=request.id,
            reason_category=form.reason_category,
            has_documentation=form.has_documentation,
            today=today,
        )
        return schedule.id, None

    @staticmethod
    def _to_step_result(
        result: StepResult,
        *,
        vacation_schedule_id: Optional[uuid.UUID] = None,
        sick_leave_id: Optional[uuid.UUID] = None,
    ) -> StepResultOut:
        return StepResultOut(
            step=ApprovalStepOut.model_validate(result.step),
            request_status=result.request.status,
            request_approved=result.request_approved,
            request_rejected=result.request_rejected,
            quiz_failed=result.quiz_failed,
            activated_step_ids=[s.id for s in result.activated],
            skipped_step_ids=[s.id for s in result.skipped],
            vacation_schedule_id=vacation_schedule_id,
            sick_leave_id=sick_leave_id,
        )

    # ─────────────────────────────────────────────────────────────────
    # SubmitRequest
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def submit_request(
        db: AsyncSession,
        template_id: uuid.UUID,
        submitter_id: uuid.UUID,
        form_data: dict[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> RequestOut:
        """Create a request from a template and put it into review.

        Leave templates are validated against the ledger and the team
        calendar first. Sick leave and templates without approval are
        approved on the spot.
        """
        now = now or datetime.now(timezone.utc)
        today = now.date()
        template = await RequestService._get_template(db, template_id)
        submitter = await RequestService._get_employee(db, submitter_id)

        stored_form = dict(form_data)
        if template.is_leave_request:
            form = RequestService.parse_leave_form(form_data)
            await RequestService.validate_leave_form(
                db, submitter, form, template.leave_kind, today=today,
            )
            stored_form = form.model_dump(mode="json", exclude_none=True)
            stored_form["leave_kind"] = template.leave_kind.value

        request = Request(
            id=uuid.uuid4(),
            request_number=await RequestService._next_request_number(db, today.year),
            template_id=template.id,
            submitted_by_id=submitter.id,
            form_data=stored_form,
            status=RequestStatus.draft,
            steps=[],
        )

        auto_approve = not template.requires_approval or template.leave_kind == LeaveKind.sick
        if not auto_approve:
            for step_template in template.step_templates:
                request.steps.append(
                    RequestApprovalStep(
                        id=uuid.uuid4(),
                        template_step_id=step_template.id,
                        step_order=step_template.step_order,
                        approver_id=await RequestService.resolve_approver(
                            db, step_template, submitter,
                        ),
                        parallel_group_id=step_template.parallel_group_id,
                        requires_quiz=step_template.requires_quiz,
                        passing_score=step_template.passing_score,
                    )
                )

        db.add(request)
        await db.flush()
        await create_audit_entry(
            db,
            action="create",
            entity_type=ENTITY_REQUEST,
            entity_id=request.id,
            actor_id=submitter.id,
            new_values={
                "request_number": request.request_number,
                "template_id": str(template.id),
                "form_data": stored_form,
            },
        )

        result = await ApprovalStepEngine.start(db, request, now=now)
        await RequestService._materialize(db, request, result, today=today)
        logger.info(
            "Request %s submitted by %s (%d step(s), status %s)",
            request.request_number, submitter.id, len(request.steps), request.status.value,
        )
        return RequestOut.model_validate(request)

    # ─────────────────────────────────────────────────────────────────
    # DecideApprovalStep
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def decide_step(
        db: AsyncSession,
        request_id: uuid.UUID,
        step_id: uuid.UUID,
        actor_id: uuid.UUID,
        decision: Decision,
        *,
        quiz_answers: Optional[Sequence[QuizAnswerIn]] = None,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StepResultOut:
        now = now or datetime.now(timezone.utc)
        result = await ApprovalStepEngine.advance_step(
            db,
            request_id,
            step_id,
            actor_id,
            decision,
            quiz_answers=quiz_answers,
            comment=comment,
            now=now,
        )
        schedule_id, sick_leave_id = await RequestService._materialize(
            db, result.request, result, today=now.date(),
        )
        return RequestService._to_step_result(
            result, vacation_schedule_id=schedule_id, sick_leave_id=sick_leave_id,
        )

    # ─────────────────────────────────────────────────────────────────
    # SubmitQuizAnswers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def submit_quiz_answers(
        db: AsyncSession,
        request_id: uuid.UUID,
        step_id: uuid.UUID,
        actor_id: uuid.UUID,
        answers: Sequence[QuizAnswerIn],
        *,
        now: Optional[datetime] = None,
    ) -> StepResultOut:
        result = await ApprovalStepEngine.submit_quiz_answers(
            db, request_id, step_id, actor_id, answers, now=now,
        )
        return RequestService._to_step_result(result)

    # ─────────────────────────────────────────────────────────────────
    # EditRequest
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def edit_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        editor_id: uuid.UUID,
        form_data: dict[str, Any],
        *,
        change_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RequestOut:
        now = now or datetime.now(timezone.utc)
        request = await ApprovalStepEngine.load_request(db, request_id)
        template = await db.get(RequestTemplate, request.template_id)

        new_form = dict(form_data)
        if (
            template is not None
            and template.is_leave_request
            and request.submitted_by_id == editor_id
            and request.status in (RequestStatus.draft, RequestStatus.in_review)
        ):
            submitter = await RequestService._get_employee(db, editor_id)
            form = RequestService.parse_leave_form(form_data)
            await RequestService.validate_leave_form(
                db, submitter, form, template.leave_kind, today=now.date(),
            )
            new_form = form.model_dump(mode="json", exclude_none=True)
            new_form["leave_kind"] = template.leave_kind.value

        request = await ApprovalStepEngine.edit_request(
            db,
            request_id,
            editor_id,
            new_form,
            change_reason=change_reason,
            now=now,
        )
        return RequestOut.model_validate(request)

    # ─────────────────────────────────────────────────────────────────
    # Read
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        viewer_id: uuid.UUID,
    ) -> RequestOut:
        """Visible to the submitter, the step approvers and admins."""
        request = await ApprovalStepEngine.load_request(db, request_id)
        if request.submitted_by_id != viewer_id and not any(
            s.approver_id == viewer_id for s in request.steps
        ):
            viewer = await RequestService._get_employee(db, viewer_id)
            if viewer.role not in ADMIN_ROLES:
                raise ForbiddenException("You are not allowed to view this request.")
        return RequestOut.model_validate(request)

    @staticmethod
    async def list_approved_sick_requests_without_record(
        db: AsyncSession,
    ) -> list[Request]:
        """Approved sick-leave requests that have no SickLeave row yet."""
        result = await db.execute(
            select(Request)
            .join(RequestTemplate, RequestTemplate.id == Request.template_id)
            .outerjoin(SickLeave, SickLeave.source_request_id == Request.id)
            .where(
                Request.status == RequestStatus.approved,
                RequestTemplate.leave_kind == LeaveKind.sick,
                SickLeave.id.is_(None),
            )
            .order_by(Request.submitted_at)
        )
        return list(result.scalars().all())
