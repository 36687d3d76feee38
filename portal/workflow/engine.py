"""Approval step engine: the state machine behind request approval.

Step lifecycle::

    pending → in_review → approved | rejected
                        ↘ skipped   (open member of a resolved parallel group)

Terminal states are final. Steps are grouped into *stages*: every step
sharing a ``parallel_group_id`` is one stage, any other step is a stage
of its own; stages run in ``step_order``. Only the members of the
current stage are ``in_review``. A stage resolves as:

* approvals only                → approved (the first approver wins)
* every member rejected         → rejected
* approvals and rejections      → the earliest ``finished_at`` decision
                                  wins; equal timestamps fall back to the
                                  lowest approver id (string order)
* rejections with members open  → undecided

All decisions on one request run under a per-request lock, so a group's
outcome is determined exactly once. ``finished_at`` is the decision time
captured when the call was made, not when the lock was acquired.

The engine never touches leave accounting. It reports
:class:`RequestApproved` / :class:`RequestRejected` events on the
returned :class:`StepResult`; the request service consumes them.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.common.audit import create_audit_entry
from portal.common.constants import (
    ENTITY_REQUEST,
    ENTITY_REQUEST_STEP,
    EDITABLE_REQUEST_STATUSES,
    TERMINAL_STEP_STATUSES,
    Decision,
    NotificationType,
    RequestStatus,
    StepStatus,
    VacationStatus,
)
from portal.common.exceptions import (
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from portal.common.locks import request_locks
from portal.config import settings
from portal.leave.models import VacationSchedule
from portal.notifications.service import notify
from portal.workflow.models import (
    ApprovalDelegation,
    QuizAnswer,
    QuizQuestion,
    Request,
    RequestApprovalStep,
    RequestEditHistory,
)
from portal.workflow.schemas import QuizAnswerIn

logger = logging.getLogger(__name__)


# ── Events / results ────────────────────────────────────────────────


@dataclass(frozen=True)
class RequestApproved:
    request_id: uuid.UUID


@dataclass(frozen=True)
class RequestRejected:
    request_id: uuid.UUID
    step_id: Optional[uuid.UUID] = None


RequestEvent = Union[RequestApproved, RequestRejected]


@dataclass
class StepResult:
    request: Request
    step: Optional[RequestApprovalStep] = None
    quiz_failed: bool = False
    activated: list[RequestApprovalStep] = field(default_factory=list)
    skipped: list[RequestApprovalStep] = field(default_factory=list)
    events: list[RequestEvent] = field(default_factory=list)

    @property
    def request_approved(self) -> bool:
        return any(isinstance(e, RequestApproved) for e in self.events)

    @property
    def request_rejected(self) -> bool:
        return any(isinstance(e, RequestRejected) for e in self.events)


# ── Pure helpers ────────────────────────────────────────────────────


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_stages(steps: Iterable[RequestApprovalStep]) -> list[list[RequestApprovalStep]]:
    """Group steps into stages ordered by their lowest ``step_order``."""
    stages: dict[str, list[RequestApprovalStep]] = {}
    for step in sorted(steps, key=lambda s: (s.step_order, str(s.id))):
        stages.setdefault(step.stage_key, []).append(step)
    return sorted(stages.values(), key=lambda members: members[0].step_order)


def resolve_group_outcome(members: Sequence[RequestApprovalStep]) -> Optional[StepStatus]:
    """Outcome of one stage, or None while it is still undecided."""
    approvals = [m for m in members if m.status == StepStatus.approved]
    rejections = [m for m in members if m.status == StepStatus.rejected]

    if approvals and rejections:
        earliest = min(
            approvals + rejections,
            key=lambda m: (as_utc(m.finished_at), str(m.approver_id or "")),
        )
        return earliest.status
    if approvals:
        return StepStatus.approved
    if rejections and len(rejections) == len(members):
        return StepStatus.rejected
    return None


def score_quiz(
    questions: Sequence[QuizQuestion],
    answers: Iterable[QuizAnswerIn],
) -> tuple[int, dict[uuid.UUID, tuple[str, bool]]]:
    """Return ``(percent, {question_id: (answer, is_correct)})``.

    Unanswered questions count as wrong; answers to unknown questions
    are ignored.
    """
    by_id = {q.id: q for q in questions}
    graded: dict[uuid.UUID, tuple[str, bool]] = {}
    for answer in answers:
        question = by_id.get(answer.question_id)
        if question is None:
            continue
        graded[question.id] = (
            answer.selected_answer,
            answer.selected_answer in question.correct_values,
        )
    correct = sum(1 for _, ok in graded.values() if ok)
    score = round(correct / len(questions) * 100) if questions else 0
    return score, graded


# ═════════════════════════════════════════════════════════════════════
# ApprovalStepEngine
# ═════════════════════════════════════════════════════════════════════


class ApprovalStepEngine:
    """Advance a request's approval steps."""

    # ─────────────────────────────────────────────────────────────────
    # Loading
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def load_request(db: AsyncSession, request_id: uuid.UUID) -> Request:
        """GetRequestById with approval steps eagerly loaded."""
        result = await db.execute(
            select(Request)
            .where(Request.id == request_id)
            .options(selectinload(Request.steps))
            .execution_options(populate_existing=True)
        )
        request = result.scalars().first()
        if request is None:
            raise NotFoundException("Request", request_id)
        return request

    # ─────────────────────────────────────────────────────────────────
    # Effective approver
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def resolve_acting_for(
        db: AsyncSession,
        step: RequestApprovalStep,
        actor_id: uuid.UUID,
        today: date,
    ) -> Optional[uuid.UUID]:
        """Check ``actor_id`` may decide ``step``.

        Returns None when the actor is the approver, or the approver's id
        when acting through a delegation covering ``today`` or as the
        substitute on the approver's active vacation.
        """
        if step.approver_id is not None and step.approver_id == actor_id:
            return None
        if step.approver_id is None:
            raise ForbiddenException("This step has no assigned approver.")

        delegation = (
            await db.execute(
                select(ApprovalDelegation).where(
                    ApprovalDelegation.from_user_id == step.approver_id,
                    ApprovalDelegation.to_user_id == actor_id,
                    ApprovalDelegation.is_active.is_(True),
                    ApprovalDelegation.start_date <= today,
                )
            )
        ).scalars().all()
        if any(d.covers(today) for d in delegation):
            return step.approver_id

        substitute_for = (
            await db.execute(
                select(VacationSchedule.id).where(
                    VacationSchedule.user_id == step.approver_id,
                    VacationSchedule.substitute_user_id == actor_id,
                    VacationSchedule.status == VacationStatus.active,
                    VacationSchedule.start_date <= today,
                    VacationSchedule.end_date >= today,
                )
            )
        ).first()
        if substitute_for is not None:
            return step.approver_id

        raise ForbiddenException("You are not the approver for this step.")

    # ─────────────────────────────────────────────────────────────────
    # Start (on submit)
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def start(
        db: AsyncSession,
        request: Request,
        *,
        now: Optional[datetime] = None,
    ) -> StepResult:
        """Put a freshly submitted request into review.

        Activates the first stage. Requests without steps are approved
        immediately; steps without an approver are auto-approved.
        """
        now = now or datetime.now(timezone.utc)
        result = StepResult(request=request)
        async with request_locks.hold(request.id):
            request.status = RequestStatus.in_review
            request.submitted_at = request.submitted_at or now
            stages = build_stages(request.steps)
            if not stages:
                await ApprovalStepEngine._finish_request(
                    db, request, StepStatus.approved, now, result, actor_id=None,
                )
            else:
                await ApprovalStepEngine._activate(db, request, stages[0], now, result)
                await ApprovalStepEngine._settle(db, request, stages[0], now, result, actor_id=None)
            await db.flush()
        return result

    # ─────────────────────────────────────────────────────────────────
    # AdvanceStep
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def advance_step(
        db: AsyncSession,
        request_id: uuid.UUID,
        step_id: uuid.UUID,
        actor_id: uuid.UUID,
        decision: Decision,
        *,
        quiz_answers: Optional[Sequence[QuizAnswerIn]] = None,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StepResult:
        """Approve or reject one step and propagate the outcome."""
        now = now or datetime.now(timezone.utc)
        async with request_locks.hold(request_id):
            request = await ApprovalStepEngine.load_request(db, request_id)
            step = ApprovalStepEngine._find_step(request, step_id)
            ApprovalStepEngine._ensure_open(step)
            on_behalf_of = await ApprovalStepEngine.resolve_acting_for(
                db, step, actor_id, now.date(),
            )
            result = StepResult(request=request, step=step)

            if decision == Decision.approve and step.requires_quiz:
                if step.quiz_score is None:
                    if not quiz_answers:
                        raise ValidationException(
                            {"quiz_answers": ["This step requires quiz answers before approval."]}
                        )
                    await ApprovalStepEngine._grade(db, step, quiz_answers, now)
                if not step.quiz_passed:
                    await ApprovalStepEngine._fail_quiz(
                        db, request, step, actor_id, on_behalf_of, now, result,
                    )
                    await db.flush()
                    return result

            status = StepStatus.approved if decision == Decision.approve else StepStatus.rejected
            await ApprovalStepEngine._decide(
                db, request, step, status, actor_id, on_behalf_of, comment, now,
            )
            stage = ApprovalStepEngine._stage_of(request, step)
            await ApprovalStepEngine._settle(db, request, stage, now, result, actor_id=actor_id)
            await db.flush()
        return result

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
    ) -> StepResult:
        """Record the submitter's single quiz attempt for an active step.

        A failing score rejects the step straight away.
        """
        now = now or datetime.now(timezone.utc)
        async with request_locks.hold(request_id):
            request = await ApprovalStepEngine.load_request(db, request_id)
            step = ApprovalStepEngine._find_step(request, step_id)
            if request.submitted_by_id != actor_id:
                raise ForbiddenException("Only the request submitter can fill the quiz.")
            if not step.requires_quiz:
                raise ValidationException({"quiz_answers": ["This step has no quiz."]})
            ApprovalStepEngine._ensure_open(step)
            if step.quiz_score is not None:
                raise ValidationException(
                    {"quiz_answers": [f"Quiz already completed with a score of {step.quiz_score}%."]}
                )

            result = StepResult(request=request, step=step)
            await ApprovalStepEngine._grade(db, step, answers, now)
            if not step.quiz_passed:
                await ApprovalStepEngine._fail_quiz(
                    db, request, step, actor_id, None, now, result,
                )
            await db.flush()
        return result

    # ─────────────────────────────────────────────────────────────────
    # EditRequest
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def edit_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        editor_id: uuid.UUID,
        new_form_data: dict,
        *,
        change_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Request:
        """Replace a request's form data while it is still open.

        Approvers who already decided a step are told the basis of their
        decision changed; approvers yet to act are not.
        """
        now = now or datetime.now(timezone.utc)
        async with request_locks.hold(request_id):
            request = await ApprovalStepEngine.load_request(db, request_id)
            if request.submitted_by_id != editor_id:
                raise ForbiddenException("Only the submitter can edit this request.")
            if request.status not in EDITABLE_REQUEST_STATUSES:
                raise ValidationException(
                    {"status": [
                        f"Cannot edit a request with status '{request.status.value}'. "
                        "Only draft and in-review requests can be edited."
                    ]}
                )

            old_form_data = dict(request.form_data or {})
            request.form_data = dict(new_form_data)
            db.add(
                RequestEditHistory(
                    request_id=request.id,
                    edited_by_id=editor_id,
                    old_form_data=old_form_data,
                    new_form_data=dict(new_form_data),
                    change_reason=change_reason,
                    edited_at=now,
                )
            )
            await db.flush()

            await create_audit_entry(
                db,
                action="edit",
                entity_type=ENTITY_REQUEST,
                entity_id=request.id,
                actor_id=editor_id,
                old_values={"form_data": old_form_data},
                new_values={"form_data": dict(new_form_data)},
                reason=change_reason,
            )

            await notify(
                db,
                request.submitted_by_id,
                title="Request Updated",
                message=f"Request {request.request_number} was edited.",
                entity_type=ENTITY_REQUEST,
                entity_id=request.id,
                action_url=f"/requests/{request.id}",
            )
            decided = {
                s.approver_id
                for s in request.steps
                if s.status in (StepStatus.approved, StepStatus.rejected)
                and s.approver_id is not None
                and s.approver_id != request.submitted_by_id
            }
            for approver_id in sorted(decided, key=str):
                await notify(
                    db,
                    approver_id,
                    type=NotificationType.alert,
                    title="Request You Decided Was Edited",
                    message=(
                        f"Request {request.request_number} was changed after your "
                        f"decision. Reason: {change_reason or 'not given'}."
                    ),
                    entity_type=ENTITY_REQUEST,
                    entity_id=request.id,
                    action_url=f"/requests/{request.id}",
                )
        return request

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _find_step(request: Request, step_id: uuid.UUID) -> RequestApprovalStep:
        for step in request.steps:
            if step.id == step_id:
                return step
        raise NotFoundException("RequestApprovalStep", step_id)

    @staticmethod
    def _ensure_open(step: RequestApprovalStep) -> None:
        if step.status == StepStatus.pending:
            raise ValidationException(
                {"status": ["This approval step is not yet active."]}
            )
        if step.status in TERMINAL_STEP_STATUSES:
            raise ValidationException(
                {"status": [f"This approval step is already {step.status.value}."]}
            )

    @staticmethod
    def _stage_of(request: Request, step: RequestApprovalStep) -> list[RequestApprovalStep]:
        for stage in build_stages(request.steps):
            if step in stage:
                return stage
        return [step]

    @staticmethod
    def _next_stage(
        request: Request,
        stage: list[RequestApprovalStep],
    ) -> Optional[list[RequestApprovalStep]]:
        stages = build_stages(request.steps)
        for index, candidate in enumerate(stages):
            if candidate[0] is stage[0]:
                return stages[index + 1] if index + 1 < len(stages) else None
        return None

    @staticmethod
    async def _grade(
        db: AsyncSession,
        step: RequestApprovalStep,
        answers: Sequence[QuizAnswerIn],
        now: datetime,
    ) -> None:
        questions = (
            await db.execute(
                select(QuizQuestion)
                .where(QuizQuestion.step_template_id == step.template_step_id)
                .order_by(QuizQuestion.order)
            )
        ).scalars().all()
        if not questions:
            raise ValidationException(
                {"quiz_answers": ["No quiz questions are configured for this step."]}
            )

        score, graded = score_quiz(questions, answers)
        for question_id, (selected, is_correct) in graded.items():
            db.add(
                QuizAnswer(
                    step_id=step.id,
                    question_id=question_id,
                    selected_answer=selected,
                    is_correct=is_correct,
                    answered_at=now,
                )
            )
        passing = (
            step.passing_score
            if step.passing_score is not None
            else settings.DEFAULT_QUIZ_PASSING_SCORE
        )
        step.passing_score = passing
        step.quiz_score = score
        step.quiz_passed = score >= passing
        logger.info(
            "Quiz graded for step %s: %d%% (passing %d%%)", step.id, score, passing,
        )

    @staticmethod
    async def _fail_quiz(
        db: AsyncSession,
        request: Request,
        step: RequestApprovalStep,
        actor_id: uuid.UUID,
        on_behalf_of: Optional[uuid.UUID],
        now: datetime,
        result: StepResult,
    ) -> None:
        result.quiz_failed = True
        await ApprovalStepEngine._decide(
            db,
            request,
            step,
            StepStatus.rejected,
            actor_id,
            on_behalf_of,
            f"Quiz failed: scored {step.quiz_score}%, required {step.passing_score}%.",
            now,
        )
        stage = ApprovalStepEngine._stage_of(request, step)
        await ApprovalStepEngine._settle(db, request, stage, now, result, actor_id=actor_id)

    @staticmethod
    async def _decide(
        db: AsyncSession,
        request: Request,
        step: RequestApprovalStep,
        status: StepStatus,
        actor_id: Optional[uuid.UUID],
        on_behalf_of: Optional[uuid.UUID],
        comment: Optional[str],
        now: datetime,
    ) -> None:
        old_status = step.status
        step.status = status
        step.decided_by_id = actor_id
        step.comment = comment
        step.finished_at = now
        await db.flush()

        new_values: dict = {"status": status.value}
        if on_behalf_of is not None:
            new_values["on_behalf_of"] = str(on_behalf_of)
        if step.quiz_score is not None:
            new_values["quiz_score"] = step.quiz_score
        await create_audit_entry(
            db,
            action=status.value,
            entity_type=ENTITY_REQUEST_STEP,
            entity_id=step.id,
            actor_id=actor_id,
            old_values={"status": old_status.value},
            new_values=new_values,
            reason=comment,
        )
        verb = "approved" if status == StepStatus.approved else "rejected"
        await notify(
            db,
            request.submitted_by_id,
            type=NotificationType.approval if status == StepStatus.approved else NotificationType.alert,
            title=f"Approval Step {verb.capitalize()}",
            message=(
                f"Step {step.step_order} of request {request.request_number} was {verb}."
                + (f" Comment: {comment}" if comment else "")
            ),
            entity_type=ENTITY_REQUEST,
            entity_id=request.id,
            action_url=f"/requests/{request.id}",
        )

    @staticmethod
    async def _activate(
        db: AsyncSession,
        request: Request,
        stage: list[RequestApprovalStep],
        now: datetime,
        result: StepResult,
    ) -> None:
        for step in stage:
            step.status = StepStatus.in_review
            step.started_at = now
            result.activated.append(step)
        await db.flush()

        unassigned = [s for s in stage if s.approver_id is None]
        for step in unassigned:
            logger.info(
                "Auto-approving step %s of request %s: no approver resolved",
                step.id, request.id,
            )
            await ApprovalStepEngine._decide(
                db, request, step, StepStatus.approved, None, None,
                "Auto-approved: no approver could be resolved.", now,
            )
        if unassigned:
            return

        for step in stage:
            await notify(
                db,
                step.approver_id,
                type=NotificationType.action_required,
                title="Approval Required",
                message=f"Request {request.request_number} is waiting for your decision.",
                entity_type=ENTITY_REQUEST,
                entity_id=request.id,
                action_url=f"/requests/{request.id}",
            )

    @staticmethod
    async def _settle(
        db: AsyncSession,
        request: Request,
        stage: Optional[list[RequestApprovalStep]],
        now: datetime,
        result: StepResult,
        *,
        actor_id: Optional[uuid.UUID],
    ) -> None:
        """Resolve ``stage`` and walk forward through stages that resolve at once."""
        while stage is not None:
            outcome = resolve_group_outcome(stage)
            if outcome is None:
                return

            for member in stage:
                if member.status in (StepStatus.pending, StepStatus.in_review):
                    previous = member.status
                    member.status = StepStatus.skipped
                    member.finished_at = now
                    member.comment = f"Skipped: parallel group resolved as {outcome.value}."
                    result.skipped.append(member)
                    await db.flush()
                    await create_audit_entry(
                        db,
                        action="skip",
                        entity_type=ENTITY_REQUEST_STEP,
                        entity_id=member.id,
                        actor_id=actor_id,
                        old_values={"status": previous.value},
                        new_values={"status": StepStatus.skipped.value},
                    )

            if outcome == StepStatus.rejected:
                await ApprovalStepEngine._finish_request(
                    db, request, StepStatus.rejected, now, result,
                    actor_id=actor_id, rejected_step=stage[0],
                )
                return

            stage = ApprovalStepEngine._next_stage(request, stage)
            if stage is None:
                await ApprovalStepEngine._finish_request(
                    db, request, StepStatus.approved, now, result, actor_id=actor_id,
                )
                return
            await ApprovalStepEngine._activate(db, request, stage, now, result)

    @staticmethod
    async def _finish_request(
        db: AsyncSession,
        request: Request,
        outcome: StepStatus,
        now: datetime,
        result: StepResult,
        *,
        actor_id: Optional[uuid.UUID],
        rejected_step: Optional[RequestApprovalStep] = None,
    ) -> None:
        old_status = request.status
        approved = outcome == StepStatus.approved
        request.status = RequestStatus.approved if approved else RequestStatus.rejected
        request.completed_at = now
        await db.flush()

        await create_audit_entry(
            db,
            action="approve" if approved else "reject",
            entity_type=ENTITY_REQUEST,
            entity_id=request.id,
            actor_id=actor_id,
            old_values={"status": old_status.value if old_status else None},
            new_values={"status": request.status.value},
        )
        await notify(
            db,
            request.submitted_by_id,
            type=NotificationType.approval if approved else NotificationType.alert,
            title="Request Approved" if approved else "Request Rejected",
            message=(
                f"Your request {request.request_number} has been "
                f"{'approved' if approved else 'rejected'}."
            ),
            entity_type=ENTITY_REQUEST,
            entity_id=request.id,
            action_url=f"/requests/{request.id}",
        )
        if approved:
            result.events.append(RequestApproved(request.id))
        else:
            result.events.append(
                RequestRejected(request.id, rejected_step.id if rejected_step else None)
            )
        logger.info("Request %s %s", request.request_number, request.status.value)
