"""Request router: submit, decide steps, quizzes, edits."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portal.auth.dependencies import get_current_user
from portal.common.exceptions import QuizFailedException
from portal.core_hr.models import Employee
from portal.database import get_db
from portal.workflow.schemas import (
    DecideStepBody,
    EditRequestBody,
    RequestOut,
    StepResultOut,
    SubmitQuizAnswersBody,
    SubmitRequestBody,
)
from portal.workflow.service import RequestService

router = APIRouter(prefix="", tags=["requests"])


async def _commit_and_raise_quiz_failure(db: AsyncSession, result: StepResultOut) -> None:
    """Persist the rejection, then report the failed quiz as a 422."""
    if result.quiz_failed:
        await db.commit()
        raise QuizFailedException(result.step.quiz_score or 0, result.step.passing_score or 0)


# ── POST / ──────────────────────────────────────────────────────────

@router.post("", response_model=RequestOut, status_code=201)
async def submit_request(
    body: SubmitRequestBody,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Submit a request from a template; leave requests are validated first."""
    return await RequestService.submit_request(db, body.template_id, employee.id, body.form_data)


# ── GET /{request_id} ───────────────────────────────────────────────

@router.get("/{request_id}", response_model=RequestOut)
async def get_request(
    request_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await RequestService.get_request(db, request_id, employee.id)


# ── PATCH /{request_id} ─────────────────────────────────────────────

@router.patch("/{request_id}", response_model=RequestOut)
async def edit_request(
    request_id: uuid.UUID,
    body: EditRequestBody,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Edit form data while the request is a draft or in review."""
    return await RequestService.edit_request(
        db, request_id, employee.id, body.form_data, change_reason=body.change_reason,
    )


# ── POST /{request_id}/steps/{step_id}/decision ─────────────────────

@router.post("/{request_id}/steps/{step_id}/decision", response_model=StepResultOut)
async def decide_step(
    request_id: uuid.UUID,
    step_id: uuid.UUID,
    body: DecideStepBody,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Approve or reject an approval step (as approver, delegate or substitute)."""
    result = await RequestService.decide_step(
        db,
        request_id,
        step_id,
        employee.id,
        body.decision,
        quiz_answers=body.quiz_answers,
        comment=body.comment,
    )
    await _commit_and_raise_quiz_failure(db, result)
    return result


# ── POST /{request_id}/steps/{step_id}/quiz ─────────────────────────

@router.post("/{request_id}/steps/{step_id}/quiz", response_model=StepResultOut)
async def submit_quiz(
    request_id: uuid.UUID,
    step_id: uuid.UUID,
    body: SubmitQuizAnswersBody,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Submitter's single quiz attempt for an active step."""
    result = await RequestService.submit_quiz_answers(
        db, request_id, step_id, employee.id, body.answers,
    )
    await _commit_and_raise_quiz_failure(db, result)
    return result
