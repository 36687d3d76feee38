"""Custom exceptions and RFC 7807 Problem Detail error handlers."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

BASE_ERROR_URI = "https://portal.local/errors"


# ── Exception hierarchy ─────────────────────────────────────────────

class AppException(Exception):
    """Base for all application exceptions → RFC 7807 JSON."""

    def __init__(
        self,
        status_code: int,
        error_type: str,
        title: str,
        detail: str,
        errors: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        self.title = title
        self.detail = detail
        self.errors = errors
        super().__init__(detail)


class NotFoundException(AppException):
    """404: entity not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(
            status_code=404,
            error_type="not-found",
            title=f"{entity_type} Not Found",
            detail=f"{entity_type} with id '{entity_id}' does not exist.",
        )


class ConflictError(AppException):
    """409: the row was changed by a concurrent writer."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(
            status_code=409,
            error_type="conflict",
            title="Conflict",
            detail=(
                f"{entity_type} '{entity_id}' was modified concurrently. "
                "Reload and try again."
            ),
        )


class ForbiddenException(AppException):
    """403: insufficient permissions."""

    def __init__(
        self,
        detail: str = "You do not have permission to perform this action.",
    ) -> None:
        super().__init__(
            status_code=403,
            error_type="forbidden",
            title="Forbidden",
            detail=detail,
        )


class ValidationException(AppException):
    """422: business-logic validation failures."""

    def __init__(
        self,
        errors: dict[str, list[str]],
        *,
        error_type: str = "validation-error",
        title: str = "Validation Error",
        detail: str = "One or more fields failed validation.",
    ) -> None:
        super().__init__(
            status_code=422,
            error_type=error_type,
            title=title,
            detail=detail,
            errors=errors,
        )


class InsufficientLeaveBalance(ValidationException):
    """422: the ledger cannot cover the requested days."""

    def __init__(self, requested: int, available: int, *, field: str = "days") -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            {field: [f"Requested {requested} day(s) but only {available} available."]},
            error_type="insufficient-leave-balance",
            title="Insufficient Leave Balance",
            detail=f"Requested {requested} day(s) but only {available} available.",
        )


class QuizFailedException(ValidationException):
    """422: the approver did not reach the passing score.

    Raised only after the rejection has been committed; it is a normal
    terminal outcome, not a server fault.
    """

    def __init__(self, score: int, passing_score: int) -> None:
        self.score = score
        self.passing_score = passing_score
        super().__init__(
            {"quiz_answers": [f"Score {score}% is below the required {passing_score}%."]},
            error_type="quiz-failed",
            title="Quiz Failed",
            detail=f"Quiz score {score}% is below the passing score of {passing_score}%.",
        )


# ── RFC 7807 builder ────────────────────────────────────────────────

def _build_problem_detail(exc: AppException, request: Request) -> dict[str, Any]:
    body: dict[str, Any] = {
        "type": f"{BASE_ERROR_URI}/{exc.error_type}",
        "title": exc.title,
        "status": exc.status_code,
        "detail": exc.detail,
        "instance": str(request.url.path),
    }
    if exc.errors:
        body["errors"] = exc.errors
    return body


# ── FastAPI handlers ────────────────────────────────────────────────

async def _handle_app_exception(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_problem_detail(exc, request),
        media_type="application/problem+json",
    )


async def _handle_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Re-shape pydantic request errors as a ValidationException body."""
    field_errors: dict[str, list[str]] = {}
    for err in exc.errors():
        # drop the leading "body" / "query" / "path" segment
        loc = err.get("loc") or ("unknown",)
        path = loc[1:] or loc
        field_errors.setdefault(".".join(map(str, path)), []).append(
            err.get("msg", "Invalid value")
        )
    problem = ValidationException(field_errors, detail="Request validation failed.")
    return await _handle_app_exception(request, problem)


# ── Registration helper (called from main.py) ──────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    """Attach all custom exception handlers to the FastAPI app."""
    app.add_exception_handler(AppException, _handle_app_exception)          # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
