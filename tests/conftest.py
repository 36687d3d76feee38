"""Shared test fixtures: async DB, client, auth helpers, factories.

Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test settings before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from portal.common.constants import (
    ApproverType,
    LeaveKind,
    UserRole,
    VacationStatus,
)
from portal.common.locks import employee_locks, request_locks
from portal.config import settings
from portal.database import Base, get_db
from portal.main import create_app

# Import ALL model modules so SQLAlchemy can resolve cross-module foreign keys
import portal.common.audit  # noqa: F401
import portal.core_hr.models  # noqa: F401
import portal.leave.models  # noqa: F401
import portal.notifications.models  # noqa: F401
import portal.workflow.models  # noqa: F401

# ── SQLite compat: compile PG-specific types to TEXT/BLOB ───────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"


def make_sqlite_engine(url: str, *, wal: bool = False, **kwargs) -> AsyncEngine:
    """SQLite engine with NOW() registered and SQLAlchemy-driven BEGIN.

    ``wal`` switches a file database to write-ahead logging so several
    connections can read while one writes.
    """
    sqlite_engine = create_async_engine(
        url, echo=False, connect_args={"check_same_thread": False}, **kwargs,
    )

    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _register_sqlite_functions(dbapi_conn, connection_record):
        """Register NOW() for server defaults; let SQLAlchemy drive BEGIN so SAVEPOINTs work."""
        dbapi_conn.create_function(
            "NOW", 0, lambda: datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f"),
        )
        dbapi_conn.isolation_level = None
        if wal:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    @event.listens_for(sqlite_engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return sqlite_engine


engine = make_sqlite_engine(TEST_DATABASE_URL, poolclass=StaticPool)

TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_locks():
    """Per-key locks are process globals; start every test without leftovers."""
    employee_locks._locks.clear()
    request_locks._locks.clear()
    employee_locks._users.clear()
    request_locks._users.clear()
    yield


@pytest.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Sessions on a file database, one connection each, for concurrency tests."""
    file_engine = make_sqlite_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}", wal=True,
    )
    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
    await file_engine.dispose()


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

def _make_department(*, name: str = "Engineering") -> dict:
    return dict(
        id=uuid.uuid4(),
        name=name,
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )


def _make_employee(
    *,
    email: Optional[str] = None,
    first_name: str = "Test",
    last_name: str = "User",
    role: UserRole = UserRole.employee,
    department_id: Optional[uuid.UUID] = None,
    supervisor_id: Optional[uuid.UUID] = None,
    employment_start_date: date = date(2020, 3, 1),
    annual_vacation_days: int = 26,
    vacation_days_used: int = 0,
    on_demand_vacation_days_used: int = 0,
    carried_over_vacation_days: Optional[int] = None,
    carried_over_days_used: int = 0,
    carried_over_expiry_date: Optional[date] = None,
    leave_year: Optional[int] = 2026,
    is_active: bool = True,
) -> dict:
    return dict(
        id=uuid.uuid4(),
        first_name=first_name,
        last_name=last_name,
        email=email or f"user-{uuid.uuid4().hex[:8]}@portal.local",
        role=role,
        department_id=department_id,
        supervisor_id=supervisor_id,
        employment_start_date=employment_start_date,
        annual_vacation_days=annual_vacation_days,
        vacation_days_used=vacation_days_used,
        on_demand_vacation_days_used=on_demand_vacation_days_used,
        circumstantial_leave_days_used=0,
        carried_over_vacation_days=carried_over_vacation_days,
        carried_over_days_used=carried_over_days_used,
        carried_over_expiry_date=carried_over_expiry_date,
        leave_year=leave_year,
        is_active=is_active,
        created_at=datetime.now(timezone.utc),
    )


async def _seed_department(db: AsyncSession, **kwargs):
    from portal.core_hr.models import Department

    department = Department(**_make_department(**kwargs))
    db.add(department)
    await db.flush()
    return department


async def _seed_employee(db: AsyncSession, **kwargs):
    from portal.core_hr.models import Employee

    employee = Employee(**_make_employee(**kwargs))
    db.add(employee)
    await db.flush()
    return employee


async def _seed_schedule(
    db: AsyncSession,
    user_id: uuid.UUID,
    start_date: date,
    end_date: date,
    *,
    status: VacationStatus = VacationStatus.scheduled,
    leave_kind: LeaveKind = LeaveKind.annual,
    substitute_user_id: Optional[uuid.UUID] = None,
    source_request_id: Optional[uuid.UUID] = None,
    carried_over_days_drawn: int = 0,
):
    from portal.leave.models import VacationSchedule

    schedule = VacationSchedule(
        id=uuid.uuid4(),
        user_id=user_id,
        substitute_user_id=substitute_user_id,
        start_date=start_date,
        end_date=end_date,
        status=status,
        leave_kind=leave_kind,
        source_request_id=source_request_id,
        carried_over_days_drawn=carried_over_days_drawn,
    )
    db.add(schedule)
    await db.flush()
    return schedule


async def _seed_template(
    db: AsyncSession,
    *,
    name: str = "Annual vacation",
    leave_kind: Optional[LeaveKind] = LeaveKind.annual,
    requires_approval: bool = True,
    steps: Optional[list[dict]] = None,
):
    """Template with step templates; each step dict overrides the defaults."""
    from portal.workflow.models import (
        QuizQuestion,
        RequestApprovalStepTemplate,
        RequestTemplate,
    )

    template = RequestTemplate(
        id=uuid.uuid4(),
        name=name,
        leave_kind=leave_kind,
        requires_approval=requires_approval,
        is_active=True,
    )
    db.add(template)
    await db.flush()

    for order, spec in enumerate(steps or [{}], start=1):
        step_template = RequestApprovalStepTemplate(
            id=uuid.uuid4(),
            template_id=template.id,
            step_order=spec.get("step_order", order),
            approver_type=spec.get("approver_type", ApproverType.direct_supervisor),
            specific_approver_id=spec.get("specific_approver_id"),
            parallel_group_id=spec.get("parallel_group_id"),
            requires_quiz=bool(spec.get("questions")),
            passing_score=spec.get("passing_score"),
        )
        db.add(step_template)
        await db.flush()
        for q_order, (question, correct) in enumerate(spec.get("questions", [])):
            db.add(
                QuizQuestion(
                    id=uuid.uuid4(),
                    step_template_id=step_template.id,
                    question=question,
                    options=[
                        {"value": "a", "label": "A", "is_correct": correct == "a"},
                        {"value": "b", "label": "B", "is_correct": correct == "b"},
                    ],
                    order=q_order,
                )
            )
        await db.flush()
    return template


async def _quiz_questions(db: AsyncSession, step_template_id: uuid.UUID):
    from sqlalchemy import select

    from portal.workflow.models import QuizQuestion

    result = await db.execute(
        select(QuizQuestion)
        .where(QuizQuestion.step_template_id == step_template_id)
        .order_by(QuizQuestion.order)
    )
    return list(result.scalars().all())


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    employee_id: uuid.UUID,
    role: UserRole = UserRole.employee,
    expired: bool = False,
) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {
        "sub": str(employee_id),
        "role": role.value,
        "type": "access",
        "exp": exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_header(employee) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee.id, employee.role)}"}
