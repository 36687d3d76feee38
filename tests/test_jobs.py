"""Scheduled job tests: status sweep, reminders, yearly rollover, SLA."""

from __future__ import annotations

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portal.common.audit import AuditTrail
from portal.common.constants import (
    LeaveKind,
    RequestStatus,
    SickLeaveStatus,
    VacationStatus,
)
from portal.common.locks import employee_locks
from portal.core_hr.models import Employee
from portal.leave import jobs
from portal.leave.ledger import LeaveLedger
from portal.leave.models import SickLeave
from portal.notifications.models import Notification
from portal.workflow.models import Request
from portal.workflow.service import RequestService
from tests.conftest import _seed_employee, _seed_schedule, _seed_template

TODAY = date(2026, 7, 1)


async def _titles(db: AsyncSession, recipient_id: uuid.UUID) -> list[str]:
    result = await db.execute(
        select(Notification.title)
        .where(Notification.recipient_id == recipient_id)
        .order_by(Notification.created_at, Notification.id)
    )
    return list(result.scalars().all())


async def _actions(db: AsyncSession, entity_id: uuid.UUID) -> list[str]:
    result = await db.execute(
        select(AuditTrail.action).where(AuditTrail.entity_id == entity_id)
    )
    return list(result.scalars().all())


# ═════════════════════════════════════════════════════════════════════
# Status sweep
# ═════════════════════════════════════════════════════════════════════


class TestSweepVacationStatuses:

    async def test_transitions(self, db: AsyncSession):
        employee = await _seed_employee(db)
        substitute = await _seed_employee(db)
        starting = await _seed_schedule(
            db, employee.id, TODAY, date(2026, 7, 5), substitute_user_id=substitute.id,
        )
        ending = await _seed_schedule(
            db, employee.id, date(2026, 6, 20), date(2026, 6, 30),
            status=VacationStatus.active, substitute_user_id=substitute.id,
        )
        never_started = await _seed_schedule(db, employee.id, date(2026, 6, 10), date(2026, 6, 12))
        cancelled = await _seed_schedule(
            db, employee.id, date(2026, 6, 1), date(2026, 6, 5), status=VacationStatus.cancelled,
        )
        future = await _seed_schedule(db, employee.id, date(2026, 8, 3), date(2026, 8, 7))

        report = await jobs.sweep_vacation_statuses(db, TODAY)

        assert (report.processed, report.failed) == (3, 0)
        assert starting.status == VacationStatus.active
        assert ending.status == VacationStatus.completed
        assert never_started.status == VacationStatus.completed
        assert cancelled.status == VacationStatus.cancelled
        assert future.status == VacationStatus.scheduled
        assert await _actions(db, starting.id) == ["active"]

        assert "Welcome Back" in await _titles(db, employee.id)
        assert await _titles(db, substitute.id) == ["Substitution Started", "Substitution Ended"]

    async def test_running_twice_changes_nothing(self, db: AsyncSession):
        employee = await _seed_employee(db)
        schedule = await _seed_schedule(db, employee.id, date(2026, 6, 29), date(2026, 7, 3))

        first = await jobs.sweep_vacation_statuses(db, TODAY)
        second = await jobs.sweep_vacation_statuses(db, TODAY)

        assert first.processed == 1
        assert second.processed == 0
        assert schedule.status == VacationStatus.active
        assert await _actions(db, schedule.id) == ["active"]

    async def test_missed_days_catch_up(self, db: AsyncSession):
        employee = await _seed_employee(db)
        schedule = await _seed_schedule(db, employee.id, date(2026, 6, 22), date(2026, 6, 26))

        await jobs.sweep_vacation_statuses(db, TODAY)

        assert schedule.status == VacationStatus.completed


class TestSickLeaveProcessing:

    async def _approved_sick_request(self, db: AsyncSession, form: dict):
        employee = await _seed_employee(db)
        template = await _seed_template(db, name="Sick leave", leave_kind=LeaveKind.sick)
        request = Request(
            id=uuid.uuid4(),
            request_number=f"REQ-2026-{uuid.uuid4().int % 100000:05d}",
            template_id=template.id,
            submitted_by_id=employee.id,
            form_data=form,
            status=RequestStatus.approved,
            submitted_at=datetime(2026, 6, 20, tzinfo=timezone.utc),
        )
        db.add(request)
        await db.flush()
        return employee, request

    async def test_missing_record_is_created(self, db: AsyncSession):
        _, request = await self._approved_sick_request(
            db, {"start_date": "2026-06-22", "end_date": "2026-06-24"},
        )

        report = await jobs.process_sick_leave_requests(db, TODAY)

        assert report.processed == 1
        sick = (
            await db.execute(select(SickLeave).where(SickLeave.source_request_id == request.id))
        ).scalars().one()
        assert sick.status == SickLeaveStatus.completed
        assert await RequestService.list_approved_sick_requests_without_record(db) == []

    async def test_bad_item_does_not_stop_the_batch(self, db: AsyncSession):
        await self._approved_sick_request(db, {"notes": "dates missing"})
        _, good = await self._approved_sick_request(
            db, {"start_date": "2026-06-29", "end_date": "2026-07-03"},
        )

        report = await jobs.process_sick_leave_requests(db, TODAY)

        assert (report.processed, report.failed) == (1, 1)
        sick = (
            await db.execute(select(SickLeave).where(SickLeave.source_request_id == good.id))
        ).scalars().one()
        assert sick.status == SickLeaveStatus.active

    async def test_finished_sick_leave_completes(self, db: AsyncSession):
        employee = await _seed_employee(db)
        sick = SickLeave(
            user_id=employee.id,
            start_date=date(2026, 6, 15),
            end_date=date(2026, 6, 30),
            requires_zus_document=False,
            status=SickLeaveStatus.active,
        )
        db.add(sick)
        await db.flush()

        await jobs.process_sick_leave_requests(db, TODAY)
        assert sick.status == SickLeaveStatus.completed

        again = await jobs.process_sick_leave_requests(db, TODAY)
        assert again.processed == 0


# ═════════════════════════════════════════════════════════════════════
# Reminders
# ═════════════════════════════════════════════════════════════════════


class TestVacationReminders:

    async def test_reminder_offsets(self, db: AsyncSession):
        week = await _seed_employee(db)
        tomorrow = await _seed_employee(db)
        today = await _seed_employee(db)
        later = await _seed_employee(db)
        substitute = await _seed_employee(db)

        await _seed_schedule(db, week.id, TODAY + timedelta(days=7), date(2026, 7, 10),
                             substitute_user_id=substitute.id)
        await _seed_schedule(db, tomorrow.id, TODAY + timedelta(days=1), date(2026, 7, 3))
        await _seed_schedule(db, today.id, TODAY, date(2026, 7, 2),
                             status=VacationStatus.active, substitute_user_id=substitute.id)
        await _seed_schedule(db, later.id, TODAY + timedelta(days=2), date(2026, 7, 3))
        await _seed_schedule(db, later.id, TODAY + timedelta(days=1), date(2026, 7, 2),
                             status=VacationStatus.cancelled)

        report = await jobs.send_vacation_reminders(db, TODAY)

        assert report.processed == 3
        assert await _titles(db, week.id) == ["Vacation in One Week"]
        assert await _titles(db, tomorrow.id) == ["Vacation Starts Tomorrow"]
        assert await _titles(db, today.id) == []
        assert await _titles(db, later.id) == []
        assert sorted(await _titles(db, substitute.id)) == [
            "Substitution Starts Today", "Vacation in One Week",
        ]


# ═════════════════════════════════════════════════════════════════════
# Yearly rollover
# ═════════════════════════════════════════════════════════════════════


class TestAnnualReset:

    async def test_reset_on_new_year(self, db: AsyncSession):
        veteran = await _seed_employee(db, vacation_days_used=10)
        new_hire = await _seed_employee(
            db, employment_start_date=date(2026, 7, 20), annual_vacation_days=13,
            vacation_days_used=13,
        )
        leaver = await _seed_employee(db, is_active=False, vacation_days_used=3)

        report = await jobs.reset_annual_allowances(db, date(2027, 1, 1))

        assert (report.processed, report.skipped, report.failed) == (2, 0, 0)
        assert veteran.leave_year == 2027
        assert veteran.vacation_days_used == 0
        assert veteran.carried_over_vacation_days == 16
        assert veteran.carried_over_expiry_date == date(2027, 9, 30)
        assert new_hire.annual_vacation_days == 26
        assert new_hire.carried_over_vacation_days == 0
        assert leaver.leave_year == 2026
        assert await _actions(db, veteran.id) == ["annual_reset"]

    async def test_second_run_finds_nobody(self, db: AsyncSession):
        employee = await _seed_employee(db, vacation_days_used=10)
        await jobs.reset_annual_allowances(db, date(2027, 1, 1))

        again = await jobs.reset_annual_allowances(db, date(2027, 1, 1))
        assert (again.processed, again.skipped, again.failed) == (0, 0, 0)
        assert employee.carried_over_vacation_days == 16
        assert await _actions(db, employee.id) == ["annual_reset"]

    async def test_missed_new_year_is_caught_up(self, db: AsyncSession):
        employee = await _seed_employee(db, vacation_days_used=10)

        report = await jobs.reset_annual_allowances(db, date(2027, 1, 2))

        assert report.processed == 1
        assert employee.leave_year == 2027
        assert employee.vacation_days_used == 0
        assert employee.carried_over_vacation_days == 16

    async def test_nothing_to_do_mid_year(self, db: AsyncSession):
        employee = await _seed_employee(db, vacation_days_used=10)

        report = await jobs.reset_annual_allowances(db, date(2026, 6, 15))

        assert (report.processed, report.skipped) == (0, 0)
        assert employee.vacation_days_used == 10

    async def test_concurrent_change_is_skipped_and_retried(
        self, db: AsyncSession, monkeypatch,
    ):
        first, second = sorted(
            [
                await _seed_employee(db, vacation_days_used=10),
                await _seed_employee(db, vacation_days_used=4),
            ],
            key=lambda e: e.id,
        )
        await db.commit()

        original_load = LeaveLedger._load
        loads = []

        async def load_then_write_elsewhere(session, user_id, *, for_update=False):
            employee = await original_load(session, user_id, for_update=for_update)
            loads.append(user_id)
            if len(loads) == 2:
                # another writer moves the row on after it was read
                table = Employee.__table__
                conn = await session.connection()
                await conn.execute(
                    update(table)
                    .where(table.c.id == user_id)
                    .values(version_id=table.c.version_id + 1)
                )
            return employee

        monkeypatch.setattr(LeaveLedger, "_load", staticmethod(load_then_write_elsewhere))
        report = await jobs.reset_annual_allowances(db, date(2027, 1, 1))

        assert (report.processed, report.skipped, report.failed) == (1, 1, 0)
        await db.refresh(first)
        await db.refresh(second)
        assert first.leave_year == 2027
        assert second.leave_year == 2026
        assert second.vacation_days_used == 4

        monkeypatch.undo()
        retry = await jobs.reset_annual_allowances(db, date(2027, 1, 1))

        assert retry.processed == 1
        await db.refresh(second)
        assert second.leave_year == 2027
        assert second.carried_over_vacation_days == 22

    async def test_reset_does_not_wait_for_an_employee_lock(self, db: AsyncSession):
        employee = await _seed_employee(db, vacation_days_used=10)

        async with employee_locks.hold(employee.id):
            report = await asyncio.wait_for(
                jobs.reset_annual_allowances(db, date(2027, 1, 1)), timeout=5,
            )

        assert report.processed == 1


class TestCarryOver:

    async def test_reminder_only_on_reminder_date(self, db: AsyncSession):
        holder = await _seed_employee(
            db, carried_over_vacation_days=4, carried_over_days_used=1,
            carried_over_expiry_date=date(2026, 9, 30),
        )
        spent = await _seed_employee(
            db, carried_over_vacation_days=2, carried_over_days_used=2,
            carried_over_expiry_date=date(2026, 9, 30),
        )

        quiet = await jobs.send_carry_over_reminders(db, date(2026, 8, 31))
        assert quiet.processed == 0

        report = await jobs.send_carry_over_reminders(db, date(2026, 9, 1))
        assert (report.processed, report.skipped) == (1, 1)
        assert await _titles(db, holder.id) == ["Carried-Over Vacation Days Expiring"]
        assert await _titles(db, spent.id) == []

    async def test_expiry(self, db: AsyncSession):
        employee = await _seed_employee(
            db, vacation_days_used=12, carried_over_vacation_days=5,
            carried_over_days_used=2, carried_over_expiry_date=date(2026, 9, 30),
        )

        on_expiry_day = await jobs.expire_carry_over(db, date(2026, 9, 30))
        assert on_expiry_day.processed == 0

        report = await jobs.expire_carry_over(db, date(2026, 10, 1))

        assert report.processed == 1
        assert employee.carried_over_vacation_days == 0
        assert employee.carried_over_expiry_date is None
        assert employee.vacation_days_used == 10
        assert await _titles(db, employee.id) == ["Carried-Over Vacation Days Expired"]

        again = await jobs.expire_carry_over(db, date(2026, 10, 2))
        assert again.processed == 0


# ═════════════════════════════════════════════════════════════════════
# Approval SLA
# ═════════════════════════════════════════════════════════════════════


class TestApprovalDeadlines:

    async def test_overdue_steps_remind_approver(self, db: AsyncSession):
        supervisor = await _seed_employee(db)
        employee = await _seed_employee(db, supervisor_id=supervisor.id)
        template = await _seed_template(db)
        submitted = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)
        out = await RequestService.submit_request(
            db, template.id, employee.id,
            {"start_date": "2026-07-06", "end_date": "2026-07-07"}, now=submitted,
        )

        early = await jobs.check_approval_deadlines(db, submitted + timedelta(days=2))
        assert early.processed == 0

        report = await jobs.check_approval_deadlines(db, submitted + timedelta(days=4))

        assert report.processed == 1
        titles = await _titles(db, supervisor.id)
        assert titles.count("Approval Overdue") == 1
        reminder = (
            await db.execute(
                select(Notification).where(
                    Notification.recipient_id == supervisor.id,
                    Notification.title == "Approval Overdue",
                )
            )
        ).scalars().one()
        assert reminder.entity_id == out.id

    async def test_finished_requests_are_ignored(self, db: AsyncSession):
        employee = await _seed_employee(db)
        template = await _seed_template(db)
        submitted = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)
        await RequestService.submit_request(
            db, template.id, employee.id,
            {"start_date": "2026-07-06", "end_date": "2026-07-07"}, now=submitted,
        )

        report = await jobs.check_approval_deadlines(db, submitted + timedelta(days=10))
        assert report.processed == 0


def test_job_registry_covers_every_procedure():
    assert set(jobs.JOBS) == {
        "sweep_vacation_statuses",
        "process_sick_leave_requests",
        "send_vacation_reminders",
        "reset_annual_allowances",
        "send_carry_over_reminders",
        "expire_carry_over",
        "check_approval_deadlines",
    }
    assert [name for name, (_, takes_dt) in jobs.JOBS.items() if takes_dt] == [
        "check_approval_deadlines",
    ]
