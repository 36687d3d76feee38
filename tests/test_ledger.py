"""Leave ledger tests: entitlement, balances, debit/credit, annual rollover.

Pure counter arithmetic is tested on transient Employee objects; the
serialized debit/credit paths run against SQLite.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import date

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.common.constants import LeaveKind
from portal.common.exceptions import (
    ConflictError,
    InsufficientLeaveBalance,
    NotFoundException,
    ValidationException,
)
from portal.config import CircumstantialLeaveRule, settings
from portal.core_hr.models import Employee
from portal.leave.ledger import LeaveLedger
from portal.leave.models import VacationSchedule, inclusive_days
from tests.conftest import TestSessionFactory, _make_employee, _seed_employee

TODAY = date(2026, 6, 15)


def _employee(**kwargs) -> Employee:
    return Employee(**_make_employee(**kwargs))


def _counters(emp: Employee) -> tuple:
    return (
        emp.vacation_days_used,
        emp.on_demand_vacation_days_used,
        emp.circumstantial_leave_days_used,
        emp.carried_over_vacation_days,
        emp.carried_over_days_used,
    )


# ═════════════════════════════════════════════════════════════════════
# Entitlement
# ═════════════════════════════════════════════════════════════════════


class TestProportionalEntitlement:

    def test_hired_in_earlier_year_gets_full_entitlement(self):
        assert LeaveLedger.compute_proportional_entitlement(date(2019, 7, 1), 26, year=2026) == 26

    def test_hired_in_later_year_gets_nothing(self):
        assert LeaveLedger.compute_proportional_entitlement(date(2027, 1, 1), 26, year=2026) == 0

    def test_hire_month_counts_by_default(self):
        # July..December = 6 months -> ceil(6 * 26 / 12) = 13
        assert LeaveLedger.compute_proportional_entitlement(date(2026, 7, 20), 26, year=2026) == 13

    def test_hire_after_cutoff_day_skips_hire_month(self):
        # August..December = 5 months -> ceil(5 * 26 / 12) = 11
        assert LeaveLedger.compute_proportional_entitlement(
            date(2026, 7, 20), 26, year=2026, cutoff_day=15,
        ) == 11

    def test_january_first_hire_gets_full_year(self):
        assert LeaveLedger.compute_proportional_entitlement(date(2026, 1, 1), 20, year=2026) == 20

    def test_missing_start_date_gets_full_entitlement(self):
        assert LeaveLedger.compute_proportional_entitlement(None, 26, year=2026) == 26


# ═════════════════════════════════════════════════════════════════════
# Balances / validation
# ═════════════════════════════════════════════════════════════════════


class TestBalances:

    def test_days_count_is_inclusive(self):
        schedule = VacationSchedule(start_date=date(2025, 7, 1), end_date=date(2025, 7, 10))
        assert schedule.days_count == 10
        assert inclusive_days(date(2025, 7, 1), date(2025, 7, 1)) == 1

    def test_available_includes_unexpired_carry_over(self):
        emp = _employee(
            vacation_days_used=20,
            carried_over_vacation_days=5,
            carried_over_expiry_date=date(2026, 9, 30),
        )
        assert LeaveLedger.available_days(emp, TODAY) == 6 + 5

    def test_expired_carry_over_is_not_available(self):
        emp = _employee(
            vacation_days_used=20,
            carried_over_vacation_days=5,
            carried_over_expiry_date=date(2026, 9, 30),
        )
        assert LeaveLedger.available_days(emp, date(2026, 10, 1)) == 6

    def test_carry_over_only_covers_days_up_to_expiry(self):
        emp = _employee(
            vacation_days_used=24,
            carried_over_vacation_days=5,
            carried_over_expiry_date=date(2026, 9, 30),
        )
        today = date(2026, 9, 10)
        after_expiry = (date(2026, 10, 5), date(2026, 10, 8))
        with pytest.raises(InsufficientLeaveBalance) as exc_info:
            LeaveLedger.check_debit(emp, 4, LeaveKind.annual, today=today, period=after_expiry)
        assert exc_info.value.available == 2

        straddling = (date(2026, 9, 28), date(2026, 10, 1))
        assert LeaveLedger.carried_over_usable(emp, today, straddling) == 3
        LeaveLedger.check_debit(emp, 4, LeaveKind.annual, today=today, period=straddling)
        draw = LeaveLedger.apply_debit(emp, 4, LeaveKind.annual, today=today, period=straddling)
        assert (draw.from_current_year, draw.from_carried_over) == (2, 2)

    @pytest.mark.parametrize("days", [1, 2, 4, 10])
    def test_on_demand_exhausted_always_rejected(self, days):
        emp = _employee(on_demand_vacation_days_used=4)
        with pytest.raises(InsufficientLeaveBalance) as exc_info:
            LeaveLedger.check_debit(emp, days, LeaveKind.on_demand, today=TODAY)
        assert exc_info.value.errors["on_demand"]
        assert LeaveLedger.on_demand_remaining(emp) == 0

    def test_on_demand_over_cap_rejected(self):
        emp = _employee(on_demand_vacation_days_used=3)
        with pytest.raises(InsufficientLeaveBalance):
            LeaveLedger.check_debit(emp, 2, LeaveKind.on_demand, today=TODAY)
        LeaveLedger.check_debit(emp, 1, LeaveKind.on_demand, today=TODAY)

    def test_annual_over_balance_rejected(self):
        emp = _employee(vacation_days_used=24)
        with pytest.raises(InsufficientLeaveBalance):
            LeaveLedger.check_debit(emp, 3, LeaveKind.annual, today=TODAY)

    def test_zero_days_rejected(self):
        with pytest.raises(ValidationException):
            LeaveLedger.check_debit(_employee(), 0, LeaveKind.annual, today=TODAY)

    def test_sick_leave_needs_no_balance(self):
        emp = _employee(vacation_days_used=26)
        LeaveLedger.check_debit(emp, 40, LeaveKind.sick, today=TODAY)


class TestCircumstantial:

    def test_unknown_category_rejected(self):
        with pytest.raises(ValidationException) as exc_info:
            LeaveLedger.check_circumstantial(1, "holiday", has_documentation=True)
        assert "reason_category" in exc_info.value.errors

    def test_over_category_cap_rejected(self):
        with pytest.raises(ValidationException) as exc_info:
            LeaveLedger.check_circumstantial(3, "marriage", has_documentation=True)
        assert "days" in exc_info.value.errors

    def test_documentation_required(self):
        with pytest.raises(ValidationException) as exc_info:
            LeaveLedger.check_circumstantial(2, "birth", has_documentation=False)
        assert "documentation" in exc_info.value.errors

    def test_moving_never_needs_documentation(self):
        category = LeaveLedger.check_circumstantial(1, "moving")
        assert category.max_days == 1

    def test_categories_come_from_settings(self, monkeypatch):
        monkeypatch.setitem(
            settings.CIRCUMSTANTIAL_LEAVE_CATEGORIES,
            "jury_duty",
            CircumstantialLeaveRule(max_days=3),
        )
        assert LeaveLedger.check_circumstantial(3, "Jury_Duty").max_days == 3
        with pytest.raises(ValidationException):
            LeaveLedger.check_circumstantial(4, "jury_duty")

    def test_explicit_categories_replace_configured_ones(self):
        rules = {"moving": CircumstantialLeaveRule(max_days=2, documentation_threshold=1)}
        with pytest.raises(ValidationException) as exc_info:
            LeaveLedger.check_circumstantial(2, "moving", categories=rules)
        assert "documentation" in exc_info.value.errors
        with pytest.raises(ValidationException):
            LeaveLedger.check_circumstantial(1, "marriage", categories=rules)


# ═════════════════════════════════════════════════════════════════════
# Counter arithmetic
# ═════════════════════════════════════════════════════════════════════


class TestDebitCredit:

    def test_debit_draws_current_year_first(self):
        emp = _employee(
            vacation_days_used=24,
            carried_over_vacation_days=5,
            carried_over_expiry_date=date(2026, 9, 30),
        )
        draw = LeaveLedger.apply_debit(emp, 4, LeaveKind.annual, today=TODAY)
        assert (draw.from_current_year, draw.from_carried_over) == (2, 2)
        assert emp.vacation_days_used == 28
        assert emp.carried_over_days_used == 2
        assert emp.carried_over_remaining == 3

    @pytest.mark.parametrize("kind", [LeaveKind.annual, LeaveKind.on_demand, LeaveKind.circumstantial])
    def test_debit_then_credit_restores_counters(self, kind):
        emp = _employee(
            vacation_days_used=23,
            on_demand_vacation_days_used=1,
            carried_over_vacation_days=4,
            carried_over_days_used=1,
            carried_over_expiry_date=date(2026, 9, 30),
        )
        before = _counters(emp)
        days = 2 if kind != LeaveKind.circumstantial else 1
        draw = LeaveLedger.apply_debit(emp, days, kind, today=TODAY)
        assert _counters(emp) != before
        LeaveLedger.apply_credit(emp, days, kind, from_carried_over=draw.from_carried_over)
        assert _counters(emp) == before

    def test_credit_without_split_returns_carried_first(self):
        emp = _employee(
            vacation_days_used=28,
            carried_over_vacation_days=5,
            carried_over_days_used=2,
        )
        draw = LeaveLedger.apply_credit(emp, 3, LeaveKind.annual)
        assert draw.from_carried_over == 2
        assert emp.vacation_days_used == 25
        assert emp.carried_over_days_used == 0

    def test_credit_after_expiry_keeps_expired_days_forfeited(self):
        emp = _employee(
            vacation_days_used=24,
            carried_over_vacation_days=5,
            carried_over_expiry_date=date(2026, 9, 30),
        )
        draw = LeaveLedger.apply_debit(emp, 4, LeaveKind.annual, today=TODAY)
        assert emp.vacation_days_used == 28

        assert LeaveLedger.expire_carry_over(emp, date(2026, 10, 1)) == 3
        assert emp.vacation_days_used == 26

        credit = LeaveLedger.apply_credit(
            emp, 4, LeaveKind.annual, from_carried_over=draw.from_carried_over,
        )
        assert credit.from_carried_over == 0
        assert emp.vacation_days_used == 24
        assert emp.carried_over_days_used == 0

    def test_sick_moves_no_counters(self):
        emp = _employee(vacation_days_used=5)
        before = _counters(emp)
        LeaveLedger.apply_debit(emp, 10, LeaveKind.sick, today=TODAY)
        assert _counters(emp) == before

    def test_circumstantial_counts_against_vacation_pool(self):
        emp = _employee()
        LeaveLedger.apply_debit(emp, 2, LeaveKind.circumstantial, today=TODAY)
        assert emp.circumstantial_leave_days_used == 2
        assert emp.vacation_days_used == 2


class TestAnnualReset:

    def test_unused_days_carry_over(self):
        emp = _employee(
            vacation_days_used=10,
            on_demand_vacation_days_used=2,
            leave_year=2025,
        )
        emp.circumstantial_leave_days_used = 1
        assert LeaveLedger.reset_annual_counters(emp, 2026) is True
        assert emp.vacation_days_used == 0
        assert emp.on_demand_vacation_days_used == 0
        assert emp.circumstantial_leave_days_used == 0
        assert emp.carried_over_vacation_days == 16
        assert emp.carried_over_expiry_date == date(2026, 9, 30)
        assert emp.annual_vacation_days == 26
        assert emp.leave_year == 2026

    def test_fully_used_year_carries_nothing(self):
        emp = _employee(vacation_days_used=30, carried_over_days_used=4, leave_year=2025)
        LeaveLedger.reset_annual_counters(emp, 2026)
        assert emp.carried_over_vacation_days == 0
        assert emp.carried_over_expiry_date is None
        assert emp.carried_over_days_used == 0

    def test_reset_runs_once_per_year(self):
        emp = _employee(vacation_days_used=10, leave_year=2025)
        assert LeaveLedger.reset_annual_counters(emp, 2026) is True
        emp.vacation_days_used = 3
        assert LeaveLedger.reset_annual_counters(emp, 2026) is False
        assert emp.vacation_days_used == 3
        assert emp.carried_over_vacation_days == 16

    def test_expire_carry_over_after_expiry(self):
        emp = _employee(
            vacation_days_used=12,
            carried_over_vacation_days=5,
            carried_over_days_used=2,
            carried_over_expiry_date=date(2026, 9, 30),
        )
        assert LeaveLedger.expire_carry_over(emp, date(2026, 9, 30)) == 0
        assert LeaveLedger.expire_carry_over(emp, date(2026, 10, 1)) == 3
        assert emp.carried_over_vacation_days == 0
        assert emp.carried_over_days_used == 0
        assert emp.carried_over_expiry_date is None
        # days already taken from the pool stay consumed
        assert emp.vacation_days_used == 10


# ═════════════════════════════════════════════════════════════════════
# Serialized mutations
# ═════════════════════════════════════════════════════════════════════


class TestLedgerPersistence:

    async def test_debit_and_credit_persist(self, db: AsyncSession):
        emp = await _seed_employee(db, vacation_days_used=5)
        await db.commit()

        draw = await LeaveLedger.debit(db, emp.id, 3, LeaveKind.annual, today=TODAY)
        assert draw.from_current_year == 3
        await db.commit()
        await db.refresh(emp)
        assert emp.vacation_days_used == 8

        await LeaveLedger.credit(db, emp.id, 3, LeaveKind.annual, from_carried_over=0)
        await db.commit()
        await db.refresh(emp)
        assert emp.vacation_days_used == 5

    async def test_debit_unknown_employee(self, db: AsyncSession):
        with pytest.raises(NotFoundException):
            await LeaveLedger.debit(db, uuid.uuid4(), 1, LeaveKind.annual, today=TODAY)

    async def test_second_debit_sees_the_first(self, db: AsyncSession):
        emp = await _seed_employee(db, vacation_days_used=20)
        await db.commit()

        async def attempt() -> bool:
            async with TestSessionFactory() as session:
                try:
                    await LeaveLedger.debit(session, emp.id, 4, LeaveKind.annual, today=TODAY)
                    await session.commit()
                    return True
                except InsufficientLeaveBalance:
                    await session.rollback()
                    return False

        results = [await attempt(), await attempt()]
        assert results.count(True) == 1

        await db.refresh(emp)
        assert emp.vacation_days_used == 24

    async def test_concurrent_debits_never_double_spend(self, file_session_factory):
        async with file_session_factory() as session:
            emp = await _seed_employee(session, vacation_days_used=20)
            await session.commit()

        async def attempt() -> bool:
            async with file_session_factory() as session:
                try:
                    await LeaveLedger.debit(session, emp.id, 4, LeaveKind.annual, today=TODAY)
                    await session.commit()
                    return True
                except (InsufficientLeaveBalance, ConflictError, OperationalError):
                    # a writer that lost the race is refused by the ledger or the database
                    await session.rollback()
                    return False

        results = await asyncio.gather(attempt(), attempt())
        assert results.count(True) == 1

        async with file_session_factory() as session:
            stored = await session.get(Employee, emp.id)
            assert stored.vacation_days_used == 24

