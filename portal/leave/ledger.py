"""Leave accounting ledger: the only writer of employee leave counters.

Counters on ``Employee``:

  annual_vacation_days            base entitlement for ``leave_year``
  vacation_days_used              single running pool for annual,
                                  on-demand and circumstantial days
  carried_over_vacation_days      rolled from the previous year
  carried_over_days_used          part of vacation_days_used drawn from
                                  the carried-over pool
  on_demand_vacation_days_used    capped per year
  circumstantial_leave_days_used  per-category capped

Debits draw from the current year first and from carried-over days
second. A debit returns the exact split so the matching credit can put
every day back where it came from; debit followed by credit therefore
restores all counters. Carried-over days that expired between the debit
and the credit are not given back.

Interactive debits and credits are serialized per employee by an
in-process lock, a row lock (``SELECT ... FOR UPDATE``) and the
``version_id`` column, so concurrent debits can never double-spend the
same days. The scheduled rollover and expiry paths take no lock: they
rely on the ``version_id`` check alone and lose to any concurrent writer.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from portal.common.constants import (
    DEDUCTIBLE_LEAVE_KINDS,
    ENTITY_EMPLOYEE,
    LeaveKind,
)
from portal.common.exceptions import (
    ConflictError,
    InsufficientLeaveBalance,
    NotFoundException,
    ValidationException,
)
from portal.common.locks import employee_locks
from portal.config import CircumstantialLeaveRule, settings
from portal.core_hr.models import Employee
from portal.leave.models import inclusive_days

# Leave dates (start, end) a debit covers.
LeavePeriod = tuple[date, date]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerDraw:
    """Where the days of one debit came from."""

    days: int
    leave_kind: LeaveKind
    from_current_year: int = 0
    from_carried_over: int = 0


# ═════════════════════════════════════════════════════════════════════
# LeaveLedger
# ═════════════════════════════════════════════════════════════════════


class LeaveLedger:
    """Arithmetic rules and serialized mutations for leave counters."""

    # ─────────────────────────────────────────────────────────────────
    # Entitlement
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def compute_proportional_entitlement(
        employment_start_date: Optional[date],
        annual_days: int,
        *,
        year: Optional[int] = None,
        cutoff_day: Optional[int] = None,
    ) -> int:
        """Entitlement for ``year`` given the hire date.

        ``ceil(months_remaining * annual_days / 12)``. The hire month
        counts as a full month only if the employee started on or before
        ``cutoff_day`` (``PROPORTIONAL_ENTITLEMENT_CUTOFF_DAY``); with the
        default of 31 the hire month always counts. Employees hired in an
        earlier year get the full amount, later hires get nothing.
        """
        if employment_start_date is None:
            return annual_days
        if year is None:
            year = date.today().year
        if cutoff_day is None:
            cutoff_day = settings.PROPORTIONAL_ENTITLEMENT_CUTOFF_DAY

        if employment_start_date.year < year:
            return annual_days
        if employment_start_date.year > year:
            return 0

        months_remaining = 12 - employment_start_date.month
        if employment_start_date.day <= cutoff_day:
            months_remaining += 1
        return math.ceil(months_remaining * annual_days / 12)

    # ─────────────────────────────────────────────────────────────────
    # Balances
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def carried_over_available(employee: Employee, today: Optional[date] = None) -> int:
        """Unused carried-over days, or 0 once the expiry date has passed."""
        today = today or date.today()
        expiry = employee.carried_over_expiry_date
        if expiry is not None and expiry < today:
            return 0
        return employee.carried_over_remaining

    @staticmethod
    def carried_over_usable(
        employee: Employee,
        today: Optional[date] = None,
        period: Optional[LeavePeriod] = None,
    ) -> int:
        """Carried-over days a leave over ``period`` may draw.

        Only the leave days falling on or before the expiry date can use
        the pool; without a period the whole remaining pool counts.
        """
        available = LeaveLedger.carried_over_available(employee, today)
        expiry = employee.carried_over_expiry_date
        if period is None or expiry is None or available == 0:
            return available
        start_date, end_date = period
        if start_date > expiry:
            return 0
        return min(available, inclusive_days(start_date, min(end_date, expiry)))

    @staticmethod
    def available_days(
        employee: Employee,
        today: Optional[date] = None,
        period: Optional[LeavePeriod] = None,
    ) -> int:
        return employee.current_year_remaining + LeaveLedger.carried_over_usable(
            employee, today, period,
        )

    @staticmethod
    def on_demand_remaining(employee: Employee) -> int:
        return max(
            0,
            settings.MAX_ON_DEMAND_DAYS_PER_YEAR - (employee.on_demand_vacation_days_used or 0),
        )

    # ─────────────────────────────────────────────────────────────────
    # Validation (no mutation)
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def check_on_demand(employee: Employee, days: int) -> None:
        used = employee.on_demand_vacation_days_used or 0
        if used + days > settings.MAX_ON_DEMAND_DAYS_PER_YEAR:
            raise InsufficientLeaveBalance(
                days, LeaveLedger.on_demand_remaining(employee), field="on_demand",
            )

    @staticmethod
    def check_circumstantial(
        days: int,
        reason_category: Optional[str],
        *,
        has_documentation: bool = False,
        categories: Optional[Mapping[str, CircumstantialLeaveRule]] = None,
    ) -> CircumstantialLeaveRule:
        """Validate a circumstantial request against its category rules.

        Categories come from ``CIRCUMSTANTIAL_LEAVE_CATEGORIES`` unless
        given explicitly; names are matched case-insensitively.
        """
        if categories is None:
            categories = settings.CIRCUMSTANTIAL_LEAVE_CATEGORIES
        categories = {name.lower(): rule for name, rule in categories.items()}
        key = (reason_category or "").strip().lower()
        category = categories.get(key)
        if category is None:
            raise ValidationException(
                {"reason_category": [
                    f"Unknown circumstantial leave category '{reason_category}'. "
                    f"Allowed: {sorted(categories)}."
                ]}
            )
        if days > category.max_days:
            raise ValidationException(
                {"days": [
                    f"Circumstantial leave for '{key}' is limited to "
                    f"{category.max_days} day(s); requested {days}."
                ]}
            )
        threshold = category.documentation_threshold
        if threshold is not None and days > threshold and not has_documentation:
            raise ValidationException(
                {"documentation": [
                    f"Circumstantial leave for '{key}' longer than {threshold} "
                    f"day(s) requires supporting documentation."
                ]}
            )
        return category

    @staticmethod
    def check_debit(
        employee: Employee,
        days: int,
        leave_kind: LeaveKind,
        *,
        today: Optional[date] = None,
        reason_category: Optional[str] = None,
        has_documentation: bool = False,
        period: Optional[LeavePeriod] = None,
    ) -> None:
        """Raise unless ``days`` of ``leave_kind`` can be debited now."""
        if days <= 0:
            raise ValidationException({"days": ["Leave must cover at least one day."]})
        if leave_kind == LeaveKind.sick:
            return
        if leave_kind == LeaveKind.on_demand:
            LeaveLedger.check_on_demand(employee, days)
        elif leave_kind == LeaveKind.circumstantial:
            LeaveLedger.check_circumstantial(
                days, reason_category, has_documentation=has_documentation,
            )

        available = LeaveLedger.available_days(employee, today, period)
        if days > available:
            raise InsufficientLeaveBalance(days, available)

    # ─────────────────────────────────────────────────────────────────
    # Pure counter arithmetic
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def apply_debit(
        employee: Employee,
        days: int,
        leave_kind: LeaveKind,
        *,
        today: Optional[date] = None,
        period: Optional[LeavePeriod] = None,
    ) -> LedgerDraw:
        """Move counters for a debit that has already passed ``check_debit``."""
        if leave_kind not in DEDUCTIBLE_LEAVE_KINDS:
            return LedgerDraw(days=days, leave_kind=leave_kind)

        from_current = min(days, employee.current_year_remaining)
        from_carried = days - from_current
        if from_carried > LeaveLedger.carried_over_usable(employee, today, period):
            raise InsufficientLeaveBalance(
                days, LeaveLedger.available_days(employee, today, period),
            )

        employee.vacation_days_used = (employee.vacation_days_used or 0) + days
        employee.carried_over_days_used = (employee.carried_over_days_used or 0) + from_carried
        if leave_kind == LeaveKind.on_demand:
            employee.on_demand_vacation_days_used = (employee.on_demand_vacation_days_used or 0) + days
        elif leave_kind == LeaveKind.circumstantial:
            employee.circumstantial_leave_days_used = (employee.circumstantial_leave_days_used or 0) + days

        return LedgerDraw(
            days=days,
            leave_kind=leave_kind,
            from_current_year=from_current,
            from_carried_over=from_carried,
        )

    @staticmethod
    def apply_credit(
        employee: Employee,
        days: int,
        leave_kind: LeaveKind,
        *,
        from_carried_over: Optional[int] = None,
    ) -> LedgerDraw:
        """Reverse a debit.

        ``from_carried_over`` is the split recorded at debit time. When it
        is unknown, carried-over days are returned first, mirroring the
        debit order in reverse.

        Recorded carried-over days that are no longer on the pool's used
        counter expired after the debit. :meth:`expire_carry_over` already
        took them out of ``vacation_days_used``; they stay forfeited and
        only the rest of the debit is returned.
        """
        if leave_kind not in DEDUCTIBLE_LEAVE_KINDS:
            return LedgerDraw(days=days, leave_kind=leave_kind)

        carried_used = employee.carried_over_days_used or 0
        if from_carried_over is None:
            from_carried_over = min(days, carried_used)
        from_carried_over = min(from_carried_over, days)
        returned_to_pool = min(from_carried_over, carried_used)
        forfeited = from_carried_over - returned_to_pool

        employee.vacation_days_used = max(
            0, (employee.vacation_days_used or 0) - (days - forfeited),
        )
        employee.carried_over_days_used = carried_used - returned_to_pool
        if leave_kind == LeaveKind.on_demand:
            employee.on_demand_vacation_days_used = max(
                0, (employee.on_demand_vacation_days_used or 0) - days,
            )
        elif leave_kind == LeaveKind.circumstantial:
            employee.circumstantial_leave_days_used = max(
                0, (employee.circumstantial_leave_days_used or 0) - days,
            )

        return LedgerDraw(
            days=days,
            leave_kind=leave_kind,
            from_current_year=days - from_carried_over,
            from_carried_over=returned_to_pool,
        )

    @staticmethod
    def reset_annual_counters(
        employee: Employee,
        year: int,
        *,
        default_annual_days: Optional[int] = None,
    ) -> bool:
        """Roll counters into ``year``. Returns False if already done.

        ``annual - used`` becomes the new carried-over balance, expiring
        on the configured date of ``year``. ``used`` includes days drawn
        from the previous carry-over, and whatever remains of that pool
        is forfeited.
        """
        if employee.leave_year is not None and employee.leave_year >= year:
            return False

        unused = employee.annual_vacation_days - (employee.vacation_days_used or 0)
        if unused > 0:
            employee.carried_over_vacation_days = unused
            employee.carried_over_expiry_date = date(
                year, settings.CARRY_OVER_EXPIRY_MONTH, settings.CARRY_OVER_EXPIRY_DAY,
            )
        else:
            employee.carried_over_vacation_days = 0
            employee.carried_over_expiry_date = None

        employee.annual_vacation_days = (
            default_annual_days
            if default_annual_days is not None
            else settings.DEFAULT_ANNUAL_VACATION_DAYS
        )
        employee.vacation_days_used = 0
        employee.on_demand_vacation_days_used = 0
        employee.circumstantial_leave_days_used = 0
        employee.carried_over_days_used = 0
        employee.leave_year = year
        return True

    @staticmethod
    def expire_carry_over(employee: Employee, today: date) -> int:
        """Void carried-over days past their expiry. Returns days forfeited."""
        expiry = employee.carried_over_expiry_date
        if expiry is None or expiry >= today:
            return 0
        forfeited = employee.carried_over_remaining
        # Days already taken from the pool stay in vacation_days_used as
        # current-year consumption from here on.
        employee.vacation_days_used = employee.current_year_days_used
        employee.carried_over_vacation_days = 0
        employee.carried_over_days_used = 0
        employee.carried_over_expiry_date = None
        return forfeited

    # ─────────────────────────────────────────────────────────────────
    # Serialized mutations
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _load(
        db: AsyncSession, user_id: uuid.UUID, *, for_update: bool = False,
    ) -> Employee:
        stmt = select(Employee).where(Employee.id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt.execution_options(populate_existing=True))
        employee = result.scalars().first()
        if employee is None:
            raise NotFoundException("Employee", user_id)
        return employee

    @staticmethod
    async def _load_for_update(db: AsyncSession, user_id: uuid.UUID) -> Employee:
        return await LeaveLedger._load(db, user_id, for_update=True)

    @staticmethod
    async def _flush(db: AsyncSession, employee: Employee) -> None:
        try:
            await db.flush()
        except StaleDataError as exc:
            raise ConflictError(ENTITY_EMPLOYEE, employee.id) from exc

    @staticmethod
    async def debit(
        db: AsyncSession,
        user_id: uuid.UUID,
        days: int,
        leave_kind: LeaveKind,
        *,
        today: Optional[date] = None,
        reason_category: Optional[str] = None,
        has_documentation: bool = False,
        period: Optional[LeavePeriod] = None,
    ) -> LedgerDraw:
        """Validate and debit ``days`` of ``leave_kind`` from ``user_id``."""
        async with employee_locks.hold(user_id):
            employee = await LeaveLedger._load_for_update(db, user_id)
            LeaveLedger.check_debit(
                employee,
                days,
                leave_kind,
                today=today,
                reason_category=reason_category,
                has_documentation=has_documentation,
                period=period,
            )
            draw = LeaveLedger.apply_debit(
                employee, days, leave_kind, today=today, period=period,
            )
            await LeaveLedger._flush(db, employee)

        logger.info(
            "Debited %d %s day(s) from %s (current=%d, carried=%d)",
            days, leave_kind.value, user_id, draw.from_current_year, draw.from_carried_over,
        )
        return draw

    @staticmethod
    async def credit(
        db: AsyncSession,
        user_id: uuid.UUID,
        days: int,
        leave_kind: LeaveKind,
        *,
        from_carried_over: Optional[int] = None,
    ) -> LedgerDraw:
        """Return ``days`` of ``leave_kind`` to ``user_id`` (cancellation)."""
        async with employee_locks.hold(user_id):
            employee = await LeaveLedger._load_for_update(db, user_id)
            draw = LeaveLedger.apply_credit(
                employee, days, leave_kind, from_carried_over=from_carried_over,
            )
            await LeaveLedger._flush(db, employee)

        logger.info(
            "Credited %d %s day(s) to %s (current=%d, carried=%d)",
            days, leave_kind.value, user_id, draw.from_current_year, draw.from_carried_over,
        )
        return draw

    @staticmethod
    async def reset_year(
        db: AsyncSession,
        user_id: uuid.UUID,
        year: int,
        *,
        default_annual_days: Optional[int] = None,
    ) -> bool:
        """Version-checked :meth:`reset_annual_counters`.

        Raises ``ConflictError`` if another writer changed the employee
        since it was loaded.
        """
        employee = await LeaveLedger._load(db, user_id)
        changed = LeaveLedger.reset_annual_counters(
            employee, year, default_annual_days=default_annual_days,
        )
        if changed:
            await LeaveLedger._flush(db, employee)
        return changed

    @staticmethod
    async def expire(db: AsyncSession, user_id: uuid.UUID, today: date) -> int:
        """Version-checked :meth:`expire_carry_over`."""
        employee = await LeaveLedger._load(db, user_id)
        forfeited = LeaveLedger.expire_carry_over(employee, today)
        await LeaveLedger._flush(db, employee)
        return forfeited
