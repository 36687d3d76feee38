"""Conflict analyzer tests: coverage thresholds, overlaps, key personnel, calendar."""

from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from portal.common.constants import ConflictSeverity, ConflictType, VacationStatus
from portal.common.exceptions import ValidationException
from portal.leave.conflicts import VacationConflictAnalyzer
from tests.conftest import _seed_department, _seed_employee, _seed_schedule

START = date(2026, 7, 6)
END = date(2026, 7, 10)


async def _team(db: AsyncSession, size: int):
    department = await _seed_department(db)
    members = [await _seed_employee(db, department_id=department.id) for _ in range(size)]
    return department, members


def _types(result) -> list[ConflictType]:
    return [c.type for c in result.conflicts]


class TestCoverage:

    async def test_no_conflicts_in_quiet_team(self, db: AsyncSession):
        department, members = await _team(db, 10)
        result = await VacationConflictAnalyzer.analyze_conflicts(
            db, members[0].id, department.id, START, END,
        )
        assert result.can_be_approved is True
        assert result.conflicts == []
        assert len(result.coverage) == 5
        assert result.coverage[0].on_vacation == 1
        assert result.minimum_coverage_percent == 90.0

    async def test_coverage_low_is_advisory(self, db: AsyncSession):
        department, members = await _team(db, 10)
        for member in members[1:3]:
            await _seed_schedule(db, member.id, START, START)

        result = await VacationConflictAnalyzer.analyze_conflicts(
            db, members[0].id, department.id, START, END,
        )
        low = [c for c in result.conflicts if c.type == ConflictType.coverage_low]
        assert len(low) == 1
        assert low[0].day == START
        assert low[0].severity == ConflictSeverity.medium
        assert result.can_be_approved is True

    async def test_coverage_critical_blocks_approval(self, db: AsyncSession):
        department, members = await _team(db, 4)
        await _seed_schedule(db, members[1].id, START, END, status=VacationStatus.active)

        result = await VacationConflictAnalyzer.analyze_conflicts(
            db, members[0].id, department.id, START, END,
        )
        critical = [c for c in result.conflicts if c.type == ConflictType.coverage_critical]
        assert len(critical) == 5
        assert result.can_be_approved is False
        assert result.minimum_coverage_percent == 50.0

    async def test_cancelled_schedules_do_not_count(self, db: AsyncSession):
        department, members = await _team(db, 4)
        await _seed_schedule(db, members[1].id, START, END, status=VacationStatus.cancelled)

        result = await VacationConflictAnalyzer.analyze_conflicts(
            db, members[0].id, department.id, START, END,
        )
        assert result.can_be_approved is True
        assert result.coverage[0].on_vacation == 1

    async def test_partial_overlap_counted_only_on_shared_days(self, db: AsyncSession):
        department, members = await _team(db, 4)
        await _seed_schedule(db, members[1].id, date(2026, 7, 1), START)

        result = await VacationConflictAnalyzer.analyze_conflicts(
            db, members[0].id, department.id, START, END,
        )
        by_day = {d.day: d.on_vacation for d in result.coverage}
        assert by_day[START] == 2
        assert by_day[END] == 1


class TestPersonnelConflicts:

    async def test_own_overlapping_vacation_is_critical(self, db: AsyncSession):
        department, members = await _team(db, 10)
        await _seed_schedule(db, members[0].id, date(2026, 7, 9), date(2026, 7, 12))

        result = await VacationConflictAnalyzer.analyze_conflicts(
            db, members[0].id, department.id, START, END,
        )
        assert ConflictType.overlapping_vacation in _types(result)
        assert result.can_be_approved is False

    async def test_supervisor_away_is_flagged(self, db: AsyncSession):
        department = await _seed_department(db)
        boss = await _seed_employee(db, department_id=department.id)
        members = [
            await _seed_employee(db, department_id=department.id, supervisor_id=boss.id)
            for _ in range(9)
        ]
        await _seed_schedule(db, boss.id, END, END)

        result = await VacationConflictAnalyzer.analyze_conflicts(
            db, members[0].id, department.id, START, END,
        )
        key = [c for c in result.conflicts if c.type == ConflictType.key_personnel_unavailable]
        assert len(key) == 1
        assert key[0].user_id == boss.id
        assert key[0].severity == ConflictSeverity.high
        assert result.can_be_approved is True

    async def test_substitute_away_is_flagged(self, db: AsyncSession):
        department, members = await _team(db, 10)
        substitute = members[1]
        await _seed_schedule(db, substitute.id, START, START)

        result = await VacationConflictAnalyzer.analyze_conflicts(
            db, members[0].id, department.id, START, END, substitute_user_id=substitute.id,
        )
        assert ConflictType.key_personnel_unavailable in _types(result)

    async def test_invalid_range_rejected(self, db: AsyncSession):
        department, members = await _team(db, 2)
        with pytest.raises(ValidationException):
            await VacationConflictAnalyzer.analyze_conflicts(
                db, members[0].id, department.id, END, START,
            )


class TestTeamCalendar:

    async def test_calendar_statistics(self, db: AsyncSession):
        department, members = await _team(db, 4)
        await _seed_schedule(db, members[0].id, START, END)
        await _seed_schedule(db, members[1].id, date(2026, 7, 8), date(2026, 7, 14))
        await _seed_schedule(db, members[2].id, START, END, status=VacationStatus.cancelled)

        calendar = await VacationConflictAnalyzer.team_calendar(db, department.id, START, END)
        assert calendar.team_size == 4
        assert len(calendar.vacations) == 2
        assert calendar.max_concurrent_vacations == 2
        # 7/6, 7/7: 1 away (75%); 7/8..7/10: 2 away (50%)
        assert calendar.average_coverage_percent == 60.0
        assert [a.type for a in calendar.alerts] == [ConflictType.coverage_critical] * 3
