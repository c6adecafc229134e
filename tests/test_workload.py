from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta

import pytest

from scheduler.domain.models import SlotPeriod
from scheduler.services.workload_service import (
    WorkloadBalanceService,
    calculate_workload_score,
    week_start_for,
)
from tests.conftest import TODAY


@pytest.mark.parametrize(
    ("ratio", "expected", "overloaded", "underloaded"),
    [
        (0.0, 65.0, False, True),
        (0.25, 75.0, False, True),
        (0.65, 92.5, False, False),
        (0.9, 100.0, False, False),
        (1.1, 80.0, False, False),
        (1.25, 67.5, True, False),
        (3.0, 20.0, True, False),
    ],
)
def test_workload_score_curve(ratio, expected, overloaded, underloaded) -> None:
    score, is_overloaded, is_underloaded = calculate_workload_score(ratio, 0)
    assert score == pytest.approx(expected)
    assert is_overloaded is overloaded
    assert is_underloaded is underloaded


def test_busy_day_penalties() -> None:
    near_limit, near_overloaded, _ = calculate_workload_score(0.9, 5)
    at_limit, at_overloaded, _ = calculate_workload_score(0.9, 7)
    assert near_limit == 90.0
    assert not near_overloaded
    assert at_limit == 70.0
    assert at_overloaded


def test_week_start_is_monday() -> None:
    assert week_start_for(date(2026, 3, 8)) == date(2026, 3, 2)
    assert week_start_for(TODAY) == TODAY


def _book(world, engineer_id: int, on_date: date, slot: SlotPeriod = SlotPeriod.AM, price: float = 100.0) -> None:
    world.repository.insert_booking(
        customer_id=world.customer_id,
        site_id=world.site_id,
        service_id=world.service_id,
        engineer_id=engineer_id,
        scheduled_date=on_date,
        slot=slot,
        quoted_price=price,
        created_on=TODAY,
    )


def test_balance_compares_engineer_to_weekly_average(world) -> None:
    # Senior: 5 jobs this week, junior: 3 jobs. Average 4.
    for offset in range(5):
        _book(world, world.senior_engineer_id, TODAY + timedelta(days=offset))
    for offset in range(3):
        _book(world, world.junior_engineer_id, TODAY + timedelta(days=offset))

    service = WorkloadBalanceService(world.repository, world.settings)
    senior = service.calculate_workload_balance(world.senior_engineer_id, TODAY + timedelta(days=1))
    junior = service.calculate_workload_balance(world.junior_engineer_id, TODAY + timedelta(days=1))

    assert senior.weekly_jobs == 5
    assert senior.weekly_revenue == 500.0
    assert senior.compared_to_average == 1.25
    assert senior.score == 67.5
    assert senior.is_overloaded
    assert junior.compared_to_average == 0.75
    assert not junior.is_overloaded

    ranked = service.get_engineers_by_capacity(
        [world.senior_engineer_id, world.junior_engineer_id], TODAY
    )
    assert [item.engineer_id for item in ranked] == [world.junior_engineer_id, world.senior_engineer_id]


def test_capacity_ranking_prefers_higher_score_over_lower_ratio(world) -> None:
    # Only the junior has jobs, so the idle senior sits at ratio 0 (underloaded).
    for offset in range(3):
        _book(world, world.junior_engineer_id, TODAY + timedelta(days=offset))

    service = WorkloadBalanceService(world.repository, world.settings)
    ranked = service.get_engineers_by_capacity(
        [world.senior_engineer_id, world.junior_engineer_id], TODAY + timedelta(days=4)
    )

    assert [item.engineer_id for item in ranked] == [world.junior_engineer_id, world.senior_engineer_id]
    assert ranked[0].score > ranked[1].score


def test_capacity_ranking_drops_engineers_with_full_day(world) -> None:
    _book(world, world.senior_engineer_id, TODAY)
    service = WorkloadBalanceService(world.repository, replace(world.settings, max_jobs_per_day=1))

    ranked = service.get_engineers_by_capacity(
        [world.senior_engineer_id, world.junior_engineer_id], TODAY
    )

    assert [item.engineer_id for item in ranked] == [world.junior_engineer_id]


def test_engineer_without_jobs_in_empty_week_is_neutral(world) -> None:
    service = WorkloadBalanceService(world.repository, world.settings)
    balance = service.calculate_workload_balance(world.senior_engineer_id, TODAY)
    assert balance.weekly_jobs == 0
    assert balance.compared_to_average == 1.0
    assert balance.score == 90.0


def test_capacity_blocks_weekly_overload(world) -> None:
    for offset in range(5):
        _book(world, world.senior_engineer_id, TODAY + timedelta(days=offset))
    for offset in range(3):
        _book(world, world.junior_engineer_id, TODAY + timedelta(days=offset))

    service = WorkloadBalanceService(world.repository, world.settings)
    senior = service.check_capacity(world.senior_engineer_id, TODAY)
    junior = service.check_capacity(world.junior_engineer_id, TODAY)

    assert not senior.available
    assert senior.weekly_limit == 5
    assert "Weekly limit" in (senior.reason or "")
    assert junior.available


def test_capacity_blocks_full_day(world) -> None:
    settings = replace(world.settings, max_jobs_per_day=2)
    _book(world, world.senior_engineer_id, TODAY, SlotPeriod.AM)
    _book(world, world.senior_engineer_id, TODAY, SlotPeriod.PM)

    service = WorkloadBalanceService(world.repository, settings)
    check = service.check_capacity(world.senior_engineer_id, TODAY)
    assert not check.available
    assert check.jobs_on_day == 2
    assert "Daily limit" in (check.reason or "")
