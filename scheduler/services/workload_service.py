"""Engineer workload balance against the weekly cohort average."""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional

from scheduler.domain.geo import hop_km
from scheduler.domain.models import (
    WORKLOAD_BOOKING_STATUSES,
    BookedJob,
    CapacityCheck,
    WorkloadBalance,
)
from scheduler.repository.data_repository import DataRepository
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class EngineerWeek:
    jobs: int
    revenue: float
    travel_km: float
    jobs_by_day: dict[date, int]


@dataclass(frozen=True)
class CohortWeekStats:
    """Weekly totals for every engineer with work in the week; shared per request."""

    week_start: date
    by_engineer: dict[int, EngineerWeek]

    @property
    def average_jobs(self) -> float:
        if not self.by_engineer:
            return 0.0
        return sum(item.jobs for item in self.by_engineer.values()) / len(self.by_engineer)

    def for_engineer(self, engineer_id: int) -> EngineerWeek:
        return self.by_engineer.get(engineer_id, EngineerWeek(0, 0.0, 0.0, {}))


def week_start_for(target: date) -> date:
    """Monday of the ISO week containing ``target``."""
    return target - timedelta(days=target.weekday())


def daily_travel_km(jobs: list[BookedJob]) -> float:
    ordered = sorted(jobs, key=lambda job: (job.slot.sort_key, job.booking_id))
    return sum(
        hop_km(previous.coordinates, current.coordinates)
        for previous, current in zip(ordered, ordered[1:])
    )


def summarize_week(week_start: date, jobs: Iterable[BookedJob]) -> CohortWeekStats:
    grouped: dict[int, list[BookedJob]] = defaultdict(list)
    for job in jobs:
        if job.engineer_id is not None:
            grouped[job.engineer_id].append(job)

    by_engineer: dict[int, EngineerWeek] = {}
    for engineer_id, engineer_jobs in grouped.items():
        per_day: dict[date, list[BookedJob]] = defaultdict(list)
        for job in engineer_jobs:
            per_day[job.date].append(job)
        by_engineer[engineer_id] = EngineerWeek(
            jobs=len(engineer_jobs),
            revenue=round(sum(job.quoted_price or 0.0 for job in engineer_jobs), 2),
            travel_km=round(sum(daily_travel_km(day_jobs) for day_jobs in per_day.values()), 1),
            jobs_by_day={day: len(day_jobs) for day, day_jobs in per_day.items()},
        )
    return CohortWeekStats(week_start=week_start, by_engineer=by_engineer)


def calculate_workload_score(
    ratio: float,
    jobs_on_day: int,
    *,
    max_jobs_per_day: int = 7,
    underload_ratio: float = 0.5,
    overload_ratio: float = 1.2,
) -> tuple[float, bool, bool]:
    """Return (score, is_overloaded, is_underloaded).

    The curve peaks at slightly-under-average load, not at zero load: an
    empty-looking week can hide recent cancellations.
    """
    is_overloaded = False
    is_underloaded = False

    if ratio < underload_ratio:
        score = 65 + ratio / underload_ratio * 20
        is_underloaded = True
    elif ratio < 0.8:
        score = 85 + (ratio - underload_ratio) / (0.8 - underload_ratio) * 15
    elif ratio < 1.0:
        score = 100.0
    elif ratio < overload_ratio:
        score = 90 - (ratio - 1.0) / (overload_ratio - 1.0) * 20
    else:
        score = max(20.0, 70 - (ratio - overload_ratio) * 50)
        is_overloaded = True

    if jobs_on_day >= max_jobs_per_day:
        score -= 30
        is_overloaded = True
    elif jobs_on_day >= max_jobs_per_day - 2:
        score -= 10

    return max(0.0, min(100.0, score)), is_overloaded, is_underloaded


class WorkloadBalanceService:
    """Weekly workload snapshots and capacity checks for engineers."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def load_cohort_stats(self, week_start: date) -> CohortWeekStats:
        jobs = self._repository.list_jobs_between(
            week_start,
            week_start + timedelta(days=6),
            WORKLOAD_BOOKING_STATUSES,
        )
        stats = summarize_week(week_start, jobs)
        logger.debug(
            "Cohort stats loaded | week_start=%s | engineers=%s | average_jobs=%.2f",
            week_start,
            len(stats.by_engineer),
            stats.average_jobs,
        )
        return stats

    def _cohort_for(self, target: date, cohort: Optional[CohortWeekStats]) -> CohortWeekStats:
        week_start = week_start_for(target)
        if cohort is not None and cohort.week_start == week_start:
            return cohort
        return self.load_cohort_stats(week_start)

    def calculate_workload_balance(
        self,
        engineer_id: int,
        target_date: date,
        *,
        cohort: Optional[CohortWeekStats] = None,
    ) -> WorkloadBalance:
        stats = self._cohort_for(target_date, cohort)
        week = stats.for_engineer(engineer_id)
        average = stats.average_jobs
        ratio = week.jobs / average if average > 0 else 1.0
        jobs_on_day = week.jobs_by_day.get(target_date, 0)

        score, is_overloaded, is_underloaded = calculate_workload_score(
            ratio,
            jobs_on_day,
            max_jobs_per_day=self._settings.max_jobs_per_day,
            underload_ratio=self._settings.workload_underload_ratio,
            overload_ratio=self._settings.workload_overload_ratio,
        )
        return WorkloadBalance(
            engineer_id=engineer_id,
            week_start=stats.week_start,
            weekly_jobs=week.jobs,
            weekly_revenue=week.revenue,
            weekly_travel_km=week.travel_km,
            compared_to_average=round(ratio, 2),
            jobs_on_day=jobs_on_day,
            score=round(score, 2),
            is_overloaded=is_overloaded,
            is_underloaded=is_underloaded,
        )

    def check_capacity(
        self,
        engineer_id: int,
        target_date: date,
        *,
        cohort: Optional[CohortWeekStats] = None,
    ) -> CapacityCheck:
        stats = self._cohort_for(target_date, cohort)
        week = stats.for_engineer(engineer_id)
        jobs_on_day = week.jobs_by_day.get(target_date, 0)

        if jobs_on_day >= self._settings.max_jobs_per_day:
            return CapacityCheck(
                available=False,
                reason=f"Daily limit reached ({jobs_on_day}/{self._settings.max_jobs_per_day})",
                weekly_jobs=week.jobs,
                weekly_limit=None,
                jobs_on_day=jobs_on_day,
            )

        average = stats.average_jobs
        weekly_limit = (
            math.ceil(average * self._settings.workload_overload_ratio) if average > 0 else None
        )
        if weekly_limit is not None and week.jobs >= weekly_limit:
            return CapacityCheck(
                available=False,
                reason=f"Weekly limit reached ({week.jobs}/{weekly_limit})",
                weekly_jobs=week.jobs,
                weekly_limit=weekly_limit,
                jobs_on_day=jobs_on_day,
            )

        return CapacityCheck(
            available=True,
            reason=None,
            weekly_jobs=week.jobs,
            weekly_limit=weekly_limit,
            jobs_on_day=jobs_on_day,
        )

    def get_engineers_by_capacity(
        self,
        engineer_ids: Iterable[int],
        target_date: date,
    ) -> list[WorkloadBalance]:
        """Engineers with room left on the day, best workload score first."""
        cohort = self.load_cohort_stats(week_start_for(target_date))
        balances = [
            self.calculate_workload_balance(engineer_id, target_date, cohort=cohort)
            for engineer_id in engineer_ids
        ]
        open_balances = [
            item for item in balances if item.jobs_on_day < self._settings.max_jobs_per_day
        ]
        return sorted(open_balances, key=lambda item: (-item.score, item.engineer_id))
