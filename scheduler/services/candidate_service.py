"""Viable (engineer, date, half-day) candidates for a booking request."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from scheduler.domain.catalog import estimate_service, has_valid_qualification
from scheduler.domain.geo import haversine_km, postcode_matches_prefix
from scheduler.domain.models import (
    FULL_DAY,
    BookedJob,
    BookingRequest,
    Coordinates,
    EngineerWithProfile,
    ScheduleSlot,
    SlotPeriod,
    SlotScore,
)
from scheduler.repository.data_repository import DataRepository
from scheduler.services.pricing_service import load_active_pricing_rules
from scheduler.services.scoring_service import MultiPartyScorer
from scheduler.services.workload_service import (
    CohortWeekStats,
    WorkloadBalanceService,
    week_start_for,
)
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class BestEngineerMatch:
    engineer: EngineerWithProfile
    slot: ScheduleSlot
    score: SlotScore


def make_slot_id(engineer_id: int, on_date: date, period: SlotPeriod) -> str:
    return f"{engineer_id}-{on_date.isoformat()}-{period.value}"


def covers_postcode(engineer: EngineerWithProfile, postcode: str) -> bool:
    return any(
        postcode_matches_prefix(postcode, area.postcode_prefix) for area in engineer.coverage_areas
    )


def _count_nearby(
    jobs: list[BookedJob],
    site_coordinates: Optional[Coordinates],
    radius_km: float,
) -> int:
    if site_coordinates is None:
        return 0
    return sum(
        1
        for job in jobs
        if job.coordinates is not None and haversine_km(job.coordinates, site_coordinates) <= radius_km
    )


class CandidateService:
    """Filters engineers and enumerates nearest open half-day slots."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        *,
        workload_service: Optional[WorkloadBalanceService] = None,
        scorer: Optional[MultiPartyScorer] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._workload = workload_service or WorkloadBalanceService(self._repository, self._settings)
        self._scorer = scorer or MultiPartyScorer(
            self._repository, self._settings, workload_service=self._workload
        )

    def get_viable_slots(
        self,
        request: BookingRequest,
        *,
        max_slots: Optional[int] = None,
        today: Optional[date] = None,
    ) -> list[ScheduleSlot]:
        """Empty list when nothing fits; missing site or service is logged and yields no slots."""
        limit = max_slots if max_slots is not None else self._settings.candidate_max_slots
        if limit <= 0:
            return []

        site = self._repository.get_site(request.site_id)
        if site is None:
            logger.warning("Viable slots skipped | reason=site not found | site_id=%s", request.site_id)
            return []
        service = self._repository.get_service(request.service_id)
        if service is None:
            logger.warning(
                "Viable slots skipped | reason=service not found | service_id=%s", request.service_id
            )
            return []

        estimate = estimate_service(service, request.estimated_qty)
        engineers = [
            engineer
            for engineer in self._repository.list_engineers_for_service(service.service_id)
            if covers_postcode(engineer, site.postcode)
        ]
        if not engineers:
            logger.info(
                "No eligible engineers | service_id=%s | postcode=%s", service.service_id, site.postcode
            )
            return []

        as_of = today or datetime.now(timezone.utc).date()
        start = as_of + timedelta(days=self._settings.candidate_start_offset_days)
        end = start + timedelta(days=self._settings.candidate_horizon_days - 1)
        engineer_ids = [engineer.engineer_id for engineer in engineers]
        blocked = self._repository.get_unavailability(engineer_ids, start, end)

        cluster_radius_km = load_active_pricing_rules(self._repository, self._settings).cluster.radius_km
        booked: set[tuple[int, date, SlotPeriod]] = set()
        day_jobs: dict[tuple[int, date], list[BookedJob]] = defaultdict(list)
        for job in self._repository.list_jobs_between(start, end):
            if job.engineer_id is None:
                continue
            booked.add((job.engineer_id, job.date, job.slot))
            day_jobs[(job.engineer_id, job.date)].append(job)

        cohorts: dict[date, CohortWeekStats] = {}
        capacity: dict[tuple[int, date], bool] = {}
        slots: list[ScheduleSlot] = []
        current = start
        while current <= end and len(slots) < limit:
            week = week_start_for(current)
            if week not in cohorts:
                cohorts[week] = self._workload.load_cohort_stats(week)
            for period in SlotPeriod:
                for engineer in engineers:
                    if len(slots) >= limit:
                        break
                    key = (engineer.engineer_id, current)
                    if not has_valid_qualification(service.service_type, engineer.qualifications, current):
                        continue
                    blocked_slots = blocked.get(key, set())
                    if FULL_DAY in blocked_slots or period.value in blocked_slots:
                        continue
                    if (engineer.engineer_id, current, period) in booked:
                        continue
                    if key not in capacity:
                        capacity[key] = self._workload.check_capacity(
                            engineer.engineer_id, current, cohort=cohorts[week]
                        ).available
                    if not capacity[key]:
                        continue

                    nearby = _count_nearby(day_jobs.get(key, []), site.coordinates, cluster_radius_km)
                    window_start, window_end = period.window
                    slots.append(
                        ScheduleSlot(
                            slot_id=make_slot_id(engineer.engineer_id, current, period),
                            engineer_id=engineer.engineer_id,
                            date=current,
                            slot=period,
                            start_time=window_start,
                            end_time=window_end,
                            estimated_price=estimate.price,
                            estimated_duration=estimate.duration_minutes,
                            is_cluster_opportunity=nearby > 0,
                            nearby_job_count=nearby,
                        )
                    )
            current += timedelta(days=1)

        if not slots:
            logger.info(
                "No viable slots | customer_id=%s | service_id=%s | engineers=%s",
                request.customer_id,
                request.service_id,
                len(engineers),
            )
        else:
            logger.info(
                "Viable slots generated | customer_id=%s | service_id=%s | slots=%s | engineers=%s",
                request.customer_id,
                request.service_id,
                len(slots),
                len(engineers),
            )
        return slots

    def find_best_engineer(
        self,
        request: BookingRequest,
        *,
        today: Optional[date] = None,
    ) -> Optional[BestEngineerMatch]:
        """Highest composite-scoring candidate under the platform weights, or None."""
        slots = self.get_viable_slots(request, today=today)
        if not slots:
            return None
        evaluations, _ = self._scorer.evaluate_candidates(request, slots, today=today)
        if not evaluations:
            return None
        best = max(
            enumerate(evaluations),
            key=lambda item: (item[1].score.composite_score, -item[0]),
        )[1]
        return BestEngineerMatch(engineer=best.engineer, slot=best.slot, score=best.score)
