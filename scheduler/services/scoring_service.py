"""Multi-party scoring of candidate slots for customer, engineer and platform."""

from __future__ import annotations

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Iterable, Mapping, Optional, Sequence

from scheduler.domain.constraints import (
    DEFAULT_SCORING_WEIGHTS,
    PricingRules,
    ScoringWeights,
    scoring_weights_from_dict,
)
from scheduler.domain.models import (
    FULL_DAY,
    BookedJob,
    BookingRequest,
    CancellationRisk,
    CustomerHistory,
    CustomerLTV,
    EngineerWithProfile,
    Flexibility,
    NetworkEffect,
    Party,
    PriceQuote,
    RouteContinuity,
    ScheduleSlot,
    ScoreFactor,
    Service,
    Site,
    SlotScore,
    TravelEfficiency,
    WorkloadBalance,
)
from scheduler.repository.data_repository import DataRepository
from scheduler.services.cancellation_service import CancellationHistory, CancellationRiskService
from scheduler.services.customer_service import CustomerMetricsService, calculate_customer_ltv
from scheduler.services.pricing_service import (
    PricingContext,
    PricingEngine,
    engineer_cost,
    load_active_pricing_rules,
)
from scheduler.services.route_service import RouteOptimizationService
from scheduler.services.workload_service import (
    CohortWeekStats,
    WorkloadBalanceService,
    week_start_for,
)
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


PLATFORM_OVERHEAD_SHARE = 0.10


class ScoringError(Exception):
    """Base exception for scoring failures."""


class ScoringDataMissingError(ScoringError):
    """Raised when the site or service behind a request does not exist."""


class CandidateDataMissingError(ScoringError):
    """Raised when one candidate cannot be evaluated; the candidate is skipped."""


@dataclass(frozen=True)
class ScoringContext:
    """Request-scoped inputs loaded once and shared read-only by every candidate."""

    request: BookingRequest
    site: Site
    service: Service
    today: date
    engineers: Mapping[int, EngineerWithProfile]
    completed_jobs: Mapping[int, int]
    customer_history: CustomerHistory
    customer_ltv: CustomerLTV
    network: NetworkEffect
    cancellation_history: CancellationHistory
    pricing_rules: PricingRules
    cohorts: Mapping[date, CohortWeekStats]
    day_jobs: Mapping[tuple[int, date], tuple[BookedJob, ...]]

    def jobs_for(self, engineer_id: int, on_date: date) -> tuple[BookedJob, ...]:
        return self.day_jobs.get((engineer_id, on_date), ())


@dataclass(frozen=True)
class SlotEvaluation:
    slot: ScheduleSlot
    engineer: EngineerWithProfile
    score: SlotScore
    quote: PriceQuote
    risk: CancellationRisk
    travel: TravelEfficiency


@dataclass(frozen=True)
class TopFactors:
    strengths: tuple[ScoreFactor, ...]
    weaknesses: tuple[ScoreFactor, ...]


def load_active_scoring_weights(repository: DataRepository) -> ScoringWeights:
    payload = repository.get_active_scoring_weights()
    if payload is None:
        return DEFAULT_SCORING_WEIGHTS
    return scoring_weights_from_dict(payload)


# ----------------------------------------------------------------------
# Customer factors
# ----------------------------------------------------------------------


def _date_closeness(days_away: int, flexibility: Flexibility) -> float:
    if days_away == 0:
        return 100.0
    if flexibility is Flexibility.FLEXIBLE_WEEK:
        if days_away <= 7:
            return 100.0 - 4 * days_away
        return max(20.0, 72.0 - 6 * (days_away - 7))
    return max(10.0, 70.0 - 10 * days_away)


def _slot_preference_factor(request: BookingRequest, slot: ScheduleSlot) -> float:
    preferred = set(request.preferred_slots)
    if not preferred or FULL_DAY in preferred or slot.slot.value in preferred:
        return 1.0
    if request.flexibility.is_flexible:
        return 0.7
    return 0.4


def time_match_score(request: BookingRequest, slot: ScheduleSlot) -> tuple[int, float]:
    """Return (days from preferred date, score)."""
    if request.preferred_date is None and not request.preferred_slots:
        return 0, 100.0
    days_away = abs((slot.date - request.preferred_date).days) if request.preferred_date else 0
    date_score = _date_closeness(days_away, request.flexibility) if request.preferred_date else 100.0
    return days_away, date_score * _slot_preference_factor(request, slot)


def wait_time_score(days_until: int) -> float:
    if days_until <= 0:
        return 85.0
    if days_until <= 2:
        return 100.0
    if days_until <= 5:
        return 95.0 - (days_until - 2) * 2
    if days_until <= 10:
        return 85.0 - (days_until - 5) * 3
    if days_until <= 14:
        return 65.0 - (days_until - 10) * 4
    return max(20.0, 50.0 - (days_until - 14) * 2)


def engineer_quality_score(engineer: EngineerWithProfile, completed_jobs: int) -> float:
    rating = engineer.rating / 5 * 100
    experience = min(100.0, engineer.years_experience * 15)
    volume = min(100.0, completed_jobs * 0.5)
    return rating * 0.5 + experience * 0.3 + volume * 0.2


def price_fit_score(price: float, budget: Optional[float]) -> float:
    if not budget or budget <= 0:
        return 80.0
    ratio = price / budget
    if ratio <= 0.9:
        return 100.0
    if ratio <= 1.0:
        return 95.0
    if ratio <= 1.1:
        return 80.0
    if ratio <= 1.25:
        return 60.0
    return 40.0


# ----------------------------------------------------------------------
# Engineer factors
# ----------------------------------------------------------------------


def earnings_per_hour(engineer: EngineerWithProfile, price: float, duration: int, travel_minutes: int) -> float:
    pay = engineer_cost(engineer, price, duration)
    minutes = duration + travel_minutes
    return pay / minutes * 60 if minutes > 0 else 0.0


def earnings_score(rate: float) -> float:
    if rate >= 50:
        return 100.0
    if rate >= 40:
        return 80.0 + (rate - 40) * 2
    if rate >= 30:
        return 60.0 + (rate - 30) * 2
    if rate >= 20:
        return 40.0 + (rate - 20) * 2
    return max(10.0, rate * 2)


# ----------------------------------------------------------------------
# Platform factors
# ----------------------------------------------------------------------


def margin_percent(price: float, cost: float) -> float:
    if price <= 0:
        return 0.0
    return (price - cost - price * PLATFORM_OVERHEAD_SHARE) / price * 100


def margin_score(margin: float) -> float:
    if margin >= 30:
        return 100.0
    if margin >= 20:
        return 70.0 + (margin - 20) / 10 * 30
    if margin >= 10:
        return 40.0 + (margin - 10) / 10 * 30
    return max(0.0, margin * 4)


def utilization_score(jobs_on_day: int, max_jobs_per_day: int, is_cluster: bool) -> float:
    if jobs_on_day == 0:
        score = 100.0
    else:
        ratio = jobs_on_day / max_jobs_per_day
        if ratio < 0.5:
            score = 85.0
        elif ratio < 0.75:
            score = 70.0
        elif ratio < 1.0:
            score = 55.0
        else:
            score = 40.0
    if is_cluster:
        score += 10
    return min(100.0, score)


def get_top_factors(
    score: SlotScore,
    *,
    parties: Optional[Iterable[Party]] = None,
    limit: int = 3,
) -> TopFactors:
    """Strongest factors (>= 70) and weakest factors (< 50)."""
    allowed = set(parties) if parties is not None else set(Party)
    factors = [factor for factor in score.factors if factor.party in allowed]
    strengths = sorted(
        (factor for factor in factors if factor.normalized_score >= 70),
        key=lambda factor: -factor.normalized_score,
    )[:limit]
    weaknesses = sorted(
        (factor for factor in factors if factor.normalized_score < 50),
        key=lambda factor: factor.normalized_score,
    )[:limit]
    return TopFactors(strengths=tuple(strengths), weaknesses=tuple(weaknesses))


def get_score_summary(score: SlotScore) -> str:
    if score.composite_score >= 80:
        return "Excellent"
    if score.composite_score >= 65:
        return "Good"
    if score.composite_score >= 50:
        return "Acceptable"
    return "Poor"


def compose_slot_score(
    slot_id: str,
    raw_factors: Sequence[tuple[str, str, Party, float, str, float, str]],
    weights: ScoringWeights,
) -> SlotScore:
    """Weighted party scores and composite from (id, name, party, raw, unit, score, explanation) rows."""
    party_scores: dict[Party, float] = defaultdict(float)
    factors: list[ScoreFactor] = []
    for factor_id, name, party, raw_value, raw_unit, normalized, explanation in raw_factors:
        normalized = max(0.0, min(100.0, normalized))
        weight = weights.factor_weights(party)[factor_id]
        party_scores[party] += weight * normalized
        factors.append(
            ScoreFactor(
                factor_id=factor_id,
                name=name,
                party=party,
                raw_value=round(raw_value, 3),
                raw_unit=raw_unit,
                normalized_score=round(normalized, 2),
                weight=weight,
                contribution=round(weights.party_weight(party) * weight * normalized, 2),
                explanation=explanation,
            )
        )
    composite = sum(weights.party_weight(party) * party_scores[party] for party in Party)
    return SlotScore(
        slot_id=slot_id,
        customer_score=round(party_scores[Party.CUSTOMER], 2),
        engineer_score=round(party_scores[Party.ENGINEER], 2),
        platform_score=round(party_scores[Party.PLATFORM], 2),
        composite_score=round(max(0.0, min(100.0, composite)), 2),
        factors=tuple(factors),
        party_weights=weights.party_weights(),
    )


class MultiPartyScorer:
    """Scores candidates against customer, engineer and platform interests."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        *,
        workload_service: Optional[WorkloadBalanceService] = None,
        cancellation_service: Optional[CancellationRiskService] = None,
        route_service: Optional[RouteOptimizationService] = None,
        customer_service: Optional[CustomerMetricsService] = None,
        weights: Optional[ScoringWeights] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._workload = workload_service or WorkloadBalanceService(self._repository, self._settings)
        self._cancellation = cancellation_service or CancellationRiskService(self._repository, self._settings)
        self._route = route_service or RouteOptimizationService(self._repository, self._settings)
        self._customers = customer_service or CustomerMetricsService(self._repository, self._settings)
        self._weights = weights or DEFAULT_SCORING_WEIGHTS

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    def use_weights(self, weights: ScoringWeights) -> None:
        """Swap in a validated weight set, e.g. the active stored configuration."""
        self._weights = weights

    def build_context(
        self,
        request: BookingRequest,
        slots: Sequence[ScheduleSlot],
        *,
        today: Optional[date] = None,
    ) -> ScoringContext:
        as_of = today or datetime.now(timezone.utc).date()
        site = self._repository.get_site(request.site_id)
        if site is None:
            raise ScoringDataMissingError(f"site_id {request.site_id} not found")
        service = self._repository.get_service(request.service_id)
        if service is None:
            raise ScoringDataMissingError(f"service_id {request.service_id} not found")

        engineer_ids = {slot.engineer_id for slot in slots}
        engineers = self._repository.get_engineers(engineer_ids)
        history = self._repository.get_customer_history(request.customer_id)

        day_jobs: dict[tuple[int, date], list[BookedJob]] = defaultdict(list)
        if slots:
            first = min(slot.date for slot in slots)
            last = max(slot.date for slot in slots)
            for job in self._repository.list_jobs_between(first, last):
                if job.engineer_id in engineer_ids:
                    day_jobs[(job.engineer_id, job.date)].append(job)

        week_starts = {week_start_for(slot.date) for slot in slots}
        return ScoringContext(
            request=request,
            site=site,
            service=service,
            today=as_of,
            engineers=engineers,
            completed_jobs={
                engineer_id: self._repository.count_engineer_completed_jobs(engineer_id)
                for engineer_id in engineers
            },
            customer_history=history,
            customer_ltv=calculate_customer_ltv(history, as_of),
            network=self._customers.get_network_effect(site.postcode),
            cancellation_history=self._cancellation.load_history(request, today=as_of),
            pricing_rules=load_active_pricing_rules(self._repository, self._settings),
            cohorts={week: self._workload.load_cohort_stats(week) for week in week_starts},
            day_jobs={key: tuple(value) for key, value in day_jobs.items()},
        )

    def evaluate_slot(
        self,
        slot: ScheduleSlot,
        context: ScoringContext,
        weights: Optional[ScoringWeights] = None,
    ) -> SlotEvaluation:
        engineer = context.engineers.get(slot.engineer_id)
        if engineer is None:
            raise CandidateDataMissingError(f"engineer_id {slot.engineer_id} not found")

        request = context.request
        jobs = context.jobs_for(slot.engineer_id, slot.date)
        quote = PricingEngine(context.pricing_rules).calculate_price(
            PricingContext(
                base_price=slot.estimated_price,
                slot_date=slot.date,
                engineer=engineer,
                estimated_duration=slot.estimated_duration,
                flexibility=request.flexibility,
                nearby_job_count=slot.nearby_job_count,
                customer_completed_bookings=context.customer_history.completed_bookings,
                today=context.today,
                slot_id=slot.slot_id,
            )
        )
        travel = self._route.calculate_travel_efficiency(
            engineer, slot.date, context.site.coordinates, existing_jobs=jobs
        )
        continuity = self._route.calculate_route_continuity(
            engineer, slot.date, slot.slot, context.site.coordinates, existing_jobs=jobs
        )
        workload = self._workload.calculate_workload_balance(
            engineer.engineer_id,
            slot.date,
            cohort=context.cohorts.get(week_start_for(slot.date)),
        )
        risk = self._cancellation.predict_cancellation_risk(
            request,
            slot,
            history=context.cancellation_history,
            today=context.today,
        )

        raw_factors = (
            self._customer_factors(slot, engineer, quote, context)
            + self._engineer_factors(slot, engineer, quote, travel, continuity, workload)
            + self._platform_factors(slot, engineer, quote, risk, context, len(jobs))
        )
        score = compose_slot_score(slot.slot_id, raw_factors, weights or self._weights)
        return SlotEvaluation(
            slot=slot,
            engineer=engineer,
            score=score,
            quote=quote,
            risk=risk,
            travel=travel,
        )

    @staticmethod
    def _customer_factors(
        slot: ScheduleSlot,
        engineer: EngineerWithProfile,
        quote: PriceQuote,
        context: ScoringContext,
    ) -> list[tuple[str, str, Party, float, str, float, str]]:
        request = context.request
        days_away, time_score = time_match_score(request, slot)
        if request.preferred_date is None:
            time_text = "Fits your schedule"
        elif days_away == 0:
            time_text = "On your preferred date"
        else:
            time_text = f"{days_away} days from your preferred date"

        days_until = (slot.date - context.today).days
        wait_text = "Available tomorrow" if days_until == 1 else f"Available in {days_until} days"

        completed = context.completed_jobs.get(engineer.engineer_id, 0)
        quality_text = f"Engineer rated {engineer.rating:.1f}/5 with {engineer.years_experience:g} years' experience"

        budget = request.budget
        if not budget:
            price_text = "Standard pricing"
        elif quote.final_price <= budget:
            price_text = "Within your budget"
        else:
            price_text = "Above your budget"

        return [
            ("time_match", "Time match", Party.CUSTOMER, days_away, "days", time_score, time_text),
            ("wait_time", "Wait time", Party.CUSTOMER, days_until, "days", wait_time_score(days_until), wait_text),
            (
                "engineer_quality",
                "Engineer quality",
                Party.CUSTOMER,
                engineer.rating,
                "rating",
                engineer_quality_score(engineer, completed),
                quality_text,
            ),
            (
                "price_fit",
                "Price fit",
                Party.CUSTOMER,
                quote.final_price,
                "GBP",
                price_fit_score(quote.final_price, budget),
                price_text,
            ),
        ]

    def _engineer_factors(
        self,
        slot: ScheduleSlot,
        engineer: EngineerWithProfile,
        quote: PriceQuote,
        travel: TravelEfficiency,
        continuity: RouteContinuity,
        workload: WorkloadBalance,
    ) -> list[tuple[str, str, Party, float, str, float, str]]:
        if travel.route_context in ("clustered", "nearby"):
            travel_text = "Engineer is already working nearby"
        elif travel.route_context == "first job":
            travel_text = f"{travel.distance_km:.1f} km from the engineer's base"
        else:
            travel_text = f"{travel.distance_km:.1f} km extra travel for the engineer"

        rate = earnings_per_hour(engineer, quote.final_price, slot.estimated_duration, travel.travel_minutes)
        return [
            (
                "travel_efficiency",
                "Travel efficiency",
                Party.ENGINEER,
                travel.distance_km,
                "km",
                travel.efficiency_score,
                travel_text,
            ),
            (
                "earnings_per_hour",
                "Earnings per hour",
                Party.ENGINEER,
                rate,
                "GBP/h",
                earnings_score(rate),
                f"Engineer earns £{rate:.2f} per hour",
            ),
            (
                "route_continuity",
                "Route continuity",
                Party.ENGINEER,
                continuity.insertion_cost_km,
                "km",
                continuity.score,
                "Fits the engineer's existing route" if continuity.score >= 70 else "Breaks up the engineer's route",
            ),
            (
                "workload_balance",
                "Workload balance",
                Party.ENGINEER,
                workload.compared_to_average,
                "ratio",
                workload.score,
                f"Engineer at {workload.compared_to_average:.0%} of average weekly load",
            ),
        ]

    def _platform_factors(
        self,
        slot: ScheduleSlot,
        engineer: EngineerWithProfile,
        quote: PriceQuote,
        risk: CancellationRisk,
        context: ScoringContext,
        jobs_on_day: int,
    ) -> list[tuple[str, str, Party, float, str, float, str]]:
        cost = engineer_cost(engineer, quote.final_price, slot.estimated_duration)
        margin = margin_percent(quote.final_price, cost)
        ltv = context.customer_ltv
        network = context.network
        network_text = (
            f"New area {network.postcode_district} for the platform"
            if network.is_new_area
            else f"{network.penetration_rate:.0%} penetration in {network.postcode_district}"
        )
        return [
            ("margin", "Margin", Party.PLATFORM, margin, "percent", margin_score(margin), f"{margin:.1f}% margin after overhead"),
            (
                "utilization_value",
                "Utilization value",
                Party.PLATFORM,
                jobs_on_day,
                "jobs",
                utilization_score(jobs_on_day, self._settings.max_jobs_per_day, slot.is_cluster_opportunity),
                f"{jobs_on_day} jobs already booked that day",
            ),
            (
                "customer_ltv",
                "Customer lifetime value",
                Party.PLATFORM,
                ltv.total_revenue,
                "GBP",
                ltv.ltv_score,
                f"{ltv.completed_bookings} completed bookings",
            ),
            ("network_effect", "Network effect", Party.PLATFORM, network.penetration_rate, "ratio", network.score, network_text),
            (
                "cancellation_risk",
                "Cancellation risk",
                Party.PLATFORM,
                risk.probability,
                "probability",
                float(risk.score),
                f"{risk.tier.value.capitalize()} cancellation risk",
            ),
        ]

    def score_slot_allocation(
        self,
        slot: ScheduleSlot,
        request: BookingRequest,
        engineer: Optional[EngineerWithProfile] = None,
        weights: Optional[ScoringWeights] = None,
        *,
        today: Optional[date] = None,
        context: Optional[ScoringContext] = None,
    ) -> SlotScore:
        active = context or self.build_context(request, [slot], today=today)
        if engineer is not None:
            active = replace(active, engineers={**active.engineers, engineer.engineer_id: engineer})
        return self.evaluate_slot(slot, active, weights).score

    def evaluate_candidates(
        self,
        request: BookingRequest,
        slots: Sequence[ScheduleSlot],
        *,
        weights: Optional[ScoringWeights] = None,
        today: Optional[date] = None,
        context: Optional[ScoringContext] = None,
    ) -> tuple[list[SlotEvaluation], list[str]]:
        """Evaluate candidates concurrently; returns (evaluations in input order, skipped slot ids)."""
        if not slots:
            return [], []
        active = context or self.build_context(request, slots, today=today)
        workers = min(len(slots), self._settings.scoring_max_workers)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self.evaluate_slot, slot, active, weights) for slot in slots]

        evaluations: list[SlotEvaluation] = []
        skipped: list[str] = []
        for slot, future in zip(slots, futures):
            try:
                evaluations.append(future.result())
            except CandidateDataMissingError as exc:
                logger.warning("Candidate skipped | slot_id=%s | reason=%s", slot.slot_id, exc)
                skipped.append(slot.slot_id)
        logger.info(
            "Candidate scoring completed | candidates=%s | scored=%s | skipped=%s | workers=%s",
            len(slots),
            len(evaluations),
            len(skipped),
            workers,
        )
        return evaluations, skipped
