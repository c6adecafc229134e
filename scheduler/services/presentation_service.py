"""Customer-facing ranking, badges, savings and flexibility prompt."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Sequence

from scheduler.domain.constraints import CUSTOMER_FOCUSED_WEIGHTS, ScoringWeights
from scheduler.domain.models import (
    Badge,
    BadgeType,
    BookingRequest,
    Flexibility,
    FlexibilityPrompt,
    Party,
    PresentedSlot,
    SavingsBreakdown,
    SlotPresentation,
)
from scheduler.repository.data_repository import DataRepository
from scheduler.services.candidate_service import CandidateService
from scheduler.services.pricing_service import RULE_CLUSTER, RULE_FLEXIBLE_DATE
from scheduler.services.scoring_service import (
    MultiPartyScorer,
    SlotEvaluation,
    get_top_factors,
)
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


STATUS_OK = "ok"
STATUS_NO_VIABLE_SLOTS = "no_viable_slots"
DEFAULT_EXPLANATION = "Good match for your requirements"
TOP_RATED_MIN_YEARS = 5
CLUSTER_BADGE_MIN_PERCENT = 5.0
ECO_MIN_TRAVEL_SCORE = 90.0


class PresentationError(Exception):
    """Base exception for slot presentation failures."""


class CustomerNotFoundError(PresentationError):
    """Raised when the requesting customer does not exist."""


@dataclass(frozen=True)
class PresentationOptions:
    max_slots: int = 4
    candidate_pool: int = 20
    include_flexibility_prompt: bool = True


BadgePredicate = Callable[[int, SlotEvaluation, Sequence[SlotEvaluation]], bool]


@dataclass(frozen=True)
class BadgeRule:
    """One badge: an independent predicate plus exclusion and selection rules.

    Slots holding any badge in ``excluded_by`` are dropped first; with
    ``first_only`` the badge then goes to the first remaining match.
    """

    badge_type: BadgeType
    color: str
    predicate: BadgePredicate
    label: Callable[[SlotEvaluation], str]
    excluded_by: frozenset[BadgeType] = frozenset()
    first_only: bool = False


def _is_first_earliest(index: int, item: SlotEvaluation, ranked: Sequence[SlotEvaluation]) -> bool:
    earliest = min(range(len(ranked)), key=lambda i: (ranked[i].slot.date, ranked[i].slot.slot.sort_key, i))
    return index == earliest


def _is_most_experienced(index: int, item: SlotEvaluation, ranked: Sequence[SlotEvaluation]) -> bool:
    most = max(entry.engineer.years_experience for entry in ranked)
    return most >= TOP_RATED_MIN_YEARS and item.engineer.years_experience == most


def _travel_score(item: SlotEvaluation) -> float:
    factor = item.score.factor("travel_efficiency")
    return factor.normalized_score if factor is not None else 0.0


BADGE_RULES: tuple[BadgeRule, ...] = (
    BadgeRule(
        badge_type=BadgeType.BEST_VALUE,
        color="green",
        predicate=lambda index, item, ranked: index == 0,
        label=lambda item: "Best Value",
    ),
    BadgeRule(
        badge_type=BadgeType.FASTEST,
        color="blue",
        predicate=_is_first_earliest,
        label=lambda item: "Earliest Available",
        excluded_by=frozenset({BadgeType.BEST_VALUE}),
    ),
    BadgeRule(
        badge_type=BadgeType.TOP_RATED,
        color="gold",
        predicate=_is_most_experienced,
        label=lambda item: "Top Rated",
        first_only=True,
    ),
    BadgeRule(
        badge_type=BadgeType.CLUSTER_DISCOUNT,
        color="purple",
        predicate=lambda index, item, ranked: (
            item.quote.effective_discount_percent >= CLUSTER_BADGE_MIN_PERCENT
        ),
        label=lambda item: f"{round(item.quote.effective_discount_percent)}% Off",
    ),
    BadgeRule(
        badge_type=BadgeType.ECO_FRIENDLY,
        color="teal",
        predicate=lambda index, item, ranked: _travel_score(item) >= ECO_MIN_TRAVEL_SCORE,
        label=lambda item: "Low Carbon",
        excluded_by=frozenset({BadgeType.BEST_VALUE}),
        first_only=True,
    ),
)


def assign_badges(ranked: Sequence[SlotEvaluation]) -> list[tuple[Badge, ...]]:
    """Evaluate every rule's predicate on the ranked list, then apply exclusions."""
    matches = {
        rule.badge_type: [
            index for index, item in enumerate(ranked) if rule.predicate(index, item, ranked)
        ]
        for rule in BADGE_RULES
    }
    awarded: list[list[Badge]] = [[] for _ in ranked]
    for rule in BADGE_RULES:
        eligible = [
            index
            for index in matches[rule.badge_type]
            if not any(index in matches[excluded] for excluded in rule.excluded_by)
        ]
        if rule.first_only:
            eligible = eligible[:1]
        for index in eligible:
            awarded[index].append(
                Badge(badge_type=rule.badge_type, label=rule.label(ranked[index]), color=rule.color)
            )
    return [tuple(badges) for badges in awarded]


def rank_evaluations(evaluations: Sequence[SlotEvaluation]) -> list[SlotEvaluation]:
    return sorted(
        evaluations,
        key=lambda item: (
            -item.score.composite_score,
            item.slot.date,
            item.slot.slot.sort_key,
            item.slot.engineer_id,
        ),
    )


def build_savings(evaluation: SlotEvaluation) -> SavingsBreakdown:
    quote = evaluation.quote
    cluster = round(quote.discount_for(RULE_CLUSTER), 2)
    flexibility = round(quote.discount_for(RULE_FLEXIBLE_DATE), 2)
    total = round(quote.total_discount, 2)
    other = round(max(0.0, total - cluster - flexibility), 2)
    message = f"Save £{total:.2f} on your booking" if total > 0 else "Best available pricing"
    return SavingsBreakdown(total=total, cluster=cluster, flexibility=flexibility, other=other, message=message)


def build_flexibility_prompt(
    request: BookingRequest,
    ranked: Sequence[SlotEvaluation],
    threshold: float,
) -> FlexibilityPrompt:
    if request.flexibility is Flexibility.FLEXIBLE_WEEK or not ranked:
        return FlexibilityPrompt(show=False)

    preferred = [item for item in ranked if item.slot.date == request.preferred_date]
    if request.preferred_date is not None and preferred:
        anchor = min(preferred, key=lambda item: item.quote.final_price)
    else:
        anchor = ranked[0]
    alternatives = [item for item in ranked if item.slot.date != anchor.slot.date]
    if not alternatives or anchor.quote.final_price <= 0:
        return FlexibilityPrompt(show=False)

    cheapest = min(alternatives, key=lambda item: item.quote.final_price)
    savings = round(anchor.quote.final_price - cheapest.quote.final_price, 2)
    if savings / anchor.quote.final_price < threshold:
        return FlexibilityPrompt(show=False)
    return FlexibilityPrompt(
        show=True,
        savings_amount=savings,
        message=f"Be flexible with your date and save £{savings:.2f}",
        alternative_slot_id=cheapest.slot.slot_id,
    )


def _explanation(evaluation: SlotEvaluation) -> str:
    strengths = get_top_factors(evaluation.score, parties=(Party.CUSTOMER, Party.ENGINEER)).strengths
    if not strengths:
        return DEFAULT_EXPLANATION
    return ". ".join(factor.explanation for factor in strengths)


def _present(evaluation: SlotEvaluation, rank: int, badges: tuple[Badge, ...]) -> PresentedSlot:
    quote = evaluation.quote
    return PresentedSlot(
        slot=evaluation.slot,
        rank=rank,
        price=quote.final_price,
        original_price=quote.base_price,
        discount_amount=round(max(0.0, quote.base_price - quote.final_price), 2),
        badges=badges,
        explanation=_explanation(evaluation),
        composite_score=evaluation.score.composite_score,
        risk_tier=evaluation.risk.tier,
    )


class SlotPresentationService:
    """Turns a booking request into a ranked, badged set of options."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        *,
        candidate_service: Optional[CandidateService] = None,
        scorer: Optional[MultiPartyScorer] = None,
        weights: ScoringWeights = CUSTOMER_FOCUSED_WEIGHTS,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._scorer = scorer or MultiPartyScorer(self._repository, self._settings)
        self._candidates = candidate_service or CandidateService(
            self._repository, self._settings, scorer=self._scorer
        )
        self._weights = weights

    def default_options(self) -> PresentationOptions:
        return PresentationOptions(
            max_slots=self._settings.presentation_max_slots,
            candidate_pool=self._settings.presentation_candidate_pool,
        )

    def present_slots_to_customer(
        self,
        request: BookingRequest,
        options: Optional[PresentationOptions] = None,
        *,
        today: Optional[date] = None,
    ) -> SlotPresentation:
        opts = options or self.default_options()
        if self._repository.get_customer(request.customer_id) is None:
            raise CustomerNotFoundError(f"customer_id {request.customer_id} not found")

        slots = self._candidates.get_viable_slots(request, max_slots=opts.candidate_pool, today=today)
        evaluations, skipped = self._scorer.evaluate_candidates(
            request, slots, weights=self._weights, today=today
        )
        if not evaluations:
            logger.info("Presentation empty | customer_id=%s | candidates=%s", request.customer_id, len(slots))
            return SlotPresentation(
                status=STATUS_NO_VIABLE_SLOTS,
                recommended=None,
                alternatives=(),
                savings=SavingsBreakdown(0.0, 0.0, 0.0, 0.0, "Best available pricing"),
                flexibility_prompt=FlexibilityPrompt(show=False),
                evaluated_candidates=len(slots),
                skipped_candidates=tuple(skipped),
            )

        ranked = rank_evaluations(evaluations)
        shown = ranked[: max(1, opts.max_slots)]
        presented = [
            _present(item, rank, badges)
            for rank, (item, badges) in enumerate(zip(shown, assign_badges(shown)), start=1)
        ]
        prompt = (
            build_flexibility_prompt(request, ranked, self._settings.flexibility_prompt_threshold)
            if opts.include_flexibility_prompt
            else FlexibilityPrompt(show=False)
        )
        presentation = SlotPresentation(
            status=STATUS_OK,
            recommended=presented[0],
            alternatives=tuple(presented[1:]),
            savings=build_savings(shown[0]),
            flexibility_prompt=prompt,
            evaluated_candidates=len(slots),
            skipped_candidates=tuple(skipped),
        )
        logger.info(
            "Presentation completed | customer_id=%s | candidates=%s | shown=%s | top_score=%.2f | flex_prompt=%s",
            request.customer_id,
            len(slots),
            len(presented),
            presented[0].composite_score,
            prompt.show,
        )
        return presentation
