from __future__ import annotations

from datetime import date, timedelta

import pytest

pytest.importorskip("ortools")

from scheduler.domain.constraints import (
    CUSTOMER_FOCUSED_WEIGHTS,
    DEFAULT_CUSTOMER_FACTOR_WEIGHTS,
    DEFAULT_ENGINEER_FACTOR_WEIGHTS,
    DEFAULT_PLATFORM_FACTOR_WEIGHTS,
    DEFAULT_SCORING_WEIGHTS,
)
from scheduler.domain.models import BookingRequest, Flexibility, Party, ScheduleSlot, SlotPeriod
from scheduler.services.scoring_service import (
    MultiPartyScorer,
    ScoringDataMissingError,
    compose_slot_score,
    earnings_score,
    get_score_summary,
    get_top_factors,
    load_active_scoring_weights,
    margin_percent,
    margin_score,
    price_fit_score,
    time_match_score,
    utilization_score,
    wait_time_score,
)
from tests.conftest import TODAY


def _slot(engineer_id: int, on_date: date, period: SlotPeriod = SlotPeriod.AM, nearby: int = 0) -> ScheduleSlot:
    start, end = period.window
    return ScheduleSlot(
        slot_id=f"{engineer_id}-{on_date.isoformat()}-{period.value}",
        engineer_id=engineer_id,
        date=on_date,
        slot=period,
        start_time=start,
        end_time=end,
        estimated_price=80.0,
        estimated_duration=90,
        is_cluster_opportunity=nearby > 0,
        nearby_job_count=nearby,
    )


def _rows(score: float):
    rows = []
    for party, factor_weights in (
        (Party.CUSTOMER, DEFAULT_CUSTOMER_FACTOR_WEIGHTS),
        (Party.ENGINEER, DEFAULT_ENGINEER_FACTOR_WEIGHTS),
        (Party.PLATFORM, DEFAULT_PLATFORM_FACTOR_WEIGHTS),
    ):
        for factor_id in factor_weights:
            rows.append((factor_id, factor_id, party, 0.0, "", score, ""))
    return rows


@pytest.mark.parametrize(("days", "score"), [(0, 85.0), (1, 100.0), (4, 91.0), (8, 76.0), (12, 57.0), (20, 38.0)])
def test_wait_time_curve(days: int, score: float) -> None:
    assert wait_time_score(days) == score


@pytest.mark.parametrize(
    ("price", "budget", "score"),
    [(80.0, None, 80.0), (80.0, 100.0, 100.0), (95.0, 100.0, 95.0), (105.0, 100.0, 80.0), (120.0, 100.0, 60.0), (200.0, 100.0, 40.0)],
)
def test_price_fit_against_budget(price, budget, score) -> None:
    assert price_fit_score(price, budget) == score


def test_time_match_prefers_requested_date_and_slot() -> None:
    preferred = TODAY + timedelta(days=5)
    request = BookingRequest(1, 1, 1, 0, preferred_date=preferred, preferred_slots=("AM",))
    flexible = BookingRequest(
        1, 1, 1, 0, preferred_date=preferred, flexibility=Flexibility.FLEXIBLE_WEEK, preferred_slots=("AM",)
    )

    assert time_match_score(request, _slot(1, preferred)) == (0, 100.0)
    assert time_match_score(request, _slot(1, preferred, SlotPeriod.PM)) == (0, 40.0)
    assert time_match_score(request, _slot(1, preferred + timedelta(days=2))) == (2, 50.0)
    assert time_match_score(flexible, _slot(1, preferred + timedelta(days=2))) == (2, 92.0)
    assert time_match_score(BookingRequest(1, 1, 1, 0), _slot(1, preferred)) == (0, 100.0)


def test_engineer_and_platform_curves() -> None:
    assert earnings_score(55.0) == 100.0
    assert earnings_score(45.0) == 90.0
    assert earnings_score(4.0) == 10.0
    assert margin_percent(100.0, 50.0) == 40.0
    assert margin_score(25.0) == 85.0
    assert margin_score(-5.0) == 0.0
    assert utilization_score(0, 7, True) == 100.0
    assert utilization_score(3, 7, False) == 85.0
    assert utilization_score(7, 7, True) == 50.0


def test_compose_slot_score_weights_parties() -> None:
    perfect = compose_slot_score("slot", _rows(100.0), DEFAULT_SCORING_WEIGHTS)
    assert perfect.composite_score == 100.0
    assert perfect.customer_score == 100.0
    assert get_score_summary(perfect) == "Excellent"
    assert sum(factor.contribution for factor in perfect.factors) == pytest.approx(100.0)

    clamped = compose_slot_score("slot", _rows(150.0), DEFAULT_SCORING_WEIGHTS)
    assert clamped.composite_score == 100.0
    assert get_score_summary(compose_slot_score("slot", _rows(40.0), DEFAULT_SCORING_WEIGHTS)) == "Poor"


def test_top_factors_split_strengths_and_weaknesses() -> None:
    rows = _rows(60.0)
    rows[0] = ("time_match", "Time match", Party.CUSTOMER, 0.0, "days", 95.0, "")
    rows[1] = ("wait_time", "Wait time", Party.CUSTOMER, 0.0, "days", 20.0, "")
    rows[4] = ("travel_efficiency", "Travel", Party.ENGINEER, 0.0, "km", 90.0, "")
    score = compose_slot_score("slot", rows, DEFAULT_SCORING_WEIGHTS)

    top = get_top_factors(score)
    assert [factor.factor_id for factor in top.strengths] == ["time_match", "travel_efficiency"]
    assert [factor.factor_id for factor in top.weaknesses] == ["wait_time"]

    customer_only = get_top_factors(score, parties=[Party.CUSTOMER])
    assert [factor.factor_id for factor in customer_only.strengths] == ["time_match"]


# --- scorer backed by the repository ---

def _request(world, **overrides) -> BookingRequest:
    values = {
        "customer_id": world.customer_id,
        "site_id": world.site_id,
        "service_id": world.service_id,
        "estimated_qty": 50,
    }
    values.update(overrides)
    return BookingRequest(**values)


def test_score_slot_allocation_reports_every_factor(world) -> None:
    scorer = MultiPartyScorer(world.repository, world.settings)
    score = scorer.score_slot_allocation(
        _slot(world.senior_engineer_id, TODAY + timedelta(days=3)),
        _request(world),
        today=TODAY,
    )

    assert len(score.factors) == 13
    assert 0.0 <= score.composite_score <= 100.0
    assert score.party_weights == {"customer": 0.4, "engineer": 0.3, "platform": 0.3}
    assert {factor.party for factor in score.factors} == set(Party)


def test_better_engineer_scores_higher_for_customer(world) -> None:
    scorer = MultiPartyScorer(world.repository, world.settings)
    request = _request(world)
    on_date = TODAY + timedelta(days=3)
    senior = scorer.score_slot_allocation(_slot(world.senior_engineer_id, on_date), request, today=TODAY)
    junior = scorer.score_slot_allocation(_slot(world.junior_engineer_id, on_date), request, today=TODAY)

    assert senior.factor("engineer_quality").normalized_score > junior.factor("engineer_quality").normalized_score
    assert senior.factor("travel_efficiency").normalized_score > junior.factor("travel_efficiency").normalized_score
    assert senior.customer_score > junior.customer_score


def test_custom_weights_change_party_weighting(world) -> None:
    scorer = MultiPartyScorer(world.repository, world.settings)
    slot = _slot(world.senior_engineer_id, TODAY + timedelta(days=3))
    score = scorer.score_slot_allocation(slot, _request(world), weights=CUSTOMER_FOCUSED_WEIGHTS, today=TODAY)
    assert score.party_weights["customer"] == 0.5


def test_missing_site_raises(world) -> None:
    scorer = MultiPartyScorer(world.repository, world.settings)
    with pytest.raises(ScoringDataMissingError):
        scorer.score_slot_allocation(
            _slot(world.senior_engineer_id, TODAY + timedelta(days=3)),
            _request(world, site_id=999),
            today=TODAY,
        )


def test_evaluate_candidates_skips_unknown_engineer_and_keeps_order(world) -> None:
    scorer = MultiPartyScorer(world.repository, world.settings)
    on_date = TODAY + timedelta(days=3)
    slots = [
        _slot(world.junior_engineer_id, on_date),
        _slot(999, on_date),
        _slot(world.senior_engineer_id, on_date, SlotPeriod.PM),
    ]

    evaluations, skipped = scorer.evaluate_candidates(_request(world), slots, today=TODAY)

    assert skipped == [slots[1].slot_id]
    assert [item.slot.slot_id for item in evaluations] == [slots[0].slot_id, slots[2].slot_id]
    assert all(item.quote.final_price >= item.quote.margin_floor for item in evaluations)


def test_stored_scoring_weights_are_loaded(world) -> None:
    assert load_active_scoring_weights(world.repository) == DEFAULT_SCORING_WEIGHTS
    world.repository.save_scoring_weights(CUSTOMER_FOCUSED_WEIGHTS.to_dict())
    assert load_active_scoring_weights(world.repository).name == "customer_focused"
