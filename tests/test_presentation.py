from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

pytest.importorskip("ortools")

from scheduler.domain.models import BadgeType, BookingRequest, Flexibility
from scheduler.services.candidate_service import CandidateService, make_slot_id
from scheduler.services.presentation_service import (
    STATUS_NO_VIABLE_SLOTS,
    STATUS_OK,
    CustomerNotFoundError,
    PresentationOptions,
    SlotPresentationService,
    assign_badges,
    build_flexibility_prompt,
    build_savings,
    rank_evaluations,
)
from scheduler.services.scoring_service import MultiPartyScorer
from tests.conftest import TODAY


TOMORROW = TODAY + timedelta(days=1)


def _request(world, **overrides) -> BookingRequest:
    values = {
        "customer_id": world.customer_id,
        "site_id": world.site_id,
        "service_id": world.service_id,
        "estimated_qty": 50,
    }
    values.update(overrides)
    return BookingRequest(**values)


def _evaluations(world, request, count: int = 4):
    slots = CandidateService(world.repository, world.settings).get_viable_slots(
        request, max_slots=count, today=TODAY
    )
    evaluations, skipped = MultiPartyScorer(world.repository, world.settings).evaluate_candidates(
        request, slots, today=TODAY
    )
    assert not skipped
    return evaluations


def _types(badges) -> set[BadgeType]:
    return {badge.badge_type for badge in badges} - {BadgeType.CLUSTER_DISCOUNT}


def _priced(evaluation, on_date, price: float):
    slot = replace(
        evaluation.slot,
        date=on_date,
        slot_id=make_slot_id(evaluation.slot.engineer_id, on_date, evaluation.slot.slot),
    )
    return replace(evaluation, slot=slot, quote=replace(evaluation.quote, final_price=price))


def test_fastest_badge_skips_best_value_slot(world) -> None:
    # Viable order: senior AM, junior AM, senior PM, junior PM (all tomorrow).
    senior_am, junior_am, senior_pm, junior_pm = _evaluations(world, _request(world))

    badges = assign_badges([senior_pm, senior_am, junior_am, junior_pm])

    assert _types(badges[0]) == {BadgeType.BEST_VALUE, BadgeType.TOP_RATED}
    assert _types(badges[1]) == {BadgeType.FASTEST, BadgeType.ECO_FRIENDLY}
    assert _types(badges[2]) == set()
    assert _types(badges[3]) == set()


def test_fastest_badge_dropped_when_earliest_is_best_value(world) -> None:
    ranked = _evaluations(world, _request(world))
    badges = assign_badges(ranked)

    all_types = [badge.badge_type for item in badges for badge in item]
    assert BadgeType.FASTEST not in all_types
    assert all_types.count(BadgeType.BEST_VALUE) == 1
    assert all_types.count(BadgeType.TOP_RATED) == 1
    assert all_types.count(BadgeType.ECO_FRIENDLY) <= 1
    assert BadgeType.ECO_FRIENDLY not in {badge.badge_type for badge in badges[0]}


def test_cluster_badge_label_reflects_discount(world) -> None:
    evaluation = _evaluations(world, _request(world), count=1)[0]
    discounted = replace(evaluation, quote=replace(evaluation.quote, effective_discount_percent=12.4))

    badges = assign_badges([discounted])[0]
    cluster = [badge for badge in badges if badge.badge_type is BadgeType.CLUSTER_DISCOUNT]
    assert [badge.label for badge in cluster] == ["12% Off"]


def test_ranking_breaks_ties_by_date_period_and_engineer(world) -> None:
    evaluations = _evaluations(world, _request(world))
    tied = [replace(item, score=replace(item.score, composite_score=70.0)) for item in evaluations]

    ranked = rank_evaluations(list(reversed(tied)))
    assert [item.slot.slot_id for item in ranked] == [item.slot.slot_id for item in evaluations]


def test_flexibility_prompt_offers_cheaper_other_date(world) -> None:
    request = _request(world, preferred_date=TOMORROW)
    base = _evaluations(world, request, count=1)[0]
    later = TOMORROW + timedelta(days=1)
    ranked = [
        _priced(base, TOMORROW, 100.0),
        _priced(base, TOMORROW, 95.0),
        _priced(base, later, 80.0),
    ]

    prompt = build_flexibility_prompt(request, ranked, 0.10)

    assert prompt.show
    assert prompt.savings_amount == 15.0
    assert prompt.alternative_slot_id == ranked[2].slot.slot_id
    assert "15.00" in prompt.message


def test_flexibility_prompt_hidden_below_threshold_or_for_flexible_week(world) -> None:
    request = _request(world, preferred_date=TOMORROW)
    base = _evaluations(world, request, count=1)[0]
    later = TOMORROW + timedelta(days=1)
    small_saving = [_priced(base, TOMORROW, 100.0), _priced(base, later, 95.0)]
    big_saving = [_priced(base, TOMORROW, 100.0), _priced(base, later, 50.0)]
    same_day = [_priced(base, TOMORROW, 100.0), _priced(base, TOMORROW, 50.0)]

    assert not build_flexibility_prompt(request, small_saving, 0.10).show
    assert not build_flexibility_prompt(request, same_day, 0.10).show
    assert not build_flexibility_prompt(
        replace(request, flexibility=Flexibility.FLEXIBLE_WEEK), big_saving, 0.10
    ).show
    assert not build_flexibility_prompt(request, [], 0.10).show


def test_savings_breakdown_matches_quote(world) -> None:
    evaluation = _evaluations(world, _request(world), count=1)[0]
    savings = build_savings(evaluation)

    assert savings.total == round(evaluation.quote.total_discount, 2)
    assert savings.cluster + savings.flexibility + savings.other == pytest.approx(savings.total, abs=0.02)
    if savings.total > 0:
        assert savings.message.startswith("Save £")
    else:
        assert savings.message == "Best available pricing"


def test_present_slots_ranks_and_badges(world) -> None:
    service = SlotPresentationService(world.repository, world.settings)
    presentation = service.present_slots_to_customer(
        _request(world),
        PresentationOptions(max_slots=3, candidate_pool=6),
        today=TODAY,
    )

    assert presentation.status == STATUS_OK
    assert presentation.evaluated_candidates == 6
    assert presentation.skipped_candidates == ()
    shown = [presentation.recommended, *presentation.alternatives]
    assert [item.rank for item in shown] == [1, 2, 3]
    scores = [item.composite_score for item in shown]
    assert scores == sorted(scores, reverse=True)
    assert presentation.recommended.has_badge(BadgeType.BEST_VALUE)
    assert not any(item.has_badge(BadgeType.BEST_VALUE) for item in presentation.alternatives)
    assert all(item.explanation for item in shown)
    assert all(item.discount_amount >= 0 for item in shown)


def test_present_slots_without_candidates(world) -> None:
    remote_site = world.repository.create_site(world.customer_id, "Westminster", "SW1A 1AA")
    service = SlotPresentationService(world.repository, world.settings)
    presentation = service.present_slots_to_customer(_request(world, site_id=remote_site), today=TODAY)

    assert presentation.status == STATUS_NO_VIABLE_SLOTS
    assert presentation.recommended is None
    assert presentation.alternatives == ()
    assert not presentation.flexibility_prompt.show


def test_present_slots_for_unknown_customer(world) -> None:
    service = SlotPresentationService(world.repository, world.settings)
    with pytest.raises(CustomerNotFoundError):
        service.present_slots_to_customer(_request(world, customer_id=999), today=TODAY)
