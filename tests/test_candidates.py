from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta

import pytest

pytest.importorskip("ortools")

from scheduler.domain.constraints import PricingRules
from scheduler.domain.models import (
    BookingRequest,
    Competency,
    CoverageArea,
    EngineerType,
    Qualification,
    SlotPeriod,
)
from scheduler.services.candidate_service import CandidateService, covers_postcode, make_slot_id
from tests.conftest import CITY, TODAY, make_engineer


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


def _triples(slots):
    return [(slot.engineer_id, slot.date, slot.slot) for slot in slots]


def test_slot_id_and_coverage_helpers() -> None:
    assert make_slot_id(7, TOMORROW, SlotPeriod.PM) == "7-2026-03-03-PM"
    engineer = make_engineer()
    assert covers_postcode(engineer, "ec1a 1bb")
    assert not covers_postcode(engineer, "SW1A 1AA")


def test_slots_walk_dates_then_periods_then_engineers(world) -> None:
    service = CandidateService(world.repository, world.settings)
    slots = service.get_viable_slots(_request(world), max_slots=4, today=TODAY)

    senior, junior = world.senior_engineer_id, world.junior_engineer_id
    assert _triples(slots) == [
        (senior, TOMORROW, SlotPeriod.AM),
        (junior, TOMORROW, SlotPeriod.AM),
        (senior, TOMORROW, SlotPeriod.PM),
        (junior, TOMORROW, SlotPeriod.PM),
    ]
    first = slots[0]
    assert first.slot_id == make_slot_id(senior, TOMORROW, SlotPeriod.AM)
    assert (first.start_time, first.end_time) == ("09:00", "12:00")
    assert first.estimated_price == 50.0
    assert first.estimated_duration == 80
    assert not first.is_cluster_opportunity


def test_default_limit_and_horizon(world) -> None:
    service = CandidateService(world.repository, world.settings)
    slots = service.get_viable_slots(_request(world), today=TODAY)

    assert len(slots) == world.settings.candidate_max_slots
    assert min(slot.date for slot in slots) == TOMORROW
    assert max(slot.date for slot in slots) <= TODAY + timedelta(days=world.settings.candidate_horizon_days)
    assert len(set(_triples(slots))) == len(slots)


def test_non_positive_limit_returns_nothing(world) -> None:
    service = CandidateService(world.repository, world.settings)
    assert service.get_viable_slots(_request(world), max_slots=0, today=TODAY) == []


def test_unknown_site_or_service_yields_no_slots(world) -> None:
    service = CandidateService(world.repository, world.settings)
    assert service.get_viable_slots(_request(world, site_id=999), today=TODAY) == []
    assert service.get_viable_slots(_request(world, service_id=999), today=TODAY) == []


def test_uncovered_postcode_yields_no_slots(world) -> None:
    remote_site = world.repository.create_site(world.customer_id, "Westminster", "SW1A 1AA")
    service = CandidateService(world.repository, world.settings)
    assert service.get_viable_slots(_request(world, site_id=remote_site), today=TODAY) == []


def test_expired_qualification_excludes_engineer(world) -> None:
    lapsed = world.repository.create_engineer(
        "Lapsed PAT",
        EngineerType.PAT_TESTER,
        competencies=[Competency(service_id=world.service_id, experience_years=4.0)],
        coverage_areas=[CoverageArea(postcode_prefix="EC", radius_km=15.0, coordinates=CITY)],
        qualifications=[Qualification("PAT 2377", expiry_date=date(2026, 1, 31))],
    )
    service = CandidateService(world.repository, world.settings)
    slots = service.get_viable_slots(_request(world), today=TODAY)

    assert slots
    assert lapsed not in {slot.engineer_id for slot in slots}


def test_qualification_expiring_mid_horizon_stops_at_expiry(world) -> None:
    expiring = world.repository.create_engineer(
        "Expiring PAT",
        EngineerType.PAT_TESTER,
        competencies=[Competency(service_id=world.service_id, experience_years=4.0)],
        coverage_areas=[CoverageArea(postcode_prefix="EC", radius_km=15.0, coordinates=CITY)],
        qualifications=[Qualification("PAT 2377", expiry_date=TOMORROW)],
    )
    service = CandidateService(world.repository, world.settings)
    slots = service.get_viable_slots(_request(world), max_slots=40, today=TODAY)

    dates = {slot.date for slot in slots if slot.engineer_id == expiring}
    assert dates == {TOMORROW}


def test_unavailability_blocks_full_day_or_single_period(world) -> None:
    world.repository.add_unavailability(world.senior_engineer_id, TOMORROW)
    world.repository.add_unavailability(world.junior_engineer_id, TOMORROW, "AM")

    service = CandidateService(world.repository, world.settings)
    slots = service.get_viable_slots(_request(world), max_slots=3, today=TODAY)

    day_after = TOMORROW + timedelta(days=1)
    assert _triples(slots) == [
        (world.junior_engineer_id, TOMORROW, SlotPeriod.PM),
        (world.senior_engineer_id, day_after, SlotPeriod.AM),
        (world.junior_engineer_id, day_after, SlotPeriod.AM),
    ]


def test_booked_period_is_skipped_and_marks_cluster(world) -> None:
    world.repository.insert_booking(
        customer_id=world.customer_id,
        site_id=world.other_site_id,
        service_id=world.service_id,
        engineer_id=world.senior_engineer_id,
        scheduled_date=TOMORROW,
        slot=SlotPeriod.AM,
        quoted_price=80.0,
        created_on=TODAY,
    )
    service = CandidateService(world.repository, world.settings)
    slots = service.get_viable_slots(_request(world), max_slots=3, today=TODAY)

    assert (world.senior_engineer_id, TOMORROW, SlotPeriod.AM) not in _triples(slots)
    senior_pm = next(
        slot for slot in slots if slot.engineer_id == world.senior_engineer_id and slot.date == TOMORROW
    )
    assert senior_pm.slot is SlotPeriod.PM
    assert senior_pm.nearby_job_count == 1
    assert senior_pm.is_cluster_opportunity


def test_nearby_jobs_use_active_cluster_radius(world) -> None:
    # The other site is roughly 1.6 km from the requested one.
    rules = PricingRules()
    world.repository.save_pricing_rules(
        replace(rules, version=2, cluster=replace(rules.cluster, radius_km=0.5)).to_dict()
    )
    world.repository.insert_booking(
        customer_id=world.customer_id,
        site_id=world.other_site_id,
        service_id=world.service_id,
        engineer_id=world.senior_engineer_id,
        scheduled_date=TOMORROW,
        slot=SlotPeriod.AM,
        created_on=TODAY,
    )
    service = CandidateService(world.repository, world.settings)
    slots = service.get_viable_slots(_request(world), max_slots=3, today=TODAY)

    senior_pm = next(
        slot for slot in slots if slot.engineer_id == world.senior_engineer_id and slot.date == TOMORROW
    )
    assert senior_pm.nearby_job_count == 0
    assert not senior_pm.is_cluster_opportunity


def test_cancelled_booking_frees_the_period(world) -> None:
    booking_id = world.repository.insert_booking(
        customer_id=world.customer_id,
        site_id=world.site_id,
        service_id=world.service_id,
        engineer_id=world.senior_engineer_id,
        scheduled_date=TOMORROW,
        slot=SlotPeriod.AM,
        created_on=TODAY,
    )
    world.repository.update_booking_status(booking_id, "CANCELLED")

    service = CandidateService(world.repository, world.settings)
    slots = service.get_viable_slots(_request(world), max_slots=1, today=TODAY)
    assert _triples(slots) == [(world.senior_engineer_id, TOMORROW, SlotPeriod.AM)]


def test_find_best_engineer_returns_top_scoring_candidate(world) -> None:
    service = CandidateService(world.repository, world.settings)
    match = service.find_best_engineer(_request(world), today=TODAY)

    assert match is not None
    assert match.engineer.engineer_id == match.slot.engineer_id
    assert match.score.slot_id == match.slot.slot_id
    assert match.engineer.engineer_id in {world.senior_engineer_id, world.junior_engineer_id}


def test_find_best_engineer_without_candidates(world) -> None:
    service = CandidateService(world.repository, world.settings)
    assert service.find_best_engineer(_request(world, site_id=999), today=TODAY) is None
