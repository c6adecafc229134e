from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from scheduler.domain.models import STATUS_CANCELLED, STATUS_CONFIRMED, BookingRequest, ScheduleSlot, SlotPeriod
from scheduler.repository.data_repository import STAT_CUSTOMER, SlotAlreadyBookedError
from scheduler.services.booking_service import (
    BookingNotFoundError,
    BookingService,
    BookingValidationError,
    SlotConflictError,
)
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


def _slot(engineer_id: int, on_date=TOMORROW, period: SlotPeriod = SlotPeriod.AM) -> ScheduleSlot:
    start, end = period.window
    return ScheduleSlot(
        slot_id=f"{engineer_id}-{on_date.isoformat()}-{period.value}",
        engineer_id=engineer_id,
        date=on_date,
        slot=period,
        start_time=start,
        end_time=end,
        estimated_price=50.0,
        estimated_duration=80,
        is_cluster_opportunity=False,
        nearby_job_count=0,
    )


def test_commit_creates_confirmed_booking(world) -> None:
    service = BookingService(world.repository, world.settings)
    booking = service.commit_slot(
        _request(world), _slot(world.senior_engineer_id), quoted_price=47.456, today=TODAY
    )

    assert booking.status == STATUS_CONFIRMED
    assert booking.engineer_id == world.senior_engineer_id
    assert booking.date == TOMORROW
    assert booking.slot is SlotPeriod.AM
    assert booking.quoted_price == 47.46
    assert booking.estimated_duration == 80


def test_commit_defaults_to_slot_estimate(world) -> None:
    service = BookingService(world.repository, world.settings)
    booking = service.commit_slot(_request(world), _slot(world.senior_engineer_id), today=TODAY)
    assert booking.quoted_price == 50.0


def test_second_commit_of_same_slot_conflicts(world) -> None:
    service = BookingService(world.repository, world.settings)
    slot = _slot(world.senior_engineer_id)
    service.commit_slot(_request(world), slot, today=TODAY)

    with pytest.raises(SlotConflictError) as excinfo:
        service.commit_slot(_request(world), slot, today=TODAY)
    assert excinfo.value.retryable

    other_period = service.commit_slot(
        _request(world), _slot(world.senior_engineer_id, period=SlotPeriod.PM), today=TODAY
    )
    assert other_period.slot is SlotPeriod.PM


def test_cancelled_slot_can_be_claimed_again(world) -> None:
    service = BookingService(world.repository, world.settings)
    slot = _slot(world.junior_engineer_id)
    first = service.commit_slot(_request(world), slot, today=TODAY)
    service.cancel_booking(first.booking_id)

    second = service.commit_slot(_request(world), slot, today=TODAY)
    assert second.booking_id != first.booking_id


@pytest.mark.parametrize(
    ("overrides", "slot_offset", "price"),
    [
        ({}, -1, None),
        ({"site_id": "other"}, 1, None),
        ({"site_id": 999}, 1, None),
        ({}, 1, -5.0),
    ],
)
def test_commit_validation(world, overrides, slot_offset, price) -> None:
    if overrides.get("site_id") == "other":
        overrides = {"site_id": world.other_site_id}
    service = BookingService(world.repository, world.settings)
    slot = _slot(world.senior_engineer_id, on_date=TODAY + timedelta(days=slot_offset))

    with pytest.raises(BookingValidationError):
        service.commit_slot(_request(world, **overrides), slot, quoted_price=price, today=TODAY)


@pytest.mark.parametrize("missing", ["engineer", "service"])
def test_commit_with_unknown_reference_is_not_a_conflict(world, missing) -> None:
    service = BookingService(world.repository, world.settings)
    engineer_id = 999 if missing == "engineer" else world.senior_engineer_id
    request = _request(world, service_id=999) if missing == "service" else _request(world)

    with pytest.raises(BookingValidationError, match=f"{missing}_id 999 not found"):
        service.commit_slot(request, _slot(engineer_id), today=TODAY)


def test_claim_slot_keeps_foreign_key_errors_distinct(world) -> None:
    with pytest.raises(sqlite3.IntegrityError) as raised:
        world.repository.claim_slot(
            customer_id=world.customer_id,
            site_id=world.site_id,
            service_id=world.service_id,
            engineer_id=999,
            scheduled_date=TOMORROW,
            slot=SlotPeriod.AM,
            quoted_price=50.0,
            estimated_duration=80,
        )
    assert not isinstance(raised.value, SlotAlreadyBookedError)


def test_cancel_is_idempotent(world) -> None:
    service = BookingService(world.repository, world.settings)
    booking = service.commit_slot(_request(world), _slot(world.senior_engineer_id), today=TODAY)

    cancelled = service.cancel_booking(booking.booking_id)
    again = service.cancel_booking(booking.booking_id)

    assert cancelled.status == STATUS_CANCELLED
    assert again.status == STATUS_CANCELLED
    counts = world.repository.get_cancellation_counts(STAT_CUSTOMER, key=str(world.customer_id))
    assert counts == {str(world.customer_id): (1, 1)}


def test_cancel_unknown_booking(world) -> None:
    service = BookingService(world.repository, world.settings)
    with pytest.raises(BookingNotFoundError):
        service.cancel_booking(999)
