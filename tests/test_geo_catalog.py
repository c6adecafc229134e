from __future__ import annotations

from datetime import date

import numpy as np
import pytest

from scheduler.domain.catalog import estimate_service, has_valid_qualification
from scheduler.domain.geo import (
    FALLBACK_HOP_KM,
    bearing_difference,
    calculate_bearing,
    distance_matrix_km,
    estimate_driving_minutes,
    haversine_km,
    hop_km,
    postcode_district,
    postcode_matches_prefix,
)
from scheduler.domain.models import Coordinates, Qualification, Service, ServiceType


LONDON = Coordinates(51.5074, -0.1278)
MANCHESTER = Coordinates(53.4808, -2.2426)


def _service(service_type: ServiceType, base_price: float, min_charge: float) -> Service:
    return Service(
        service_id=1,
        slug=service_type.value,
        name=service_type.value,
        service_type=service_type,
        base_price=base_price,
        min_charge=min_charge,
        base_minutes=30,
        minutes_per_unit=2.0,
    )


def test_haversine_london_to_manchester() -> None:
    assert haversine_km(LONDON, MANCHESTER) == pytest.approx(262.0, abs=3.0)


def test_hop_uses_fallback_for_unknown_points() -> None:
    assert hop_km(None, LONDON) == FALLBACK_HOP_KM


def test_distance_matrix_is_symmetric_with_zero_diagonal() -> None:
    matrix = distance_matrix_km([LONDON, MANCHESTER, None])
    assert np.allclose(matrix, matrix.T)
    assert np.all(np.diag(matrix) == 0.0)
    assert matrix[0, 1] == pytest.approx(haversine_km(LONDON, MANCHESTER))
    assert matrix[0, 2] == FALLBACK_HOP_KM


def test_bearing_and_difference() -> None:
    north = calculate_bearing(Coordinates(51.0, 0.0), Coordinates(52.0, 0.0))
    assert north == pytest.approx(0.0, abs=0.5)
    assert bearing_difference(350.0, 10.0) == pytest.approx(20.0)


@pytest.mark.parametrize(
    ("distance_km", "minutes"),
    [(0.0, 0), (5.0, 10), (20.0, 30), (100.0, 120)],
)
def test_driving_minutes_by_speed_band(distance_km: float, minutes: int) -> None:
    assert estimate_driving_minutes(distance_km) == minutes


def test_postcode_helpers() -> None:
    assert postcode_district("sw1a 1aa") == "SW1A"
    assert postcode_district("M1") == "M1"
    assert postcode_matches_prefix("EC1A 1BB", "ec1")
    assert not postcode_matches_prefix("EC1A 1BB", "")


def test_pat_estimate_applies_minimum_charge() -> None:
    estimate = estimate_service(_service(ServiceType.PAT_TESTING, 0.45, 50.0), 50)
    assert estimate.price == 50.0
    assert estimate.quantity == 50


def test_zero_quantity_uses_service_default() -> None:
    estimate = estimate_service(_service(ServiceType.FIRE_ALARM_TESTING, 30.0, 60.0), 0)
    assert estimate.quantity == 4
    assert estimate.price == 120.0
    assert estimate.duration_minutes == 38


def test_flat_fee_ignores_quantity_for_price() -> None:
    estimate = estimate_service(_service(ServiceType.FIRE_RISK_ASSESSMENT, 250.0, 200.0), 5)
    assert estimate.price == 250.0
    assert estimate.duration_minutes == 40


def test_unknown_service_slug_raises() -> None:
    with pytest.raises(ValueError, match="Unknown service slug"):
        ServiceType.from_slug("gas-safety")


def test_qualification_expiry_only_blocks_when_all_relevant_expired() -> None:
    on_date = date(2026, 6, 1)
    expired = Qualification("PAT 2377-22", expiry_date=date(2026, 1, 1))
    current = Qualification("City & Guilds 2377", expiry_date=date(2027, 1, 1))
    unrelated = Qualification("First aid", expiry_date=date(2020, 1, 1))

    assert not has_valid_qualification(ServiceType.PAT_TESTING, [expired, unrelated], on_date)
    assert has_valid_qualification(ServiceType.PAT_TESTING, [expired, current], on_date)
    assert has_valid_qualification(ServiceType.PAT_TESTING, [unrelated], on_date)
