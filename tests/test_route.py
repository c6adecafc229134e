from __future__ import annotations

from datetime import timedelta

import numpy as np
import pytest

pytest.importorskip("ortools")

from scheduler.domain.constraints import RouteSolverConfig
from scheduler.domain.geo import distance_matrix_km
from scheduler.domain.models import BookedJob, Coordinates, SlotPeriod
from scheduler.services.route_service import (
    EngineerNotFoundError,
    RouteOptimizationService,
    calculate_route_efficiency,
    cheapest_insertion_km,
    efficiency_rating,
    gap_utilization,
    nearest_neighbour_order,
    path_length,
    solve_open_path,
)
from tests.conftest import CAMDEN, CITY, CITY_NEIGHBOUR, SHOREDITCH, TODAY, make_engineer


SOLVER = RouteSolverConfig(solver_max_time_seconds=2.0, cp_sat_workers=1, random_seed=42)


def _line_matrix(positions: list[float]) -> np.ndarray:
    points = np.array(positions, dtype=float)
    return np.abs(points[:, None] - points[None, :])


def _job(booking_id: int, slot: SlotPeriod, coordinates, duration: int = 60) -> BookedJob:
    return BookedJob(
        booking_id=booking_id,
        engineer_id=1,
        customer_id=1,
        site_id=booking_id,
        service_id=1,
        date=TODAY,
        slot=slot,
        status="CONFIRMED",
        quoted_price=80.0,
        estimated_duration=duration,
        postcode="EC1A 1BB",
        coordinates=coordinates,
    )


def test_path_length_is_open_from_base() -> None:
    matrix = _line_matrix([0.0, 1.0, 3.0])
    assert path_length(matrix, [1, 2]) == 3.0
    assert path_length(matrix, [2, 1]) == 5.0


def test_nearest_neighbour_visits_every_stop_once() -> None:
    matrix = _line_matrix([0.0, 5.0, 1.0, 3.0])
    assert nearest_neighbour_order(matrix) == [2, 3, 1]


def test_solver_beats_scrambled_order_on_same_stops() -> None:
    matrix = _line_matrix([0.0, 9.0, 2.0, 7.0, 4.0, 1.0])
    loaded = list(range(1, 6))

    solved = solve_open_path(matrix, SOLVER)

    assert solved is not None
    assert sorted(solved) == loaded
    assert path_length(matrix, solved) <= path_length(matrix, loaded)
    assert path_length(matrix, solved) == pytest.approx(9.0)


def test_solver_handles_trivial_sizes() -> None:
    assert solve_open_path(np.zeros((1, 1)), SOLVER) == []
    assert solve_open_path(np.zeros((2, 2)), SOLVER) == [1]


@pytest.mark.parametrize(
    ("hops", "score"),
    [([], 100.0), ([1.0, 1.0], 98.0), ([4.0], 87.5), ([7.5], 65.0), ([20.0], 30.0), ([40.0], 20.0)],
)
def test_route_efficiency_from_average_hop(hops, score) -> None:
    assert calculate_route_efficiency(hops) == score


def test_efficiency_rating_bands() -> None:
    assert efficiency_rating(85.0) == "optimized"
    assert efficiency_rating(50.0) == "moderate"
    assert efficiency_rating(49.9) == "needs attention"


def test_cheapest_insertion_prefers_in_between_position() -> None:
    start = Coordinates(51.50, -0.10)
    end = Coordinates(51.52, -0.10)
    middle = Coordinates(51.51, -0.10)
    assert cheapest_insertion_km([start, end], middle) == pytest.approx(0.0, abs=1e-6)
    assert cheapest_insertion_km([], middle) == 0.0


def test_gap_utilization_for_empty_and_partly_booked_days() -> None:
    assert gap_utilization([], SlotPeriod.AM) == pytest.approx(60 / 480)
    assert gap_utilization([_job(1, SlotPeriod.AM, CITY)], SlotPeriod.PM) == pytest.approx(60 / 420)
    assert gap_utilization([_job(1, SlotPeriod.AM, CITY, duration=480)], SlotPeriod.PM) == 0.0


def test_plan_sequence_never_worse_than_loaded_order(world) -> None:
    service = RouteOptimizationService(world.repository, world.settings)
    matrix = distance_matrix_km([CITY, CAMDEN, CITY_NEIGHBOUR, SHOREDITCH])

    plan = service.plan_sequence(matrix)

    assert sorted(plan.order) == [1, 2, 3]
    assert plan.total_km <= path_length(matrix, [1, 2, 3]) + 1e-9


def test_plan_day_keeps_morning_stops_first(world) -> None:
    service = RouteOptimizationService(world.repository, world.settings)
    jobs = [
        _job(1, SlotPeriod.PM, CITY_NEIGHBOUR),
        _job(2, SlotPeriod.AM, CAMDEN),
        _job(3, SlotPeriod.PM, SHOREDITCH),
    ]

    plan = service.plan_day(CITY, jobs)

    assert plan.order[0] == 1
    assert sorted(plan.order[1:]) == [0, 2]
    matrix = distance_matrix_km([CITY, CITY_NEIGHBOUR, CAMDEN, SHOREDITCH])
    assert plan.total_km == pytest.approx(path_length(matrix, [index + 1 for index in plan.order]))


# --- travel factors ---

def test_travel_efficiency_contexts(world) -> None:
    service = RouteOptimizationService(world.repository, world.settings)
    engineer = make_engineer()

    unknown = service.calculate_travel_efficiency(engineer, TODAY, None, existing_jobs=[])
    first = service.calculate_travel_efficiency(engineer, TODAY, CITY, existing_jobs=[])
    clustered = service.calculate_travel_efficiency(
        engineer, TODAY, CITY_NEIGHBOUR, existing_jobs=[_job(1, SlotPeriod.AM, CITY)]
    )

    assert (unknown.route_context, unknown.efficiency_score) == ("unknown location", 50.0)
    assert (first.route_context, first.efficiency_score) == ("first job", 100.0)
    assert clustered.route_context == "clustered"
    assert clustered.efficiency_score >= 95.0


def test_route_continuity_without_jobs_is_neutral(world) -> None:
    service = RouteOptimizationService(world.repository, world.settings)
    continuity = service.calculate_route_continuity(
        make_engineer(), TODAY, SlotPeriod.PM, CITY, existing_jobs=[]
    )
    assert continuity.score == 70.0


def test_route_continuity_rewards_same_direction(world) -> None:
    service = RouteOptimizationService(world.repository, world.settings)
    engineer = make_engineer()
    existing = [_job(1, SlotPeriod.AM, SHOREDITCH)]

    aligned = service.calculate_route_continuity(
        engineer, TODAY, SlotPeriod.PM, Coordinates(51.5240, -0.0850), existing_jobs=existing
    )
    opposite = service.calculate_route_continuity(
        engineer, TODAY, SlotPeriod.PM, CAMDEN, existing_jobs=existing
    )
    assert aligned.score > opposite.score


# --- daily route built from bookings ---

def test_build_route_for_unknown_engineer_raises(world) -> None:
    service = RouteOptimizationService(world.repository, world.settings)
    with pytest.raises(EngineerNotFoundError):
        service.build_optimized_route(999, TODAY)


def test_build_route_without_jobs_is_empty(world) -> None:
    service = RouteOptimizationService(world.repository, world.settings)
    route = service.build_optimized_route(world.senior_engineer_id, TODAY)
    assert route.stops == ()
    assert route.strategy == "empty"
    assert route.efficiency_score == 100.0


def test_build_route_reorders_stops_and_waits_for_windows(world) -> None:
    target = TODAY + timedelta(days=2)
    far_site = world.repository.create_site(world.customer_id, "North office", "EC1V 9AA", CAMDEN)
    near_site = world.repository.create_site(world.customer_id, "Annex", "EC1A 2BB", CITY_NEIGHBOUR)
    far_booking = world.repository.insert_booking(
        customer_id=world.customer_id,
        site_id=far_site,
        service_id=world.service_id,
        engineer_id=world.senior_engineer_id,
        scheduled_date=target,
        slot=SlotPeriod.AM,
        estimated_duration=60,
    )
    near_booking = world.repository.insert_booking(
        customer_id=world.customer_id,
        site_id=near_site,
        service_id=world.service_id,
        engineer_id=world.senior_engineer_id,
        scheduled_date=target,
        slot=SlotPeriod.PM,
        estimated_duration=60,
    )

    service = RouteOptimizationService(world.repository, world.settings)
    route = service.build_optimized_route(world.senior_engineer_id, target)

    # The nearer PM job must not be visited before the morning window closes.
    assert [stop.booking_id for stop in route.stops] == [far_booking, near_booking]
    assert [stop.sequence for stop in route.stops] == [1, 2]
    assert [stop.slot for stop in route.stops] == [SlotPeriod.AM, SlotPeriod.PM]
    assert "09:00" <= route.stops[0].estimated_arrival <= "12:00"
    assert route.stops[1].estimated_arrival == "13:00"
    loaded_km = distance_matrix_km([CITY, CAMDEN, CITY_NEIGHBOUR])
    assert route.total_km == round(path_length(loaded_km, [1, 2]), 2)
    assert route.efficiency_rating in {"optimized", "moderate", "needs attention"}
