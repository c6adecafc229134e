"""Daily route sequencing and travel-based engineer factors."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence

import numpy as np
from ortools.sat.python import cp_model

from scheduler.domain.catalog import DEFAULT_JOB_MINUTES
from scheduler.domain.constraints import RouteSolverConfig, validate_route_solver_config
from scheduler.domain.geo import (
    bearing_difference,
    calculate_bearing,
    distance_matrix_km,
    estimate_driving_minutes,
    haversine_km,
    hop_km,
)
from scheduler.domain.models import (
    ACTIVE_BOOKING_STATUSES,
    ROUTABLE_BOOKING_STATUSES,
    BookedJob,
    Coordinates,
    EngineerWithProfile,
    OptimizedRoute,
    RouteContinuity,
    RouteStop,
    SlotPeriod,
    TravelEfficiency,
)
from scheduler.repository.data_repository import DataRepository
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


WORKDAY_START_MINUTES = 9 * 60
WORKDAY_END_MINUTES = 17 * 60
MIN_USEFUL_GAP_MINUTES = 45


class RouteError(Exception):
    """Base exception for route optimization failures."""


class EngineerNotFoundError(RouteError):
    """Raised when the engineer does not exist."""


@dataclass(frozen=True)
class SequencePlan:
    order: tuple[int, ...]
    total_km: float
    strategy: str


def _clock_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def _minutes_to_clock(value: int) -> str:
    return f"{value // 60:02d}:{value % 60:02d}"


def path_length(matrix: np.ndarray, order: Sequence[int]) -> float:
    """Open path from node 0 (the engineer base) through ``order``."""
    total = 0.0
    previous = 0
    for node in order:
        total += float(matrix[previous, node])
        previous = node
    return total


def nearest_neighbour_order(matrix: np.ndarray) -> list[int]:
    """Greedy nearest-unvisited-next order starting at node 0; ties go to the lower index."""
    remaining = list(range(1, matrix.shape[0]))
    order: list[int] = []
    current = 0
    while remaining:
        current = min(remaining, key=lambda node: (matrix[current, node], node))
        order.append(current)
        remaining.remove(current)
    return order


def solve_open_path(matrix: np.ndarray, config: RouteSolverConfig) -> Optional[list[int]]:
    """Shortest open path from node 0 using a CP-SAT circuit with free return arcs."""
    size = matrix.shape[0]
    if size <= 2:
        return list(range(1, size))

    model = cp_model.CpModel()
    arcs = []
    arc_literals: dict[tuple[int, int], cp_model.IntVar] = {}
    objective_terms = []
    for origin in range(size):
        for destination in range(size):
            if origin == destination:
                continue
            literal = model.NewBoolVar(f"arc_{origin}_{destination}")
            arcs.append((origin, destination, literal))
            arc_literals[(origin, destination)] = literal
            if destination != 0:
                cost = int(round(float(matrix[origin, destination]) * config.distance_scale))
                objective_terms.append(cost * literal)
    model.AddCircuit(arcs)
    model.Minimize(sum(objective_terms))

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = config.solver_max_time_seconds
    solver.parameters.num_search_workers = config.cp_sat_workers
    solver.parameters.random_seed = config.random_seed
    status = solver.Solve(model)
    if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        return None

    successor = {
        origin: destination
        for (origin, destination), literal in arc_literals.items()
        if solver.Value(literal)
    }
    order: list[int] = []
    current = successor.get(0)
    while current is not None and current != 0 and len(order) < size:
        order.append(current)
        current = successor.get(current)
    if sorted(order) != list(range(1, size)):
        return None
    return order


def calculate_route_efficiency(hop_distances: Sequence[float]) -> float:
    """Score from the average distance between consecutive stops."""
    if len(hop_distances) == 0:
        return 100.0
    average = sum(hop_distances) / len(hop_distances)
    if average < 3:
        score = 95 + (3 - average) * 1.5
    elif average < 5:
        score = 80 + (5 - average) / 2 * 15
    elif average < 10:
        score = 50 + (10 - average) / 5 * 30
    else:
        score = max(20.0, 50 - (average - 10) * 2)
    return round(min(100.0, score), 1)


def efficiency_rating(score: float) -> str:
    if score >= 80:
        return "optimized"
    if score >= 50:
        return "moderate"
    return "needs attention"


def cheapest_insertion_km(route: Sequence[Optional[Coordinates]], site: Coordinates) -> float:
    """Extra distance to visit ``site`` at the best position in ``route``."""
    if not route:
        return 0.0
    best = hop_km(route[-1], site)
    for first, second in zip(route, route[1:]):
        detour = hop_km(first, site) + hop_km(site, second) - hop_km(first, second)
        best = min(best, detour)
    return max(0.0, best)


def _first_job_score(distance_km: float, radius_km: float) -> float:
    if distance_km <= radius_km:
        return 100 - (distance_km / radius_km) * 30 if radius_km > 0 else 100.0
    return max(0.0, 70 - (distance_km - radius_km) * 2)


def _insertion_category(additional_km: float) -> tuple[str, float]:
    if additional_km < 2:
        return "clustered", min(100.0, 95 + (2 - additional_km) * 2.5)
    if additional_km < 5:
        return "nearby", 80 + (5 - additional_km) / 3 * 15
    if additional_km < 15:
        return "detour", 50 + (15 - additional_km) / 10 * 30
    return "distant", max(0.0, 50 - min(50.0, (additional_km - 15) * 1.5))


def _insertion_score(additional_km: float) -> float:
    if additional_km <= 0:
        return 100.0
    if additional_km < 3:
        return 80 + (3 - additional_km) / 3 * 20
    if additional_km < 10:
        return 50 + (10 - additional_km) / 7 * 30
    return max(0.0, 50 - (additional_km - 10) * 2.5)


def _corridor_score(distance_km: float) -> float:
    if distance_km < 2:
        return 1.0
    if distance_km < 5:
        return 0.7 + (5 - distance_km) / 3 * 0.2
    if distance_km < 10:
        return 0.4 + (10 - distance_km) / 5 * 0.3
    return max(0.0, 0.4 - (distance_km - 10) * 0.02)


def _bearing_alignment(
    base: Optional[Coordinates],
    towards: Optional[Coordinates],
    site: Coordinates,
) -> float:
    if base is None or towards is None:
        return 0.5
    difference = bearing_difference(calculate_bearing(base, towards), calculate_bearing(base, site))
    return 1.0 - difference / 180.0


def _centroid(points: Sequence[Coordinates]) -> Optional[Coordinates]:
    if not points:
        return None
    return Coordinates(
        lat=sum(point.lat for point in points) / len(points),
        lng=sum(point.lng for point in points) / len(points),
    )


def gap_utilization(jobs: Sequence[BookedJob], slot: SlotPeriod) -> float:
    """How well a default-length job fills the free gap the slot would start in."""
    busy = sorted(
        (
            _clock_to_minutes(job.slot.window[0]),
            _clock_to_minutes(job.slot.window[0]) + (job.estimated_duration or DEFAULT_JOB_MINUTES),
        )
        for job in jobs
    )
    gaps: list[tuple[int, int]] = []
    cursor = WORKDAY_START_MINUTES
    for start, end in busy:
        if start - cursor >= MIN_USEFUL_GAP_MINUTES:
            gaps.append((cursor, start))
        cursor = max(cursor, end)
    if WORKDAY_END_MINUTES - cursor >= MIN_USEFUL_GAP_MINUTES:
        gaps.append((cursor, WORKDAY_END_MINUTES))

    slot_start = _clock_to_minutes(slot.window[0])
    for start, end in gaps:
        if start <= slot_start and slot_start + DEFAULT_JOB_MINUTES <= end:
            return min(1.0, DEFAULT_JOB_MINUTES / (end - start))
    return 0.0


class RouteOptimizationService:
    """Sequences an engineer's confirmed stops and scores travel for candidate slots."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._solver_config = RouteSolverConfig(
            solver_max_time_seconds=self._settings.route_solver_max_time_seconds,
            cp_sat_workers=self._settings.route_cp_sat_workers,
            random_seed=self._settings.route_solver_random_seed,
        )
        validate_route_solver_config(self._solver_config)

    def plan_sequence(self, matrix: np.ndarray) -> SequencePlan:
        """Shortest of the loaded order, the greedy order and the solver order."""
        loaded = list(range(1, matrix.shape[0]))
        plans = [
            SequencePlan(tuple(loaded), path_length(matrix, loaded), "original"),
        ]
        greedy = nearest_neighbour_order(matrix)
        plans.append(SequencePlan(tuple(greedy), path_length(matrix, greedy), "nearest_neighbour"))
        try:
            solved = solve_open_path(matrix, self._solver_config)
        except Exception:
            logger.warning("Route solver failed; keeping heuristic order", exc_info=True)
            solved = None
        if solved is not None:
            plans.append(SequencePlan(tuple(solved), path_length(matrix, solved), "cp_sat"))

        best = plans[0]
        for plan in plans[1:]:
            if plan.total_km < best.total_km - 1e-9:
                best = plan
        return best

    def plan_day(
        self,
        base: Optional[Coordinates],
        jobs: Sequence[BookedJob],
    ) -> SequencePlan:
        """Order stops one half-day at a time so every visit lands inside its own window.

        The returned order holds indexes into ``jobs``.
        """
        order: list[int] = []
        total_km = 0.0
        strategies: list[str] = []
        start = base
        for period in sorted({job.slot for job in jobs}, key=lambda slot: slot.sort_key):
            members = [index for index, job in enumerate(jobs) if job.slot is period]
            matrix = distance_matrix_km([start] + [jobs[index].coordinates for index in members])
            plan = self.plan_sequence(matrix)
            order.extend(members[node - 1] for node in plan.order)
            total_km += plan.total_km
            strategies.append(plan.strategy)
            start = jobs[order[-1]].coordinates
        return SequencePlan(tuple(order), total_km, "+".join(dict.fromkeys(strategies)))

    def build_optimized_route(self, engineer_id: int, target_date: date) -> OptimizedRoute:
        engineer = self._repository.get_engineer(engineer_id)
        if engineer is None:
            raise EngineerNotFoundError(f"engineer_id {engineer_id} not found")

        jobs = self._repository.list_engineer_jobs(engineer_id, target_date, ROUTABLE_BOOKING_STATUSES)
        if not jobs:
            return OptimizedRoute(
                engineer_id=engineer_id,
                date=target_date,
                stops=(),
                total_km=0.0,
                total_travel_minutes=0,
                efficiency_score=100.0,
                efficiency_rating=efficiency_rating(100.0),
                strategy="empty",
            )

        matrix = distance_matrix_km([engineer.base_coordinates] + [job.coordinates for job in jobs])
        plan = self.plan_day(engineer.base_coordinates, jobs)

        stops: list[RouteStop] = []
        clock = _clock_to_minutes(self._settings.route_day_start)
        previous = 0
        for sequence, index in enumerate(plan.order, start=1):
            job = jobs[index]
            node = index + 1
            leg_km = float(matrix[previous, node])
            leg_minutes = estimate_driving_minutes(leg_km)
            clock = max(clock + leg_minutes, _clock_to_minutes(job.slot.window[0]))
            stops.append(
                RouteStop(
                    booking_id=job.booking_id,
                    site_id=job.site_id,
                    postcode=job.postcode,
                    coordinates=job.coordinates,
                    slot=job.slot,
                    sequence=sequence,
                    distance_from_previous_km=round(leg_km, 2),
                    travel_minutes_from_previous=leg_minutes,
                    estimated_arrival=_minutes_to_clock(clock),
                )
            )
            clock += job.estimated_duration or DEFAULT_JOB_MINUTES
            previous = node

        hops = [stop.distance_from_previous_km for stop in stops[1:]]
        score = calculate_route_efficiency(hops)
        route = OptimizedRoute(
            engineer_id=engineer_id,
            date=target_date,
            stops=tuple(stops),
            total_km=round(plan.total_km, 2),
            total_travel_minutes=sum(stop.travel_minutes_from_previous for stop in stops),
            efficiency_score=score,
            efficiency_rating=efficiency_rating(score),
            strategy=plan.strategy,
        )
        logger.info(
            "Route optimization completed | engineer_id=%s | date=%s | stops=%s | total_km=%.2f | strategy=%s",
            engineer_id,
            target_date,
            len(stops),
            route.total_km,
            route.strategy,
        )
        return route

    def _day_jobs(
        self,
        engineer: EngineerWithProfile,
        target_date: date,
        existing_jobs: Optional[Sequence[BookedJob]],
    ) -> Sequence[BookedJob]:
        if existing_jobs is not None:
            return existing_jobs
        return self._repository.list_engineer_jobs(
            engineer.engineer_id, target_date, ACTIVE_BOOKING_STATUSES
        )

    def calculate_travel_efficiency(
        self,
        engineer: EngineerWithProfile,
        target_date: date,
        site_coordinates: Optional[Coordinates],
        *,
        existing_jobs: Optional[Sequence[BookedJob]] = None,
    ) -> TravelEfficiency:
        jobs = self._day_jobs(engineer, target_date, existing_jobs)
        base = engineer.base_coordinates

        if site_coordinates is None:
            return TravelEfficiency(
                distance_km=0.0,
                travel_minutes=0,
                efficiency_score=50.0,
                route_context="unknown location",
                savings_vs_naive_km=0.0,
            )

        if not jobs:
            if base is None:
                return TravelEfficiency(
                    distance_km=0.0,
                    travel_minutes=0,
                    efficiency_score=70.0,
                    route_context="first job",
                    savings_vs_naive_km=0.0,
                )
            distance = haversine_km(base, site_coordinates)
            return TravelEfficiency(
                distance_km=round(distance, 2),
                travel_minutes=estimate_driving_minutes(distance),
                efficiency_score=round(_first_job_score(distance, engineer.preferred_radius_km), 1),
                route_context="first job",
                savings_vs_naive_km=0.0,
            )

        ordered = sorted(jobs, key=lambda job: (job.slot.sort_key, job.booking_id))
        route = [base] + [job.coordinates for job in ordered]
        additional = cheapest_insertion_km(route, site_coordinates)
        context, score = _insertion_category(additional)
        naive = hop_km(base, site_coordinates)
        return TravelEfficiency(
            distance_km=round(additional, 2),
            travel_minutes=estimate_driving_minutes(additional),
            efficiency_score=round(score, 1),
            route_context=context,
            savings_vs_naive_km=round(max(0.0, naive - additional), 2),
        )

    def calculate_route_continuity(
        self,
        engineer: EngineerWithProfile,
        target_date: date,
        slot: SlotPeriod,
        site_coordinates: Optional[Coordinates],
        *,
        existing_jobs: Optional[Sequence[BookedJob]] = None,
    ) -> RouteContinuity:
        """Fit of the new job into the shape of the engineer's existing day."""
        jobs = self._day_jobs(engineer, target_date, existing_jobs)
        base = engineer.base_coordinates

        if not jobs:
            return RouteContinuity(insertion_cost_km=0.0, score=70.0, gap_utilization=0.0, direction_alignment=0.0)
        if site_coordinates is None:
            return RouteContinuity(insertion_cost_km=0.0, score=50.0, gap_utilization=0.0, direction_alignment=0.0)

        if len(jobs) == 1:
            alignment = _bearing_alignment(base, jobs[0].coordinates, site_coordinates)
            return RouteContinuity(
                insertion_cost_km=round(hop_km(jobs[0].coordinates, site_coordinates), 2),
                score=round(50 + alignment * 50, 1),
                gap_utilization=gap_utilization(jobs, slot),
                direction_alignment=round(alignment, 3),
            )

        ordered = sorted(jobs, key=lambda job: (job.slot.sort_key, job.booking_id))
        known = [job.coordinates for job in ordered if job.coordinates is not None]
        insertion = cheapest_insertion_km([job.coordinates for job in ordered], site_coordinates)
        utilization = gap_utilization(ordered, slot)

        bearing_score = _bearing_alignment(base, _centroid(known), site_coordinates)
        nearest = min((haversine_km(point, site_coordinates) for point in known), default=None)
        corridor = _corridor_score(nearest) if nearest is not None else 0.5
        direction = (bearing_score + corridor) / 2

        score = _insertion_score(insertion) * 0.5 + utilization * 100 * 0.3 + direction * 100 * 0.2
        return RouteContinuity(
            insertion_cost_km=round(insertion, 2),
            score=round(max(0.0, min(100.0, score)), 1),
            gap_utilization=round(utilization, 3),
            direction_alignment=round(direction, 3),
        )
