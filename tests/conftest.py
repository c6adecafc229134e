from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date

import pytest

from scheduler.domain.models import (
    Competency,
    Coordinates,
    CoverageArea,
    EngineerType,
    EngineerWithProfile,
    Qualification,
)
from scheduler.repository.data_repository import DataRepository
from scheduler.utils.config import Settings, get_settings


# A Monday, so weekday-based rules are predictable.
TODAY = date(2026, 3, 2)

CITY = Coordinates(51.5200, -0.1000)
CITY_NEIGHBOUR = Coordinates(51.5230, -0.0950)
SHOREDITCH = Coordinates(51.5260, -0.0780)
CAMDEN = Coordinates(51.5390, -0.1426)


def make_engineer(**overrides) -> EngineerWithProfile:
    defaults = {
        "engineer_id": 1,
        "name": "Test Engineer",
        "engineer_type": EngineerType.GENERAL,
        "years_experience": 5.0,
        "day_rate": 400.0,
        "test_rate": 0.45,
        "labour_percentage": 0.4,
        "rating": 4.5,
        "competencies": (Competency(service_id=1, experience_years=3.0),),
        "coverage_areas": (CoverageArea(postcode_prefix="EC", radius_km=20.0, coordinates=CITY),),
        "qualifications": (),
        "base_postcode": "EC1 1AA",
        "base_coordinates": CITY,
        "preferred_radius_km": 20.0,
    }
    defaults.update(overrides)
    return EngineerWithProfile(**defaults)


def build_test_settings(tmp_path, filename: str = "scheduler.db") -> Settings:
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        seed_synthetic_data_on_startup=False,
        cancellation_model_min_training_rows=5,
        route_solver_max_time_seconds=2.0,
        route_cp_sat_workers=1,
        scoring_max_workers=4,
    )


@dataclass
class World:
    """Small hand-built catalogue: one PAT service, one customer, two engineers."""

    settings: Settings
    repository: DataRepository
    service_id: int
    customer_id: int
    site_id: int
    other_site_id: int
    senior_engineer_id: int
    junior_engineer_id: int


@pytest.fixture()
def world(tmp_path) -> World:
    settings = build_test_settings(tmp_path)
    repository = DataRepository(settings)
    repository.initialize_database()

    service_id = repository.create_service(
        "pat-testing",
        "PAT Testing",
        base_price=0.45,
        min_charge=50.0,
        base_minutes=30,
        minutes_per_unit=1.0,
    )
    customer_id = repository.create_customer("Acme Offices", company="Acme Ltd")
    site_id = repository.create_site(customer_id, "Head office", "EC1A 1BB", CITY)
    other_customer_id = repository.create_customer("Other Co")
    other_site_id = repository.create_site(other_customer_id, "Depot", "EC2A 4NE", SHOREDITCH)

    senior_engineer_id = repository.create_engineer(
        "Senior PAT",
        EngineerType.PAT_TESTER,
        years_experience=12.0,
        rating=4.9,
        competencies=[Competency(service_id=service_id, experience_years=10.0)],
        coverage_areas=[CoverageArea(postcode_prefix="EC", radius_km=15.0, coordinates=CITY)],
        qualifications=[Qualification("City & Guilds 2377", expiry_date=date(2030, 1, 1))],
    )
    junior_engineer_id = repository.create_engineer(
        "Junior PAT",
        EngineerType.PAT_TESTER,
        years_experience=1.0,
        rating=4.1,
        competencies=[Competency(service_id=service_id, experience_years=1.0)],
        coverage_areas=[CoverageArea(postcode_prefix="EC", radius_km=15.0, coordinates=CAMDEN)],
    )
    return World(
        settings=settings,
        repository=repository,
        service_id=service_id,
        customer_id=customer_id,
        site_id=site_id,
        other_site_id=other_site_id,
        senior_engineer_id=senior_engineer_id,
        junior_engineer_id=junior_engineer_id,
    )
