"""Customer lifetime value and postcode-area network effect."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from scheduler.domain.geo import postcode_district
from scheduler.domain.models import CustomerHistory, CustomerLTV, NetworkEffect
from scheduler.repository.data_repository import AreaStats, DataRepository
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


HIGH_DENSITY_DISTRICTS = frozenset({"EC1", "EC2", "EC3", "EC4", "WC1", "WC2", "W1", "SW1", "SE1"})
MEDIUM_DENSITY_DISTRICTS = frozenset(
    {
        "E1", "E2", "N1", "NW1", "SW3", "SW5", "SW7", "W2", "W8", "W11",
        "M1", "M2", "B1", "B2", "L1", "L2", "G1", "G2", "BS1", "LS1",
    }
)
BUSINESSES_BY_DENSITY = {"high": 500, "medium": 200, "low": 100}

# Checked in order; the first matching district prefix wins.
INDUSTRY_REPEAT_FACTORS: tuple[tuple[tuple[str, ...], str, float], ...] = (
    (("EC", "E14", "SW1A"), "office", 1.2),
    (("W1", "SW1", "WC2"), "retail", 0.9),
    (("IG", "RM", "DA", "UB"), "industrial", 1.1),
)
MIXED_REPEAT_FACTOR = 1.0

NEW_AREA_BOOKING_THRESHOLD = 10


def _district_root(district: str) -> str:
    """EC1A -> EC1, SW1A -> SW1; sub-district letters do not change density."""
    if len(district) > 2 and district[-1].isalpha() and district[-2].isdigit():
        return district[:-1]
    return district


def density_tier(district: str) -> str:
    root = _district_root(district)
    if root in HIGH_DENSITY_DISTRICTS:
        return "high"
    if root in MEDIUM_DENSITY_DISTRICTS:
        return "medium"
    return "low"


def industry_repeat_factor(district: str) -> tuple[str, float]:
    for prefixes, industry, factor in INDUSTRY_REPEAT_FACTORS:
        if district.startswith(prefixes):
            return industry, factor
    return "mixed", MIXED_REPEAT_FACTOR


def reliability_score(history: CustomerHistory) -> float:
    if history.total_bookings == 0:
        return 50.0
    rate = history.cancellation_rate
    if rate == 0:
        return 100.0
    if rate <= 0.1:
        return 100 - rate * 200
    if rate <= 0.3:
        return 80 - (rate - 0.1) * 200
    if rate <= 0.5:
        return 40 - (rate - 0.3) * 200
    return 0.0


def recency_score(days_since_last: Optional[int]) -> float:
    if days_since_last is None:
        return 50.0
    if days_since_last <= 30:
        return 100.0
    if days_since_last <= 90:
        return 80 + (90 - days_since_last) / 60 * 20
    if days_since_last <= 180:
        return 50 + (180 - days_since_last) / 90 * 30
    return max(10.0, 50 - (days_since_last - 180) * 0.1)


def calculate_customer_ltv(history: CustomerHistory, today: date) -> CustomerLTV:
    revenue = min(100.0, history.total_revenue / 10000 * 100)
    frequency = min(100.0, history.completed_bookings / 10 * 100)
    reliability = reliability_score(history)
    blended = revenue * 0.4 + frequency * 0.3 + reliability * 0.3

    days_since = (
        (today - history.last_completed_on).days if history.last_completed_on is not None else None
    )
    recency = recency_score(days_since)
    if recency >= 80:
        blended = min(100.0, blended * 1.05)
    elif recency < 50:
        blended *= 0.8 + recency * 0.004

    return CustomerLTV(
        total_revenue=round(history.total_revenue, 2),
        completed_bookings=history.completed_bookings,
        cancellation_rate=round(history.cancellation_rate, 3),
        ltv_score=round(max(0.0, min(100.0, blended)), 1),
        reliability_score=round(reliability, 1),
        frequency_score=round(frequency, 1),
    )


def calculate_network_effect(district: str, stats: AreaStats) -> NetworkEffect:
    estimated = BUSINESSES_BY_DENSITY[density_tier(district)]
    _, repeat = industry_repeat_factor(district)
    is_new_area = stats.booking_count < NEW_AREA_BOOKING_THRESHOLD
    penetration = min(1.0, stats.site_count / estimated) if estimated else 0.0

    if is_new_area and estimated > 50:
        score = min(100.0, 85 + estimated / 20)
    elif penetration < 0.1 and estimated > 30:
        score = 70 + (1 - penetration) * 20
    elif penetration < 0.3:
        score = 50 + (1 - penetration) * 30
    else:
        score = 40 + repeat * 20

    return NetworkEffect(
        postcode_district=district,
        is_new_area=is_new_area,
        estimated_businesses=estimated,
        penetration_rate=round(penetration, 4),
        future_booking_potential=round(max(0, estimated - stats.site_count) * repeat, 1),
        area_presence=90.0 if is_new_area else round(max(50.0, 80 - penetration * 30), 1),
        score=round(min(100.0, score), 1),
    )


class CustomerMetricsService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def get_customer_ltv(self, customer_id: int, *, today: Optional[date] = None) -> CustomerLTV:
        history = self._repository.get_customer_history(customer_id)
        return calculate_customer_ltv(history, today or datetime.now(timezone.utc).date())

    def get_network_effect(self, postcode: str) -> NetworkEffect:
        district = postcode_district(postcode)
        effect = calculate_network_effect(district, self._repository.get_area_stats(district))
        logger.debug(
            "Network effect computed | district=%s | new_area=%s | score=%.1f",
            district,
            effect.is_new_area,
            effect.score,
        )
        return effect
