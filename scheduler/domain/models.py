"""Domain entities and request-scoped value objects."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Optional


class SlotPeriod(str, Enum):
    AM = "AM"
    PM = "PM"

    @property
    def window(self) -> tuple[str, str]:
        return SLOT_WINDOWS[self]

    @property
    def sort_key(self) -> int:
        return 0 if self is SlotPeriod.AM else 1


SLOT_WINDOWS: dict[SlotPeriod, tuple[str, str]] = {
    SlotPeriod.AM: ("09:00", "12:00"),
    SlotPeriod.PM: ("13:00", "17:00"),
}

FULL_DAY = "FULL_DAY"


class Flexibility(str, Enum):
    EXACT = "exact"
    FLEXIBLE_DAY = "flexible_day"
    FLEXIBLE_WEEK = "flexible_week"

    @property
    def is_flexible(self) -> bool:
        return self is not Flexibility.EXACT


class EngineerType(str, Enum):
    PAT_TESTER = "pat_tester"
    ELECTRICIAN = "electrician"
    CONSULTANT = "consultant"
    GENERAL = "general"


class ServiceType(str, Enum):
    """Closed set of bookable services, keyed by catalogue slug."""

    PAT_TESTING = "pat-testing"
    FIRE_ALARM_TESTING = "fire-alarm-testing"
    EMERGENCY_LIGHTING = "emergency-lighting"
    FIXED_WIRE_TESTING = "fixed-wire-testing"
    FIRE_RISK_ASSESSMENT = "fire-risk-assessment"

    @classmethod
    def from_slug(cls, slug: str) -> "ServiceType":
        try:
            return cls(slug.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown service slug: {slug!r}") from exc


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BadgeType(str, Enum):
    BEST_VALUE = "BEST_VALUE"
    FASTEST = "FASTEST"
    TOP_RATED = "TOP_RATED"
    CLUSTER_DISCOUNT = "CLUSTER_DISCOUNT"
    ECO_FRIENDLY = "ECO_FRIENDLY"


class Party(str, Enum):
    CUSTOMER = "customer"
    ENGINEER = "engineer"
    PLATFORM = "platform"


STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"
STATUS_DECLINED = "DECLINED"

# Bookings that occupy an engineer slot.
ACTIVE_BOOKING_STATUSES = ("PENDING", "CONFIRMED", "EN_ROUTE", "ON_SITE", "IN_PROGRESS")
# Bookings fixed enough to be routed.
ROUTABLE_BOOKING_STATUSES = ("CONFIRMED", "EN_ROUTE", "ON_SITE", "IN_PROGRESS")
# Bookings that count towards an engineer's workload.
WORKLOAD_BOOKING_STATUSES = ACTIVE_BOOKING_STATUSES + (STATUS_COMPLETED,)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


class Serializable:
    """Mixin giving frozen dataclasses a JSON-ready ``to_dict``."""

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))  # type: ignore[call-overload]


@dataclass(frozen=True)
class Coordinates(Serializable):
    lat: float
    lng: float


@dataclass(frozen=True)
class BookingRequest(Serializable):
    customer_id: int
    site_id: int
    service_id: int
    estimated_qty: int
    preferred_date: Optional[date] = None
    flexibility: Flexibility = Flexibility.EXACT
    preferred_slots: tuple[str, ...] = ()
    budget: Optional[float] = None


@dataclass(frozen=True)
class ScheduleSlot(Serializable):
    slot_id: str
    engineer_id: int
    date: date
    slot: SlotPeriod
    start_time: str
    end_time: str
    estimated_price: float
    estimated_duration: int
    is_cluster_opportunity: bool
    nearby_job_count: int

    @property
    def triple(self) -> tuple[int, date, SlotPeriod]:
        return (self.engineer_id, self.date, self.slot)


@dataclass(frozen=True)
class Competency(Serializable):
    service_id: int
    experience_years: float


@dataclass(frozen=True)
class CoverageArea(Serializable):
    postcode_prefix: str
    radius_km: float
    coordinates: Optional[Coordinates] = None


@dataclass(frozen=True)
class Qualification(Serializable):
    name: str
    expiry_date: Optional[date] = None

    def is_valid_on(self, on_date: date) -> bool:
        return self.expiry_date is None or self.expiry_date >= on_date


@dataclass(frozen=True)
class EngineerWithProfile(Serializable):
    """Read-only engineer snapshot, refreshed for every request."""

    engineer_id: int
    name: str
    engineer_type: EngineerType
    years_experience: float
    day_rate: float
    test_rate: float
    labour_percentage: float
    rating: float
    competencies: tuple[Competency, ...]
    coverage_areas: tuple[CoverageArea, ...]
    qualifications: tuple[Qualification, ...]
    base_postcode: str
    base_coordinates: Optional[Coordinates]
    preferred_radius_km: float


@dataclass(frozen=True)
class Site(Serializable):
    site_id: int
    customer_id: int
    name: str
    postcode: str
    coordinates: Optional[Coordinates]


@dataclass(frozen=True)
class Service(Serializable):
    service_id: int
    slug: str
    name: str
    service_type: ServiceType
    base_price: float
    min_charge: float
    base_minutes: int
    minutes_per_unit: float


@dataclass(frozen=True)
class Customer(Serializable):
    customer_id: int
    name: str
    company: Optional[str] = None


@dataclass(frozen=True)
class CustomerHistory(Serializable):
    total_bookings: int
    completed_bookings: int
    cancelled_bookings: int
    total_revenue: float
    last_completed_on: Optional[date] = None

    @property
    def cancellation_rate(self) -> float:
        if self.total_bookings == 0:
            return 0.0
        return self.cancelled_bookings / self.total_bookings


@dataclass(frozen=True)
class BookedJob(Serializable):
    """Existing booking joined with its site location."""

    booking_id: int
    engineer_id: Optional[int]
    customer_id: int
    site_id: int
    service_id: int
    date: date
    slot: SlotPeriod
    status: str
    quoted_price: Optional[float]
    estimated_duration: Optional[int]
    postcode: str
    coordinates: Optional[Coordinates]
    is_prepaid: bool = False


@dataclass(frozen=True)
class ScoreFactor(Serializable):
    factor_id: str
    name: str
    party: Party
    raw_value: float
    raw_unit: str
    normalized_score: float
    weight: float
    contribution: float
    explanation: str


@dataclass(frozen=True)
class SlotScore(Serializable):
    slot_id: str
    customer_score: float
    engineer_score: float
    platform_score: float
    composite_score: float
    factors: tuple[ScoreFactor, ...]
    party_weights: dict[str, float]

    def factor(self, factor_id: str) -> Optional[ScoreFactor]:
        for item in self.factors:
            if item.factor_id == factor_id:
                return item
        return None


@dataclass(frozen=True)
class RiskFactor(Serializable):
    name: str
    impact: float
    value: str


@dataclass(frozen=True)
class CancellationRisk(Serializable):
    probability: float
    score: int
    tier: RiskTier
    factors: tuple[RiskFactor, ...]
    mitigations: tuple[str, ...]
    model_probability: Optional[float] = None

    def factor(self, name: str) -> Optional[RiskFactor]:
        for item in self.factors:
            if item.name == name:
                return item
        return None


@dataclass(frozen=True)
class WorkloadBalance(Serializable):
    engineer_id: int
    week_start: date
    weekly_jobs: int
    weekly_revenue: float
    weekly_travel_km: float
    compared_to_average: float
    jobs_on_day: int
    score: float
    is_overloaded: bool
    is_underloaded: bool


@dataclass(frozen=True)
class CapacityCheck(Serializable):
    available: bool
    reason: Optional[str]
    weekly_jobs: int
    weekly_limit: Optional[int]
    jobs_on_day: int


@dataclass(frozen=True)
class PriceAdjustment(Serializable):
    rule_type: str
    label: str
    percent: float
    amount: float
    is_discount: bool
    scaled_by_margin_floor: bool = False


@dataclass(frozen=True)
class PriceBreakdownItem(Serializable):
    label: str
    amount: float
    is_highlight: bool = False


@dataclass(frozen=True)
class PriceQuote(Serializable):
    base_price: float
    adjustments: tuple[PriceAdjustment, ...]
    total_discount: float
    total_premium: float
    final_price: float
    effective_discount_percent: float
    engineer_cost: float
    margin_floor: float
    margin_floor_applied: bool
    rules_name: str
    rules_version: int
    breakdown: tuple[PriceBreakdownItem, ...]

    def discount_for(self, rule_type: str) -> float:
        return sum(
            item.amount
            for item in self.adjustments
            if item.is_discount and item.rule_type == rule_type
        )


@dataclass(frozen=True)
class PricingSimulation(Serializable):
    exact_date: PriceQuote
    flexible_date: PriceQuote
    savings_with_flexibility: float


@dataclass(frozen=True)
class RouteStop(Serializable):
    booking_id: int
    site_id: int
    postcode: str
    coordinates: Optional[Coordinates]
    slot: SlotPeriod
    sequence: int
    distance_from_previous_km: float
    travel_minutes_from_previous: int
    estimated_arrival: str


@dataclass(frozen=True)
class OptimizedRoute(Serializable):
    engineer_id: int
    date: date
    stops: tuple[RouteStop, ...]
    total_km: float
    total_travel_minutes: int
    efficiency_score: float
    efficiency_rating: str
    strategy: str


@dataclass(frozen=True)
class TravelEfficiency(Serializable):
    distance_km: float
    travel_minutes: int
    efficiency_score: float
    route_context: str
    savings_vs_naive_km: float


@dataclass(frozen=True)
class RouteContinuity(Serializable):
    insertion_cost_km: float
    score: float
    gap_utilization: float
    direction_alignment: float


@dataclass(frozen=True)
class CustomerLTV(Serializable):
    total_revenue: float
    completed_bookings: int
    cancellation_rate: float
    ltv_score: float
    reliability_score: float
    frequency_score: float


@dataclass(frozen=True)
class NetworkEffect(Serializable):
    postcode_district: str
    is_new_area: bool
    estimated_businesses: int
    penetration_rate: float
    future_booking_potential: float
    area_presence: float
    score: float


@dataclass(frozen=True)
class Badge(Serializable):
    badge_type: BadgeType
    label: str
    color: str


@dataclass(frozen=True)
class PresentedSlot(Serializable):
    slot: ScheduleSlot
    rank: int
    price: float
    original_price: float
    discount_amount: float
    badges: tuple[Badge, ...]
    explanation: str
    composite_score: float
    risk_tier: RiskTier

    def has_badge(self, badge_type: BadgeType) -> bool:
        return any(badge.badge_type is badge_type for badge in self.badges)


@dataclass(frozen=True)
class SavingsBreakdown(Serializable):
    total: float
    cluster: float
    flexibility: float
    other: float
    message: str


@dataclass(frozen=True)
class FlexibilityPrompt(Serializable):
    show: bool
    savings_amount: float = 0.0
    message: str = ""
    alternative_slot_id: Optional[str] = None


@dataclass(frozen=True)
class SlotPresentation(Serializable):
    status: str
    recommended: Optional[PresentedSlot]
    alternatives: tuple[PresentedSlot, ...]
    savings: SavingsBreakdown
    flexibility_prompt: FlexibilityPrompt
    evaluated_candidates: int = 0
    skipped_candidates: tuple[str, ...] = field(default_factory=tuple)
