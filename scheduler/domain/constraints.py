"""Validated configuration structures for scoring, pricing and routing."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from types import MappingProxyType
from typing import Any, Mapping

from scheduler.domain.models import Party


WEIGHT_TOLERANCE = 1e-6


class ConfigurationError(ValueError):
    """Raised when a scoring, pricing or solver configuration is invalid."""


DEFAULT_CUSTOMER_FACTOR_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        "time_match": 0.25,
        "wait_time": 0.25,
        "engineer_quality": 0.30,
        "price_fit": 0.20,
    }
)
DEFAULT_ENGINEER_FACTOR_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        "travel_efficiency": 0.35,
        "earnings_per_hour": 0.30,
        "route_continuity": 0.20,
        "workload_balance": 0.15,
    }
)
DEFAULT_PLATFORM_FACTOR_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        "margin": 0.25,
        "utilization_value": 0.25,
        "customer_ltv": 0.20,
        "network_effect": 0.15,
        "cancellation_risk": 0.15,
    }
)

_DEFAULT_FACTORS_BY_PARTY = {
    Party.CUSTOMER: DEFAULT_CUSTOMER_FACTOR_WEIGHTS,
    Party.ENGINEER: DEFAULT_ENGINEER_FACTOR_WEIGHTS,
    Party.PLATFORM: DEFAULT_PLATFORM_FACTOR_WEIGHTS,
}


@dataclass(frozen=True)
class ScoringWeights:
    """Party and sub-factor weights; every group must sum to 1.0."""

    customer: float
    engineer: float
    platform: float
    customer_factors: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CUSTOMER_FACTOR_WEIGHTS)
    )
    engineer_factors: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_ENGINEER_FACTOR_WEIGHTS)
    )
    platform_factors: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_PLATFORM_FACTOR_WEIGHTS)
    )
    name: str = "default"
    version: int = 1

    def __post_init__(self) -> None:
        for attribute in ("customer_factors", "engineer_factors", "platform_factors"):
            object.__setattr__(
                self,
                attribute,
                MappingProxyType({str(k): float(v) for k, v in getattr(self, attribute).items()}),
            )
        validate_scoring_weights(self)

    def party_weight(self, party: Party) -> float:
        return float(getattr(self, party.value))

    def factor_weights(self, party: Party) -> Mapping[str, float]:
        return getattr(self, f"{party.value}_factors")

    def party_weights(self) -> dict[str, float]:
        return {party.value: self.party_weight(party) for party in Party}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "customer": self.customer,
            "engineer": self.engineer,
            "platform": self.platform,
            "customer_factors": dict(self.customer_factors),
            "engineer_factors": dict(self.engineer_factors),
            "platform_factors": dict(self.platform_factors),
        }


def _check_group_sum(label: str, values: Mapping[str, float]) -> None:
    for key, value in values.items():
        if value < 0.0 or value > 1.0:
            raise ConfigurationError(f"{label} weight {key!r} must be between 0 and 1")
    total = sum(values.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ConfigurationError(f"{label} weights must sum to 1.0, got {total:.6f}")


def validate_scoring_weights(weights: ScoringWeights) -> None:
    _check_group_sum("party", weights.party_weights())
    for party, defaults in _DEFAULT_FACTORS_BY_PARTY.items():
        configured = weights.factor_weights(party)
        missing = set(defaults) - set(configured)
        unknown = set(configured) - set(defaults)
        if missing:
            raise ConfigurationError(
                f"{party.value} factor weights missing: {', '.join(sorted(missing))}"
            )
        if unknown:
            raise ConfigurationError(
                f"{party.value} factor weights contain unknown factors: {', '.join(sorted(unknown))}"
            )
        _check_group_sum(f"{party.value} factor", configured)


def scoring_weights_from_dict(data: Mapping[str, Any]) -> ScoringWeights:
    try:
        return ScoringWeights(
            customer=float(data["customer"]),
            engineer=float(data["engineer"]),
            platform=float(data["platform"]),
            customer_factors=data.get("customer_factors", DEFAULT_CUSTOMER_FACTOR_WEIGHTS),
            engineer_factors=data.get("engineer_factors", DEFAULT_ENGINEER_FACTOR_WEIGHTS),
            platform_factors=data.get("platform_factors", DEFAULT_PLATFORM_FACTOR_WEIGHTS),
            name=str(data.get("name", "default")),
            version=int(data.get("version", 1)),
        )
    except (KeyError, TypeError) as exc:
        raise ConfigurationError(f"Malformed scoring weights: {exc}") from exc


DEFAULT_SCORING_WEIGHTS = ScoringWeights(customer=0.4, engineer=0.3, platform=0.3)
CUSTOMER_FOCUSED_WEIGHTS = ScoringWeights(
    customer=0.5,
    engineer=0.25,
    platform=0.25,
    name="customer_focused",
)


@dataclass(frozen=True)
class ClusterDiscountRule:
    enabled: bool = True
    radius_km: float = 5.0
    min_jobs: int = 1
    discount_percent: float = 10.0


@dataclass(frozen=True)
class FlexibleDateDiscountRule:
    enabled: bool = True
    discount_percent: float = 7.0


@dataclass(frozen=True)
class UrgencyPremiumRule:
    enabled: bool = True
    days_threshold: int = 2
    same_day_percent: float = 20.0
    next_day_percent: float = 15.0


@dataclass(frozen=True)
class OffPeakDiscountRule:
    enabled: bool = True
    # Python weekday numbers, Monday is 0.
    days: tuple[int, ...] = (0, 1)
    discount_percent: float = 5.0


@dataclass(frozen=True)
class LoyaltyDiscountRule:
    enabled: bool = True
    min_bookings: int = 5
    discount_percent: float = 5.0
    max_discount_percent: float = 15.0


@dataclass(frozen=True)
class PricingRules:
    """Named, versioned rule stack. Stored as data and validated on load."""

    name: str = "standard"
    version: int = 1
    minimum_margin_percent: float = 15.0
    cluster: ClusterDiscountRule = field(default_factory=ClusterDiscountRule)
    flexible_date: FlexibleDateDiscountRule = field(default_factory=FlexibleDateDiscountRule)
    urgency: UrgencyPremiumRule = field(default_factory=UrgencyPremiumRule)
    off_peak: OffPeakDiscountRule = field(default_factory=OffPeakDiscountRule)
    loyalty: LoyaltyDiscountRule = field(default_factory=LoyaltyDiscountRule)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["off_peak"]["days"] = list(self.off_peak.days)
        return data

    @property
    def max_stacked_discount_percent(self) -> float:
        total = 0.0
        if self.cluster.enabled:
            total += self.cluster.discount_percent * 1.5
        if self.flexible_date.enabled:
            total += self.flexible_date.discount_percent
        if self.off_peak.enabled:
            total += self.off_peak.discount_percent
        if self.loyalty.enabled:
            total += self.loyalty.max_discount_percent
        return total


def _check_percent(label: str, value: float) -> None:
    if not 0.0 <= value < 100.0:
        raise ConfigurationError(f"{label} must be in [0, 100)")


def validate_pricing_rules(rules: PricingRules) -> None:
    if not rules.name.strip():
        raise ConfigurationError("pricing rules name must be non-empty")
    if rules.version < 1:
        raise ConfigurationError("pricing rules version must be >= 1")
    if not 0.0 <= rules.minimum_margin_percent <= 100.0:
        raise ConfigurationError("minimum_margin_percent must be between 0 and 100")

    if rules.cluster.radius_km <= 0.0:
        raise ConfigurationError("cluster.radius_km must be > 0")
    if rules.cluster.min_jobs < 1:
        raise ConfigurationError("cluster.min_jobs must be >= 1")
    _check_percent("cluster.discount_percent", rules.cluster.discount_percent)

    _check_percent("flexible_date.discount_percent", rules.flexible_date.discount_percent)

    if rules.urgency.days_threshold < 1:
        raise ConfigurationError("urgency.days_threshold must be >= 1")
    _check_percent("urgency.next_day_percent", rules.urgency.next_day_percent)
    _check_percent("urgency.same_day_percent", rules.urgency.same_day_percent)
    if rules.urgency.same_day_percent < rules.urgency.next_day_percent:
        raise ConfigurationError("urgency.same_day_percent must be >= next_day_percent")

    if len(set(rules.off_peak.days)) != len(rules.off_peak.days):
        raise ConfigurationError("off_peak.days must not repeat")
    if any(day < 0 or day > 6 for day in rules.off_peak.days):
        raise ConfigurationError("off_peak.days must be weekday numbers 0-6")
    _check_percent("off_peak.discount_percent", rules.off_peak.discount_percent)

    if rules.loyalty.min_bookings < 1:
        raise ConfigurationError("loyalty.min_bookings must be >= 1")
    _check_percent("loyalty.discount_percent", rules.loyalty.discount_percent)
    _check_percent("loyalty.max_discount_percent", rules.loyalty.max_discount_percent)
    if rules.loyalty.discount_percent > rules.loyalty.max_discount_percent:
        raise ConfigurationError("loyalty.discount_percent must not exceed max_discount_percent")

    # Discounts that can wipe out the whole base price leave no room above the floor.
    if rules.max_stacked_discount_percent >= 100.0:
        raise ConfigurationError(
            "enabled discounts can stack to 100% or more; margin floor is unreachable"
        )


_RULE_SECTIONS = {
    "cluster": ClusterDiscountRule,
    "flexible_date": FlexibleDateDiscountRule,
    "urgency": UrgencyPremiumRule,
    "off_peak": OffPeakDiscountRule,
    "loyalty": LoyaltyDiscountRule,
}


def _build_section(section_name: str, cls: type, payload: Mapping[str, Any]) -> Any:
    allowed = {item.name for item in fields(cls)}
    unknown = set(payload) - allowed
    if unknown:
        raise ConfigurationError(
            f"pricing rule {section_name!r} has unknown keys: {', '.join(sorted(unknown))}"
        )
    values = dict(payload)
    if "days" in values:
        values["days"] = tuple(int(day) for day in values["days"])
    try:
        return cls(**values)
    except TypeError as exc:
        raise ConfigurationError(f"pricing rule {section_name!r} is malformed: {exc}") from exc


def pricing_rules_from_dict(data: Mapping[str, Any]) -> PricingRules:
    """Parse stored JSON into validated rules; raises ConfigurationError."""
    unknown = set(data) - {"name", "version", "minimum_margin_percent", *_RULE_SECTIONS}
    if unknown:
        raise ConfigurationError(f"pricing rules have unknown keys: {', '.join(sorted(unknown))}")

    sections = {
        section_name: _build_section(section_name, cls, data.get(section_name, {}))
        for section_name, cls in _RULE_SECTIONS.items()
    }
    rules = PricingRules(
        name=str(data.get("name", "standard")),
        version=int(data.get("version", 1)),
        minimum_margin_percent=float(data.get("minimum_margin_percent", 15.0)),
        **sections,
    )
    validate_pricing_rules(rules)
    return rules


@dataclass(frozen=True)
class RouteSolverConfig:
    solver_max_time_seconds: float
    cp_sat_workers: int
    random_seed: int
    # CP-SAT needs integer arc costs; distances are scaled to metres.
    distance_scale: int = 1000


def validate_route_solver_config(config: RouteSolverConfig) -> None:
    if config.solver_max_time_seconds <= 0:
        raise ConfigurationError("solver_max_time_seconds must be > 0")
    if config.cp_sat_workers <= 0:
        raise ConfigurationError("cp_sat_workers must be > 0")
    if config.random_seed < 0:
        raise ConfigurationError("random_seed must be >= 0")
    if config.distance_scale <= 0:
        raise ConfigurationError("distance_scale must be > 0")
