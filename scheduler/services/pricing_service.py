"""Dynamic pricing: ordered rule stack with a minimum-margin floor."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Callable, Mapping, Optional

from scheduler.domain.constraints import (
    PricingRules,
    pricing_rules_from_dict,
    validate_pricing_rules,
)
from scheduler.domain.models import (
    BookingRequest,
    EngineerType,
    EngineerWithProfile,
    Flexibility,
    PriceAdjustment,
    PriceBreakdownItem,
    PriceQuote,
    PricingSimulation,
    ScheduleSlot,
)
from scheduler.repository.data_repository import DataRepository
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


RULE_CLUSTER = "cluster"
RULE_FLEXIBLE_DATE = "flexible_date"
RULE_URGENCY = "urgency"
RULE_OFF_PEAK = "off_peak"
RULE_LOYALTY = "loyalty"

PAT_ITEMS_PER_HOUR = 20
CONSULTANT_DAY_MINUTES = 480
DEFAULT_COST_SHARE = 0.5

_PENNY = Decimal("0.01")


class PricingError(Exception):
    """Base exception for pricing failures."""


class PricingValidationError(PricingError):
    """Raised when a pricing context is invalid."""


class PricingDataMissingError(PricingError):
    """Raised when the engineer behind a slot does not exist."""


@dataclass(frozen=True)
class PricingContext:
    """Everything the rule stack needs for one candidate slot."""

    base_price: float
    slot_date: date
    engineer: EngineerWithProfile
    estimated_duration: int
    flexibility: Flexibility = Flexibility.EXACT
    nearby_job_count: int = 0
    customer_completed_bookings: int = 0
    today: Optional[date] = None
    slot_id: str = ""


def _money(value: float | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(_PENNY, rounding=ROUND_HALF_UP)


def _labour_share(engineer: EngineerWithProfile) -> float:
    share = engineer.labour_percentage
    return share / 100.0 if share > 1.0 else share


_COST_BY_ENGINEER_TYPE: Mapping[EngineerType, Callable[[EngineerWithProfile, float, int], float]] = {
    EngineerType.PAT_TESTER: lambda engineer, price, minutes: (
        minutes / 60.0 * PAT_ITEMS_PER_HOUR * engineer.test_rate
    ),
    EngineerType.ELECTRICIAN: lambda engineer, price, minutes: price * _labour_share(engineer),
    EngineerType.CONSULTANT: lambda engineer, price, minutes: (
        minutes / CONSULTANT_DAY_MINUTES * engineer.day_rate
    ),
}


def engineer_cost(engineer: EngineerWithProfile, price: float, duration_minutes: int) -> float:
    """What the platform pays the engineer for one job."""
    cost_fn = _COST_BY_ENGINEER_TYPE.get(engineer.engineer_type)
    if cost_fn is None:
        return round(price * DEFAULT_COST_SHARE, 2)
    return round(cost_fn(engineer, price, duration_minutes), 2)


def margin_floor_for(cost: float, minimum_margin_percent: float) -> float:
    """Lowest allowed price, rounded up to the penny."""
    raw = Decimal(cost * (1.0 + minimum_margin_percent / 100.0))
    return float(raw.quantize(_PENNY, rounding=ROUND_CEILING))


def cluster_discount_percent(rules: PricingRules, nearby_job_count: int) -> float:
    rule = rules.cluster
    if not rule.enabled or nearby_job_count < rule.min_jobs:
        return 0.0
    scaled = rule.discount_percent + (nearby_job_count - rule.min_jobs) * 2.0
    return min(rule.discount_percent * 1.5, scaled)


def urgency_premium_percent(rules: PricingRules, days_until: int) -> float:
    rule = rules.urgency
    if not rule.enabled or days_until > rule.days_threshold:
        return 0.0
    if days_until <= 0:
        return rule.same_day_percent
    if days_until == 1:
        return rule.next_day_percent
    return rule.next_day_percent * (1.0 - (days_until - 1) / rule.days_threshold)


def loyalty_discount_percent(rules: PricingRules, completed_bookings: int) -> float:
    rule = rules.loyalty
    if not rule.enabled or completed_bookings < rule.min_bookings:
        return 0.0
    percent = rule.discount_percent
    if completed_bookings >= rule.min_bookings * 3:
        percent *= 2.0
    elif completed_bookings >= rule.min_bookings * 2:
        percent *= 1.5
    return min(percent, rule.max_discount_percent)


def load_active_pricing_rules(
    repository: DataRepository,
    settings: Optional[Settings] = None,
) -> PricingRules:
    """Active stored rule set, or the defaults when none is stored."""
    active_settings = settings or get_settings()
    payload = repository.get_active_pricing_rules()
    if payload is None:
        rules = PricingRules(minimum_margin_percent=active_settings.default_minimum_margin_percent)
        validate_pricing_rules(rules)
        return rules
    return pricing_rules_from_dict(payload)


class PricingEngine:
    """Applies cluster, flexible-date, urgency, off-peak and loyalty rules in that order."""

    def __init__(self, rules: Optional[PricingRules] = None) -> None:
        self._rules = rules or PricingRules()
        validate_pricing_rules(self._rules)

    @property
    def rules(self) -> PricingRules:
        return self._rules

    def _raw_adjustments(self, context: PricingContext, today: date) -> list[tuple[str, str, float, bool]]:
        rules = self._rules
        adjustments: list[tuple[str, str, float, bool]] = []

        cluster = cluster_discount_percent(rules, context.nearby_job_count)
        if cluster > 0:
            adjustments.append(
                (RULE_CLUSTER, f"Cluster discount ({context.nearby_job_count} nearby jobs)", cluster, True)
            )

        if rules.flexible_date.enabled and context.flexibility is Flexibility.FLEXIBLE_WEEK:
            adjustments.append(
                (RULE_FLEXIBLE_DATE, "Flexible date discount", rules.flexible_date.discount_percent, True)
            )

        days_until = (context.slot_date - today).days
        urgency = urgency_premium_percent(rules, days_until)
        if urgency > 0:
            label = "Same-day premium" if days_until <= 0 else "Short-notice premium"
            adjustments.append((RULE_URGENCY, label, urgency, False))

        if rules.off_peak.enabled and context.slot_date.weekday() in rules.off_peak.days:
            adjustments.append(
                (RULE_OFF_PEAK, "Off-peak day discount", rules.off_peak.discount_percent, True)
            )

        loyalty = loyalty_discount_percent(rules, context.customer_completed_bookings)
        if loyalty > 0:
            adjustments.append((RULE_LOYALTY, "Loyalty discount", loyalty, True))

        return adjustments

    def calculate_price(self, context: PricingContext) -> PriceQuote:
        if context.base_price < 0:
            raise PricingValidationError("base_price must be >= 0")
        if context.estimated_duration < 0:
            raise PricingValidationError("estimated_duration must be >= 0")

        today = context.today or datetime.now(timezone.utc).date()
        base = _money(context.base_price)

        # Percentages always apply to the base price so the stack is additive.
        adjustments = [
            PriceAdjustment(
                rule_type=rule_type,
                label=label,
                percent=round(percent, 4),
                amount=float(_money(base * Decimal(str(percent)) / 100)),
                is_discount=is_discount,
            )
            for rule_type, label, percent, is_discount in self._raw_adjustments(context, today)
        ]

        cost = engineer_cost(context.engineer, context.base_price, context.estimated_duration)
        floor = margin_floor_for(cost, self._rules.minimum_margin_percent)
        adjustments, final, floor_applied = self._enforce_margin_floor(base, adjustments, Decimal(str(floor)))

        total_discount = sum((_money(item.amount) for item in adjustments if item.is_discount), Decimal("0"))
        total_premium = sum((_money(item.amount) for item in adjustments if not item.is_discount), Decimal("0"))
        effective = (
            float((total_discount - total_premium) / base * 100) if base > 0 else 0.0
        )

        breakdown = [PriceBreakdownItem(label="Base price", amount=float(base))]
        for item in adjustments:
            if item.amount <= 0:
                continue
            breakdown.append(
                PriceBreakdownItem(
                    label=item.label,
                    amount=-item.amount if item.is_discount else item.amount,
                    is_highlight=item.is_discount,
                )
            )
        expected = base - total_discount + total_premium
        if final > expected:
            breakdown.append(PriceBreakdownItem(label="Minimum price adjustment", amount=float(final - expected)))
        breakdown.append(PriceBreakdownItem(label="Total", amount=float(final), is_highlight=True))

        quote = PriceQuote(
            base_price=float(base),
            adjustments=tuple(adjustments),
            total_discount=float(total_discount),
            total_premium=float(total_premium),
            final_price=float(final),
            effective_discount_percent=round(effective, 2),
            engineer_cost=cost,
            margin_floor=floor,
            margin_floor_applied=floor_applied,
            rules_name=self._rules.name,
            rules_version=self._rules.version,
            breakdown=tuple(breakdown),
        )
        logger.debug(
            "Pricing completed | slot_id=%s | base=%.2f | final_price=%.2f | floor_applied=%s",
            context.slot_id,
            quote.base_price,
            quote.final_price,
            quote.margin_floor_applied,
        )
        return quote

    @staticmethod
    def _enforce_margin_floor(
        base: Decimal,
        adjustments: list[PriceAdjustment],
        floor: Decimal,
    ) -> tuple[list[PriceAdjustment], Decimal, bool]:
        """Shrink discounts largest-first until the floor holds; raise to the floor if still short."""
        discount = sum((_money(item.amount) for item in adjustments if item.is_discount), Decimal("0"))
        premium = sum((_money(item.amount) for item in adjustments if not item.is_discount), Decimal("0"))
        final = base - discount + premium
        if final >= floor:
            return adjustments, final, False

        shortfall = floor - final
        scaled = list(adjustments)
        order = sorted(
            (index for index, item in enumerate(adjustments) if item.is_discount),
            key=lambda index: (-adjustments[index].amount, index),
        )
        for index in order:
            if shortfall <= 0:
                break
            item = scaled[index]
            amount = _money(item.amount)
            reduction = min(amount, shortfall)
            new_amount = amount - reduction
            new_percent = item.percent * float(new_amount / amount) if amount > 0 else 0.0
            scaled[index] = replace(
                item,
                amount=float(new_amount),
                percent=round(new_percent, 4),
                scaled_by_margin_floor=True,
            )
            shortfall -= reduction
            final += reduction

        if final < floor:
            final = floor
        return scaled, final, True

    def simulate_pricing(self, context: PricingContext) -> PricingSimulation:
        """Same slot priced with and without accepting a flexible date."""
        exact = self.calculate_price(replace(context, flexibility=Flexibility.EXACT))
        flexible = self.calculate_price(replace(context, flexibility=Flexibility.FLEXIBLE_WEEK))
        return PricingSimulation(
            exact_date=exact,
            flexible_date=flexible,
            savings_with_flexibility=round(exact.final_price - flexible.final_price, 2),
        )


class PricingService:
    """Quotes a single slot using the active rule set and the customer's history."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        rules: Optional[PricingRules] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._engine = PricingEngine(rules) if rules is not None else None

    @property
    def engine(self) -> PricingEngine:
        if self._engine is None:
            self._engine = PricingEngine(load_active_pricing_rules(self._repository, self._settings))
        return self._engine

    def use_rules(self, rules: PricingRules) -> None:
        self._engine = PricingEngine(rules)

    def build_context(
        self,
        request: BookingRequest,
        slot: ScheduleSlot,
        *,
        today: Optional[date] = None,
    ) -> PricingContext:
        engineer = self._repository.get_engineer(slot.engineer_id)
        if engineer is None:
            raise PricingDataMissingError(f"engineer_id {slot.engineer_id} not found")
        history = self._repository.get_customer_history(request.customer_id)
        return PricingContext(
            base_price=slot.estimated_price,
            slot_date=slot.date,
            engineer=engineer,
            estimated_duration=slot.estimated_duration,
            flexibility=request.flexibility,
            nearby_job_count=slot.nearby_job_count,
            customer_completed_bookings=history.completed_bookings,
            today=today,
            slot_id=slot.slot_id,
        )

    def quote(self, request: BookingRequest, slot: ScheduleSlot, *, today: Optional[date] = None) -> PriceQuote:
        return self.engine.calculate_price(self.build_context(request, slot, today=today))

    def simulate(
        self,
        request: BookingRequest,
        slot: ScheduleSlot,
        *,
        today: Optional[date] = None,
    ) -> PricingSimulation:
        return self.engine.simulate_pricing(self.build_context(request, slot, today=today))
