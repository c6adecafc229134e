"""Service-type lookup table: estimation rules and qualification keywords."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from scheduler.domain.models import Qualification, Service, ServiceType


DEFAULT_JOB_MINUTES = 60


@dataclass(frozen=True)
class ServiceEstimate:
    quantity: int
    price: float
    duration_minutes: int


EstimateFn = Callable[[Service, int], ServiceEstimate]


def _duration(service: Service, quantity: int) -> int:
    minutes = service.base_minutes + service.minutes_per_unit * quantity
    return int(round(minutes)) if minutes > 0 else DEFAULT_JOB_MINUTES


def per_unit_estimate(service: Service, quantity: int) -> ServiceEstimate:
    """Unit-priced work (appliances, devices, circuits) subject to a minimum charge."""
    price = max(service.base_price * quantity, service.min_charge)
    return ServiceEstimate(
        quantity=quantity,
        price=round(price, 2),
        duration_minutes=_duration(service, quantity),
    )


def flat_fee_estimate(service: Service, quantity: int) -> ServiceEstimate:
    """Assessments charge one fee per visit; quantity (floors) only drives duration."""
    price = max(service.base_price, service.min_charge)
    return ServiceEstimate(
        quantity=quantity,
        price=round(price, 2),
        duration_minutes=_duration(service, quantity),
    )


@dataclass(frozen=True)
class ServiceProfile:
    service_type: ServiceType
    default_quantity: int
    qualification_keywords: tuple[str, ...]
    estimator: EstimateFn


SERVICE_PROFILES: Mapping[ServiceType, ServiceProfile] = MappingProxyType(
    {
        ServiceType.PAT_TESTING: ServiceProfile(
            service_type=ServiceType.PAT_TESTING,
            default_quantity=50,
            qualification_keywords=("pat", "2377"),
            estimator=per_unit_estimate,
        ),
        ServiceType.FIRE_ALARM_TESTING: ServiceProfile(
            service_type=ServiceType.FIRE_ALARM_TESTING,
            default_quantity=4,
            qualification_keywords=("fire alarm", "5839"),
            estimator=per_unit_estimate,
        ),
        ServiceType.EMERGENCY_LIGHTING: ServiceProfile(
            service_type=ServiceType.EMERGENCY_LIGHTING,
            default_quantity=15,
            qualification_keywords=("emergency lighting", "5266"),
            estimator=per_unit_estimate,
        ),
        ServiceType.FIXED_WIRE_TESTING: ServiceProfile(
            service_type=ServiceType.FIXED_WIRE_TESTING,
            default_quantity=12,
            qualification_keywords=("18th edition", "2391", "eicr"),
            estimator=per_unit_estimate,
        ),
        ServiceType.FIRE_RISK_ASSESSMENT: ServiceProfile(
            service_type=ServiceType.FIRE_RISK_ASSESSMENT,
            default_quantity=1,
            qualification_keywords=("fire risk", "nebosh"),
            estimator=flat_fee_estimate,
        ),
    }
)

_unmapped = set(ServiceType) - set(SERVICE_PROFILES)
if _unmapped:
    raise RuntimeError(f"Service types without an estimation profile: {sorted(_unmapped)}")


def get_service_profile(service_type: ServiceType) -> ServiceProfile:
    return SERVICE_PROFILES[service_type]


def estimate_service(service: Service, quantity: int) -> ServiceEstimate:
    profile = get_service_profile(service.service_type)
    resolved_quantity = quantity if quantity > 0 else profile.default_quantity
    return profile.estimator(service, resolved_quantity)


def has_valid_qualification(
    service_type: ServiceType,
    qualifications: Iterable[Qualification],
    on_date: date,
) -> bool:
    """False only when every qualification relevant to the service has expired."""
    keywords = get_service_profile(service_type).qualification_keywords
    relevant = [
        qualification
        for qualification in qualifications
        if any(keyword in qualification.name.lower() for keyword in keywords)
    ]
    if not relevant:
        return True
    return any(qualification.is_valid_on(on_date) for qualification in relevant)
