"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from scheduler.services.booking_service import BookingService
from scheduler.services.cancellation_service import CancellationModelService, CancellationRiskService
from scheduler.services.candidate_service import CandidateService
from scheduler.services.presentation_service import SlotPresentationService
from scheduler.services.pricing_service import PricingService
from scheduler.services.route_service import RouteOptimizationService
from scheduler.services.scoring_service import MultiPartyScorer
from scheduler.services.workload_service import WorkloadBalanceService


def _from_state(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_candidate_service(request: Request) -> CandidateService:
    return _from_state(request, "candidate_service", "Candidate service")


def get_scorer(request: Request) -> MultiPartyScorer:
    return _from_state(request, "scorer", "Scoring service")


def get_pricing_service(request: Request) -> PricingService:
    return _from_state(request, "pricing_service", "Pricing service")


def get_cancellation_service(request: Request) -> CancellationRiskService:
    return _from_state(request, "cancellation_service", "Cancellation risk service")


def get_workload_service(request: Request) -> WorkloadBalanceService:
    return _from_state(request, "workload_service", "Workload service")


def get_route_service(request: Request) -> RouteOptimizationService:
    return _from_state(request, "route_service", "Route service")


def get_presentation_service(request: Request) -> SlotPresentationService:
    return _from_state(request, "presentation_service", "Presentation service")


def get_booking_service(request: Request) -> BookingService:
    return _from_state(request, "booking_service", "Booking service")


def get_cancellation_model_service(request: Request) -> CancellationModelService:
    return _from_state(request, "cancellation_model_service", "Cancellation model service")
