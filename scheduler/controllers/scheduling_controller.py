"""HTTP controller layer for slot generation, scoring, pricing, presentation and booking."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from scheduler.controllers.dependencies import (
    get_booking_service,
    get_candidate_service,
    get_presentation_service,
    get_pricing_service,
    get_scorer,
)
from scheduler.domain.constraints import CUSTOMER_FOCUSED_WEIGHTS
from scheduler.domain.models import (
    FULL_DAY,
    BookingRequest,
    Flexibility,
    ScheduleSlot,
    SlotPeriod,
)
from scheduler.services.booking_service import (
    BookingNotFoundError,
    BookingService,
    BookingValidationError,
    SlotConflictError,
)
from scheduler.services.cancellation_service import CancellationValidationError
from scheduler.services.candidate_service import CandidateService, make_slot_id
from scheduler.services.presentation_service import (
    CustomerNotFoundError,
    PresentationOptions,
    SlotPresentationService,
)
from scheduler.services.pricing_service import (
    PricingDataMissingError,
    PricingService,
    PricingValidationError,
)
from scheduler.services.scoring_service import (
    CandidateDataMissingError,
    MultiPartyScorer,
    ScoringDataMissingError,
    get_score_summary,
    get_top_factors,
)
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["scheduling"])

_SLOT_PREFERENCES = {SlotPeriod.AM.value, SlotPeriod.PM.value, FULL_DAY}


class BookingRequestPayload(BaseModel):
    """Input DTO validated before entering service layer."""

    customer_id: int = Field(gt=0)
    site_id: int = Field(gt=0)
    service_id: int = Field(gt=0)
    estimated_qty: int = Field(default=0, ge=0)
    preferred_date: Optional[date] = None
    flexibility: Flexibility = Flexibility.EXACT
    preferred_slots: list[str] = Field(default_factory=list)
    budget: Optional[float] = Field(default=None, gt=0.0)

    @field_validator("preferred_slots")
    @classmethod
    def validate_preferred_slots(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip().upper() for item in value]
        for item in cleaned:
            if item not in _SLOT_PREFERENCES:
                raise ValueError("preferred_slots values must be AM, PM or FULL_DAY")
        return cleaned

    def to_domain(self) -> BookingRequest:
        return BookingRequest(
            customer_id=self.customer_id,
            site_id=self.site_id,
            service_id=self.service_id,
            estimated_qty=self.estimated_qty,
            preferred_date=self.preferred_date,
            flexibility=self.flexibility,
            preferred_slots=tuple(self.preferred_slots),
            budget=self.budget,
        )


class SlotPayload(BaseModel):
    engineer_id: int = Field(gt=0)
    date: date
    slot: SlotPeriod
    estimated_price: float = Field(ge=0.0)
    estimated_duration: int = Field(default=60, gt=0)
    nearby_job_count: int = Field(default=0, ge=0)

    def to_domain(self) -> ScheduleSlot:
        start_time, end_time = self.slot.window
        return ScheduleSlot(
            slot_id=make_slot_id(self.engineer_id, self.date, self.slot),
            engineer_id=self.engineer_id,
            date=self.date,
            slot=self.slot,
            start_time=start_time,
            end_time=end_time,
            estimated_price=self.estimated_price,
            estimated_duration=self.estimated_duration,
            is_cluster_opportunity=self.nearby_job_count > 0,
            nearby_job_count=self.nearby_job_count,
        )


class ViableSlotsRequest(BaseModel):
    request: BookingRequestPayload
    max_slots: Optional[int] = Field(default=None, gt=0, le=100)


class SlotRequest(BaseModel):
    request: BookingRequestPayload
    slot: SlotPayload


class ScoreSlotRequest(SlotRequest):
    customer_focused: bool = False


class PresentSlotsRequest(BaseModel):
    request: BookingRequestPayload
    max_slots: int = Field(default=4, gt=0, le=20)
    candidate_pool: int = Field(default=20, gt=0, le=100)
    include_flexibility_prompt: bool = True


class CommitBookingRequest(SlotRequest):
    quoted_price: Optional[float] = Field(default=None, ge=0.0)
    is_prepaid: bool = False


class BookingResponse(BaseModel):
    booking_id: int = Field(gt=0)
    engineer_id: Optional[int]
    date: date
    slot: SlotPeriod
    status: str
    quoted_price: Optional[float]
    is_prepaid: bool


def _booking_response(job: Any) -> BookingResponse:
    return BookingResponse(
        booking_id=job.booking_id,
        engineer_id=job.engineer_id,
        date=job.date,
        slot=job.slot,
        status=job.status,
        quoted_price=job.quoted_price,
        is_prepaid=job.is_prepaid,
    )


def _unexpected(message: str, exc: Exception) -> HTTPException:
    logger.exception(message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=message,
    )


@router.post("/viable_slots", status_code=status.HTTP_200_OK)
async def viable_slots(
    payload: ViableSlotsRequest,
    service: CandidateService = Depends(get_candidate_service),
) -> dict[str, Any]:
    try:
        slots = service.get_viable_slots(payload.request.to_domain(), max_slots=payload.max_slots)
        return {"slots": [slot.to_dict() for slot in slots], "count": len(slots)}
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("Failed to generate viable slots", exc) from exc


@router.post("/score_slot", status_code=status.HTTP_200_OK)
async def score_slot(
    payload: ScoreSlotRequest,
    scorer: MultiPartyScorer = Depends(get_scorer),
) -> dict[str, Any]:
    try:
        weights = CUSTOMER_FOCUSED_WEIGHTS if payload.customer_focused else None
        score = scorer.score_slot_allocation(
            payload.slot.to_domain(),
            payload.request.to_domain(),
            weights=weights,
        )
        top = get_top_factors(score)
        return {
            "score": score.to_dict(),
            "summary": get_score_summary(score),
            "strengths": [factor.to_dict() for factor in top.strengths],
            "weaknesses": [factor.to_dict() for factor in top.weaknesses],
        }
    except (ScoringDataMissingError, CandidateDataMissingError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (CancellationValidationError, PricingValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("Failed to score slot", exc) from exc


@router.post("/price_quote", status_code=status.HTTP_200_OK)
async def price_quote(
    payload: SlotRequest,
    service: PricingService = Depends(get_pricing_service),
) -> dict[str, Any]:
    try:
        return service.quote(payload.request.to_domain(), payload.slot.to_domain()).to_dict()
    except PricingDataMissingError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PricingValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("Failed to price slot", exc) from exc


@router.post("/price_simulation", status_code=status.HTTP_200_OK)
async def price_simulation(
    payload: SlotRequest,
    service: PricingService = Depends(get_pricing_service),
) -> dict[str, Any]:
    try:
        return service.simulate(payload.request.to_domain(), payload.slot.to_domain()).to_dict()
    except PricingDataMissingError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PricingValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("Failed to simulate pricing", exc) from exc


@router.post("/present_slots", status_code=status.HTTP_200_OK)
async def present_slots(
    payload: PresentSlotsRequest,
    service: SlotPresentationService = Depends(get_presentation_service),
) -> dict[str, Any]:
    try:
        presentation = service.present_slots_to_customer(
            payload.request.to_domain(),
            PresentationOptions(
                max_slots=payload.max_slots,
                candidate_pool=payload.candidate_pool,
                include_flexibility_prompt=payload.include_flexibility_prompt,
            ),
        )
        return presentation.to_dict()
    except CustomerNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("Failed to present slots", exc) from exc


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def commit_booking(
    payload: CommitBookingRequest,
    service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = service.commit_slot(
            payload.request.to_domain(),
            payload.slot.to_domain(),
            quoted_price=payload.quoted_price,
            is_prepaid=payload.is_prepaid,
        )
        return _booking_response(booking)
    except SlotConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except BookingValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("Failed to commit booking", exc) from exc


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse, status_code=status.HTTP_200_OK)
async def cancel_booking(
    booking_id: int,
    service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return _booking_response(service.cancel_booking(booking_id))
    except BookingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("Failed to cancel booking", exc) from exc
