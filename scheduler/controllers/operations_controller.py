"""HTTP controller layer for cancellation risk, workload and routing."""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from scheduler.controllers.dependencies import (
    get_cancellation_model_service,
    get_cancellation_service,
    get_route_service,
    get_workload_service,
)
from scheduler.controllers.scheduling_controller import SlotRequest
from scheduler.services.cancellation_service import (
    CancellationModelService,
    CancellationRiskService,
    CancellationValidationError,
    ModelNotReadyError,
)
from scheduler.services.route_service import EngineerNotFoundError, RouteOptimizationService
from scheduler.services.workload_service import WorkloadBalanceService
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["operations"])


class CancellationRiskRequest(SlotRequest):
    is_prepaid: bool = False


@router.post("/cancellation_risk", status_code=status.HTTP_200_OK)
async def cancellation_risk(
    payload: CancellationRiskRequest,
    service: CancellationRiskService = Depends(get_cancellation_service),
) -> dict[str, Any]:
    try:
        risk = service.predict_cancellation_risk(
            payload.request.to_domain(),
            payload.slot.to_domain(),
            is_prepaid=payload.is_prepaid,
        )
        return risk.to_dict()
    except CancellationValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected cancellation risk failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to compute cancellation risk",
        ) from exc


@router.get("/cancellation_risk/summary", status_code=status.HTTP_200_OK)
async def cancellation_risk_summary(
    start_date: date = Query(...),
    end_date: date = Query(...),
    service: CancellationRiskService = Depends(get_cancellation_service),
) -> dict[str, Any]:
    try:
        return service.summarize_cancellation_risk(start_date, end_date).to_dict()
    except CancellationValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected cancellation summary failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to summarize cancellation risk",
        ) from exc


@router.get("/cancellation_model", status_code=status.HTTP_200_OK)
async def cancellation_model_metadata(
    service: CancellationModelService = Depends(get_cancellation_model_service),
) -> dict[str, Any]:
    try:
        return service.get_model_metadata()
    except ModelNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/cancellation_model/train", status_code=status.HTTP_200_OK)
async def train_cancellation_model(
    service: CancellationModelService = Depends(get_cancellation_model_service),
) -> dict[str, Any]:
    try:
        service.train_model()
        return service.get_model_metadata()
    except ModelNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected model training failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Model training failed",
        ) from exc


@router.get("/workload/{engineer_id}", status_code=status.HTTP_200_OK)
async def workload(
    engineer_id: int,
    target_date: date = Query(..., alias="date"),
    service: WorkloadBalanceService = Depends(get_workload_service),
) -> dict[str, Any]:
    try:
        balance = service.calculate_workload_balance(engineer_id, target_date)
        capacity = service.check_capacity(engineer_id, target_date)
        return {"balance": balance.to_dict(), "capacity": capacity.to_dict()}
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected workload failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to compute workload",
        ) from exc


@router.get("/route/{engineer_id}", status_code=status.HTTP_200_OK)
async def route(
    engineer_id: int,
    target_date: date = Query(..., alias="date"),
    service: RouteOptimizationService = Depends(get_route_service),
) -> dict[str, Any]:
    try:
        return service.build_optimized_route(engineer_id, target_date).to_dict()
    except EngineerNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected route optimization failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to optimize route",
        ) from exc
