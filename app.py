"""
app.py: FastAPI application factory and startup lifecycle.

It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from scheduler.controllers.operations_controller import router as operations_router
from scheduler.controllers.scheduling_controller import router as scheduling_router
from scheduler.repository.data_repository import DataRepository
from scheduler.services.booking_service import BookingService
from scheduler.services.cancellation_service import (
    CancellationModelService,
    CancellationRiskService,
    ModelNotReadyError,
)
from scheduler.services.candidate_service import CandidateService
from scheduler.services.customer_service import CustomerMetricsService
from scheduler.services.presentation_service import SlotPresentationService
from scheduler.services.pricing_service import PricingService, load_active_pricing_rules
from scheduler.services.route_service import RouteOptimizationService
from scheduler.services.scoring_service import MultiPartyScorer, load_active_scoring_weights
from scheduler.services.workload_service import WorkloadBalanceService
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service is created here and injected through app.state.
    """
    settings = settings or get_settings()

    repository = DataRepository(settings)

    workload_service = WorkloadBalanceService(repository=repository, settings=settings)
    cancellation_model_service = CancellationModelService(repository=repository, settings=settings)
    cancellation_service = CancellationRiskService(
        repository=repository,
        settings=settings,
        model_service=cancellation_model_service,
    )
    route_service = RouteOptimizationService(repository=repository, settings=settings)
    customer_service = CustomerMetricsService(repository=repository, settings=settings)
    scorer = MultiPartyScorer(
        repository,
        settings,
        workload_service=workload_service,
        cancellation_service=cancellation_service,
        route_service=route_service,
        customer_service=customer_service,
    )
    candidate_service = CandidateService(
        repository,
        settings,
        workload_service=workload_service,
        scorer=scorer,
    )
    pricing_service = PricingService(repository=repository, settings=settings)
    presentation_service = SlotPresentationService(
        repository,
        settings,
        candidate_service=candidate_service,
        scorer=scorer,
    )
    booking_service = BookingService(repository=repository, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(scheduling_router)
    app.include_router(operations_router)

    app.state.settings = settings
    app.state.repository = repository
    app.state.workload_service = workload_service
    app.state.cancellation_model_service = cancellation_model_service
    app.state.cancellation_service = cancellation_service
    app.state.route_service = route_service
    app.state.customer_service = customer_service
    app.state.scorer = scorer
    app.state.candidate_service = candidate_service
    app.state.pricing_service = pricing_service
    app.state.presentation_service = presentation_service
    app.state.booking_service = booking_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. Stored pricing rules and scoring weights are validated before any request is served.
      3. Model trains last; it needs booking history rows.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository
    pricing_service: PricingService = app.state.pricing_service
    scorer: MultiPartyScorer = app.state.scorer
    model_service: CancellationModelService = app.state.cancellation_model_service

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_synthetic_data_on_startup:
        logger.info("Startup: seeding synthetic catalogue and booking history")
        repository.seed_synthetic_data()

    logger.info("Startup: loading active pricing rules and scoring weights")
    pricing_service.use_rules(load_active_pricing_rules(repository, settings))
    scorer.use_weights(load_active_scoring_weights(repository))

    logger.info("Startup: training cancellation model")
    try:
        model_service.train_model()
    except ModelNotReadyError as exc:
        logger.warning("Cancellation model not trained; rule-based risk only | reason=%s", exc)

    logger.info("Startup complete | system ready")


# Module-level app object for uvicorn
app = create_app()
