"""Cancellation risk prediction for candidate and booked slots."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from threading import RLock
from typing import Any, Optional

import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.dummy import DummyClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder

from scheduler.domain.models import (
    BookingRequest,
    CancellationRisk,
    RiskFactor,
    RiskTier,
    ScheduleSlot,
)
from scheduler.repository.data_repository import (
    STAT_ALL,
    STAT_CUSTOMER,
    STAT_SERVICE,
    STAT_SITE,
    STAT_SLOT,
    STAT_WEEKDAY,
    CancellationTrainingRecord,
    DataRepository,
)
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


MAX_PROBABILITY = 0.8
LOW_RISK_THRESHOLD = 0.10
HIGH_RISK_THRESHOLD = 0.25
PREPAID_REDUCTION = 0.7

MIN_SERVICE_SAMPLES = 10
MIN_SLOT_SAMPLES = 20
MIN_SITE_SAMPLES = 3

Counts = tuple[int, int]


class CancellationError(Exception):
    """Base exception for cancellation risk failures."""


class CancellationValidationError(CancellationError):
    """Raised when a risk request is invalid."""


class ModelNotReadyError(CancellationError):
    """Raised when the learned model is used before successful training."""


@dataclass(frozen=True)
class CancellationHistory:
    """Historical counts loaded once per request and shared across candidates.

    Base, weekday, service and slot rates cover the rolling lookback window;
    customer and site counts are all-time.
    """

    as_of: date
    base_rate: float
    weekday: dict[str, Counts]
    service: dict[str, Counts]
    slot: dict[str, Counts]
    customer: Counts
    site: Counts
    service_slug: Optional[str] = None


@dataclass(frozen=True)
class RiskSummary:
    total: int
    succeeded: int
    failed: int
    low: int
    medium: int
    high: int
    average_probability: float
    errors: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "low": self.low,
            "medium": self.medium,
            "high": self.high,
            "average_probability": self.average_probability,
            "errors": list(self.errors),
        }


def _rate(counts: Counts) -> float:
    total, cancelled = counts
    return cancelled / total if total > 0 else 0.0


def risk_tier_for(probability: float) -> RiskTier:
    if probability <= LOW_RISK_THRESHOLD:
        return RiskTier.LOW
    if probability >= HIGH_RISK_THRESHOLD:
        return RiskTier.HIGH
    return RiskTier.MEDIUM


def risk_score_for(probability: float) -> int:
    return int(round((1.0 - probability) * 100))


def _customer_factor(counts: Counts) -> Optional[RiskFactor]:
    total, _ = counts
    rate = _rate(counts)
    if total == 0:
        return RiskFactor(name="New customer", impact=0.05, value="first booking")
    if rate > 0.2:
        return RiskFactor(
            name="High-cancellation customer",
            impact=0.15,
            value=f"{rate:.0%} cancellation rate",
        )
    if rate < 0.05 and total > 5:
        return RiskFactor(name="Reliable customer", impact=-0.05, value=f"{total} bookings")
    return None


def _lead_time_factor(days_until: int) -> RiskFactor:
    value = f"{days_until} days"
    if days_until > 14:
        return RiskFactor(name="Long lead time", impact=0.08, value=value)
    if days_until > 7:
        return RiskFactor(name="Medium lead time", impact=0.03, value=value)
    if days_until < 3:
        return RiskFactor(name="Imminent booking", impact=-0.08, value=value)
    return RiskFactor(name="Standard lead time", impact=0.0, value=value)


def _weekday_factor(
    slot_date: date,
    history: CancellationHistory,
    default_rate: float,
) -> Optional[RiskFactor]:
    counts = history.weekday.get(str(slot_date.weekday()), (0, 0))
    rate = _rate(counts) if counts[0] > 0 else default_rate
    base = history.base_rate
    day_name = calendar.day_name[slot_date.weekday()]
    if rate > base * 1.2:
        return RiskFactor(name="High-cancellation day", impact=(rate - base) * 0.5, value=day_name)
    if rate < base * 0.8:
        return RiskFactor(name="Low-cancellation day", impact=(rate - base) * 0.5, value=day_name)
    return None


def _service_factor(service_id: int, history: CancellationHistory) -> Optional[RiskFactor]:
    counts = history.service.get(str(service_id), (0, 0))
    if counts[0] < MIN_SERVICE_SAMPLES:
        return None
    rate = _rate(counts)
    if rate > history.base_rate * 1.3:
        return RiskFactor(
            name="High-cancellation service",
            impact=(rate - history.base_rate) * 0.3,
            value=f"{rate:.0%}",
        )
    return None


def _slot_factor(slot: ScheduleSlot, history: CancellationHistory) -> Optional[RiskFactor]:
    counts = history.slot.get(slot.slot.value, (0, 0))
    if counts[0] < MIN_SLOT_SAMPLES:
        return None
    diff = _rate(counts) - history.base_rate
    if abs(diff) <= 0.03:
        return None
    name = "Higher-risk time slot" if diff > 0 else "Lower-risk time slot"
    return RiskFactor(name=name, impact=diff * 0.2, value=slot.slot.value)


def _site_factor(counts: Counts) -> Optional[RiskFactor]:
    total, cancelled = counts
    if total < MIN_SITE_SAMPLES:
        return None
    rate = _rate(counts)
    if rate > 0.25:
        return RiskFactor(name="High-cancellation site", impact=0.10, value=f"{rate:.0%}")
    if cancelled == 0 and total >= 5:
        return RiskFactor(name="Reliable site", impact=-0.03, value=f"{total} bookings")
    return None


def generate_mitigations(tier: RiskTier, factors: tuple[RiskFactor, ...]) -> tuple[str, ...]:
    if tier is RiskTier.LOW:
        return ()
    names = {factor.name for factor in factors}
    actions = ["Require deposit or prepayment"]
    if "Long lead time" in names:
        actions += ["Send reminder 48 hours before", "Confirm booking 1 week before"]
    if "High-cancellation customer" in names:
        actions += ["Call to confirm 24 hours before", "Require full prepayment"]
    if "New customer" in names:
        actions += ["Send welcome email with booking details", "Follow up call to introduce service"]
    if tier is RiskTier.HIGH:
        actions += ["Consider overbooking protection", "Have standby customer for this slot"]
    return tuple(dict.fromkeys(actions))


def predict_cancellation_risk(
    request: BookingRequest,
    slot: ScheduleSlot,
    history: CancellationHistory,
    *,
    today: date,
    default_rate: float = 0.08,
) -> CancellationRisk:
    """Base rate plus independent signed adjustments, clamped to [0, 0.8]."""
    candidates = [
        _customer_factor(history.customer),
        _lead_time_factor((slot.date - today).days),
        _weekday_factor(slot.date, history, default_rate),
        _service_factor(request.service_id, history),
        _slot_factor(slot, history),
        _site_factor(history.site),
    ]
    factors = tuple(
        replace(factor, impact=round(factor.impact, 4))
        for factor in candidates
        if factor is not None
    )
    raw = history.base_rate + sum(factor.impact for factor in factors)
    probability = round(max(0.0, min(MAX_PROBABILITY, raw)), 3)
    tier = risk_tier_for(probability)
    return CancellationRisk(
        probability=probability,
        score=risk_score_for(probability),
        tier=tier,
        factors=factors,
        mitigations=generate_mitigations(tier, factors),
    )


def adjust_risk_for_payment(risk: CancellationRisk, is_prepaid: bool) -> CancellationRisk:
    """Paid bookings rarely cancel and need no further mitigation."""
    if not is_prepaid:
        return risk
    reduction = risk.probability * PREPAID_REDUCTION
    probability = round(risk.probability * (1.0 - PREPAID_REDUCTION), 3)
    return replace(
        risk,
        probability=probability,
        score=risk_score_for(probability),
        tier=risk_tier_for(probability),
        factors=risk.factors
        + (RiskFactor(name="Prepaid booking", impact=-round(reduction, 4), value="prepaid"),),
        mitigations=(),
    )


class CancellationModelService:
    """Learned cross-check of the rule-based predictor.

    The logistic model is reported next to the rule-based probability and
    never changes the risk tier.
    """

    _FEATURE_COLUMNS = ["lead_time_days", "day_of_week", "slot", "service_slug"]

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._model: Optional[Pipeline] = None
        self._model_lock = RLock()
        self._metadata: Optional[dict[str, Any]] = None

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    @staticmethod
    def _build_training_frame(records: list[CancellationTrainingRecord]) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "lead_time_days": record.lead_time_days,
                    "day_of_week": record.day_of_week,
                    "slot": record.slot,
                    "service_slug": record.service_slug,
                    "cancelled": record.cancelled,
                }
                for record in records
            ]
        )

    def train_model(self) -> None:
        with self._model_lock:
            logger.info("Cancellation model training started")
            records = self._repository.list_cancellation_training_rows()
            if len(records) < self._settings.cancellation_model_min_training_rows:
                raise ModelNotReadyError(
                    f"Insufficient booking history for model training ({len(records)} rows)"
                )

            frame = self._build_training_frame(records)
            x_train = frame[self._FEATURE_COLUMNS]
            y_train = frame["cancelled"].astype(int)

            preprocessor = ColumnTransformer(
                transformers=[
                    ("categorical", OneHotEncoder(handle_unknown="ignore"), ["slot", "service_slug"]),
                    ("numerical", "passthrough", ["lead_time_days", "day_of_week"]),
                ]
            )
            if y_train.nunique() >= 2:
                classifier = LogisticRegression(
                    max_iter=self._settings.cancellation_model_max_iter,
                    random_state=self._settings.cancellation_model_random_state,
                )
                model_name = "logistic_regression"
            else:
                classifier = DummyClassifier(strategy="most_frequent")
                model_name = "dummy_most_frequent"
                logger.warning(
                    "Cancellation labels contained a single class. Falling back to %s",
                    model_name,
                )

            pipeline = Pipeline(steps=[("preprocessor", preprocessor), ("classifier", classifier)])
            pipeline.fit(x_train, y_train)
            self._model = pipeline

            trained_at = datetime.now(timezone.utc).isoformat()
            self._metadata = {
                "model_type": model_name,
                "model_version": self._settings.cancellation_model_version,
                "trained_at": trained_at,
                "training_rows": len(records),
            }
            self._repository.save_model_metadata(
                model_type=model_name,
                model_version=self._settings.cancellation_model_version,
                trained_at=trained_at,
            )
            logger.info(
                "Cancellation model training completed | rows=%s | model=%s | cancel_rate=%.4f",
                len(records),
                model_name,
                float(y_train.mean()),
            )

    def get_model_metadata(self) -> dict[str, Any]:
        with self._model_lock:
            if self._metadata is not None:
                return dict(self._metadata)
        persisted = self._repository.get_model_metadata()
        if persisted is None:
            raise ModelNotReadyError("Model metadata is unavailable; train model first")
        return dict(persisted)

    def predict_probability(
        self,
        *,
        lead_time_days: int,
        day_of_week: int,
        slot: str,
        service_slug: str,
    ) -> float:
        with self._model_lock:
            if self._model is None:
                raise ModelNotReadyError("Model is not trained; call train_model() first")
            frame = pd.DataFrame(
                [
                    {
                        "lead_time_days": max(0, lead_time_days),
                        "day_of_week": day_of_week,
                        "slot": slot,
                        "service_slug": service_slug,
                    }
                ],
                columns=self._FEATURE_COLUMNS,
            )
            classes = list(self._model.classes_)  # type: ignore[attr-defined]
            if 1 not in classes:
                return 0.0
            probabilities = self._model.predict_proba(frame)[0]
            return float(probabilities[classes.index(1)])


class CancellationRiskService:
    """Loads historical counts and applies the rule-based risk model."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        model_service: Optional[CancellationModelService] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._model_service = model_service

    def load_history(self, request: BookingRequest, *, today: Optional[date] = None) -> CancellationHistory:
        as_of = today or datetime.now(timezone.utc).date()
        since = as_of - timedelta(days=self._settings.cancellation_lookback_days)
        overall = self._repository.get_cancellation_counts(STAT_ALL, since=since, until=as_of)
        overall_counts = overall.get(STAT_ALL, (0, 0))
        base_rate = (
            _rate(overall_counts)
            if overall_counts[0] > 0
            else self._settings.cancellation_default_base_rate
        )
        customer = self._repository.get_cancellation_counts(STAT_CUSTOMER, key=str(request.customer_id))
        site = self._repository.get_cancellation_counts(STAT_SITE, key=str(request.site_id))
        service = self._repository.get_service(request.service_id)
        return CancellationHistory(
            as_of=as_of,
            base_rate=base_rate,
            weekday=self._repository.get_cancellation_counts(STAT_WEEKDAY, since=since, until=as_of),
            service=self._repository.get_cancellation_counts(STAT_SERVICE, since=since, until=as_of),
            slot=self._repository.get_cancellation_counts(STAT_SLOT, since=since, until=as_of),
            customer=customer.get(str(request.customer_id), (0, 0)),
            site=site.get(str(request.site_id), (0, 0)),
            service_slug=service.slug if service else None,
        )

    def predict_cancellation_risk(
        self,
        request: BookingRequest,
        slot: ScheduleSlot,
        *,
        history: Optional[CancellationHistory] = None,
        today: Optional[date] = None,
        is_prepaid: bool = False,
    ) -> CancellationRisk:
        as_of = today or (history.as_of if history else datetime.now(timezone.utc).date())
        if slot.date < as_of:
            raise CancellationValidationError("slot date must not be in the past")
        snapshot = history or self.load_history(request, today=as_of)
        risk = predict_cancellation_risk(
            request,
            slot,
            snapshot,
            today=as_of,
            default_rate=self._settings.cancellation_default_base_rate,
        )
        if self._model_service is not None and self._model_service.is_ready and snapshot.service_slug:
            model_probability = self._model_service.predict_probability(
                lead_time_days=(slot.date - as_of).days,
                day_of_week=slot.date.weekday(),
                slot=slot.slot.value,
                service_slug=snapshot.service_slug,
            )
            risk = replace(risk, model_probability=round(model_probability, 3))
        risk = adjust_risk_for_payment(risk, is_prepaid)
        logger.debug(
            "Cancellation risk computed | slot_id=%s | probability=%.3f | tier=%s | factors=%s",
            slot.slot_id,
            risk.probability,
            risk.tier.value,
            len(risk.factors),
        )
        return risk

    def summarize_cancellation_risk(
        self,
        start_date: date,
        end_date: date,
        *,
        today: Optional[date] = None,
    ) -> RiskSummary:
        """Risk across upcoming active bookings; one failing booking never aborts the batch."""
        if end_date < start_date:
            raise CancellationValidationError("end_date must not be before start_date")
        as_of = today or datetime.now(timezone.utc).date()
        jobs = self._repository.list_jobs_between(max(start_date, as_of), end_date)

        tiers = {RiskTier.LOW: 0, RiskTier.MEDIUM: 0, RiskTier.HIGH: 0}
        probabilities: list[float] = []
        errors: list[str] = []
        for job in jobs:
            try:
                request = BookingRequest(
                    customer_id=job.customer_id,
                    site_id=job.site_id,
                    service_id=job.service_id,
                    estimated_qty=0,
                )
                slot = ScheduleSlot(
                    slot_id=f"{job.engineer_id}-{job.date.isoformat()}-{job.slot.value}",
                    engineer_id=int(job.engineer_id or 0),
                    date=job.date,
                    slot=job.slot,
                    start_time=job.slot.window[0],
                    end_time=job.slot.window[1],
                    estimated_price=job.quoted_price or 0.0,
                    estimated_duration=job.estimated_duration or 60,
                    is_cluster_opportunity=False,
                    nearby_job_count=0,
                )
                risk = self.predict_cancellation_risk(
                    request,
                    slot,
                    today=as_of,
                    is_prepaid=job.is_prepaid,
                )
            except Exception as exc:
                logger.exception("Cancellation risk failed | booking_id=%s", job.booking_id)
                errors.append(f"booking {job.booking_id}: {exc}")
                continue
            tiers[risk.tier] += 1
            probabilities.append(risk.probability)

        summary = RiskSummary(
            total=len(jobs),
            succeeded=len(probabilities),
            failed=len(errors),
            low=tiers[RiskTier.LOW],
            medium=tiers[RiskTier.MEDIUM],
            high=tiers[RiskTier.HIGH],
            average_probability=(
                round(sum(probabilities) / len(probabilities), 3) if probabilities else 0.0
            ),
            errors=tuple(errors),
        )
        logger.info(
            "Cancellation risk summary | total=%s | succeeded=%s | failed=%s | high=%s",
            summary.total,
            summary.succeeded,
            summary.failed,
            summary.high,
        )
        return summary
