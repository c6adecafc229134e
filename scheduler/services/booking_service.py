"""Committing and cancelling chosen slots."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from scheduler.domain.models import (
    STATUS_CANCELLED,
    BookedJob,
    BookingRequest,
    ScheduleSlot,
)
from scheduler.repository.data_repository import (
    BookingNotFoundError as RepositoryBookingNotFoundError,
    DataRepository,
    SlotAlreadyBookedError,
)
from scheduler.utils.config import Settings, get_settings
from scheduler.utils.logger import get_logger


logger = get_logger(__name__)


class BookingError(Exception):
    """Base exception for booking commit failures."""


class BookingValidationError(BookingError):
    """Raised when a commit request is inconsistent."""


class BookingNotFoundError(BookingError):
    """Raised when the booking does not exist."""


class SlotConflictError(BookingError):
    """Raised when another request claimed the same engineer slot first. Safe to retry with another slot."""

    retryable = True


class BookingService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def commit_slot(
        self,
        request: BookingRequest,
        slot: ScheduleSlot,
        *,
        quoted_price: Optional[float] = None,
        is_prepaid: bool = False,
        today: Optional[date] = None,
    ) -> BookedJob:
        as_of = today or datetime.now(timezone.utc).date()
        if slot.date < as_of:
            raise BookingValidationError("slot date must not be in the past")
        site = self._repository.get_site(request.site_id)
        if site is None or site.customer_id != request.customer_id:
            raise BookingValidationError(
                f"site_id {request.site_id} does not belong to customer_id {request.customer_id}"
            )
        if self._repository.get_service(request.service_id) is None:
            raise BookingValidationError(f"service_id {request.service_id} not found")
        if self._repository.get_engineer(slot.engineer_id) is None:
            raise BookingValidationError(f"engineer_id {slot.engineer_id} not found")
        price = slot.estimated_price if quoted_price is None else quoted_price
        if price < 0:
            raise BookingValidationError("quoted_price must be >= 0")

        try:
            booking_id = self._repository.claim_slot(
                customer_id=request.customer_id,
                site_id=request.site_id,
                service_id=request.service_id,
                engineer_id=slot.engineer_id,
                scheduled_date=slot.date,
                slot=slot.slot,
                quoted_price=round(price, 2),
                estimated_duration=slot.estimated_duration,
                is_prepaid=is_prepaid,
                created_on=as_of,
            )
        except SlotAlreadyBookedError as exc:
            logger.warning("Slot conflict | slot_id=%s", slot.slot_id)
            raise SlotConflictError(f"slot {slot.slot_id} is no longer available") from exc

        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise BookingError(f"booking_id {booking_id} vanished after commit")
        logger.info(
            "Booking committed | booking_id=%s | slot_id=%s | price=%.2f | prepaid=%s",
            booking_id,
            slot.slot_id,
            price,
            is_prepaid,
        )
        return booking

    def cancel_booking(self, booking_id: int) -> BookedJob:
        """Cancel a booking; cancelling twice is a no-op."""
        existing = self._repository.get_booking(booking_id)
        if existing is None:
            raise BookingNotFoundError(f"booking_id {booking_id} not found")
        if existing.status == STATUS_CANCELLED:
            return existing
        try:
            self._repository.update_booking_status(booking_id, STATUS_CANCELLED)
        except RepositoryBookingNotFoundError as exc:
            raise BookingNotFoundError(str(exc)) from exc
        logger.info("Booking cancelled | booking_id=%s | previous_status=%s", booking_id, existing.status)
        cancelled = self._repository.get_booking(booking_id)
        if cancelled is None:
            raise BookingNotFoundError(f"booking_id {booking_id} not found")
        return cancelled
