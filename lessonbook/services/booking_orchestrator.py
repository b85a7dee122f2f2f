"""
Booking orchestrator - the "create booking" use case.

Validating -> Reserving -> Debiting -> Confirmed | RolledBack

There is no transaction spanning the booking insert and the quota debit, so a
failed debit is compensated by deleting the just-created booking. Identical
(date, time) races are stopped by the unique index on active bookings; the
re-validation here only narrows the window.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from sqlmodel import Session

from lessonbook.db_models import Booking, QuotaTransaction
from lessonbook.errors import (
    BookingRollbackError,
    InsufficientQuotaError,
    NotFoundError,
    ReconciliationRequiredError,
    SlotUnavailableError,
    ValidationError,
)
from lessonbook.models import (
    BookingStatus,
    BusyInterval,
    BusySource,
    ConflictFinding,
    ProposedInterval,
)
from lessonbook.repositories import BookingRepository
from lessonbook.schedule import TIME_PATTERN, Schedule, parse_hhmm
from lessonbook.services.availability import (
    buffer_lookup,
    has_started,
    is_past,
    user_limit_reason,
    week_start,
)
from lessonbook.services.calendar_connector import CalendarConnector
from lessonbook.services.conflicts import blocking_findings, check_lesson_conflicts
from lessonbook.services.quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)

MAX_LESSON_MINUTES = 480


class BookingState(str, Enum):
    VALIDATING = "validating"
    RESERVING = "reserving"
    DEBITING = "debiting"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class BookingRequest:
    """Input of the create-booking use case"""
    user_id: str
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    duration_minutes: int
    lesson_type: str
    location: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class BookingResult:
    booking: Booking
    quota_transaction: Optional[QuotaTransaction]
    warnings: List[ConflictFinding] = field(default_factory=list)


def hours_for_duration(duration_minutes: int) -> int:
    """Quota hours charged for a lesson; started hours count in full"""
    return math.ceil(duration_minutes / 60)


def booking_interval(booking: Booking, schedule: Schedule) -> BusyInterval:
    """Busy interval occupied by a stored booking"""
    tz = schedule.working_hours.tz
    start = datetime.combine(date.fromisoformat(booking.date), parse_hhmm(booking.time), tzinfo=tz)
    return BusyInterval(
        start=start,
        end=start + timedelta(minutes=booking.duration_minutes),
        source=BusySource.BOOKING,
        label="Booked lesson",
        lesson_type=booking.lesson_type,
    )


class BookingOrchestrator:
    """Creates and cancels bookings against availability and quota"""

    def __init__(
        self,
        session: Session,
        schedule: Schedule,
        calendar: Optional[CalendarConnector] = None,
        confirm_on_debit: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            session: Record store session
            schedule: Working hours and buffer policy for this request
            calendar: Source of admin events; None means bookings only
            confirm_on_debit: Confirm bookings once paid, else leave them pending
            clock: Returns "now"; defaults to the current time
        """
        self.session = session
        self.schedule = schedule
        self.calendar = calendar
        self.confirm_on_debit = confirm_on_debit
        self.clock = clock
        self.bookings = BookingRepository(session)
        self.ledger = QuotaLedger(session)
        self.state: Optional[BookingState] = None

    def _set_state(self, state: BookingState, request: BookingRequest) -> None:
        self.state = state
        logger.debug(f"Booking {request.date} {request.time} for user {request.user_id}: {state.value}")

    def _now(self) -> Optional[datetime]:
        return self.clock() if self.clock else None

    def validate_request(self, request: BookingRequest) -> Tuple[date, ProposedInterval]:
        """
        Check the request shape; no I/O

        Raises:
            ValidationError: Missing or malformed fields
        """
        if not request.user_id:
            raise ValidationError("User ID is required")
        if not request.date or not request.time:
            raise ValidationError("Date and time are required")
        if not request.lesson_type:
            raise ValidationError("Lesson type is required")
        try:
            day = date.fromisoformat(request.date)
        except ValueError:
            raise ValidationError(f"Date must be in YYYY-MM-DD format, got {request.date!r}")
        if not TIME_PATTERN.match(request.time):
            raise ValidationError(f"Time must be in HH:MM format, got {request.time!r}")
        if not isinstance(request.duration_minutes, int) or not 0 < request.duration_minutes <= MAX_LESSON_MINUTES:
            raise ValidationError(
                f"Duration must be between 1 and {MAX_LESSON_MINUTES} minutes, got {request.duration_minutes!r}"
            )

        start = datetime.combine(day, parse_hhmm(request.time), tzinfo=self.schedule.working_hours.tz)
        proposed = ProposedInterval(
            start=start,
            end=start + timedelta(minutes=request.duration_minutes),
            lesson_type=request.lesson_type,
        )
        return day, proposed

    def load_busy_intervals(self, day: date, bookings: List[Booking]) -> List[BusyInterval]:
        """Booked lessons and admin events of a day"""
        busy = [booking_interval(booking, self.schedule) for booking in bookings]

        if self.calendar is not None:
            tz = self.schedule.working_hours.tz
            day_start = datetime.combine(day, time.min, tzinfo=tz)
            events = self.calendar.get_busy_intervals(day_start, day_start + timedelta(days=1), tz)
            busy.extend(events)

        return busy

    def load_user_lessons(self, user_id: str, day: date) -> List[BusyInterval]:
        """Active lessons of a student in the Monday-Sunday week of `day`"""
        first = week_start(day)
        bookings = self.bookings.get_user_bookings_between(
            user_id, first.isoformat(), (first + timedelta(days=6)).isoformat()
        )
        return [booking_interval(booking, self.schedule) for booking in bookings]

    def check_slot(self, request: BookingRequest) -> List[ConflictFinding]:
        """
        Validating step: re-check the requested interval against current data

        Returns:
            Advisory findings (back-to-back) that do not block the booking

        Raises:
            ValidationError: Malformed request
            SlotUnavailableError: The interval cannot be booked
        """
        day, proposed = self.validate_request(request)
        working_hours = self.schedule.working_hours

        if is_past(day, working_hours, self._now()):
            raise SlotUnavailableError("day_unavailable", f"{request.date} is in the past", "Choose a future date")
        if has_started(proposed.start, working_hours, self._now()):
            raise SlotUnavailableError(
                "past_time", f"{request.time} on {request.date} has already passed", "Choose a later time"
            )
        if not working_hours.is_working_day(day):
            raise SlotUnavailableError("day_unavailable", f"No lessons are available on {request.date}", "Choose a different day")

        day_start, day_end = working_hours.day_window(day)
        if proposed.start < day_start or proposed.end > day_end:
            raise SlotUnavailableError(
                "outside_working_hours",
                f"Lessons on {request.date} must be between {day_start:%H:%M} and {day_end:%H:%M}",
                "Choose a time within working hours",
            )

        bookings = self.bookings.get_active_bookings_for_date(request.date)
        if len(bookings) >= working_hours.max_bookings_per_day:
            raise SlotUnavailableError(
                "daily_limit",
                f"{request.date} is fully booked ({working_hours.max_bookings_per_day} lessons)",
                "Choose a different day",
            )

        findings = check_lesson_conflicts(
            proposed,
            self.load_busy_intervals(day, bookings),
            buffer_lookup(working_hours, self.schedule.buffer_policy),
        )

        blocking = blocking_findings(findings)
        if blocking:
            worst = min(blocking, key=lambda finding: ["high", "medium", "low"].index(finding.severity.value))
            logger.info(f"Rejected {request.date} {request.time} for user {request.user_id}: {worst.message}")
            raise SlotUnavailableError(worst.kind.value, worst.message, worst.suggestion)

        limit_reason = user_limit_reason(
            day, request.duration_minutes, self.load_user_lessons(request.user_id, day), working_hours
        )
        if limit_reason:
            logger.info(f"Rejected {request.date} {request.time} for user {request.user_id}: {limit_reason}")
            raise SlotUnavailableError("user_limit", limit_reason, "Choose a different day or a shorter lesson")

        return findings

    def create_booking(self, request: BookingRequest) -> BookingResult:
        """
        Validate, reserve, debit; compensate if the debit fails

        Raises:
            ValidationError, SlotUnavailableError: Nothing was written
            InsufficientQuotaError, NotFoundError: Booking was rolled back
            BookingRollbackError: Rollback failed, booking left pending
            ReconciliationRequiredError: Debit outcome unknown, booking left pending
        """
        if request.idempotency_key:
            existing = self.bookings.get_by_idempotency_key(request.idempotency_key)
            if existing is not None:
                self._check_replay(existing, request)
                logger.info(f"Idempotent replay of booking {existing.id} (key {request.idempotency_key})")
                return BookingResult(existing, self.ledger.find_debit_for_booking(existing.id))

        self._set_state(BookingState.VALIDATING, request)
        warnings = self.check_slot(request)

        self._set_state(BookingState.RESERVING, request)
        hours = hours_for_duration(request.duration_minutes)
        booking = self.bookings.create_booking(
            user_id=request.user_id,
            date=request.date,
            time=request.time,
            duration_minutes=request.duration_minutes,
            lesson_type=request.lesson_type,
            hours_used=hours,
            location=request.location,
            notes=request.notes,
            idempotency_key=request.idempotency_key,
        )
        logger.info(f"Reserved booking {booking.id}: {request.date} {request.time} for user {request.user_id}")

        self._set_state(BookingState.DEBITING, request)
        transaction = self._debit(booking, hours)

        status = BookingStatus.CONFIRMED if self.confirm_on_debit else BookingStatus.PENDING
        booking = self.bookings.update_status(booking.id, status.value, quota_transaction_id=transaction.id)
        self._set_state(BookingState.CONFIRMED, request)
        logger.info(f"Booking {booking.id} {status.value}, transaction {transaction.id}")
        return BookingResult(booking, transaction, warnings)

    def _check_replay(self, existing: Booking, request: BookingRequest) -> None:
        stored = (existing.user_id, existing.date, existing.time, existing.duration_minutes)
        requested = (request.user_id, request.date, request.time, request.duration_minutes)
        if stored != requested:
            logger.warning(
                f"Idempotency key {request.idempotency_key} of booking {existing.id} reused "
                f"for {request.date} {request.time} by user {request.user_id}"
            )
            raise ValidationError(
                f"Idempotency key {request.idempotency_key!r} reused with different parameters"
            )

    def _debit(self, booking: Booking, hours: float) -> QuotaTransaction:
        description = f"Booked {hours:g} hour lesson ({booking.lesson_type})"
        try:
            return self.ledger.debit(booking.user_id, hours, description, booking.id)
        except (InsufficientQuotaError, NotFoundError, ValidationError) as e:
            logger.warning(f"Debit for booking {booking.id} failed: {e}")
            self._compensate(booking, hours, e)
            raise
        except Exception as e:
            # outcome unknown (timeout, lost connection): look before compensating
            logger.error(f"Debit for booking {booking.id} ended ambiguously: {e}")
            return self._reconcile(booking, hours, e)

    def _reconcile(self, booking: Booking, hours: float, cause: Exception) -> QuotaTransaction:
        try:
            debit = self.ledger.find_debit_for_booking(booking.id)
        except Exception as e:
            logger.critical(
                f"Cannot determine debit outcome for booking {booking.id} "
                f"(user {booking.user_id}, {hours:g}h): {e}"
            )
            raise ReconciliationRequiredError(booking.id, booking.user_id, hours, e) from cause

        if debit is not None:
            logger.warning(f"Debit {debit.id} for booking {booking.id} committed despite error")
            return debit

        self._compensate(booking, hours, cause)
        raise cause

    def _compensate(self, booking: Booking, hours: float, cause: Exception) -> None:
        booking_id, user_id = booking.id, booking.user_id
        try:
            self.bookings.delete_booking(booking_id)
        except Exception as e:
            logger.critical(
                f"Rollback failed: booking {booking_id} of user {user_id} ({hours:g}h) "
                f"is orphaned after debit error '{cause}': {e}"
            )
            raise BookingRollbackError(booking_id, user_id, hours, e) from e
        self.state = BookingState.ROLLED_BACK
        logger.warning(f"Rolled back booking {booking_id} of user {user_id}: {cause}")

    def cancel_booking(self, booking_id: int, reason: Optional[str] = None) -> Tuple[Booking, Optional[QuotaTransaction]]:
        """
        Cancel a booking and refund its hours

        Returns:
            The cancelled booking and the refund transaction (None if the
            booking was never debited or already cancelled)

        Raises:
            NotFoundError: Unknown booking
        """
        booking = self.bookings.get_booking(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.status == BookingStatus.CANCELLED.value:
            return booking, None

        refund = None
        if self.ledger.find_debit_for_booking(booking_id) is not None:
            refund = self.ledger.refund(booking.user_id, booking_id)

        notes = booking.notes
        if reason:
            notes = f"{notes}\nCancelled: {reason}" if notes else f"Cancelled: {reason}"
        booking = self.bookings.update_status(booking_id, BookingStatus.CANCELLED.value, notes=notes)
        logger.info(f"Cancelled booking {booking_id} of user {booking.user_id}")
        return booking, refund
