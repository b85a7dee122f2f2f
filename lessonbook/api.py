"""
Operation facade of the booking engine

Each call opens its own session and builds its collaborators from the global
configuration. Route layers (Telegram commands, the CLI) only talk to this
module.
"""

import logging
from datetime import date as date_type
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from lessonbook.config import get_config
from lessonbook.database import get_session
from lessonbook.db_models import Booking, QuotaTransaction, UserQuota
from lessonbook.errors import CalendarUnavailableError, ValidationError
from lessonbook.models import BusyInterval, TimeSlot, TransactionType
from lessonbook.repositories import BookingRepository
from lessonbook.schedule import Schedule, load_schedule
from lessonbook.services.availability import compute_slots, weekly_allowance
from lessonbook.services.booking_orchestrator import (
    BookingOrchestrator,
    BookingRequest,
    BookingResult,
    booking_interval,
)
from lessonbook.services.calendar_connector import CalendarConnector
from lessonbook.services.quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date_type:
    try:
        return date_type.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Date must be in YYYY-MM-DD format, got {value!r}")


def get_schedule() -> Schedule:
    """Schedule configured for this deployment"""
    return load_schedule(get_config().schedule_file)


def get_availability(
    date: str,
    lesson_type: Optional[str] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[TimeSlot]:
    """
    Slots of a day, available or not

    Buffers are resolved per neighbouring lesson the same way booking does.
    With a user_id the student's daily and weekly limits apply too. If the
    admin calendar cannot be read the slots are computed from bookings alone.
    """
    day = _parse_date(date)
    schedule = get_schedule()
    working_hours = schedule.working_hours

    user_lessons = None
    with get_session() as session:
        bookings = BookingRepository(session).get_active_bookings_for_date(date)
        busy: List[BusyInterval] = [booking_interval(booking, schedule) for booking in bookings]
        if user_id:
            user_lessons = BookingOrchestrator(session, schedule).load_user_lessons(user_id, day)

    connector = CalendarConnector()
    try:
        day_start = datetime.combine(day, datetime.min.time(), tzinfo=working_hours.tz)
        busy.extend(connector.get_busy_intervals(day_start, day_start + timedelta(days=1), working_hours.tz))
    except CalendarUnavailableError as e:
        logger.warning(f"Computing availability for {date} without admin events: {e}")
    finally:
        connector.close()

    return compute_slots(day, working_hours, busy, now, lesson_type, schedule.buffer_policy, user_lessons)


def get_weekly_allowance(user_id: str, date: str) -> Dict[str, float]:
    """Hours and lessons a student may still book in the week of a date"""
    day = _parse_date(date)
    schedule = get_schedule()
    with get_session() as session:
        user_lessons = BookingOrchestrator(session, schedule).load_user_lessons(user_id, day)
    return weekly_allowance(day, user_lessons, schedule.working_hours)


def create_booking(
    user_id: str,
    date: str,
    time: str,
    duration_minutes: int,
    lesson_type: str,
    location: Optional[str] = None,
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> BookingResult:
    """Book a lesson and pay for it from the user's quota"""
    request = BookingRequest(
        user_id=user_id,
        date=date,
        time=time,
        duration_minutes=duration_minutes,
        lesson_type=lesson_type,
        location=location,
        notes=notes,
        idempotency_key=idempotency_key,
    )
    config = get_config()
    connector = CalendarConnector(config)
    try:
        with get_session() as session:
            orchestrator = BookingOrchestrator(
                session, get_schedule(), connector, confirm_on_debit=config.confirm_on_debit
            )
            return orchestrator.create_booking(request)
    finally:
        connector.close()


def cancel_booking(booking_id: int, reason: Optional[str] = None) -> Tuple[Booking, Optional[QuotaTransaction]]:
    """Cancel a booking and refund its hours"""
    with get_session() as session:
        orchestrator = BookingOrchestrator(session, get_schedule())
        return orchestrator.cancel_booking(booking_id, reason)


def get_user_bookings(user_id: str, include_cancelled: bool = False) -> List[Booking]:
    """Bookings of a user, newest lesson first"""
    with get_session() as session:
        return BookingRepository(session).get_user_bookings(user_id, include_cancelled)


def get_quota(user_id: str) -> UserQuota:
    """Quota balance of a user"""
    with get_session() as session:
        return QuotaLedger(session).get_balance(user_id)


def debit_quota(user_id: str, hours: float, description: str, booking_id: Optional[int] = None) -> QuotaTransaction:
    """Consume quota hours"""
    with get_session() as session:
        return QuotaLedger(session).debit(user_id, hours, description, booking_id)


def credit_quota(
    user_id: str,
    hours: float,
    description: str,
    type: TransactionType = TransactionType.PURCHASE,
    ref_booking_id: Optional[int] = None,
    package_id: Optional[str] = None,
) -> QuotaTransaction:
    """Add quota hours (purchase, refund or adjustment)"""
    with get_session() as session:
        return QuotaLedger(session).credit(user_id, hours, description, type, ref_booking_id, package_id)


def list_quota_transactions(user_id: str, limit: int = 50) -> List[QuotaTransaction]:
    """Quota history of a user, newest first"""
    with get_session() as session:
        return QuotaLedger(session).list_transactions(user_id, limit)
