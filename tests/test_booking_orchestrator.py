"""
Tests for the booking orchestrator
Covers validation, the reserve/debit/compensate flow and cancellation
"""

from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from conftest import MONDAY, NOW, SATURDAY, at
from lessonbook.errors import (
    BookingRollbackError,
    CalendarUnavailableError,
    InsufficientQuotaError,
    NotFoundError,
    ReconciliationRequiredError,
    SlotUnavailableError,
    StoreUnavailableError,
    ValidationError,
)
from lessonbook.db_models import Booking
from lessonbook.models import BusyInterval, BusySource, ConflictKind
from lessonbook.repositories import BookingRepository
from lessonbook.schedule import Schedule, WorkingHoursConfig
from lessonbook.services.booking_orchestrator import (
    BookingOrchestrator,
    BookingRequest,
    BookingState,
    booking_interval,
    hours_for_duration,
)
from lessonbook.services.quota_ledger import QuotaLedger


TUESDAY = MONDAY + timedelta(days=1)
WEDNESDAY = MONDAY + timedelta(days=2)


def request_for(time="10:00", user_id="user-1", duration=60, lesson_type="standard", day=MONDAY, **kwargs):
    return BookingRequest(
        user_id=user_id,
        date=day.isoformat(),
        time=time,
        duration_minutes=duration,
        lesson_type=lesson_type,
        **kwargs,
    )


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(db_session, schedule):
    """Orchestrator without an admin calendar, clock fixed before MONDAY"""
    return BookingOrchestrator(db_session, schedule, clock=lambda: NOW)


class TestHelpers:
    """Tests for quota hours and busy intervals of stored bookings"""

    @pytest.mark.parametrize("minutes,hours", [(30, 1), (60, 1), (90, 2), (120, 2), (150, 3)])
    def test_started_hours_count(self, minutes, hours):
        """Test durations round up to whole hours"""
        assert hours_for_duration(minutes) == hours

    def test_booking_interval(self, schedule):
        """Test a stored booking becomes a typed busy interval in the school's timezone"""
        booking = Booking(user_id="user-1", date="2030-03-04", time="10:30", duration_minutes=90,
                          lesson_type="test_preparation")
        interval = booking_interval(booking, schedule)

        assert (interval.start, interval.end) == (at(MONDAY, "10:30"), at(MONDAY, "12:00"))
        assert interval.source == BusySource.BOOKING
        assert interval.lesson_type == "test_preparation"


class TestValidation:
    """Tests for request validation"""

    @pytest.mark.parametrize("changes", [
        {"user_id": ""},
        {"date": "2030-13-01"},
        {"date": "04.03.2030"},
        {"time": "9am"},
        {"time": "24:00"},
        {"duration_minutes": 0},
        {"duration_minutes": 600},
        {"lesson_type": ""},
    ])
    def test_malformed_requests(self, orchestrator, funded_user, changes):
        """Test malformed input is rejected before any write"""
        request = request_for()
        for field, value in changes.items():
            setattr(request, field, value)

        with pytest.raises(ValidationError):
            orchestrator.create_booking(request)
        assert orchestrator.bookings.get_user_bookings(funded_user) == []

    def test_past_day(self, db_session, schedule, funded_user):
        """Test days before today are rejected"""
        orchestrator = BookingOrchestrator(db_session, schedule, clock=lambda: NOW + timedelta(days=10))
        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for())
        assert exc_info.value.kind == "day_unavailable"

    def test_start_time_passed_today(self, db_session, schedule, funded_user):
        """Test a lesson of today that already started is rejected, a later one is booked"""
        orchestrator = BookingOrchestrator(db_session, schedule, clock=lambda: at(MONDAY, "11:30"))
        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(time="10:00"))
        assert exc_info.value.kind == "past_time"

        assert orchestrator.create_booking(request_for(time="12:00")).booking.status == "confirmed"

    def test_closed_weekday(self, orchestrator, funded_user):
        """Test weekends are rejected"""
        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(day=SATURDAY))
        assert exc_info.value.kind == "day_unavailable"

    @pytest.mark.parametrize("time,duration", [("08:00", 60), ("16:30", 60), ("16:00", 90)])
    def test_outside_working_hours(self, orchestrator, funded_user, time, duration):
        """Test lessons must fit inside the working window"""
        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(time=time, duration=duration))
        assert exc_info.value.kind == "outside_working_hours"

    def test_daily_limit(self, db_session, funded_user):
        """Test max_bookings_per_day caps a day"""
        schedule = Schedule(working_hours=WorkingHoursConfig(max_bookings_per_day=1))
        orchestrator = BookingOrchestrator(db_session, schedule, clock=lambda: NOW)
        orchestrator.create_booking(request_for(time="09:00"))

        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(time="14:00"))
        assert exc_info.value.kind == "daily_limit"


class TestConflicts:
    """Tests for conflict handling during validation"""

    def test_overlap_with_admin_event(self, db_session, schedule, funded_user):
        """Test 14:00-15:00 inside an admin event 13:30-15:30 is rejected"""
        calendar = Mock()
        calendar.get_busy_intervals.return_value = [
            BusyInterval(at(MONDAY, "13:30"), at(MONDAY, "15:30"), BusySource.ADMIN_EVENT, "Instructor training"),
        ]
        orchestrator = BookingOrchestrator(db_session, schedule, calendar, clock=lambda: NOW)

        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(time="14:00"))

        assert exc_info.value.kind == ConflictKind.OVERLAP.value
        assert "Instructor training" in exc_info.value.message
        assert exc_info.value.suggestion
        assert orchestrator.bookings.get_active_bookings_for_date(MONDAY.isoformat()) == []

    def test_overlap_with_booking(self, orchestrator, funded_user):
        """Test overlapping an existing booking is rejected"""
        orchestrator.create_booking(request_for(time="10:00", duration=120))

        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(time="11:00", user_id=funded_user))
        assert exc_info.value.kind == "overlap"

    def test_insufficient_buffer(self, orchestrator, funded_user):
        """Test a gap shorter than the buffer is rejected"""
        orchestrator.create_booking(request_for(time="09:00"))

        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(time="10:15"))
        assert exc_info.value.kind == "insufficient_buffer"

    def test_back_to_back_is_allowed(self, orchestrator, funded_user):
        """Test back-to-back lessons are booked with a warning"""
        orchestrator.create_booking(request_for(time="09:00"))
        result = orchestrator.create_booking(request_for(time="10:00"))

        assert result.booking.status == "confirmed"
        assert [w.kind for w in result.warnings] == [ConflictKind.BACK_TO_BACK]

    def test_buffer_follows_earlier_lesson_type(self, orchestrator, funded_user):
        """Test the gap after a lesson uses that lesson's buffer"""
        orchestrator.create_booking(request_for(time="09:00", lesson_type="test_preparation"))

        # 30 minute gap, test preparation needs 60
        with pytest.raises(SlotUnavailableError):
            orchestrator.create_booking(request_for(time="10:30"))

        # 30 minute gap after a standard lesson is enough
        orchestrator.create_booking(request_for(time="13:00"))
        result = orchestrator.create_booking(request_for(time="14:30", lesson_type="test_preparation"))
        assert result.booking.lesson_type == "test_preparation"

    def test_admin_event_buffer_uses_requested_type(self, db_session, schedule, funded_user):
        """Test the gap after an admin event needs the requested lesson's buffer"""
        calendar = Mock()
        calendar.get_busy_intervals.return_value = [
            BusyInterval(at(MONDAY, "09:00"), at(MONDAY, "10:00"), BusySource.ADMIN_EVENT, "Car service"),
        ]
        orchestrator = BookingOrchestrator(db_session, schedule, calendar, clock=lambda: NOW)

        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(time="10:30", lesson_type="test_preparation"))
        assert exc_info.value.kind == "insufficient_buffer"

        result = orchestrator.create_booking(request_for(time="10:30", lesson_type="standard"))
        assert result.booking.time == "10:30"

    def test_calendar_failure_fails_closed(self, db_session, schedule, funded_user):
        """Test nothing is booked when admin events cannot be read"""
        calendar = Mock()
        calendar.get_busy_intervals.side_effect = CalendarUnavailableError("timeout")
        orchestrator = BookingOrchestrator(db_session, schedule, calendar, clock=lambda: NOW)

        with pytest.raises(CalendarUnavailableError):
            orchestrator.create_booking(request_for())
        assert orchestrator.bookings.get_user_bookings(funded_user) == []


class TestCreateBooking:
    """Tests for the reserve and debit steps"""

    def test_booking_confirmed_and_paid(self, db_session, orchestrator, funded_user):
        """Test a successful booking is confirmed and linked to its debit"""
        result = orchestrator.create_booking(request_for(duration=90, location="Depot"))

        assert orchestrator.state == BookingState.CONFIRMED
        assert result.booking.status == "confirmed"
        assert result.booking.hours_used == 2
        assert result.booking.quota_transaction_id == result.quota_transaction.id
        assert result.quota_transaction.hours_change == -2
        assert result.quota_transaction.booking_id == result.booking.id
        assert QuotaLedger(db_session).get_balance(funded_user).remaining_hours == 8

    def test_pending_without_confirm_on_debit(self, db_session, schedule, funded_user):
        """Test bookings stay pending when confirmation is manual"""
        orchestrator = BookingOrchestrator(db_session, schedule, confirm_on_debit=False, clock=lambda: NOW)
        result = orchestrator.create_booking(request_for())

        assert result.booking.status == "pending"
        assert result.booking.quota_transaction_id is not None

    def test_insufficient_quota_rolls_back(self, db_session, orchestrator):
        """Test a 2 hour lesson with 1 hour left deletes the booking"""
        ledger = QuotaLedger(db_session)
        ledger.credit("user-1", 1, "Single lesson")

        with pytest.raises(InsufficientQuotaError):
            orchestrator.create_booking(request_for(duration=120))

        assert orchestrator.state == BookingState.ROLLED_BACK
        assert orchestrator.bookings.get_user_bookings("user-1", include_cancelled=True) == []
        assert ledger.get_balance("user-1").used_hours == 0

    def test_no_quota_rolls_back(self, orchestrator):
        """Test a user without quota gets NotFoundError and no booking"""
        with pytest.raises(NotFoundError):
            orchestrator.create_booking(request_for(user_id="unknown"))
        assert orchestrator.bookings.get_user_bookings("unknown", include_cancelled=True) == []

    def test_slot_free_again_after_rollback(self, db_session, orchestrator, funded_user):
        """Test a rolled back booking does not block its slot"""
        QuotaLedger(db_session).credit("poor", 0.5, "Half hour")
        with pytest.raises(InsufficientQuotaError):
            orchestrator.create_booking(request_for(user_id="poor"))

        result = orchestrator.create_booking(request_for(user_id=funded_user))
        assert result.booking.status == "confirmed"

    def test_concurrent_requests_for_same_slot(self, db_session, schedule, funded_user):
        """Test two requests that both passed validation: one confirms, one fails"""
        QuotaLedger(db_session).credit("user-2", 5, "Package")
        first = BookingOrchestrator(db_session, schedule, clock=lambda: NOW)
        second = BookingOrchestrator(db_session, schedule, clock=lambda: NOW)
        first_request = request_for(user_id=funded_user)
        second_request = request_for(user_id="user-2")

        # both validate against the empty day before either reserves
        first_checked = first.check_slot(first_request)
        second_checked = second.check_slot(second_request)

        with patch.object(first, "check_slot", return_value=first_checked):
            result = first.create_booking(first_request)
        with patch.object(second, "check_slot", return_value=second_checked):
            with pytest.raises(SlotUnavailableError) as exc_info:
                second.create_booking(second_request)

        assert result.booking.status == "confirmed"
        assert exc_info.value.kind == "overlap"
        assert len(BookingRepository(db_session).get_active_bookings_for_date(MONDAY.isoformat())) == 1
        assert QuotaLedger(db_session).get_balance("user-2").used_hours == 0


class TestAmbiguousDebit:
    """Tests for debits whose outcome is unknown"""

    def test_debit_committed_before_error(self, orchestrator, funded_user):
        """Test a debit that committed before failing is found and confirmed"""
        real_debit = orchestrator.ledger.debit

        def debit_then_fail(*args, **kwargs):
            real_debit(*args, **kwargs)
            raise StoreUnavailableError("connection lost after commit")

        with patch.object(orchestrator.ledger, "debit", side_effect=debit_then_fail):
            result = orchestrator.create_booking(request_for())

        assert result.booking.status == "confirmed"
        assert result.quota_transaction.hours_change == -1
        assert orchestrator.ledger.get_balance(funded_user).used_hours == 1

    def test_debit_never_happened(self, orchestrator, funded_user):
        """Test a timed out debit without a ledger entry is compensated"""
        with patch.object(orchestrator.ledger, "debit", side_effect=TimeoutError("ledger timeout")):
            with pytest.raises(TimeoutError):
                orchestrator.create_booking(request_for())

        assert orchestrator.state == BookingState.ROLLED_BACK
        assert orchestrator.bookings.get_user_bookings(funded_user, include_cancelled=True) == []
        assert orchestrator.ledger.get_balance(funded_user).used_hours == 0

    def test_reconciliation_impossible(self, orchestrator, funded_user):
        """Test the booking is left pending when the ledger cannot be read"""
        with patch.object(orchestrator.ledger, "debit", side_effect=StoreUnavailableError("down")), \
                patch.object(orchestrator.ledger, "find_debit_for_booking", side_effect=StoreUnavailableError("down")):
            with pytest.raises(ReconciliationRequiredError) as exc_info:
                orchestrator.create_booking(request_for())

        booking = orchestrator.bookings.get_booking(exc_info.value.booking_id)
        assert booking.status == "pending"
        assert exc_info.value.user_id == funded_user
        assert exc_info.value.hours == 1

    def test_rollback_failure(self, db_session, orchestrator):
        """Test a failed compensating delete is fatal and names the booking"""
        QuotaLedger(db_session).credit("user-1", 0.5, "Half hour")

        with patch.object(orchestrator.bookings, "delete_booking", side_effect=StoreUnavailableError("down")):
            with pytest.raises(BookingRollbackError) as exc_info:
                orchestrator.create_booking(request_for())

        booking = orchestrator.bookings.get_booking(exc_info.value.booking_id)
        assert booking.status == "pending"
        assert exc_info.value.hours == 1


class TestIdempotency:
    """Tests for idempotency keys"""

    def test_replay_returns_first_result(self, orchestrator, funded_user):
        """Test retrying with the same key books and debits once"""
        first = orchestrator.create_booking(request_for(idempotency_key="req-1"))
        second = orchestrator.create_booking(request_for(idempotency_key="req-1"))

        assert second.booking.id == first.booking.id
        assert second.quota_transaction.id == first.quota_transaction.id
        assert orchestrator.ledger.get_balance(funded_user).used_hours == 1

    def test_key_reused_with_different_parameters(self, orchestrator, funded_user):
        """Test a key cannot replay a booking for another slot or user"""
        first = orchestrator.create_booking(request_for(idempotency_key="req-1"))

        for changes in ({"time": "13:00"}, {"day": MONDAY + timedelta(days=1)},
                        {"duration": 120}, {"user_id": "user-2"}):
            with pytest.raises(ValidationError, match="reused with different parameters"):
                orchestrator.create_booking(request_for(idempotency_key="req-1", **changes))

        assert [b.id for b in orchestrator.bookings.get_user_bookings(funded_user)] == [first.booking.id]
        assert orchestrator.ledger.get_balance(funded_user).used_hours == 1


class TestUserLimits:
    """Tests for per-student daily and weekly limits"""

    @pytest.mark.parametrize("limits,booked,requested,reason", [
        ({"max_hours_per_day": 2}, [(MONDAY, "09:00", 90)], (MONDAY, "13:00", 60),
         "Daily hour limit exceeded"),
        ({"max_lessons_per_day": 1}, [(MONDAY, "09:00", 60)], (MONDAY, "13:00", 60),
         "Daily lesson limit exceeded"),
        ({"max_hours_per_week": 2}, [(MONDAY, "09:00", 60), (TUESDAY, "09:00", 60)], (WEDNESDAY, "09:00", 60),
         "Weekly hour limit exceeded"),
        ({"max_lessons_per_week": 2}, [(MONDAY, "09:00", 60), (TUESDAY, "09:00", 60)], (WEDNESDAY, "09:00", 60),
         "Weekly lesson limit exceeded"),
    ])
    def test_limit_rejects_booking(self, db_session, funded_user, limits, booked, requested, reason):
        """Test each limit rejects the next lesson with its reason"""
        orchestrator = BookingOrchestrator(
            db_session, Schedule(working_hours=WorkingHoursConfig(**limits)), clock=lambda: NOW
        )
        for day, time, duration in booked:
            orchestrator.create_booking(request_for(time=time, duration=duration, day=day))

        day, time, duration = requested
        with pytest.raises(SlotUnavailableError) as exc_info:
            orchestrator.create_booking(request_for(time=time, duration=duration, day=day))

        assert exc_info.value.kind == "user_limit"
        assert exc_info.value.message == reason
        assert len(orchestrator.bookings.get_user_bookings(funded_user)) == len(booked)

    def test_limits_are_per_student(self, db_session, funded_user):
        """Test another student can still book"""
        QuotaLedger(db_session).credit("user-2", 2, "2 hour package")
        orchestrator = BookingOrchestrator(
            db_session, Schedule(working_hours=WorkingHoursConfig(max_lessons_per_day=1)), clock=lambda: NOW
        )
        orchestrator.create_booking(request_for(time="09:00"))

        result = orchestrator.create_booking(request_for(time="13:00", user_id="user-2"))
        assert result.booking.user_id == "user-2"

    def test_cancelled_lessons_do_not_count(self, db_session, funded_user):
        """Test a cancelled lesson frees its place in the limit"""
        orchestrator = BookingOrchestrator(
            db_session, Schedule(working_hours=WorkingHoursConfig(max_lessons_per_week=1)), clock=lambda: NOW
        )
        first = orchestrator.create_booking(request_for(time="09:00"))
        orchestrator.cancel_booking(first.booking.id)

        result = orchestrator.create_booking(request_for(time="13:00", day=TUESDAY))
        assert result.booking.date == TUESDAY.isoformat()


class TestCancelBooking:
    """Tests for cancel_booking"""

    def test_cancel_refunds(self, orchestrator, funded_user):
        """Test cancelling marks the booking and refunds its hours"""
        result = orchestrator.create_booking(request_for(duration=120, notes="Bring glasses"))

        booking, refund = orchestrator.cancel_booking(result.booking.id, reason="Sick")

        assert booking.status == "cancelled"
        assert "Cancelled: Sick" in booking.notes
        assert "Bring glasses" in booking.notes
        assert refund.hours_change == 2
        assert orchestrator.ledger.get_balance(funded_user).used_hours == 0

    def test_cancel_twice(self, orchestrator, funded_user):
        """Test cancelling again is a no-op"""
        result = orchestrator.create_booking(request_for())
        orchestrator.cancel_booking(result.booking.id)

        booking, refund = orchestrator.cancel_booking(result.booking.id)

        assert booking.status == "cancelled"
        assert refund is None
        assert orchestrator.ledger.get_balance(funded_user).remaining_hours == 10

    def test_cancelled_slot_is_free(self, orchestrator, funded_user):
        """Test a cancelled slot can be booked again"""
        result = orchestrator.create_booking(request_for())
        orchestrator.cancel_booking(result.booking.id)

        again = orchestrator.create_booking(request_for())
        assert again.booking.id != result.booking.id

    def test_cancel_unknown(self, orchestrator):
        """Test cancelling a missing booking"""
        with pytest.raises(NotFoundError):
            orchestrator.cancel_booking(404)
