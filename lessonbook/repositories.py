"""
Repository pattern for database access
Provides clean separation between business logic and data access
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from lessonbook.db_models import Booking, QuotaTransaction, UserQuota, utc_now
from lessonbook.errors import SlotUnavailableError, StoreUnavailableError, ValidationError
from lessonbook.models import BookingStatus

logger = logging.getLogger(__name__)


@contextmanager
def store_errors(session: Session) -> Iterator[None]:
    """Translate connection-level failures into StoreUnavailableError"""
    try:
        yield
    except OperationalError as e:
        session.rollback()
        logger.error(f"Record store unavailable: {e}")
        raise StoreUnavailableError(str(e)) from e


class BookingRepository:
    """Repository for Booking operations"""

    def __init__(self, session: Session):
        self.session = session

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        """Get booking by ID"""
        with store_errors(self.session):
            return self.session.get(Booking, booking_id)

    def get_by_idempotency_key(self, key: str) -> Optional[Booking]:
        """Get the booking created for a client idempotency key"""
        statement = select(Booking).where(Booking.idempotency_key == key)
        with store_errors(self.session):
            return self.session.exec(statement).first()

    def get_active_bookings_for_date(self, date: str) -> List[Booking]:
        """Get non-cancelled bookings of a day, ordered by start time"""
        statement = (
            select(Booking)
            .where(Booking.date == date, Booking.status != BookingStatus.CANCELLED.value)
            .order_by(Booking.time)
        )
        with store_errors(self.session):
            return list(self.session.exec(statement))

    def get_user_bookings(self, user_id: str, include_cancelled: bool = False) -> List[Booking]:
        """Get all bookings of a user, newest lesson first"""
        statement = select(Booking).where(Booking.user_id == user_id)
        if not include_cancelled:
            statement = statement.where(Booking.status != BookingStatus.CANCELLED.value)
        statement = statement.order_by(col(Booking.date).desc(), col(Booking.time).desc())
        with store_errors(self.session):
            return list(self.session.exec(statement))

    def get_user_bookings_between(self, user_id: str, start_date: str, end_date: str) -> List[Booking]:
        """Get non-cancelled bookings of a user with start_date <= date <= end_date"""
        statement = (
            select(Booking)
            .where(
                Booking.user_id == user_id,
                Booking.status != BookingStatus.CANCELLED.value,
                col(Booking.date) >= start_date,
                col(Booking.date) <= end_date,
            )
            .order_by(Booking.date, Booking.time)
        )
        with store_errors(self.session):
            return list(self.session.exec(statement))

    def create_booking(
        self,
        user_id: str,
        date: str,
        time: str,
        duration_minutes: int,
        lesson_type: str,
        hours_used: float,
        location: Optional[str] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        status: str = BookingStatus.PENDING.value,
    ) -> Booking:
        """
        Insert a booking

        Raises:
            SlotUnavailableError: Another active booking holds the same slot
            ValidationError: The idempotency key is already taken
        """
        booking = Booking(
            user_id=user_id,
            date=date,
            time=time,
            duration_minutes=duration_minutes,
            lesson_type=lesson_type,
            hours_used=hours_used,
            location=location,
            notes=notes,
            idempotency_key=idempotency_key,
            status=status,
        )
        self.session.add(booking)
        try:
            with store_errors(self.session):
                self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            if "idempotency_key" in str(e.orig):
                raise ValidationError(
                    f"Idempotency key {idempotency_key!r} is already in use"
                ) from e
            logger.warning(f"Slot {date} {time} was taken concurrently: {e.orig}")
            raise SlotUnavailableError(
                "overlap",
                f"The {time} slot on {date} has just been booked",
                "Choose a different time slot",
            ) from e
        self.session.refresh(booking)
        return booking

    def update_status(
        self,
        booking_id: int,
        status: str,
        quota_transaction_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Optional[Booking]:
        """Update booking status and optional quota link / notes"""
        booking = self.get_booking(booking_id)
        if not booking:
            return None

        booking.status = status
        if quota_transaction_id is not None:
            booking.quota_transaction_id = quota_transaction_id
        if notes is not None:
            booking.notes = notes
        booking.updated_at = utc_now()
        with store_errors(self.session):
            self.session.commit()
        self.session.refresh(booking)
        return booking

    def delete_booking(self, booking_id: int) -> bool:
        """Delete booking"""
        booking = self.get_booking(booking_id)
        if booking:
            self.session.delete(booking)
            with store_errors(self.session):
                self.session.commit()
            return True
        return False


class QuotaRepository:
    """
    Repository for UserQuota and QuotaTransaction operations

    Write methods do not commit: the ledger groups a balance change and its
    transaction row into one database transaction and commits it itself.
    """

    def __init__(self, session: Session):
        self.session = session

    def get_quota(self, user_id: str) -> Optional[UserQuota]:
        """Get quota row of a user"""
        with store_errors(self.session):
            return self.session.get(UserQuota, user_id, populate_existing=True)

    def get_or_create_quota(self, user_id: str) -> UserQuota:
        """Get quota row, creating a zero balance row if missing"""
        quota = self.get_quota(user_id)
        if quota is None:
            quota = UserQuota(user_id=user_id)
            self.session.add(quota)
            with store_errors(self.session):
                self.session.flush()
        return quota

    def consume_hours(self, user_id: str, hours: float) -> bool:
        """
        Increment used_hours if enough hours remain

        Single conditional UPDATE; returns False when the balance was too low
        or the row does not exist.
        """
        statement = (
            update(UserQuota)
            .where(col(UserQuota.user_id) == user_id)
            .where(col(UserQuota.total_hours) - col(UserQuota.used_hours) >= hours)
            .values(
                used_hours=col(UserQuota.used_hours) + hours,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        with store_errors(self.session):
            result = self.session.exec(statement)
        return result.rowcount == 1

    def release_hours(self, user_id: str, hours: float) -> bool:
        """Decrement used_hours if at least `hours` are in use"""
        statement = (
            update(UserQuota)
            .where(col(UserQuota.user_id) == user_id)
            .where(col(UserQuota.used_hours) >= hours)
            .values(
                used_hours=col(UserQuota.used_hours) - hours,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        with store_errors(self.session):
            result = self.session.exec(statement)
        return result.rowcount == 1

    def add_total_hours(self, user_id: str, hours: float) -> None:
        """Increment total_hours"""
        statement = (
            update(UserQuota)
            .where(col(UserQuota.user_id) == user_id)
            .values(
                total_hours=col(UserQuota.total_hours) + hours,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        with store_errors(self.session):
            self.session.exec(statement)

    def add_transaction(
        self,
        user_id: str,
        hours_change: float,
        type: str,
        description: str,
        booking_id: Optional[int] = None,
        package_id: Optional[str] = None,
    ) -> QuotaTransaction:
        """Append a ledger entry"""
        transaction = QuotaTransaction(
            user_id=user_id,
            hours_change=hours_change,
            type=type,
            description=description,
            booking_id=booking_id,
            package_id=package_id,
        )
        self.session.add(transaction)
        with store_errors(self.session):
            self.session.flush()
        return transaction

    def find_transaction(self, booking_id: int, type: str) -> Optional[QuotaTransaction]:
        """Get the first ledger entry of a type linked to a booking"""
        statement = (
            select(QuotaTransaction)
            .where(QuotaTransaction.booking_id == booking_id, QuotaTransaction.type == type)
            .order_by(QuotaTransaction.id)
        )
        with store_errors(self.session):
            return self.session.exec(statement).first()

    def get_transactions(self, user_id: str, limit: int = 50) -> List[QuotaTransaction]:
        """Get recent ledger entries of a user, newest first"""
        statement = (
            select(QuotaTransaction)
            .where(QuotaTransaction.user_id == user_id)
            .order_by(col(QuotaTransaction.created_at).desc(), col(QuotaTransaction.id).desc())
            .limit(limit)
        )
        with store_errors(self.session):
            return list(self.session.exec(statement))
