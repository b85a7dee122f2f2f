"""
Quota ledger - lesson-hour balances and their append-only history.

Every balance change and its ledger row are written in one database
transaction. Debits are a single conditional UPDATE so two concurrent debits
can never both pass on a stale balance.
"""

import logging
from typing import List, Optional

from sqlmodel import Session

from lessonbook.db_models import QuotaTransaction, UserQuota
from lessonbook.errors import InsufficientQuotaError, NotFoundError, ValidationError
from lessonbook.models import TransactionType
from lessonbook.repositories import QuotaRepository, store_errors

logger = logging.getLogger(__name__)


class QuotaLedger:
    """Reads and changes user quota balances"""

    def __init__(self, session: Session):
        self.session = session
        self.repo = QuotaRepository(session)

    def get_balance(self, user_id: str) -> UserQuota:
        """
        Current balance of a user

        Raises:
            NotFoundError: No quota row exists for the user
        """
        quota = self.repo.get_quota(user_id)
        if quota is None:
            raise NotFoundError(f"No quota found for user {user_id}")
        return quota

    def debit(
        self, user_id: str, hours: float, description: str, booking_id: Optional[int]
    ) -> QuotaTransaction:
        """
        Consume hours for a booking

        Args:
            user_id: Quota owner
            hours: Hours to consume, > 0
            description: Ledger text
            booking_id: Booking the hours pay for

        Returns:
            The "booking" ledger entry (hours_change = -hours)

        Raises:
            ValidationError: hours is not positive
            NotFoundError: No quota row exists for the user
            InsufficientQuotaError: Fewer than `hours` remain; nothing is debited
        """
        if hours <= 0:
            raise ValidationError(f"Debit hours must be positive, got {hours}")

        try:
            if not self.repo.consume_hours(user_id, hours):
                # nothing was written; find out why
                quota = self.repo.get_quota(user_id)
                if quota is None:
                    raise NotFoundError(f"No quota found for user {user_id}")
                raise InsufficientQuotaError(user_id, hours, quota.remaining_hours)

            transaction = self.repo.add_transaction(
                user_id=user_id,
                hours_change=-hours,
                type=TransactionType.BOOKING.value,
                description=description,
                booking_id=booking_id,
            )
            with store_errors(self.session):
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(transaction)
        logger.info(f"Debited {hours:g}h from user {user_id} for booking {booking_id}")
        return transaction

    def credit(
        self,
        user_id: str,
        hours: float,
        description: str,
        type: TransactionType = TransactionType.PURCHASE,
        ref_booking_id: Optional[int] = None,
        package_id: Optional[str] = None,
    ) -> QuotaTransaction:
        """
        Add hours to a user's balance

        Purchases and adjustments raise total_hours; refunds give back used
        hours. A missing quota row is created with a zero balance first.

        Raises:
            ValidationError: hours is not positive or type is "booking"
        """
        if hours <= 0:
            raise ValidationError(f"Credit hours must be positive, got {hours}")
        type = TransactionType(type)
        if type == TransactionType.BOOKING:
            raise ValidationError("Booking transactions are created by debit()")

        try:
            self.repo.get_or_create_quota(user_id)
            if type != TransactionType.REFUND or not self.repo.release_hours(user_id, hours):
                self.repo.add_total_hours(user_id, hours)

            transaction = self.repo.add_transaction(
                user_id=user_id,
                hours_change=hours,
                type=type.value,
                description=description,
                booking_id=ref_booking_id,
                package_id=package_id,
            )
            with store_errors(self.session):
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(transaction)
        logger.info(f"Credited {hours:g}h ({type.value}) to user {user_id}")
        return transaction

    def refund(self, user_id: str, booking_id: int) -> QuotaTransaction:
        """
        Give back the hours debited for a booking

        Refunding twice returns the first refund.

        Raises:
            NotFoundError: No debit exists for the booking
        """
        existing = self.repo.find_transaction(booking_id, TransactionType.REFUND.value)
        if existing is not None:
            logger.info(f"Booking {booking_id} already refunded (transaction {existing.id})")
            return existing

        debit = self.find_debit_for_booking(booking_id)
        if debit is None or debit.user_id != user_id:
            raise NotFoundError(f"No quota debit found for booking {booking_id} of user {user_id}")

        return self.credit(
            user_id,
            abs(debit.hours_change),
            f"Refund for booking {booking_id}",
            type=TransactionType.REFUND,
            ref_booking_id=booking_id,
        )

    def find_debit_for_booking(self, booking_id: int) -> Optional[QuotaTransaction]:
        """The "booking" ledger entry of a booking, if it was committed"""
        return self.repo.find_transaction(booking_id, TransactionType.BOOKING.value)

    def list_transactions(self, user_id: str, limit: int = 50) -> List[QuotaTransaction]:
        """Ledger history of a user, newest first"""
        return self.repo.get_transactions(user_id, limit)
