"""
Error taxonomy of the booking engine

Validation and slot errors are meant to be turned into user-facing replies.
Ledger and store errors carry enough context for reconciliation.
BookingRollbackError and ReconciliationRequiredError are fatal and need an
operator.
"""

from typing import Optional


class BookingEngineError(Exception):
    """Base class for all booking engine errors"""


class ValidationError(BookingEngineError):
    """Malformed input, rejected before any I/O"""


class NotFoundError(BookingEngineError):
    """Quota, user or booking record is missing"""


class SlotUnavailableError(BookingEngineError):
    """Requested interval cannot be booked"""

    def __init__(self, kind: str, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.suggestion = suggestion


class InsufficientQuotaError(BookingEngineError):
    """Debit would make the remaining balance negative"""

    def __init__(self, user_id: str, requested: float, available: float):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        self.shortfall = round(requested - available, 2)
        super().__init__(
            f"Insufficient quota hours for user {user_id}. "
            f"Available: {available:g}, Requested: {requested:g}"
        )


class StoreUnavailableError(BookingEngineError):
    """Transient record store failure; the caller may retry with backoff"""


class BookingRollbackError(BookingEngineError):
    """Compensating delete failed; an orphaned pending booking remains"""

    def __init__(self, booking_id: int, user_id: str, hours: float, cause: Exception):
        self.booking_id = booking_id
        self.user_id = user_id
        self.hours = hours
        self.cause = cause
        super().__init__(
            f"Rollback of booking {booking_id} for user {user_id} "
            f"({hours:g}h) failed: {cause}"
        )


class ReconciliationRequiredError(BookingEngineError):
    """Outcome of a debit is unknown and could not be determined"""

    def __init__(self, booking_id: int, user_id: str, hours: float, cause: Exception):
        self.booking_id = booking_id
        self.user_id = user_id
        self.hours = hours
        self.cause = cause
        super().__init__(
            f"Debit outcome for booking {booking_id} (user {user_id}, {hours:g}h) "
            f"is unknown: {cause}"
        )


class CalendarUnavailableError(BookingEngineError):
    """External calendar could not be read"""
