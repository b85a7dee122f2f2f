"""
Type-safe value models for the booking engine
Uses dataclasses and enums for better type safety and IDE support
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class BookingStatus(str, Enum):
    """Lifecycle of a booking row"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    """Kinds of quota ledger entries"""
    PURCHASE = "purchase"
    BOOKING = "booking"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class BusySource(str, Enum):
    """Where a busy interval comes from"""
    BOOKING = "booking"
    ADMIN_EVENT = "admin-event"


class ConflictKind(str, Enum):
    OVERLAP = "overlap"
    INSUFFICIENT_BUFFER = "insufficient_buffer"
    BACK_TO_BACK = "back_to_back"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class BusyInterval:
    """Time already occupied by a booking or an admin calendar event"""
    start: datetime
    end: datetime
    source: BusySource = BusySource.BOOKING
    label: str = "Unavailable"
    lesson_type: Optional[str] = None  # booked lessons only


@dataclass(frozen=True)
class ProposedInterval:
    """Interval someone wants to book"""
    start: datetime
    end: datetime
    lesson_type: Optional[str] = None


@dataclass(frozen=True)
class TimeSlot:
    """Candidate lesson window; computed on every query, never stored"""
    start: datetime
    end: datetime
    available: bool = True
    reason: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def label(self) -> str:
        """Human readable HH:MM - HH:MM"""
        return f"{self.start:%H:%M} - {self.end:%H:%M}"


@dataclass(frozen=True)
class ConflictFinding:
    """One finding of the conflict detector against one existing interval"""
    kind: ConflictKind
    severity: Severity
    message: str
    interval: BusyInterval
    suggestion: Optional[str] = None
    shift_minutes: Optional[float] = None  # signed, buffer findings only

    @property
    def conflict(self) -> bool:
        # back-to-back is advisory only
        return self.kind != ConflictKind.BACK_TO_BACK
