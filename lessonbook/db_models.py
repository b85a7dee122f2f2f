"""
Database models using SQLModel
Provides type-safe ORM with Pydantic validation
"""

from sqlalchemy import CheckConstraint, DateTime, Index, text
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Booking(SQLModel, table=True):
    """Lesson booking"""

    __tablename__ = "bookings"
    __table_args__ = (
        # Store-level exclusion: one active booking per start slot
        Index(
            "ux_bookings_active_slot",
            "date",
            "time",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=255)
    date: str = Field(max_length=10, index=True)  # YYYY-MM-DD
    time: str = Field(max_length=5)  # HH:MM
    duration_minutes: int = 60
    lesson_type: str = Field(default="standard", max_length=50)
    location: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default="pending", max_length=20)  # pending, confirmed, cancelled
    hours_used: float = 1.0
    quota_transaction_id: Optional[int] = Field(default=None, foreign_key="quota_transactions.id")
    notes: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=255, unique=True)

    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class UserQuota(SQLModel, table=True):
    """Prepaid lesson-hour balance, one row per user"""

    __tablename__ = "user_quotas"
    __table_args__ = (
        CheckConstraint(
            "used_hours <= total_hours AND used_hours >= 0 AND total_hours >= 0",
            name="ck_user_quotas_valid_hours",
        ),
    )

    user_id: str = Field(primary_key=True, max_length=255)
    total_hours: float = 0.0
    used_hours: float = 0.0
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    @property
    def remaining_hours(self) -> float:
        return round(self.total_hours - self.used_hours, 2)


class QuotaTransaction(SQLModel, table=True):
    """Append-only quota ledger entry"""

    __tablename__ = "quota_transactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=255)
    hours_change: float  # positive for additions, negative for deductions
    type: str = Field(max_length=20, index=True)  # purchase, booking, refund, adjustment
    description: str
    booking_id: Optional[int] = Field(default=None, index=True)
    package_id: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), index=True)
