"""
Schedule configuration: per-weekday working hours and buffer policy
Validated with Pydantic; loaded once per request and passed explicitly
"""

import logging
import re
from datetime import date, datetime, time
from enum import IntEnum
from pathlib import Path
from typing import Dict, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")


class Weekday(IntEnum):
    """Day of week, Sunday first"""

    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6

    @classmethod
    def of(cls, day: date) -> "Weekday":
        """Weekday of a calendar date (date.weekday() is Monday first)"""
        return cls((day.weekday() + 1) % 7)


def parse_hhmm(value: str) -> time:
    """Parse a validated HH:MM string"""
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DayConfig(_CamelModel):
    """Working window of one weekday"""

    enabled: bool = False
    start: str = "09:00"
    end: str = "17:00"

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not TIME_PATTERN.match(v):
            raise ValueError(f"Time must be in HH:MM format (e.g., 09:00, 14:30), got {v!r}")
        return v

    @model_validator(mode="after")
    def check_window(self) -> "DayConfig":
        # zero-padded HH:MM strings compare chronologically
        if self.enabled and not self.start < self.end:
            raise ValueError("Start time must be before end time")
        return self

    @property
    def start_time(self) -> time:
        return parse_hhmm(self.start)

    @property
    def end_time(self) -> time:
        return parse_hhmm(self.end)


def default_week() -> Dict[Weekday, DayConfig]:
    week = {
        Weekday.SUNDAY: DayConfig(enabled=False, start="10:00", end="16:00"),
        Weekday.SATURDAY: DayConfig(enabled=False, start="10:00", end="16:00"),
    }
    for day in (Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY, Weekday.THURSDAY, Weekday.FRIDAY):
        week[day] = DayConfig(enabled=True, start="09:00", end="17:00")
    return week


class WorkingHoursConfig(_CamelModel):
    """Working hours, lesson length and day-level exclusions"""

    days: Dict[Weekday, DayConfig] = Field(default_factory=default_week)
    lesson_duration_minutes: int = Field(60, ge=30, le=180)
    buffer_time_minutes: int = Field(30, ge=0, le=120)
    slot_interval_minutes: Optional[int] = Field(None, ge=5, le=180)
    max_bookings_per_day: int = Field(8, ge=1, le=20)
    # per student, counted over active bookings; weeks start on Monday
    max_hours_per_day: float = Field(8, ge=1, le=24)
    max_lessons_per_day: int = Field(8, ge=1, le=20)
    max_hours_per_week: float = Field(40, ge=1, le=168)
    max_lessons_per_week: int = Field(30, ge=1, le=100)
    vacation_days: Set[date] = Field(default_factory=set)
    timezone: str = "Australia/Brisbane"

    @field_validator("days", mode="before")
    @classmethod
    def normalize_day_keys(cls, v):
        """Accept weekday numbers, numeric strings or day names as keys"""
        if not isinstance(v, dict):
            return v
        normalized = {}
        for key, value in v.items():
            if isinstance(key, Weekday):
                normalized[key] = value
            elif isinstance(key, int) or (isinstance(key, str) and key.isdigit()):
                normalized[Weekday(int(key))] = value
            elif isinstance(key, str) and key.upper() in Weekday.__members__:
                normalized[Weekday[key.upper()]] = value
            else:
                raise ValueError(f"Unknown weekday key: {key!r}")
        return normalized

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def slot_step_minutes(self) -> int:
        return self.slot_interval_minutes or self.lesson_duration_minutes

    def day_config(self, day: date) -> DayConfig:
        """Config of the weekday of a date; unset days are disabled"""
        return self.days.get(Weekday.of(day), DayConfig(enabled=False))

    def is_working_day(self, day: date) -> bool:
        return self.day_config(day).enabled and day not in self.vacation_days

    def day_window(self, day: date) -> tuple[datetime, datetime]:
        """Aware start/end datetimes of the working window of a date"""
        config = self.day_config(day)
        return (
            datetime.combine(day, config.start_time, tzinfo=self.tz),
            datetime.combine(day, config.end_time, tzinfo=self.tz),
        )


DEFAULT_LESSON_TYPE_BUFFERS = {
    "standard": 30,
    "intensive": 45,
    "test_preparation": 60,
    "highway_driving": 45,
    "parking_practice": 20,
}


class BufferPolicy(_CamelModel):
    """Buffer time between lessons, optionally per lesson type"""

    enabled: bool = True
    default_minutes: int = Field(30, ge=0)
    min_minutes: int = Field(15, ge=0)
    max_minutes: int = Field(60, ge=0)
    adaptive: bool = True
    per_type_minutes: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_LESSON_TYPE_BUFFERS)
    )

    @model_validator(mode="after")
    def check_bounds(self) -> "BufferPolicy":
        if not self.min_minutes <= self.default_minutes <= self.max_minutes:
            raise ValueError(
                "Buffer bounds must satisfy min_minutes <= default_minutes <= max_minutes"
            )
        return self


class Schedule(_CamelModel):
    """Everything the booking engine reads from the configuration source"""

    working_hours: WorkingHoursConfig = Field(default_factory=WorkingHoursConfig)
    buffer_policy: BufferPolicy = Field(default_factory=BufferPolicy)


def load_schedule(path: Optional[str] = None) -> Schedule:
    """
    Load schedule configuration

    Args:
        path: JSON file with working_hours / buffer_policy sections.
              None means built-in defaults.

    Returns:
        Validated Schedule

    Raises:
        pydantic.ValidationError: If the file content is invalid
        OSError: If the file cannot be read
    """
    if path is None:
        return Schedule()

    schedule = Schedule.model_validate_json(Path(path).read_text(encoding="utf-8"))
    logger.debug(f"Schedule loaded from {path}")
    return schedule
