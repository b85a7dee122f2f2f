"""
Availability calculator - bookable lesson slots of a day.

Pure functions over working hours and busy intervals; the caller loads both.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from lessonbook.models import BusyInterval, ProposedInterval, TimeSlot
from lessonbook.schedule import BufferPolicy, WorkingHoursConfig
from lessonbook.services.buffer_policy import resolve_buffer
from lessonbook.services.conflicts import check_lesson_conflicts

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Unavailable"
PAST_REASON = "Start time has passed"

DAILY_HOURS_REASON = "Daily hour limit exceeded"
DAILY_LESSONS_REASON = "Daily lesson limit exceeded"
WEEKLY_HOURS_REASON = "Weekly hour limit exceeded"
WEEKLY_LESSONS_REASON = "Weekly lesson limit exceeded"


def local_now(working_hours: WorkingHoursConfig, now: Optional[datetime] = None) -> datetime:
    """Current time in the school's timezone"""
    return now.astimezone(working_hours.tz) if now else datetime.now(working_hours.tz)


def is_past(day: date, working_hours: WorkingHoursConfig, now: Optional[datetime] = None) -> bool:
    """True if the day is before today in the school's timezone"""
    return day < local_now(working_hours, now).date()


def has_started(start: datetime, working_hours: WorkingHoursConfig, now: Optional[datetime] = None) -> bool:
    """True if a lesson starting at `start` can no longer be booked"""
    return start < local_now(working_hours, now)


def is_bookable_day(day: date, working_hours: WorkingHoursConfig, now: Optional[datetime] = None) -> bool:
    """Day is not past, its weekday is enabled and it is not a vacation day"""
    return not is_past(day, working_hours, now) and working_hours.is_working_day(day)


def week_start(day: date) -> date:
    """Monday of the week containing `day`"""
    return day - timedelta(days=day.weekday())


def _lessons_on(lessons: Sequence[BusyInterval], first: date, last: date, working_hours: WorkingHoursConfig):
    return [
        lesson for lesson in lessons
        if first <= lesson.start.astimezone(working_hours.tz).date() <= last
    ]


def _hours(lessons: Sequence[BusyInterval]) -> float:
    return sum((lesson.end - lesson.start).total_seconds() for lesson in lessons) / 3600


def user_limit_reason(
    day: date,
    duration_minutes: int,
    user_lessons: Sequence[BusyInterval],
    working_hours: WorkingHoursConfig,
) -> Optional[str]:
    """
    Why one more lesson of a student on `day` would break a per-student limit.

    Args:
        day: Day of the requested lesson
        duration_minutes: Length of the requested lesson
        user_lessons: The student's active lessons; anything outside the
                      day's Monday-Sunday week is ignored
        working_hours: Carries the daily and weekly limits

    Returns:
        Reason text, or None if the lesson fits all limits
    """
    requested = duration_minutes / 60
    first = week_start(day)
    weekly = _lessons_on(user_lessons, first, first + timedelta(days=6), working_hours)
    daily = _lessons_on(weekly, day, day, working_hours)

    if _hours(daily) + requested > working_hours.max_hours_per_day:
        return DAILY_HOURS_REASON
    if len(daily) >= working_hours.max_lessons_per_day:
        return DAILY_LESSONS_REASON
    if _hours(weekly) + requested > working_hours.max_hours_per_week:
        return WEEKLY_HOURS_REASON
    if len(weekly) >= working_hours.max_lessons_per_week:
        return WEEKLY_LESSONS_REASON
    return None


def weekly_allowance(
    day: date,
    user_lessons: Sequence[BusyInterval],
    working_hours: WorkingHoursConfig,
) -> Dict[str, float]:
    """Hours and lessons a student may still book in the week of `day`"""
    first = week_start(day)
    weekly = _lessons_on(user_lessons, first, first + timedelta(days=6), working_hours)
    return {
        "remaining_hours": max(0.0, working_hours.max_hours_per_week - _hours(weekly)),
        "remaining_lessons": max(0, working_hours.max_lessons_per_week - len(weekly)),
    }


def iter_candidate_slots(day: date, working_hours: WorkingHoursConfig) -> Iterator[TimeSlot]:
    """
    Lesson-length windows of the working day, ascending.

    Starts at the day's start time and steps by the slot interval; stops
    before a window that would end after the day's end time.
    """
    day_start, day_end = working_hours.day_window(day)
    length = timedelta(minutes=working_hours.lesson_duration_minutes)
    step = timedelta(minutes=working_hours.slot_step_minutes)

    current = day_start
    while current + length <= day_end:
        yield TimeSlot(start=current, end=current + length)
        current += step


def buffer_lookup(
    working_hours: WorkingHoursConfig,
    buffer_policy: Optional[BufferPolicy] = None,
) -> Callable[[Optional[str]], float]:
    """Buffer minutes per lesson type; the flat buffer time without a policy"""
    if buffer_policy is None:
        return lambda lesson_type: working_hours.buffer_time_minutes
    return lambda lesson_type: resolve_buffer(lesson_type, buffer_policy)


def compute_slots(
    day: date,
    working_hours: WorkingHoursConfig,
    busy_intervals: Sequence[BusyInterval],
    now: Optional[datetime] = None,
    lesson_type: Optional[str] = None,
    buffer_policy: Optional[BufferPolicy] = None,
    user_lessons: Optional[Sequence[BusyInterval]] = None,
) -> List[TimeSlot]:
    """
    Compute the slots of a day.

    A slot is available only when it has not started yet, the conflict
    detector reports nothing at all for it (back-to-back included) and,
    for a known student, one more lesson stays within their limits.

    Args:
        day: Calendar date in the school's timezone
        working_hours: Working hours configuration
        busy_intervals: Bookings and admin events of the day
        now: Current time for the past-date and started-slot checks
        lesson_type: Type of the lesson being looked for
        buffer_policy: Per-type buffers; None uses buffer_time_minutes
        user_lessons: The student's active lessons of the week, if known

    Returns:
        Slots ordered by start time; empty if the day is not bookable
    """
    if not is_bookable_day(day, working_hours, now):
        return []

    buffer_for = buffer_lookup(working_hours, buffer_policy)
    limit_reason = None
    if user_lessons is not None:
        limit_reason = user_limit_reason(
            day, working_hours.lesson_duration_minutes, user_lessons, working_hours
        )

    slots = []
    for candidate in iter_candidate_slots(day, working_hours):
        if has_started(candidate.start, working_hours, now):
            reason = PAST_REASON
        else:
            findings = check_lesson_conflicts(
                ProposedInterval(candidate.start, candidate.end, lesson_type),
                busy_intervals,
                buffer_for,
            )
            reason = (findings[0].interval.label or DEFAULT_REASON) if findings else limit_reason

        if reason:
            slots.append(TimeSlot(candidate.start, candidate.end, available=False, reason=reason))
        else:
            slots.append(candidate)

    logger.debug(
        f"{day.isoformat()}: {sum(slot.available for slot in slots)}/{len(slots)} slots available"
    )
    return slots


def find_next_available_slot(
    start_from: datetime,
    working_hours: WorkingHoursConfig,
    busy_intervals: Sequence[BusyInterval],
    max_days: int = 30,
    now: Optional[datetime] = None,
    lesson_type: Optional[str] = None,
    buffer_policy: Optional[BufferPolicy] = None,
) -> Optional[TimeSlot]:
    """
    First available slot starting at or after `start_from`.

    Busy intervals may span several days; each day only looks at the
    intervals that touch it.

    Returns:
        The slot, or None if nothing is free within `max_days`
    """
    local_start = start_from.astimezone(working_hours.tz)
    first_day = local_start.date()

    for offset in range(max_days + 1):
        day = first_day + timedelta(days=offset)
        day_begin = datetime.combine(day, datetime.min.time(), tzinfo=working_hours.tz)
        day_busy = [
            interval
            for interval in busy_intervals
            if interval.end >= day_begin and interval.start <= day_begin + timedelta(days=1)
        ]
        for slot in compute_slots(day, working_hours, day_busy, now, lesson_type, buffer_policy):
            if slot.available and slot.start >= local_start:
                return slot

    return None


def availability_stats(slots: Sequence[TimeSlot]) -> Dict[str, float]:
    """Counts and availability rate (percent) of a list of slots"""
    total = len(slots)
    available = sum(1 for slot in slots if slot.available)
    return {
        "total_slots": total,
        "available_slots": available,
        "unavailable_slots": total - available,
        "availability_rate": (available / total) * 100 if total else 0.0,
    }
