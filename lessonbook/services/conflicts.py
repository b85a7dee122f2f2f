"""
Conflict detector - the one place that does interval/buffer arithmetic.
Used by the availability calculator, the booking orchestrator and the bot.
"""

import logging
from typing import Callable, Iterable, List, Optional

from lessonbook.models import (
    BusyInterval,
    ConflictFinding,
    ConflictKind,
    ProposedInterval,
    Severity,
)

logger = logging.getLogger(__name__)


def _minutes(delta) -> float:
    return delta.total_seconds() / 60


def overlaps(proposed: ProposedInterval, existing: BusyInterval) -> bool:
    """True if the proposal intersects the existing [start, end) interval"""
    starts_inside = existing.start <= proposed.start < existing.end
    ends_inside = existing.start < proposed.end <= existing.end
    contains = proposed.start <= existing.start and proposed.end >= existing.end
    return starts_inside or ends_inside or contains


def check_conflict(
    proposed: ProposedInterval,
    existing: Iterable[BusyInterval],
    buffer_minutes: float,
) -> List[ConflictFinding]:
    """
    Classify a proposed interval against existing busy intervals.

    Every existing interval is checked on its own. An overlap with an
    interval suppresses the buffer checks for that same interval.

    Args:
        proposed: Interval to check
        existing: Busy intervals of the day
        buffer_minutes: Required idle gap between lessons

    Returns:
        Findings in the order of `existing`; empty means bookable
    """
    findings: List[ConflictFinding] = []

    for interval in existing:
        if overlaps(proposed, interval):
            findings.append(
                ConflictFinding(
                    kind=ConflictKind.OVERLAP,
                    severity=Severity.HIGH,
                    message=(
                        f"Booking overlaps with {interval.label} from "
                        f"{interval.start:%H:%M} to {interval.end:%H:%M}"
                    ),
                    interval=interval,
                    suggestion="Choose a different time slot",
                )
            )
            continue

        gap_before = _minutes(interval.start - proposed.end)  # proposal ends before it
        gap_after = _minutes(proposed.start - interval.end)  # proposal starts after it

        if 0 < gap_before < buffer_minutes:
            shortfall = buffer_minutes - gap_before
            findings.append(
                ConflictFinding(
                    kind=ConflictKind.INSUFFICIENT_BUFFER,
                    severity=Severity.MEDIUM,
                    message=(
                        f"Only {gap_before:g} minutes before {interval.label} at "
                        f"{interval.start:%H:%M} ({buffer_minutes:g} minutes required)"
                    ),
                    interval=interval,
                    suggestion=f"Start the lesson {shortfall:g} minutes earlier",
                    shift_minutes=-shortfall,
                )
            )
        elif 0 < gap_after < buffer_minutes:
            shortfall = buffer_minutes - gap_after
            findings.append(
                ConflictFinding(
                    kind=ConflictKind.INSUFFICIENT_BUFFER,
                    severity=Severity.MEDIUM,
                    message=(
                        f"Only {gap_after:g} minutes after {interval.label} ending at "
                        f"{interval.end:%H:%M} ({buffer_minutes:g} minutes required)"
                    ),
                    interval=interval,
                    suggestion=f"Start the lesson {shortfall:g} minutes later",
                    shift_minutes=shortfall,
                )
            )
        elif gap_before == 0 or gap_after == 0:
            findings.append(
                ConflictFinding(
                    kind=ConflictKind.BACK_TO_BACK,
                    severity=Severity.LOW,
                    message=f"Back-to-back with {interval.label} ({interval.start:%H:%M}-{interval.end:%H:%M})",
                    interval=interval,
                    suggestion="Consider adding buffer time for better lesson quality",
                )
            )

    if findings:
        logger.debug(
            f"{len(findings)} conflict finding(s) for {proposed.start:%Y-%m-%d %H:%M}-{proposed.end:%H:%M}"
        )
    return findings


def blocking_findings(findings: Iterable[ConflictFinding]) -> List[ConflictFinding]:
    """Findings that reject a booking request (back-to-back is advisory)"""
    return [finding for finding in findings if finding.conflict]


def has_overlap(findings: Iterable[ConflictFinding]) -> bool:
    return any(finding.kind == ConflictKind.OVERLAP for finding in findings)


def check_lesson_conflicts(
    proposed: ProposedInterval,
    existing: Iterable[BusyInterval],
    buffer_for: Callable[[Optional[str]], float],
) -> List[ConflictFinding]:
    """
    check_conflict with the buffer chosen per existing interval.

    The gap between two lessons needs the buffer of the earlier lesson's
    type. Admin events have no lesson type, so the proposed lesson's type
    applies around them whichever comes first.

    Args:
        proposed: Interval to check, with its lesson type
        existing: Busy intervals of the day
        buffer_for: Buffer minutes of a lesson type (None for untyped)
    """
    findings: List[ConflictFinding] = []
    for interval in existing:
        if interval.lesson_type is not None and interval.start < proposed.start:
            lesson_type = interval.lesson_type
        else:
            lesson_type = proposed.lesson_type
        findings.extend(check_conflict(proposed, [interval], buffer_for(lesson_type)))
    return findings
