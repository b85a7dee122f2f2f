"""
Buffer policy resolver - effective buffer minutes for a lesson type
"""

from typing import Optional

from lessonbook.schedule import BufferPolicy


def resolve_buffer(lesson_type: Optional[str], policy: BufferPolicy) -> int:
    """
    Effective buffer for a lesson type.

    Disabled policy gives 0. Adaptive policies use the per-type value clamped
    into [min_minutes, max_minutes]. Anything else, including unknown lesson
    types, gets the default.
    """
    if not policy.enabled:
        return 0

    if policy.adaptive and lesson_type is not None and lesson_type in policy.per_type_minutes:
        minutes = policy.per_type_minutes[lesson_type]
        return max(policy.min_minutes, min(policy.max_minutes, minutes))

    return policy.default_minutes
