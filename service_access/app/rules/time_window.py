"""
Recurring weekly time-window matching for access rules.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationError
from .models import TimeSlot


@dataclass(frozen=True)
class TimeCheck:
    """Result of a time-window check."""
    allowed: bool
    reason: Optional[str] = None


def day_of_week(moment: datetime) -> int:
    """Day index with 0 = Sunday .. 6 = Saturday."""
    # datetime.weekday() is 0 = Monday
    return (moment.weekday() + 1) % 7


def parse_time_slots(raw: Any) -> List[TimeSlot]:
    """Parse stored time slots into validated models.

    Accepts None, a JSON string or a list of mappings. Malformed entries
    raise ValidationError instead of being dropped.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else []
        except json.JSONDecodeError as e:
            raise ValidationError("time_slots is not valid JSON", {"error": str(e)})
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("time_slots must be a list", {"type": type(raw).__name__})

    slots = []
    for index, item in enumerate(raw):
        if isinstance(item, TimeSlot):
            slots.append(item)
            continue
        try:
            slots.append(TimeSlot.model_validate(item))
        except PydanticValidationError as e:
            raise ValidationError(
                "Malformed time slot",
                {"index": index, "errors": e.errors(include_url=False, include_context=False, include_input=False)}
            )
    return slots


class TimeWindowMatcher:
    """Evaluates whether a moment falls inside a set of weekly slots.

    No timezone conversion happens here: ``now`` must already be the
    tenant's local civil time.
    """

    def matches(self, time_slots: Optional[Iterable[TimeSlot]], now: datetime) -> TimeCheck:
        slots = list(time_slots or [])
        if not slots:
            return TimeCheck(allowed=True)

        current_day = day_of_week(now)
        current_time = now.strftime("%H:%M")

        for slot in slots:
            if slot.day_of_week == current_day and slot.start_time <= current_time <= slot.end_time:
                return TimeCheck(allowed=True)

        return TimeCheck(
            allowed=False,
            reason=f"Current time (day {current_day} {current_time}) does not match any allowed time slots"
        )
