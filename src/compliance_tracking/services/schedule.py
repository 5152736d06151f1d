from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any

import pandas as pd

from compliance_tracking.services.normalize import parse_timestamp, to_utc

SCHEDULE_TIME_BASED = "time_based"
SCHEDULE_USAGE_BASED = "usage_based"
SCHEDULE_MIXED = "mixed"

SCHEDULE_TYPES = (SCHEDULE_TIME_BASED, SCHEDULE_USAGE_BASED, SCHEDULE_MIXED)

FREQUENCY_ONCE = "once"

# Calendar offsets per checklist template frequency.
FREQUENCY_OFFSETS: dict[str, dict[str, int]] = {
    "daily": {"days": 1},
    "weekly": {"days": 7},
    "monthly": {"months": 1},
    "quarterly": {"months": 3},
}

LOGGER = logging.getLogger(__name__)


class InvalidScheduleError(ValueError):
    """Raised when a schedule definition cannot yield a trustworthy due date."""


@dataclass(frozen=True)
class Schedule:
    schedule_type: str
    interval_days: int | None = None
    interval_cycles: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Schedule":
        return cls(
            schedule_type=str(row.get("schedule_type") or SCHEDULE_TIME_BASED),
            interval_days=row.get("interval_days"),
            interval_cycles=row.get("interval_cycles"),
        )

    @property
    def uses_time(self) -> bool:
        return self.schedule_type in (SCHEDULE_TIME_BASED, SCHEDULE_MIXED)

    @property
    def uses_usage(self) -> bool:
        return self.schedule_type in (SCHEDULE_USAGE_BASED, SCHEDULE_MIXED)


def _check_interval(name: str, value: Any, required: bool) -> None:
    if value is None:
        if required:
            raise InvalidScheduleError(f"{name} is required for this schedule type.")
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidScheduleError(f"{name} must be a whole number, got {value!r}.")
    if value <= 0:
        raise InvalidScheduleError(f"{name} must be positive, got {value}.")


def validate_schedule(schedule: Schedule) -> Schedule:
    if schedule.schedule_type not in SCHEDULE_TYPES:
        raise InvalidScheduleError(f"Unknown schedule type: {schedule.schedule_type!r}.")
    _check_interval("interval_days", schedule.interval_days, required=schedule.uses_time)
    _check_interval("interval_cycles", schedule.interval_cycles, required=schedule.uses_usage)
    return schedule


def compute_next_due(
    schedule: Schedule,
    last_completed_at: datetime | str | None,
    usage_since_completion: int | None = None,
    created_at: datetime | str | None = None,
) -> dict[str, Any]:
    """Next due state of a maintenance task after its latest completion.

    ``due_at`` is set for schedules with a time component and ``usage_due``
    for schedules with a usage component. ``usage_due`` stays ``None`` when
    the caller has no counter reading.
    """
    validate_schedule(schedule)

    due_at: datetime | None = None
    if schedule.uses_time:
        anchor = parse_timestamp(last_completed_at) or parse_timestamp(created_at)
        if anchor is None:
            raise InvalidScheduleError(
                "Time-based schedule needs a completion or creation timestamp."
            )
        # Aware arithmetic keeps the wall-clock time across DST changes.
        due_at = anchor + timedelta(days=schedule.interval_days)

    usage_due: bool | None = None
    if schedule.uses_usage:
        if usage_since_completion is None:
            LOGGER.debug("No usage reading supplied; usage component left undetermined.")
        else:
            if isinstance(usage_since_completion, bool) or usage_since_completion < 0:
                raise InvalidScheduleError(
                    f"Usage since completion must be a non-negative count, got {usage_since_completion!r}."
                )
            usage_due = usage_since_completion >= schedule.interval_cycles

    return {"due_at": due_at, "usage_due": usage_due}


def is_due(next_due: dict[str, Any], now: datetime) -> bool:
    """Whichever component fires first makes the task due."""
    due_at = next_due.get("due_at")
    time_due = due_at is not None and to_utc(due_at) <= to_utc(now)
    return bool(time_due or next_due.get("usage_due"))


def compute_run_due_date(frequency: str | None, anchor: datetime | str | None) -> datetime | None:
    if not frequency or frequency == FREQUENCY_ONCE:
        return None
    offset = FREQUENCY_OFFSETS.get(frequency)
    if offset is None:
        raise InvalidScheduleError(f"Unknown checklist frequency: {frequency!r}.")
    start = parse_timestamp(anchor)
    if start is None:
        raise InvalidScheduleError("Scheduled checklist needs a start timestamp.")
    if "months" in offset:
        shifted = pd.Timestamp(start) + pd.DateOffset(months=offset["months"])
        return shifted.to_pydatetime()
    return start + timedelta(days=offset["days"])
