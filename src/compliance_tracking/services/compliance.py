from __future__ import annotations

from datetime import datetime
import math
from typing import Any

from compliance_tracking.services.normalize import parse_timestamp, to_utc
from compliance_tracking.services.schedule import FREQUENCY_ONCE

STATUS_ON_TIME = "on_time"
STATUS_DUE_SOON = "due_soon"
STATUS_OVERDUE = "overdue"
STATUS_COMPLETED = "completed"

AD_HOC_ACTIVE = "active"
AD_HOC_AGING = "aging"
AD_HOC_STALE = "stale"

DUE_SOON_DAYS = 3
AD_HOC_AGING_HOURS = 4
AD_HOC_STALE_HOURS = 8

SECONDS_PER_DAY = 24 * 60 * 60

TASK_UPCOMING = "upcoming"
TASK_DUE = "due"
TASK_OVERDUE = "overdue"
TASK_COMPLETED = "completed"
TASK_CANCELLED = "cancelled"
TASK_TERMINAL_STATUSES = (TASK_COMPLETED, TASK_CANCELLED)

_SEVERITY = {STATUS_ON_TIME: 0, STATUS_DUE_SOON: 1, STATUS_OVERDUE: 2}

_TASK_STATUS_BY_COMPLIANCE = {
    STATUS_ON_TIME: TASK_UPCOMING,
    STATUS_DUE_SOON: TASK_DUE,
    STATUS_OVERDUE: TASK_OVERDUE,
}


def _snapshot(status: str, days_overdue: int = 0, days_until_due: int | None = None) -> dict[str, Any]:
    return {
        "compliance_status": status,
        "days_overdue": days_overdue,
        "days_until_due": days_until_due,
    }


def classify_compliance(
    now: datetime,
    due_at: datetime | str | None,
    status: str | None,
) -> dict[str, Any]:
    """Classify an entity against its due timestamp.

    Remaining time rounds up to whole days, so something due in a few hours
    is due in 1 day. Anything past due is overdue by at least one day.
    """
    if status == STATUS_COMPLETED:
        return _snapshot(STATUS_COMPLETED)

    due = parse_timestamp(due_at)
    if due is None:
        return _snapshot(STATUS_ON_TIME)

    remaining = (to_utc(due) - to_utc(now)).total_seconds()
    if remaining < 0:
        days_overdue = max(1, math.floor(-remaining / SECONDS_PER_DAY))
        return _snapshot(STATUS_OVERDUE, days_overdue=days_overdue, days_until_due=-days_overdue)

    diff_days = math.ceil(remaining / SECONDS_PER_DAY)
    if diff_days <= DUE_SOON_DAYS:
        return _snapshot(STATUS_DUE_SOON, days_until_due=diff_days)
    return _snapshot(STATUS_ON_TIME, days_until_due=diff_days)


def classify_usage(usage_due: bool | None, status: str | None) -> dict[str, Any]:
    if status == STATUS_COMPLETED:
        return _snapshot(STATUS_COMPLETED)
    if usage_due:
        return _snapshot(STATUS_DUE_SOON)
    return _snapshot(STATUS_ON_TIME)


def derive_task_status(
    task: dict[str, Any],
    now: datetime,
    usage_due: bool | None = None,
) -> str:
    """Lifecycle status a maintenance task should carry when read at ``now``."""
    current = task.get("status")
    if current in TASK_TERMINAL_STATUSES:
        return current

    time_status = classify_compliance(now, task.get("due_at"), None)["compliance_status"]
    usage_status = classify_usage(usage_due, None)["compliance_status"]
    worst = max((time_status, usage_status), key=lambda status: _SEVERITY[status])
    return _TASK_STATUS_BY_COMPLIANCE[worst]


def _hours_open(started_at: datetime | None, now: datetime) -> int:
    if started_at is None:
        return 0
    elapsed = (to_utc(now) - to_utc(started_at)).total_seconds()
    return max(0, int(elapsed // 3600))


def classify_run(
    run: dict[str, Any],
    now: datetime,
    frequency: str | None = None,
) -> dict[str, Any]:
    """Traffic-light snapshot of a checklist run.

    Scheduled runs are graded against their due date; ad-hoc runs still in
    progress are graded by how long they have been open.
    """
    frequency = frequency or run.get("frequency") or FREQUENCY_ONCE
    due_date = parse_timestamp(run.get("due_date"))
    is_ad_hoc = frequency == FREQUENCY_ONCE or due_date is None
    hours_open = _hours_open(parse_timestamp(run.get("started_at")), now)

    if not is_ad_hoc or run.get("status") == STATUS_COMPLETED:
        snapshot = classify_compliance(now, due_date, run.get("status"))
    elif hours_open < AD_HOC_AGING_HOURS:
        snapshot = _snapshot(AD_HOC_ACTIVE)
    elif hours_open < AD_HOC_STALE_HOURS:
        snapshot = _snapshot(AD_HOC_AGING)
    else:
        snapshot = _snapshot(AD_HOC_STALE)

    return {
        **snapshot,
        "run_id": run.get("id"),
        "status": run.get("status"),
        "frequency": frequency,
        "is_ad_hoc": is_ad_hoc,
        "hours_open": hours_open,
    }


def summarize_run_statuses(snapshots: list[dict[str, Any]]) -> dict[str, int]:
    in_progress = [s for s in snapshots if s.get("status") == "in_progress"]
    scheduled = [s for s in in_progress if not s.get("is_ad_hoc")]
    ad_hoc = [s for s in in_progress if s.get("is_ad_hoc")]

    counts = {
        "on_time": sum(1 for s in scheduled if s["compliance_status"] == STATUS_ON_TIME),
        "due_soon": sum(1 for s in scheduled if s["compliance_status"] == STATUS_DUE_SOON),
        "overdue": sum(1 for s in scheduled if s["compliance_status"] == STATUS_OVERDUE),
        "ad_hoc_active": sum(1 for s in ad_hoc if s["compliance_status"] == AD_HOC_ACTIVE),
        "ad_hoc_aging": sum(
            1 for s in ad_hoc if s["compliance_status"] in (AD_HOC_AGING, AD_HOC_STALE)
        ),
    }
    counts["total_scheduled"] = counts["on_time"] + counts["due_soon"] + counts["overdue"]
    counts["total_ad_hoc"] = counts["ad_hoc_active"] + counts["ad_hoc_aging"]
    counts["needs_attention"] = counts["due_soon"] + counts["overdue"] + counts["ad_hoc_aging"]
    return counts


def summarize_task_statuses(tasks: list[dict[str, Any]]) -> dict[str, int]:
    counts = {TASK_OVERDUE: 0, TASK_DUE: 0, TASK_UPCOMING: 0}
    for task in tasks:
        status = task.get("status")
        if status in counts:
            counts[status] += 1
    return counts
