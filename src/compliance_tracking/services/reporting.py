from __future__ import annotations

from datetime import datetime, timedelta, timezone
import math
from typing import Any

from compliance_tracking.services.normalize import (
    format_timestamp,
    normalize_key,
    parse_timestamp,
    to_utc,
)
from compliance_tracking.services.scoring import (
    OUTCOME_FAIL,
    TemplateDefinition,
    evaluate_answer,
)

DEFAULT_WINDOW_DAYS = 30
MONTHLY_SERIES_MONTHS = 6
RECENT_ACTIVITY_LIMIT = 20

RUN_COMPLETED = "completed"
RUN_IN_PROGRESS = "in_progress"
RUN_ABORTED = "aborted"

_ACTIVITY_TYPES = {
    RUN_COMPLETED: "checklist_completed",
    RUN_ABORTED: "checklist_aborted",
}

_MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def _round_pct(part: int, total: int) -> int:
    # Half-up, as the dashboards display it.
    return int(math.floor(part / total * 100 + 0.5))


def _month_start(value: datetime, months_back: int) -> datetime:
    month_index = value.year * 12 + (value.month - 1) - months_back
    year, month = divmod(month_index, 12)
    return value.replace(year=year, month=month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month(value: datetime) -> datetime:
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1)
    return value.replace(month=value.month + 1)


def _prepare_runs(runs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    prepared = []
    for run in runs:
        started = parse_timestamp(run.get("started_at"))
        if started is None:
            continue
        completed = parse_timestamp(run.get("completed_at"))
        prepared.append(
            {
                **run,
                "_started": to_utc(started),
                "_completed": to_utc(completed) if completed else None,
            }
        )
    prepared.sort(key=lambda run: (run["_started"], str(run.get("id") or "")), reverse=True)
    return prepared


def _user_stats(
    runs: list[dict[str, Any]],
    failed_by_user: dict[str, int],
) -> list[dict[str, Any]]:
    users: dict[str, dict[str, Any]] = {}
    for run in runs:
        user_id = run.get("user_id")
        if not user_id:
            continue
        stats = users.setdefault(
            user_id,
            {
                "id": user_id,
                "name": run.get("user_name") or "Unknown",
                "email": run.get("user_email") or "",
                "role": run.get("user_role") or "operator",
                "completed_checklists": 0,
                "in_progress_checklists": 0,
                "failed_checks": 0,
                "last_active": None,
            },
        )
        if run.get("status") == RUN_COMPLETED:
            stats["completed_checklists"] += 1
        elif run.get("status") == RUN_IN_PROGRESS:
            stats["in_progress_checklists"] += 1
        activity_at = run["_completed"] or run["_started"]
        if stats["last_active"] is None or activity_at > stats["last_active"]:
            stats["last_active"] = activity_at

    for user_id, count in failed_by_user.items():
        if user_id in users:
            users[user_id]["failed_checks"] += count

    rows = sorted(
        users.values(),
        key=lambda row: (-row["completed_checklists"], row["name"].casefold(), str(row["id"])),
    )
    for row in rows:
        row["last_active"] = format_timestamp(row["last_active"])
    return rows


def _machine_stats(
    runs: list[dict[str, Any]],
    failed_by_machine: dict[str, int],
    machines: list[dict[str, Any]] | None,
) -> list[dict[str, Any]]:
    stats_by_machine: dict[str, dict[str, Any]] = {}

    def _entry(machine_id: str, name: str | None) -> dict[str, Any]:
        return stats_by_machine.setdefault(
            machine_id,
            {
                "id": machine_id,
                "name": name or "Unknown",
                "total_runs": 0,
                "completed_checklists": 0,
                "failed_checks": 0,
                "compliance": 100,
            },
        )

    for machine in machines or []:
        if machine.get("id"):
            _entry(machine["id"], machine.get("name"))

    for run in runs:
        machine_id = run.get("machine_id")
        if not machine_id:
            continue
        stats = _entry(machine_id, run.get("machine_name"))
        stats["total_runs"] += 1
        if run.get("status") == RUN_COMPLETED:
            stats["completed_checklists"] += 1

    for machine_id, count in failed_by_machine.items():
        if machine_id in stats_by_machine:
            stats_by_machine[machine_id]["failed_checks"] += count

    for stats in stats_by_machine.values():
        stats["compliance"] = machine_compliance(stats["completed_checklists"], stats["total_runs"])

    return sorted(
        stats_by_machine.values(),
        key=lambda row: (-row["completed_checklists"], row["name"].casefold(), str(row["id"])),
    )


def machine_compliance(completed: int, total: int) -> int:
    if total <= 0:
        return 100
    return _round_pct(completed, total)


def monthly_series(
    runs: list[dict[str, Any]],
    now: datetime,
    months: int = MONTHLY_SERIES_MONTHS,
) -> list[dict[str, Any]]:
    """Completion rate per calendar month, oldest first, bucketed by start time."""
    prepared = _prepare_runs(runs)
    now_utc = to_utc(now)
    series = []
    for months_back in range(months - 1, -1, -1):
        month_start = _month_start(now_utc, months_back)
        month_end = _next_month(month_start)
        in_month = [run for run in prepared if month_start <= run["_started"] < month_end]
        total = len(in_month)
        completed = sum(1 for run in in_month if run.get("status") == RUN_COMPLETED)
        series.append(
            {
                "month": _MONTH_LABELS[month_start.month - 1],
                "month_start": month_start.date().isoformat(),
                "total": total,
                "completed": completed,
                "rate": _round_pct(completed, total) if total else 0,
            }
        )
    return series


def recent_activity(
    runs: list[dict[str, Any]],
    limit: int = RECENT_ACTIVITY_LIMIT,
) -> list[dict[str, Any]]:
    prepared = _prepare_runs(runs)
    return [
        {
            "id": run.get("id"),
            "type": _ACTIVITY_TYPES.get(run.get("status"), "checklist_started"),
            "user_id": run.get("user_id") or "",
            "user_name": run.get("user_name") or "Unknown",
            "machine_name": run.get("machine_name") or "Unknown",
            "template_name": run.get("template_name") or "Unknown",
            "time": format_timestamp(run["_completed"] or run["_started"]),
        }
        for run in prepared[:limit]
    ]


def _count_failures(
    failed_answers: list[dict[str, Any]],
    runs_by_id: dict[str, dict[str, Any]],
    window_start: datetime,
) -> tuple[int, dict[str, int], dict[str, int]]:
    total = 0
    by_user: dict[str, int] = {}
    by_machine: dict[str, int] = {}
    for answer in failed_answers:
        run = runs_by_id.get(answer.get("run_id"))
        if run is None:
            started = parse_timestamp(answer.get("started_at"))
            if started is None or to_utc(started) < window_start:
                continue
            user_id = answer.get("user_id")
            machine_id = answer.get("machine_id")
        else:
            user_id = run.get("user_id")
            machine_id = run.get("machine_id")
        total += 1
        if user_id:
            by_user[user_id] = by_user.get(user_id, 0) + 1
        if machine_id:
            by_machine[machine_id] = by_machine.get(machine_id, 0) + 1
    return total, by_user, by_machine


def aggregate_report(
    runs: list[dict[str, Any]],
    failed_answers: list[dict[str, Any]],
    window_days: int = DEFAULT_WINDOW_DAYS,
    now: datetime | None = None,
    machines: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Compliance report over the trailing ``window_days``.

    ``runs`` should reach back far enough for the monthly series; everything
    else only looks at runs started inside the window. Failed answers are
    counted when their parent run started inside the window.
    """
    now = now or datetime.now(timezone.utc)
    window_start = to_utc(now) - timedelta(days=window_days)

    prepared = _prepare_runs(runs)
    window_runs = [run for run in prepared if run["_started"] >= window_start]
    runs_by_id = {run.get("id"): run for run in window_runs if run.get("id")}

    failed_total, failed_by_user, failed_by_machine = _count_failures(
        failed_answers, runs_by_id, window_start
    )
    user_stats = _user_stats(window_runs, failed_by_user)
    machine_stats = _machine_stats(window_runs, failed_by_machine, machines)

    return {
        "window": {
            "days": window_days,
            "from": format_timestamp(window_start),
            "to": format_timestamp(now),
        },
        "stats": {
            "total_checklists": len(window_runs),
            "completed_checklists": sum(1 for run in window_runs if run.get("status") == RUN_COMPLETED),
            "failed_checks": failed_total,
            "in_progress": sum(1 for run in window_runs if run.get("status") == RUN_IN_PROGRESS),
            "active_users": len(user_stats),
        },
        "user_stats": user_stats,
        "machine_stats": machine_stats,
        "monthly_data": monthly_series(prepared, now),
        "recent_activity": recent_activity(window_runs),
    }


def select_failed_answers(
    answers: list[dict[str, Any]],
    definitions: dict[tuple[str, int], TemplateDefinition],
) -> list[dict[str, Any]]:
    """Answers that fail their item's rule.

    Without the run's template version only an explicit ``false``/``"no"``
    counts as a failure.
    """
    failed = []
    for answer in answers:
        definition = definitions.get((answer.get("template_id"), answer.get("template_version")))
        item = definition.item(answer.get("item_id")) if definition else None
        if item is not None:
            if evaluate_answer(item, answer.get("value")) == OUTCOME_FAIL:
                failed.append(answer)
        elif answer.get("value") is False or (
            isinstance(answer.get("value"), str) and normalize_key(answer["value"]) == "no"
        ):
            failed.append(answer)
    return failed
