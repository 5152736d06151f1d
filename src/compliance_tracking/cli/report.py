from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone
import json
import logging
import os
from pathlib import Path
import sqlite3
import sys
from typing import Any

from compliance_tracking.data.db import connect, init_db
from compliance_tracking.data.repositories import (
    AnswerRepository,
    MachineRepository,
    MaintenanceTaskRepository,
    RunRepository,
    TemplateRepository,
)
from compliance_tracking.data.seed import seed_from_csv
from compliance_tracking.services.compliance import summarize_task_statuses
from compliance_tracking.services.reporting import (
    DEFAULT_WINDOW_DAYS,
    MONTHLY_SERIES_MONTHS,
    aggregate_report,
    select_failed_answers,
)

LOGGER = logging.getLogger(__name__)


def _default_window_days() -> int:
    raw = os.getenv("COMPLIANCE_TRACKING_REPORT_DAYS")
    if not raw:
        return DEFAULT_WINDOW_DAYS
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid COMPLIANCE_TRACKING_REPORT_DAYS=%s", raw)
        return DEFAULT_WINDOW_DAYS


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError("Invalid --now value (expected ISO 8601 timestamp).") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _get_db_connection() -> sqlite3.Connection:
    data_dir = Path(os.getenv("COMPLIANCE_TRACKING_DATA_DIR", "./data"))
    db_path = Path(os.getenv("COMPLIANCE_TRACKING_DB_PATH", data_dir / "app.db"))
    con = connect(db_path)
    init_db(con)
    return con


def build_report(con: sqlite3.Connection, window_days: int, now: datetime) -> dict[str, Any]:
    # Monthly series needs more history than the window itself.
    history_days = max(window_days, MONTHLY_SERIES_MONTHS * 31)
    since = now - timedelta(days=history_days)
    runs = RunRepository(con).list_runs_since(since)
    answers = AnswerRepository(con).list_answers_since(now - timedelta(days=window_days))
    failed = select_failed_answers(answers, TemplateRepository(con).list_definitions())
    machines = MachineRepository(con).list_machines()
    return aggregate_report(runs, failed, window_days=window_days, now=now, machines=machines)


def _run_report(con: sqlite3.Connection, args: argparse.Namespace) -> int:
    report = build_report(con, args.days, _parse_now(args.now))
    print(json.dumps(report, indent=2, ensure_ascii=False))
    LOGGER.info("Summary: %s", report["stats"])
    return 0


def _run_tasks(con: sqlite3.Connection, args: argparse.Namespace) -> int:
    tasks = MaintenanceTaskRepository(con).list_tasks(now=_parse_now(args.now))
    open_tasks = [task for task in tasks if task["status"] in ("overdue", "due", "upcoming")]
    for task in open_tasks:
        print(
            f"{task['status']:<9} {task['due_at'] or '-':<32} {task['name']}"
            f" ({task.get('machine_name') or 'no machine'})"
        )
    LOGGER.info("Summary: %s", summarize_task_statuses(tasks))
    return 0


def _run_seed(con: sqlite3.Connection, args: argparse.Namespace) -> int:
    counts = seed_from_csv(con, Path(args.sample_dir))
    LOGGER.info("Seeded: %s", counts)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Checklist compliance and maintenance reports.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    report = subparsers.add_parser("report", help="Print the compliance report as JSON.")
    report.add_argument("--days", type=int, default=_default_window_days(), help="Trailing window in days.")
    report.add_argument("--now", help="Override current time (ISO 8601).")
    report.set_defaults(handler=_run_report)

    tasks = subparsers.add_parser("tasks", help="Refresh and list open maintenance tasks.")
    tasks.add_argument("--now", help="Override current time (ISO 8601).")
    tasks.set_defaults(handler=_run_tasks)

    seed = subparsers.add_parser("seed", help="Load users, machines and tasks from CSV files.")
    seed.add_argument("sample_dir", help="Directory with users.csv, machines.csv, maintenance_tasks.csv.")
    seed.set_defaults(handler=_run_seed)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    args = build_parser().parse_args(argv)
    con = _get_db_connection()
    try:
        return args.handler(con, args)
    except ValueError as exc:
        LOGGER.error("%s", exc)
        return 1
    finally:
        con.close()


if __name__ == "__main__":
    sys.exit(main())
