from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from compliance_tracking.services.compliance import (
    TASK_CANCELLED,
    TASK_COMPLETED,
    TASK_TERMINAL_STATUSES,
    derive_task_status,
)
from compliance_tracking.services.normalize import format_timestamp, parse_timestamp
from compliance_tracking.services.schedule import (
    Schedule,
    compute_next_due,
    compute_run_due_date,
    validate_schedule,
)
from compliance_tracking.services.scoring import (
    TemplateDefinition,
    definition_to_payload,
    load_definition,
    normalize_template_definition,
)

LOGGER = logging.getLogger(__name__)

TEMPLATE_STATUS_ORDER = {"draft": 0, "active": 1, "deprecated": 2}
TEMPLATE_FREQUENCIES = ("once", "daily", "weekly", "monthly", "quarterly")

RUN_IN_PROGRESS = "in_progress"
RUN_COMPLETED = "completed"
RUN_ABORTED = "aborted"

TASK_TYPES = ("preventative", "corrective")
TASK_SEVERITY = {"upcoming": 0, "due": 1, "overdue": 2}


def _now_iso(now: datetime | None = None) -> str:
    return format_timestamp(now or datetime.now(timezone.utc))


def _decode_value(value_json: str | None) -> Any:
    if value_json is None:
        return None
    return json.loads(value_json)


class UserRepository:
    def __init__(self, con: sqlite3.Connection) -> None:
        self.con = con

    def create_user(self, payload: dict[str, Any]) -> str:
        name = (payload.get("name") or "").strip()
        email = (payload.get("email") or "").strip()
        if not name or not email:
            raise ValueError("User name and email are required.")
        user_id = payload.get("id") or str(uuid4())
        self.con.execute(
            """
            INSERT INTO users (id, email, name, role, department, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                email,
                name,
                payload.get("role") or "operator",
                payload.get("department"),
                _now_iso(),
            ),
        )
        self.con.commit()
        return user_id

    def list_users(self) -> list[dict[str, Any]]:
        cur = self.con.execute(
            """
            SELECT id, email, name, role, department, created_at
            FROM users
            ORDER BY name ASC
            """
        )
        return [dict(r) for r in cur.fetchall()]


class MachineRepository:
    def __init__(self, con: sqlite3.Connection) -> None:
        self.con = con

    def create_machine(self, payload: dict[str, Any]) -> str:
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValueError("Machine name is required.")
        machine_id = payload.get("id") or str(uuid4())
        self.con.execute(
            """
            INSERT INTO machines (id, name, location, status, risk_category, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                machine_id,
                name,
                payload.get("location"),
                payload.get("status") or "available",
                payload.get("risk_category") or "normal",
                _now_iso(),
            ),
        )
        self.con.commit()
        return machine_id

    def list_machines(self) -> list[dict[str, Any]]:
        cur = self.con.execute(
            """
            SELECT id, name, location, status, risk_category, created_at
            FROM machines
            ORDER BY name ASC
            """
        )
        return [dict(r) for r in cur.fetchall()]


class TemplateRepository:
    def __init__(self, con: sqlite3.Connection) -> None:
        self.con = con

    def create_template(self, payload: dict[str, Any], now: datetime | None = None) -> str:
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValueError("Template name is required.")
        frequency = payload.get("frequency") or "once"
        if frequency not in TEMPLATE_FREQUENCIES:
            raise ValueError(f"Unknown checklist frequency: {frequency}.")
        definition = normalize_template_definition(payload.get("json_definition"))
        template_id = payload.get("id") or str(uuid4())
        created_at = _now_iso(now)
        self.con.execute(
            """
            INSERT INTO checklist_templates (
              id, name, type, status, version, frequency, machine_id, created_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
            """,
            (
                template_id,
                name,
                payload.get("type") or "pre_run",
                payload.get("status") or "draft",
                frequency,
                payload.get("machine_id"),
                payload.get("created_by"),
                created_at,
                created_at,
            ),
        )
        self._write_version(template_id, 1, definition, created_at, replace=False)
        self.con.commit()
        return template_id

    def get_template(self, template_id: str) -> dict[str, Any] | None:
        cur = self.con.execute(
            """
            SELECT id, name, type, status, version, frequency, machine_id, created_by, created_at, updated_at
            FROM checklist_templates
            WHERE id = ?
            """,
            (template_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None

    def list_templates(self, status: str | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, name, type, status, version, frequency, machine_id, created_at, updated_at
            FROM checklist_templates
        """
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY name ASC"
        cur = self.con.execute(query, params)
        return [dict(r) for r in cur.fetchall()]

    def update_definition(
        self,
        template_id: str,
        raw_definition: dict[str, Any],
        now: datetime | None = None,
    ) -> int:
        """Store an edited definition and return the version it landed in.

        Drafts are edited in place; active templates keep their history and
        get a new version.
        """
        template = self.get_template(template_id)
        if template is None:
            raise ValueError(f"Template {template_id} does not exist.")
        if template["status"] == "deprecated":
            raise ValueError("Deprecated templates cannot be edited.")
        definition = normalize_template_definition(raw_definition)
        updated_at = _now_iso(now)
        version = int(template["version"])
        if template["status"] == "active":
            version += 1
            self._write_version(template_id, version, definition, updated_at, replace=False)
        else:
            self._write_version(template_id, version, definition, updated_at, replace=True)
        self.con.execute(
            """
            UPDATE checklist_templates
            SET version = ?, updated_at = ?
            WHERE id = ?
            """,
            (version, updated_at, template_id),
        )
        self.con.commit()
        return version

    def set_status(self, template_id: str, status: str, now: datetime | None = None) -> None:
        template = self.get_template(template_id)
        if template is None:
            raise ValueError(f"Template {template_id} does not exist.")
        if status not in TEMPLATE_STATUS_ORDER:
            raise ValueError(f"Unknown template status: {status}.")
        if TEMPLATE_STATUS_ORDER[status] < TEMPLATE_STATUS_ORDER[template["status"]]:
            LOGGER.warning("Rejected template %s status change %s -> %s", template_id, template["status"], status)
            raise ValueError(f"Template cannot move from {template['status']} back to {status}.")
        self.con.execute(
            """
            UPDATE checklist_templates
            SET status = ?, updated_at = ?
            WHERE id = ?
            """,
            (status, _now_iso(now), template_id),
        )
        self.con.commit()

    def get_version_row(self, template_id: str, version: int | None = None) -> dict[str, Any] | None:
        query = """
            SELECT v.template_id, v.version, v.json_definition, t.name, t.frequency
            FROM template_versions v
            JOIN checklist_templates t ON t.id = v.template_id
            WHERE v.template_id = ?
        """
        params: list[Any] = [template_id]
        if version is None:
            query += " AND v.version = t.version"
        else:
            query += " AND v.version = ?"
            params.append(int(version))
        row = self.con.execute(query, params).fetchone()
        return dict(row) if row else None

    def get_definition(self, template_id: str, version: int | None = None) -> TemplateDefinition:
        return load_definition(self.get_version_row(template_id, version))

    def list_definitions(self) -> dict[tuple[str, int], TemplateDefinition]:
        cur = self.con.execute(
            """
            SELECT v.template_id, v.version, v.json_definition, t.frequency
            FROM template_versions v
            JOIN checklist_templates t ON t.id = v.template_id
            """
        )
        return {
            (row["template_id"], int(row["version"])): load_definition(dict(row))
            for row in cur.fetchall()
        }

    def _write_version(
        self,
        template_id: str,
        version: int,
        definition: TemplateDefinition,
        created_at: str,
        replace: bool,
    ) -> None:
        payload = json.dumps(definition_to_payload(definition), ensure_ascii=False)
        if replace:
            self.con.execute(
                """
                UPDATE template_versions
                SET json_definition = ?, created_at = ?
                WHERE template_id = ? AND version = ?
                """,
                (payload, created_at, template_id, version),
            )
            return
        self.con.execute(
            """
            INSERT INTO template_versions (template_id, version, json_definition, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (template_id, version, payload, created_at),
        )


class RunRepository:
    def __init__(self, con: sqlite3.Connection) -> None:
        self.con = con

    def start_run(self, payload: dict[str, Any], now: datetime | None = None) -> str:
        template = TemplateRepository(self.con).get_template(payload.get("template_id") or "")
        if template is None:
            raise ValueError("Checklist run needs an existing template.")
        if template["status"] != "active":
            raise ValueError("Only active templates can be started.")
        for key in ("machine_id", "user_id"):
            if not payload.get(key):
                raise ValueError(f"{key} is required to start a checklist run.")

        started_at = now or datetime.now(timezone.utc)
        due_date = parse_timestamp(payload.get("due_date"))
        if due_date is None:
            due_date = compute_run_due_date(template.get("frequency"), started_at)

        run_id = payload.get("id") or str(uuid4())
        self.con.execute(
            """
            INSERT INTO checklist_runs (
              id, template_id, template_version, machine_id, user_id, status,
              started_at, due_date, job_number, part_number, notes
            ) VALUES (?, ?, ?, ?, ?, 'in_progress', ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                template["id"],
                int(template["version"]),
                payload["machine_id"],
                payload["user_id"],
                format_timestamp(started_at),
                format_timestamp(due_date),
                payload.get("job_number"),
                payload.get("part_number"),
                payload.get("notes"),
            ),
        )
        self.con.commit()
        return run_id

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        row = self.con.execute(
            f"""
            {self._select_runs_sql()}
            WHERE r.id = ?
            """,
            (run_id,),
        ).fetchone()
        return dict(row) if row else None

    def complete_run(self, run_id: str, now: datetime | None = None) -> None:
        self._close_run(run_id, RUN_COMPLETED, now)

    def abort_run(self, run_id: str, now: datetime | None = None) -> None:
        self._close_run(run_id, RUN_ABORTED, now)

    def list_runs_since(self, since: datetime) -> list[dict[str, Any]]:
        cur = self.con.execute(
            f"""
            {self._select_runs_sql()}
            WHERE r.started_at >= ?
            ORDER BY r.started_at DESC
            """,
            (format_timestamp(since),),
        )
        return [dict(r) for r in cur.fetchall()]

    def list_active_runs(self) -> list[dict[str, Any]]:
        cur = self.con.execute(
            f"""
            {self._select_runs_sql()}
            WHERE r.status IN ('in_progress', 'completed')
            ORDER BY r.started_at DESC
            """
        )
        return [dict(r) for r in cur.fetchall()]

    def _close_run(self, run_id: str, status: str, now: datetime | None) -> None:
        run = self.get_run(run_id)
        if run is None:
            raise ValueError(f"Checklist run {run_id} does not exist.")
        if run["status"] != RUN_IN_PROGRESS:
            LOGGER.warning("Rejected %s of run %s in status %s", status, run_id, run["status"])
            raise ValueError(f"Checklist run is already {run['status']}.")
        completed_at = _now_iso(now) if status == RUN_COMPLETED else None
        self.con.execute(
            """
            UPDATE checklist_runs
            SET status = ?, completed_at = ?
            WHERE id = ? AND status = 'in_progress'
            """,
            (status, completed_at, run_id),
        )
        self.con.commit()

    @staticmethod
    def _select_runs_sql() -> str:
        return """
            SELECT r.id,
                   r.template_id,
                   r.template_version,
                   r.machine_id,
                   r.user_id,
                   r.status,
                   r.started_at,
                   r.completed_at,
                   r.due_date,
                   r.job_number,
                   r.part_number,
                   r.notes,
                   t.name AS template_name,
                   t.frequency AS frequency,
                   m.name AS machine_name,
                   u.name AS user_name,
                   u.email AS user_email,
                   u.role AS user_role
            FROM checklist_runs r
            LEFT JOIN checklist_templates t ON t.id = r.template_id
            LEFT JOIN machines m ON m.id = r.machine_id
            LEFT JOIN users u ON u.id = r.user_id
        """


class AnswerRepository:
    def __init__(self, con: sqlite3.Connection) -> None:
        self.con = con

    def upsert_answer(self, payload: dict[str, Any], now: datetime | None = None) -> None:
        run_id = payload.get("run_id")
        item_id = payload.get("item_id")
        if not run_id or not item_id:
            raise ValueError("run_id and item_id are required.")
        row = self.con.execute(
            "SELECT status FROM checklist_runs WHERE id = ?",
            (run_id,),
        ).fetchone()
        if row is None:
            raise ValueError(f"Checklist run {run_id} does not exist.")
        if row["status"] != RUN_IN_PROGRESS:
            LOGGER.warning("Rejected answer for item %s on %s run %s", item_id, row["status"], run_id)
            raise ValueError("Answers cannot change once the run is closed.")
        self.con.execute(
            """
            INSERT INTO checklist_answers (
              id, run_id, section_id, item_id, value_json, comment, photo_url, answered_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, item_id) DO UPDATE SET
              section_id = excluded.section_id,
              value_json = excluded.value_json,
              comment = excluded.comment,
              photo_url = excluded.photo_url,
              answered_at = excluded.answered_at
            """,
            (
                str(uuid4()),
                run_id,
                payload.get("section_id") or "",
                item_id,
                json.dumps(payload.get("value"), ensure_ascii=False),
                payload.get("comment"),
                payload.get("photo_url"),
                _now_iso(now),
            ),
        )
        self.con.commit()

    def list_for_run(self, run_id: str) -> list[dict[str, Any]]:
        cur = self.con.execute(
            """
            SELECT run_id, section_id, item_id, value_json, comment, photo_url, answered_at
            FROM checklist_answers
            WHERE run_id = ?
            ORDER BY answered_at ASC
            """,
            (run_id,),
        )
        return [self._normalize_answer_row(dict(r)) for r in cur.fetchall()]

    def list_answers_since(self, since: datetime) -> list[dict[str, Any]]:
        cur = self.con.execute(
            """
            SELECT a.run_id,
                   a.section_id,
                   a.item_id,
                   a.value_json,
                   a.answered_at,
                   r.template_id,
                   r.template_version,
                   r.user_id,
                   r.machine_id,
                   r.started_at
            FROM checklist_answers a
            JOIN checklist_runs r ON r.id = a.run_id
            WHERE r.started_at >= ?
            """,
            (format_timestamp(since),),
        )
        return [self._normalize_answer_row(dict(r)) for r in cur.fetchall()]

    @staticmethod
    def _normalize_answer_row(row: dict[str, Any]) -> dict[str, Any]:
        row["value"] = _decode_value(row.pop("value_json", None))
        return row


class MaintenanceTaskRepository:
    def __init__(self, con: sqlite3.Connection) -> None:
        self.con = con

    def create_task(self, payload: dict[str, Any], now: datetime | None = None) -> str:
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValueError("Task name is required.")
        task_type = payload.get("type") or "preventative"
        if task_type not in TASK_TYPES:
            raise ValueError(f"Unknown maintenance task type: {task_type}.")
        schedule = validate_schedule(Schedule.from_row(payload))
        created_at = now or datetime.now(timezone.utc)
        next_due = compute_next_due(schedule, None, created_at=created_at)

        task = {
            "id": payload.get("id") or str(uuid4()),
            "due_at": format_timestamp(next_due["due_at"]),
            "status": "upcoming",
        }
        task["status"] = derive_task_status(task, created_at, next_due["usage_due"])
        self.con.execute(
            """
            INSERT INTO maintenance_tasks (
              id, name, description, type, schedule_type, machine_id, assigned_to,
              interval_days, interval_cycles, due_at, last_completed_at, status,
              created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?)
            """,
            (
                task["id"],
                name,
                payload.get("description"),
                task_type,
                schedule.schedule_type,
                payload.get("machine_id"),
                payload.get("assigned_to"),
                schedule.interval_days,
                schedule.interval_cycles,
                task["due_at"],
                task["status"],
                format_timestamp(created_at),
                format_timestamp(created_at),
            ),
        )
        self.con.commit()
        return task["id"]

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        row = self.con.execute(
            f"""
            {self._select_tasks_sql()}
            WHERE t.id = ?
            """,
            (task_id,),
        ).fetchone()
        return dict(row) if row else None

    def record_completion(
        self,
        task_id: str,
        completed_at: datetime | None = None,
        usage_since_completion: int | None = None,
    ) -> dict[str, Any]:
        """Log a completed service.

        Preventative tasks roll forward to their next due date; corrective
        tasks are one-off and close for good. ``usage_since_completion``
        counts cycles after this service, so the usage counter starts at 0.
        """
        task = self._require_open_task(task_id)
        completed_at = completed_at or datetime.now(timezone.utc)
        if task["type"] == "corrective":
            self._write_status(task_id, TASK_COMPLETED, completed_at, last_completed_at=completed_at)
            return self.get_task(task_id)

        schedule = Schedule.from_row(task)
        if usage_since_completion is None and schedule.uses_usage:
            usage_since_completion = 0
        next_due = compute_next_due(
            schedule,
            completed_at,
            usage_since_completion=usage_since_completion,
            created_at=task["created_at"],
        )
        refreshed = {**task, "due_at": format_timestamp(next_due["due_at"])}
        status = derive_task_status(refreshed, completed_at, next_due["usage_due"])
        self.con.execute(
            """
            UPDATE maintenance_tasks
            SET last_completed_at = ?, due_at = ?, status = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                format_timestamp(completed_at),
                refreshed["due_at"],
                status,
                format_timestamp(completed_at),
                task_id,
            ),
        )
        self.con.commit()
        return self.get_task(task_id)

    def close_task(self, task_id: str, status: str, now: datetime | None = None) -> None:
        if status not in TASK_TERMINAL_STATUSES:
            raise ValueError(f"Tasks can only be closed as completed or cancelled, not {status}.")
        self._require_open_task(task_id)
        closed_at = now or datetime.now(timezone.utc)
        last_completed = closed_at if status == TASK_COMPLETED else None
        self._write_status(task_id, status, closed_at, last_completed_at=last_completed)

    def cancel_task(self, task_id: str, now: datetime | None = None) -> None:
        self.close_task(task_id, TASK_CANCELLED, now)

    def list_tasks(
        self,
        now: datetime | None = None,
        usage_by_task: dict[str, int] | None = None,
        statuses: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Tasks ordered by due date, with derived statuses refreshed on read."""
        now = now or datetime.now(timezone.utc)
        usage_by_task = usage_by_task or {}
        cur = self.con.execute(
            f"""
            {self._select_tasks_sql()}
            ORDER BY t.due_at IS NULL, t.due_at ASC, t.name ASC
            """
        )
        tasks = [dict(r) for r in cur.fetchall()]
        changed = 0
        for task in tasks:
            usage_due = None
            if task["id"] in usage_by_task:
                usage_due = compute_next_due(
                    Schedule.from_row(task),
                    task["last_completed_at"],
                    usage_since_completion=usage_by_task[task["id"]],
                    created_at=task["created_at"],
                )["usage_due"]
            status = derive_task_status(task, now, usage_due)
            if (
                usage_due is None
                and Schedule.from_row(task).uses_usage
                and TASK_SEVERITY.get(status, 0) < TASK_SEVERITY.get(task["status"], 0)
            ):
                # Without a fresh counter reading the last usage verdict stands.
                status = task["status"]
            if status != task["status"]:
                LOGGER.info("Task %s status %s -> %s", task["id"], task["status"], status)
                self.con.execute(
                    "UPDATE maintenance_tasks SET status = ?, updated_at = ? WHERE id = ?",
                    (status, _now_iso(now), task["id"]),
                )
                task["status"] = status
                changed += 1
        if changed:
            self.con.commit()
        if statuses:
            tasks = [task for task in tasks if task["status"] in statuses]
        return tasks

    def _require_open_task(self, task_id: str) -> dict[str, Any]:
        task = self.get_task(task_id)
        if task is None:
            raise ValueError(f"Maintenance task {task_id} does not exist.")
        if task["status"] in TASK_TERMINAL_STATUSES:
            LOGGER.warning("Rejected change to %s task %s", task["status"], task_id)
            raise ValueError(f"Maintenance task is already {task['status']}.")
        return task

    def _write_status(
        self,
        task_id: str,
        status: str,
        now: datetime,
        last_completed_at: datetime | None = None,
    ) -> None:
        self.con.execute(
            """
            UPDATE maintenance_tasks
            SET status = ?, last_completed_at = COALESCE(?, last_completed_at), updated_at = ?
            WHERE id = ?
            """,
            (status, format_timestamp(last_completed_at), format_timestamp(now), task_id),
        )
        self.con.commit()

    @staticmethod
    def _select_tasks_sql() -> str:
        return """
            SELECT t.id,
                   t.name,
                   t.description,
                   t.type,
                   t.schedule_type,
                   t.machine_id,
                   t.assigned_to,
                   t.interval_days,
                   t.interval_cycles,
                   t.due_at,
                   t.last_completed_at,
                   t.status,
                   t.created_at,
                   t.updated_at,
                   m.name AS machine_name
            FROM maintenance_tasks t
            LEFT JOIN machines m ON m.id = t.machine_id
        """
