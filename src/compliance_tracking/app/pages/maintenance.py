from __future__ import annotations

from datetime import datetime, timezone
import sqlite3

import pandas as pd
import streamlit as st

from compliance_tracking.data.repositories import MachineRepository, MaintenanceTaskRepository
from compliance_tracking.services.compliance import (
    TASK_TERMINAL_STATUSES,
    classify_compliance,
    summarize_task_statuses,
)

STATUS_LABELS = {
    "upcoming": "Upcoming",
    "due": "Due",
    "overdue": "Overdue",
    "completed": "Completed",
    "cancelled": "Cancelled",
}

STATUS_FILTERS = {
    "Active": ["upcoming", "due", "overdue"],
    "Overdue": ["overdue"],
    "Due now": ["due"],
    "Upcoming": ["upcoming"],
    "Completed": ["completed"],
    "All": None,
}


def _interval_label(task: dict) -> str:
    parts = []
    if task.get("interval_days"):
        parts.append(f"every {task['interval_days']} days")
    if task.get("interval_cycles"):
        parts.append(f"every {task['interval_cycles']} cycles")
    return " or ".join(parts) or "-"


def _due_label(task: dict, now: datetime) -> str:
    if not task.get("due_at") or task.get("status") in TASK_TERMINAL_STATUSES:
        return "-"
    snapshot = classify_compliance(now, task["due_at"], task.get("status"))
    if snapshot["compliance_status"] == "overdue":
        return f"{snapshot['days_overdue']} d overdue"
    if snapshot["days_until_due"] == 0:
        return "due today"
    if snapshot["days_until_due"] is not None:
        return f"in {snapshot['days_until_due']} d"
    return "-"


def render(con: sqlite3.Connection) -> None:
    st.header("Maintenance")

    repo = MaintenanceTaskRepository(con)
    now = datetime.now(timezone.utc)
    tasks = repo.list_tasks(now=now)
    counts = summarize_task_statuses(tasks)

    cols = st.columns(3)
    cols[0].metric("Overdue", counts["overdue"])
    cols[1].metric("Due now", counts["due"])
    cols[2].metric("Upcoming", counts["upcoming"])

    filter_label = st.radio("Status", list(STATUS_FILTERS), horizontal=True)
    wanted = STATUS_FILTERS[filter_label]
    visible = [task for task in tasks if wanted is None or task["status"] in wanted]

    table_df = pd.DataFrame(
        [
            {
                "Task": task["name"],
                "Machine": task.get("machine_name") or "-",
                "Type": task["type"],
                "Schedule": _interval_label(task),
                "Status": STATUS_LABELS.get(task["status"], task["status"]),
                "Due": _due_label(task, now),
                "Last completed": task.get("last_completed_at") or "-",
            }
            for task in visible
        ]
    )
    st.dataframe(table_df, use_container_width=True)

    open_tasks = [task for task in tasks if task["status"] not in ("completed", "cancelled")]
    if open_tasks:
        st.subheader("Record completion")
        tasks_by_id = {task["id"]: task for task in open_tasks}
        with st.form("complete_task_form"):
            task_id = st.selectbox(
                "Task",
                list(tasks_by_id),
                format_func=lambda tid: tasks_by_id[tid]["name"],
            )
            submitted = st.form_submit_button("Mark done")
        if submitted:
            try:
                repo.record_completion(task_id, now)
            except ValueError as exc:
                st.error(str(exc))
            else:
                st.success("Completion recorded.")
                st.rerun()

    st.subheader("New task")
    machines = MachineRepository(con).list_machines()
    machine_names = {machine["id"]: machine["name"] for machine in machines}
    with st.form("new_task_form"):
        name = st.text_input("Name")
        task_type = st.selectbox("Type", ["preventative", "corrective"])
        schedule_type = st.selectbox("Schedule", ["time_based", "usage_based", "mixed"])
        machine_id = st.selectbox(
            "Machine",
            [None] + list(machine_names),
            format_func=lambda mid: "(none)" if mid is None else machine_names[mid],
        )
        interval_days = st.number_input("Interval (days)", min_value=0, value=30, step=1)
        interval_cycles = st.number_input("Interval (cycles)", min_value=0, value=0, step=1)
        create = st.form_submit_button("Create")
    if create:
        payload = {
            "name": name,
            "type": task_type,
            "schedule_type": schedule_type,
            "machine_id": machine_id,
            "interval_days": int(interval_days) if schedule_type != "usage_based" else None,
            "interval_cycles": int(interval_cycles) if schedule_type != "time_based" else None,
        }
        try:
            repo.create_task(payload, now)
        except ValueError as exc:
            st.error(str(exc))
        else:
            st.success("Task created.")
            st.rerun()
