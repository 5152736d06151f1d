from __future__ import annotations

from datetime import datetime, timezone
import sqlite3

import pandas as pd
import streamlit as st

from compliance_tracking.data.repositories import AnswerRepository, RunRepository, TemplateRepository
from compliance_tracking.services.compliance import classify_run, summarize_run_statuses
from compliance_tracking.services.scoring import TemplateNotFoundError, completion_blockers, score_run

LIGHTS = {
    "on_time": "🟢 On time",
    "completed": "🟢 Completed",
    "due_soon": "🟡 Due soon",
    "overdue": "🔴 Overdue",
    "active": "🔵 In progress",
    "aging": "🟡 Open 4+ hrs",
    "stale": "🔴 Open 8+ hrs",
}


def _render_score(con: sqlite3.Connection, run: dict) -> None:
    try:
        definition = TemplateRepository(con).get_definition(run["template_id"], run["template_version"])
    except TemplateNotFoundError as exc:
        st.warning(f"Run cannot be scored: {exc}")
        return
    score = score_run(definition, AnswerRepository(con).list_for_run(run["id"]))
    cols = st.columns(3)
    cols[0].metric("Answered", f"{score['answered_items']} / {score['total_items']}")
    cols[1].metric("Failed", score["failed_items"])
    cols[2].metric("Critical failure", "Yes" if score["critical_failure"] else "No")
    for blocker in completion_blockers(score):
        st.error(blocker)
    st.dataframe(pd.DataFrame(score["per_item"]), use_container_width=True)


def render(con: sqlite3.Connection) -> None:
    st.header("Checklist status")

    now = datetime.now(timezone.utc)
    runs = RunRepository(con).list_active_runs()
    snapshots = [classify_run(run, now) for run in runs]
    counts = summarize_run_statuses(snapshots)

    cols = st.columns(4)
    cols[0].metric("Needs attention", counts["needs_attention"])
    cols[1].metric("Scheduled", counts["total_scheduled"], f"{counts['overdue']} overdue", delta_color="inverse")
    cols[2].metric("Ad-hoc open", counts["total_ad_hoc"])
    cols[3].metric("Due soon", counts["due_soon"])

    show_completed = st.checkbox("Show completed", value=False)
    rows = []
    for run, snapshot in zip(runs, snapshots):
        if run["status"] == "completed" and not show_completed:
            continue
        rows.append(
            {
                "Checklist": run.get("template_name") or "Unknown",
                "Machine": run.get("machine_name") or "-",
                "Operator": run.get("user_name") or "-",
                "Frequency": snapshot["frequency"],
                "Status": LIGHTS.get(snapshot["compliance_status"], snapshot["compliance_status"]),
                "Days overdue": snapshot["days_overdue"],
                "Hours open": snapshot["hours_open"] if snapshot["is_ad_hoc"] else None,
                "Started": run["started_at"],
            }
        )
    st.dataframe(pd.DataFrame(rows), use_container_width=True)

    if runs:
        st.subheader("Run score")
        runs_by_id = {run["id"]: run for run in runs}
        run_id = st.selectbox(
            "Run",
            list(runs_by_id),
            format_func=lambda rid: f"{runs_by_id[rid].get('template_name')} · "
            f"{runs_by_id[rid].get('machine_name')} · {runs_by_id[rid]['started_at']}",
        )
        _render_score(con, runs_by_id[run_id])
