from __future__ import annotations

from datetime import datetime, timezone
import os
import sqlite3

import altair as alt
import pandas as pd
import streamlit as st

from compliance_tracking.cli.report import build_report

WINDOW_OPTIONS = [7, 30, 90, 365]

ACTIVITY_LABELS = {
    "checklist_completed": "Completed",
    "checklist_aborted": "Aborted",
    "checklist_started": "Started",
}


def _default_window() -> int:
    try:
        days = int(os.getenv("COMPLIANCE_TRACKING_REPORT_DAYS", "30"))
    except ValueError:
        days = 30
    return days if days in WINDOW_OPTIONS else 30


def _monthly_chart(monthly: list[dict]) -> alt.Chart:
    df = pd.DataFrame(monthly)
    order = df["month"].tolist()
    bars = (
        alt.Chart(df)
        .transform_fold(["total", "completed"], as_=["metric", "count"])
        .mark_bar()
        .encode(
            x=alt.X("month:N", sort=order, title=None),
            xOffset="metric:N",
            y=alt.Y("count:Q", title="Runs"),
            color=alt.Color(
                "metric:N",
                scale=alt.Scale(domain=["total", "completed"], range=["#9CA3AF", "#22C55E"]),
                legend=alt.Legend(title=None),
            ),
            tooltip=[
                alt.Tooltip("month:N", title="Month"),
                alt.Tooltip("total:Q", title="Started"),
                alt.Tooltip("completed:Q", title="Completed"),
                alt.Tooltip("rate:Q", title="Rate %"),
            ],
        )
    )
    return bars.properties(height=280)


def render(con: sqlite3.Connection) -> None:
    st.header("Reports")

    days = st.selectbox(
        "Window",
        WINDOW_OPTIONS,
        index=WINDOW_OPTIONS.index(_default_window()),
        format_func=lambda value: f"Last {value} days",
    )
    report = build_report(con, days, datetime.now(timezone.utc))
    stats = report["stats"]

    cols = st.columns(5)
    cols[0].metric("Checklists", stats["total_checklists"])
    cols[1].metric("Completed", stats["completed_checklists"])
    cols[2].metric("In progress", stats["in_progress"])
    cols[3].metric("Failed checks", stats["failed_checks"])
    cols[4].metric("Active users", stats["active_users"])

    st.subheader("Completion by month")
    st.altair_chart(_monthly_chart(report["monthly_data"]), use_container_width=True)

    user_col, machine_col = st.columns(2)
    with user_col:
        st.subheader("Operators")
        if report["user_stats"]:
            users_df = pd.DataFrame(
                [
                    {
                        "Name": row["name"],
                        "Role": row["role"],
                        "Completed": row["completed_checklists"],
                        "In progress": row["in_progress_checklists"],
                        "Failed checks": row["failed_checks"],
                        "Last active": row["last_active"],
                    }
                    for row in report["user_stats"]
                ]
            )
            st.dataframe(users_df, use_container_width=True)
        else:
            st.caption("No checklist activity in this window.")
    with machine_col:
        st.subheader("Machines")
        machines_df = pd.DataFrame(
            [
                {
                    "Machine": row["name"],
                    "Runs": row["total_runs"],
                    "Completed": row["completed_checklists"],
                    "Failed checks": row["failed_checks"],
                    "Compliance %": row["compliance"],
                }
                for row in report["machine_stats"]
            ]
        )
        st.dataframe(machines_df, use_container_width=True)

    st.subheader("Recent activity")
    if not report["recent_activity"]:
        st.caption("No recent activity.")
    for event in report["recent_activity"]:
        st.markdown(
            f"**{ACTIVITY_LABELS.get(event['type'], event['type'])}** · {event['template_name']}"
            f" · {event['machine_name']} · {event['user_name']}"
        )
        st.caption(event["time"])
