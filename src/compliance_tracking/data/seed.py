from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any

import pandas as pd

from compliance_tracking.data.repositories import MaintenanceTaskRepository


def _read_csv(path: Path) -> pd.DataFrame:
    if not path.exists():
        return pd.DataFrame()
    df = pd.read_csv(path, sep=None, engine="python", decimal=",")
    df.columns = [c.strip().lstrip("\ufeff") for c in df.columns]
    return df


def _upsert_df(con: sqlite3.Connection, table: str, df: pd.DataFrame, key: str = "id") -> None:
    if df.empty:
        return
    if key not in df.columns:
        raise ValueError(f"Seed for {table} requires column '{key}'")

    cols = list(df.columns)
    placeholders = ", ".join(["?"] * len(cols))
    col_list = ", ".join(cols)

    update_cols = [c for c in cols if c != key]
    set_clause = ", ".join([f"{c}=excluded.{c}" for c in update_cols])

    sql = f"""
    INSERT INTO {table} ({col_list})
    VALUES ({placeholders})
    ON CONFLICT({key}) DO UPDATE SET {set_clause};
    """

    rows = [
        tuple(None if pd.isna(v) else v for v in row)
        for row in df[cols].itertuples(index=False, name=None)
    ]
    con.executemany(sql, rows)
    con.commit()


def _task_payload(row: dict[str, Any]) -> dict[str, Any]:
    payload = {key: (None if pd.isna(value) else value) for key, value in row.items()}
    for key in ("interval_days", "interval_cycles"):
        if payload.get(key) is not None:
            payload[key] = int(payload[key])
    return payload


def seed_from_csv(con: sqlite3.Connection, sample_dir: Path) -> dict[str, int]:
    users = _read_csv(sample_dir / "users.csv")
    machines = _read_csv(sample_dir / "machines.csv")
    tasks = _read_csv(sample_dir / "maintenance_tasks.csv")

    # order matters (FK)
    _upsert_df(con, "users", users)
    _upsert_df(con, "machines", machines)

    task_repo = MaintenanceTaskRepository(con)
    created_tasks = 0
    for row in tasks.to_dict(orient="records"):
        payload = _task_payload(row)
        if payload.get("id") and task_repo.get_task(payload["id"]):
            continue
        task_repo.create_task(payload)
        created_tasks += 1

    return {
        "users": len(users),
        "machines": len(machines),
        "maintenance_tasks": created_tasks,
    }
