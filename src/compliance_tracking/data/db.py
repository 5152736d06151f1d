from __future__ import annotations

from pathlib import Path
import sqlite3

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
  id TEXT PRIMARY KEY,
  email TEXT NOT NULL,
  name TEXT NOT NULL,
  role TEXT NOT NULL DEFAULT 'operator',
  department TEXT,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS machines (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  location TEXT,
  status TEXT NOT NULL DEFAULT 'available',
  risk_category TEXT NOT NULL DEFAULT 'normal',
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS checklist_templates (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  type TEXT NOT NULL DEFAULT 'pre_run',
  status TEXT NOT NULL DEFAULT 'draft',
  version INTEGER NOT NULL DEFAULT 1,
  machine_id TEXT,
  created_by TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  FOREIGN KEY(machine_id) REFERENCES machines(id)
);

CREATE TABLE IF NOT EXISTS template_versions (
  template_id TEXT NOT NULL,
  version INTEGER NOT NULL,
  json_definition TEXT NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY (template_id, version),
  FOREIGN KEY(template_id) REFERENCES checklist_templates(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS checklist_runs (
  id TEXT PRIMARY KEY,
  template_id TEXT NOT NULL,
  template_version INTEGER NOT NULL,
  machine_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'in_progress',
  started_at TEXT NOT NULL,
  completed_at TEXT,
  job_number TEXT,
  part_number TEXT,
  notes TEXT,
  FOREIGN KEY(template_id) REFERENCES checklist_templates(id),
  FOREIGN KEY(machine_id) REFERENCES machines(id),
  FOREIGN KEY(user_id) REFERENCES users(id)
);

CREATE INDEX IF NOT EXISTS idx_checklist_runs_started
  ON checklist_runs (started_at);

CREATE TABLE IF NOT EXISTS checklist_answers (
  id TEXT PRIMARY KEY,
  run_id TEXT NOT NULL,
  section_id TEXT NOT NULL,
  item_id TEXT NOT NULL,
  value_json TEXT,
  comment TEXT,
  photo_url TEXT,
  answered_at TEXT NOT NULL,
  UNIQUE(run_id, item_id),
  FOREIGN KEY(run_id) REFERENCES checklist_runs(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS maintenance_tasks (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  description TEXT,
  type TEXT NOT NULL DEFAULT 'preventative',
  schedule_type TEXT NOT NULL DEFAULT 'time_based',
  machine_id TEXT,
  assigned_to TEXT,
  interval_days INTEGER,
  interval_cycles INTEGER,
  due_at TEXT,
  last_completed_at TEXT,
  status TEXT NOT NULL DEFAULT 'upcoming',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  FOREIGN KEY(machine_id) REFERENCES machines(id)
);
"""


def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(db_path.as_posix())
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys=ON;")
    return con


def connect_memory() -> sqlite3.Connection:
    con = sqlite3.connect(":memory:")
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys=ON;")
    return con


def _get_user_version(con: sqlite3.Connection) -> int:
    row = con.execute("PRAGMA user_version;").fetchone()
    return int(row[0]) if row else 0


def _set_user_version(con: sqlite3.Connection, version: int) -> None:
    con.execute(f"PRAGMA user_version = {version};")


def _column_exists(con: sqlite3.Connection, table: str, column: str) -> bool:
    cur = con.execute(f"PRAGMA table_info({table});")
    return any(row["name"] == column for row in cur.fetchall())


def _migrate_to_v2(con: sqlite3.Connection) -> None:
    if not _column_exists(con, "checklist_templates", "frequency"):
        con.execute("ALTER TABLE checklist_templates ADD COLUMN frequency TEXT;")
    if not _column_exists(con, "checklist_runs", "due_date"):
        con.execute("ALTER TABLE checklist_runs ADD COLUMN due_date TEXT;")
    _set_user_version(con, 2)


def _migrate_to_v3(con: sqlite3.Connection) -> None:
    con.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_maintenance_tasks_status_due
        ON maintenance_tasks (status, due_at);
        """
    )
    _set_user_version(con, 3)


def init_db(con: sqlite3.Connection) -> None:
    con.executescript(SCHEMA_SQL)
    current_version = _get_user_version(con)
    if current_version < 2:
        _migrate_to_v2(con)
    if current_version < 3:
        _migrate_to_v3(con)
    con.commit()


def table_count(con: sqlite3.Connection, table: str) -> int:
    cur = con.execute(f"SELECT COUNT(1) AS n FROM {table}")
    return int(cur.fetchone()["n"])
