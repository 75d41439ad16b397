from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

from .runtime import (
    AttemptStatus,
    Color,
    DeploymentAttempt,
    Environment,
    EnvironmentState,
    TaskRecord,
    TrafficState,
    utc_now,
)
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a missing
    bind-mounted file path is used), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "bgd.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS services (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              production_port INTEGER NOT NULL,
              test_port INTEGER NOT NULL,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS revisions (
              id TEXT PRIMARY KEY,
              service_id INTEGER NOT NULL,
              payload TEXT NOT NULL, -- immutable JSON document
              created_at TEXT NOT NULL,
              FOREIGN KEY(service_id) REFERENCES services(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS environments (
              id TEXT PRIMARY KEY,
              service_id INTEGER NOT NULL,
              color TEXT NOT NULL, -- blue|green
              target_group TEXT NOT NULL,
              state TEXT NOT NULL, -- IDLE|PROVISIONING|CANDIDATE|PRODUCTION|DRAINING|TERMINATED
              revision_id TEXT,
              tasks TEXT NOT NULL DEFAULT '[]',
              updated_at TEXT NOT NULL,
              UNIQUE(service_id, color),
              FOREIGN KEY(service_id) REFERENCES services(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS attempts (
              id TEXT PRIMARY KEY,
              service_id INTEGER NOT NULL,
              revision_id TEXT NOT NULL,
              candidate_environment TEXT NOT NULL,
              previous_environment TEXT,
              status TEXT NOT NULL, -- PROVISIONING|BAKING|PROMOTED|ROLLED_BACK|ABORTED
              reason TEXT,
              started_at REAL NOT NULL,
              bake_deadline REAL,
              updated_at REAL,
              finished_at REAL,
              FOREIGN KEY(service_id) REFERENCES services(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS traffic (
              service_id INTEGER PRIMARY KEY,
              production_environment TEXT,
              test_environment TEXT,
              last_swap_at REAL,
              FOREIGN KEY(service_id) REFERENCES services(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              revision TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_attempts_service_id ON attempts(service_id);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None, revision: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, revision, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, revision, message),
        )


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class ServiceRow:
    id: int
    name: str
    production_port: int
    test_port: int
    created_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def _service_id(conn: sqlite3.Connection, name: str) -> int:
    row = conn.execute("SELECT id FROM services WHERE name=?", (name,)).fetchone()
    if not row:
        raise KeyError(f"unknown service '{name}'")
    return int(row["id"])


def create_service(name: str, production_port: int, test_port: int) -> ServiceRow:
    with connect() as conn:
        conn.execute(
            "INSERT INTO services (name, production_port, test_port, created_at) VALUES (?, ?, ?, ?)",
            (name, production_port, test_port, utc_now()),
        )
        row = conn.execute("SELECT * FROM services WHERE name=?", (name,)).fetchone()
        return ServiceRow(**dict(row))


def get_service(name: str) -> ServiceRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM services WHERE name=?", (name,)).fetchone()
        return ServiceRow(**dict(row)) if row else None


def list_services() -> list[ServiceRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM services ORDER BY name").fetchall()
        return _rows_to_dataclass(rows, ServiceRow)


def save_revision(service: str, payload: dict[str, Any]) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO revisions (id, service_id, payload, created_at) VALUES (?, ?, ?, ?)",
            (payload["id"], _service_id(conn, service), json.dumps(payload, sort_keys=True), utc_now()),
        )


def get_revision(revision_id: str) -> dict[str, Any] | None:
    with connect() as conn:
        row = conn.execute("SELECT payload FROM revisions WHERE id=?", (revision_id,)).fetchone()
        return json.loads(row["payload"]) if row else None


def _environment_from_row(row: sqlite3.Row, service: str) -> Environment:
    return Environment(
        id=row["id"],
        service=service,
        color=Color(row["color"]),
        target_group=row["target_group"],
        state=EnvironmentState(row["state"]),
        revision_id=row["revision_id"],
        tasks=[TaskRecord(**t) for t in json.loads(row["tasks"])],
        updated_at=row["updated_at"],
    )


def save_environment(env: Environment) -> None:
    tasks = json.dumps(
        [
            {"task_id": t.task_id, "containers": t.containers, "endpoint": t.endpoint, "volumes": t.volumes}
            for t in env.tasks
        ]
    )
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO environments (id, service_id, color, target_group, state, revision_id, tasks, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              state=excluded.state,
              revision_id=excluded.revision_id,
              tasks=excluded.tasks,
              updated_at=excluded.updated_at
            """,
            (
                env.id,
                _service_id(conn, env.service),
                env.color.value,
                env.target_group,
                env.state.value,
                env.revision_id,
                tasks,
                utc_now(),
            ),
        )


def get_environment(env_id: str) -> Environment | None:
    with connect() as conn:
        row = conn.execute(
            """
            SELECT e.*, s.name AS service_name FROM environments e
            JOIN services s ON s.id = e.service_id
            WHERE e.id=?
            """,
            (env_id,),
        ).fetchone()
        return _environment_from_row(row, row["service_name"]) if row else None


def list_environments(service: str) -> list[Environment]:
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT e.* FROM environments e
            JOIN services s ON s.id = e.service_id
            WHERE s.name=?
            ORDER BY e.color
            """,
            (service,),
        ).fetchall()
        return [_environment_from_row(r, service) for r in rows]


def _attempt_from_row(row: sqlite3.Row) -> DeploymentAttempt:
    return DeploymentAttempt(
        id=row["id"],
        service=row["service_name"],
        revision_id=row["revision_id"],
        candidate_environment=row["candidate_environment"],
        previous_environment=row["previous_environment"],
        status=AttemptStatus(row["status"]),
        reason=row["reason"],
        started_at=row["started_at"],
        bake_deadline=row["bake_deadline"],
        updated_at=row["updated_at"],
        finished_at=row["finished_at"],
    )


_ATTEMPT_SELECT = """
    SELECT a.*, s.name AS service_name FROM attempts a
    JOIN services s ON s.id = a.service_id
"""


def insert_attempt(a: DeploymentAttempt) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO attempts (id, service_id, revision_id, candidate_environment, previous_environment,
                                  status, reason, started_at, bake_deadline, updated_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                a.id,
                _service_id(conn, a.service),
                a.revision_id,
                a.candidate_environment,
                a.previous_environment,
                a.status.value,
                a.reason,
                a.started_at,
                a.bake_deadline,
                a.updated_at,
                a.finished_at,
            ),
        )


def update_attempt(a: DeploymentAttempt) -> None:
    with connect() as conn:
        conn.execute(
            """
            UPDATE attempts
            SET status=?, reason=?, bake_deadline=?, updated_at=?, finished_at=?
            WHERE id=?
            """,
            (a.status.value, a.reason, a.bake_deadline, a.updated_at, a.finished_at, a.id),
        )


def get_attempt(attempt_id: str) -> DeploymentAttempt | None:
    with connect() as conn:
        row = conn.execute(_ATTEMPT_SELECT + " WHERE a.id=?", (attempt_id,)).fetchone()
        return _attempt_from_row(row) if row else None


def list_attempts(service: str | None = None, statuses: Iterable[AttemptStatus] | None = None) -> list[DeploymentAttempt]:
    clauses: list[str] = []
    params: list[Any] = []
    if service:
        clauses.append("s.name=?")
        params.append(service)
    if statuses is not None:
        statuses = list(statuses)
        clauses.append(f"a.status IN ({','.join('?' for _ in statuses)})")
        params.extend(s.value for s in statuses)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect() as conn:
        rows = conn.execute(_ATTEMPT_SELECT + where + " ORDER BY a.started_at DESC, a.rowid DESC", params).fetchall()
        return [_attempt_from_row(r) for r in rows]


def save_traffic(state: TrafficState) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO traffic (service_id, production_environment, test_environment, last_swap_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(service_id) DO UPDATE SET
              production_environment=excluded.production_environment,
              test_environment=excluded.test_environment,
              last_swap_at=excluded.last_swap_at
            """,
            (_service_id(conn, state.service), state.production_environment, state.test_environment, state.last_swap_at),
        )


def get_traffic(service: str) -> TrafficState | None:
    with connect() as conn:
        row = conn.execute(
            """
            SELECT t.* FROM traffic t
            JOIN services s ON s.id = t.service_id
            WHERE s.name=?
            """,
            (service,),
        ).fetchone()
        if not row:
            return None
        return TrafficState(
            service=service,
            production_environment=row["production_environment"],
            test_environment=row["test_environment"],
            last_swap_at=row["last_swap_at"],
        )
