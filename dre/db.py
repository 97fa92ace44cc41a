from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If a bind-mounted *file* path does not exist, Docker creates a
    *directory* there, and sqlite then fails with "unable to open database
    file". When the configured path is a directory the DB file goes inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "dre.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS documents (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              kind TEXT NOT NULL,
              name TEXT NOT NULL,
              spec TEXT NOT NULL,
              generation INTEGER NOT NULL DEFAULT 1,
              updated_at TEXT NOT NULL,
              UNIQUE(kind, name)
            );

            CREATE TABLE IF NOT EXISTS instances (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              instance_id TEXT NOT NULL UNIQUE,
              workload TEXT NOT NULL,
              template_hash TEXT NOT NULL,
              template TEXT NOT NULL,
              state TEXT NOT NULL, -- Pending|Running|Ready|Unhealthy|Terminating|Terminated
              runtime_id TEXT,
              address TEXT,
              last_probe TEXT,
              restart_count INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS volume_pools (
              name TEXT PRIMARY KEY,
              seq INTEGER NOT NULL,
              capacity INTEGER NOT NULL,
              available INTEGER NOT NULL,
              access_mode TEXT NOT NULL,
              reclaim_policy TEXT NOT NULL,
              phase TEXT NOT NULL -- Available|Bound|Released
            );

            CREATE TABLE IF NOT EXISTS volume_bindings (
              claim TEXT PRIMARY KEY,
              pool TEXT NOT NULL,
              capacity INTEGER NOT NULL,
              bound_at TEXT NOT NULL,
              FOREIGN KEY(pool) REFERENCES volume_pools(name)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              resource TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_instances_workload ON instances(workload);
            """
        )


def log_event(level: str, message: str, resource: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, resource, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), resource, message),
        )


def latest_events(limit: int = 100, resource: str | None = None) -> list[dict[str, Any]]:
    """Most recent events, returned oldest first."""
    with connect() as conn:
        if resource:
            rows = conn.execute(
                "SELECT * FROM events WHERE resource=? ORDER BY id DESC LIMIT ?", (resource, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in reversed(rows)]


@dataclass(frozen=True)
class DocumentRow:
    id: int
    kind: str
    name: str
    spec: dict[str, Any]
    generation: int
    updated_at: str


@dataclass(frozen=True)
class InstanceRow:
    id: int
    instance_id: str
    workload: str
    template_hash: str
    template: dict[str, Any]
    state: str
    runtime_id: str | None
    address: str | None
    last_probe: str | None
    restart_count: int
    created_at: str


@dataclass(frozen=True)
class PoolRow:
    name: str
    seq: int
    capacity: int
    available: int
    access_mode: str
    reclaim_policy: str
    phase: str


@dataclass(frozen=True)
class BindingRow:
    claim: str
    pool: str
    capacity: int
    bound_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def _document(row: sqlite3.Row) -> DocumentRow:
    d = dict(row)
    d["spec"] = json.loads(d["spec"])
    return DocumentRow(**d)


def _instance(row: sqlite3.Row) -> InstanceRow:
    d = dict(row)
    d["template"] = json.loads(d["template"])
    return InstanceRow(**d)


def _canonical(spec: dict[str, Any]) -> str:
    return json.dumps(spec, sort_keys=True, separators=(",", ":"))


# --- Manifest store ---


def upsert_document(kind: str, name: str, spec: dict[str, Any]) -> tuple[DocumentRow, bool]:
    """Insert or update a desired-state document.

    Returns (row, changed). Re-applying an identical spec is a no-op and does
    not bump the generation.
    """
    body = _canonical(spec)
    with connect() as conn:
        row = conn.execute("SELECT * FROM documents WHERE kind=? AND name=?", (kind, name)).fetchone()
        if row and row["spec"] == body:
            return _document(row), False
        if row:
            conn.execute(
                "UPDATE documents SET spec=?, generation=generation+1, updated_at=? WHERE id=?",
                (body, utc_now(), row["id"]),
            )
        else:
            conn.execute(
                "INSERT INTO documents (kind, name, spec, updated_at) VALUES (?, ?, ?, ?)",
                (kind, name, body, utc_now()),
            )
        row = conn.execute("SELECT * FROM documents WHERE kind=? AND name=?", (kind, name)).fetchone()
        return _document(row), True


def delete_document(kind: str, name: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM documents WHERE kind=? AND name=?", (kind, name))
        return cur.rowcount > 0


def get_document(kind: str, name: str) -> DocumentRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM documents WHERE kind=? AND name=?", (kind, name)).fetchone()
        return _document(row) if row else None


def list_documents(kind: str | None = None) -> list[DocumentRow]:
    # Declaration order (id) matters for pool tie-breaking.
    with connect() as conn:
        if kind:
            rows = conn.execute("SELECT * FROM documents WHERE kind=? ORDER BY id", (kind,)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM documents ORDER BY kind, id").fetchall()
        return [_document(r) for r in rows]


# --- Instances ---


def insert_instance(
    instance_id: str,
    workload: str,
    template_hash: str,
    template: dict[str, Any],
    state: str,
    restart_count: int = 0,
) -> InstanceRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO instances (instance_id, workload, template_hash, template, state, restart_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (instance_id, workload, template_hash, _canonical(template), state, restart_count, utc_now()),
        )
        row = conn.execute("SELECT * FROM instances WHERE instance_id=?", (instance_id,)).fetchone()
        return _instance(row)


def list_instances(workload: str | None = None) -> list[InstanceRow]:
    with connect() as conn:
        if workload:
            rows = conn.execute("SELECT * FROM instances WHERE workload=? ORDER BY id", (workload,)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM instances ORDER BY workload, id").fetchall()
        return [_instance(r) for r in rows]


def get_instance(instance_id: str) -> InstanceRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM instances WHERE instance_id=?", (instance_id,)).fetchone()
        return _instance(row) if row else None


def set_instance_state(instance_id: str, state: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE instances SET state=? WHERE instance_id=?", (state, instance_id))


def transition_instance(instance_id: str, from_states: Iterable[str], to_state: str) -> bool:
    """Move an instance to ``to_state`` only if it is currently in one of ``from_states``."""
    states = list(from_states)
    with connect() as conn:
        cur = conn.execute(
            f"UPDATE instances SET state=? WHERE instance_id=? AND state IN ({','.join('?' * len(states))})",
            (to_state, instance_id, *states),
        )
        return cur.rowcount > 0


def set_instance_probe(instance_id: str, last_probe: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE instances SET last_probe=? WHERE instance_id=?", (last_probe, instance_id))


def set_instance_runtime(instance_id: str, runtime_id: str, address: str, state: str, template: dict[str, Any]) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE instances SET runtime_id=?, address=?, state=?, template=? WHERE instance_id=?",
            (runtime_id, address, state, _canonical(template), instance_id),
        )


def delete_instance(instance_id: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM instances WHERE instance_id=?", (instance_id,))


# --- Volume pools / bindings ---


def list_pools() -> list[PoolRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM volume_pools ORDER BY seq").fetchall()
        return _rows_to_dataclass(rows, PoolRow)


def get_pool(name: str) -> PoolRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM volume_pools WHERE name=?", (name,)).fetchone()
        return PoolRow(**dict(row)) if row else None


def insert_pool(name: str, seq: int, capacity: int, access_mode: str, reclaim_policy: str) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO volume_pools (name, seq, capacity, available, access_mode, reclaim_policy, phase)
            VALUES (?, ?, ?, ?, ?, ?, 'Available')
            """,
            (name, seq, capacity, capacity, access_mode, reclaim_policy),
        )


def update_pool(name: str, **fields: Any) -> None:
    allowed = {"seq", "capacity", "available", "access_mode", "reclaim_policy", "phase"}
    cols = [k for k in fields if k in allowed]
    if not cols:
        return
    with connect() as conn:
        conn.execute(
            f"UPDATE volume_pools SET {', '.join(f'{c}=?' for c in cols)} WHERE name=?",
            (*[fields[c] for c in cols], name),
        )


def delete_pool(name: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM volume_pools WHERE name=?", (name,))


def list_bindings(pool: str | None = None) -> list[BindingRow]:
    with connect() as conn:
        if pool:
            rows = conn.execute("SELECT * FROM volume_bindings WHERE pool=? ORDER BY bound_at", (pool,)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM volume_bindings ORDER BY bound_at").fetchall()
        return _rows_to_dataclass(rows, BindingRow)


def get_binding(claim: str) -> BindingRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM volume_bindings WHERE claim=?", (claim,)).fetchone()
        return BindingRow(**dict(row)) if row else None


def insert_binding(claim: str, pool: str, capacity: int) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO volume_bindings (claim, pool, capacity, bound_at) VALUES (?, ?, ?, ?)",
            (claim, pool, capacity, utc_now()),
        )


def delete_binding(claim: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM volume_bindings WHERE claim=?", (claim,))
