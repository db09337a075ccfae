from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any


class SQLiteServerStore:
    """Durable dev-server records, one row per repository handle.

    Any request-handling process pointed at the same database file sees the
    same records, which is what lets a proxy request find a server started by
    a different worker.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path.expanduser().resolve()
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dev_servers (
                    repo_id TEXT PRIMARY KEY,
                    pid INTEGER NOT NULL,
                    port INTEGER NOT NULL,
                    app_type TEXT,
                    started_at REAL,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_dev_servers_pid ON dev_servers(pid)"
            )
            conn.commit()

    def upsert_server(self, record: dict[str, Any]) -> None:
        payload = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO dev_servers (
                        repo_id, pid, port, app_type, started_at, payload_json
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(repo_id) DO UPDATE SET
                        pid=excluded.pid,
                        port=excluded.port,
                        app_type=excluded.app_type,
                        started_at=excluded.started_at,
                        payload_json=excluded.payload_json
                    """,
                    (
                        str(record.get("repo_id") or ""),
                        int(record.get("pid") or 0),
                        int(record.get("port") or 0),
                        str(record.get("app_type") or ""),
                        float(record.get("started_at") or 0.0),
                        payload,
                    ),
                )
                conn.commit()

    def load_server(self, repo_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM dev_servers WHERE repo_id = ?",
                (repo_id,),
            ).fetchone()
        if row is None:
            return None
        try:
            record = json.loads(row[0])
        except Exception:
            return None
        return record if isinstance(record, dict) else None

    def load_servers(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM dev_servers ORDER BY started_at ASC, rowid ASC"
            ).fetchall()
        for (payload_json,) in rows:
            try:
                record = json.loads(payload_json)
            except Exception:
                continue
            if not isinstance(record, dict):
                continue
            repo_id = str(record.get("repo_id") or "").strip()
            if not repo_id:
                continue
            out[repo_id] = record
        return out

    def delete_server(self, repo_id: str, *, pid: int | None = None) -> bool:
        """Delete a record; with ``pid`` only if the row still points at it."""
        with self._lock:
            with self._connect() as conn:
                if pid is None:
                    cur = conn.execute("DELETE FROM dev_servers WHERE repo_id = ?", (repo_id,))
                else:
                    cur = conn.execute(
                        "DELETE FROM dev_servers WHERE repo_id = ? AND pid = ?",
                        (repo_id, int(pid)),
                    )
                conn.commit()
                return cur.rowcount > 0
