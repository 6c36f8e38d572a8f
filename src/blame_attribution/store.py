from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

from blame_attribution.models import CloneResult, PendingAttributions, RepositoryActivity


class BlobStore(Protocol):
    def put_object(self, key: str, payload: Any, expires_in_days: int = 7) -> None: ...

    def get_object(self, key: str) -> Any | None: ...


class ViolationSource(Protocol):
    def get_pending_attributions(self, tenant: str, repo_full_name: str) -> PendingAttributions: ...


class StatisticsReporter(Protocol):
    def save_repository_activity(self, repository_id: str, activity: RepositoryActivity) -> None: ...


class FileUploader(Protocol):
    def put_file(self, key: str, body: bytes) -> None: ...


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS staged_objects (
    key TEXT PRIMARY KEY,
    body TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshot_files (
    key TEXT PRIMARY KEY,
    body BLOB NOT NULL,
    size INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_attributions (
    tenant TEXT NOT NULL,
    repository TEXT NOT NULL,
    violations TEXT,
    staged_key TEXT,
    PRIMARY KEY (tenant, repository)
);

CREATE TABLE IF NOT EXISTS attribution_queue (
    report_key TEXT PRIMARY KEY,
    tenant TEXT NOT NULL,
    repository TEXT NOT NULL,
    resource_count INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS repository_activity (
    repository_id TEXT PRIMARY KEY,
    contributors TEXT NOT NULL,
    current_week_commits INTEGER NOT NULL,
    prev_week_commits INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS clone_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant TEXT NOT NULL,
    execution_time TEXT NOT NULL,
    source TEXT NOT NULL,
    repository_name TEXT NOT NULL,
    repository_id TEXT,
    clone_size REAL,
    clone_duration REAL,
    failure_time REAL,
    error TEXT
);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Store:
    """SQLite-backed blob store, violation source, and attribution queue."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)

    def put_object(self, key: str, payload: Any, expires_in_days: int = 7) -> None:
        now = _utcnow()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO staged_objects(key, body, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    key,
                    json.dumps(payload, ensure_ascii=False),
                    now.isoformat(),
                    (now + timedelta(days=expires_in_days)).isoformat(),
                ),
            )

    def get_object(self, key: str) -> Any | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT body FROM staged_objects WHERE key = ? AND expires_at > ?",
                (key, _utcnow().isoformat()),
            ).fetchone()
            return json.loads(row["body"]) if row else None

    def purge_expired(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM staged_objects WHERE expires_at <= ?", (_utcnow().isoformat(),))
            return cursor.rowcount

    def put_file(self, key: str, body: bytes) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO snapshot_files(key, body, size, created_at) VALUES (?, ?, ?, ?)",
                (key, sqlite3.Binary(body), len(body), _utcnow().isoformat()),
            )

    def get_file(self, key: str) -> bytes | None:
        with self._connect() as conn:
            row = conn.execute("SELECT body FROM snapshot_files WHERE key = ?", (key,)).fetchone()
        return bytes(row["body"]) if row else None

    def list_files(self, prefix: str) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key FROM snapshot_files WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row["key"] for row in rows]


    def set_pending_attributions(
        self,
        tenant: str,
        repository: str,
        violations: list[dict] | None = None,
        staged_key: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pending_attributions(tenant, repository, violations, staged_key)
                VALUES (?, ?, ?, ?)
                """,
                (tenant, repository, json.dumps(violations) if violations is not None else None, staged_key),
            )

    def get_pending_attributions(self, tenant: str, repo_full_name: str) -> PendingAttributions:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT violations, staged_key FROM pending_attributions WHERE tenant = ? AND repository = ?",
                (tenant, repo_full_name),
            ).fetchone()
        if not row:
            return PendingAttributions(violations=[])
        violations = json.loads(row["violations"]) if row["violations"] else None
        return PendingAttributions.model_validate({"violations": violations, "stagedKey": row["staged_key"]})

    def enqueue_attribution_batch(self, report_key: str, tenant: str, repository: str, resource_count: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO attribution_queue(report_key, tenant, repository, resource_count, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (report_key, tenant, repository, resource_count, _utcnow().isoformat()),
            )

    def fetch_attribution_queue(self, tenant: str | None = None) -> list[dict]:
        query = "SELECT report_key, tenant, repository, resource_count, created_at FROM attribution_queue"
        params: tuple = ()
        if tenant:
            query += " WHERE tenant = ?"
            params = (tenant,)
        query += " ORDER BY created_at, report_key"
        with self._connect() as conn:
            return [dict(r) for r in conn.execute(query, params).fetchall()]

    def save_repository_activity(self, repository_id: str, activity: RepositoryActivity) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO repository_activity(
                    repository_id, contributors, current_week_commits, prev_week_commits, updated_at
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    repository_id,
                    json.dumps([c.model_dump() for c in activity.contributors_data]),
                    activity.current_week_commits,
                    activity.prev_week_commits,
                    _utcnow().isoformat(),
                ),
            )

    def get_repository_activity(self, repository_id: str) -> RepositoryActivity | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM repository_activity WHERE repository_id = ?",
                (repository_id,),
            ).fetchone()
        if not row:
            return None
        return RepositoryActivity(
            contributors_data=json.loads(row["contributors"]),
            current_week_commits=row["current_week_commits"],
            prev_week_commits=row["prev_week_commits"],
        )

    def write_clone_results(
        self,
        tenant: str,
        execution_time: str,
        results: Iterable[CloneResult],
        source: str = "",
    ) -> int:
        payload = [
            (
                tenant,
                execution_time,
                source,
                r.repository_name,
                r.repository_id,
                r.clone_size,
                r.clone_duration,
                r.failure_time,
                r.error,
            )
            for r in results
        ]
        if not payload:
            return 0
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO clone_results(
                    tenant, execution_time, source, repository_name, repository_id,
                    clone_size, clone_duration, failure_time, error
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                payload,
            )
        return len(payload)

    def get_clone_errors(self, tenant: str, execution_time: str, source: str | None = None) -> list[dict]:
        query = """
            SELECT repository_name, repository_id, failure_time, error
            FROM clone_results
            WHERE tenant = ? AND execution_time = ? AND error IS NOT NULL
        """
        params: tuple = (tenant, execution_time)
        if source is not None:
            query += " AND source = ?"
            params = (*params, source)
        query += " ORDER BY id"
        with self._connect() as conn:
            return [dict(r) for r in conn.execute(query, params).fetchall()]
