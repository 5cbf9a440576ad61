"""OpsQueue SQL Backend - SQLite Queue Store.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from opsqueue_core.errors import StoreUnavailableError
from opsqueue_core.queue.job import Job, JobState, RecurringJob
from opsqueue_core.storage.backend import StorageBackend, claim_order

logger = logging.getLogger(__name__)


class SQLBackend(StorageBackend):
    """SQLite storage backend.

    Mutations that read before they write run inside `BEGIN IMMEDIATE`
    transactions, so several processes sharing one database file get the
    same single-flight and cooldown guarantees as threads in one process.
    """

    def __init__(self, connection_string: str = ":memory:"):
        self.connection_string = connection_string
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        self._conn = sqlite3.connect(
            self.connection_string,
            check_same_thread=False,
            isolation_level=None,
        )
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    queue_name TEXT NOT NULL,
                    id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (queue_name, id)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs(queue_name, state)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sequences (
                    queue_name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            conn.execute("CREATE TABLE IF NOT EXISTS paused (queue_name TEXT PRIMARY KEY)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS recurring (
                    key TEXT PRIMARY KEY,
                    queue_name TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rule_triggers (
                    rule_id TEXT PRIMARY KEY,
                    triggered_at TEXT NOT NULL
                )
            """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple = ()) -> List[tuple]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def next_job_id(self, queue_name: str) -> str:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO sequences (queue_name, value) VALUES (?, 0)",
                (queue_name,),
            )
            conn.execute(
                "UPDATE sequences SET value = value + 1 WHERE queue_name = ?",
                (queue_name,),
            )
            row = conn.execute(
                "SELECT value FROM sequences WHERE queue_name = ?",
                (queue_name,),
            ).fetchone()
            return str(row[0])

    def _write_job(self, conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO jobs (queue_name, id, state, data) VALUES (?, ?, ?, ?)",
            (job.queue_name, job.id, job.state.value, json.dumps(job.to_dict())),
        )

    def add_job(self, job: Job) -> None:
        with self._transaction() as conn:
            self._write_job(conn, job)

    def save_job(self, job: Job) -> None:
        with self._transaction() as conn:
            self._write_job(conn, job)

    def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        rows = self._query(
            "SELECT data FROM jobs WHERE queue_name = ? AND id = ?",
            (queue_name, job_id),
        )
        if rows:
            return Job.from_dict(json.loads(rows[0][0]))
        return None

    def _read_job(self, conn: sqlite3.Connection, queue_name: str, job_id: str) -> Optional[Job]:
        row = conn.execute(
            "SELECT data FROM jobs WHERE queue_name = ? AND id = ?",
            (queue_name, job_id),
        ).fetchone()
        return Job.from_dict(json.loads(row[0])) if row else None

    def save_job_if(
        self,
        job: Job,
        state: JobState,
        heartbeat_at: Optional[datetime],
    ) -> bool:
        with self._transaction() as conn:
            current = self._read_job(conn, job.queue_name, job.id)
            if current is None or current.state != state or current.heartbeat_at != heartbeat_at:
                return False
            self._write_job(conn, job)
            return True

    def remove_job(self, queue_name: str, job_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE queue_name = ? AND id = ?",
                (queue_name, job_id),
            )
            return cursor.rowcount > 0

    def remove_job_if(
        self,
        queue_name: str,
        job_id: str,
        states: Iterable[JobState],
    ) -> Optional[Job]:
        with self._transaction() as conn:
            job = self._read_job(conn, queue_name, job_id)
            if job is None or job.state not in set(states):
                return None
            conn.execute(
                "DELETE FROM jobs WHERE queue_name = ? AND id = ?",
                (queue_name, job_id),
            )
            return job

    def list_jobs(
        self,
        queue_name: str,
        states: Optional[Iterable[JobState]] = None,
    ) -> List[Job]:
        if states is None:
            rows = self._query("SELECT data FROM jobs WHERE queue_name = ?", (queue_name,))
        else:
            values = [s.value for s in states]
            if not values:
                return []
            marks = ",".join("?" for _ in values)
            rows = self._query(
                f"SELECT data FROM jobs WHERE queue_name = ? AND state IN ({marks})",
                (queue_name, *values),
            )
        return [Job.from_dict(json.loads(row[0])) for row in rows]

    def _counts(self, conn: sqlite3.Connection, queue_name: str) -> Dict[JobState, int]:
        rows = conn.execute(
            "SELECT state, COUNT(*) FROM jobs WHERE queue_name = ? GROUP BY state",
            (queue_name,),
        ).fetchall()
        result = {state: 0 for state in JobState}
        for state, count in rows:
            result[JobState(state)] = count
        return result

    def counts(self, queue_name: str) -> Dict[JobState, int]:
        with self._lock:
            return self._counts(self._conn, queue_name)

    def snapshot(self, queue_name: str) -> Tuple[Dict[JobState, int], bool]:
        with self._transaction() as conn:
            paused = conn.execute(
                "SELECT 1 FROM paused WHERE queue_name = ?", (queue_name,)
            ).fetchone()
            return self._counts(conn, queue_name), paused is not None

    def claim_next(
        self,
        queue_name: str,
        now: datetime,
        max_active: int,
    ) -> Optional[Job]:
        with self._transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM paused WHERE queue_name = ?", (queue_name,)
            ).fetchone():
                return None
            active = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE queue_name = ? AND state = ?",
                (queue_name, JobState.ACTIVE.value),
            ).fetchone()[0]
            if active >= max_active:
                return None
            rows = conn.execute(
                "SELECT data FROM jobs WHERE queue_name = ? AND state IN (?, ?)",
                (queue_name, JobState.WAITING.value, JobState.DELAYED.value),
            ).fetchall()
            ready = claim_order((Job.from_dict(json.loads(r[0])) for r in rows), now)
            if not ready:
                return None
            job = ready[0]
            job.state = JobState.ACTIVE
            job.delay_until = None
            job.processed_at = now
            job.heartbeat_at = now
            self._write_job(conn, job)
            return job

    def _update_job(self, queue_name: str, job_id: str, changes: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT data FROM jobs WHERE queue_name = ? AND id = ?",
                (queue_name, job_id),
            ).fetchone()
            if row is None:
                return
            data = json.loads(row[0])
            for key, value in changes.items():
                if key == "logs":
                    data["logs"].append(value)
                else:
                    data[key] = value
            conn.execute(
                "UPDATE jobs SET data = ? WHERE queue_name = ? AND id = ?",
                (json.dumps(data), queue_name, job_id),
            )

    def append_log(self, queue_name: str, job_id: str, line: str, now: datetime) -> None:
        self._update_job(queue_name, job_id, {"logs": line, "heartbeat_at": now.isoformat()})

    def set_progress(self, queue_name: str, job_id: str, progress: int, now: datetime) -> None:
        self._update_job(
            queue_name, job_id, {"progress": progress, "heartbeat_at": now.isoformat()}
        )

    def heartbeat(self, queue_name: str, job_id: str, now: datetime) -> None:
        self._update_job(queue_name, job_id, {"heartbeat_at": now.isoformat()})

    def set_paused(self, queue_name: str, paused: bool) -> None:
        with self._transaction() as conn:
            if paused:
                conn.execute("INSERT OR IGNORE INTO paused (queue_name) VALUES (?)", (queue_name,))
            else:
                conn.execute("DELETE FROM paused WHERE queue_name = ?", (queue_name,))

    def is_paused(self, queue_name: str) -> bool:
        return bool(self._query("SELECT 1 FROM paused WHERE queue_name = ?", (queue_name,)))

    def upsert_recurring(self, definition: RecurringJob) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO recurring (key, queue_name, data) VALUES (?, ?, ?)",
                (definition.key, definition.queue_name, json.dumps(definition.to_dict())),
            )

    def get_recurring(self, queue_name: str, name: str) -> Optional[RecurringJob]:
        rows = self._query("SELECT data FROM recurring WHERE key = ?", (f"{queue_name}:{name}",))
        if rows:
            return RecurringJob.from_dict(json.loads(rows[0][0]))
        return None

    def list_recurring(self, queue_name: Optional[str] = None) -> List[RecurringJob]:
        if queue_name is None:
            rows = self._query("SELECT data FROM recurring ORDER BY key")
        else:
            rows = self._query(
                "SELECT data FROM recurring WHERE queue_name = ? ORDER BY key",
                (queue_name,),
            )
        return [RecurringJob.from_dict(json.loads(row[0])) for row in rows]

    def remove_recurring(self, queue_name: str, name: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM recurring WHERE key = ?", (f"{queue_name}:{name}",))
            return cursor.rowcount > 0

    def compare_and_set_recurring(
        self,
        definition: RecurringJob,
        expected_next_run: Optional[datetime],
    ) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT data FROM recurring WHERE key = ?", (definition.key,)
            ).fetchone()
            if row is None:
                return False
            if RecurringJob.from_dict(json.loads(row[0])).next_run != expected_next_run:
                return False
            conn.execute(
                "UPDATE recurring SET data = ? WHERE key = ?",
                (json.dumps(definition.to_dict()), definition.key),
            )
            return True

    def save_alert(self, alert_id: str, data: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO alerts (id, data) VALUES (?, ?)",
                (alert_id, json.dumps(data)),
            )

    def get_alert(self, alert_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query("SELECT data FROM alerts WHERE id = ?", (alert_id,))
        return json.loads(rows[0][0]) if rows else None

    def list_alerts(self) -> List[Dict[str, Any]]:
        return [json.loads(row[0]) for row in self._query("SELECT data FROM alerts")]

    def get_rule_trigger(self, rule_id: str) -> Optional[datetime]:
        rows = self._query("SELECT triggered_at FROM rule_triggers WHERE rule_id = ?", (rule_id,))
        return datetime.fromisoformat(rows[0][0]) if rows else None

    def compare_and_set_rule_trigger(
        self,
        rule_id: str,
        expected: Optional[datetime],
        value: datetime,
    ) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT triggered_at FROM rule_triggers WHERE rule_id = ?", (rule_id,)
            ).fetchone()
            current = datetime.fromisoformat(row[0]) if row else None
            if current != expected:
                return False
            conn.execute(
                "INSERT OR REPLACE INTO rule_triggers (rule_id, triggered_at) VALUES (?, ?)",
                (rule_id, value.isoformat()),
            )
            return True

    def ping(self) -> None:
        if self._conn is None:
            raise StoreUnavailableError("SQLite store is closed")
        try:
            self._query("SELECT 1")
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"SQLite store unavailable: {e}") from e

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None


__all__ = ["SQLBackend"]
