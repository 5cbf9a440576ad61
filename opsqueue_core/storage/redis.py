"""OpsQueue Redis Backend - Shared Redis Queue Store.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import redis

from opsqueue_core.errors import StoreUnavailableError
from opsqueue_core.queue.job import Job, JobState, RecurringJob
from opsqueue_core.storage.backend import StorageBackend, claim_order

logger = logging.getLogger(__name__)


class RedisBackend(StorageBackend):
    """Redis-based storage backend.

    Layout (all keys under `prefix`):
        {queue}:jobs      hash of job id -> job JSON
        {queue}:seq       job id counter
        {queue}:paused    present while the queue is paused
        recurring         hash of "queue:name" -> definition JSON
        alerts            hash of alert id -> alert JSON
        rule:{id}:last    last trigger time of an alert rule

    Read-modify-write operations use WATCH/MULTI transactions, which is
    what makes claims and cooldown stamps safe across engine instances.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        prefix: str = "opsqueue:",
        password: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.url = url
        self.host = host
        self.port = port
        self.db = db
        self.prefix = prefix
        self.password = password
        self._client = client

    def _connect(self) -> redis.Redis:
        """Lazy connect to Redis."""
        if self._client is None:
            if self.url:
                self._client = redis.Redis.from_url(self.url, decode_responses=True)
            else:
                self._client = redis.Redis(
                    host=self.host,
                    port=self.port,
                    db=self.db,
                    password=self.password,
                    decode_responses=True,
                )
        return self._client

    def _key(self, *parts: str) -> str:
        return self.prefix + ":".join(parts)

    def next_job_id(self, queue_name: str) -> str:
        return str(self._connect().incr(self._key(queue_name, "seq")))

    def add_job(self, job: Job) -> None:
        self._connect().hset(self._key(job.queue_name, "jobs"), job.id, json.dumps(job.to_dict()))

    def save_job(self, job: Job) -> None:
        self.add_job(job)

    def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        data = self._connect().hget(self._key(queue_name, "jobs"), job_id)
        if data:
            return Job.from_dict(json.loads(data))
        return None

    def save_job_if(
        self,
        job: Job,
        state: JobState,
        heartbeat_at: Optional[datetime],
    ) -> bool:
        jobs_key = self._key(job.queue_name, "jobs")

        def swap(pipe) -> bool:
            raw = pipe.hget(jobs_key, job.id)
            if raw is None:
                return False
            current = Job.from_dict(json.loads(raw))
            if current.state != state or current.heartbeat_at != heartbeat_at:
                return False
            pipe.multi()
            pipe.hset(jobs_key, job.id, json.dumps(job.to_dict()))
            return True

        return self._connect().transaction(swap, jobs_key, value_from_callable=True)

    def remove_job(self, queue_name: str, job_id: str) -> bool:
        return self._connect().hdel(self._key(queue_name, "jobs"), job_id) > 0

    def remove_job_if(
        self,
        queue_name: str,
        job_id: str,
        states: Iterable[JobState],
    ) -> Optional[Job]:
        jobs_key = self._key(queue_name, "jobs")
        wanted = set(states)

        def remove(pipe) -> Optional[Job]:
            raw = pipe.hget(jobs_key, job_id)
            if raw is None:
                return None
            job = Job.from_dict(json.loads(raw))
            if job.state not in wanted:
                return None
            pipe.multi()
            pipe.hdel(jobs_key, job_id)
            return job

        return self._connect().transaction(remove, jobs_key, value_from_callable=True)

    def list_jobs(
        self,
        queue_name: str,
        states: Optional[Iterable[JobState]] = None,
    ) -> List[Job]:
        wanted = set(states) if states is not None else None
        jobs = [
            Job.from_dict(json.loads(raw))
            for raw in self._connect().hvals(self._key(queue_name, "jobs"))
        ]
        return [j for j in jobs if wanted is None or j.state in wanted]

    def counts(self, queue_name: str) -> Dict[JobState, int]:
        # One HVALS is a single atomic read of every job in the queue.
        result = {state: 0 for state in JobState}
        for raw in self._connect().hvals(self._key(queue_name, "jobs")):
            result[JobState(json.loads(raw)["state"])] += 1
        return result

    def snapshot(self, queue_name: str) -> Tuple[Dict[JobState, int], bool]:
        pipe = self._connect().pipeline(transaction=True)
        pipe.hvals(self._key(queue_name, "jobs"))
        pipe.exists(self._key(queue_name, "paused"))
        values, paused = pipe.execute()

        result = {state: 0 for state in JobState}
        for raw in values:
            result[JobState(json.loads(raw)["state"])] += 1
        return result, bool(paused)

    def claim_next(
        self,
        queue_name: str,
        now: datetime,
        max_active: int,
    ) -> Optional[Job]:
        jobs_key = self._key(queue_name, "jobs")
        paused_key = self._key(queue_name, "paused")

        def claim(pipe) -> Optional[Job]:
            if pipe.exists(paused_key):
                return None
            jobs = [Job.from_dict(json.loads(raw)) for raw in pipe.hvals(jobs_key)]
            if sum(1 for j in jobs if j.state == JobState.ACTIVE) >= max_active:
                return None
            ready = claim_order(jobs, now)
            if not ready:
                return None
            job = ready[0]
            job.state = JobState.ACTIVE
            job.delay_until = None
            job.processed_at = now
            job.heartbeat_at = now
            pipe.multi()
            pipe.hset(jobs_key, job.id, json.dumps(job.to_dict()))
            return job

        return self._connect().transaction(claim, jobs_key, paused_key, value_from_callable=True)

    def _update_job(self, queue_name: str, job_id: str, changes: Dict[str, Any]) -> None:
        jobs_key = self._key(queue_name, "jobs")

        def update(pipe) -> None:
            raw = pipe.hget(jobs_key, job_id)
            if raw is None:
                return
            data = json.loads(raw)
            for key, value in changes.items():
                if key == "logs":
                    data["logs"].append(value)
                else:
                    data[key] = value
            pipe.multi()
            pipe.hset(jobs_key, job_id, json.dumps(data))

        self._connect().transaction(update, jobs_key)

    def append_log(self, queue_name: str, job_id: str, line: str, now: datetime) -> None:
        self._update_job(queue_name, job_id, {"logs": line, "heartbeat_at": now.isoformat()})

    def set_progress(self, queue_name: str, job_id: str, progress: int, now: datetime) -> None:
        self._update_job(
            queue_name, job_id, {"progress": progress, "heartbeat_at": now.isoformat()}
        )

    def heartbeat(self, queue_name: str, job_id: str, now: datetime) -> None:
        self._update_job(queue_name, job_id, {"heartbeat_at": now.isoformat()})

    def set_paused(self, queue_name: str, paused: bool) -> None:
        key = self._key(queue_name, "paused")
        if paused:
            self._connect().set(key, "1")
        else:
            self._connect().delete(key)

    def is_paused(self, queue_name: str) -> bool:
        return bool(self._connect().exists(self._key(queue_name, "paused")))

    def upsert_recurring(self, definition: RecurringJob) -> None:
        self._connect().hset(
            self._key("recurring"), definition.key, json.dumps(definition.to_dict())
        )

    def get_recurring(self, queue_name: str, name: str) -> Optional[RecurringJob]:
        data = self._connect().hget(self._key("recurring"), f"{queue_name}:{name}")
        return RecurringJob.from_dict(json.loads(data)) if data else None

    def list_recurring(self, queue_name: Optional[str] = None) -> List[RecurringJob]:
        definitions = [
            RecurringJob.from_dict(json.loads(raw))
            for raw in self._connect().hvals(self._key("recurring"))
        ]
        return [d for d in definitions if queue_name is None or d.queue_name == queue_name]

    def remove_recurring(self, queue_name: str, name: str) -> bool:
        return self._connect().hdel(self._key("recurring"), f"{queue_name}:{name}") > 0

    def compare_and_set_recurring(
        self,
        definition: RecurringJob,
        expected_next_run: Optional[datetime],
    ) -> bool:
        key = self._key("recurring")

        def swap(pipe) -> bool:
            raw = pipe.hget(key, definition.key)
            if raw is None:
                return False
            if RecurringJob.from_dict(json.loads(raw)).next_run != expected_next_run:
                return False
            pipe.multi()
            pipe.hset(key, definition.key, json.dumps(definition.to_dict()))
            return True

        return self._connect().transaction(swap, key, value_from_callable=True)

    def save_alert(self, alert_id: str, data: Dict[str, Any]) -> None:
        self._connect().hset(self._key("alerts"), alert_id, json.dumps(data))

    def get_alert(self, alert_id: str) -> Optional[Dict[str, Any]]:
        data = self._connect().hget(self._key("alerts"), alert_id)
        return json.loads(data) if data else None

    def list_alerts(self) -> List[Dict[str, Any]]:
        return [json.loads(raw) for raw in self._connect().hvals(self._key("alerts"))]

    def get_rule_trigger(self, rule_id: str) -> Optional[datetime]:
        data = self._connect().get(self._key("rule", rule_id, "last"))
        return datetime.fromisoformat(data) if data else None

    def compare_and_set_rule_trigger(
        self,
        rule_id: str,
        expected: Optional[datetime],
        value: datetime,
    ) -> bool:
        key = self._key("rule", rule_id, "last")

        def swap(pipe) -> bool:
            raw = pipe.get(key)
            current = datetime.fromisoformat(raw) if raw else None
            if current != expected:
                return False
            pipe.multi()
            pipe.set(key, value.isoformat())
            return True

        return self._connect().transaction(swap, key, value_from_callable=True)

    def ping(self) -> None:
        try:
            self._connect().ping()
        except redis.exceptions.RedisError as e:
            raise StoreUnavailableError(f"Redis store unavailable: {e}") from e

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


__all__ = ["RedisBackend"]
