"""OpsQueue Memory Backend - In-Memory Queue Store.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from opsqueue_core.queue.job import Job, JobState, RecurringJob
from opsqueue_core.storage.backend import StorageBackend, claim_order


class MemoryBackend(StorageBackend):
    """In-memory storage backend.

    Records are kept serialized so callers never share mutable state with
    the store. Only safe within a single process.
    """

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._sequences: Dict[str, itertools.count] = defaultdict(lambda: itertools.count(1))
        self._paused: set = set()
        self._recurring: Dict[str, Dict[str, Any]] = {}
        self._alerts: Dict[str, Dict[str, Any]] = {}
        self._triggers: Dict[str, datetime] = {}
        self._lock = threading.RLock()

    def next_job_id(self, queue_name: str) -> str:
        with self._lock:
            return str(next(self._sequences[queue_name]))

    def add_job(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.queue_name][job.id] = job.to_dict()

    def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        with self._lock:
            data = self._jobs[queue_name].get(job_id)
            return Job.from_dict(copy.deepcopy(data)) if data else None

    def save_job(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.queue_name][job.id] = job.to_dict()

    def save_job_if(
        self,
        job: Job,
        state: JobState,
        heartbeat_at: Optional[datetime],
    ) -> bool:
        with self._lock:
            data = self._jobs[job.queue_name].get(job.id)
            if data is None:
                return False
            current = Job.from_dict(copy.deepcopy(data))
            if current.state != state or current.heartbeat_at != heartbeat_at:
                return False
            self._jobs[job.queue_name][job.id] = job.to_dict()
            return True

    def remove_job(self, queue_name: str, job_id: str) -> bool:
        with self._lock:
            return self._jobs[queue_name].pop(job_id, None) is not None

    def remove_job_if(
        self,
        queue_name: str,
        job_id: str,
        states: Iterable[JobState],
    ) -> Optional[Job]:
        wanted = {s.value for s in states}
        with self._lock:
            data = self._jobs[queue_name].get(job_id)
            if data is None or data["state"] not in wanted:
                return None
            return Job.from_dict(self._jobs[queue_name].pop(job_id))

    def list_jobs(
        self,
        queue_name: str,
        states: Optional[Iterable[JobState]] = None,
    ) -> List[Job]:
        wanted = {s.value for s in states} if states is not None else None
        with self._lock:
            return [
                Job.from_dict(copy.deepcopy(data))
                for data in self._jobs[queue_name].values()
                if wanted is None or data["state"] in wanted
            ]

    def counts(self, queue_name: str) -> Dict[JobState, int]:
        with self._lock:
            result = {state: 0 for state in JobState}
            for data in self._jobs[queue_name].values():
                result[JobState(data["state"])] += 1
            return result

    def snapshot(self, queue_name: str) -> Tuple[Dict[JobState, int], bool]:
        with self._lock:
            return self.counts(queue_name), queue_name in self._paused

    def claim_next(
        self,
        queue_name: str,
        now: datetime,
        max_active: int,
    ) -> Optional[Job]:
        with self._lock:
            if queue_name in self._paused:
                return None
            jobs = [Job.from_dict(copy.deepcopy(d)) for d in self._jobs[queue_name].values()]
            active = sum(1 for j in jobs if j.state == JobState.ACTIVE)
            if active >= max_active:
                return None
            ready = claim_order(jobs, now)
            if not ready:
                return None
            job = ready[0]
            job.state = JobState.ACTIVE
            job.delay_until = None
            job.processed_at = now
            job.heartbeat_at = now
            self._jobs[queue_name][job.id] = job.to_dict()
            return job

    def append_log(self, queue_name: str, job_id: str, line: str, now: datetime) -> None:
        with self._lock:
            data = self._jobs[queue_name].get(job_id)
            if data is not None:
                data["logs"].append(line)
                data["heartbeat_at"] = now.isoformat()

    def set_progress(self, queue_name: str, job_id: str, progress: int, now: datetime) -> None:
        with self._lock:
            data = self._jobs[queue_name].get(job_id)
            if data is not None:
                data["progress"] = progress
                data["heartbeat_at"] = now.isoformat()

    def heartbeat(self, queue_name: str, job_id: str, now: datetime) -> None:
        with self._lock:
            data = self._jobs[queue_name].get(job_id)
            if data is not None:
                data["heartbeat_at"] = now.isoformat()

    def set_paused(self, queue_name: str, paused: bool) -> None:
        with self._lock:
            if paused:
                self._paused.add(queue_name)
            else:
                self._paused.discard(queue_name)

    def is_paused(self, queue_name: str) -> bool:
        with self._lock:
            return queue_name in self._paused

    def upsert_recurring(self, definition: RecurringJob) -> None:
        with self._lock:
            self._recurring[definition.key] = definition.to_dict()

    def get_recurring(self, queue_name: str, name: str) -> Optional[RecurringJob]:
        with self._lock:
            data = self._recurring.get(f"{queue_name}:{name}")
            return RecurringJob.from_dict(copy.deepcopy(data)) if data else None

    def list_recurring(self, queue_name: Optional[str] = None) -> List[RecurringJob]:
        with self._lock:
            return [
                RecurringJob.from_dict(copy.deepcopy(data))
                for data in self._recurring.values()
                if queue_name is None or data["queue_name"] == queue_name
            ]

    def remove_recurring(self, queue_name: str, name: str) -> bool:
        with self._lock:
            return self._recurring.pop(f"{queue_name}:{name}", None) is not None

    def compare_and_set_recurring(
        self,
        definition: RecurringJob,
        expected_next_run: Optional[datetime],
    ) -> bool:
        with self._lock:
            data = self._recurring.get(definition.key)
            if data is None:
                return False
            if RecurringJob.from_dict(copy.deepcopy(data)).next_run != expected_next_run:
                return False
            self._recurring[definition.key] = definition.to_dict()
            return True

    def save_alert(self, alert_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._alerts[alert_id] = copy.deepcopy(data)

    def get_alert(self, alert_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._alerts.get(alert_id)
            return copy.deepcopy(data) if data else None

    def list_alerts(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(data) for data in self._alerts.values()]

    def get_rule_trigger(self, rule_id: str) -> Optional[datetime]:
        with self._lock:
            return self._triggers.get(rule_id)

    def compare_and_set_rule_trigger(
        self,
        rule_id: str,
        expected: Optional[datetime],
        value: datetime,
    ) -> bool:
        with self._lock:
            if self._triggers.get(rule_id) != expected:
                return False
            self._triggers[rule_id] = value
            return True


__all__ = ["MemoryBackend"]
