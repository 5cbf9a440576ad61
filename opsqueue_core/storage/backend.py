"""OpsQueue Storage Backend - Abstract Queue Store Interface.

The store is the single shared state of the engine: job records per
queue, the paused flag, recurring definitions, persisted alerts and the
per-rule cooldown stamps. Anything that must hold across several engine
instances (single-flight claims, cooldown) is implemented here as an
atomic operation.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from opsqueue_core.queue.job import Job, JobState, RecurringJob, RemovalPolicy

logger = logging.getLogger(__name__)


def claim_order(jobs: Iterable[Job], now: datetime) -> List[Job]:
    """Jobs eligible for pickup, most urgent first."""
    ready = [j for j in jobs if j.is_ready(now)]
    ready.sort(key=Job.sort_key)
    return ready


class StorageBackend(ABC):
    """Abstract queue store."""

    # Jobs

    @abstractmethod
    def next_job_id(self, queue_name: str) -> str:
        """Allocate the next job id for a queue."""
        pass

    @abstractmethod
    def add_job(self, job: Job) -> None:
        """Persist a new job."""
        pass

    @abstractmethod
    def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        """Retrieve a job by ID."""
        pass

    @abstractmethod
    def save_job(self, job: Job) -> None:
        """Overwrite an existing job record."""
        pass

    @abstractmethod
    def save_job_if(
        self,
        job: Job,
        state: JobState,
        heartbeat_at: Optional[datetime],
    ) -> bool:
        """Overwrite a job only if its stored state and heartbeat are unchanged.

        Returns False, writing nothing, when the job is gone or has moved on.
        """
        pass

    @abstractmethod
    def remove_job(self, queue_name: str, job_id: str) -> bool:
        """Delete a job."""
        pass

    @abstractmethod
    def remove_job_if(
        self,
        queue_name: str,
        job_id: str,
        states: Iterable[JobState],
    ) -> Optional[Job]:
        """Delete a job only if it is in one of `states`.

        Returns:
            The removed job, or None if it is missing or in another state
        """
        pass

    @abstractmethod
    def list_jobs(
        self,
        queue_name: str,
        states: Optional[Iterable[JobState]] = None,
    ) -> List[Job]:
        """List jobs in a queue, optionally filtered by state."""
        pass

    @abstractmethod
    def counts(self, queue_name: str) -> Dict[JobState, int]:
        """Count jobs per state, read in a single atomic step."""
        pass

    @abstractmethod
    def snapshot(self, queue_name: str) -> Tuple[Dict[JobState, int], bool]:
        """Job counts per state and the paused flag, read together."""
        pass

    @abstractmethod
    def claim_next(
        self,
        queue_name: str,
        now: datetime,
        max_active: int,
    ) -> Optional[Job]:
        """Atomically move the next ready job to ACTIVE.

        Returns None when the queue is paused, when `max_active` jobs of
        the queue are already active, or when nothing is ready. Delayed
        jobs whose delay has elapsed count as ready.
        """
        pass

    @abstractmethod
    def append_log(self, queue_name: str, job_id: str, line: str, now: datetime) -> None:
        """Append a log line and refresh the heartbeat."""
        pass

    @abstractmethod
    def set_progress(self, queue_name: str, job_id: str, progress: int, now: datetime) -> None:
        """Record progress and refresh the heartbeat."""
        pass

    @abstractmethod
    def heartbeat(self, queue_name: str, job_id: str, now: datetime) -> None:
        """Mark an active job as still being worked on."""
        pass

    # Queue flags

    @abstractmethod
    def set_paused(self, queue_name: str, paused: bool) -> None:
        pass

    @abstractmethod
    def is_paused(self, queue_name: str) -> bool:
        pass

    # Recurring definitions

    @abstractmethod
    def upsert_recurring(self, definition: RecurringJob) -> None:
        """Insert or replace the definition keyed by (queue, name)."""
        pass

    @abstractmethod
    def get_recurring(self, queue_name: str, name: str) -> Optional[RecurringJob]:
        pass

    @abstractmethod
    def list_recurring(self, queue_name: Optional[str] = None) -> List[RecurringJob]:
        pass

    @abstractmethod
    def remove_recurring(self, queue_name: str, name: str) -> bool:
        pass

    @abstractmethod
    def compare_and_set_recurring(
        self,
        definition: RecurringJob,
        expected_next_run: Optional[datetime],
    ) -> bool:
        """Replace a definition only if its stored next_run is still `expected_next_run`.

        The scheduler uses this to claim an occurrence, so each one is
        materialized by at most one engine sharing the store. A removed
        definition is never recreated.
        """
        pass

    # Alerts

    @abstractmethod
    def save_alert(self, alert_id: str, data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_alerts(self) -> List[Dict[str, Any]]:
        pass

    # Rule cooldown

    @abstractmethod
    def get_rule_trigger(self, rule_id: str) -> Optional[datetime]:
        """Last time the rule fired, if ever."""
        pass

    @abstractmethod
    def compare_and_set_rule_trigger(
        self,
        rule_id: str,
        expected: Optional[datetime],
        value: datetime,
    ) -> bool:
        """Stamp the rule only if its current value is still `expected`."""
        pass

    # Lifecycle

    def ping(self) -> None:
        """Raise StoreUnavailableError if the store cannot be reached."""
        pass

    def close(self) -> None:
        """Close the backend connection."""
        pass

    # Derived operations

    def trim_finished(
        self,
        queue_name: str,
        state: JobState,
        policy: RemovalPolicy,
        now: datetime,
    ) -> int:
        """Purge finished jobs beyond the retention policy.

        Returns the number of jobs removed.
        """
        if policy.age_seconds is None and policy.count is None:
            return 0

        finished = self.list_jobs(queue_name, [state])
        finished.sort(key=lambda j: j.finished_at or j.created_at, reverse=True)

        doomed = []
        for index, job in enumerate(finished):
            if policy.count is not None and index >= policy.count:
                doomed.append(job)
                continue
            if policy.age_seconds is not None:
                cutoff = now - timedelta(seconds=policy.age_seconds)
                if (job.finished_at or job.created_at) < cutoff:
                    doomed.append(job)

        removed = sum(1 for job in doomed if self.remove_job(queue_name, job.id))
        if removed:
            logger.debug(f"Trimmed {removed} {state.value} jobs from {queue_name}")
        return removed


__all__ = ["StorageBackend", "claim_order"]
