"""OpsQueue Manager - Administrative Queue Façade.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from opsqueue_core.audit import AuditEvent, AuditSink, LoggingAuditSink
from opsqueue_core.errors import InvalidStateError, NotFoundError
from opsqueue_core.queue.job import (
    Job,
    JobOptions,
    JobState,
    QueueName,
    RecurringJob,
)
from opsqueue_core.scheduler.cron import CronParser

if TYPE_CHECKING:
    from opsqueue_core.storage.backend import StorageBackend

logger = logging.getLogger(__name__)

SCHEDULED_BY = ("system", "user", "admin")

# Keys of `metadata` that shape job options rather than the envelope.
OPTION_KEYS = ("priority", "delay", "attempts", "backoff")

# Jobs no worker has claimed yet.
CANCELLABLE_STATES = (JobState.WAITING, JobState.DELAYED)

QueueRef = Union[QueueName, str]
PayloadDecoder = Callable[[Dict[str, Any]], Any]


@dataclass
class QueueStats:
    """Point-in-time job counts for one queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused,
        }


class QueueManager:
    """Administrative operations over the queue store.

    Every queue argument accepts a QueueName or its string value; names
    outside the enumeration raise ValueError.

    Args:
        store: Queue store
        audit: Sink for administrative events
        default_options: Job options applied before metadata overrides
        payload_decoders: Per-queue payload decoders. A decoder raises
            ValueError on bad input and returns an object with
            `to_payload()`, whose result is what gets persisted.
        clock: Source of the current time
    """

    def __init__(
        self,
        store: "StorageBackend",
        audit: Optional[AuditSink] = None,
        default_options: Optional[JobOptions] = None,
        payload_decoders: Optional[Dict[QueueName, PayloadDecoder]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.audit = audit or LoggingAuditSink()
        self.default_options = default_options or JobOptions()
        self.payload_decoders = dict(payload_decoders or {})
        self.clock = clock

    def _audit(
        self,
        action: str,
        queue: QueueName,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None,
        actor: str = "system",
        entity_type: str = "job",
    ) -> None:
        self.audit.record(AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details={"queue": queue.value, **(details or {})},
            actor=actor,
            timestamp=self.clock(),
        ))

    def _decode(self, queue: QueueName, payload: Any) -> Dict[str, Any]:
        if payload is None:
            raise ValueError("payload is required")
        if not isinstance(payload, dict):
            raise ValueError(f"payload must be a mapping, got {type(payload).__name__}")
        decoder = self.payload_decoders.get(queue)
        if decoder is None:
            return dict(payload)
        return decoder(payload).to_payload()

    def _envelope(
        self,
        metadata: Dict[str, Any],
        options: JobOptions,
        now: datetime,
    ) -> Dict[str, Any]:
        scheduled_by = metadata.get("scheduledBy", "system")
        if scheduled_by not in SCHEDULED_BY:
            raise ValueError(f"scheduledBy must be one of {SCHEDULED_BY}, got {scheduled_by!r}")

        envelope = {
            key: value for key, value in metadata.items() if key not in OPTION_KEYS
        }
        envelope.update({
            "scheduledBy": scheduled_by,
            "scheduledAt": now.isoformat(),
            "priority": int(options.priority),
        })
        return envelope

    def enqueue(
        self,
        queue: QueueRef,
        name: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> str:
        """Persist a new job and return its id.

        Args:
            queue: Target queue
            name: Job name
            payload: Job data, decoded by the queue's payload decoder
            metadata: Envelope fields plus priority/delay/attempts/backoff overrides
            options: Base options instead of the manager defaults

        Returns:
            Job ID
        """
        queue = QueueName.parse(queue)
        metadata = dict(metadata or {})
        data = self._decode(queue, payload)
        job_options = (options or self.default_options).merged(metadata)
        now = self.clock()

        data["_metadata"] = self._envelope(metadata, job_options, now)
        job = self._build_job(queue, name, data, job_options, now)
        self.store.add_job(job)

        logger.info(
            f"Enqueued {queue.value}/{name} as job {job.id} "
            f"(priority={job.priority.name}, state={job.state.value})"
        )
        return job.id

    def _build_job(
        self,
        queue: QueueName,
        name: str,
        payload: Dict[str, Any],
        options: JobOptions,
        now: datetime,
        repeat_key: Optional[str] = None,
    ) -> Job:
        delayed = options.delay_ms > 0
        return Job(
            id=self.store.next_job_id(queue.value),
            queue_name=queue.value,
            name=name,
            payload=payload,
            priority=options.priority,
            state=JobState.DELAYED if delayed else JobState.WAITING,
            max_attempts=options.attempts,
            backoff=options.backoff,
            remove_on_complete=options.remove_on_complete,
            remove_on_fail=options.remove_on_fail,
            created_at=now,
            delay_until=now + timedelta(milliseconds=options.delay_ms) if delayed else None,
            repeat_key=repeat_key,
        )

    def schedule_recurring(
        self,
        queue: QueueRef,
        name: str,
        payload: Dict[str, Any],
        cron: str,
        metadata: Optional[Dict[str, Any]] = None,
        window: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
    ) -> RecurringJob:
        """Register (or replace) the repeating definition keyed by (queue, name)."""
        queue = QueueName.parse(queue)
        data = self._decode(queue, payload)
        next_run = CronParser(cron).next_run(self.clock())

        existing = self.store.get_recurring(queue.value, name)
        definition = RecurringJob(
            queue_name=queue.value,
            name=name,
            payload=data,
            cron=cron,
            metadata=dict(metadata or {}),
            enabled=enabled,
            next_run=next_run,
            last_run=existing.last_run if existing else None,
            window=window,
        )
        self.store.upsert_recurring(definition)

        self._audit(
            "queue.schedule_recurring",
            queue,
            definition.key,
            {"cron": cron, "replaced": existing is not None},
            entity_type="schedule",
        )
        logger.info(f"Scheduled {definition.key} with {cron!r}, next run {next_run}")
        return definition

    def materialize(self, definition: RecurringJob, scheduled_by: str = "system") -> str:
        """Enqueue one occurrence of a recurring definition."""
        queue = QueueName.parse(definition.queue_name)
        metadata = dict(definition.metadata)
        metadata.setdefault("recurring", True)
        metadata["scheduledBy"] = scheduled_by
        job_options = self.default_options.merged(metadata)
        now = self.clock()

        data = dict(definition.payload)
        data["_metadata"] = self._envelope(metadata, job_options, now)
        job = self._build_job(
            queue, definition.name, data, job_options, now, repeat_key=definition.key
        )
        self.store.add_job(job)
        logger.debug(f"Materialized {definition.key} as job {job.id}")
        return job.id

    def list_recurring(self, queue: Optional[QueueRef] = None) -> List[RecurringJob]:
        name = QueueName.parse(queue).value if queue is not None else None
        return self.store.list_recurring(name)

    def remove_recurring(self, queue: QueueRef, name: str) -> None:
        queue = QueueName.parse(queue)
        if not self.store.remove_recurring(queue.value, name):
            raise NotFoundError("recurring job", f"{queue.value}:{name}")
        self._audit(
            "queue.remove_recurring", queue, f"{queue.value}:{name}", entity_type="schedule"
        )

    def get_job(self, queue: QueueRef, job_id: str) -> Job:
        queue = QueueName.parse(queue)
        job = self.store.get_job(queue.value, job_id)
        if job is None:
            raise NotFoundError("job", f"{queue.value}/{job_id}")
        return job

    def get_job_status(self, queue: QueueRef, job_id: str) -> Dict[str, Any]:
        return self.get_job(queue, job_id).status()

    def cancel(
        self,
        queue: QueueRef,
        job_id: str,
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> None:
        """Remove a job that has not started.

        The state check and the removal are one store operation, so a job
        claimed by a worker in the meantime is never reported cancelled.

        Raises:
            NotFoundError: The job no longer exists
            InvalidStateError: The job is being processed or has finished
        """
        queue = QueueName.parse(queue)
        job = self.store.remove_job_if(queue.value, job_id, CANCELLABLE_STATES)
        if job is None:
            current = self.get_job(queue, job_id)
            raise InvalidStateError(
                f"Job {queue.value}/{job_id} is {current.state.value} and cannot be cancelled"
            )

        self._audit(
            "job.cancelled",
            queue,
            job_id,
            {"reason": reason, "state": job.state.value},
            actor,
        )
        logger.info(f"Cancelled job {queue.value}/{job_id}: {reason or 'no reason given'}")

    def retry(self, queue: QueueRef, job_id: str, actor: str = "system") -> Job:
        """Move a failed job back to waiting.

        attempts_made is kept, so the job only gets what is left of its
        attempt budget (one more execution if it was exhausted).

        Raises:
            NotFoundError: The job no longer exists
            InvalidStateError: The job is not failed
        """
        queue = QueueName.parse(queue)
        job = self.get_job(queue, job_id)
        if job.state != JobState.FAILED:
            raise InvalidStateError(
                f"Only failed jobs can be retried; {queue.value}/{job_id} is {job.state.value}"
            )

        job.state = JobState.WAITING
        job.failed_reason = None
        job.finished_at = None
        job.progress = 0
        self.store.save_job(job)

        self._audit("job.retried", queue, job_id, {"attemptsMade": job.attempts_made}, actor)
        logger.info(f"Retrying job {queue.value}/{job_id} after {job.attempts_made} attempts")
        return job

    def pause(self, queue: QueueRef, actor: str = "system") -> None:
        queue = QueueName.parse(queue)
        self.store.set_paused(queue.value, True)
        self._audit("queue.paused", queue, queue.value, actor=actor, entity_type="queue")
        logger.info(f"Paused queue {queue.value}")

    def resume(self, queue: QueueRef, actor: str = "system") -> None:
        queue = QueueName.parse(queue)
        self.store.set_paused(queue.value, False)
        self._audit("queue.resumed", queue, queue.value, actor=actor, entity_type="queue")
        logger.info(f"Resumed queue {queue.value}")

    def is_paused(self, queue: QueueRef) -> bool:
        return self.store.is_paused(QueueName.parse(queue).value)

    def stats(self, queue: QueueRef) -> QueueStats:
        """Snapshot of job counts for a queue."""
        queue = QueueName.parse(queue)
        counts, paused = self.store.snapshot(queue.value)
        return QueueStats(
            waiting=counts[JobState.WAITING],
            active=counts[JobState.ACTIVE],
            completed=counts[JobState.COMPLETED],
            failed=counts[JobState.FAILED],
            delayed=counts[JobState.DELAYED],
            paused=paused,
        )

    def all_stats(self) -> Dict[str, QueueStats]:
        return {queue.value: self.stats(queue) for queue in QueueName}

    def clean(
        self,
        queue: QueueRef,
        grace_seconds: int = 0,
        limit: int = 1000,
        state: JobState = JobState.COMPLETED,
        actor: str = "system",
    ) -> List[str]:
        """Remove finished jobs that finished more than `grace_seconds` ago.

        Returns:
            IDs of removed jobs
        """
        queue = QueueName.parse(queue)
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError("clean only applies to completed or failed jobs")

        cutoff = self.clock() - timedelta(seconds=grace_seconds)
        candidates = [
            job for job in self.store.list_jobs(queue.value, [state])
            if (job.finished_at or job.created_at) <= cutoff
        ]
        candidates.sort(key=lambda j: j.finished_at or j.created_at)

        removed = [
            job.id for job in candidates[:limit]
            if self.store.remove_job(queue.value, job.id)
        ]
        self._audit(
            "queue.cleaned",
            queue,
            queue.value,
            {"state": state.value, "grace": grace_seconds, "removed": len(removed)},
            actor,
            entity_type="queue",
        )
        logger.info(f"Cleaned {len(removed)} {state.value} jobs from {queue.value}")
        return removed

    def drain(self, queue: QueueRef, include_delayed: bool = False, actor: str = "system") -> int:
        """Remove every waiting (and optionally delayed) job.

        Returns:
            Number of removed jobs
        """
        queue = QueueName.parse(queue)
        states = [JobState.WAITING]
        if include_delayed:
            states.append(JobState.DELAYED)

        removed = sum(
            1 for job in self.store.list_jobs(queue.value, states)
            if self.store.remove_job(queue.value, job.id)
        )
        self._audit(
            "queue.drained",
            queue,
            queue.value,
            {"includeDelayed": include_delayed, "removed": removed},
            actor,
            entity_type="queue",
        )
        logger.info(f"Drained {removed} jobs from {queue.value}")
        return removed


__all__ = ["QueueManager", "QueueStats"]
