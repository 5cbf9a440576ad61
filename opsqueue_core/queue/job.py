"""OpsQueue Job - Core Job Types.

This module defines the job record and the per-job policies (priority,
backoff, retention) shared by the queue manager, the store backends and
the workers.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class QueueName(Enum):
    """The closed set of queues the engine knows about."""

    PRICE_UPDATE = "price-update"
    SET_IMPORT = "set-import"
    DATA_VALIDATION = "data-validation"
    DATA_CLEANUP = "data-cleanup"
    FORMAT_ROTATION = "format-rotation"
    BACKUP = "backup"
    AUDIT = "audit"
    MAINTENANCE = "maintenance"

    @classmethod
    def parse(cls, value: Union["QueueName", str]) -> "QueueName":
        """Resolve a queue name, rejecting anything outside the enumeration."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown queue: {value!r}") from None


class JobPriority(IntEnum):
    """Job priority levels.

    Lower values are more urgent and are dequeued first.
    """

    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4

    @classmethod
    def parse(cls, value: Union["JobPriority", int, str]) -> "JobPriority":
        """Create priority from a name or number."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.upper()]
            except KeyError:
                raise ValueError(f"Unknown priority: {value!r}") from None
        return cls(int(value))


class JobState(Enum):
    """Job lifecycle states."""

    WAITING = "waiting"      # Ready to be picked up
    DELAYED = "delayed"      # Waiting for delay_until (initial delay or backoff)
    ACTIVE = "active"        # Claimed by a worker
    COMPLETED = "completed"  # Processor returned
    FAILED = "failed"        # Out of attempts


class BackoffType(Enum):
    """Delay strategies between attempts."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff between job attempts.

    Attributes:
        type: fixed or exponential
        delay_ms: Base delay in milliseconds
    """

    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 5000

    def __post_init__(self):
        if self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "delay": self.delay_ms}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackoffPolicy":
        return cls(
            type=BackoffType(data.get("type", BackoffType.EXPONENTIAL.value)),
            delay_ms=int(data.get("delay", 5000)),
        )


@dataclass(frozen=True)
class RemovalPolicy:
    """Retention of finished jobs: keep at most `count`, none older than `age_seconds`.

    Either bound may be None, meaning unbounded.
    """

    age_seconds: Optional[int] = None
    count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"age": self.age_seconds, "count": self.count}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RemovalPolicy":
        data = data or {}
        return cls(age_seconds=data.get("age"), count=data.get("count"))


@dataclass(frozen=True)
class JobOptions:
    """Per-job options applied at enqueue time.

    Attributes:
        priority: Dequeue priority
        attempts: Maximum number of attempts
        backoff: Backoff policy between attempts
        delay_ms: Initial delay before the job becomes waiting
        remove_on_complete: Retention for completed jobs
        remove_on_fail: Retention for failed jobs
    """

    priority: JobPriority = JobPriority.NORMAL
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    delay_ms: int = 0
    remove_on_complete: RemovalPolicy = field(
        default_factory=lambda: RemovalPolicy(age_seconds=3600, count=100)
    )
    remove_on_fail: RemovalPolicy = field(
        default_factory=lambda: RemovalPolicy(age_seconds=86400, count=500)
    )

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "JobOptions":
        """Return a copy with metadata overrides applied.

        Recognized keys: priority, delay, attempts, backoff.
        """
        if not overrides:
            return self
        changes: Dict[str, Any] = {}
        if overrides.get("priority") is not None:
            changes["priority"] = JobPriority.parse(overrides["priority"])
        if overrides.get("delay") is not None:
            changes["delay_ms"] = int(overrides["delay"])
        if overrides.get("attempts") is not None:
            changes["attempts"] = int(overrides["attempts"])
        backoff = overrides.get("backoff")
        if isinstance(backoff, BackoffPolicy):
            changes["backoff"] = backoff
        elif isinstance(backoff, dict):
            changes["backoff"] = BackoffPolicy.from_dict(backoff)
        return replace(self, **changes)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Job:
    """A queued unit of work.

    Identity is (queue_name, id). The id is allocated by the store and
    increases monotonically per queue.

    Attributes:
        id: Job identifier
        queue_name: Owning queue
        name: Job name (processor-specific)
        payload: Job data including the `_metadata` envelope
        priority: Dequeue priority
        state: Lifecycle state
        attempts_made: Failed or stalled executions so far
        max_attempts: Bound on attempts_made
        backoff: Delay policy between attempts
        remove_on_complete: Retention once completed
        remove_on_fail: Retention once failed
        progress: 0-100
        logs: Lines appended by the processor
        return_value: Processor result on success
        failed_reason: Last error message
        repeat_key: Recurring definition this job came from
    """

    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_on_complete: RemovalPolicy = field(default_factory=RemovalPolicy)
    remove_on_fail: RemovalPolicy = field(default_factory=RemovalPolicy)
    progress: int = 0
    logs: List[str] = field(default_factory=list)
    return_value: Any = None
    failed_reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    delay_until: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    repeat_key: Optional[str] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        """The `_metadata` envelope stamped at enqueue."""
        return self.payload.get("_metadata", {})

    def sort_key(self) -> Tuple[int, int, datetime]:
        """Dequeue order: priority, then enqueue sequence."""
        seq = int(self.id) if self.id.isdigit() else 0
        return (int(self.priority), seq, self.created_at)

    def is_ready(self, now: datetime) -> bool:
        """Check if a delayed job may be promoted to waiting."""
        if self.state != JobState.DELAYED:
            return self.state == JobState.WAITING
        return self.delay_until is None or now >= self.delay_until

    def can_retry(self) -> bool:
        """Check if another automatic attempt is allowed."""
        return self.attempts_made < self.max_attempts

    def is_finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize job to dictionary."""
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "name": self.name,
            "payload": self.payload,
            "priority": int(self.priority),
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "backoff": self.backoff.to_dict(),
            "remove_on_complete": self.remove_on_complete.to_dict(),
            "remove_on_fail": self.remove_on_fail.to_dict(),
            "progress": self.progress,
            "logs": list(self.logs),
            "return_value": self.return_value,
            "failed_reason": self.failed_reason,
            "created_at": self.created_at.isoformat(),
            "processed_at": _iso(self.processed_at),
            "finished_at": _iso(self.finished_at),
            "delay_until": _iso(self.delay_until),
            "heartbeat_at": _iso(self.heartbeat_at),
            "repeat_key": self.repeat_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Deserialize job from dictionary."""
        return cls(
            id=str(data["id"]),
            queue_name=data["queue_name"],
            name=data["name"],
            payload=data.get("payload") or {},
            priority=JobPriority(data.get("priority", JobPriority.NORMAL)),
            state=JobState(data.get("state", JobState.WAITING.value)),
            attempts_made=data.get("attempts_made", 0),
            max_attempts=data.get("max_attempts", 3),
            backoff=BackoffPolicy.from_dict(data.get("backoff") or {}),
            remove_on_complete=RemovalPolicy.from_dict(data.get("remove_on_complete")),
            remove_on_fail=RemovalPolicy.from_dict(data.get("remove_on_fail")),
            progress=data.get("progress", 0),
            logs=list(data.get("logs") or []),
            return_value=data.get("return_value"),
            failed_reason=data.get("failed_reason"),
            created_at=_parse_iso(data.get("created_at")) or datetime.now(),
            processed_at=_parse_iso(data.get("processed_at")),
            finished_at=_parse_iso(data.get("finished_at")),
            delay_until=_parse_iso(data.get("delay_until")),
            heartbeat_at=_parse_iso(data.get("heartbeat_at")),
            repeat_key=data.get("repeat_key"),
        )

    def status(self) -> Dict[str, Any]:
        """Operator-facing status view."""
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "progress": self.progress,
            "attemptsMade": self.attempts_made,
            "failedReason": self.failed_reason,
            "returnValue": self.return_value,
            "logs": list(self.logs),
            "createdAt": self.created_at.isoformat(),
            "processedAt": _iso(self.processed_at),
            "finishedAt": _iso(self.finished_at),
        }

    def __repr__(self) -> str:
        return (
            f"Job(queue={self.queue_name!r}, id={self.id!r}, "
            f"state={self.state.value}, attempts={self.attempts_made}/{self.max_attempts})"
        )


@dataclass
class RecurringJob:
    """A repeating job definition, keyed by (queue_name, name).

    Attributes:
        queue_name: Target queue
        name: Definition name, unique per queue
        payload: Payload copied into each materialized job
        cron: Cron expression
        metadata: Enqueue metadata for each occurrence
        enabled: Disabled definitions are not materialized
        next_run: Next due time
        last_run: Last materialization time
        window: Optional maintenance window restricting occurrences
    """

    queue_name: str
    name: str
    payload: Dict[str, Any]
    cron: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    window: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        return f"{self.queue_name}:{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_name": self.queue_name,
            "name": self.name,
            "payload": self.payload,
            "cron": self.cron,
            "metadata": self.metadata,
            "enabled": self.enabled,
            "next_run": _iso(self.next_run),
            "last_run": _iso(self.last_run),
            "window": self.window,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurringJob":
        return cls(
            queue_name=data["queue_name"],
            name=data["name"],
            payload=data.get("payload") or {},
            cron=data["cron"],
            metadata=data.get("metadata") or {},
            enabled=data.get("enabled", True),
            next_run=_parse_iso(data.get("next_run")),
            last_run=_parse_iso(data.get("last_run")),
            window=data.get("window"),
        )


__all__ = [
    "QueueName",
    "JobPriority",
    "JobState",
    "BackoffType",
    "BackoffPolicy",
    "RemovalPolicy",
    "JobOptions",
    "Job",
    "RecurringJob",
]
