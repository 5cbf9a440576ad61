"""OpsQueue Audit - Administrative Event Sink.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from opsqueue_core.queue.job import Job, JobOptions, JobPriority, JobState, QueueName

if TYPE_CHECKING:
    from opsqueue_core.storage.backend import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """A structured record of an administrative action."""

    action: str
    entity_type: str
    entity_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    actor: str = "system"
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "details": self.details,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditSink(ABC):
    """Anything that can record an audit event."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit events to the `opsqueue_core.audit` logger."""

    def record(self, event: AuditEvent) -> None:
        logger.info(
            f"audit {event.action} {event.entity_type}:{event.entity_id} "
            f"by {event.actor} {event.details}"
        )


class MemoryAuditSink(AuditSink):
    """Keeps events in a list."""

    def __init__(self):
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def actions(self) -> List[str]:
        with self._lock:
            return [e.action for e in self.events]


class QueueAuditSink(AuditSink):
    """Persists each event as a job on the audit queue.

    Writes straight to the store so that recording an event never emits
    another audit event.
    """

    def __init__(self, store: "StorageBackend", options: Optional[JobOptions] = None):
        self.store = store
        self.options = options or JobOptions(priority=JobPriority.LOW)

    def record(self, event: AuditEvent) -> None:
        queue_name = QueueName.AUDIT.value
        job = Job(
            id=self.store.next_job_id(queue_name),
            queue_name=queue_name,
            name=event.action,
            payload=event.to_dict(),
            priority=self.options.priority,
            state=JobState.WAITING,
            max_attempts=self.options.attempts,
            backoff=self.options.backoff,
            remove_on_complete=self.options.remove_on_complete,
            remove_on_fail=self.options.remove_on_fail,
            created_at=event.timestamp,
        )
        self.store.add_job(job)


__all__ = [
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "QueueAuditSink",
]
