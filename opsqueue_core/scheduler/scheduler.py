"""OpsQueue Scheduler - Recurring Job Materialization.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from opsqueue_core.audit import AuditEvent
from opsqueue_core.errors import NotFoundError
from opsqueue_core.queue.job import QueueName, RecurringJob
from opsqueue_core.scheduler.cron import CronParser

if TYPE_CHECKING:
    from opsqueue_core.queue.manager import QueueManager, QueueRef

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Scheduler configuration."""

    name: str = "scheduler"
    check_interval_ms: int = 1000


@dataclass(frozen=True)
class MaintenanceWindow:
    """Times of day (and weekdays, 0 = Sunday) when a job may run.

    A window whose end is before its start wraps past midnight.
    """

    start: str = "00:00"
    end: str = "23:59"
    days: Tuple[int, ...] = (0, 1, 2, 3, 4, 5, 6)

    def __post_init__(self):
        self._parse(self.start)
        self._parse(self.end)
        if any(d < 0 or d > 6 for d in self.days):
            raise ValueError("window days must be 0-6 (0 = Sunday)")

    @staticmethod
    def _parse(value: str) -> time:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))

    def contains(self, dt: datetime) -> bool:
        if (dt.weekday() + 1) % 7 not in self.days:
            return False
        start, end, now = self._parse(self.start), self._parse(self.end), dt.time()
        if start <= end:
            return start <= now <= end
        return now >= start or now <= end

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "days": list(self.days)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MaintenanceWindow":
        return cls(
            start=data.get("start", "00:00"),
            end=data.get("end", "23:59"),
            days=tuple(data.get("days", range(7))),
        )


class Scheduler:
    """Turns recurring definitions held by the store into jobs.

    Each `tick` enqueues one job per due, enabled definition and moves
    its next run to the following cron match. Missed occurrences are not
    replayed. Occurrences outside a definition's maintenance window are
    skipped.
    """

    def __init__(
        self,
        manager: "QueueManager",
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.manager = manager
        self.config = config or SchedulerConfig()
        self.clock = clock

        self._lock = threading.RLock()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._materialized = 0
        self._skipped = 0

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Materialize every due definition.

        Each occurrence is claimed by advancing next_run with a
        compare-and-set before anything is enqueued, so engines sharing a
        store enqueue it at most once between them.

        Returns:
            IDs of enqueued jobs
        """
        now = now or self.clock()
        job_ids = []

        with self._lock:
            for definition in self.manager.list_recurring():
                if not definition.enabled:
                    continue
                due_at = definition.next_run
                if due_at is None:
                    definition.next_run = CronParser(definition.cron).next_run(now)
                    self.manager.store.compare_and_set_recurring(definition, None)
                    continue
                if now < due_at:
                    continue

                window = (
                    MaintenanceWindow.from_dict(definition.window) if definition.window else None
                )
                in_window = window is None or window.contains(now)
                if in_window:
                    definition.last_run = now
                definition.next_run = CronParser(definition.cron).next_run(now)
                if not self.manager.store.compare_and_set_recurring(definition, due_at):
                    logger.debug(f"Occurrence {definition.key} at {due_at} claimed elsewhere")
                    continue

                if in_window:
                    job_ids.append(self.manager.materialize(definition))
                    self._materialized += 1
                else:
                    self._skipped += 1
                    logger.info(
                        f"Skipping {definition.key} at {now}: outside maintenance window"
                    )

        return job_ids

    def _get(self, queue: "QueueRef", name: str) -> RecurringJob:
        queue_name = QueueName.parse(queue).value
        definition = self.manager.store.get_recurring(queue_name, name)
        if definition is None:
            raise NotFoundError("recurring job", f"{queue_name}:{name}")
        return definition

    def _audit(self, action: str, definition: RecurringJob, actor: str, **details: Any) -> None:
        self.manager.audit.record(AuditEvent(
            action=action,
            entity_type="schedule",
            entity_id=definition.key,
            details={"queue": definition.queue_name, **details},
            actor=actor,
            timestamp=self.clock(),
        ))

    def enable(self, queue: "QueueRef", name: str, actor: str = "system") -> RecurringJob:
        """Enable a definition and recompute its next run."""
        definition = self._get(queue, name)
        definition.enabled = True
        definition.next_run = CronParser(definition.cron).next_run(self.clock())
        self.manager.store.upsert_recurring(definition)
        self._audit("schedule.enabled", definition, actor)
        logger.info(f"Enabled {definition.key}, next run {definition.next_run}")
        return definition

    def disable(self, queue: "QueueRef", name: str, actor: str = "system") -> RecurringJob:
        definition = self._get(queue, name)
        definition.enabled = False
        self.manager.store.upsert_recurring(definition)
        self._audit("schedule.disabled", definition, actor)
        logger.info(f"Disabled {definition.key}")
        return definition

    def trigger(self, queue: "QueueRef", name: str, actor: str = "user") -> str:
        """Enqueue one occurrence now, regardless of schedule or window."""
        definition = self._get(queue, name)
        job_id = self.manager.materialize(
            definition, scheduled_by=actor if actor in ("user", "admin") else "user"
        )
        self._audit("schedule.triggered", definition, actor, jobId=job_id)
        logger.info(f"Triggered {definition.key} as job {job_id}")
        return job_id

    def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()

        self._thread = threading.Thread(
            target=self._scheduler_loop,
            daemon=True,
            name=f"Scheduler-{self.config.name}",
        )
        self._thread.start()
        logger.info(f"Scheduler {self.config.name} started")

    def stop(self, wait: bool = True) -> None:
        """Stop the scheduler."""
        self._running = False
        self._stop_event.set()

        if wait and self._thread:
            self._thread.join(timeout=5.0)
        self._thread = None

        logger.info(f"Scheduler {self.config.name} stopped")

    def _scheduler_loop(self) -> None:
        """Main scheduler loop."""
        while self._running and not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler error: {e}")

            self._stop_event.wait(self.config.check_interval_ms / 1000)

    def get_stats(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        definitions = self.manager.list_recurring()
        return {
            "running": self._running,
            "total_jobs": len(definitions),
            "enabled_jobs": sum(1 for d in definitions if d.enabled),
            "materialized": self._materialized,
            "skipped": self._skipped,
        }

    def __enter__(self) -> "Scheduler":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


__all__ = ["Scheduler", "SchedulerConfig", "MaintenanceWindow"]
