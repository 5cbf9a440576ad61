"""OpsQueue Cleanup - Cleanup Task Runner.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from opsqueue_core.worker.worker import JobContext

logger = logging.getLogger(__name__)


def format_bytes(size: int) -> str:
    """Human readable byte count, e.g. 1536 -> '1.5 KB'."""
    units = ["B", "KB", "MB", "GB"]
    value = float(max(size, 0))
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2):g} {units[unit]}"


@dataclass(frozen=True)
class CleanupTaskResult:
    """What one task removed (or would remove, in dry-run)."""

    records_affected: int = 0
    space_reclaimed: int = 0
    details: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class CleanupTask:
    """A named, idempotent cleanup step.

    `run(dry_run)` computes what is stale; it only deletes when dry_run
    is False, and reports the same counts either way.
    """

    key: str
    description: str
    run: Callable[[bool], CleanupTaskResult]


class TaskRegistry:
    """Immutable, ordered key -> task table."""

    def __init__(self, tasks: Iterable[CleanupTask]):
        self._tasks: Dict[str, CleanupTask] = {}
        for task in tasks:
            if task.key in self._tasks:
                raise ValueError(f"Duplicate cleanup task: {task.key}")
            self._tasks[task.key] = task

    def __iter__(self):
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def get(self, key: str) -> Optional[CleanupTask]:
        return self._tasks.get(key)

    def keys(self) -> List[str]:
        return list(self._tasks)


@dataclass(frozen=True)
class CleanupJobInput:
    """Decoded payload of a data-cleanup job."""

    tasks: Optional[Tuple[str, ...]] = None
    dry_run: bool = False
    force: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CleanupJobInput":
        tasks = payload.get("tasks")
        if tasks is not None:
            if isinstance(tasks, str) or not all(isinstance(t, str) for t in tasks):
                raise ValueError("tasks must be a list of task keys")
            tasks = tuple(tasks)
        for key in ("dryRun", "force"):
            if not isinstance(payload.get(key, False), bool):
                raise ValueError(f"{key} must be a boolean")
        return cls(
            tasks=tasks,
            dry_run=payload.get("dryRun", False),
            force=payload.get("force", False),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"dryRun": self.dry_run, "force": self.force}
        if self.tasks is not None:
            payload["tasks"] = list(self.tasks)
        return payload


@dataclass
class CleanupResult:
    """Output of a data-cleanup job."""

    tasks_completed: int = 0
    records_deleted: int = 0
    space_reclaimed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    summary: Dict[str, Dict[str, int]] = field(default_factory=dict)
    dry_run: bool = False
    force: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasksCompleted": self.tasks_completed,
            "recordsDeleted": self.records_deleted,
            "spaceReclaimed": self.space_reclaimed,
            "errors": list(self.errors),
            "summary": dict(self.summary),
            "dryRun": self.dry_run,
            "force": self.force,
        }


class CleanupRunner:
    """Runs registered cleanup tasks sequentially, isolating failures."""

    def __init__(self, registry: TaskRegistry):
        self.registry = registry

    def run(
        self,
        job_input: CleanupJobInput,
        progress: Optional[Callable[[int], None]] = None,
        log: Optional[Callable[[str], None]] = None,
    ) -> CleanupResult:
        log = log or (lambda line: None)
        keys = list(job_input.tasks) if job_input.tasks is not None else self.registry.keys()
        result = CleanupResult(dry_run=job_input.dry_run, force=job_input.force)

        for index, key in enumerate(keys, start=1):
            task = self.registry.get(key)
            if task is None:
                logger.warning(f"Skipping unknown cleanup task: {key}")
                log(f"Unknown task: {key}")
            else:
                self._run_task(task, job_input.dry_run, result, log)
            if progress:
                progress(int(index * 100 / len(keys) + 0.5))

        log(
            f"Cleanup completed: {result.records_deleted} records deleted, "
            f"{format_bytes(result.space_reclaimed)} reclaimed"
        )
        return result

    def _run_task(
        self,
        task: CleanupTask,
        dry_run: bool,
        result: CleanupResult,
        log: Callable[[str], None],
    ) -> None:
        log(f"Running task: {task.description}")
        try:
            outcome = task.run(dry_run)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Cleanup task {task.key} failed: {message}")
            log(f"Task {task.key} failed: {message}")
            result.errors.append({"task": task.key, "error": message})
            return

        result.summary[task.key] = {
            "recordsDeleted": outcome.records_affected,
            "spaceReclaimed": outcome.space_reclaimed,
        }
        result.records_deleted += outcome.records_affected
        result.space_reclaimed += outcome.space_reclaimed
        result.tasks_completed += 1
        log(
            f"Task {task.key} completed: {outcome.records_affected} records deleted, "
            f"{format_bytes(outcome.space_reclaimed)} reclaimed"
        )

    def process(self, context: JobContext) -> Dict[str, Any]:
        """Processor for the data-cleanup queue."""
        job_input = CleanupJobInput.from_payload(context.payload)
        context.log(f"Starting data cleanup: dryRun={job_input.dry_run}")
        result = self.run(job_input, progress=context.update_progress, log=context.log)
        logger.info(
            f"Cleanup job {context.job.id}: {result.tasks_completed} tasks, "
            f"{result.records_deleted} records, {format_bytes(result.space_reclaimed)} "
            f"(dry_run={job_input.dry_run}, force={job_input.force})"
        )
        return result.to_dict()


__all__ = [
    "format_bytes",
    "CleanupTaskResult",
    "CleanupTask",
    "TaskRegistry",
    "CleanupJobInput",
    "CleanupResult",
    "CleanupRunner",
]
