"""OpsQueue Engine - Maintenance Orchestration.

The engine wires the queue manager, scheduler, workers, maintenance
processors and alerting service around one queue store. Construct it
explicitly; there is no module-level instance.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from opsqueue_core.audit import AuditSink, LoggingAuditSink
from opsqueue_core.config import EngineConfig, build_channels, build_store, configure_logging
from opsqueue_core.maintenance.cleanup import CleanupJobInput, CleanupRunner, TaskRegistry
from opsqueue_core.maintenance.entities import EntityStore, MemoryEntityStore
from opsqueue_core.maintenance.rules import default_rules
from opsqueue_core.maintenance.tasks import default_tasks
from opsqueue_core.maintenance.validation import (
    RuleRegistry,
    ValidationEngine,
    ValidationJobInput,
)
from opsqueue_core.monitoring.alert import AlertSeverity
from opsqueue_core.monitoring.alerter import AlertingConfig, AlertingService
from opsqueue_core.queue.job import Job, JobPriority, JobState, QueueName, RecurringJob
from opsqueue_core.queue.manager import QueueManager, QueueRef
from opsqueue_core.scheduler.cron import DAILY_2AM, EVERY_HOUR, SUNDAY_3AM
from opsqueue_core.scheduler.scheduler import MaintenanceWindow, Scheduler, SchedulerConfig
from opsqueue_core.storage.backend import StorageBackend
from opsqueue_core.worker.worker import Processor, Worker, WorkerConfig

logger = logging.getLogger(__name__)

# Queues whose processors mutate domain data run one job at a time
SERIAL_QUEUES = (QueueName.DATA_VALIDATION, QueueName.DATA_CLEANUP)

ESCALATION_CHECK_SECONDS = 60


class Engine:
    """Maintenance engine.

    Example:
        engine = Engine(config=EngineConfig.from_env(), entity_store=entities)
        with engine:
            engine.schedule_defaults()
            engine.run_validation(scope="cards", auto_fix=True)
    """

    def __init__(
        self,
        store: Optional[StorageBackend] = None,
        config: Optional[EngineConfig] = None,
        audit: Optional[AuditSink] = None,
        alerting: Optional[AlertingService] = None,
        entity_store: Optional[EntityStore] = None,
        rules: Optional[RuleRegistry] = None,
        tasks: Optional[TaskRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or EngineConfig()
        self.clock = clock
        self.store = store or build_store(self.config)
        self.audit = audit or LoggingAuditSink()
        self.entities = entity_store or MemoryEntityStore()

        self.validation = ValidationEngine(rules or default_rules(), self.entities, clock)
        self.cleanup = CleanupRunner(
            tasks or default_tasks(
                self.entities,
                temp_dir=self.config.temp_dir,
                backup_dir=self.config.backup_dir,
                clock=clock,
            )
        )
        self.manager = QueueManager(
            self.store,
            audit=self.audit,
            payload_decoders={
                QueueName.DATA_VALIDATION: ValidationJobInput.from_payload,
                QueueName.DATA_CLEANUP: CleanupJobInput.from_payload,
            },
            clock=clock,
        )
        self.scheduler = Scheduler(
            self.manager,
            SchedulerConfig(check_interval_ms=self.config.scheduler_interval_ms),
            clock=clock,
        )
        self.alerting = alerting or AlertingService(
            self.store,
            channels=build_channels(self.config),
            config=AlertingConfig(escalation_after_minutes=self.config.escalation_after_minutes),
            clock=clock,
        )

        self.workers: Dict[QueueName, Worker] = {}
        self._started = False
        self._stop_event = threading.Event()
        self._escalation_thread: Optional[threading.Thread] = None

        self.register(QueueName.DATA_VALIDATION, self.validation.process)
        self.register(QueueName.DATA_CLEANUP, self.cleanup.process)

    def register(
        self,
        queue: QueueRef,
        processor: Processor,
        concurrency: Optional[int] = None,
    ) -> Worker:
        """Attach a processor to a queue.

        Raises:
            ValueError: Concurrency other than 1 for a serial queue, or
                registering after start
        """
        queue = QueueName.parse(queue)
        if self._started:
            raise ValueError("processors must be registered before start()")
        if queue in SERIAL_QUEUES:
            if concurrency not in (None, 1):
                raise ValueError(f"{queue.value} runs with concurrency 1, got {concurrency}")
            concurrency = 1
        elif concurrency is None:
            concurrency = self.config.concurrency.get(queue.value, 1)

        worker = Worker(
            queue,
            processor,
            self.store,
            WorkerConfig(
                concurrency=concurrency,
                poll_interval_ms=self.config.poll_interval_ms,
                stall_timeout_seconds=self.config.stall_timeout_seconds,
                heartbeat_interval_seconds=self.config.heartbeat_interval_seconds,
            ),
            clock=self.clock,
        )
        worker.on_completed(self._on_completed)
        worker.on_failed(self._on_failed)
        self.workers[queue] = worker
        logger.debug(f"Registered processor for {queue.value} (concurrency={concurrency})")
        return worker

    # Alert bridge

    def _on_failed(self, job: Job, reason: str) -> None:
        if job.queue_name not in self.config.alert_on_failure:
            return
        self.alerting.raise_alert(
            AlertSeverity.WARNING,
            "job-failed",
            f"Job {job.name} on {job.queue_name} failed after {job.attempts_made} attempts: {reason}",
            {
                "queue": job.queue_name,
                "jobId": job.id,
                "jobName": job.name,
                "attemptsMade": job.attempts_made,
                "failedReason": reason,
            },
        )

    def _on_completed(self, job: Job, result: Any) -> None:
        if not isinstance(result, dict) or not result.get("errors"):
            return

        if job.queue_name == QueueName.DATA_VALIDATION.value:
            self.alerting.raise_alert(
                AlertSeverity.WARNING,
                "data-validation-issues",
                f"Data validation found {len(result['errors'])} errors",
                {
                    "jobId": job.id,
                    "errorCount": len(result["errors"]),
                    "warningCount": len(result.get("warnings", [])),
                    "issuesFixed": result.get("issuesFixed", 0),
                },
            )
        elif job.queue_name == QueueName.DATA_CLEANUP.value:
            self.alerting.raise_alert(
                AlertSeverity.WARNING,
                "data-cleanup-errors",
                f"{len(result['errors'])} cleanup tasks failed",
                {
                    "jobId": job.id,
                    "errorCount": len(result["errors"]),
                    "tasks": [e["task"] for e in result["errors"]],
                },
            )

    # Lifecycle

    def start(self) -> None:
        """Check the store, then start workers, scheduler and escalation.

        Raises:
            StoreUnavailableError: The queue store cannot be reached
        """
        if self._started:
            return
        configure_logging(self.config.log_level)
        self.store.ping()

        self._started = True
        self._stop_event.clear()
        for worker in self.workers.values():
            worker.start()
        self.scheduler.start()
        self._escalation_thread = threading.Thread(
            target=self._escalation_loop,
            daemon=True,
            name="opsqueue-escalation",
        )
        self._escalation_thread.start()
        logger.info(f"Engine started with {len(self.workers)} workers")

    def _escalation_loop(self) -> None:
        while not self._stop_event.wait(ESCALATION_CHECK_SECONDS):
            try:
                self.alerting.escalate_pending()
            except Exception as e:
                logger.error(f"Escalation check failed: {e}")

    def shutdown(self, graceful: bool = True) -> None:
        """Stop everything and close the store."""
        self._stop_event.set()
        self.scheduler.stop()
        for worker in self.workers.values():
            worker.stop(graceful=graceful)
        if self._escalation_thread:
            self._escalation_thread.join(timeout=5.0)
            self._escalation_thread = None
        self.alerting.close()
        self.store.close()
        self._started = False
        logger.info("Engine shut down")

    def __enter__(self) -> "Engine":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # Maintenance helpers

    def run_validation(
        self,
        scope: str = "all",
        rules: Optional[Sequence[str]] = None,
        auto_fix: bool = False,
        dry_run: bool = False,
        actor: str = "admin",
    ) -> str:
        """Enqueue a data-validation job and return its id."""
        job_input = ValidationJobInput(
            scope=scope,
            rules=tuple(rules) if rules is not None else None,
            auto_fix=auto_fix,
            dry_run=dry_run,
        )
        return self.manager.enqueue(
            QueueName.DATA_VALIDATION,
            "data-validation",
            job_input.to_payload(),
            {"priority": JobPriority.NORMAL, "scheduledBy": actor, "reason": "Manual data validation"},
        )

    def run_cleanup(
        self,
        tasks: Optional[Sequence[str]] = None,
        dry_run: bool = True,
        force: bool = False,
        actor: str = "admin",
    ) -> str:
        """Enqueue a data-cleanup job (dry-run unless told otherwise)."""
        job_input = CleanupJobInput(
            tasks=tuple(tasks) if tasks is not None else None,
            dry_run=dry_run,
            force=force,
        )
        return self.manager.enqueue(
            QueueName.DATA_CLEANUP,
            "data-cleanup",
            job_input.to_payload(),
            {"priority": JobPriority.LOW, "scheduledBy": actor, "reason": "Manual data cleanup"},
        )

    def schedule_defaults(self) -> List[RecurringJob]:
        """Install the default maintenance schedule."""
        return [
            self.manager.schedule_recurring(
                QueueName.DATA_VALIDATION,
                "daily-validation",
                ValidationJobInput(scope="all", auto_fix=True).to_payload(),
                DAILY_2AM,
                metadata={"reason": "Scheduled validation"},
            ),
            self.manager.schedule_recurring(
                QueueName.DATA_CLEANUP,
                "weekly-cleanup",
                CleanupJobInput(dry_run=False).to_payload(),
                SUNDAY_3AM,
                metadata={"priority": JobPriority.LOW, "reason": "Scheduled cleanup"},
                window=MaintenanceWindow(start="03:00", end="05:00", days=(0,)).to_dict(),
            ),
            self.manager.schedule_recurring(
                QueueName.DATA_VALIDATION,
                "hourly-integrity-check",
                ValidationJobInput(scope="all", auto_fix=False).to_payload(),
                EVERY_HOUR,
                metadata={"reason": "Integrity check"},
            ),
        ]

    def available_rules(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": rule.name,
                "description": rule.description,
                "severity": rule.severity.value,
                "autoFixAvailable": rule.auto_fix is not None,
            }
            for rule in self.validation.registry
        ]

    def available_tasks(self) -> List[Dict[str, str]]:
        return [{"task": task.key, "description": task.description} for task in self.cleanup.registry]

    def _result(self, queue: QueueName, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.manager.get_job(queue, job_id)
        return job.return_value if job.state == JobState.COMPLETED else None

    def get_validation_report(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Result of a completed validation job, None while it is pending."""
        return self._result(QueueName.DATA_VALIDATION, job_id)

    def get_cleanup_summary(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Result of a completed cleanup job, None while it is pending."""
        return self._result(QueueName.DATA_CLEANUP, job_id)

    def get_maintenance_stats(self) -> Dict[str, Any]:
        """Totals over the validation and cleanup jobs still retained."""
        validations = self.store.list_jobs(QueueName.DATA_VALIDATION.value, [JobState.COMPLETED])
        cleanups = self.store.list_jobs(QueueName.DATA_CLEANUP.value, [JobState.COMPLETED])
        return {
            "lastValidation": max((j.finished_at for j in validations), default=None),
            "lastCleanup": max((j.finished_at for j in cleanups), default=None),
            "totalIssuesFound": sum((j.return_value or {}).get("issuesFound", 0) for j in validations),
            "totalIssuesFixed": sum((j.return_value or {}).get("issuesFixed", 0) for j in validations),
            "totalSpaceReclaimed": sum(
                (j.return_value or {}).get("spaceReclaimed", 0) for j in cleanups
            ),
        }


__all__ = ["Engine", "SERIAL_QUEUES"]
