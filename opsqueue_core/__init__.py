"""OpsQueue - Operations Job Orchestration System.

OpsQueue runs the background operations of a card-catalog platform: named
job queues with priorities, retries and recurring schedules, rule-based
data validation with optional auto-fix, retention cleanup, and an alerting
service that routes alerts to notification channels and escalates
unacknowledged critical alerts to the on-call person.

Architecture Overview:
┌─────────────────────────────────────────────────────────────────────────┐
│                            OpsQueue System                              │
├─────────────────────────────────────────────────────────────────────────┤
│  ┌─────────────┐  ┌─────────────┐  ┌─────────────┐  ┌─────────────┐   │
│  │  Scheduler  │  │   Manager   │  │   Workers   │  │  Alerting   │   │
│  │             │──▶│             │──▶│             │──▶│             │   │
│  │ • Cron      │  │ • Enqueue   │  │ • Claim     │  │ • Rules     │   │
│  │ • Windows   │  │ • Cancel    │  │ • Retry     │  │ • Channels  │   │
│  │ • Trigger   │  │ • Stats     │  │ • Stalls    │  │ • Escalate  │   │
│  └─────────────┘  └─────────────┘  └─────────────┘  └─────────────┘   │
├─────────────────────────────────────────────────────────────────────────┤
│                           Core Components                               │
├─────────────────────────────────────────────────────────────────────────┤
│  ┌───────────────────────────────────────────────────────────────────┐ │
│  │                        Queue Module                               │ │
│  │  • Job - Job record with state, attempts, progress, logs          │ │
│  │  • JobOptions - Priority, delay, attempts, backoff, removal       │ │
│  │  • RecurringJob - Cron-driven job definition                      │ │
│  │  • QueueManager - Administrative queue operations                 │ │
│  └───────────────────────────────────────────────────────────────────┘ │
│  ┌───────────────────────────────────────────────────────────────────┐ │
│  │                        Worker Module                              │ │
│  │  • Worker - Per-queue job processor                               │ │
│  │  • JobContext - Payload, progress and log access                  │ │
│  │  • RetryPolicy - Fixed and exponential backoff                    │ │
│  └───────────────────────────────────────────────────────────────────┘ │
│  ┌───────────────────────────────────────────────────────────────────┐ │
│  │                       Scheduler Module                            │ │
│  │  • Scheduler - Materializes due recurring jobs                    │ │
│  │  • CronParser - Cron expression parser                            │ │
│  │  • MaintenanceWindow - Allowed run times                          │ │
│  └───────────────────────────────────────────────────────────────────┘ │
│  ┌───────────────────────────────────────────────────────────────────┐ │
│  │                      Maintenance Module                           │ │
│  │  • ValidationEngine - Rule execution with auto-fix                │ │
│  │  • CleanupRunner - Retention cleanup tasks                        │ │
│  │  • EntityStore - Domain data access                               │ │
│  └───────────────────────────────────────────────────────────────────┘ │
│  ┌───────────────────────────────────────────────────────────────────┐ │
│  │                      Monitoring Module                            │ │
│  │  • AlertingService - Alert lifecycle and rule evaluation          │ │
│  │  • AppriseChannel - Mail, SMS, chat, webhook, pager delivery      │ │
│  │  • OnCallSchedule - Rotation lookup                               │ │
│  └───────────────────────────────────────────────────────────────────┘ │
│  ┌───────────────────────────────────────────────────────────────────┐ │
│  │                        Storage Module                             │ │
│  │  • StorageBackend - Abstract queue store                          │ │
│  │  • MemoryBackend - In-memory storage                              │ │
│  │  • SQLBackend - SQLite persistence                                │ │
│  │  • RedisBackend - Redis-based persistence                         │ │
│  └───────────────────────────────────────────────────────────────────┘ │
└─────────────────────────────────────────────────────────────────────────┘

Features:
- Priority queues with delayed jobs and bounded retries
- Cross-process concurrency limits enforced at claim time
- Stalled job detection via heartbeats
- Cron schedules with maintenance windows
- Data validation rules with auto-fix and dry-run
- Retention cleanup with dry-run reporting
- Alert rules with cooldowns and on-call escalation
- Memory, SQLite and Redis queue stores

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

# Errors
from opsqueue_core.errors import (
    ChannelError,
    InvalidStateError,
    NotFoundError,
    OpsQueueError,
    StoreUnavailableError,
)

# Queue components
from opsqueue_core.queue.job import (
    BackoffPolicy,
    Job,
    JobOptions,
    JobPriority,
    JobState,
    QueueName,
    RecurringJob,
)
from opsqueue_core.queue.manager import QueueManager, QueueStats

# Worker components
from opsqueue_core.worker.worker import JobContext, Worker, WorkerConfig, WorkerState
from opsqueue_core.worker.retry import RetryPolicy

# Scheduler components
from opsqueue_core.scheduler.scheduler import MaintenanceWindow, Scheduler, SchedulerConfig
from opsqueue_core.scheduler.cron import CronParser, CronSchedule

# Storage components
from opsqueue_core.storage.backend import StorageBackend
from opsqueue_core.storage.memory import MemoryBackend
from opsqueue_core.storage.redis import RedisBackend
from opsqueue_core.storage.sql import SQLBackend

# Maintenance components
from opsqueue_core.maintenance.entities import EntityStore, MemoryEntityStore
from opsqueue_core.maintenance.validation import ValidationEngine, ValidationRule
from opsqueue_core.maintenance.cleanup import CleanupRunner, CleanupTask

# Monitoring components
from opsqueue_core.monitoring.alert import Alert, AlertSeverity
from opsqueue_core.monitoring.alerter import AlertingService, AlertRule
from opsqueue_core.monitoring.channels import AppriseChannel, ChannelType
from opsqueue_core.monitoring.oncall import OnCallSchedule, OnCallUser

# Audit, config and engine
from opsqueue_core.audit import AuditEvent, AuditSink
from opsqueue_core.config import EngineConfig
from opsqueue_core.engine import Engine

__version__ = "1.0.0"
__author__ = "BlackRoad OS"
__license__ = "Proprietary"

__all__ = [
    # Version
    "__version__",
    # Errors
    "OpsQueueError",
    "NotFoundError",
    "InvalidStateError",
    "StoreUnavailableError",
    "ChannelError",
    # Queue
    "Job",
    "JobOptions",
    "JobPriority",
    "JobState",
    "BackoffPolicy",
    "QueueName",
    "RecurringJob",
    "QueueManager",
    "QueueStats",
    # Worker
    "Worker",
    "WorkerConfig",
    "WorkerState",
    "JobContext",
    "RetryPolicy",
    # Scheduler
    "Scheduler",
    "SchedulerConfig",
    "MaintenanceWindow",
    "CronParser",
    "CronSchedule",
    # Storage
    "StorageBackend",
    "MemoryBackend",
    "RedisBackend",
    "SQLBackend",
    # Maintenance
    "EntityStore",
    "MemoryEntityStore",
    "ValidationEngine",
    "ValidationRule",
    "CleanupRunner",
    "CleanupTask",
    # Monitoring
    "Alert",
    "AlertSeverity",
    "AlertingService",
    "AlertRule",
    "AppriseChannel",
    "ChannelType",
    "OnCallSchedule",
    "OnCallUser",
    # Audit, config and engine
    "AuditEvent",
    "AuditSink",
    "EngineConfig",
    "Engine",
]
