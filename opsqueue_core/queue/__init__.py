"""OpsQueue Queue Module - Jobs and Queue Administration.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from opsqueue_core.queue.job import (
    BackoffPolicy,
    BackoffType,
    Job,
    JobOptions,
    JobPriority,
    JobState,
    QueueName,
    RecurringJob,
    RemovalPolicy,
)
from opsqueue_core.queue.manager import QueueManager, QueueStats

__all__ = [
    "BackoffPolicy",
    "BackoffType",
    "Job",
    "JobOptions",
    "JobPriority",
    "JobState",
    "QueueName",
    "RecurringJob",
    "RemovalPolicy",
    "QueueManager",
    "QueueStats",
]
