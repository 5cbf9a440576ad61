"""OpsQueue Worker Module - Job Execution.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from opsqueue_core.worker.retry import RetryConfig, RetryPolicy
from opsqueue_core.worker.worker import (
    JobContext,
    Processor,
    Worker,
    WorkerConfig,
    WorkerState,
    WorkerStats,
)

__all__ = [
    "Worker",
    "WorkerState",
    "WorkerConfig",
    "WorkerStats",
    "JobContext",
    "Processor",
    "RetryPolicy",
    "RetryConfig",
]
