"""OpsQueue Scheduler Module - Cron-like Job Scheduling.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from opsqueue_core.scheduler.cron import CronParser, CronSchedule
from opsqueue_core.scheduler.scheduler import MaintenanceWindow, Scheduler, SchedulerConfig

__all__ = [
    "Scheduler",
    "SchedulerConfig",
    "MaintenanceWindow",
    "CronParser",
    "CronSchedule",
]
