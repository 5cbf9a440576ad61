"""OpsQueue Maintenance Module - Data Validation and Cleanup Processors.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from opsqueue_core.maintenance.cleanup import (
    CleanupJobInput,
    CleanupResult,
    CleanupRunner,
    CleanupTask,
    CleanupTaskResult,
    TaskRegistry,
    format_bytes,
)
from opsqueue_core.maintenance.entities import EntityStore, MemoryEntityStore
from opsqueue_core.maintenance.rules import default_rules
from opsqueue_core.maintenance.tasks import default_tasks
from opsqueue_core.maintenance.validation import (
    RuleRegistry,
    RuleSeverity,
    ValidationContext,
    ValidationEngine,
    ValidationFix,
    ValidationIssue,
    ValidationJobInput,
    ValidationResult,
    ValidationRule,
)

__all__ = [
    "EntityStore",
    "MemoryEntityStore",
    "RuleSeverity",
    "ValidationRule",
    "ValidationIssue",
    "ValidationFix",
    "ValidationContext",
    "RuleRegistry",
    "ValidationJobInput",
    "ValidationResult",
    "ValidationEngine",
    "default_rules",
    "CleanupTask",
    "CleanupTaskResult",
    "TaskRegistry",
    "CleanupJobInput",
    "CleanupResult",
    "CleanupRunner",
    "default_tasks",
    "format_bytes",
]
