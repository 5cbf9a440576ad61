"""OpsQueue Monitoring Module - Alerting and On-Call.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from opsqueue_core.monitoring.alert import Alert, AlertSeverity
from opsqueue_core.monitoring.alerter import (
    AlertAction,
    AlertCondition,
    AlertingConfig,
    AlertingService,
    AlertRule,
    default_alert_rules,
)
from opsqueue_core.monitoring.channels import AlertChannel, AppriseChannel, ChannelType
from opsqueue_core.monitoring.oncall import (
    OnCallSchedule,
    OnCallUser,
    Rotation,
    get_on_call_person,
)

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertChannel",
    "AppriseChannel",
    "ChannelType",
    "AlertCondition",
    "AlertAction",
    "AlertRule",
    "AlertingConfig",
    "AlertingService",
    "default_alert_rules",
    "OnCallSchedule",
    "OnCallUser",
    "Rotation",
    "get_on_call_person",
]
