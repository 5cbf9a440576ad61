"""OpsQueue Alerter - Alerting and Escalation.

Alerts are persisted in the queue store, fanned out to the channels
chosen by severity, and matched against alert rules. Rule cooldowns are
stamped in the store with compare-and-set, so they hold across engine
instances sharing that store.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import operator
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from opsqueue_core.errors import NotFoundError
from opsqueue_core.monitoring.alert import Alert, AlertSeverity
from opsqueue_core.monitoring.channels import AlertChannel, ChannelType
from opsqueue_core.monitoring.oncall import OnCallSchedule, OnCallUser, get_on_call_person

if TYPE_CHECKING:
    from opsqueue_core.storage.backend import StorageBackend

logger = logging.getLogger(__name__)

ONCALL = "oncall"

SEVERITY_CHANNELS = {
    AlertSeverity.CRITICAL: (ChannelType.PAGER, ChannelType.SMS, ChannelType.CHAT, ChannelType.MAIL),
    AlertSeverity.WARNING: (ChannelType.CHAT, ChannelType.MAIL),
    AlertSeverity.INFO: (ChannelType.CHAT,),
}

LOG_LEVELS = {
    AlertSeverity.CRITICAL: logging.ERROR,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.INFO: logging.INFO,
}

# Channels that page a person directly for critical alerts
PERSONAL_CHANNELS = (ChannelType.PAGER, ChannelType.SMS, ChannelType.MAIL)

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "gt": operator.gt, ">": operator.gt,
    "gte": operator.ge, ">=": operator.ge, "≥": operator.ge,
    "lt": operator.lt, "<": operator.lt,
    "lte": operator.le, "<=": operator.le, "≤": operator.le,
    "eq": operator.eq, "=": operator.eq, "==": operator.eq,
    "neq": operator.ne, "!=": operator.ne, "≠": operator.ne,
}

_MISSING = object()


def resolve_metric(metadata: Dict[str, Any], metric: str) -> Any:
    """Look a metric up in alert metadata, as a flat key or a dotted path."""
    if metric in metadata:
        return metadata[metric]
    value: Any = metadata
    for part in metric.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


@dataclass(frozen=True)
class AlertCondition:
    """metric <operator> value, optionally held for duration_minutes."""

    metric: str
    operator: str
    value: Any
    duration_minutes: Optional[int] = None

    def __post_init__(self):
        if self.operator not in OPERATORS:
            raise ValueError(f"Unknown condition operator: {self.operator!r}")

    def evaluate(self, metadata: Dict[str, Any]) -> bool:
        actual = resolve_metric(metadata, self.metric)
        if actual is _MISSING or actual is None:
            return False
        try:
            return bool(OPERATORS[self.operator](actual, self.value))
        except TypeError:
            return False


@dataclass(frozen=True)
class AlertAction:
    """Deliver the matching alert to one more channel."""

    channel: ChannelType
    recipients: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        object.__setattr__(self, "channel", ChannelType.parse(self.channel))
        if self.recipients is not None:
            object.__setattr__(self, "recipients", tuple(self.recipients))


@dataclass
class AlertRule:
    """An alerting rule.

    Fires at most once per `cooldown_minutes`, when every condition holds
    against the alert's metadata.
    """

    id: str
    name: str
    conditions: List[AlertCondition]
    actions: List[AlertAction]
    severity: AlertSeverity = AlertSeverity.WARNING
    description: str = ""
    enabled: bool = True
    cooldown_minutes: int = 0


def default_alert_rules() -> List[AlertRule]:
    """Alert rules installed when none are given."""
    return [
        AlertRule(
            id="database-down",
            name="Database Connection Failed",
            description="Alert when database is unreachable",
            conditions=[AlertCondition("database.status", "eq", "unhealthy")],
            actions=[
                AlertAction(ChannelType.PAGER),
                AlertAction(ChannelType.CHAT),
                AlertAction(ChannelType.MAIL, (ONCALL,)),
            ],
            severity=AlertSeverity.CRITICAL,
            cooldown_minutes=5,
        ),
        AlertRule(
            id="high-error-rate",
            name="High Error Rate",
            description="Alert when error rate exceeds threshold",
            conditions=[AlertCondition("jobQueue.errorRate", "gt", 15, duration_minutes=5)],
            actions=[AlertAction(ChannelType.CHAT), AlertAction(ChannelType.MAIL, ("dev-team",))],
            severity=AlertSeverity.WARNING,
            cooldown_minutes=30,
        ),
        AlertRule(
            id="storage-full",
            name="Storage Nearly Full",
            description="Alert when storage usage is critical",
            conditions=[AlertCondition("storage.usagePercent", "gt", 90)],
            actions=[AlertAction(ChannelType.PAGER), AlertAction(ChannelType.CHAT)],
            severity=AlertSeverity.CRITICAL,
            cooldown_minutes=60,
        ),
        AlertRule(
            id="api-degraded",
            name="External API Degraded",
            description="Alert when external APIs are slow or failing",
            conditions=[AlertCondition("api.responseTime", "gt", 2000, duration_minutes=10)],
            actions=[AlertAction(ChannelType.CHAT)],
            severity=AlertSeverity.WARNING,
            cooldown_minutes=15,
        ),
        AlertRule(
            id="backup-failed",
            name="Backup Job Failed",
            description="Alert when backup jobs fail",
            conditions=[AlertCondition("backup.status", "eq", "failed")],
            actions=[AlertAction(ChannelType.MAIL, ("admin",)), AlertAction(ChannelType.CHAT)],
            severity=AlertSeverity.CRITICAL,
            cooldown_minutes=0,
        ),
    ]


@dataclass
class AlertingConfig:
    """Alerting configuration.

    Attributes:
        escalation_after_minutes: Unacknowledged critical alerts older
            than this are re-sent to the on-call person
        dispatch_workers: Threads used for channel fan-out
        dispatch_timeout_seconds: Per-channel wait, None waits forever
    """

    escalation_after_minutes: int = 15
    dispatch_workers: int = 8
    dispatch_timeout_seconds: Optional[float] = None

    def __post_init__(self):
        if self.escalation_after_minutes < 0:
            raise ValueError("escalation_after_minutes must be >= 0")
        if self.dispatch_workers < 1:
            raise ValueError("dispatch_workers must be >= 1")


def _contact(user: OnCallUser, channel_type: ChannelType) -> Optional[str]:
    return {
        ChannelType.MAIL: user.email,
        ChannelType.SMS: user.phone,
        ChannelType.CHAT: user.chat_id,
        ChannelType.PAGER: user.user_id,
    }.get(channel_type)


class AlertingService:
    """Alert lifecycle, channel fan-out, rule matching and escalation."""

    def __init__(
        self,
        store: "StorageBackend",
        channels: Iterable[AlertChannel] = (),
        rules: Optional[Iterable[AlertRule]] = None,
        config: Optional[AlertingConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.config = config or AlertingConfig()
        self.clock = clock

        self._channels: Dict[ChannelType, AlertChannel] = {}
        for channel in channels:
            self.add_channel(channel)
        self._rules: Dict[str, AlertRule] = {}
        for rule in default_alert_rules() if rules is None else rules:
            self.add_rule(rule)
        self._schedules: Dict[str, OnCallSchedule] = {}

        self._lock = threading.RLock()
        self._condition_since: Dict[Tuple[str, int], datetime] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.dispatch_workers,
            thread_name_prefix="alert-dispatch",
        )

    # Registration

    def add_channel(self, channel: AlertChannel) -> None:
        """Register a channel, replacing any channel of the same type."""
        self._channels[channel.type] = channel
        logger.debug(f"Registered alert channel {channel!r}")

    def get_channel(self, channel_type: Union[ChannelType, str]) -> Optional[AlertChannel]:
        return self._channels.get(ChannelType.parse(channel_type))

    def add_rule(self, rule: AlertRule) -> None:
        self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def get_rules(self) -> List[AlertRule]:
        return list(self._rules.values())

    def set_on_call_schedule(self, schedule: OnCallSchedule) -> None:
        """Create or replace a schedule. The first one registered is primary."""
        with self._lock:
            self._schedules[schedule.id] = schedule
        logger.info(
            f"On-call schedule {schedule.id} set: {len(schedule.users)} users, "
            f"{schedule.rotation.value} rotation"
        )

    def get_on_call_person(self, now: Optional[datetime] = None) -> Optional[OnCallUser]:
        with self._lock:
            primary = next(iter(self._schedules.values()), None)
        return get_on_call_person(primary, now or self.clock())

    # Sending

    def raise_alert(
        self,
        severity: Union[AlertSeverity, str],
        type: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        channels: Optional[Sequence[Union[ChannelType, str]]] = None,
    ) -> Alert:
        """Create a new alert and send it."""
        alert = Alert.create(severity, type, message, metadata, now=self.clock())
        return self.send_alert(alert, channels)

    def send_alert(
        self,
        alert: Alert,
        channels: Optional[Sequence[Union[ChannelType, str]]] = None,
    ) -> Alert:
        """Persist an alert, deliver it, then evaluate alert rules.

        Channel failures are logged and never raised; the call returns
        once every dispatch attempt has settled.

        Args:
            alert: Alert to send
            channels: Explicit channel types, default chosen by severity
        """
        self.store.save_alert(alert.id, alert.to_dict())
        logger.log(
            LOG_LEVELS[alert.severity],
            f"Alert [{alert.severity.value}] {alert.type}: {alert.message}",
        )

        if channels is None:
            targets = list(SEVERITY_CHANNELS[alert.severity])
        else:
            targets = [ChannelType.parse(c) for c in channels]
        self._dispatch(alert, targets)
        self.check_alert_rules(alert)
        return alert

    def _recipients_for(
        self,
        alert: Alert,
        channel_type: ChannelType,
        explicit: Optional[Sequence[str]],
    ) -> List[str]:
        requested = list(explicit or [])
        wants_on_call = ONCALL in requested or (
            not requested
            and alert.severity == AlertSeverity.CRITICAL
            and channel_type in PERSONAL_CHANNELS
        )
        recipients = [r for r in requested if r != ONCALL]
        if wants_on_call:
            user = self.get_on_call_person()
            contact = _contact(user, channel_type) if user else None
            if contact:
                recipients.append(contact)
            elif ONCALL in requested:
                logger.warning(f"No on-call contact for {channel_type.value} alert {alert.id}")
        return list(dict.fromkeys(recipients))

    def _dispatch(
        self,
        alert: Alert,
        targets: Iterable[ChannelType],
        recipients: Optional[Sequence[str]] = None,
    ) -> Dict[ChannelType, bool]:
        futures = {}
        delivered = {}
        for channel_type in dict.fromkeys(targets):
            channel = self._channels.get(channel_type)
            if channel is None or not channel.enabled:
                logger.debug(f"Skipping {channel_type.value} for alert {alert.id}: not enabled")
                continue
            to = self._recipients_for(alert, channel_type, recipients)
            try:
                futures[channel_type] = self._executor.submit(channel.send, alert, to)
            except RuntimeError as e:
                # Executor already shut down by close()
                logger.error(f"Failed to send alert {alert.id} via {channel_type.value}: {e}")
                delivered[channel_type] = False

        for channel_type, future in futures.items():
            try:
                future.result(timeout=self.config.dispatch_timeout_seconds)
                delivered[channel_type] = True
            except Exception as e:
                logger.error(f"Failed to send alert {alert.id} via {channel_type.value}: {e}")
                delivered[channel_type] = False
        return delivered

    # Rules

    def _conditions_hold(self, rule: AlertRule, alert: Alert, now: datetime) -> bool:
        holds = True
        with self._lock:
            for index, condition in enumerate(rule.conditions):
                key = (rule.id, index)
                if not condition.evaluate(alert.metadata):
                    self._condition_since.pop(key, None)
                    holds = False
                elif condition.duration_minutes:
                    since = self._condition_since.setdefault(key, now)
                    if now - since < timedelta(minutes=condition.duration_minutes):
                        holds = False
        return holds

    def check_alert_rules(self, alert: Alert) -> List[str]:
        """Fire every enabled rule that matches the alert and is out of cooldown.

        Returns:
            Ids of the rules that fired
        """
        now = self.clock()
        fired = []
        for rule in list(self._rules.values()):
            if not rule.enabled:
                continue
            try:
                if not self._conditions_hold(rule, alert, now):
                    continue
                last = self.store.get_rule_trigger(rule.id)
                if last is not None and now - last < timedelta(minutes=rule.cooldown_minutes):
                    logger.debug(f"Alert rule {rule.id} in cooldown since {last}")
                    continue
                if not self.store.compare_and_set_rule_trigger(rule.id, last, now):
                    logger.debug(f"Alert rule {rule.id} fired concurrently elsewhere")
                    continue
            except Exception as e:
                logger.error(f"Alert rule {rule.id} error: {e}")
                continue

            logger.info(f"Alert rule {rule.id} fired for alert {alert.id}")
            for action in rule.actions:
                self._dispatch(alert, [action.channel], action.recipients)
            fired.append(rule.id)
        return fired

    # Lifecycle

    def get_alert(self, alert_id: str) -> Alert:
        data = self.store.get_alert(alert_id)
        if data is None:
            raise NotFoundError("alert", alert_id)
        return Alert.from_dict(data)

    def acknowledge(self, alert_id: str, acknowledged_by: str) -> Alert:
        """Acknowledge an alert. Acknowledging twice is a no-op."""
        alert = self.get_alert(alert_id)
        if alert.acknowledged:
            return alert
        if alert.resolved:
            logger.info(f"Alert {alert_id} already resolved, not acknowledging")
            return alert

        alert.acknowledged = True
        alert.acknowledged_by = acknowledged_by
        alert.acknowledged_at = self.clock()
        self.store.save_alert(alert.id, alert.to_dict())
        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        return alert

    def resolve(self, alert_id: str, resolved_by: Optional[str] = None) -> Alert:
        """Resolve an alert and send a best-effort resolution notice."""
        alert = self.get_alert(alert_id)
        if alert.resolved:
            return alert

        alert.resolved = True
        alert.resolved_at = self.clock()
        alert.resolved_by = resolved_by
        self.store.save_alert(alert.id, alert.to_dict())
        logger.info(f"Alert {alert_id} resolved by {resolved_by or 'system'}")

        notice = Alert(
            id=f"{alert.id}-resolved",
            severity=AlertSeverity.INFO,
            type="alert-resolved",
            message=f"Alert resolved: {alert.message}",
            metadata={
                "originalAlertId": alert.id,
                "resolvedAt": alert.resolved_at.isoformat(),
                "resolvedBy": resolved_by,
            },
            created_at=alert.resolved_at,
            acknowledged=True,
            resolved=True,
        )
        try:
            self.send_alert(notice, [ChannelType.CHAT, ChannelType.MAIL])
        except Exception as e:
            logger.error(f"Resolution notice for alert {alert_id} failed: {e}")
        return alert

    def test_channel(self, channel_type: Union[ChannelType, str]) -> bool:
        """Send a test alert through one channel."""
        channel = self.get_channel(channel_type)
        if channel is None or not channel.enabled:
            return False

        now = self.clock()
        alert = Alert(
            id=f"test-{int(now.timestamp() * 1000)}",
            severity=AlertSeverity.INFO,
            type="test",
            message=f"This is a test alert for {channel.type.value} channel",
            created_at=now,
        )
        try:
            channel.send(alert, self._recipients_for(alert, channel.type, None))
        except Exception as e:
            logger.error(f"Failed to test {channel.type.value} channel: {e}")
            return False
        return True

    # Queries

    def _all_alerts(self) -> List[Alert]:
        alerts = [Alert.from_dict(data) for data in self.store.list_alerts()]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts

    def get_alert_history(
        self,
        severity: Optional[Union[AlertSeverity, str]] = None,
        type: Optional[str] = None,
        resolved: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Alert]:
        """Alerts matching the filters, newest first."""
        wanted = AlertSeverity.parse(severity) if severity is not None else None
        result = []
        for alert in self._all_alerts():
            if wanted is not None and alert.severity != wanted:
                continue
            if type is not None and alert.type != type:
                continue
            if resolved is not None and alert.resolved != resolved:
                continue
            if start is not None and alert.created_at < start:
                continue
            if end is not None and alert.created_at > end:
                continue
            result.append(alert)
            if len(result) >= limit:
                break
        return result

    def get_active_alerts(self) -> List[Alert]:
        """Unresolved, unarchived alerts, newest first."""
        return [a for a in self._all_alerts() if a.is_active]

    def archive_alerts(self, older_than: datetime) -> int:
        """Archive resolved alerts resolved before `older_than`."""
        archived = 0
        for alert in self._all_alerts():
            if alert.archived or not alert.resolved:
                continue
            if (alert.resolved_at or alert.created_at) >= older_than:
                continue
            alert.archived = True
            self.store.save_alert(alert.id, alert.to_dict())
            archived += 1
        if archived:
            logger.info(f"Archived {archived} resolved alerts")
        return archived

    # Escalation

    def escalate_pending(self, now: Optional[datetime] = None) -> List[Alert]:
        """Re-send stale unacknowledged critical alerts to the on-call person.

        Each alert escalates once; `escalatedAt` is stamped in its metadata.
        """
        now = now or self.clock()
        cutoff = now - timedelta(minutes=self.config.escalation_after_minutes)
        escalated = []
        for alert in self._all_alerts():
            if alert.severity != AlertSeverity.CRITICAL or not alert.is_active:
                continue
            if alert.acknowledged or "escalatedAt" in alert.metadata:
                continue
            if alert.created_at > cutoff:
                continue

            alert.metadata["escalatedAt"] = now.isoformat()
            self.store.save_alert(alert.id, alert.to_dict())
            logger.warning(f"Escalating unacknowledged alert {alert.id} to on-call")
            self._dispatch(alert, [ChannelType.PAGER, ChannelType.SMS], [ONCALL])
            escalated.append(alert)
        return escalated

    def close(self) -> None:
        self._executor.shutdown(wait=True)


__all__ = [
    "AlertCondition",
    "AlertAction",
    "AlertRule",
    "AlertingConfig",
    "AlertingService",
    "default_alert_rules",
    "resolve_metric",
    "OPERATORS",
    "SEVERITY_CHANNELS",
    "ONCALL",
]
