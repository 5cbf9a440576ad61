from datetime import datetime, timedelta

import pytest

from opsqueue_core.errors import ChannelError, NotFoundError
from opsqueue_core.monitoring import channels as channels_module
from opsqueue_core.monitoring.alert import Alert, AlertSeverity
from opsqueue_core.monitoring.alerter import (
    ONCALL,
    AlertAction,
    AlertCondition,
    AlertingService,
    AlertRule,
    resolve_metric,
)
from opsqueue_core.monitoring.channels import AppriseChannel, ChannelType
from opsqueue_core.monitoring.oncall import OnCallSchedule, OnCallUser

from conftest import RecordingChannel

ALICE = OnCallUser("alice", email="alice@example.com", phone="+15550001", chat_id="U-alice")
BOB = OnCallUser("bob", email="bob@example.com", phone="+15550002", chat_id="U-bob")


@pytest.fixture
def recorders():
    return {t: RecordingChannel(t) for t in ChannelType}


@pytest.fixture
def service(store, recorders, clock):
    svc = AlertingService(store, channels=recorders.values(), rules=[], clock=clock)
    svc.set_on_call_schedule(
        OnCallSchedule("primary", "Primary", (ALICE, BOB), start_date=datetime(2025, 1, 1))
    )
    yield svc
    svc.close()


def _error_rule(**kwargs):
    defaults = dict(
        id="many-errors",
        name="Many errors",
        conditions=[AlertCondition("errorCount", ">", 5)],
        actions=[AlertAction(ChannelType.WEBHOOK)],
        cooldown_minutes=10,
    )
    defaults.update(kwargs)
    return AlertRule(**defaults)


def test_severity_selects_channels(service, recorders):
    service.raise_alert(AlertSeverity.WARNING, "slow-import", "Import is slow")

    assert len(recorders[ChannelType.CHAT].sent) == 1
    assert len(recorders[ChannelType.MAIL].sent) == 1
    assert recorders[ChannelType.PAGER].sent == []
    assert recorders[ChannelType.SMS].sent == []

    service.raise_alert("info", "import-done", "Import finished")
    assert len(recorders[ChannelType.CHAT].sent) == 2
    assert len(recorders[ChannelType.MAIL].sent) == 1


def test_critical_alert_pages_on_call_person(service, recorders):
    alert = service.raise_alert(AlertSeverity.CRITICAL, "database-down", "DB unreachable")

    assert recorders[ChannelType.PAGER].sent == [(alert, ("alice",))]
    assert recorders[ChannelType.SMS].sent == [(alert, ("+15550001",))]
    assert recorders[ChannelType.MAIL].sent == [(alert, ("alice@example.com",))]
    assert recorders[ChannelType.CHAT].sent == [(alert, ())]


def test_channel_failure_does_not_block_other_channels(store, clock):
    broken_chat = RecordingChannel(ChannelType.CHAT, fail=True)
    mail = RecordingChannel(ChannelType.MAIL)
    service = AlertingService(store, channels=[broken_chat, mail], rules=[], clock=clock)

    alert = service.raise_alert(AlertSeverity.WARNING, "disk", "Disk at 85%")
    service.close()

    assert mail.alert_ids() == [alert.id]
    assert service.get_alert(alert.id).message == "Disk at 85%"


def test_disabled_channel_is_skipped(store, clock):
    chat = RecordingChannel(ChannelType.CHAT)
    chat.enabled = False
    service = AlertingService(store, channels=[chat], rules=[], clock=clock)

    service.raise_alert(AlertSeverity.INFO, "note", "hello")
    service.close()
    assert chat.sent == []


def test_explicit_channels_override_severity(service, recorders):
    service.raise_alert(AlertSeverity.INFO, "deploy", "Deployed", channels=["webhook"])

    assert len(recorders[ChannelType.WEBHOOK].sent) == 1
    assert recorders[ChannelType.CHAT].sent == []


def test_rule_fires_once_per_cooldown(service, recorders, clock):
    service.add_rule(_error_rule())
    webhook = recorders[ChannelType.WEBHOOK]

    service.raise_alert(AlertSeverity.WARNING, "validation", "errors", {"errorCount": 9})
    clock.advance(minutes=5)
    service.raise_alert(AlertSeverity.WARNING, "validation", "errors", {"errorCount": 12})
    assert len(webhook.sent) == 1

    clock.advance(minutes=5)
    service.raise_alert(AlertSeverity.WARNING, "validation", "errors", {"errorCount": 7})
    assert len(webhook.sent) == 2


def test_rule_cooldown_is_shared_through_the_store(store, clock):
    first_hook, second_hook = RecordingChannel("webhook"), RecordingChannel("webhook")
    first = AlertingService(store, channels=[first_hook], rules=[_error_rule()], clock=clock)
    second = AlertingService(store, channels=[second_hook], rules=[_error_rule()], clock=clock)

    first.raise_alert(AlertSeverity.INFO, "validation", "errors", {"errorCount": 9})
    second.raise_alert(AlertSeverity.INFO, "validation", "errors", {"errorCount": 9})
    first.close()
    second.close()

    assert len(first_hook.sent) == 1
    assert second_hook.sent == []


def test_rule_with_unmet_condition_does_not_fire(service, recorders):
    service.add_rule(_error_rule())
    fired = service.check_alert_rules(
        Alert.create(AlertSeverity.INFO, "validation", "few errors", {"errorCount": 2})
    )

    assert fired == []
    assert recorders[ChannelType.WEBHOOK].sent == []


def test_duration_condition_must_hold_continuously(service, clock):
    service.add_rule(_error_rule(
        conditions=[AlertCondition("errorRate", "gt", 15, duration_minutes=5)],
        cooldown_minutes=0,
    ))

    def check(rate):
        return service.check_alert_rules(
            Alert.create(AlertSeverity.INFO, "metrics", "sample", {"errorRate": rate})
        )

    assert check(20) == []
    clock.advance(minutes=3)
    assert check(25) == []
    clock.advance(minutes=2)
    assert check(30) == ["many-errors"]

    # Dropping below the threshold restarts the clock
    assert check(5) == []
    clock.advance(minutes=1)
    assert check(20) == []


def test_rule_without_conditions_matches_every_alert(service):
    service.add_rule(_error_rule(id="catch-all", conditions=[], cooldown_minutes=0))
    assert service.check_alert_rules(Alert.create("info", "anything", "x")) == ["catch-all"]


def test_rule_action_resolves_on_call_recipient(service, recorders):
    service.add_rule(_error_rule(actions=[AlertAction("sms", (ONCALL, "+15559999"))]))
    alert = service.raise_alert(AlertSeverity.INFO, "validation", "errors", {"errorCount": 6})

    assert recorders[ChannelType.SMS].sent == [(alert, ("+15559999", "+15550001"))]


def test_default_rules_match_nested_metrics(store, clock):
    pager = RecordingChannel("pager")
    service = AlertingService(store, channels=[pager], clock=clock)

    alert = Alert.create(
        AlertSeverity.INFO, "health", "health check", {"database": {"status": "unhealthy"}}
    )
    assert service.check_alert_rules(alert) == ["database-down"]
    service.close()


def test_acknowledge_is_idempotent(service, clock):
    alert = service.raise_alert(AlertSeverity.CRITICAL, "queue-stuck", "Queue stuck")

    first = service.acknowledge(alert.id, "alice")
    clock.advance(minutes=1)
    second = service.acknowledge(alert.id, "bob")

    assert second.acknowledged_by == "alice"
    assert second.acknowledged_at == first.acknowledged_at


def test_resolve_sends_notice_and_is_idempotent(service, recorders, clock):
    alert = service.raise_alert(AlertSeverity.WARNING, "slow-api", "API slow")
    clock.advance(minutes=3)

    resolved = service.resolve(alert.id, "bob")
    assert resolved.resolved
    assert resolved.resolved_at == clock.now
    assert f"{alert.id}-resolved" in recorders[ChannelType.CHAT].alert_ids()

    chat_count = len(recorders[ChannelType.CHAT].sent)
    service.resolve(alert.id, "alice")
    assert len(recorders[ChannelType.CHAT].sent) == chat_count
    assert service.get_alert(alert.id).resolved_by == "bob"

    # Acknowledging a resolved alert changes nothing
    assert service.acknowledge(alert.id, "alice").acknowledged is False


def test_unknown_alert_raises_not_found(service):
    with pytest.raises(NotFoundError):
        service.acknowledge("nope", "alice")


def test_history_filters_and_ordering(service, clock):
    first = service.raise_alert(AlertSeverity.WARNING, "disk", "Disk 85%")
    clock.advance(minutes=1)
    second = service.raise_alert(AlertSeverity.CRITICAL, "disk", "Disk 95%")
    clock.advance(minutes=1)
    service.raise_alert(AlertSeverity.INFO, "deploy", "Deployed")

    assert [a.id for a in service.get_alert_history(type="disk")] == [second.id, first.id]
    assert [a.id for a in service.get_alert_history(severity="critical")] == [second.id]
    assert len(service.get_alert_history(limit=2)) == 2
    assert service.get_alert_history(start=clock.now)[0].type == "deploy"


def test_archive_only_touches_old_resolved_alerts(service, clock):
    old = service.raise_alert(AlertSeverity.INFO, "old", "old")
    service.resolve(old.id)
    open_alert = service.raise_alert(AlertSeverity.INFO, "open", "still open")

    clock.advance(days=8)
    archived = service.archive_alerts(older_than=clock.now - timedelta(days=7))

    # The alert and its resolution notice
    assert archived == 2
    assert service.get_alert(old.id).archived
    assert [a.id for a in service.get_active_alerts()] == [open_alert.id]


def test_escalation_pages_on_call_once(service, recorders, clock):
    stale = service.raise_alert(AlertSeverity.CRITICAL, "database-down", "DB unreachable")
    acked = service.raise_alert(AlertSeverity.CRITICAL, "storage-full", "Disk full")
    service.acknowledge(acked.id, "bob")
    service.raise_alert(AlertSeverity.WARNING, "slow", "slow")
    pager = recorders[ChannelType.PAGER]
    pages_before = len(pager.sent)

    clock.advance(minutes=10)
    assert service.escalate_pending() == []

    clock.advance(minutes=6)
    escalated = service.escalate_pending()
    assert [a.id for a in escalated] == [stale.id]
    assert len(pager.sent) == pages_before + 1
    assert pager.sent[-1][1] == ("alice",)
    assert "escalatedAt" in service.get_alert(stale.id).metadata

    assert service.escalate_pending() == []


def test_on_call_rotates_weekly(service, clock):
    assert service.get_on_call_person().user_id == "alice"
    assert service.get_on_call_person(clock.now + timedelta(days=7)).user_id == "bob"


def test_test_channel(service, recorders, store, clock):
    assert service.test_channel("chat") is True
    assert recorders[ChannelType.CHAT].sent[-1][0].type == "test"

    empty = AlertingService(store, rules=[], clock=clock)
    assert empty.test_channel("chat") is False
    empty.close()


def test_conditions():
    metadata = {"errorCount": 3, "api": {"responseTime": 2500}, "status": "degraded"}

    assert AlertCondition("errorCount", "≥", 3).evaluate(metadata)
    assert AlertCondition("api.responseTime", "gt", 2000).evaluate(metadata)
    assert AlertCondition("status", "≠", "ok").evaluate(metadata)
    assert not AlertCondition("missing", "eq", None).evaluate(metadata)
    assert not AlertCondition("status", ">", 5).evaluate(metadata)
    assert resolve_metric(metadata, "api.responseTime") == 2500
    with pytest.raises(ValueError):
        AlertCondition("errorCount", "~", 1)


class FakeApprise:
    instances = []

    def __init__(self):
        self.urls = []
        self.notifications = []
        self.result = True
        FakeApprise.instances.append(self)

    def add(self, url):
        if "://" not in url:
            return False
        self.urls.append(url)
        return True

    def notify(self, title, body, notify_type):
        self.notifications.append((title, body, notify_type))
        return self.result

    def __len__(self):
        return len(self.urls)


@pytest.fixture
def fake_apprise(monkeypatch):
    FakeApprise.instances = []
    monkeypatch.setattr(channels_module, "Apprise", FakeApprise)
    return FakeApprise


def test_apprise_channel_expands_recipients(fake_apprise, clock):
    channel = AppriseChannel(
        "mail",
        config={"urls": ["json://hooks.example.com/ops"], "recipient_url": "mailto://smtp.example.com?to={recipient}"},
    )
    alert = Alert.create(AlertSeverity.CRITICAL, "database-down", "DB unreachable", now=clock.now)

    channel.send(alert, ["alice@example.com"])

    apobj = fake_apprise.instances[-1]
    assert apobj.urls == [
        "json://hooks.example.com/ops",
        "mailto://smtp.example.com?to=alice@example.com",
    ]
    title, body, notify_type = apobj.notifications[0]
    assert title == "[CRITICAL] database-down"
    assert body.startswith("DB unreachable")
    assert notify_type == channels_module.NotifyType.FAILURE


def test_apprise_channel_raises_on_failure(fake_apprise, monkeypatch, clock):
    alert = Alert.create(AlertSeverity.INFO, "note", "hello", now=clock.now)
    with pytest.raises(ChannelError):
        AppriseChannel("chat").send(alert)

    class Failing(FakeApprise):
        def notify(self, title, body, notify_type):
            return False

    monkeypatch.setattr(channels_module, "Apprise", Failing)
    with pytest.raises(ChannelError):
        AppriseChannel("chat", config={"urls": "json://hooks.example.com"}).send(alert)


def test_send_after_close_is_logged_not_raised(service, recorders, caplog):
    service.close()

    alert = service.raise_alert(AlertSeverity.WARNING, "disk", "Disk at 91%")

    assert service.get_alert(alert.id).message == "Disk at 91%"
    assert recorders[ChannelType.CHAT].sent == []
    assert "Failed to send alert" in caplog.text
