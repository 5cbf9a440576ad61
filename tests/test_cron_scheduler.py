import copy
from datetime import datetime

import pytest

from opsqueue_core.errors import NotFoundError
from opsqueue_core.queue.job import QueueName
from opsqueue_core.scheduler.cron import DAILY_2AM, EVERY_HOUR, SUNDAY_3AM, CronParser
from opsqueue_core.scheduler.scheduler import MaintenanceWindow, Scheduler


@pytest.fixture
def scheduler(manager, clock):
    return Scheduler(manager, clock=clock)


def test_next_run_is_strictly_after_start():
    start = datetime(2025, 1, 15, 13, 0, 30)
    assert CronParser(EVERY_HOUR).next_run(start) == datetime(2025, 1, 15, 14, 0)
    assert CronParser(DAILY_2AM).next_run(start) == datetime(2025, 1, 16, 2, 0)


def test_weekday_zero_and_seven_are_sunday():
    start = datetime(2025, 1, 15, 12, 0)  # Wednesday
    sunday = datetime(2025, 1, 19, 3, 0)
    assert CronParser(SUNDAY_3AM).next_run(start) == sunday
    assert CronParser("0 3 * * 7").next_run(start) == sunday
    assert CronParser("0 3 * * sun").next_run(start) == sunday


def test_steps_lists_and_aliases():
    start = datetime(2025, 1, 15, 12, 7)
    assert CronParser("*/15 * * * *").get_next_runs(3, start) == [
        datetime(2025, 1, 15, 12, 15),
        datetime(2025, 1, 15, 12, 30),
        datetime(2025, 1, 15, 12, 45),
    ]
    assert CronParser("0 9,17 * * mon-fri").next_run(start) == datetime(2025, 1, 15, 17, 0)
    assert CronParser("@daily").next_run(start) == datetime(2025, 1, 16, 0, 0)


@pytest.mark.parametrize("expression", ["", "* * *", "61 * * * *", "*/0 * * * *", "5-2 * * * *"])
def test_invalid_expressions_raise(expression):
    with pytest.raises(ValueError):
        CronParser(expression)


def test_tick_materializes_due_definitions(manager, scheduler, clock):
    manager.schedule_recurring(QueueName.BACKUP, "hourly", {"full": False}, EVERY_HOUR)

    assert scheduler.tick() == []
    clock.advance(hours=1)
    job_ids = scheduler.tick()

    assert len(job_ids) == 1
    job = manager.get_job(QueueName.BACKUP, job_ids[0])
    assert job.repeat_key == "backup:hourly"
    assert job.payload["full"] is False
    assert job.metadata["scheduledBy"] == "system"
    assert job.metadata["recurring"] is True
    assert manager.list_recurring()[0].next_run == datetime(2025, 1, 15, 14, 0)


def test_missed_occurrences_are_not_replayed(manager, scheduler, clock):
    manager.schedule_recurring(QueueName.BACKUP, "hourly", {}, EVERY_HOUR)

    clock.advance(hours=5, minutes=30)
    assert len(scheduler.tick()) == 1
    assert scheduler.tick() == []
    assert manager.list_recurring()[0].next_run == datetime(2025, 1, 15, 18, 0)


def test_disabled_definitions_are_skipped(manager, scheduler, clock, audit):
    manager.schedule_recurring(QueueName.BACKUP, "hourly", {}, EVERY_HOUR)
    scheduler.disable(QueueName.BACKUP, "hourly", actor="admin")

    clock.advance(hours=2)
    assert scheduler.tick() == []

    enabled = scheduler.enable(QueueName.BACKUP, "hourly")
    assert enabled.next_run == datetime(2025, 1, 15, 15, 0)
    assert "schedule.disabled" in audit.actions()
    assert "schedule.enabled" in audit.actions()


def test_occurrence_outside_window_is_skipped(manager, scheduler, clock):
    manager.schedule_recurring(
        QueueName.DATA_CLEANUP,
        "sunday-only",
        {},
        DAILY_2AM,
        window=MaintenanceWindow(start="01:00", end="05:00", days=(0,)).to_dict(),
    )

    clock.now = datetime(2025, 1, 16, 2, 0)  # Thursday
    assert scheduler.tick() == []
    assert scheduler.get_stats()["skipped"] == 1

    clock.now = datetime(2025, 1, 19, 2, 0)  # Sunday
    job_ids = scheduler.tick()
    assert len(job_ids) == 1
    assert manager.list_recurring()[0].next_run == datetime(2025, 1, 20, 2, 0)


def test_shared_occurrence_is_enqueued_once(manager, store, clock, monkeypatch):
    manager.schedule_recurring(QueueName.BACKUP, "hourly", {}, EVERY_HOUR)
    first = Scheduler(manager, clock=clock)
    second = Scheduler(manager, clock=clock)
    clock.advance(hours=1)

    # Both engines listed the definition before either claimed it
    listed = manager.list_recurring()
    monkeypatch.setattr(manager, "list_recurring", lambda queue=None: copy.deepcopy(listed))

    assert len(first.tick()) == 1
    assert second.tick() == []
    assert len(store.list_jobs(QueueName.BACKUP.value)) == 1
    assert store.get_recurring("backup", "hourly").next_run == datetime(2025, 1, 15, 14, 0)
    assert second.get_stats()["materialized"] == 0


def test_removed_definition_is_not_recreated_by_tick(
    manager, store, scheduler, clock, monkeypatch
):
    manager.schedule_recurring(QueueName.BACKUP, "hourly", {}, EVERY_HOUR)
    clock.advance(hours=1)
    listed = manager.list_recurring()
    store.remove_recurring("backup", "hourly")
    monkeypatch.setattr(manager, "list_recurring", lambda queue=None: copy.deepcopy(listed))

    assert scheduler.tick() == []
    assert store.get_recurring("backup", "hourly") is None
    assert store.list_jobs("backup") == []


def test_trigger_enqueues_immediately(manager, scheduler, audit):
    manager.schedule_recurring(QueueName.DATA_VALIDATION, "nightly", {"scope": "all"}, DAILY_2AM)

    job_id = scheduler.trigger(QueueName.DATA_VALIDATION, "nightly", actor="admin")

    job = manager.get_job(QueueName.DATA_VALIDATION, job_id)
    assert job.metadata["scheduledBy"] == "admin"
    assert audit.events[-1].action == "schedule.triggered"
    assert audit.events[-1].details["jobId"] == job_id


def test_trigger_unknown_definition_raises(scheduler):
    with pytest.raises(NotFoundError):
        scheduler.trigger(QueueName.BACKUP, "missing")


def test_window_wraps_past_midnight():
    window = MaintenanceWindow(start="22:00", end="02:00")
    assert window.contains(datetime(2025, 1, 15, 23, 30))
    assert window.contains(datetime(2025, 1, 16, 1, 0))
    assert not window.contains(datetime(2025, 1, 15, 12, 0))


def test_window_rejects_bad_days():
    with pytest.raises(ValueError):
        MaintenanceWindow(days=(7,))
    assert MaintenanceWindow.from_dict({"days": [1, 2]}).days == (1, 2)


def test_scheduler_thread_starts_and_stops(scheduler):
    with scheduler:
        assert scheduler.get_stats()["running"] is True
    assert scheduler.get_stats()["running"] is False
