import pytest

from conftest import RecordingChannel
from opsqueue_core.config import EngineConfig
from opsqueue_core.engine import Engine
from opsqueue_core.errors import StoreUnavailableError
from opsqueue_core.maintenance.entities import CARDS, SETS, MemoryEntityStore
from opsqueue_core.monitoring.alerter import AlertingService
from opsqueue_core.monitoring.channels import ChannelType
from opsqueue_core.queue.job import JobPriority, JobState, QueueName
from opsqueue_core.scheduler.cron import DAILY_2AM, EVERY_HOUR, SUNDAY_3AM
from opsqueue_core.storage.sql import SQLBackend
from opsqueue_core.worker.worker import WorkerState


@pytest.fixture
def entities():
    return MemoryEntityStore({
        SETS: [{"id": "set-1", "code": "SV1"}],
        CARDS: [
            {
                "id": "card-1",
                "name": "Pikachu",
                "set_id": "set-gone",
                "set_code": "SV1",
                "number": "25",
                "image_url_small": "https://images.example.com/25.png",
                "image_url_large": "https://images.example.com/25_hires.png",
                "supertype": "POKEMON",
            },
        ],
    })


@pytest.fixture
def chat():
    return RecordingChannel(ChannelType.CHAT)


@pytest.fixture
def engine(store, audit, entities, chat, clock):
    alerting = AlertingService(store, channels=[chat], rules=[], clock=clock)
    return Engine(
        store=store,
        config=EngineConfig(alert_on_failure=("backup",)),
        audit=audit,
        alerting=alerting,
        entity_store=entities,
        clock=clock,
    )


def test_maintenance_queues_are_registered_serial(engine):
    assert engine.workers[QueueName.DATA_VALIDATION].config.concurrency == 1
    assert engine.workers[QueueName.DATA_CLEANUP].config.concurrency == 1

    with pytest.raises(ValueError):
        engine.register(QueueName.DATA_CLEANUP, lambda ctx: None, concurrency=4)

    worker = engine.register("price-update", lambda ctx: None, concurrency=3)
    assert worker.config.concurrency == 3


def test_register_uses_configured_concurrency(store, clock):
    engine = Engine(store=store, config=EngineConfig(concurrency={"set-import": 2}), clock=clock)
    assert engine.register(QueueName.SET_IMPORT, lambda ctx: None).config.concurrency == 2


def test_terminal_failure_raises_alert_for_watched_queue(engine, chat):
    def broken(ctx):
        raise RuntimeError("disk full")

    worker = engine.register(QueueName.BACKUP, broken)
    job_id = engine.manager.enqueue(QueueName.BACKUP, "nightly", {}, {"attempts": 1})

    worker.process_next()

    alerts = engine.alerting.get_alert_history(type="job-failed")
    assert len(alerts) == 1
    assert alerts[0].metadata == {
        "queue": "backup",
        "jobId": job_id,
        "jobName": "nightly",
        "attemptsMade": 1,
        "failedReason": "disk full",
    }
    assert chat.alert_ids() == [alerts[0].id]


def test_failure_on_unwatched_queue_is_silent(engine):
    def broken(ctx):
        raise RuntimeError("feed unavailable")

    worker = engine.register(QueueName.PRICE_UPDATE, broken)
    engine.manager.enqueue(QueueName.PRICE_UPDATE, "refresh", {}, {"attempts": 1})

    worker.process_next()

    assert engine.alerting.get_alert_history() == []


def test_validation_errors_raise_alert(engine):
    job_id = engine.run_validation(scope="cards", rules=["card-set-reference"])

    assert engine.get_validation_report(job_id) is None
    engine.workers[QueueName.DATA_VALIDATION].process_next()

    report = engine.get_validation_report(job_id)
    assert report["issuesFound"] == 1
    assert report["issuesFixed"] == 0

    alerts = engine.alerting.get_alert_history(type="data-validation-issues")
    assert len(alerts) == 1
    assert alerts[0].metadata["errorCount"] == 1
    assert alerts[0].metadata["jobId"] == job_id


def test_manual_jobs_carry_admin_metadata(engine):
    validation = engine.manager.get_job(QueueName.DATA_VALIDATION, engine.run_validation())
    cleanup = engine.manager.get_job(QueueName.DATA_CLEANUP, engine.run_cleanup())

    assert validation.priority == JobPriority.NORMAL
    assert validation.payload["_metadata"]["scheduledBy"] == "admin"
    assert validation.payload["scope"] == "all"

    assert cleanup.priority == JobPriority.LOW
    assert cleanup.payload["dryRun"] is True
    assert cleanup.payload["_metadata"]["reason"] == "Manual data cleanup"


def test_cleanup_summary_after_run(engine):
    job_id = engine.run_cleanup(tasks=["expired-sessions"])
    engine.workers[QueueName.DATA_CLEANUP].process_next()

    summary = engine.get_cleanup_summary(job_id)
    assert summary["dryRun"] is True
    assert summary["tasksCompleted"] == 1
    assert engine.alerting.get_alert_history(type="data-cleanup-errors") == []


def test_schedule_defaults(engine):
    definitions = {d.name: d for d in engine.schedule_defaults()}

    assert definitions["daily-validation"].cron == DAILY_2AM
    assert definitions["daily-validation"].payload["autoFix"] is True
    assert definitions["hourly-integrity-check"].cron == EVERY_HOUR
    assert definitions["hourly-integrity-check"].payload["autoFix"] is False

    weekly = definitions["weekly-cleanup"]
    assert weekly.cron == SUNDAY_3AM
    assert weekly.payload["dryRun"] is False
    assert weekly.window == {"start": "03:00", "end": "05:00", "days": [0]}

    # installing again replaces rather than duplicates
    engine.schedule_defaults()
    assert len(engine.manager.list_recurring()) == 3


def test_catalogs(engine):
    rules = {r["name"]: r for r in engine.available_rules()}
    assert rules["card-set-reference"]["autoFixAvailable"] is True
    assert rules["card-set-reference"]["severity"] == "error"

    tasks = [t["task"] for t in engine.available_tasks()]
    assert "expired-sessions" in tasks
    assert "temporary-files" in tasks


def test_maintenance_stats(engine, clock):
    assert engine.get_maintenance_stats() == {
        "lastValidation": None,
        "lastCleanup": None,
        "totalIssuesFound": 0,
        "totalIssuesFixed": 0,
        "totalSpaceReclaimed": 0,
    }

    engine.run_validation(scope="cards", rules=["card-set-reference"], auto_fix=True)
    engine.workers[QueueName.DATA_VALIDATION].process_next()

    stats = engine.get_maintenance_stats()
    assert stats["lastValidation"] == clock.now
    assert stats["totalIssuesFound"] == 1
    assert stats["totalIssuesFixed"] == 1
    assert stats["lastCleanup"] is None


def test_start_and_shutdown(engine):
    with engine:
        with pytest.raises(ValueError):
            engine.register(QueueName.BACKUP, lambda ctx: None)
        assert all(w.get_stats().state == WorkerState.RUNNING for w in engine.workers.values())

    assert all(w.get_stats().state == WorkerState.STOPPED for w in engine.workers.values())


def test_completed_job_queries_other_states(engine):
    job_id = engine.run_cleanup()
    assert engine.manager.get_job(QueueName.DATA_CLEANUP, job_id).state == JobState.WAITING
    assert engine.get_cleanup_summary(job_id) is None


def test_start_fails_when_store_is_unreachable(tmp_path, clock):
    store = SQLBackend(str(tmp_path / "ops.db"))
    store.close()
    engine = Engine(store=store, clock=clock)

    with pytest.raises(StoreUnavailableError):
        engine.start()

    assert all(w.get_stats().state == WorkerState.STOPPED for w in engine.workers.values())
