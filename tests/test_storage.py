from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import redis

from opsqueue_core.errors import StoreUnavailableError
from opsqueue_core.queue.job import Job, JobPriority, JobState, RecurringJob, RemovalPolicy
from opsqueue_core.storage.memory import MemoryBackend
from opsqueue_core.storage.redis import RedisBackend
from opsqueue_core.storage.sql import SQLBackend

NOW = datetime(2025, 1, 15, 12, 0)


@pytest.fixture(params=["memory", "sql"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = MemoryBackend()
    else:
        store = SQLBackend(str(tmp_path / "queue.db"))
    yield store
    store.close()


def _job(store, queue="backup", priority=JobPriority.NORMAL, **kwargs):
    job = Job(
        id=store.next_job_id(queue),
        queue_name=queue,
        name="job",
        priority=priority,
        created_at=NOW,
        **kwargs,
    )
    store.add_job(job)
    return job


def test_job_round_trip_preserves_fields(backend):
    job = _job(backend, payload={"x": 1, "_metadata": {"scheduledBy": "user"}}, max_attempts=5)
    loaded = backend.get_job("backup", job.id)

    assert loaded.payload == {"x": 1, "_metadata": {"scheduledBy": "user"}}
    assert loaded.max_attempts == 5
    assert loaded.created_at == NOW
    assert backend.get_job("backup", "missing") is None


def test_claim_next_orders_by_priority_then_sequence(backend):
    low = _job(backend, priority=JobPriority.LOW)
    first = _job(backend)
    urgent = _job(backend, priority=JobPriority.CRITICAL)
    second = _job(backend)

    claimed = [backend.claim_next("backup", NOW, 10).id for _ in range(4)]
    assert claimed == [urgent.id, first.id, second.id, low.id]
    assert backend.claim_next("backup", NOW, 10) is None


def test_claim_next_enforces_limit_and_pause(backend):
    _job(backend)
    _job(backend)

    backend.set_paused("backup", True)
    assert backend.claim_next("backup", NOW, 5) is None
    backend.set_paused("backup", False)

    assert backend.claim_next("backup", NOW, 1).state == JobState.ACTIVE
    assert backend.claim_next("backup", NOW, 1) is None
    assert backend.counts("backup")[JobState.ACTIVE] == 1


def test_claim_promotes_elapsed_delayed_jobs(backend):
    job = _job(backend, state=JobState.DELAYED, delay_until=NOW + timedelta(seconds=30))

    assert backend.claim_next("backup", NOW, 1) is None
    claimed = backend.claim_next("backup", NOW + timedelta(seconds=30), 1)
    assert claimed.id == job.id
    assert claimed.delay_until is None


def test_progress_and_logs_refresh_heartbeat(backend):
    job = _job(backend)
    backend.claim_next("backup", NOW, 1)
    later = NOW + timedelta(seconds=20)

    backend.set_progress("backup", job.id, 40, later)
    backend.append_log("backup", job.id, "halfway", later)

    loaded = backend.get_job("backup", job.id)
    assert loaded.progress == 40
    assert loaded.logs == ["halfway"]
    assert loaded.heartbeat_at == later


def test_trim_finished_applies_count_and_age(backend):
    for minutes in (1, 2, 3, 90):
        job = _job(backend, state=JobState.COMPLETED)
        job.finished_at = NOW - timedelta(minutes=minutes)
        backend.save_job(job)

    removed = backend.trim_finished(
        "backup", JobState.COMPLETED, RemovalPolicy(age_seconds=3600, count=2), NOW
    )
    assert removed == 2
    assert len(backend.list_jobs("backup", [JobState.COMPLETED])) == 2


def test_recurring_definitions(backend):
    definition = RecurringJob("backup", "nightly", {"full": True}, "0 2 * * *", next_run=NOW)
    backend.upsert_recurring(definition)
    backend.upsert_recurring(RecurringJob("audit", "sweep", {}, "0 * * * *"))

    assert backend.get_recurring("backup", "nightly").payload == {"full": True}
    assert [d.key for d in backend.list_recurring("backup")] == ["backup:nightly"]
    assert len(backend.list_recurring()) == 2
    assert backend.remove_recurring("backup", "nightly") is True
    assert backend.remove_recurring("backup", "nightly") is False


def test_alert_storage(backend):
    backend.save_alert("a-1", {"id": "a-1", "message": "first"})
    backend.save_alert("a-1", {"id": "a-1", "message": "updated"})

    assert backend.get_alert("a-1")["message"] == "updated"
    assert backend.get_alert("missing") is None
    assert len(backend.list_alerts()) == 1


def test_rule_trigger_compare_and_set(backend):
    assert backend.get_rule_trigger("db-down") is None
    assert backend.compare_and_set_rule_trigger("db-down", None, NOW) is True
    # A second engine that read the old value loses the race
    assert backend.compare_and_set_rule_trigger("db-down", None, NOW) is False

    later = NOW + timedelta(minutes=5)
    assert backend.compare_and_set_rule_trigger("db-down", NOW, later) is True
    assert backend.get_rule_trigger("db-down") == later


def test_recurring_compare_and_set_claims_once(backend):
    backend.upsert_recurring(
        RecurringJob("backup", "nightly", {}, "0 2 * * *", next_run=NOW)
    )
    tomorrow = NOW + timedelta(days=1)

    first = backend.get_recurring("backup", "nightly")
    stale = backend.get_recurring("backup", "nightly")
    first.next_run = stale.next_run = tomorrow

    assert backend.compare_and_set_recurring(first, NOW) is True
    assert backend.compare_and_set_recurring(stale, NOW) is False
    assert backend.get_recurring("backup", "nightly").next_run == tomorrow

    backend.remove_recurring("backup", "nightly")
    assert backend.compare_and_set_recurring(first, tomorrow) is False
    assert backend.get_recurring("backup", "nightly") is None


def test_save_job_if_requires_unchanged_heartbeat(backend):
    _job(backend)
    job = backend.claim_next("backup", NOW, max_active=1)
    seen = job.heartbeat_at

    backend.heartbeat("backup", job.id, NOW + timedelta(seconds=5))
    job.state = JobState.FAILED
    assert backend.save_job_if(job, JobState.ACTIVE, seen) is False
    assert backend.get_job("backup", job.id).state == JobState.ACTIVE

    fresh = NOW + timedelta(seconds=5)
    assert backend.save_job_if(job, JobState.ACTIVE, fresh) is True
    assert backend.get_job("backup", job.id).state == JobState.FAILED


def test_remove_job_if_checks_state(backend):
    claimed = _job(backend)
    waiting = _job(backend)
    backend.claim_next("backup", NOW, max_active=1)

    states = [JobState.WAITING, JobState.DELAYED]
    assert backend.remove_job_if("backup", claimed.id, states) is None
    assert backend.get_job("backup", claimed.id).state == JobState.ACTIVE

    removed = backend.remove_job_if("backup", waiting.id, states)
    assert removed.id == waiting.id
    assert backend.get_job("backup", waiting.id) is None
    assert backend.remove_job_if("backup", "missing", states) is None


def test_snapshot_reads_counts_and_pause_together(backend):
    _job(backend)
    _job(backend)
    backend.set_paused("backup", True)

    counts, paused = backend.snapshot("backup")

    assert counts[JobState.WAITING] == 2
    assert counts[JobState.ACTIVE] == 0
    assert paused is True
    assert backend.snapshot("audit") == ({state: 0 for state in JobState}, False)


def test_sql_ping_after_close_raises(tmp_path):
    store = SQLBackend(str(tmp_path / "queue.db"))
    store.ping()
    store.close()
    with pytest.raises(StoreUnavailableError):
        store.ping()


def test_sql_jobs_survive_reopen(tmp_path):
    path = str(tmp_path / "queue.db")
    store = SQLBackend(path)
    job = _job(store, queue="set-import")
    store.close()

    reopened = SQLBackend(path)
    assert reopened.get_job("set-import", job.id).name == "job"
    assert int(reopened.next_job_id("set-import")) > int(job.id)
    reopened.close()


def test_redis_ping_wraps_connection_errors():
    client = MagicMock()
    client.ping.side_effect = redis.exceptions.ConnectionError("connection refused")
    store = RedisBackend(client=client, prefix="test:")

    with pytest.raises(StoreUnavailableError):
        store.ping()


def test_redis_keys_use_prefix():
    client = MagicMock()
    client.incr.return_value = 7
    store = RedisBackend(client=client, prefix="test:")

    assert store.next_job_id("backup") == "7"
    client.incr.assert_called_once_with("test:backup:seq")
