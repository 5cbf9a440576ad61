import os
from datetime import timedelta

import pytest

from opsqueue_core.maintenance.cleanup import (
    CleanupJobInput,
    CleanupRunner,
    CleanupTask,
    CleanupTaskResult,
    TaskRegistry,
    format_bytes,
)
from opsqueue_core.maintenance.entities import (
    AUDIT_LOGS,
    CARDS,
    COLLECTIONS,
    DECK_CARDS,
    DECKS,
    PRICES,
    SESSIONS,
    USERS,
    MemoryEntityStore,
)
from opsqueue_core.maintenance.tasks import _remove_files, default_tasks
from opsqueue_core.queue.job import QueueName
from opsqueue_core.worker.worker import Worker


@pytest.fixture
def entities(clock):
    long_ago = clock.now - timedelta(days=45)
    recently = clock.now - timedelta(days=3)
    return MemoryEntityStore({
        CARDS: [{"id": "card-1"}],
        USERS: [{"id": "user-1"}],
        DECKS: [
            {"id": "deck-old", "deleted_at": long_ago.isoformat()},
            {"id": "deck-recent", "deleted_at": recently.isoformat()},
            {"id": "deck-live", "deleted_at": None},
        ],
        DECK_CARDS: [
            {"id": "dc-ok", "deck_id": "deck-live", "card_id": "card-1"},
            {"id": "dc-orphan", "deck_id": "deck-live", "card_id": "card-gone"},
        ],
        COLLECTIONS: [
            {"id": "col-ok", "user_id": "user-1", "card_id": "card-1"},
            {"id": "col-orphan", "user_id": "user-gone", "card_id": "card-1"},
        ],
        PRICES: [{"id": "price-orphan", "card_id": "card-gone"}],
        SESSIONS: [
            {"id": "s-expired", "expires_at": (clock.now - timedelta(minutes=1)).isoformat()},
            {"id": "s-valid", "expires_at": (clock.now + timedelta(hours=1)).isoformat()},
        ],
        AUDIT_LOGS: [
            {"id": "log-old", "created_at": (clock.now - timedelta(days=400)).isoformat()},
            {"id": "log-new", "created_at": (clock.now - timedelta(days=10)).isoformat()},
        ],
    })


@pytest.fixture
def temp_dir(tmp_path, clock):
    directory = tmp_path / "tmp"
    directory.mkdir()
    stale = directory / "export-old.csv"
    stale.write_bytes(b"x" * 2048)
    fresh = directory / "export-new.csv"
    fresh.write_bytes(b"y" * 100)

    old = (clock.now - timedelta(hours=30)).timestamp()
    new = (clock.now - timedelta(hours=1)).timestamp()
    os.utime(stale, (old, old))
    os.utime(fresh, (new, new))
    return directory


@pytest.fixture
def runner(entities, temp_dir, clock):
    return CleanupRunner(default_tasks(entities, temp_dir=temp_dir, clock=clock))


def test_dry_run_reports_without_deleting(runner, entities, temp_dir):
    result = runner.run(CleanupJobInput(dry_run=True))

    assert result.tasks_completed == 6
    assert result.errors == []
    assert result.summary["soft-deleted-records"]["recordsDeleted"] == 1
    assert result.summary["expired-sessions"]["recordsDeleted"] == 1
    assert result.summary["orphaned-records"]["recordsDeleted"] == 3
    assert result.summary["audit-logs"]["recordsDeleted"] == 1
    assert result.summary["temporary-files"] == {"recordsDeleted": 1, "spaceReclaimed": 2048}
    assert result.summary["old-backups"]["recordsDeleted"] == 0

    assert entities.count(DECKS) == 3
    assert entities.count(SESSIONS) == 2
    assert (temp_dir / "export-old.csv").exists()


def test_dry_run_matches_real_run(runner):
    preview = runner.run(CleanupJobInput(dry_run=True)).to_dict()
    real = runner.run(CleanupJobInput(dry_run=False)).to_dict()

    assert preview["summary"] == real["summary"]
    assert preview["recordsDeleted"] == real["recordsDeleted"] == 7
    assert preview["dryRun"] is True
    assert real["dryRun"] is False


def test_real_run_deletes_and_is_idempotent(runner, entities, temp_dir):
    runner.run(CleanupJobInput(dry_run=False))

    assert entities.ids(DECKS) == {"deck-recent", "deck-live"}
    assert entities.ids(DECK_CARDS) == {"dc-ok"}
    assert entities.ids(COLLECTIONS) == {"col-ok"}
    assert entities.ids(SESSIONS) == {"s-valid"}
    assert entities.ids(AUDIT_LOGS) == {"log-new"}
    assert sorted(p.name for p in temp_dir.iterdir()) == ["export-new.csv"]

    again = runner.run(CleanupJobInput(dry_run=False))
    assert again.records_deleted == 0
    assert again.space_reclaimed == 0


def test_repeated_dry_runs_report_the_same(runner, entities, temp_dir):
    first = runner.run(CleanupJobInput(dry_run=True))
    second = runner.run(CleanupJobInput(dry_run=True))

    assert first.summary == second.summary
    assert first.records_deleted == second.records_deleted == 7
    assert first.space_reclaimed == second.space_reclaimed == 2048
    assert entities.count(DECKS) == 3
    assert sorted(p.name for p in temp_dir.iterdir()) == ["export-new.csv", "export-old.csv"]


def test_vanished_file_is_not_counted(temp_dir):
    kept = temp_dir / "export-old.csv"
    gone = temp_dir / "export-gone.csv"

    result = _remove_files([gone, kept], dry_run=False)

    assert result.records_affected == 1
    assert result.space_reclaimed == 2048
    assert not kept.exists()


def test_selected_tasks_only(runner, entities):
    result = runner.run(CleanupJobInput(tasks=("expired-sessions",), dry_run=False))

    assert list(result.summary) == ["expired-sessions"]
    assert entities.count(DECKS) == 3


def test_unknown_task_is_skipped(runner):
    progress = []
    result = runner.run(
        CleanupJobInput(tasks=("no-such-task", "expired-sessions")), progress=progress.append
    )

    assert result.tasks_completed == 1
    assert result.errors == []
    assert progress == [50, 100]


def test_failing_task_is_isolated():
    def broken(dry_run):
        raise OSError("disk unavailable")

    registry = TaskRegistry([
        CleanupTask("broken", "always fails", broken),
        CleanupTask("fine", "works", lambda dry_run: CleanupTaskResult(2, 512)),
    ])
    result = CleanupRunner(registry).run(CleanupJobInput())

    assert result.errors == [{"task": "broken", "error": "disk unavailable"}]
    assert result.tasks_completed == 1
    assert result.records_deleted == 2


def test_registry_rejects_duplicate_keys():
    task = CleanupTask("same", "", lambda dry_run: CleanupTaskResult())
    with pytest.raises(ValueError):
        TaskRegistry([task, task])


def test_job_input_validation():
    assert CleanupJobInput.from_payload({"tasks": ["audit-logs"], "dryRun": True}) == CleanupJobInput(
        tasks=("audit-logs",), dry_run=True
    )
    with pytest.raises(ValueError):
        CleanupJobInput.from_payload({"tasks": "audit-logs"})
    with pytest.raises(ValueError):
        CleanupJobInput.from_payload({"force": "yes"})


@pytest.mark.parametrize(
    "size,expected",
    [(0, "0 B"), (512, "512 B"), (1536, "1.5 KB"), (10 * 1024 * 1024, "10 MB"), (3 * 1024 ** 4, "3072 GB")],
)
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected


def test_processor_stores_summary(runner, manager, store, clock):
    job_id = manager.enqueue(QueueName.DATA_CLEANUP, "data-cleanup", {"dryRun": True})

    Worker(QueueName.DATA_CLEANUP, runner.process, store, clock=clock).process_next()

    job = manager.get_job(QueueName.DATA_CLEANUP, job_id)
    assert job.return_value["tasksCompleted"] == 6
    assert job.return_value["dryRun"] is True
    assert job.progress == 100
    assert job.logs[0] == "Starting data cleanup: dryRun=True"
