"""OpsQueue Tasks - Bundled Cleanup Tasks.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Union

from opsqueue_core.maintenance.cleanup import CleanupTask, CleanupTaskResult, TaskRegistry
from opsqueue_core.maintenance.entities import (
    AUDIT_LOGS,
    CARDS,
    COLLECTIONS,
    DECK_CARDS,
    DECKS,
    PRICES,
    SESSIONS,
    USERS,
    Entity,
    EntityStore,
)

logger = logging.getLogger(__name__)

SOFT_DELETE_RETENTION = timedelta(days=30)
TEMP_FILE_MAX_AGE = timedelta(hours=24)
BACKUP_RETENTION = timedelta(days=30)
AUDIT_LOG_RETENTION = timedelta(days=365)

# Estimated on-disk size of one row
RECORD_BYTES = 1024
SESSION_BYTES = 512
ORPHAN_BYTES = 256


def _timestamp(value: Union[datetime, str, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _older_than(key: str, cutoff: datetime) -> Callable[[Entity], bool]:
    def predicate(entity: Entity) -> bool:
        stamp = _timestamp(entity.get(key))
        return stamp is not None and stamp < cutoff
    return predicate


def _purge(entities: EntityStore, entity_set: str, stale: List[Entity], dry_run: bool) -> None:
    if stale and not dry_run:
        entities.delete(entity_set, [e["id"] for e in stale])


def _stale_files(directory: Optional[Union[str, Path]], cutoff: datetime) -> List[Path]:
    if directory is None:
        return []
    path = Path(directory)
    if not path.is_dir():
        logger.debug(f"Cleanup directory {path} does not exist")
        return []
    threshold = cutoff.timestamp()
    stale = []
    for f in path.iterdir():
        try:
            if f.is_file() and f.stat().st_mtime < threshold:
                stale.append(f)
        except FileNotFoundError:
            continue
    return stale


def _remove_files(files: List[Path], dry_run: bool) -> CleanupTaskResult:
    """Delete stale files, counting only those that were still there.

    A file removed by something else mid-run is skipped, so the totals
    match what this run actually reclaimed.
    """
    removed = 0
    reclaimed = 0
    for f in files:
        try:
            size = f.stat().st_size
            if not dry_run:
                f.unlink()
        except FileNotFoundError:
            logger.debug(f"Cleanup file {f} vanished before removal")
            continue
        removed += 1
        reclaimed += size
    return CleanupTaskResult(records_affected=removed, space_reclaimed=reclaimed)


def default_tasks(
    entities: EntityStore,
    temp_dir: Optional[Union[str, Path]] = None,
    backup_dir: Optional[Union[str, Path]] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> TaskRegistry:
    """Registry of the bundled cleanup tasks.

    Args:
        entities: Store holding the domain entity sets
        temp_dir: Directory of temporary uploads/exports, skipped if None
        backup_dir: Directory of backup files, skipped if None
        clock: Source of the current time
    """

    def soft_deleted_records(dry_run: bool) -> CleanupTaskResult:
        cutoff = clock() - SOFT_DELETE_RETENTION
        decks = entities.find(DECKS, _older_than("deleted_at", cutoff))
        items = entities.find(COLLECTIONS, _older_than("deleted_at", cutoff))
        _purge(entities, DECKS, decks, dry_run)
        _purge(entities, COLLECTIONS, items, dry_run)
        total = len(decks) + len(items)
        return CleanupTaskResult(
            records_affected=total,
            space_reclaimed=total * RECORD_BYTES,
            details={"decks": len(decks), "collectionItems": len(items)},
        )

    def expired_sessions(dry_run: bool) -> CleanupTaskResult:
        sessions = entities.find(SESSIONS, _older_than("expires_at", clock()))
        _purge(entities, SESSIONS, sessions, dry_run)
        return CleanupTaskResult(len(sessions), len(sessions) * SESSION_BYTES)

    def temporary_files(dry_run: bool) -> CleanupTaskResult:
        return _remove_files(_stale_files(temp_dir, clock() - TEMP_FILE_MAX_AGE), dry_run)

    def old_backups(dry_run: bool) -> CleanupTaskResult:
        return _remove_files(_stale_files(backup_dir, clock() - BACKUP_RETENTION), dry_run)

    def orphaned_records(dry_run: bool) -> CleanupTaskResult:
        card_ids = entities.ids(CARDS)
        deck_ids = entities.ids(DECKS)
        user_ids = entities.ids(USERS)

        deck_cards = entities.find(
            DECK_CARDS,
            lambda dc: dc.get("deck_id") not in deck_ids or dc.get("card_id") not in card_ids,
        )
        collections = entities.find(COLLECTIONS, lambda c: c.get("user_id") not in user_ids)
        prices = entities.find(PRICES, lambda p: p.get("card_id") not in card_ids)

        _purge(entities, DECK_CARDS, deck_cards, dry_run)
        _purge(entities, COLLECTIONS, collections, dry_run)
        _purge(entities, PRICES, prices, dry_run)
        total = len(deck_cards) + len(collections) + len(prices)
        return CleanupTaskResult(
            records_affected=total,
            space_reclaimed=total * ORPHAN_BYTES,
            details={
                "deckCards": len(deck_cards),
                "collectionItems": len(collections),
                "prices": len(prices),
            },
        )

    def audit_logs(dry_run: bool) -> CleanupTaskResult:
        logs = entities.find(AUDIT_LOGS, _older_than("created_at", clock() - AUDIT_LOG_RETENTION))
        _purge(entities, AUDIT_LOGS, logs, dry_run)
        return CleanupTaskResult(len(logs), len(logs) * RECORD_BYTES)

    return TaskRegistry([
        CleanupTask("soft-deleted-records", "Clean up soft-deleted records", soft_deleted_records),
        CleanupTask("expired-sessions", "Remove expired authentication sessions", expired_sessions),
        CleanupTask("temporary-files", "Delete temporary upload and export files", temporary_files),
        CleanupTask("old-backups", "Clean up old backup files", old_backups),
        CleanupTask("orphaned-records", "Remove orphaned database records", orphaned_records),
        CleanupTask("audit-logs", "Remove audit logs past retention", audit_logs),
    ])


__all__ = ["default_tasks"]
