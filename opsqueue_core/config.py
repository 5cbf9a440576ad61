"""OpsQueue Config - Engine Configuration.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from opsqueue_core.monitoring.channels import AppriseChannel, ChannelType
from opsqueue_core.queue.job import QueueName
from opsqueue_core.storage.backend import StorageBackend
from opsqueue_core.storage.memory import MemoryBackend
from opsqueue_core.storage.redis import RedisBackend
from opsqueue_core.storage.sql import SQLBackend

logger = logging.getLogger(__name__)

ENV_PREFIX = "OPSQUEUE_"
STORAGE_KINDS = ("memory", "sql", "redis")

DEFAULT_ALERT_ON_FAILURE = (
    QueueName.PRICE_UPDATE.value,
    QueueName.SET_IMPORT.value,
    QueueName.DATA_VALIDATION.value,
    QueueName.BACKUP.value,
)


@dataclass
class EngineConfig:
    """Engine configuration.

    Attributes:
        storage: Queue store kind (memory, sql, redis)
        storage_url: SQLite path or Redis URL
        redis_prefix: Key prefix for the Redis store
        poll_interval_ms: Worker idle poll interval
        stall_timeout_seconds: Heartbeat age after which a job is stalled
        heartbeat_interval_seconds: Worker heartbeat period
        scheduler_interval_ms: Scheduler tick period
        escalation_after_minutes: Delay before critical alerts escalate
        alert_on_failure: Queues whose terminal job failures raise alerts
        concurrency: Per-queue worker concurrency for generic queues
        channel_urls: Apprise service URLs per channel type
        recipient_urls: Apprise URL template per channel type, with {recipient}
        temp_dir: Directory swept by the temporary-files cleanup task
        backup_dir: Directory swept by the old-backups cleanup task
        log_level: Root log level
    """

    storage: str = "memory"
    storage_url: Optional[str] = None
    redis_prefix: str = "opsqueue:"
    poll_interval_ms: int = 500
    stall_timeout_seconds: int = 30
    heartbeat_interval_seconds: int = 5
    scheduler_interval_ms: int = 1000
    escalation_after_minutes: int = 15
    alert_on_failure: Tuple[str, ...] = DEFAULT_ALERT_ON_FAILURE
    concurrency: Dict[str, int] = field(default_factory=dict)
    channel_urls: Dict[str, List[str]] = field(default_factory=dict)
    recipient_urls: Dict[str, str] = field(default_factory=dict)
    temp_dir: Optional[str] = None
    backup_dir: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if self.storage not in STORAGE_KINDS:
            raise ValueError(f"storage must be one of {STORAGE_KINDS}, got {self.storage!r}")
        self.alert_on_failure = tuple(QueueName.parse(q).value for q in self.alert_on_failure)
        for queue, value in self.concurrency.items():
            QueueName.parse(queue)
            if value < 1:
                raise ValueError(f"concurrency for {queue} must be >= 1")
        for channel in list(self.channel_urls) + list(self.recipient_urls):
            ChannelType.parse(channel)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from OPSQUEUE_* environment variables.

        Channel URLs are read from OPSQUEUE_<TYPE>_URLS (comma separated)
        and OPSQUEUE_<TYPE>_RECIPIENT_URL, e.g. OPSQUEUE_CHAT_URLS.
        """
        env = os.environ if environ is None else environ

        def get(name: str, default: Optional[str] = None) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else default

        def get_int(name: str, default: int) -> int:
            raw = get(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None

        def get_list(name: str) -> List[str]:
            raw = get(name)
            return [item.strip() for item in raw.split(",") if item.strip()] if raw else []

        channel_urls = {}
        recipient_urls = {}
        for channel in ChannelType:
            key = channel.value.upper()
            urls = get_list(f"{key}_URLS")
            if urls:
                channel_urls[channel.value] = urls
            template = get(f"{key}_RECIPIENT_URL")
            if template:
                recipient_urls[channel.value] = template

        concurrency = {}
        for queue in QueueName:
            key = queue.value.upper().replace("-", "_")
            if get(f"{key}_CONCURRENCY"):
                concurrency[queue.value] = get_int(f"{key}_CONCURRENCY", 1)

        return cls(
            storage=get("STORAGE", "memory"),
            storage_url=get("STORAGE_URL"),
            redis_prefix=get("REDIS_PREFIX", "opsqueue:"),
            poll_interval_ms=get_int("POLL_INTERVAL_MS", 500),
            stall_timeout_seconds=get_int("STALL_TIMEOUT_SECONDS", 30),
            heartbeat_interval_seconds=get_int("HEARTBEAT_INTERVAL_SECONDS", 5),
            scheduler_interval_ms=get_int("SCHEDULER_INTERVAL_MS", 1000),
            escalation_after_minutes=get_int("ESCALATION_AFTER_MINUTES", 15),
            alert_on_failure=tuple(get_list("ALERT_ON_FAILURE")) or DEFAULT_ALERT_ON_FAILURE,
            concurrency=concurrency,
            channel_urls=channel_urls,
            recipient_urls=recipient_urls,
            temp_dir=get("TEMP_DIR"),
            backup_dir=get("BACKUP_DIR"),
            log_level=get("LOG_LEVEL", "INFO").upper(),
        )


def build_store(config: EngineConfig) -> StorageBackend:
    """Construct the configured queue store."""
    if config.storage == "sql":
        return SQLBackend(config.storage_url or ":memory:")
    if config.storage == "redis":
        return RedisBackend(url=config.storage_url, prefix=config.redis_prefix)
    return MemoryBackend()


def build_channels(config: EngineConfig) -> List[AppriseChannel]:
    """One apprise channel per configured channel type."""
    channels = []
    for channel in ChannelType:
        urls = config.channel_urls.get(channel.value, [])
        template = config.recipient_urls.get(channel.value)
        if not urls and not template:
            continue
        channels.append(
            AppriseChannel(channel, enabled=True, config={"urls": urls, "recipient_url": template})
        )
    return channels


def configure_logging(level: str = "INFO") -> None:
    """Set the level of the opsqueue_core logger hierarchy.

    Handlers are left to the embedding process.
    """
    logging.getLogger("opsqueue_core").setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.debug(f"Logging configured at {level}")


__all__ = ["EngineConfig", "build_store", "build_channels", "configure_logging"]
