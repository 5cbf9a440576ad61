# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Sequence, Tuple

import pytest

from opsqueue_core.audit import MemoryAuditSink
from opsqueue_core.errors import ChannelError
from opsqueue_core.monitoring.alert import Alert
from opsqueue_core.monitoring.channels import AlertChannel
from opsqueue_core.queue.manager import QueueManager
from opsqueue_core.storage.memory import MemoryBackend


class FakeClock:
    """Settable clock passed wherever components take `clock=`."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingChannel(AlertChannel):
    """Channel that remembers what it was asked to send."""

    def __init__(self, channel_type, fail: bool = False):
        super().__init__(channel_type)
        self.fail = fail
        self.sent: List[Tuple[Alert, Tuple[str, ...]]] = []

    def send(self, alert: Alert, recipients: Sequence[str] = ()) -> None:
        if self.fail:
            raise ChannelError(self.type.value, "simulated outage")
        self.sent.append((alert, tuple(recipients)))

    def alert_ids(self) -> List[str]:
        return [alert.id for alert, _ in self.sent]


@pytest.fixture
def clock() -> FakeClock:
    # A Wednesday
    return FakeClock(datetime(2025, 1, 15, 12, 0, 0))


@pytest.fixture
def store() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def manager(store, audit, clock) -> QueueManager:
    return QueueManager(store, audit=audit, clock=clock)
