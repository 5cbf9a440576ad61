"""OpsQueue On-Call - Rotation Lookup.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class Rotation(Enum):
    """How often the on-call user changes."""

    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def period_days(self) -> int:
        return 1 if self is Rotation.DAILY else 7


@dataclass(frozen=True)
class OnCallUser:
    """A person on the rotation and how to reach them."""

    user_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    chat_id: Optional[str] = None
    priority: int = 0


@dataclass(frozen=True)
class OnCallSchedule:
    """An ordered rotation of users starting at `start_date`."""

    id: str
    name: str
    users: Tuple[OnCallUser, ...]
    rotation: Rotation = Rotation.WEEKLY
    start_date: datetime = datetime(1970, 1, 1)

    def __post_init__(self):
        object.__setattr__(self, "users", tuple(self.users))
        if not isinstance(self.rotation, Rotation):
            object.__setattr__(self, "rotation", Rotation(self.rotation))


def get_on_call_person(schedule: Optional[OnCallSchedule], now: datetime) -> Optional[OnCallUser]:
    """Currently on-call user.

    index = floor(days since start / period) mod len(users), where days
    are whole elapsed days. Returns None for a missing or empty schedule.
    """
    if schedule is None or not schedule.users:
        return None
    days = int((now - schedule.start_date).total_seconds() // SECONDS_PER_DAY)
    index = (days // schedule.rotation.period_days) % len(schedule.users)
    return schedule.users[index]


__all__ = ["Rotation", "OnCallUser", "OnCallSchedule", "get_on_call_person"]
