"""OpsQueue Errors - Exception Hierarchy.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations


class OpsQueueError(Exception):
    """Base class for engine errors."""


class NotFoundError(OpsQueueError):
    """A job, alert or schedule does not exist (any more)."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key!r} not found")
        self.kind = kind
        self.key = key


class InvalidStateError(OpsQueueError):
    """An administrative operation is not valid in the current state."""


class StoreUnavailableError(OpsQueueError):
    """The queue store cannot be reached. Fatal at startup."""


class ChannelError(OpsQueueError):
    """A notification channel failed to deliver an alert."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


__all__ = [
    "OpsQueueError",
    "NotFoundError",
    "InvalidStateError",
    "StoreUnavailableError",
    "ChannelError",
]
