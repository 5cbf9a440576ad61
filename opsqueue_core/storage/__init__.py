"""OpsQueue Storage Module - Queue Store Backends.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from opsqueue_core.storage.backend import StorageBackend
from opsqueue_core.storage.memory import MemoryBackend
from opsqueue_core.storage.redis import RedisBackend
from opsqueue_core.storage.sql import SQLBackend

__all__ = ["StorageBackend", "MemoryBackend", "RedisBackend", "SQLBackend"]
