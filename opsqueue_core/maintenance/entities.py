"""OpsQueue Entities - Domain Entity Store Capability.

Validation rules and cleanup tasks only need to query and mutate named
entity sets; the relational store behind them is someone else's.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional

Entity = Dict[str, Any]
Predicate = Callable[[Entity], bool]

# Entity sets the bundled rules and tasks know about
CARDS = "cards"
SETS = "sets"
DECKS = "decks"
DECK_CARDS = "deck_cards"
COLLECTIONS = "collections"
USERS = "users"
PRICES = "prices"
AUDIT_LOGS = "audit_logs"
SESSIONS = "sessions"


class EntityStore(ABC):
    """Query/mutation access to entity sets. Every entity has an `id`."""

    @abstractmethod
    def count(self, entity_set: str) -> int:
        pass

    @abstractmethod
    def find(self, entity_set: str, predicate: Optional[Predicate] = None) -> List[Entity]:
        pass

    @abstractmethod
    def get(self, entity_set: str, entity_id: str) -> Optional[Entity]:
        pass

    @abstractmethod
    def update(self, entity_set: str, entity_id: str, changes: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def delete(self, entity_set: str, entity_ids: Iterable[str]) -> int:
        """Delete entities by id and return how many existed."""
        pass

    def ids(self, entity_set: str) -> set:
        return {entity["id"] for entity in self.find(entity_set)}


class MemoryEntityStore(EntityStore):
    """Entity sets held in dictionaries, insertion ordered."""

    def __init__(self, data: Optional[Dict[str, Iterable[Entity]]] = None):
        self._sets: Dict[str, Dict[str, Entity]] = defaultdict(dict)
        self._lock = threading.RLock()
        for entity_set, entities in (data or {}).items():
            for entity in entities:
                self.add(entity_set, entity)

    def add(self, entity_set: str, entity: Entity) -> None:
        if "id" not in entity:
            raise ValueError(f"{entity_set} entity has no id: {entity!r}")
        with self._lock:
            self._sets[entity_set][str(entity["id"])] = copy.deepcopy(entity)

    def count(self, entity_set: str) -> int:
        with self._lock:
            return len(self._sets[entity_set])

    def find(self, entity_set: str, predicate: Optional[Predicate] = None) -> List[Entity]:
        with self._lock:
            entities = [copy.deepcopy(e) for e in self._sets[entity_set].values()]
        if predicate is None:
            return entities
        return [e for e in entities if predicate(e)]

    def get(self, entity_set: str, entity_id: str) -> Optional[Entity]:
        with self._lock:
            entity = self._sets[entity_set].get(str(entity_id))
            return copy.deepcopy(entity) if entity else None

    def update(self, entity_set: str, entity_id: str, changes: Dict[str, Any]) -> bool:
        with self._lock:
            entity = self._sets[entity_set].get(str(entity_id))
            if entity is None:
                return False
            entity.update(copy.deepcopy(changes))
            return True

    def delete(self, entity_set: str, entity_ids: Iterable[str]) -> int:
        with self._lock:
            return sum(
                1 for entity_id in entity_ids
                if self._sets[entity_set].pop(str(entity_id), None) is not None
            )


__all__ = [
    "Entity",
    "EntityStore",
    "MemoryEntityStore",
    "CARDS",
    "SETS",
    "DECKS",
    "DECK_CARDS",
    "COLLECTIONS",
    "USERS",
    "PRICES",
    "AUDIT_LOGS",
    "SESSIONS",
]
