"""OpsQueue Alert - Alert Records.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @classmethod
    def parse(cls, value: Union["AlertSeverity", str]) -> "AlertSeverity":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown alert severity: {value!r}") from None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Alert:
    """An alert.

    Raised once, then only changed by acknowledge, resolve and archive.
    Alerts are never deleted.
    """

    id: str
    severity: AlertSeverity
    type: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    archived: bool = False

    @classmethod
    def create(
        cls,
        severity: Union[AlertSeverity, str],
        type: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> "Alert":
        """Build a new alert with a generated id."""
        return cls(
            id=f"{type}-{uuid.uuid4().hex[:12]}",
            severity=AlertSeverity.parse(severity),
            type=type,
            message=message,
            metadata=dict(metadata or {}),
            created_at=now or datetime.now(),
        )

    @property
    def is_active(self) -> bool:
        return not self.resolved and not self.archived

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "type": self.type,
            "message": self.message,
            "metadata": self.metadata,
            "acknowledged": self.acknowledged,
            "acknowledgedBy": self.acknowledged_by,
            "acknowledgedAt": _iso(self.acknowledged_at),
            "resolved": self.resolved,
            "resolvedAt": _iso(self.resolved_at),
            "resolvedBy": self.resolved_by,
            "createdAt": _iso(self.created_at),
            "archived": self.archived,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        return cls(
            id=data["id"],
            severity=AlertSeverity.parse(data["severity"]),
            type=data["type"],
            message=data["message"],
            metadata=data.get("metadata") or {},
            created_at=_parse_iso(data.get("createdAt")) or datetime.now(),
            acknowledged=data.get("acknowledged", False),
            acknowledged_by=data.get("acknowledgedBy"),
            acknowledged_at=_parse_iso(data.get("acknowledgedAt")),
            resolved=data.get("resolved", False),
            resolved_at=_parse_iso(data.get("resolvedAt")),
            resolved_by=data.get("resolvedBy"),
            archived=data.get("archived", False),
        )

    def __repr__(self) -> str:
        return f"Alert(id={self.id!r}, severity={self.severity.value}, type={self.type!r})"


__all__ = ["Alert", "AlertSeverity"]
