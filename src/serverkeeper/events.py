"""Keeper event schema and factory."""

from dataclasses import dataclass, field
from typing import Dict, Any
from datetime import datetime
import uuid

BACKUP_COMPLETED = "backup.completed"
BACKUP_FAILED = "backup.failed"
SERVICE_REPAIRED = "service.repaired"
SERVICE_REPAIR_FAILED = "service.repair_failed"


@dataclass
class KeeperEvent:
    """Structured event handed to notification sinks."""

    id: str
    ts: str
    source: str    # e.g., "backup", "repair", "supervisor"
    kind: str      # e.g., "backup.completed", "backup.failed"
    severity: str  # "info", "warn", "error", "critical"
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.ts,
            "source": self.source,
            "kind": self.kind,
            "severity": self.severity,
            "payload": self.payload,
        }


def mk_event(source: str, kind: str, severity: str = "info", **payload) -> KeeperEvent:
    """Factory for creating keeper events.

    Args:
        source: Component that produced the event
        kind: Event type, e.g. ``backup.completed``
        severity: Event severity level
        **payload: Event data as keyword arguments

    Returns:
        KeeperEvent instance
    """
    return KeeperEvent(
        id=str(uuid.uuid4())[:8],
        ts=datetime.now().isoformat(),
        source=source,
        kind=kind,
        severity=severity,
        payload=payload
    )
