# =============================================================================
# educafric_core/offline/models.py
# Data types shared by the offline sync components
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class EntityType(Enum):
    """Server entities that can be mutated offline."""
    ATTENDANCE = "attendance"
    GRADE = "grade"
    HOMEWORK = "homework"
    MESSAGE = "message"
    ASSIGNMENT = "assignment"
    STUDENT = "student"
    CLASS = "class"
    TEACHER = "teacher"

    @property
    def cache_key(self) -> str:
        """Name of the cached collection holding records of this type."""
        return _CACHE_KEYS[self]


_CACHE_KEYS = {
    EntityType.ATTENDANCE: "attendance",
    EntityType.GRADE: "grades",
    EntityType.HOMEWORK: "homework",
    EntityType.MESSAGE: "messages",
    EntityType.ASSIGNMENT: "assignments",
    EntityType.STUDENT: "students",
    EntityType.CLASS: "classes",
    EntityType.TEACHER: "teachers",
}


class Operation(Enum):
    """Mutation kind carried by a queued action."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FailureReason(Enum):
    """Why an action left the pending queue without being synced."""
    CONFLICT = "conflict"           # Server rejected it (4xx)
    DEAD_LETTER = "dead_letter"     # Too many transient failures


class WarningLevel(Enum):
    """Offline banner severity."""
    NONE = "none"
    LIGHT = "light"
    URGENT = "urgent"
    BLOCKED = "blocked"


@dataclass
class QueuedAction:
    """A pending mutation captured locally."""
    id: int
    entity_type: EntityType
    operation: Operation
    payload: Dict[str, Any]
    user_id: Optional[int]
    created_at: datetime
    entity_id: Optional[str] = None
    synced: bool = False
    attempt_count: int = 0
    last_error: Optional[str] = None

    @property
    def entity_key(self) -> str:
        """
        Ordering key: actions sharing it are sent strictly in FIFO order.

        An action without an entity id is independent of every other one.
        """
        if self.entity_id is not None:
            return f"{self.entity_type.value}:{self.entity_id}"
        return f"{self.entity_type.value}:#action-{self.id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "operation": self.operation.value,
            "payload": self.payload,
            "user_id": self.user_id,
            "entity_id": self.entity_id,
            "created_at": self.created_at.isoformat(),
            "synced": self.synced,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
        }


@dataclass
class FailedAction:
    """A queued action parked for manual resolution."""
    action: QueuedAction
    reason: FailureReason
    failed_at: datetime
    status_code: Optional[int] = None

    @property
    def id(self) -> int:
        return self.action.id

    def to_dict(self) -> Dict[str, Any]:
        data = self.action.to_dict()
        data.update({
            "reason": self.reason.value,
            "failed_at": self.failed_at.isoformat(),
            "status_code": self.status_code,
        })
        return data


@dataclass
class CachedEntity:
    """Snapshot of server-owned data with its freshness window."""
    type: str
    data: Any
    fetched_at: datetime
    ttl_expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.ttl_expires_at


@dataclass
class SyncStatus:
    """Session view of the sync subsystem, derived on demand."""
    is_online: bool = False
    queue_size: int = 0
    is_syncing: bool = False
    last_sync_time: Optional[datetime] = None
    conflict_count: int = 0
    dead_letter_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "queue_size": self.queue_size,
            "is_syncing": self.is_syncing,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "conflict_count": self.conflict_count,
            "dead_letter_count": self.dead_letter_count,
        }


@dataclass
class OfflineEntitlementState:
    """Result of an entitlement check."""
    days_offline: int
    last_server_sync_at: Optional[datetime]
    warning_level: WarningLevel
    offline_mode_enabled: bool

    @property
    def writes_allowed(self) -> bool:
        return self.offline_mode_enabled and self.warning_level != WarningLevel.BLOCKED


@dataclass
class DrainReport:
    """Outcome of one pass over the pending queue."""
    synced: List[Tuple[QueuedAction, Any]] = field(default_factory=list)
    conflicts: List[QueuedAction] = field(default_factory=list)
    transient_failures: List[QueuedAction] = field(default_factory=list)
    dead_letters: List[QueuedAction] = field(default_factory=list)
    held: List[QueuedAction] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True when every pending action reached the server successfully."""
        return not (self.conflicts or self.transient_failures or self.dead_letters or self.held)

    @property
    def max_attempt_count(self) -> int:
        return max((a.attempt_count for a in self.transient_failures), default=0)

    def summary(self) -> Dict[str, int]:
        return {
            "synced": len(self.synced),
            "conflicts": len(self.conflicts),
            "transient": len(self.transient_failures),
            "dead_letters": len(self.dead_letters),
            "held": len(self.held),
        }
