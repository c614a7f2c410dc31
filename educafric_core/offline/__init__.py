# =============================================================================
# educafric_core/offline/__init__.py
# Offline-First Sync Core
# =============================================================================
"""
Offline-first sync for EDUCAFRIC.

Components:
- LocalDurableStore: per-user SQLite store (queue, failed actions, cache, meta)
- ActionQueue: FIFO mutations with per-record ordering
- NetworkMonitor: online/offline/probing state machine
- SyncEngine: queue drain, reconciliation and retry scheduling
- OfflineEntitlementGate: offline write permission and warning levels
- SyncApiClient: requests-based EDUCAFRIC REST client
- OfflineSyncService: facade used by the UI

Usage:
------
from educafric_core.offline import create_offline_service

service = create_offline_service(user_id=42)
service.start()
service.queue_action("grade", "update", {"id": 9, "score": 15})
"""

from .models import (
    EntityType,
    Operation,
    FailureReason,
    WarningLevel,
    QueuedAction,
    FailedAction,
    CachedEntity,
    SyncStatus,
    OfflineEntitlementState,
    DrainReport,
)
from .local_store import LocalDurableStore
from .action_queue import ActionQueue
from .backoff import backoff_delay, TimerSet
from .network_monitor import NetworkMonitor, NetworkState
from .api_client import APIConfig, SyncApiClient
from .sync_engine import SyncEngine
from .entitlement import OfflineEntitlementGate, StoredOfflineFlag
from .service import OfflineSyncService, create_offline_service

__all__ = [
    "EntityType",
    "Operation",
    "FailureReason",
    "WarningLevel",
    "QueuedAction",
    "FailedAction",
    "CachedEntity",
    "SyncStatus",
    "OfflineEntitlementState",
    "DrainReport",
    "LocalDurableStore",
    "ActionQueue",
    "backoff_delay",
    "TimerSet",
    "NetworkMonitor",
    "NetworkState",
    "APIConfig",
    "SyncApiClient",
    "SyncEngine",
    "OfflineEntitlementGate",
    "StoredOfflineFlag",
    "OfflineSyncService",
    "create_offline_service",
]
