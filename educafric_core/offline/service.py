# =============================================================================
# educafric_core/offline/service.py
# Offline Sync Service - Single API for Online/Offline Operations
# =============================================================================
"""
OfflineSyncService - the only entry point dashboards and forms use.

This service provides a unified interface that automatically handles:
- Online mode: mutations are queued and pushed in the background
- Offline mode: mutations are checked against the entitlement gate, queued
  and applied optimistically to the local cache
- Automatic sync when the connection comes back

Usage:
------
from educafric_core.offline import create_offline_service

service = create_offline_service(user_id=42)
service.start()

service.queue_action("attendance", "create", {"id": "A1", "status": "present"})
print(service.get_offline_state())
"""

from __future__ import annotations
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Union
import logging

import pandas as pd
import requests

from educafric_core.config import SyncSettings, load_settings
from educafric_core.offline.action_queue import ActionQueue
from educafric_core.offline.api_client import APIConfig, SyncApiClient
from educafric_core.offline.backoff import TimerFactory
from educafric_core.offline.entitlement import (
    OfflineEntitlementGate,
    StoredOfflineFlag,
    state_to_dict,
)
from educafric_core.offline.local_store import LocalDurableStore
from educafric_core.offline.models import (
    EntityType,
    FailedAction,
    FailureReason,
    OfflineEntitlementState,
    Operation,
    SyncStatus,
)
from educafric_core.offline.network_monitor import NetworkMonitor, socket_reachable
from educafric_core.offline.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class OfflineSyncService:
    """
    Facade over store, queue, monitor, engine and entitlement gate.

    Build it with ``create_offline_service``; every collaborator is injected
    so each session owns its own instances.
    """

    def __init__(
        self,
        user_id: Optional[int],
        store: LocalDurableStore,
        queue: ActionQueue,
        monitor: NetworkMonitor,
        engine: SyncEngine,
        gate: OfflineEntitlementGate,
        api: Optional[SyncApiClient] = None,
        offline_flag: Optional[StoredOfflineFlag] = None,
    ):
        self.user_id = user_id
        self.store = store
        self.queue = queue
        self.monitor = monitor
        self.engine = engine
        self.gate = gate
        self.api = api
        self.offline_flag = offline_flag
        self._started = False

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online

    @property
    def pending_sync_count(self) -> int:
        return self.store.pending_count()

    @property
    def last_sync(self) -> Optional[datetime]:
        return self.engine.state.last_sync_time

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, monitoring: bool = True) -> None:
        """
        Probe the server, begin automatic sync and (optionally) polling.

        Args:
            monitoring: Start the background reachability loop
        """
        if self._started:
            return

        self.engine.start()
        self.monitor.handle_online_event()
        if self.is_online:
            self.refresh_entitlement()
        if monitoring:
            self.monitor.start_monitoring()

        self._started = True
        logger.info(
            f"OfflineSyncService started for user {self.user_id}. "
            f"Online: {self.is_online}, pending: {self.pending_sync_count}"
        )

    def close(self) -> None:
        """Cancel timers, stop threads and close the store."""
        self.engine.close()
        self.monitor.close()
        self.store.close()
        self._started = False
        logger.info("OfflineSyncService closed")

    # =========================================================================
    # UI CONTRACT
    # =========================================================================

    def get_offline_state(self) -> Dict[str, Any]:
        """SyncStatus as a dict, for display."""
        return self.engine.get_status().to_dict()

    def get_status(self) -> SyncStatus:
        return self.engine.get_status()

    def queue_action(
        self,
        entity_type: Union[EntityType, str],
        operation: Union[Operation, str],
        data: Dict[str, Any],
        user_id: Optional[int] = None,
        entity_id: Optional[Union[str, int]] = None,
    ) -> bool:
        """
        Record a mutation locally and schedule its delivery.

        Returns:
            True once the action is durably queued

        Raises:
            EntitlementError: Offline write not permitted
            ActionValidationError: Unknown type/operation or bad payload
            PersistenceError: Local storage failed
        """
        author = user_id if user_id is not None else self.user_id
        online = self.is_online
        if not online:
            self.gate.check_write(author)

        self.queue.enqueue(entity_type, operation, data, user_id=author, entity_id=entity_id)

        if online:
            self.engine.request_sync()
        return True

    def trigger_sync(self, force: bool = False) -> bool:
        return self.engine.trigger_sync(force=force)

    def get_cached_data(self, cache_type: str, allow_stale: bool = False) -> Any:
        """Cached data for a type; expired data only when ``allow_stale``."""
        if allow_stale:
            entity = self.store.get_cached_entity(cache_type, allow_stale=True)
            return entity.data if entity else None
        return self.store.get_cached_data(cache_type)

    def get_cached_frame(self, cache_type: str, allow_stale: bool = True) -> pd.DataFrame:
        """Cached list collection as a DataFrame (empty when missing)."""
        data = self.get_cached_data(cache_type, allow_stale=allow_stale)
        if not isinstance(data, list):
            return pd.DataFrame()
        return pd.DataFrame(data)

    def register_status_callback(self, callback: Callable[[SyncStatus], None]) -> None:
        self.engine.register_callback(callback)

    def unregister_status_callback(self, callback: Callable[[SyncStatus], None]) -> None:
        self.engine.unregister_callback(callback)

    # =========================================================================
    # FAILED ACTIONS
    # =========================================================================

    def get_conflicts(self) -> List[FailedAction]:
        return self.store.list_failed_actions(FailureReason.CONFLICT)

    def get_dead_letters(self) -> List[FailedAction]:
        return self.store.list_failed_actions(FailureReason.DEAD_LETTER)

    def resolve_failed(self, action_id: int) -> bool:
        """
        Discard a failed action after the user has dealt with it.

        Later actions on the same record that were waiting behind it are
        released on the next sync.
        """
        resolved = self.store.discard_failed(action_id)
        if resolved:
            logger.info(f"Failed action #{action_id} resolved by user")
            if self.is_online:
                self.engine.request_sync()
        return resolved

    def retry_failed(self, action_id: int) -> List[int]:
        """
        Queue a failed action again as a new action.

        Other failed or waiting actions on the same record are re-queued
        with it, in their original order.

        Returns:
            The new action ids, empty if the failed action does not exist
        """
        new_ids = self.queue.requeue_failed(action_id)
        if new_ids and self.is_online:
            self.engine.request_sync()
        return new_ids

    # =========================================================================
    # ENTITLEMENT & SERVER DATA
    # =========================================================================

    def entitlement_state(self) -> OfflineEntitlementState:
        return self.gate.evaluate(self.user_id)

    def refresh_entitlement(self) -> OfflineEntitlementState:
        """Refresh the stored offline flag from the server profile."""
        if self.api is not None and self.offline_flag is not None and self.is_online:
            self.offline_flag.refresh(self.api)
        return self.entitlement_state()

    def data_age(self) -> Dict[str, Any]:
        return self.gate.data_age()

    def pull_from_server(self, collections: Optional[List[str]] = None) -> Dict[str, int]:
        return self.engine.pull_from_server(collections)

    def full_sync(self) -> Dict[str, Any]:
        return self.engine.full_sync()

    def clear_local_data(self) -> None:
        """Remove every queued, failed and cached record for this user."""
        self.store.clear_all()

    def get_status_display(self) -> Dict[str, Any]:
        """
        Comprehensive status information.

        Returns:
            Dict with status information for UI display
        """
        return {
            "connection": self.monitor.get_status_display(),
            "sync": self.engine.get_status_display(),
            "entitlement": state_to_dict(self.entitlement_state()),
            "data_age": self.data_age(),
            "is_online": self.is_online,
            "pending_sync": self.pending_sync_count,
        }


def create_offline_service(
    user_id: int,
    settings: Optional[SyncSettings] = None,
    session: Optional[requests.Session] = None,
    timer_factory: Optional[TimerFactory] = None,
    clock: Callable[[], datetime] = datetime.now,
    is_offline_mode_enabled: Optional[Callable[[Optional[int]], bool]] = None,
    reachability_check: Optional[Callable[[], bool]] = None,
) -> OfflineSyncService:
    """
    Wire every component for one authenticated user.

    Args:
        user_id: Owner of the local store
        settings: Defaults to ``load_settings()``
        session: requests.Session for the API client (mocked in tests)
        timer_factory: Replaces threading.Timer (tests fire timers by hand)
        clock: Source of "now"
        is_offline_mode_enabled: Replaces the stored per-school flag
        reachability_check: Replaces the TCP check used by the polling loop
    """
    settings = settings or load_settings()

    store = LocalDurableStore.for_user(user_id, data_dir=settings.data_path, clock=clock)

    api = SyncApiClient(
        APIConfig(
            base_url=settings.api_base_url,
            api_token=settings.api_token,
            timeout=settings.request_timeout,
            probe_timeout=settings.probe_timeout,
        ),
        session=session,
    )

    monitor = NetworkMonitor(
        probe=api.probe,
        base_delay=settings.probe_base_delay,
        max_delay=settings.probe_max_delay,
        max_probe_attempts=settings.max_probe_attempts,
        timer_factory=timer_factory,
        clock=clock,
        reachability_check=reachability_check or partial(
            socket_reachable, settings.api_base_url, settings.probe_timeout
        ),
        check_interval_online=settings.check_interval_online,
        check_interval_offline=settings.check_interval_offline,
        on_thread_exit=store.release_connection,
    )

    offline_flag = StoredOfflineFlag(store)
    gate = OfflineEntitlementGate(
        store,
        is_offline_mode_enabled or offline_flag,
        warn_light_days=settings.warn_light_days,
        warn_urgent_days=settings.warn_urgent_days,
        block_days=settings.block_days,
        clock=clock,
    )

    queue = ActionQueue(store)
    engine = SyncEngine(
        queue,
        store,
        api.send_action,
        monitor,
        fetch_fn=api.fetch_collection,
        collections=list(SyncApiClient.READ_ENDPOINTS),
        max_attempts=settings.max_attempts,
        retry_base_delay=settings.retry_base_delay,
        retry_max_delay=settings.retry_max_delay,
        cache_ttl_minutes=settings.cache_ttl_minutes,
        timer_factory=timer_factory,
        clock=clock,
    )

    logger.info(f"Offline sync service wired for user {user_id} against {settings.api_base_url}")
    return OfflineSyncService(
        user_id,
        store,
        queue,
        monitor,
        engine,
        gate,
        api=api,
        offline_flag=offline_flag,
    )
