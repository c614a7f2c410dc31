# =============================================================================
# educafric_core/offline/sync_engine.py
# Queue Drain, Reconciliation and Retry Scheduling
# =============================================================================
"""
SyncEngine - drives the Action Queue to the server and reconciles replies.

Features:
- Single drain at a time (busy flag); forced calls during a drain queue
  exactly one follow-up pass instead of overlapping
- 2xx reconciled into the cache, 4xx parked as conflicts, 5xx/network
  errors retried with capped exponential backoff, dead letter after
  max_attempts
- Automatic sync when the Network Monitor confirms ONLINE
- Pull of server collections for offline use
- Event callbacks for status changes and conflicts
"""

from __future__ import annotations
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
import logging

from educafric_core.errors import PermanentSyncError, TransientSyncError
from educafric_core.logging import LogContext
from educafric_core.offline.action_queue import ActionQueue, SendFn
from educafric_core.offline.backoff import Cancellable, TimerFactory, TimerSet, backoff_delay
from educafric_core.offline.local_store import LocalDurableStore
from educafric_core.offline.models import (
    DrainReport,
    FailureReason,
    Operation,
    QueuedAction,
    SyncStatus,
)
from educafric_core.offline.network_monitor import NetworkMonitor, NetworkState

logger = logging.getLogger(__name__)

LAST_SERVER_SYNC_KEY = "last_server_sync_at"
LAST_SYNC_TIME_KEY = "last_sync_time"

StatusCallback = Callable[[SyncStatus], None]
ConflictCallback = Callable[[List[QueuedAction], FailureReason], None]


@dataclass
class EngineState:
    """Session-only engine counters."""
    is_syncing: bool = False
    last_sync_time: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    total_synced: int = 0
    retry_attempt: int = 0
    next_retry_delay: Optional[float] = None
    last_report: Optional[DrainReport] = None


class SyncEngine:
    """
    Synchronization engine between the local store and the EDUCAFRIC API.

    Usage:
        engine = SyncEngine(queue, store, api.send_action, monitor)
        engine.start()                 # sync whenever we come back online
        engine.trigger_sync(force=True)  # manual "sync now"
    """

    def __init__(
        self,
        queue: ActionQueue,
        store: LocalDurableStore,
        send_fn: SendFn,
        monitor: NetworkMonitor,
        fetch_fn: Optional[Callable[[str], List[Dict[str, Any]]]] = None,
        collections: Sequence[str] = (),
        max_attempts: int = 5,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 300.0,
        cache_ttl_minutes: int = 60,
        timer_factory: Optional[TimerFactory] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.queue = queue
        self.store = store
        self.monitor = monitor
        self._send_fn = send_fn
        self._fetch_fn = fetch_fn
        self.collections = list(collections)
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.cache_ttl_minutes = cache_ttl_minutes
        self._clock = clock

        self._state = EngineState(last_sync_time=store.get_meta_datetime(LAST_SYNC_TIME_KEY))
        self._busy = threading.Lock()
        self._rerun_requested = False
        self._flag_lock = threading.Lock()
        self._timers = TimerSet(timer_factory, on_done=store.release_connection)
        self._retry_timer: Optional[Cancellable] = None
        self._callbacks: List[StatusCallback] = []
        self._conflict_callbacks: List[ConflictCallback] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state.is_syncing

    @property
    def next_retry_delay(self) -> Optional[float]:
        return self._state.next_retry_delay

    @property
    def last_server_sync_at(self) -> Optional[datetime]:
        return self.store.get_meta_datetime(LAST_SERVER_SYNC_KEY)

    def get_status(self) -> SyncStatus:
        """Current SyncStatus, derived from the queue and the monitor."""
        return SyncStatus(
            is_online=self.monitor.is_online,
            queue_size=self.store.pending_count(),
            is_syncing=self._state.is_syncing,
            last_sync_time=self._state.last_sync_time,
            conflict_count=self.store.failed_count(FailureReason.CONFLICT),
            dead_letter_count=self.store.failed_count(FailureReason.DEAD_LETTER),
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Sync automatically whenever the monitor confirms ONLINE."""
        if self._unsubscribe is None:
            self._unsubscribe = self.monitor.subscribe(self._on_connection_change)
            logger.info("SyncEngine started")

    def close(self) -> None:
        """Cancel timers and stop listening to the monitor."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._timers.cancel_all()
        self._retry_timer = None
        logger.info("SyncEngine stopped")

    def _on_connection_change(self, state: NetworkState) -> None:
        if state == NetworkState.ONLINE:
            logger.info("Connection restored, triggering sync")
            self.trigger_sync()
        else:
            self._cancel_retry()

    # =========================================================================
    # SYNC
    # =========================================================================

    def request_sync(self, delay: float = 0.0) -> None:
        """Run trigger_sync in the background after ``delay`` seconds."""
        self._timers.schedule(delay, self.trigger_sync)

    def trigger_sync(self, force: bool = False) -> bool:
        """
        Drain the queue.

        Args:
            force: Manual "sync now"; runs even when the monitor reports
                offline, and asks for a follow-up pass if a drain is running

        Returns:
            True only if every pending action reached the server
        """
        if not force and not self.monitor.is_online:
            logger.debug("Cannot sync: offline")
            return False

        if self._busy.acquire(blocking=False):
            return self._run_passes()

        if force:
            with self._flag_lock:
                self._rerun_requested = True
            logger.debug("Sync already in progress; follow-up pass requested")
            # The running pass may have released the lock meanwhile
            if self._busy.acquire(blocking=False):
                return self._run_passes()
        return False

    def _run_passes(self) -> bool:
        """Drain until no follow-up pass is pending. The caller holds ``_busy``."""
        while True:
            try:
                with self._flag_lock:
                    self._rerun_requested = False
                success = self._perform_sync()
            finally:
                self._busy.release()

            with self._flag_lock:
                rerun = self._rerun_requested
            if not rerun or not self._busy.acquire(blocking=False):
                return success

    def _perform_sync(self) -> bool:
        self._state.is_syncing = True
        self._notify_callbacks()

        try:
            pending = self.store.pending_count()
            with LogContext(logger, f"Syncing {pending} queued actions"):
                report = self.queue.drain(self._send_fn, max_attempts=self.max_attempts)

            self._reconcile(report)

            now = self._clock()
            self._state.last_sync_time = now
            self._state.last_report = report
            self._state.total_synced += len(report.synced)
            self.store.set_meta_datetime(LAST_SYNC_TIME_KEY, now)

            if report.complete:
                # Only a confirmed server contact resets days offline
                if report.synced or self.monitor.is_online:
                    self._state.last_sync_success = now
                    self.store.set_meta_datetime(LAST_SERVER_SYNC_KEY, now)
                else:
                    logger.debug("Empty drain without server contact; server sync time kept")
                self._state.retry_attempt = 0
                self._state.next_retry_delay = None
                self._cancel_retry()
            elif report.transient_failures:
                self._schedule_retry(report)

            if report.conflicts:
                self._notify_conflicts(report.conflicts, FailureReason.CONFLICT)
            if report.dead_letters:
                self._notify_conflicts(report.dead_letters, FailureReason.DEAD_LETTER)

            logger.info(f"Sync complete: {report.summary()}")
            return report.complete

        finally:
            self._state.is_syncing = False
            self._notify_callbacks()

    def _reconcile(self, report: DrainReport) -> None:
        """Merge server records into the cache and roll back rejected creates."""
        for action, response in report.synced:
            record = response if isinstance(response, dict) else dict(action.payload)
            if action.entity_id is not None and "id" not in record:
                record = {**record, "id": action.entity_id}
            self.store.apply_to_cache(
                action.entity_type.cache_key,
                action.operation,
                record,
                pending_action_id=action.id,
            )

        for action in report.conflicts:
            if action.operation == Operation.CREATE:
                self.store.apply_to_cache(
                    action.entity_type.cache_key,
                    Operation.DELETE,
                    {},
                    pending_action_id=action.id,
                )

    def _schedule_retry(self, report: DrainReport) -> None:
        attempt = report.max_attempt_count
        delay = backoff_delay(attempt - 1, self.retry_base_delay, self.retry_max_delay)
        self._cancel_retry()
        self._state.retry_attempt = attempt
        self._state.next_retry_delay = delay
        self._retry_timer = self._timers.schedule(delay, self._retry_sync)
        logger.info(f"{len(report.transient_failures)} action(s) will retry in {delay:.0f}s")

    def _retry_sync(self) -> None:
        self._retry_timer = None
        self.trigger_sync()

    def _cancel_retry(self) -> None:
        self._timers.cancel(self._retry_timer)
        self._retry_timer = None

    # =========================================================================
    # PULL
    # =========================================================================

    def pull_from_server(self, collections: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """
        Download server collections into the cache.

        Pending optimistic writes are re-applied on top of the fresh data.

        Returns:
            Records pulled per collection (failed collections are omitted)
        """
        if self._fetch_fn is None or not self.monitor.is_online:
            return {}

        pulled: Dict[str, int] = {}
        names = list(collections) if collections is not None else self.collections
        pending = self.store.list_pending_actions()

        for name in names:
            try:
                with LogContext(logger, f"Pulling {name}", level=logging.DEBUG):
                    records = self._fetch_fn(name)
            except (TransientSyncError, PermanentSyncError) as e:
                logger.error(f"Error pulling {name}: {e.message}")
                continue

            self.store.cache_data(name, records, ttl_minutes=self.cache_ttl_minutes)
            for action in pending:
                if action.entity_type.cache_key == name:
                    self.store.apply_to_cache(
                        name, action.operation, action.payload,
                        pending_action_id=action.id, optimistic=True,
                    )
            pulled[name] = len(records)
            logger.info(f"Pulled {len(records)} records into {name}")

        return pulled

    def full_sync(self) -> Dict[str, Any]:
        """Push local changes, then pull fresh collections."""
        stats: Dict[str, Any] = {"pushed": False, "pulled": {}}
        if not self.monitor.is_online:
            return stats

        stats["pushed"] = self.trigger_sync()
        stats["pulled"] = self.pull_from_server()
        return stats

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: StatusCallback) -> None:
        """Register a callback for sync state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: StatusCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def register_conflict_callback(self, callback: ConflictCallback) -> None:
        """Register a callback for actions that need manual resolution."""
        if callback not in self._conflict_callbacks:
            self._conflict_callbacks.append(callback)

    def _notify_callbacks(self) -> None:
        if not self._callbacks:
            return
        status = self.get_status()
        for callback in list(self._callbacks):
            try:
                callback(status)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def _notify_conflicts(self, actions: List[QueuedAction], reason: FailureReason) -> None:
        logger.warning(f"{len(actions)} action(s) need manual resolution ({reason.value})")
        for callback in list(self._conflict_callbacks):
            try:
                callback(list(actions), reason)
            except Exception as e:
                logger.error(f"Error in conflict callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        """Sync status for UI display."""
        status = self.get_status().to_dict()
        status.update({
            "last_success": (
                self._state.last_sync_success.isoformat()
                if self._state.last_sync_success else None
            ),
            "total_synced": self._state.total_synced,
            "next_retry_delay": self._state.next_retry_delay,
        })
        return status
