# =============================================================================
# educafric_core/offline/network_monitor.py
# Connectivity State Machine (Online / Offline / Probing)
# =============================================================================
"""
NetworkMonitor - single source of truth for online/offline transitions.

Features:
- Offline events apply immediately (a false "offline" is always safe)
- Online events are only trusted after a health probe succeeds
- Failed probes retry with capped exponential backoff, then give up until
  the next online event
- Listeners get the current state on subscribe and every confirmed change
- Optional polling loop that turns socket reachability into events
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import urlparse
import logging

from educafric_core.offline.backoff import Cancellable, TimerFactory, TimerSet, backoff_delay

logger = logging.getLogger(__name__)


class NetworkState(Enum):
    """Connectivity states."""
    ONLINE = "online"       # Confirmed by a successful probe
    OFFLINE = "offline"     # OS said offline, or probing failed
    PROBING = "probing"     # OS said online, probe in flight


@dataclass
class MonitorSnapshot:
    """Current monitor state with metadata."""
    state: NetworkState = NetworkState.OFFLINE
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    probe_attempt: int = 0
    consecutive_failures: int = 0
    next_retry_delay: Optional[float] = None
    error_message: Optional[str] = None


Listener = Callable[[NetworkState], None]


def socket_reachable(base_url: str, timeout: float = 3.0) -> bool:
    """
    Cheap TCP reachability check against the API host.

    Used by the polling loop to raise online/offline events; the real
    confirmation is still the HTTP health probe.
    """
    parsed = urlparse(base_url)
    host = parsed.hostname
    if not host:
        return False
    port = parsed.port or (443 if parsed.scheme == "https" else 80)

    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except (socket.error, socket.timeout, OSError):
        return False


class NetworkMonitor:
    """
    Connectivity monitor with probe-before-online semantics.

    Usage:
        monitor = NetworkMonitor(probe=api.probe)
        unsubscribe = monitor.subscribe(lambda state: print(state))
        monitor.handle_online_event()   # -> PROBING -> ONLINE / OFFLINE
    """

    def __init__(
        self,
        probe: Callable[[], bool],
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        max_probe_attempts: int = 6,
        timer_factory: Optional[TimerFactory] = None,
        clock: Callable[[], datetime] = datetime.now,
        reachability_check: Optional[Callable[[], bool]] = None,
        check_interval_online: float = 30.0,
        check_interval_offline: float = 10.0,
        on_thread_exit: Optional[Callable[[], None]] = None,
    ):
        self._probe = probe
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_probe_attempts = max_probe_attempts
        self._clock = clock
        self._reachability_check = reachability_check
        self.check_interval_online = check_interval_online
        self.check_interval_offline = check_interval_offline

        self._snapshot = MonitorSnapshot()
        self._confirmed = NetworkState.OFFLINE
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()
        self._on_thread_exit = on_thread_exit
        self._timers = TimerSet(timer_factory, on_done=on_thread_exit)
        self._retry_timer: Optional[Cancellable] = None
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()
        self._closed = False

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def snapshot(self) -> MonitorSnapshot:
        return self._snapshot

    @property
    def state(self) -> NetworkState:
        return self._snapshot.state

    @property
    def is_online(self) -> bool:
        return self._snapshot.state == NetworkState.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._snapshot.state != NetworkState.ONLINE

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer is not None

    # =========================================================================
    # EVENTS
    # =========================================================================

    def handle_offline_event(self, reason: str = "os") -> None:
        """Go offline immediately and drop any scheduled probe."""
        with self._lock:
            self._cancel_retry()
            self._snapshot.state = NetworkState.OFFLINE
            self._snapshot.probe_attempt = 0
            self._snapshot.next_retry_delay = None
            self._snapshot.last_check = self._clock()
        logger.info(f"Offline event ({reason})")
        self._confirm(NetworkState.OFFLINE)

    def handle_online_event(self) -> bool:
        """
        Start probing after an OS-level "online" signal.

        Returns:
            True if the probe confirmed connectivity
        """
        with self._lock:
            if self._closed or self._snapshot.state in (NetworkState.ONLINE, NetworkState.PROBING):
                return self.is_online
            self._cancel_retry()
            self._snapshot.probe_attempt = 0
            self._snapshot.next_retry_delay = None
        return self._run_probe()

    def _retry_probe(self) -> None:
        with self._lock:
            self._retry_timer = None
            if self._closed or self._snapshot.state != NetworkState.OFFLINE:
                return
        self._run_probe()

    def _run_probe(self) -> bool:
        with self._lock:
            if self._snapshot.state == NetworkState.PROBING:
                return False
            self._snapshot.state = NetworkState.PROBING

        try:
            reachable = bool(self._probe())
            error = None if reachable else "Health probe returned a failure"
        except Exception as e:
            reachable = False
            error = str(e)
            logger.debug(f"Health probe raised: {e}")

        with self._lock:
            now = self._clock()
            self._snapshot.last_check = now
            if self._snapshot.state != NetworkState.PROBING:
                # An offline event arrived while the probe was in flight
                return False

            if reachable:
                self._snapshot.state = NetworkState.ONLINE
                self._snapshot.last_online = now
                self._snapshot.probe_attempt = 0
                self._snapshot.consecutive_failures = 0
                self._snapshot.next_retry_delay = None
                self._snapshot.error_message = None
            else:
                self._snapshot.state = NetworkState.OFFLINE
                self._snapshot.error_message = error
                self._snapshot.consecutive_failures += 1
                self._snapshot.probe_attempt += 1
                self._schedule_retry()

        self._confirm(NetworkState.ONLINE if reachable else NetworkState.OFFLINE)
        return reachable

    def _schedule_retry(self) -> None:
        attempt = self._snapshot.probe_attempt
        if attempt >= self.max_probe_attempts:
            self._snapshot.next_retry_delay = None
            logger.warning(
                f"Health probe failed {attempt} times; waiting for the next online event"
            )
            return

        delay = backoff_delay(attempt - 1, self.base_delay, self.max_delay)
        self._snapshot.next_retry_delay = delay
        self._retry_timer = self._timers.schedule(delay, self._retry_probe)
        logger.debug(f"Probe retry {attempt} scheduled in {delay:.1f}s")

    def _cancel_retry(self) -> None:
        self._timers.cancel(self._retry_timer)
        self._retry_timer = None

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """
        Register a listener; it is called at once with the current state.

        Returns:
            Function that removes the listener
        """
        with self._lock:
            if callback not in self._listeners:
                self._listeners.append(callback)
            current = self._confirmed
        self._invoke(callback, current)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _confirm(self, state: NetworkState) -> None:
        with self._lock:
            if state == self._confirmed:
                return
            old = self._confirmed
            self._confirmed = state
            listeners = list(self._listeners)
        logger.info(f"Connection status changed: {old.value} -> {state.value}")
        for callback in listeners:
            self._invoke(callback, state)

    @staticmethod
    def _invoke(callback: Listener, state: NetworkState) -> None:
        try:
            callback(state)
        except Exception as e:
            logger.error(f"Error in connection listener: {e}", exc_info=True)

    # =========================================================================
    # POLLING LOOP
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start the background reachability loop (needs reachability_check)."""
        if self._reachability_check is None:
            logger.debug("No reachability check configured; monitoring loop not started")
            return
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="NetworkMonitor",
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        self._stop_monitoring.set()
        if self._monitor_thread and self._monitor_thread is not threading.current_thread():
            self._monitor_thread.join(timeout=5)
        self._monitor_thread = None
        logger.debug("Connection monitoring stopped")

    def poll_once(self) -> None:
        """One iteration of the polling loop: translate reachability into events."""
        if self._reachability_check is None:
            return
        try:
            reachable = bool(self._reachability_check())
        except Exception as e:
            logger.error(f"Error in reachability check: {e}")
            reachable = False

        if self.is_online and not reachable:
            self.handle_offline_event(reason="poll")
        elif self.state == NetworkState.OFFLINE and reachable and not self.retry_pending:
            self.handle_online_event()

    def _monitoring_loop(self) -> None:
        try:
            while not self._stop_monitoring.is_set():
                interval = (
                    self.check_interval_online
                    if self.is_online
                    else self.check_interval_offline
                )
                if self._stop_monitoring.wait(timeout=interval):
                    break
                self.poll_once()
        finally:
            if self._on_thread_exit is not None:
                self._on_thread_exit()

    # =========================================================================
    # MISC
    # =========================================================================

    def force_offline(self) -> None:
        """Force offline mode (user preference or tests)."""
        self.handle_offline_event(reason="forced")

    def close(self) -> None:
        """Cancel timers, stop polling and drop listeners."""
        with self._lock:
            self._closed = True
            self._retry_timer = None
            self._listeners.clear()
        self._timers.cancel_all()
        self.stop_monitoring()

    def get_status_display(self) -> dict:
        """Status information for UI display."""
        snap = self._snapshot
        return {
            "status": snap.state.value,
            "is_online": self.is_online,
            "last_check": snap.last_check.isoformat() if snap.last_check else None,
            "last_online": snap.last_online.isoformat() if snap.last_online else None,
            "failures": snap.consecutive_failures,
            "next_retry_delay": snap.next_retry_delay,
            "error": snap.error_message,
        }
