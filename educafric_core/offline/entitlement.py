# =============================================================================
# educafric_core/offline/entitlement.py
# Offline Entitlement Gate
# =============================================================================
"""
Decides whether writes are allowed while offline and which warning to show.

Offline mode is a school-level premium feature. The longer a device goes
without talking to the server, the louder the warning:

    days_offline < light           -> none
    light  <= days_offline < urgent -> light
    urgent <= days_offline < block  -> urgent
    days_offline >= block           -> blocked (offline writes refused)
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union
import logging

from educafric_core.errors import EntitlementError, PermanentSyncError, TransientSyncError
from educafric_core.offline.local_store import LocalDurableStore
from educafric_core.offline.models import OfflineEntitlementState, WarningLevel
from educafric_core.offline.sync_engine import LAST_SERVER_SYNC_KEY

logger = logging.getLogger(__name__)

OFFLINE_ENABLED_KEY = "offline_enabled"
STALE_AFTER_DAYS = 7


class StoredOfflineFlag:
    """
    Default ``is_offline_mode_enabled`` collaborator.

    Reads the flag persisted in sync_meta; ``refresh()`` updates it from the
    user's profile and keeps the last known value when the server is
    unreachable.
    """

    def __init__(self, store: LocalDurableStore):
        self.store = store

    def __call__(self, user_id: Optional[int] = None) -> bool:
        return bool(self.store.get_meta(OFFLINE_ENABLED_KEY, False))

    def refresh(self, api) -> bool:
        try:
            profile = api.fetch_profile()
        except (TransientSyncError, PermanentSyncError) as e:
            logger.warning(f"Could not refresh offline flag, keeping stored value: {e.message}")
            return self()

        school = profile.get("school") or {}
        if "offlineEnabled" in school:
            enabled = bool(school["offlineEnabled"])
        else:
            # Older profiles carried the flag in metadata
            metadata = profile.get("metadata") or {}
            enabled = bool(metadata.get("offlineEnabled", self()))

        self.store.set_meta(OFFLINE_ENABLED_KEY, enabled)
        logger.info(f"Offline mode {'enabled' if enabled else 'disabled'} for this school")
        return enabled


class OfflineEntitlementGate:
    """
    Pure evaluation of the offline entitlement from ``last_server_sync_at``.

    Usage:
        gate = OfflineEntitlementGate(store, StoredOfflineFlag(store))
        gate.evaluate(user_id).warning_level
        gate.check_write(user_id)   # raises EntitlementError when blocked
    """

    def __init__(
        self,
        store: LocalDurableStore,
        is_offline_mode_enabled: Callable[[Optional[int]], bool],
        warn_light_days: int = 3,
        warn_urgent_days: int = 7,
        block_days: int = 14,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self._is_enabled = is_offline_mode_enabled
        self.warn_light_days = warn_light_days
        self.warn_urgent_days = warn_urgent_days
        self.block_days = block_days
        self._clock = clock

    def days_offline(self, last_sync: Optional[datetime] = None) -> int:
        if last_sync is None:
            last_sync = self.store.get_meta_datetime(LAST_SERVER_SYNC_KEY)
        if last_sync is None:
            return 0
        return max(0, (self._clock() - last_sync).days)

    def warning_level_for(self, days: int) -> WarningLevel:
        if days >= self.block_days:
            return WarningLevel.BLOCKED
        if days >= self.warn_urgent_days:
            return WarningLevel.URGENT
        if days >= self.warn_light_days:
            return WarningLevel.LIGHT
        return WarningLevel.NONE

    def evaluate(self, user_id: Optional[int] = None) -> OfflineEntitlementState:
        """Current entitlement state. No side effects."""
        last_sync = self.store.get_meta_datetime(LAST_SERVER_SYNC_KEY)
        days = self.days_offline(last_sync)
        return OfflineEntitlementState(
            days_offline=days,
            last_server_sync_at=last_sync,
            warning_level=self.warning_level_for(days),
            offline_mode_enabled=bool(self._is_enabled(user_id)),
        )

    def check_write(self, user_id: Optional[int] = None) -> OfflineEntitlementState:
        """
        Ensure an offline write is permitted.

        Raises:
            EntitlementError: Offline mode disabled, or offline too long
        """
        state = self.evaluate(user_id)
        if not state.offline_mode_enabled:
            raise EntitlementError(
                "Offline mode is not enabled for your school",
                days_offline=state.days_offline,
            )
        if state.warning_level == WarningLevel.BLOCKED:
            raise EntitlementError(
                f"Offline for {state.days_offline} days; reconnect to keep editing",
                days_offline=state.days_offline,
                limit_days=self.block_days,
            )
        return state

    def data_age(self) -> Dict[str, Any]:
        """How old the local data is, as shown on the offline screen."""
        last_sync = self.store.get_meta_datetime(LAST_SERVER_SYNC_KEY)
        if last_sync is None:
            return {"last_sync": None, "age_days": None, "is_stale": True}

        age_days = self.days_offline(last_sync)
        return {
            "last_sync": last_sync.isoformat(),
            "age_days": age_days,
            "is_stale": age_days > STALE_AFTER_DAYS,
        }


def state_to_dict(state: OfflineEntitlementState) -> Dict[str, Union[int, str, bool, None]]:
    return {
        "days_offline": state.days_offline,
        "last_server_sync_at": (
            state.last_server_sync_at.isoformat() if state.last_server_sync_at else None
        ),
        "warning_level": state.warning_level.value,
        "offline_mode_enabled": state.offline_mode_enabled,
        "writes_allowed": state.writes_allowed,
    }
