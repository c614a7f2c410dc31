# =============================================================================
# educafric_core/ui/sync_panel.py
# Sidebar panel: connection badge, pending queue, conflicts, offline warnings
# =============================================================================

from __future__ import annotations
from typing import Optional, Tuple

import pandas as pd
import streamlit as st

from educafric_core.errors.handlers import ErrorContext
from educafric_core.offline.models import (
    FailureReason,
    OfflineEntitlementState,
    SyncStatus,
    WarningLevel,
)
from educafric_core.offline.service import OfflineSyncService

# (color, icon, label)
_BADGES = {
    "online": ("#22c55e", "🟢", "Online"),
    "syncing": ("#3b82f6", "🔄", "Syncing"),
    "offline": ("#f59e0b", "🟠", "Offline"),
}

FAILED_COLUMNS = ["id", "entity_type", "operation", "entity_id", "status_code", "last_error", "failed_at"]


def badge_for(status: SyncStatus) -> Tuple[str, str, str]:
    if status.is_syncing:
        return _BADGES["syncing"]
    if status.is_online:
        return _BADGES["online"]
    return _BADGES["offline"]


def banner_for(state: OfflineEntitlementState) -> Optional[Tuple[str, str]]:
    """
    Warning banner for the entitlement state.

    Returns:
        (streamlit level, message) or None when nothing needs showing
    """
    days = state.days_offline
    if not state.offline_mode_enabled:
        return None
    if state.warning_level == WarningLevel.BLOCKED:
        return (
            "error",
            f"Offline for {days} days. This device is read-only until it syncs with the server.",
        )
    if state.warning_level == WarningLevel.URGENT:
        return (
            "warning",
            f"Offline for {days} days. Connect soon: editing will be blocked after a few more days.",
        )
    if state.warning_level == WarningLevel.LIGHT:
        return ("info", f"Offline for {days} days. Remember to connect and sync.")
    return None


def _render_badge(status: SyncStatus) -> None:
    color, icon, label = badge_for(status)
    last = status.last_sync_time.strftime("%d/%m %H:%M") if status.last_sync_time else "never"
    st.sidebar.markdown(
        f"""
        <div style='
            margin: 0.5rem 0;
            padding: 0.75rem;
            border-radius: 10px;
            background: rgba(100, 116, 139, 0.1);
            border: 1px solid {color}33;
        '>
            <div style='display: flex; align-items: center; gap: 0.5rem;'>
                <span style='font-size: 1rem;'>{icon}</span>
                <span style='color: {color}; font-size: 0.8rem; font-weight: 600;'>{label}</span>
            </div>
            <div style='color: #94a3b8; font-size: 0.75rem; margin-top: 0.5rem;'>
                Last sync: {last}
            </div>
        </div>
        """,
        unsafe_allow_html=True,
    )


def _render_failed(service: OfflineSyncService, reason: FailureReason, title: str) -> None:
    frame: pd.DataFrame = service.store.failed_frame(reason)
    if frame.empty:
        return

    with st.sidebar.expander(f"{title} ({len(frame)})", expanded=False):
        st.dataframe(frame[FAILED_COLUMNS], use_container_width=True, hide_index=True)
        action_id = st.selectbox(
            "Action",
            frame["id"].tolist(),
            key=f"failed_select_{reason.value}",
        )
        col_retry, col_discard = st.columns(2)
        if col_retry.button("Retry", key=f"retry_{reason.value}", use_container_width=True):
            with ErrorContext(f"Retry action #{action_id}"):
                service.retry_failed(int(action_id))
            st.rerun()
        if col_discard.button("Discard", key=f"discard_{reason.value}", use_container_width=True):
            with ErrorContext(f"Discard action #{action_id}"):
                service.resolve_failed(int(action_id))
            st.rerun()


def render_sync_panel(service: OfflineSyncService) -> None:
    """Render the offline sync panel in the sidebar."""
    status = service.get_status()
    entitlement = service.entitlement_state()

    st.sidebar.markdown("### Sync")
    _render_badge(status)

    col_pending, col_failed = st.sidebar.columns(2)
    col_pending.metric("Pending", status.queue_size)
    col_failed.metric("Need review", status.conflict_count + status.dead_letter_count)

    if st.sidebar.button("🔄 Sync now", use_container_width=True, key="sync_now_btn"):
        with ErrorContext("Manual sync"):
            with st.spinner("Syncing..."):
                ok = service.trigger_sync(force=True)
            if ok:
                st.sidebar.success("Everything is synced")
            else:
                st.sidebar.warning("Some changes could not be synced yet")

    if not status.is_online:
        banner = banner_for(entitlement)
        if banner is not None:
            level, message = banner
            getattr(st.sidebar, level)(message)
        elif not entitlement.offline_mode_enabled:
            st.sidebar.info("Offline editing is not enabled for your school.")

    _render_failed(service, FailureReason.CONFLICT, "Conflicts")
    _render_failed(service, FailureReason.DEAD_LETTER, "Failed to send")
