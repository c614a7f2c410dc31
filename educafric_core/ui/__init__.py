# educafric_core/ui/__init__.py
"""
Streamlit components for the offline sync core.
"""
from .sync_panel import render_sync_panel, badge_for, banner_for

__all__ = ["render_sync_panel", "badge_for", "banner_for"]
