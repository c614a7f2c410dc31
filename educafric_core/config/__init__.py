# educafric_core/config/__init__.py
"""
Configuration for the offline sync core.
"""
from .settings import SyncSettings, load_settings

__all__ = ["SyncSettings", "load_settings"]
