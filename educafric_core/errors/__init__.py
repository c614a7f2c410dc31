# =============================================================================
# educafric_core/errors/__init__.py
# Centralized Error Handling for the offline sync core
# =============================================================================

from .exceptions import (
    EducafricError,
    PersistenceError,
    ActionValidationError,
    TransientSyncError,
    PermanentSyncError,
    EntitlementError,
    ConfigurationError,
)

__all__ = [
    "EducafricError",
    "PersistenceError",
    "ActionValidationError",
    "TransientSyncError",
    "PermanentSyncError",
    "EntitlementError",
    "ConfigurationError",
]
