# =============================================================================
# educafric_core/errors/handlers.py
# Error surfacing for the sync status panel
# =============================================================================

from __future__ import annotations
import traceback
from typing import Optional
import streamlit as st

from educafric_core.logging import get_logger
from .exceptions import EducafricError, EntitlementError, PersistenceError

logger = get_logger(__name__)


def user_message_for(error: Exception) -> str:
    """Short text shown to the user for a queue or sync error."""
    if isinstance(error, EntitlementError):
        return f"Offline mode unavailable: {error.message}"
    if isinstance(error, PersistenceError):
        return f"Could not save on this device: {error.message}"
    if isinstance(error, EducafricError):
        return error.message
    return str(error)


def handle_error(
    error: Exception,
    show_user_message: bool = True,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> None:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        show_user_message: Whether to display error to user via st.error
        log_error: Whether to log the error
        user_message: Custom message to show user (derived from error if None)
    """
    if isinstance(error, EducafricError):
        message = user_message or user_message_for(error)
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}
        recoverable = True

    if log_error:
        logger.error(
            f"[{code}] {message}",
            extra={"details": details},
            exc_info=error,
        )

    if show_user_message:
        if recoverable:
            st.error(message)
        else:
            st.error(f"{message}. Your changes were not saved.")

        if details and st.session_state.get("debug_mode", False):
            with st.expander("Error Details", expanded=False):
                st.json(details)


class ErrorContext:
    """
    Context manager that logs an operation and surfaces failures in the UI.

    Usage:
        with ErrorContext("Manual sync"):
            service.trigger_sync(force=True)
    """

    def __init__(
        self,
        operation: str,
        recoverable: bool = True,
        show_success: bool = False,
        success_message: Optional[str] = None,
    ):
        self.operation = operation
        self.recoverable = recoverable
        self.show_success = show_success
        self.success_message = success_message

    def __enter__(self) -> ErrorContext:
        logger.info(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            if isinstance(exc_val, EducafricError):
                handle_error(exc_val)
            else:
                handle_error(
                    exc_val,
                    user_message=f"Error during: {self.operation}",
                )
            return self.recoverable

        logger.info(f"Completed: {self.operation}")
        if self.show_success:
            st.success(self.success_message or f"{self.operation} completed")
        return False
