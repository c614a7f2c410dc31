# =============================================================================
# educafric_core/errors/exceptions.py
# Custom Exception Hierarchy for the EDUCAFRIC offline sync core
# =============================================================================

from typing import Optional, Dict, Any


class EducafricError(Exception):
    """
    Base exception for all EDUCAFRIC offline errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "SYNC_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "EDU_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# LOCAL STORE EXCEPTIONS
# =============================================================================

class PersistenceError(EducafricError):
    """Raised when the local durable store is unavailable or full"""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        db_path: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table
        if db_path:
            details["db_path"] = db_path

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


class ActionValidationError(EducafricError):
    """Raised when an action cannot be queued because it is malformed"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = repr(value)

        super().__init__(
            message=message,
            code="QUEUE_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# SYNC EXCEPTIONS
# =============================================================================

class TransientSyncError(EducafricError):
    """Network failure or server 5xx; the action stays queued and is retried"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint

        super().__init__(
            message=message,
            code="SYNC_001",
            details=details,
            **kwargs,
        )
        self.status_code = status_code


class PermanentSyncError(EducafricError):
    """Server rejected the action (4xx); it needs manual resolution"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint

        super().__init__(
            message=message,
            code="SYNC_002",
            details=details,
            **kwargs,
        )
        self.status_code = status_code


# =============================================================================
# ENTITLEMENT EXCEPTIONS
# =============================================================================

class EntitlementError(EducafricError):
    """Raised when an offline write is not permitted for the session"""

    def __init__(
        self,
        message: str,
        days_offline: Optional[int] = None,
        limit_days: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if days_offline is not None:
            details["days_offline"] = days_offline
        if limit_days is not None:
            details["limit_days"] = limit_days

        super().__init__(
            message=message,
            code="ENT_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(EducafricError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
