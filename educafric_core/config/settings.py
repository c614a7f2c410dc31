# =============================================================================
# educafric_core/config/settings.py
# Offline sync settings (Streamlit secrets -> environment -> defaults)
# =============================================================================
"""
SyncSettings - every tunable of the offline sync core in one place.

Expected secrets.toml format:

    [offline_sync]
    api_base_url = "https://www.educafric.com"
    api_token = "..."
    max_attempts = 5
    warn_light_days = 3
    warn_urgent_days = 7
    block_days = 14

Each key can also be given as an environment variable, upper-cased and
prefixed with ``EDUCAFRIC_`` (e.g. ``EDUCAFRIC_API_BASE_URL``). Secrets win
over the environment, the environment wins over defaults.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging

import streamlit as st

from educafric_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "EDUCAFRIC_"
SECRETS_SECTION = "offline_sync"


@dataclass
class SyncSettings:
    """Configuration for the offline sync core."""

    # Server API
    api_base_url: str = "http://localhost:5000"
    api_token: Optional[str] = None
    request_timeout: float = 30.0
    probe_timeout: float = 3.0

    # Network monitor
    probe_base_delay: float = 2.0
    probe_max_delay: float = 60.0
    max_probe_attempts: int = 6
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0

    # Sync engine
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0
    max_attempts: int = 5
    cache_ttl_minutes: int = 60

    # Offline entitlement (days since last successful sync)
    warn_light_days: int = 3
    warn_urgent_days: int = 7
    block_days: int = 14

    # Local storage and logging
    data_dir: str = "local_data"
    log_level: str = "INFO"
    log_to_file: bool = False

    def __post_init__(self):
        self.validate()

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    def validate(self) -> None:
        """Raise ConfigurationError when a value is out of range."""
        positive = (
            "request_timeout", "probe_timeout", "probe_base_delay",
            "probe_max_delay", "retry_base_delay", "retry_max_delay",
            "check_interval_online", "check_interval_offline",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(
                    f"{name} must be greater than zero",
                    config_key=name,
                    expected_type="positive number",
                )

        for name in ("max_attempts", "max_probe_attempts", "cache_ttl_minutes"):
            if getattr(self, name) < 1:
                raise ConfigurationError(
                    f"{name} must be at least 1",
                    config_key=name,
                    expected_type="int >= 1",
                )

        if self.probe_timeout > self.request_timeout:
            raise ConfigurationError(
                "probe_timeout must not exceed request_timeout",
                config_key="probe_timeout",
            )

        if not (0 <= self.warn_light_days <= self.warn_urgent_days <= self.block_days):
            raise ConfigurationError(
                "Entitlement thresholds must satisfy "
                "0 <= warn_light_days <= warn_urgent_days <= block_days",
                config_key="block_days",
                details={
                    "warn_light_days": self.warn_light_days,
                    "warn_urgent_days": self.warn_urgent_days,
                    "block_days": self.block_days,
                },
            )

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if data.get("api_token"):
            data["api_token"] = "***"
        return data


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a secrets/env value to the type of the field default."""
    if raw is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid value for {name}: {raw!r}",
            config_key=name,
            expected_type=type(default).__name__,
        )
    return str(raw)


def _load_from_secrets() -> Dict[str, Any]:
    """Read the [offline_sync] table from Streamlit secrets if present."""
    try:
        if hasattr(st, "secrets") and SECRETS_SECTION in st.secrets:
            return dict(st.secrets[SECRETS_SECTION])
    except Exception as e:
        # No secrets.toml outside a Streamlit deployment
        logger.debug(f"Streamlit secrets unavailable: {e}")
    return {}


def _load_from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values = {}
    for f in fields(SyncSettings):
        key = f"{ENV_PREFIX}{f.name.upper()}"
        if key in environ:
            values[f.name] = environ[key]
    return values


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    use_secrets: bool = True,
) -> SyncSettings:
    """
    Build SyncSettings from secrets, environment and explicit overrides.

    Args:
        overrides: Values that win over every other source
        environ: Environment mapping (default: os.environ)
        use_secrets: Whether to consult Streamlit secrets

    Returns:
        Validated SyncSettings
    """
    environ = os.environ if environ is None else environ

    raw: Dict[str, Any] = {}
    raw.update(_load_from_env(environ))
    if use_secrets:
        raw.update(_load_from_secrets())
    if overrides:
        raw.update(overrides)

    defaults = SyncSettings.__dataclass_fields__
    unknown = set(raw) - set(defaults)
    if unknown:
        logger.warning(f"Ignoring unknown offline_sync settings: {sorted(unknown)}")

    kwargs = {}
    for name, field_def in defaults.items():
        if name in raw:
            kwargs[name] = _coerce(name, raw[name], field_def.default)

    settings = SyncSettings(**kwargs)
    logger.debug(f"Offline sync settings loaded: {settings.to_dict()}")
    return settings
