# =============================================================================
# tests/unit/test_settings.py
# Unit Tests for SyncSettings loading and validation
# =============================================================================

import pytest

from educafric_core.config import SyncSettings, load_settings
from educafric_core.errors import ConfigurationError


class TestDefaults:
    """Test default values"""

    def test_defaults_are_valid(self):
        settings = SyncSettings()

        assert settings.max_attempts == 5
        assert settings.probe_timeout == 3.0
        assert settings.request_timeout == 30.0
        assert (settings.warn_light_days, settings.warn_urgent_days, settings.block_days) == (3, 7, 14)

    def test_token_masked_in_dict(self):
        settings = SyncSettings(api_token="secret")

        assert settings.to_dict()["api_token"] == "***"


class TestValidation:
    """Test ConfigurationError on bad values"""

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ConfigurationError) as exc_info:
            SyncSettings(warn_light_days=8, warn_urgent_days=7)

        assert exc_info.value.code == "CONFIG_001"

    def test_max_attempts_at_least_one(self):
        with pytest.raises(ConfigurationError):
            SyncSettings(max_attempts=0)

    def test_probe_timeout_not_longer_than_request_timeout(self):
        with pytest.raises(ConfigurationError):
            SyncSettings(probe_timeout=60, request_timeout=30)


class TestLoading:
    """Test environment and override precedence"""

    def test_environment_values_are_coerced(self):
        env = {
            "EDUCAFRIC_API_BASE_URL": "https://www.educafric.com",
            "EDUCAFRIC_MAX_ATTEMPTS": "8",
            "EDUCAFRIC_LOG_TO_FILE": "true",
        }

        settings = load_settings(environ=env, use_secrets=False)

        assert settings.api_base_url == "https://www.educafric.com"
        assert settings.max_attempts == 8
        assert settings.log_to_file is True

    def test_overrides_win(self):
        settings = load_settings(
            overrides={"block_days": 21},
            environ={"EDUCAFRIC_BLOCK_DAYS": "10"},
            use_secrets=False,
        )

        assert settings.block_days == 21

    def test_invalid_number_raises(self):
        with pytest.raises(ConfigurationError):
            load_settings(environ={"EDUCAFRIC_MAX_ATTEMPTS": "many"}, use_secrets=False)

    def test_unknown_keys_ignored(self):
        settings = load_settings(overrides={"colour": "blue"}, environ={}, use_secrets=False)

        assert not hasattr(settings, "colour")
