"""
Unit tests for service configuration.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import get_config


class TestConfig:
    """Test cases for environment-driven configuration."""

    def test_defaults(self):
        """Test defaults apply without environment overrides."""
        config = get_config("access", 8020)
        assert config.service_name == "access"
        assert config.port == 8020
        assert config.suspicious_window_minutes == 30
        assert config.suspicious_threshold == 5
        assert config.default_minimum_rssi == -70

    def test_environment_overrides(self, monkeypatch):
        """Test ACCESS_ prefixed variables override defaults."""
        monkeypatch.setenv("ACCESS_STORAGE_BACKEND", "postgres")
        monkeypatch.setenv("ACCESS_COLLABORATOR_TIMEOUT_SECONDS", "0.5")

        config = get_config("access", 8020)

        assert config.storage_backend == "postgres"
        assert config.collaborator_timeout_seconds == 0.5

    def test_rejects_invalid_values(self, monkeypatch):
        """Test bounds are validated."""
        monkeypatch.setenv("ACCESS_SUSPICIOUS_THRESHOLD", "0")

        with pytest.raises(ValueError):
            get_config("access", 8020)
