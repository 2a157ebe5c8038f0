"""
Unit tests for environment configuration.
"""

import pytest

from ucaes.acadrec.config import (
    AllocatorConfig,
    EngineConfig,
    ProgressionConfig,
    StorageConfig,
    WorkflowConfig,
)


class TestConfig:
    """Tests for configuration loading and validation."""

    def test_defaults(self, monkeypatch):
        """Defaults apply when nothing is set."""
        for name in (
            "ACADREC_DATA_DIR",
            "ALLOCATOR_PREFIX",
            "ALLOCATOR_FALLBACK_ENABLED",
            "PROGRESSION_MAX_LEVEL",
            "LOG_FORMAT",
        ):
            monkeypatch.delenv(name, raising=False)

        config = EngineConfig.from_env()

        assert config.storage.data_dir == "/var/lib/acadrec"
        assert config.allocator.prefix == ""
        assert config.allocator.fallback_enabled is True
        assert config.progression.max_level == 400
        assert config.observability.log_format == "json"

    def test_from_env(self, monkeypatch, tmp_path):
        """Environment variables override defaults."""
        monkeypatch.setenv("ACADREC_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("ALLOCATOR_MAX_RETRIES", "3")
        monkeypatch.setenv("ALLOCATOR_FALLBACK_ENABLED", "FALSE")
        monkeypatch.setenv("WORKFLOW_MAX_CAS_RETRIES", "7")
        monkeypatch.setenv("PROGRESSION_MAX_LEVEL", "600")

        config = EngineConfig.from_env()

        assert config.storage.data_dir == str(tmp_path)
        assert config.storage.wal_mode is False
        assert config.allocator.max_retries == 3
        assert config.allocator.fallback_enabled is False
        assert config.workflow.max_cas_retries == 7
        assert config.progression.max_level == 600

    def test_validate_rejects_bad_retries(self):
        """Retry bounds must be positive."""
        config = EngineConfig(allocator=AllocatorConfig(max_retries=0))
        with pytest.raises(ValueError, match="ALLOCATOR_MAX_RETRIES"):
            config.validate()

        config = EngineConfig(workflow=WorkflowConfig(max_cas_retries=0))
        with pytest.raises(ValueError, match="WORKFLOW_MAX_CAS_RETRIES"):
            config.validate()

    def test_validate_rejects_inverted_levels(self):
        """min_level may not exceed max_level."""
        config = EngineConfig(progression=ProgressionConfig(min_level=500, max_level=400))
        with pytest.raises(ValueError, match="PROGRESSION_MIN_LEVEL"):
            config.validate()

    def test_validate_rejects_unknown_log_format(self, monkeypatch):
        """LOG_FORMAT must be json or text."""
        monkeypatch.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            EngineConfig.from_env()

    def test_configs_are_frozen(self):
        """Section configs are immutable."""
        config = StorageConfig()
        with pytest.raises(AttributeError):
            config.data_dir = "/tmp"
