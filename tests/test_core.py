"""
Tests for cmdgate Core Module
"""

import pytest

from cmdgate.core.config import (
    Config,
    ExecutionConfig,
    RateLimitConfig,
    SecurityLevel,
    SecurityMode,
)
from cmdgate.core.exceptions import (
    CmdGateError,
    CommandFailedError,
    ConfigurationError,
    CriticalFailureError,
    OutputLimitExceededError,
    PathContainmentError,
    ValidationError,
)


class TestConfig:
    """Tests for configuration management."""

    def test_default_config(self):
        """Test default configuration values."""
        config = Config()

        assert config.mode == SecurityMode.BLOCK
        assert config.enabled is True
        assert config.execution.security_level == SecurityLevel.BALANCED
        assert config.validation.max_command_length == 500
        assert config.rate_limit.burst_limit == 5

    def test_engine_defaults_tighter_than_components(self):
        """Test engine-level defaults are tighter than standalone defaults."""
        config = Config()

        assert config.rate_limit.max_requests < RateLimitConfig().max_requests
        assert config.rate_limit.burst_limit < RateLimitConfig().burst_limit

    def test_config_from_dict(self, tmp_path):
        """Test configuration from dictionary."""
        data = {
            "mode": "monitor",
            "workspace": str(tmp_path),
            "execution": {"security_level": "STRICT", "timeout_ms": 500},
            "rate_limit": {"max_requests": 10},
            "categories": {"never_allow": ["nc"]},
        }

        config = Config.from_dict(data)

        assert config.mode == SecurityMode.MONITOR
        assert config.execution.security_level == SecurityLevel.STRICT
        assert config.execution.timeout_ms == 500
        assert config.execution.max_output_size == ExecutionConfig().max_output_size
        assert config.rate_limit.max_requests == 10
        assert config.categories == {"NEVER_ALLOW": ["nc"]}

    def test_config_from_file(self, config_dir):
        """Test the shipped configuration loads."""
        config = Config.from_file(str(config_dir / "cmdgate.yaml"))

        assert config.mode == SecurityMode.BLOCK
        assert "build-agent" in config.trusted_callers
        assert config.trust.registry_path == "config/trusted-tools.json"

    def test_config_from_missing_file(self, tmp_path):
        """Test loading a missing file raises."""
        with pytest.raises(FileNotFoundError):
            Config.from_file(str(tmp_path / "missing.yaml"))

    def test_config_to_dict(self):
        """Test configuration serialization."""
        data = Config().to_dict()

        assert data["mode"] == "block"
        assert data["execution"]["security_level"] == "BALANCED"
        assert "rate_limit" in data

    def test_apply_env(self, tmp_path):
        """Test environment overrides."""
        config = Config().apply_env({
            "CMDGATE_MODE": "WARN",
            "CMDGATE_SECURITY_LEVEL": "permissive",
            "CMDGATE_WORKSPACE": str(tmp_path),
            "CMDGATE_EXPORT_AUDIT_ON_EXIT": "true",
            "CMDGATE_ENABLED": "no",
        })

        assert config.mode == SecurityMode.WARN
        assert config.execution.security_level == SecurityLevel.PERMISSIVE
        assert config.workspace == str(tmp_path)
        assert config.audit.export_on_exit is True
        assert config.enabled is False

    def test_apply_env_ignores_empty(self):
        """Test empty variables leave values untouched."""
        config = Config().apply_env({"CMDGATE_MODE": ""})

        assert config.mode == SecurityMode.BLOCK

    def test_config_validation(self, tmp_path):
        """Test configuration validation."""
        config = Config(workspace=str(tmp_path))
        assert config.validate() == []

        config.rate_limit.max_requests = 0
        config.categories = {"SOMETIMES": ["ls"]}

        errors = config.validate()

        assert any("rate_limit.max_requests" in e for e in errors)
        assert any("Unknown command category" in e for e in errors)

    def test_config_validation_missing_workspace(self, tmp_path):
        """Test a missing workspace is reported."""
        config = Config(workspace=str(tmp_path / "nope"))

        assert any("Workspace does not exist" in e for e in config.validate())

    def test_invalid_mode_raises(self):
        """Test an unknown mode is rejected at parse time."""
        with pytest.raises(ValueError):
            Config.from_dict({"mode": "lenient"})


class TestExceptions:
    """Tests for exception handling."""

    def test_base_error_to_dict(self):
        """Test base error serialization."""
        error = CmdGateError("boom")

        assert error.to_dict() == {
            "error": "CMDGATE_ERROR",
            "message": "boom",
            "details": {},
        }

    def test_validation_error(self):
        """Test validation error carries errors and warnings."""
        error = ValidationError("bad input", errors=["e1"], warnings=["w1"])

        assert error.code == "VALIDATION_FAILED"
        assert error.errors == ["e1"]
        assert error.to_dict()["details"]["warnings"] == ["w1"]

    def test_containment_is_sandbox_breach(self):
        """Test containment errors classify as sandbox breaches."""
        error = PathContainmentError("escape", path="../x", root="/w")

        assert error.code == "SANDBOX_BREACH"
        assert error.details["root"] == "/w"

    def test_process_errors(self):
        """Test process error codes."""
        failed = CommandFailedError("failed", command="cat", exit_code=1, stderr="nope")
        limited = OutputLimitExceededError("too big", command="cat", limit=10)

        assert failed.code == "PROCESS_ERROR"
        assert failed.exit_code == 1
        assert limited.code == "PROCESS_ERROR"
        assert limited.details["resource"] == "output"

    def test_critical_failure(self):
        """Test critical failure details."""
        error = CriticalFailureError("breach", error_type="SANDBOX_BREACH", error_id="abc")

        assert error.details["severity"] == "CRITICAL"
        assert error.error_id == "abc"

    def test_configuration_error(self):
        """Test configuration error details."""
        error = ConfigurationError("bad", errors=["x"], source="file.yaml")

        assert error.code == "INVALID_CONFIG"
        assert error.details == {"errors": ["x"], "source": "file.yaml"}
        assert isinstance(error, CmdGateError)
