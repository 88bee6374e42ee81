"""
Tests for the cmdgate security service
"""

import json
import logging
import logging.handlers
import sys
from unittest.mock import MagicMock

import pytest

from cmdgate.core.config import Config, SecurityLevel, SecurityMode
from cmdgate.core.exceptions import ConfigurationError, UnknownFailureError
from cmdgate.core.service import SecurityService
from cmdgate.executor import ExecutionResult
from cmdgate.policy import PolicyAction


@pytest.fixture(autouse=True)
def _logging(restore_root_logger):
    """Services configure root logging; undo it after each test."""
    yield


@pytest.fixture
def service(config):
    svc = SecurityService(config, environ={})
    yield svc
    svc.remove_error_boundary()


def event_types(service):
    return [e["event_type"] for e in service.engine.get_audit_log()]


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    """Tests for building the service from config."""

    def test_components_share_engine(self, service, workspace):
        """Test the executor runs against the service's engine."""
        assert service.executor.policy is service.engine
        assert service.executor.root == workspace.resolve()

    def test_environment_overrides(self, config):
        """Test CMDGATE_* variables override the config."""
        svc = SecurityService(config, environ={
            "CMDGATE_MODE": "monitor",
            "CMDGATE_SECURITY_LEVEL": "strict",
        })

        assert svc.engine.mode == SecurityMode.MONITOR
        assert svc.executor.security_level == SecurityLevel.STRICT

    def test_invalid_config_rejected(self, tmp_path):
        """Test invalid configuration fails fast."""
        config = Config.from_dict({"workspace": str(tmp_path / "missing")})

        with pytest.raises(ConfigurationError) as exc_info:
            SecurityService(config, environ={})

        assert any("Workspace does not exist" in e for e in exc_info.value.errors)

    @pytest.mark.asyncio
    async def test_trusted_caller_tokens(self, config):
        """Test configured trusted callers receive working tokens."""
        config.trusted_callers = ["build-agent"]
        svc = SecurityService(config, environ={})
        token = svc.caller_tokens["build-agent"]

        decision = await svc.engine.validate_command_execution(
            "ls", ["-la"], {"caller_token": token}
        )

        assert decision.action == PolicyAction.ALLOW
        assert decision.metadata["trusted_caller"] == "build-agent"


# =============================================================================
# Logging
# =============================================================================


class TestLogging:
    """Tests for applying the logging section."""

    def test_config_level_applied(self, config, restore_root_logger):
        """Test the service configures root logging from its config."""
        config.logging.level = "ERROR"
        SecurityService(config, environ={})

        assert restore_root_logger.level == logging.ERROR
        assert len(restore_root_logger.handlers) == 1

    def test_env_level_applied(self, config, restore_root_logger):
        """Test CMDGATE_LOG_LEVEL wins over the config file."""
        config.logging.level = "ERROR"
        SecurityService(config, environ={"CMDGATE_LOG_LEVEL": "DEBUG"})

        assert restore_root_logger.level == logging.DEBUG

    def test_log_file_handler(self, config, tmp_path, restore_root_logger):
        """Test a configured log file gets a rotating handler."""
        config.logging.log_file = str(tmp_path / "cmdgate.log")
        config.logging.json_format = True
        SecurityService(config, environ={})

        handlers = restore_root_logger.handlers
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in handlers)
        for h in handlers:
            h.close()

    def test_opt_out(self, config, restore_root_logger):
        """Test configure_logging=False leaves root logging untouched."""
        handlers = list(restore_root_logger.handlers)
        level = restore_root_logger.level
        config.logging.level = "DEBUG"

        SecurityService(config, environ={}, configure_logging=False)

        assert restore_root_logger.handlers == handlers
        assert restore_root_logger.level == level


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_stop(self, service):
        """Test running state follows start and stop."""
        await service.start()
        assert service.get_security_status()["running"] is True

        await service.stop()
        assert service.get_security_status()["running"] is False

    @pytest.mark.asyncio
    async def test_execute_through_service(self, service):
        """Test the executor works once started."""
        await service.start()
        try:
            result = await service.executor.execute("cat", ["notes.txt"])
        finally:
            await service.stop()

        assert isinstance(result, ExecutionResult)
        assert result.output.startswith("alpha")

    @pytest.mark.asyncio
    async def test_export_on_exit(self, config, tmp_path):
        """Test the audit log is exported on shutdown when configured."""
        export_path = tmp_path / "out" / "audit.json"
        config.audit.export_on_exit = True
        config.audit.export_path = str(export_path)
        svc = SecurityService(config, environ={})

        await svc.start()
        await svc.engine.validate_command_execution("sudo", ["ls"])
        await svc.stop()

        data = json.loads(export_path.read_text())
        assert "metrics" in data
        assert any(e["event_type"] == "BLOCKED" for e in data["audit_log"])


# =============================================================================
# Error boundary
# =============================================================================


class TestErrorBoundary:
    """Tests for process-wide uncaught exception hooks."""

    def test_install_once(self, service, config, monkeypatch):
        """Test only the first service installs the hooks."""
        previous = MagicMock()
        monkeypatch.setattr(sys, "excepthook", previous)

        assert service.install_error_boundary() is True
        assert SecurityService(config, environ={}).install_error_boundary() is False

        service.remove_error_boundary()
        assert sys.excepthook is previous

    def test_uncaught_exception_audited(self, service, monkeypatch):
        """Test uncaught exceptions are audited then chained."""
        previous = MagicMock()
        monkeypatch.setattr(sys, "excepthook", previous)
        service.install_error_boundary()

        error = RuntimeError("boom password=hunter22")
        sys.excepthook(RuntimeError, error, None)
        service.remove_error_boundary()

        entry = service.engine.get_audit_log()[-1]
        assert entry["event_type"] == "UNCAUGHT_EXCEPTION"
        assert "hunter22" not in entry["data"]["message"]
        previous.assert_called_once_with(RuntimeError, error, None)

    def test_loop_exception_handler(self, service):
        """Test unhandled task exceptions are audited."""
        loop = MagicMock()

        service._loop_exception_handler(loop, {"exception": ValueError("bad")})

        assert "UNHANDLED_TASK_EXCEPTION" in event_types(service)
        loop.default_exception_handler.assert_called_once()


# =============================================================================
# Tool middleware
# =============================================================================


class TestSecureTool:
    """Tests for the secure_tool decorator."""

    @pytest.mark.asyncio
    async def test_success(self, service):
        """Test successful calls are audited."""
        @service.secure_tool("lookup")
        async def lookup(key):
            return key.upper()

        assert await lookup("abc") == "ABC"
        assert event_types(service)[-2:] == ["TOOL_START", "TOOL_SUCCESS"]
        assert lookup.__name__ == "lookup"

    @pytest.mark.asyncio
    async def test_input_error_reraised(self, service):
        """Test input errors propagate unchanged."""
        @service.secure_tool("parse")
        async def parse(text):
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await parse("x")

        assert "TOOL_ERROR" in event_types(service)

    @pytest.mark.asyncio
    async def test_unknown_error_classified(self, service):
        """Test unclassified errors are raised as classified failures."""
        @service.secure_tool("flaky")
        async def flaky():
            raise RuntimeError("weird")

        with pytest.raises(UnknownFailureError) as exc_info:
            await flaky()

        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_arguments_redacted(self, service):
        """Test audited arguments are redacted."""
        @service.secure_tool("login")
        async def login(credentials):
            return True

        await login("password=hunter22")

        start = [e for e in service.engine.get_audit_log() if e["event_type"] == "TOOL_START"][-1]
        assert "hunter22" not in start["data"]["args"]


# =============================================================================
# Administration
# =============================================================================


class TestAdministration:
    """Tests for status and emergency controls."""

    def test_status(self, service):
        """Test the status snapshot."""
        status = service.get_security_status()

        assert status["enabled"] is True
        assert status["mode"] == "block"
        assert status["security_level"] == "BALANCED"
        assert status["audit_chain_valid"] is True
        assert "engine" in status["metrics"]

    def test_emergency_disable(self, service):
        """Test emergency disable turns enforcement off and is audited."""
        message = service.emergency_disable("incident 42")

        assert message == "Security framework disabled"
        assert service.engine.enabled is False
        assert "EMERGENCY_DISABLE" in event_types(service)

    def test_export_audit_log(self, service, tmp_path):
        """Test manual audit export."""
        path = service.export_audit_log(str(tmp_path / "audit.json"))

        assert path.exists()
        exported = json.loads(path.read_text())["audit_log"]
        assert len(exported) == len(service.engine.get_audit_log(10000))
