"""
Tests for the cmdgate command-line interface
"""

import json
import logging

import pytest
import yaml

from cmdgate.cli import create_parser, main
from cmdgate.observability import JSONFormatter


@pytest.fixture(autouse=True)
def _logging(restore_root_logger):
    """main() reconfigures root logging; undo it after each test."""
    yield


@pytest.fixture
def config_file(tmp_path, workspace):
    path = tmp_path / "cmdgate.yaml"
    path.write_text(yaml.safe_dump({
        "mode": "block",
        "workspace": str(workspace),
        "verify_tools": False,
    }))
    return path


class TestParser:
    """Tests for argument parsing."""

    def test_remainder_keeps_flags(self):
        """Test command flags are passed through, not parsed."""
        args = create_parser().parse_args(["check", "ls", "-la"])

        assert args.cmd == "ls"
        assert args.cmd_args == ["-la"]

    def test_no_command(self, capsys):
        """Test running without a subcommand fails."""
        assert main([]) == 1
        assert "No command specified" in capsys.readouterr().out


class TestCheck:
    """Tests for the check command."""

    def test_blocked(self, capsys):
        """Test blocked commands exit non-zero."""
        assert main(["check", "sudo", "ls"]) == 1

        decision = json.loads(capsys.readouterr().out)
        assert decision["action"] == "BLOCK"
        assert decision["hard_block"] is True

    def test_needs_validation(self, capsys):
        """Test category policy output for an ordinary command."""
        assert main(["check", "ls", "-la"]) == 0

        decision = json.loads(capsys.readouterr().out)
        assert decision["action"] == "VALIDATE"

    def test_full_pipeline(self, capsys):
        """Test --full runs the admission pipeline."""
        assert main(["check", "--full", "echo", "hi"]) == 0

        decision = json.loads(capsys.readouterr().out)
        assert decision["action"] == "ALLOW"
        assert decision["success"] is True


class TestExec:
    """Tests for the exec command."""

    @staticmethod
    def run_exec(config_file, workspace, *argv):
        return main(["-c", str(config_file), "exec", "--workspace", str(workspace), *argv])

    def test_runs_command(self, capsys, workspace, config_file):
        """Test output is printed on success."""
        assert self.run_exec(config_file, workspace, "cat", "notes.txt") == 0

        assert capsys.readouterr().out == "alpha\nbeta\ngamma\n"

    def test_consent_flow(self, capsys, workspace, config_file):
        """Test consent-gated commands need --yes."""
        target = workspace / "notes.txt"

        assert self.run_exec(config_file, workspace, "rm", "notes.txt") == 2
        request = json.loads(capsys.readouterr().out)
        assert request["operation"] == "rm notes.txt"
        assert target.exists()

        assert self.run_exec(config_file, workspace, "--yes", "rm", "notes.txt") == 0
        assert not target.exists()

    def test_violation(self, capsys, workspace, config_file):
        """Test executor violations are reported on stderr."""
        assert self.run_exec(config_file, workspace, "cat", ".env") == 1

        assert "INVALID_PATH" in capsys.readouterr().err


class TestConfigCommands:
    """Tests for status and validate-config."""

    def test_status(self, capsys, config_file):
        """Test status prints a snapshot."""
        assert main(["-c", str(config_file), "status"]) == 0

        status = json.loads(capsys.readouterr().out)
        assert status["mode"] == "block"
        assert status["security_level"] == "BALANCED"

    def test_missing_config(self, capsys, tmp_path):
        """Test a missing config file fails cleanly."""
        assert main(["-c", str(tmp_path / "nope.yaml"), "status"]) == 1
        assert "Failed to load config" in capsys.readouterr().err

    def test_invalid_workspace(self, capsys, tmp_path):
        """Test semantic config errors surface as failures."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"workspace": str(tmp_path / "missing")}))

        assert main(["-c", str(path), "status"]) == 1
        assert "INVALID_CONFIG" in capsys.readouterr().err

    def test_validate_valid(self, capsys, config_file):
        """Test a valid config file."""
        assert main(["validate-config", str(config_file)]) == 0
        assert "Config: VALID" in capsys.readouterr().out

    def test_validate_shipped_config(self, capsys, repo_root, monkeypatch):
        """Test the shipped config validates from the repo root."""
        monkeypatch.chdir(repo_root)

        assert main(["validate-config", "config/cmdgate.yaml"]) == 0

    def test_validate_schema_error(self, capsys, tmp_path):
        """Test schema violations are reported."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"mode": "paranoid"}))

        assert main(["validate-config", str(path)]) == 1
        assert "Config: INVALID" in capsys.readouterr().out

    def test_validate_unknown_key(self, capsys, tmp_path):
        """Test unknown top-level keys are rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"colour": "blue"}))

        assert main(["validate-config", str(path)]) == 1


class TestLogging:
    """Tests for logging precedence: flags over env over config file."""

    @pytest.fixture
    def quiet_config(self, tmp_path, workspace):
        path = tmp_path / "quiet.yaml"
        path.write_text(yaml.safe_dump({
            "workspace": str(workspace),
            "verify_tools": False,
            "logging": {"level": "ERROR"},
        }))
        return path

    def test_config_level(self, capsys, quiet_config, restore_root_logger):
        """Test the config file's logging section is applied."""
        assert main(["-c", str(quiet_config), "status"]) == 0
        assert restore_root_logger.level == logging.ERROR

    def test_env_overrides_config(self, capsys, quiet_config, restore_root_logger, monkeypatch):
        """Test CMDGATE_LOG_LEVEL overrides the config file."""
        monkeypatch.setenv("CMDGATE_LOG_LEVEL", "INFO")

        assert main(["-c", str(quiet_config), "status"]) == 0
        assert restore_root_logger.level == logging.INFO

    def test_flag_overrides_env(self, capsys, quiet_config, restore_root_logger, monkeypatch):
        """Test --log-level wins over both env and config."""
        monkeypatch.setenv("CMDGATE_LOG_LEVEL", "INFO")

        assert main(["-c", str(quiet_config), "--log-level", "DEBUG", "status"]) == 0
        assert restore_root_logger.level == logging.DEBUG

    def test_json_flag(self, capsys, quiet_config, restore_root_logger):
        """Test --json-logs switches the formatter."""
        assert main(["-c", str(quiet_config), "--json-logs", "status"]) == 0
        assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)
