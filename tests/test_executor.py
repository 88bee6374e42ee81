"""
Tests for the cmdgate secure command executor

These tests spawn real coreutils processes inside a temporary workspace.
"""

import pytest

from cmdgate.catalog import CommandCatalog
from cmdgate.core.config import Config, ExecutionConfig, SecurityLevel
from cmdgate.core.exceptions import (
    BlockedPathError,
    CommandFailedError,
    CommandNotAllowedError,
    ExecutionTimeoutError,
    OutputLimitExceededError,
    PathContainmentError,
    ValidationError,
)
from cmdgate.executor import (
    ConsentRequest,
    ExecutionFailure,
    ExecutionResult,
    SecureCommandExecutor,
    operation_key,
)
from cmdgate.patterns import REDACTION_MARKER
from cmdgate.policy import PolicyEngine


@pytest.fixture
def engine(config):
    return PolicyEngine(config)


@pytest.fixture
def executor(workspace, engine):
    return SecureCommandExecutor(str(workspace), ExecutionConfig(), policy=engine)


def make_executor(workspace, engine, **overrides):
    return SecureCommandExecutor(str(workspace), ExecutionConfig(**overrides), policy=engine)


# =============================================================================
# Successful execution
# =============================================================================


class TestExecution:
    """Tests for admitted commands."""

    @pytest.mark.asyncio
    async def test_cat_file(self, executor):
        """Test reading a workspace file."""
        result = await executor.execute("cat", ["notes.txt"])

        assert isinstance(result, ExecutionResult)
        assert result.output == "alpha\nbeta\ngamma\n"
        assert result.paths == ["notes.txt"]
        assert result.security_level == "BALANCED"

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, executor):
        """Test processes start in the workspace root."""
        result = await executor.execute("ls", ["src"])

        assert "app.py" in result.output
        assert "util.js" in result.output

    @pytest.mark.asyncio
    async def test_always_allowed_utility(self, executor):
        """Test utilities need no paths."""
        result = await executor.execute("echo", ["hello"])

        assert result.output == "hello\n"
        assert result.paths == []

    @pytest.mark.asyncio
    async def test_output_redacted(self, executor, workspace):
        """Test secrets in output are redacted."""
        (workspace / "settings.txt").write_text("password=hunter22\n")

        result = await executor.execute("cat", ["settings.txt"])

        assert "hunter22" not in result.output
        assert REDACTION_MARKER in result.output

    @pytest.mark.asyncio
    async def test_audit_and_metrics(self, executor):
        """Test successful runs are audited and timed."""
        await executor.execute("cat", ["notes.txt"])

        entry = executor.get_audit_log()[-1]
        assert entry["event_type"] == "EXECUTED"
        assert entry["data"]["paths"] == ["notes.txt"]

        histograms = executor.policy.metrics.get_metrics()["histograms"]
        assert histograms['cmdgate_execution_ms{status="ok"}']["count"] == 1
        assert executor.get_metrics()["successful"] == 1

    @pytest.mark.asyncio
    async def test_default_config_pipeline(self, workspace):
        """Test a stock config runs ls -la with tool verification on."""
        config = Config.from_dict({"workspace": str(workspace)})
        assert config.verify_tools
        executor = SecureCommandExecutor(
            str(workspace), config.execution, policy=PolicyEngine(config)
        )

        result = await executor.execute("ls", ["-la"])

        assert isinstance(result, ExecutionResult)
        assert "notes.txt" in result.output
        assert executor.policy.verifier.get_metrics()["total_verifications"] == 1

    def test_sanitize_output(self, executor):
        """Test workspace paths are relativized."""
        assert executor.sanitize_output(f"{executor.root}/notes.txt") == "./notes.txt"


# =============================================================================
# Policy outcomes
# =============================================================================


class TestPolicyOutcomes:
    """Tests for engine decisions surfaced by the executor."""

    @pytest.mark.asyncio
    async def test_blocked_command(self, executor):
        """Test engine blocks come back as failures."""
        result = await executor.execute("sudo", ["ls"])

        assert isinstance(result, ExecutionFailure)
        assert result.action == "BLOCK"
        assert executor.get_audit_log()[-1]["event_type"] == "EXECUTION_BLOCKED"

    @pytest.mark.asyncio
    async def test_validation_block(self, executor):
        """Test traversal is refused before spawning."""
        result = await executor.execute("cat", ["../outside.txt"])

        assert isinstance(result, ExecutionFailure)
        assert result.reason.startswith("Validation failed")

    @pytest.mark.asyncio
    async def test_consent_flow(self, executor, workspace):
        """Test consent is requested, granted and consumed."""
        target = workspace / "notes.txt"

        request = await executor.execute("rm", ["notes.txt"])

        assert isinstance(request, ConsentRequest)
        assert request.operation == "rm notes.txt"
        assert request.category == "REQUIRE_CONSENT"
        assert target.exists()

        executor.grant_consent("rm", ["notes.txt"])
        result = await executor.execute("rm", ["notes.txt"])

        assert isinstance(result, ExecutionResult)
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_consent_is_per_command_line(self, executor):
        """Test a grant covers only the exact command line."""
        executor.grant_consent("rm", ["notes.txt"])

        result = await executor.execute("rm", ["data/report.csv"])

        assert isinstance(result, ConsentRequest)

    def test_consent_expires(self, workspace, engine, clock):
        """Test grants expire after their TTL."""
        executor = SecureCommandExecutor(
            str(workspace), ExecutionConfig(consent_ttl_ms=1000), policy=engine, clock=clock
        )
        executor.grant_consent("rm", ["notes.txt"])
        assert executor.has_consent("rm", ["notes.txt"])

        clock.advance_ms(1000)

        assert not executor.has_consent("rm", ["notes.txt"])

    def test_revoke_consent(self, executor):
        """Test grants can be revoked."""
        executor.grant_consent("rm", ["notes.txt"])

        assert executor.revoke_consent("rm", ["notes.txt"])
        assert not executor.has_consent("rm", ["notes.txt"])

    @pytest.mark.asyncio
    async def test_strict_level_requires_consent(self, executor):
        """Test every STRICT execution needs consent."""
        executor.set_security_level("strict")

        result = await executor.execute("cat", ["notes.txt"])

        assert isinstance(result, ConsentRequest)
        assert "STRICT" in result.message

    @pytest.mark.asyncio
    async def test_path_threshold_requires_consent(self, workspace, engine):
        """Test touching many paths needs consent."""
        executor = make_executor(workspace, engine, consent_path_threshold=1)

        result = await executor.execute("cat", ["notes.txt", "data/report.csv"])

        assert isinstance(result, ConsentRequest)


# =============================================================================
# Executor violations
# =============================================================================


class TestViolations:
    """Tests for errors raised by the executor itself."""

    @pytest.mark.asyncio
    async def test_malformed_input(self, executor):
        """Test malformed requests raise before any decision."""
        with pytest.raises(ValidationError):
            await executor.execute("", [])
        with pytest.raises(ValidationError):
            await executor.execute("ls", "notes.txt")

    @pytest.mark.asyncio
    async def test_malformed_input_is_audited(self, executor):
        """Test refused malformed requests still leave an audit entry."""
        with pytest.raises(ValidationError):
            await executor.execute("ls", "notes.txt")

        entry = executor.get_audit_log()[-1]
        assert entry["event_type"] == "VALIDATION_FAILED"
        assert entry["data"]["args"] == ["notes.txt"]
        assert entry["data"]["errors"] == ["Arguments must be a list of strings"]
        assert executor.get_metrics()["failed"] == 1

    @pytest.mark.asyncio
    async def test_string_timeout_rejected(self, executor):
        """Test a non-numeric timeout is refused before spawning."""
        with pytest.raises(ValidationError) as exc_info:
            await executor.execute("cat", ["notes.txt"], {"timeout": "5"})

        assert exc_info.value.message.startswith("Invalid options")
        assert executor.get_audit_log()[-1]["event_type"] == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_oversized_timeout_rejected(self, executor):
        """Test timeouts above the maximum are refused."""
        with pytest.raises(ValidationError):
            await executor.execute("cat", ["notes.txt"], {"timeout": 10 ** 9})

    @pytest.mark.asyncio
    async def test_context_keys_are_not_errors(self, executor):
        """Test client and caller keys pass option validation."""
        result = await executor.execute(
            "cat", ["notes.txt"], {"client_id": "agent", "timeout": 5000}
        )

        assert isinstance(result, ExecutionResult)

    @pytest.mark.asyncio
    async def test_command_not_at_level(self, executor):
        """Test commands outside the level's groups are refused."""
        with pytest.raises(CommandNotAllowedError) as exc_info:
            await executor.execute("python3", ["--version"])

        assert exc_info.value.command == "python3"
        assert executor.get_audit_log()[-1]["event_type"] == "EXECUTION_FAILED"

    @pytest.mark.asyncio
    async def test_strict_refuses_utilities(self, executor):
        """Test STRICT only runs filesystem inspection."""
        executor.set_security_level(SecurityLevel.STRICT)

        with pytest.raises(CommandNotAllowedError):
            await executor.execute("echo", ["hi"])

    @pytest.mark.asyncio
    async def test_flag_not_allowed(self, executor):
        """Test unknown flags are refused."""
        with pytest.raises(CommandNotAllowedError) as exc_info:
            await executor.execute("ls", ["--color"])

        assert exc_info.value.flag == "--color"

    @pytest.mark.asyncio
    async def test_symlink_escape(self, executor, workspace, tmp_path):
        """Test symlinks cannot leave the workspace."""
        outside = tmp_path / "outside.txt"
        outside.write_text("secret\n")
        (workspace / "escape.txt").symlink_to(outside)

        with pytest.raises(PathContainmentError):
            await executor.execute("cat", ["escape.txt"])

    @pytest.mark.asyncio
    async def test_trusted_caller_still_contained(self, executor, engine, tmp_path):
        """Test skipping validation does not skip containment."""
        (tmp_path / "outside.txt").write_text("secret\n")
        token = engine.register_trusted_caller("build-agent")

        with pytest.raises(PathContainmentError):
            await executor.execute("cat", ["../outside.txt"], {"caller_token": token})

    @pytest.mark.asyncio
    async def test_blocked_fragment(self, executor):
        """Test credential files are blocked."""
        with pytest.raises(BlockedPathError) as exc_info:
            await executor.execute("cat", [".env"])

        assert exc_info.value.rule == ".env"

    @pytest.mark.asyncio
    async def test_blocked_extension(self, executor, workspace):
        """Test extensions outside the level's allow-list are blocked."""
        (workspace / "deploy.sh").write_text("echo hi\n")

        with pytest.raises(BlockedPathError) as exc_info:
            await executor.execute("cat", ["deploy.sh"])

        assert exc_info.value.rule == "extension"

    @pytest.mark.asyncio
    async def test_timeout(self, executor):
        """Test long-running commands are killed."""
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            await executor.execute("tail", ["-f", "notes.txt"], {"timeout": 200})

        assert exc_info.value.timeout_ms == 200

    @pytest.mark.asyncio
    async def test_output_limit(self, workspace, engine):
        """Test oversized output is cut off."""
        executor = make_executor(workspace, engine, max_output_size=10)

        with pytest.raises(OutputLimitExceededError):
            await executor.execute("cat", ["notes.txt"])

    @pytest.mark.asyncio
    async def test_stderr_limit(self, workspace, engine):
        """Test stderr is held to the same output cap."""
        executor = make_executor(workspace, engine, max_output_size=10)

        with pytest.raises(OutputLimitExceededError):
            await executor.execute("cat", ["missing.txt"])

    @pytest.mark.asyncio
    async def test_single_deadline(self, executor):
        """Test the timeout bounds the whole run, not each pipe separately."""
        script = "sleep 0.2; exec 1>&-; sleep 0.2"

        with pytest.raises(ExecutionTimeoutError):
            await executor._run("sh", ["-c", script], 300)

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, executor):
        """Test failing commands raise with sanitized stderr."""
        with pytest.raises(CommandFailedError) as exc_info:
            await executor.execute("cat", ["missing.txt"])

        assert exc_info.value.exit_code != 0
        assert "missing.txt" in exc_info.value.stderr
        assert str(executor.root) not in exc_info.value.stderr
        assert executor.get_metrics()["failed"] == 1


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    """Tests for path extraction and construction."""

    def test_extract_paths_skips_flags_and_pattern(self):
        """Test flag values and the grep pattern are not paths."""
        spec = CommandCatalog().lookup("grep")

        paths = SecureCommandExecutor.extract_paths(
            spec, ["-n", "--include", "*.py", "TODO", "src/app.py"]
        )

        assert paths == ["src/app.py"]

    def test_operation_key(self):
        """Test operation keys join the command line."""
        assert operation_key("rm", ["a", "b"]) == "rm a b"
        assert operation_key("ls", []) == "ls"

    def test_invalid_workspace(self, tmp_path, engine):
        """Test the workspace must exist."""
        with pytest.raises(ValueError):
            SecureCommandExecutor(str(tmp_path / "missing"), policy=engine)
