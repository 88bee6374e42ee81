"""
cmdgate - Secure Command Executor

Runs admitted commands inside a workspace root. Every request is first
decided by the PolicyEngine, then checked against the executor's command
table for the active security level, path containment, blocked paths and
consent. Commands are spawned directly (never through a shell) with a
wall-clock timeout and an output cap, and their output is redacted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..assertions import AssertionEngine
from ..audit import AuditLog
from ..catalog import CommandCatalog, CommandSpec
from ..core.config import AuditConfig, ExecutionConfig, SecurityLevel
from ..core.exceptions import (
    BlockedPathError,
    CommandFailedError,
    CommandNotAllowedError,
    ExecutionTimeoutError,
    OutputLimitExceededError,
    PathContainmentError,
    ValidationError,
)
from ..patterns import redact_message, redact_output
from ..policy import PolicyAction, PolicyEngine

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

STRICT_EXTENSIONS = frozenset({".js", ".ts", ".json", ".md", ".txt"})
BALANCED_EXTENSIONS = STRICT_EXTENSIONS | frozenset({
    ".jsx", ".tsx", ".css", ".html", ".py", ".yaml", ".yml",
    ".toml", ".cfg", ".ini", ".log", ".csv",
})

# None means no extension filtering
LEVEL_EXTENSIONS = {
    SecurityLevel.STRICT: STRICT_EXTENSIONS,
    SecurityLevel.BALANCED: BALANCED_EXTENSIONS,
    SecurityLevel.PERMISSIVE: None,
}

BLOCKED_PATH_FRAGMENTS = (
    ".env", ".ssh", ".aws", ".git/", "id_rsa", ".netrc", ".npmrc", ".pypirc",
    "/etc/", "/root/", "/proc/", "/sys/",
)


@dataclass
class ExecutionResult:
    """Successful command execution."""
    output: str
    command: str
    args: List[str]
    paths: List[str]
    security_level: str
    duration_ms: float
    success: bool = True
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "command": self.command,
            "args": self.args,
            "paths": self.paths,
            "security_level": self.security_level,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
        }


@dataclass
class ConsentRequest:
    """Execution is waiting on an explicit consent grant."""
    operation: str
    command: str
    args: List[str]
    message: str
    security_level: str
    category: Optional[str] = None
    success: bool = False
    requires_consent: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "requires_consent": self.requires_consent,
            "operation": self.operation,
            "command": self.command,
            "args": self.args,
            "message": self.message,
            "security_level": self.security_level,
            "category": self.category,
        }


@dataclass
class ExecutionFailure:
    """Execution refused by the policy engine."""
    command: str
    args: List[str]
    action: str
    reason: str
    error_id: Optional[str] = None
    success: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "command": self.command,
            "args": self.args,
            "action": self.action,
            "reason": self.reason,
            "error_id": self.error_id,
        }


Outcome = Union[ExecutionResult, ConsentRequest, ExecutionFailure]


def operation_key(command: str, args: Sequence[str]) -> str:
    return f"{command} {' '.join(args)}".strip()


def _loggable_args(args: Any) -> List[str]:
    if isinstance(args, (list, tuple)):
        return [str(a) for a in args]
    return [str(args)]


class SecureCommandExecutor:
    """
    Workspace-confined command executor.

    Policy BLOCK and CONSENT outcomes are returned as values. Violations
    found by the executor itself (unknown command or flag, path escape,
    blocked path, timeout, output cap, non-zero exit) raise typed errors.
    """

    def __init__(
        self,
        workspace_root: str,
        config: Optional[ExecutionConfig] = None,
        policy: Optional[PolicyEngine] = None,
        catalog: Optional[CommandCatalog] = None,
        assertions: Optional[AssertionEngine] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.root = Path(workspace_root).resolve()
        if not self.root.is_dir():
            raise ValueError(f"Workspace root is not a directory: {workspace_root}")

        self.config = config or ExecutionConfig()
        self.security_level = self.config.security_level
        self.policy = policy or PolicyEngine()
        self.catalog = catalog or self.policy.catalog
        self.assertions = assertions or self.policy.assertions
        self._clock = clock or time.monotonic

        self.audit_log = AuditLog(AuditConfig(
            max_entries=self.config.max_audit_log_size,
            hash_chain=False,
        ))
        self._consents: Dict[str, float] = {}
        self._stats = {
            "executions": 0,
            "successful": 0,
            "failed": 0,
            "blocked": 0,
            "consent_requests": 0,
        }

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    def grant_consent(self, command: str, args: Optional[Sequence[str]] = None) -> str:
        """Grant consent for one exact command line; expires after consent_ttl_ms."""
        key = operation_key(command, list(args or []))
        self._consents[key] = self._clock()
        logger.info(f"Consent granted for '{key}'")
        return key

    def revoke_consent(self, command: str, args: Optional[Sequence[str]] = None) -> bool:
        key = operation_key(command, list(args or []))
        return self._consents.pop(key, None) is not None

    def has_consent(self, command: str, args: Sequence[str]) -> bool:
        key = operation_key(command, args)
        granted_at = self._consents.get(key)
        if granted_at is None:
            return False
        if (self._clock() - granted_at) * 1000 >= self.config.consent_ttl_ms:
            del self._consents[key]
            return False
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        command: str,
        args: Optional[Sequence[str]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Outcome:
        """
        Execute a command inside the workspace.

        Args:
            command: Command name, resolved on PATH
            args: Arguments passed verbatim to the process
            options: ``client_id``, ``caller_token`` and ``timeout`` (ms)

        Returns:
            ExecutionResult, ConsentRequest or ExecutionFailure

        Raises:
            ValidationError: If command, args or options are malformed
            CommandNotAllowedError: If the command or a flag is not allowed
            PathContainmentError: If a path escapes the workspace
            BlockedPathError: If a path is blocked
            ExecutionTimeoutError: If the process exceeds its timeout
            OutputLimitExceededError: If output exceeds max_output_size
            CommandFailedError: If the process exits non-zero
        """
        options = {} if options is None else options
        args = [] if args is None else args

        self._stats["executions"] += 1
        try:
            self._check_request(command, args, options)
        except ValidationError as e:
            self._stats["failed"] += 1
            self._audit(
                "VALIDATION_FAILED", str(command), _loggable_args(args),
                success=False,
                errors=[redact_message(err) for err in e.errors],
            )
            raise
        args = list(args)

        decision = await self.policy.validate_command_execution(command, args, {
            "client_id": options.get("client_id", "executor"),
            "caller_token": options.get("caller_token"),
        })

        if decision.action in (PolicyAction.BLOCK, PolicyAction.ERROR):
            self._stats["blocked"] += 1
            self._audit("EXECUTION_BLOCKED", command, args, reason=decision.reason)
            return ExecutionFailure(
                command=command,
                args=args,
                action=decision.action.value,
                reason=decision.reason,
                error_id=decision.error_id,
            )
        if decision.action is PolicyAction.CONSENT and not self.has_consent(command, args):
            return self._consent_request(command, args, decision.reason)

        start = time.monotonic()
        paths: List[Path] = []
        status = "failed"
        error: Optional[Exception] = None
        try:
            spec = self._check_command(command, args)
            paths = [self._check_path(p) for p in self.extract_paths(spec, args)]

            if self._needs_consent(command, args, paths) and not self.has_consent(command, args):
                status = "consent"
                return self._consent_request(
                    command, args,
                    f"Command '{command}' requires user consent at "
                    f"{self.security_level.value} security level",
                )

            timeout_ms = options.get("timeout", self.config.timeout_ms)
            raw_output = await self._run(command, args, timeout_ms)
            output = self.sanitize_output(raw_output)

            self._stats["successful"] += 1
            status = "ok"
            return ExecutionResult(
                output=output,
                command=command,
                args=args,
                paths=[self._relative(p) for p in paths],
                security_level=self.security_level.value,
                duration_ms=(time.monotonic() - start) * 1000,
            )
        except Exception as e:
            error = e
            self._stats["failed"] += 1
            raise
        finally:
            duration_ms = (time.monotonic() - start) * 1000
            if status == "ok":
                self._audit(
                    "EXECUTED", command, args,
                    paths=[self._relative(p) for p in paths],
                    success=True,
                    duration_ms=duration_ms,
                )
            elif status == "failed":
                self._audit(
                    "EXECUTION_FAILED", command, args,
                    paths=[self._relative(p) for p in paths],
                    success=False,
                    error=redact_message(str(error)) if error else "cancelled",
                    duration_ms=duration_ms,
                )
            self.policy.metrics.histogram_observe(
                "cmdgate_execution_ms", duration_ms,
                labels={"status": status},
            )

    def _check_request(self, command: Any, args: Any, options: Any) -> None:
        with self.assertions.function_scope("execute"):
            command_ok = self.assertions.assert_that(
                isinstance(command, str) and bool(command), "Command must be a non-empty string"
            )
            args_ok = self.assertions.assert_that(
                isinstance(args, (list, tuple)) and all(isinstance(a, str) for a in args),
                "Arguments must be a list of strings",
            )
        if not command_ok:
            raise ValidationError(
                "Command must be a non-empty string",
                errors=["Command must be a non-empty string"],
            )
        if not args_ok:
            raise ValidationError(
                "Arguments must be a list of strings",
                errors=["Arguments must be a list of strings"],
            )

        result = self.policy.validator.validate_options(options)
        if not result.is_valid:
            raise ValidationError(
                f"Invalid options: {'; '.join(result.errors)}",
                errors=result.errors,
                warnings=result.warnings,
            )

    def _consent_request(self, command: str, args: List[str], reason: str) -> ConsentRequest:
        self._stats["consent_requests"] += 1
        operation = operation_key(command, args)
        self._audit("CONSENT_REQUIRED", command, args, reason=reason)
        category = self.catalog.category_of(command)
        return ConsentRequest(
            operation=operation,
            command=command,
            args=args,
            message=reason,
            security_level=self.security_level.value,
            category=category.value if category else None,
        )

    def _check_command(self, command: str, args: Sequence[str]) -> CommandSpec:
        allowed = self.catalog.commands_for_level(self.security_level)
        spec = allowed.get(command)
        if spec is None:
            raise CommandNotAllowedError(
                f"Command '{command}' is not allowed at {self.security_level.value} security level",
                command=command,
            )

        skip_next = False
        for arg in args:
            if skip_next:
                skip_next = False
                continue
            if spec.check_all_args or arg.startswith("-"):
                if arg not in spec.allowed_flags:
                    raise CommandNotAllowedError(
                        f"Argument '{arg}' is not allowed for command '{command}'",
                        command=command,
                        flag=arg,
                    )
                skip_next = arg in spec.value_flags
        return spec

    @staticmethod
    def extract_paths(spec: Optional[CommandSpec], args: Sequence[str]) -> List[str]:
        """
        Pick the arguments that name filesystem paths.

        Flags and their values are skipped, as is the pattern positional
        of pattern-taking commands such as grep.
        """
        value_flags = spec.value_flags if spec else frozenset()
        pattern_pending = bool(spec and spec.pattern_positional)
        paths = []
        skip_next = False

        for arg in args:
            if skip_next:
                skip_next = False
                continue
            if arg.startswith("-"):
                skip_next = arg in value_flags
                continue
            if pattern_pending:
                pattern_pending = False
                continue
            if "/" in arg or "\\" in arg or "." in arg:
                paths.append(arg)
        return paths

    def _check_path(self, raw: str) -> Path:
        resolved = (self.root / raw).resolve()
        try:
            relative = resolved.relative_to(self.root)
        except ValueError:
            raise PathContainmentError(
                f"Path '{raw}' resolves outside the workspace",
                path=raw,
                root=str(self.root),
            ) from None

        relative_str = relative.as_posix()
        if resolved.is_dir():
            relative_str += "/"
        for fragment in BLOCKED_PATH_FRAGMENTS:
            if fragment in raw or fragment in f"/{relative_str}":
                raise BlockedPathError(
                    f"Path '{raw}' is blocked ({fragment})",
                    path=raw,
                    rule=fragment,
                )

        extensions = LEVEL_EXTENSIONS[self.security_level]
        suffix = resolved.suffix.lower()
        if extensions is not None and suffix and not resolved.is_dir() and suffix not in extensions:
            raise BlockedPathError(
                f"File extension '{suffix}' is not allowed at "
                f"{self.security_level.value} security level",
                path=raw,
                rule="extension",
            )
        return resolved

    def _needs_consent(self, command: str, args: Sequence[str], paths: Sequence[Path]) -> bool:
        if self.security_level is SecurityLevel.STRICT:
            return True
        if self.catalog.is_sensitive_operation(command, args):
            return True
        return len(paths) > self.config.consent_path_threshold

    async def _run(self, command: str, args: Sequence[str], timeout_ms: int) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                command, *args,
                cwd=str(self.root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandFailedError(
                f"Failed to spawn '{command}': {e}",
                command=command,
            ) from e

        # One deadline covers both pipes and the exit
        try:
            stdout, stderr, exit_code = await asyncio.wait_for(
                self._communicate(process, command), timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            raise ExecutionTimeoutError(
                f"Command '{command}' timed out after {timeout_ms}ms",
                command=command,
                timeout_ms=timeout_ms,
            ) from None
        except OutputLimitExceededError:
            await self._kill(process)
            raise

        if exit_code != 0:
            stderr_text = self.sanitize_output(stderr.decode(errors="replace")).strip()
            raise CommandFailedError(
                f"Command '{command}' exited with code {exit_code}: {stderr_text}",
                command=command,
                exit_code=exit_code,
                stderr=stderr_text,
            )
        return stdout.decode(errors="replace")

    async def _communicate(
        self, process: asyncio.subprocess.Process, command: str
    ) -> Tuple[bytes, bytes, int]:
        stdout, stderr = await asyncio.gather(
            self._read_capped(process.stdout, command),
            self._read_capped(process.stderr, command),
        )
        exit_code = await process.wait()
        return stdout, stderr, exit_code

    async def _read_capped(self, stream: asyncio.StreamReader, command: str) -> bytes:
        """Read a pipe to EOF, failing once it passes ``max_output_size``."""
        limit = self.config.max_output_size
        chunks: List[bytes] = []
        size = 0
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > limit:
                raise OutputLimitExceededError(
                    f"Output size limit exceeded ({limit} bytes) for '{command}'",
                    command=command,
                    limit=limit,
                )
            chunks.append(chunk)
        return b"".join(chunks)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    def sanitize_output(self, text: str) -> str:
        """Relativize workspace and home paths, then redact secrets."""
        text = text.replace(str(self.root), ".")
        home = str(Path.home())
        if home not in ("", "/"):
            text = text.replace(home, "~")
        return redact_output(text)

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix() or "."
        except ValueError:
            return str(path)

    def _audit(self, event: str, command: str, args: Sequence[str], **data: Any) -> None:
        self.audit_log.record(event, {
            "command": command,
            "args": list(args),
            "security_level": self.security_level.value,
            **data,
        })

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_security_level(self, level: Union[SecurityLevel, str]) -> None:
        new_level = level if isinstance(level, SecurityLevel) else SecurityLevel(str(level).upper())
        logger.info(f"Security level changed from {self.security_level.value} to {new_level.value}")
        self.security_level = new_level

    def get_audit_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.audit_log.entries(limit)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "security_level": self.security_level.value,
            "workspace": str(self.root),
            "active_consents": len(self._consents),
            "allowed_commands": len(self.catalog.commands_for_level(self.security_level)),
            "audit_entries": len(self.audit_log),
        }


__all__ = [
    "SecureCommandExecutor",
    "ExecutionResult",
    "ConsentRequest",
    "ExecutionFailure",
    "BLOCKED_PATH_FRAGMENTS",
    "LEVEL_EXTENSIONS",
    "operation_key",
]
