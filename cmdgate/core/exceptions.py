"""
cmdgate Exception Hierarchy

Custom exceptions for error handling and policy enforcement.

Every exception carries a ``code`` which the ErrorHandler uses as the
primary classification key.
"""

from typing import Any, Dict, List, Optional


class CmdGateError(Exception):
    """Base exception for all cmdgate errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "CMDGATE_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(CmdGateError):
    """Raised when command input fails structural validation."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
    ):
        super().__init__(
            message,
            code="VALIDATION_FAILED",
            details={
                "errors": errors or [],
                "warnings": warnings or [],
            },
        )
        self.errors = errors or []
        self.warnings = warnings or []


class PolicyBlockedError(CmdGateError):
    """Raised when a command is blocked by security policy."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="SECURITY_VIOLATION",
            details={
                "command": command,
                "reason": reason,
            },
        )
        self.command = command
        self.reason = reason


class RateLimitedError(CmdGateError):
    """Raised when a client exceeds its request budget."""

    def __init__(
        self,
        message: str,
        client_id: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
    ):
        super().__init__(
            message,
            code="RATE_LIMITED",
            details={
                "client_id": client_id,
                "retry_after_ms": retry_after_ms,
            },
        )
        self.client_id = client_id
        self.retry_after_ms = retry_after_ms


class ToolVerificationError(CmdGateError):
    """Raised when an executable fails trusted-tool verification."""

    def __init__(
        self,
        message: str,
        tool: Optional[str] = None,
        status: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="SECURITY_VIOLATION",
            details={
                "tool": tool,
                "status": status,
            },
        )
        self.tool = tool
        self.status = status


class PathContainmentError(CmdGateError):
    """
    Raised when a path resolves outside the workspace root.

    Escaping the workspace is treated as a sandbox breach.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        root: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="SANDBOX_BREACH",
            details={
                "path": path,
                "root": root,
            },
        )
        self.path = path
        self.root = root


class BlockedPathError(CmdGateError):
    """Raised when a path hits a blocked fragment or extension."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        rule: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="INVALID_PATH",
            details={
                "path": path,
                "rule": rule,
            },
        )
        self.path = path
        self.rule = rule


class CommandNotAllowedError(CmdGateError):
    """Raised when a command or flag is outside the executor's table."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        flag: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="INVALID_COMMAND",
            details={
                "command": command,
                "flag": flag,
            },
        )
        self.command = command
        self.flag = flag


class ConsentRequiredError(CmdGateError):
    """Raised by strict callers that want consent as an exception."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(
            message,
            code="CONSENT_REQUIRED",
            details={"operation": operation},
        )
        self.operation = operation


class ExecutionTimeoutError(CmdGateError):
    """Raised when a spawned command exceeds its wall-clock budget."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ):
        super().__init__(
            message,
            code="TIMEOUT",
            details={
                "command": command,
                "timeout_ms": timeout_ms,
            },
        )
        self.command = command
        self.timeout_ms = timeout_ms


class OutputLimitExceededError(CmdGateError):
    """Raised when captured output exceeds the configured cap."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        limit: Optional[int] = None,
    ):
        super().__init__(
            message,
            code="PROCESS_ERROR",
            details={
                "command": command,
                "limit": limit,
                "resource": "output",
            },
        )
        self.command = command
        self.limit = limit


class CommandFailedError(CmdGateError):
    """Raised when a spawned command exits non-zero."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(
            message,
            code="PROCESS_ERROR",
            details={
                "command": command,
                "exit_code": exit_code,
                "stderr": stderr,
            },
        )
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class CircuitBreakerOpenError(CmdGateError):
    """Raised when an operation is attempted while its breaker is open."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(
            message,
            code="CIRCUIT_BREAKER_OPEN",
            details={"operation": operation},
        )
        self.operation = operation


class MaxRetriesExceededError(CmdGateError):
    """Raised when a recoverable error exhausts its retry budget."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        attempts: int = 0,
        error_type: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="MAX_RETRIES_EXCEEDED",
            details={
                "operation": operation,
                "attempts": attempts,
                "error_type": error_type,
            },
        )
        self.operation = operation
        self.attempts = attempts
        self.error_type = error_type


class CriticalFailureError(CmdGateError):
    """
    Raised for critical security failures.

    Critical failures are never retried.
    """

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        operation: Optional[str] = None,
        error_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="CRITICAL_FAILURE",
            details={
                "error_type": error_type,
                "operation": operation,
                "error_id": error_id,
                "severity": "CRITICAL",
            },
        )
        self.error_type = error_type
        self.operation = operation
        self.error_id = error_id


class SystemFailureError(CmdGateError):
    """Raised for non-retryable system errors."""

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="SYSTEM_ERROR",
            details={
                "error_type": error_type,
                "operation": operation,
            },
        )
        self.error_type = error_type
        self.operation = operation


class ConfigurationError(CmdGateError):
    """Raised for invalid or missing configuration."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        source: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="INVALID_CONFIG",
            details={
                "errors": errors or [],
                "source": source,
            },
        )
        self.errors = errors or []
        self.source = source


class UnknownFailureError(CmdGateError):
    """Raised for unclassified errors; always flagged for investigation."""

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="UNKNOWN_ERROR",
            details={
                "error_type": error_type,
                "operation": operation,
                "requires_investigation": True,
            },
        )
        self.error_type = error_type
        self.operation = operation
        self.requires_investigation = True


class AssertionFailure(CmdGateError):
    """Raised by the assertion engine when configured to raise on failure."""

    def __init__(
        self,
        message: str,
        function_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            code="ASSERTION_FAILED",
            details={
                "function_name": function_name,
                "context": context or {},
            },
        )
        self.function_name = function_name
        self.context = context or {}
