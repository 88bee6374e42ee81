"""
cmdgate - Error Handling

Classifies exceptions into a fixed taxonomy and dispatches them: critical
errors raise immediately, recoverable ones are retried with exponential
backoff behind a per-operation circuit breaker, input errors come back as
a structured outcome with suggestions.
"""

import asyncio
import logging
import re
import secrets
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from ..core.config import ErrorHandlingConfig
from ..core.exceptions import (
    CircuitBreakerOpenError,
    CmdGateError,
    ConfigurationError,
    CriticalFailureError,
    MaxRetriesExceededError,
    SystemFailureError,
    UnknownFailureError,
)
from ..patterns import redact_message

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    CRITICAL = "CRITICAL"
    RECOVERABLE = "RECOVERABLE"
    INPUT_ERROR = "INPUT_ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    UNKNOWN = "UNKNOWN"


class Severity(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


CATEGORY_TYPES: Dict[ErrorCategory, frozenset] = {
    ErrorCategory.CRITICAL: frozenset({
        "SECURITY_VIOLATION", "VALIDATION_FAILED", "PERMISSION_DENIED",
        "AUTHENTICATION_FAILED", "INJECTION_DETECTED", "SANDBOX_BREACH",
    }),
    ErrorCategory.RECOVERABLE: frozenset({
        "NETWORK_ERROR", "TIMEOUT", "TEMPORARY_FAILURE", "RESOURCE_BUSY", "RATE_LIMITED",
    }),
    ErrorCategory.INPUT_ERROR: frozenset({
        "INVALID_COMMAND", "INVALID_ARGUMENT", "INVALID_PATH", "INVALID_FORMAT",
        "MISSING_PARAMETER",
    }),
    ErrorCategory.SYSTEM_ERROR: frozenset({
        "FILE_NOT_FOUND", "PERMISSION_ERROR", "MEMORY_ERROR", "DISK_FULL", "PROCESS_ERROR",
    }),
    ErrorCategory.CONFIG_ERROR: frozenset({
        "INVALID_CONFIG", "MISSING_CONFIG", "CONFIG_PARSE_ERROR",
    }),
}

# Checked in order; subclasses before their bases.
EXCEPTION_TYPES: Tuple[Tuple[type, str], ...] = (
    (asyncio.TimeoutError, "TIMEOUT"),
    (TimeoutError, "TIMEOUT"),
    (FileNotFoundError, "FILE_NOT_FOUND"),
    (PermissionError, "PERMISSION_ERROR"),
    (MemoryError, "MEMORY_ERROR"),
    (ConnectionError, "NETWORK_ERROR"),
    (ValueError, "INVALID_FORMAT"),
)

# First match wins.
MESSAGE_TYPES: Tuple[Tuple[str, re.Pattern], ...] = tuple(
    (error_type, re.compile(pattern, re.IGNORECASE))
    for error_type, pattern in (
        ("VALIDATION_FAILED", r"validation failed|invalid input|input validation"),
        ("PERMISSION_DENIED", r"permission denied|access denied|forbidden"),
        ("FILE_NOT_FOUND", r"file not found|no such file|enoent"),
        ("TIMEOUT", r"timeout|timed out|deadline exceeded"),
        ("NETWORK_ERROR", r"network|connection|econnrefused|enotfound"),
        ("MEMORY_ERROR", r"out of memory|memory|heap"),
        ("INJECTION_DETECTED", r"injection|dangerous pattern|security violation"),
        ("INVALID_COMMAND", r"command.*not allowed|invalid command"),
        ("PROCESS_ERROR", r"spawn|exec|process"),
    )
)

INPUT_SUGGESTIONS: Dict[str, List[str]] = {
    "INVALID_COMMAND": [
        "Check command spelling and availability",
        "Verify command is in allowed list",
    ],
    "INVALID_ARGUMENT": [
        "Check argument format and values",
        "Verify required arguments are provided",
    ],
    "INVALID_PATH": [
        "Ensure path exists and is accessible",
        "Check path permissions",
    ],
}
DEFAULT_SUGGESTIONS = ["Review input and try again"]

_LOG_LEVELS = {
    Severity.CRITICAL: logging.CRITICAL,
    Severity.HIGH: logging.ERROR,
    Severity.MEDIUM: logging.WARNING,
    Severity.LOW: logging.INFO,
}


def sanitize_message(text: str) -> str:
    """Redact credential-like assignments from an error message."""
    return redact_message(text)


def _format_trace(error: BaseException) -> Optional[str]:
    if error.__traceback__ is None:
        return None
    trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return sanitize_message(trace)


def classify_error(error: BaseException) -> str:
    """
    Determine the taxonomy type of an exception.

    The exception's own ``code`` (or its class) gives the initial type;
    message patterns then take precedence.
    """
    if isinstance(error, CmdGateError):
        error_type = error.code
    else:
        error_type = type(error).__name__
        for exc_class, mapped in EXCEPTION_TYPES:
            if isinstance(error, exc_class):
                error_type = mapped
                break

    message = str(error)
    for candidate, pattern in MESSAGE_TYPES:
        if pattern.search(message):
            return candidate
    return error_type


def categorize(error_type: str) -> ErrorCategory:
    for category, types in CATEGORY_TYPES.items():
        if error_type in types:
            return category
    return ErrorCategory.UNKNOWN


def severity_of(error_type: str) -> Severity:
    if error_type in CATEGORY_TYPES[ErrorCategory.CRITICAL]:
        return Severity.CRITICAL
    if "SECURITY" in error_type or "INJECTION" in error_type:
        return Severity.HIGH
    if error_type in CATEGORY_TYPES[ErrorCategory.SYSTEM_ERROR]:
        return Severity.MEDIUM
    if error_type in CATEGORY_TYPES[ErrorCategory.INPUT_ERROR]:
        return Severity.LOW
    return Severity.MEDIUM


def is_retryable(error_type: str) -> bool:
    return (
        error_type in CATEGORY_TYPES[ErrorCategory.RECOVERABLE]
        or "TIMEOUT" in error_type
        or "TEMPORARY" in error_type
    )


@dataclass
class ErrorRecord:
    """A classified, redacted error occurrence."""
    id: str
    error_type: str
    category: ErrorCategory
    severity: Severity
    message: str
    operation: str
    retryable: bool
    exception_class: str
    context: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "error_type": self.error_type,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "operation": self.operation,
            "retryable": self.retryable,
            "exception_class": self.exception_class,
            "context": self.context,
            "stack_trace": self.stack_trace,
            "timestamp": self.timestamp,
        }


class OutcomeKind(Enum):
    RETRY = "retry"
    INPUT_FAILURE = "input_failure"


@dataclass(frozen=True)
class ErrorOutcome:
    """Non-raising result of handle_error: either retry or an input failure."""
    kind: OutcomeKind
    error_id: str
    error_type: str
    message: str
    attempt: int = 0
    delay_ms: int = 0
    suggestions: Tuple[str, ...] = ()

    @classmethod
    def retry(cls, record: ErrorRecord, attempt: int, delay_ms: int) -> "ErrorOutcome":
        return cls(
            kind=OutcomeKind.RETRY,
            error_id=record.id,
            error_type=record.error_type,
            message=record.message,
            attempt=attempt,
            delay_ms=delay_ms,
        )

    @classmethod
    def input_failure(cls, record: ErrorRecord, suggestions: List[str]) -> "ErrorOutcome":
        return cls(
            kind=OutcomeKind.INPUT_FAILURE,
            error_id=record.id,
            error_type=record.error_type,
            message=record.message,
            suggestions=tuple(suggestions),
        )

    @property
    def should_retry(self) -> bool:
        return self.kind is OutcomeKind.RETRY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "error_id": self.error_id,
            "error_type": self.error_type,
            "message": self.message,
            "attempt": self.attempt,
            "delay_ms": self.delay_ms,
            "suggestions": list(self.suggestions),
        }


class BreakerState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerState:
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    opened_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "opened_at": self.opened_at,
        }


class ErrorHandler:
    """
    Central error classifier and dispatcher.

    ``handle_error`` either returns an ErrorOutcome or raises a typed
    CmdGateError; callers never see the original exception re-raised.
    """

    def __init__(
        self,
        config: Optional[ErrorHandlingConfig] = None,
        alert_callback: Optional[Callable[[ErrorRecord], Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or ErrorHandlingConfig()
        self.alert_callback = alert_callback
        self._clock = clock or time.monotonic

        self._history: Deque[ErrorRecord] = deque(maxlen=self.config.max_error_history)
        self._counts: Dict[str, int] = {}
        self._retry_counters: Dict[str, int] = {}
        self._breakers: Dict[str, CircuitBreakerState] = {}

    def analyze(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorRecord:
        """Classify an exception into an ErrorRecord without dispatching it."""
        context = dict(context or {})
        error_type = classify_error(error)
        return ErrorRecord(
            id=secrets.token_hex(4),
            error_type=error_type,
            category=categorize(error_type),
            severity=severity_of(error_type),
            message=sanitize_message(str(error) or type(error).__name__),
            operation=str(context.get("operation", "unknown")),
            retryable=is_retryable(error_type),
            exception_class=type(error).__name__,
            context={k: v for k, v in context.items() if k != "operation"},
            stack_trace=_format_trace(error),
        )

    def handle_error(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ) -> ErrorOutcome:
        """
        Classify and dispatch an error.

        Args:
            error: The exception raised by an operation
            context: Details; ``operation`` names the failing operation

        Returns:
            ErrorOutcome for retryable and input errors

        Raises:
            CircuitBreakerOpenError: If the operation's breaker is open
            CriticalFailureError: For critical errors
            MaxRetriesExceededError: When retries are exhausted
            SystemFailureError: For non-retryable system errors
            ConfigurationError: For configuration errors
            UnknownFailureError: For anything unclassified
        """
        operation = str((context or {}).get("operation", "unknown"))
        if self.is_circuit_breaker_open(operation):
            raise CircuitBreakerOpenError(
                f"Circuit breaker is open for operation: {operation}",
                operation=operation,
            )

        record = self.analyze(error, context)
        self._history.append(record)
        self._counts[record.error_type] = self._counts.get(record.error_type, 0) + 1
        logger.log(
            _LOG_LEVELS[record.severity],
            f"[{record.id}] {record.error_type} in {record.operation}: {record.message}",
            extra={"operation": record.operation},
        )

        if record.category is ErrorCategory.CRITICAL:
            return self._handle_critical(record)
        if record.category is ErrorCategory.RECOVERABLE:
            return self._handle_recoverable(record)
        if record.category is ErrorCategory.INPUT_ERROR:
            return ErrorOutcome.input_failure(
                record, INPUT_SUGGESTIONS.get(record.error_type, DEFAULT_SUGGESTIONS)
            )
        if record.category is ErrorCategory.SYSTEM_ERROR:
            if record.retryable:
                return self._handle_recoverable(record)
            raise SystemFailureError(
                f"System error: {record.message}",
                error_type=record.error_type,
                operation=record.operation,
            )
        if record.category is ErrorCategory.CONFIG_ERROR:
            raise ConfigurationError(
                f"Configuration error: {record.message}",
                source=record.operation,
            )
        raise UnknownFailureError(
            f"Unknown error: {record.message}",
            error_type=record.error_type,
            operation=record.operation,
        )

    def _handle_critical(self, record: ErrorRecord) -> ErrorOutcome:
        if self.alert_callback is not None:
            try:
                self.alert_callback(record)
            except Exception as e:
                logger.error(f"Alert callback failed for error {record.id}: {e}")

        raise CriticalFailureError(
            f"Critical security error: {record.message}",
            error_type=record.error_type,
            operation=record.operation,
            error_id=record.id,
        )

    def _handle_recoverable(self, record: ErrorRecord) -> ErrorOutcome:
        key = f"{record.operation}:{record.error_type}"
        attempt = self._retry_counters.get(key, 0)

        if attempt >= self.config.max_retry_attempts:
            self._retry_counters.pop(key, None)
            self.update_circuit_breaker(record.operation, success=False)
            raise MaxRetriesExceededError(
                f"Maximum retry attempts ({self.config.max_retry_attempts}) "
                f"exceeded for {record.operation}",
                operation=record.operation,
                attempts=attempt,
                error_type=record.error_type,
            )

        self._retry_counters[key] = attempt + 1
        delay_ms = self.config.retry_delay_ms * (2 ** attempt)
        logger.info(
            f"Retrying {record.operation} after {record.error_type} "
            f"(attempt {attempt + 1}/{self.config.max_retry_attempts}, delay {delay_ms}ms)"
        )
        return ErrorOutcome.retry(record, attempt=attempt, delay_ms=delay_ms)

    def is_circuit_breaker_open(self, operation: str) -> bool:
        breaker = self._breakers.get(operation)
        if breaker is None or breaker.state is not BreakerState.OPEN:
            return False

        elapsed_ms = (self._clock() - breaker.opened_at) * 1000
        if elapsed_ms > self.config.circuit_breaker_timeout_ms:
            breaker.state = BreakerState.HALF_OPEN
            logger.info(f"Circuit breaker for {operation} is half-open")
            return False
        return True

    def update_circuit_breaker(self, operation: str, success: bool) -> CircuitBreakerState:
        breaker = self._breakers.setdefault(operation, CircuitBreakerState())

        if success:
            breaker.state = BreakerState.CLOSED
            breaker.failure_count = 0
            return breaker

        breaker.failure_count += 1
        breaker.last_failure_time = self._clock()
        if (
            breaker.state is BreakerState.HALF_OPEN
            or breaker.failure_count >= self.config.circuit_breaker_threshold
        ):
            if breaker.state is not BreakerState.OPEN:
                logger.warning(f"Circuit breaker opened for {operation}")
            breaker.state = BreakerState.OPEN
            breaker.opened_at = self._clock()
        return breaker

    async def run_with_retry(
        self,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Await ``func`` with retries driven by handle_error.

        Returns:
            The function's result, or the ErrorOutcome of an input error
        """
        while True:
            if self.is_circuit_breaker_open(operation):
                raise CircuitBreakerOpenError(
                    f"Circuit breaker is open for operation: {operation}",
                    operation=operation,
                )
            try:
                result = await func(*args, **kwargs)
            except CmdGateError as e:
                if e.code == "CIRCUIT_BREAKER_OPEN":
                    raise
                outcome = self.handle_error(e, {"operation": operation})
            except Exception as e:
                outcome = self.handle_error(e, {"operation": operation})
            else:
                self.update_circuit_breaker(operation, success=True)
                self._clear_retries(operation)
                return result

            if not outcome.should_retry:
                return outcome
            await asyncio.sleep(outcome.delay_ms / 1000)

    def _clear_retries(self, operation: str) -> None:
        prefix = f"{operation}:"
        for key in [k for k in self._retry_counters if k.startswith(prefix)]:
            self._retry_counters.pop(key, None)

    def get_error_metrics(self) -> Dict[str, Any]:
        return {
            "total_errors": sum(self._counts.values()),
            "errors_by_type": dict(self._counts),
            "circuit_breakers": {op: b.to_dict() for op, b in self._breakers.items()},
            "active_retries": len(self._retry_counters),
            "error_history_size": len(self._history),
        }

    def get_recent_errors(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in list(self._history)[-limit:]]

    def reset(self) -> None:
        self._history.clear()
        self._counts.clear()
        self._retry_counters.clear()
        self._breakers.clear()


__all__ = [
    "ErrorHandler",
    "ErrorRecord",
    "ErrorOutcome",
    "OutcomeKind",
    "ErrorCategory",
    "Severity",
    "BreakerState",
    "CircuitBreakerState",
    "classify_error",
    "categorize",
    "severity_of",
    "is_retryable",
    "sanitize_message",
]
