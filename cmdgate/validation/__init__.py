"""
cmdgate - Input Validation

Structural validation and sanitization of raw commands, arguments, paths
and execution options. Validation never raises: every problem is reported
as an error (blocking) or a warning (informational) on the result.
"""

import hashlib
import logging
import posixpath
import re
import time
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, List, Optional

from ..core.config import ValidationConfig
from ..patterns import INJECTION_PATTERNS, TRAVERSAL_PATTERNS

logger = logging.getLogger(__name__)

VALIDATOR_VERSION = "1.0.0"

COMMAND_CHARSET = re.compile(r"^[a-zA-Z0-9_\-./]+$")
ARGUMENT_CHARSET = re.compile(r"^[a-zA-Z0-9_\-./\s=:@+,]+$")

DANGEROUS_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".scr", ".pif",
    ".sh", ".bash", ".zsh", ".fish", ".csh", ".tcsh",
    ".ps1", ".psm1", ".psd1", ".ps1xml",
    ".js", ".vbs", ".wsf", ".wsh", ".jar",
    ".app", ".deb", ".rpm", ".dmg", ".pkg",
    ".so", ".dll", ".dylib",
})

SENSITIVE_DIRECTORIES = (
    "/etc", "/root", "/usr/bin", "/usr/sbin", "/bin", "/sbin",
    "/home", "/Users", "/var/log", "/var/run", "/tmp", "/temp",
    "C:\\Windows", "C:\\Program Files", "C:\\Users",
    ".ssh", ".aws", ".docker", ".kube", ".config",
)

ALLOWED_OPTIONS = frozenset({
    "cwd", "env", "timeout", "encoding", "max_buffer", "maxBuffer",
})

MAX_TIMEOUT_MS = 300000

# command -> (minimum non-flag arguments, error message)
CROSS_VALIDATION_RULES = {
    "grep": (1, "grep requires at least a pattern argument"),
    "find": (1, "find requires at least a path argument"),
    "ls": (0, None),
}


@dataclass
class ValidationResult:
    """Outcome of a validation step."""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def add_error(self, message: str) -> None:
        self.is_valid = False
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def merge(self, other: "ValidationResult", prefix: str = "") -> None:
        """Fold another result's errors and warnings into this one."""
        if not other.is_valid:
            self.is_valid = False
        self.errors.extend(f"{prefix}{e}" for e in other.errors)
        self.warnings.extend(f"{prefix}{w}" for w in other.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "sanitized": self.sanitized,
            "metadata": dict(self.metadata),
        }


def is_path_argument(arg: str) -> bool:
    """Check whether an argument looks like a filesystem path."""
    return "/" in arg or "\\" in arg or arg.startswith("./") or arg.startswith("../")


def get_file_extension(path: str) -> Optional[str]:
    """Return the extension of the last path segment, including the dot."""
    last_dot = path.rfind(".")
    last_slash = max(path.rfind("/"), path.rfind("\\"))
    if last_dot != -1 and last_dot > last_slash:
        return path[last_dot:]
    return None


class InputValidator:
    """
    Validator for command execution requests.

    Checks command and argument character sets and lengths, scans for
    injection and traversal patterns, and rejects sensitive paths.
    """

    def __init__(self, config: Optional[ValidationConfig] = None):
        self.config = config or ValidationConfig()

    def validate_command(self, command: Any) -> ValidationResult:
        """
        Validate a command name.

        Args:
            command: Raw command

        Returns:
            ValidationResult with the trimmed command as ``sanitized``
        """
        result = ValidationResult(sanitized=command)

        if not command or not isinstance(command, str):
            result.add_error("Command must be a non-empty string")
            return result

        if len(command) > self.config.max_command_length:
            result.add_error(
                f"Command exceeds maximum length of {self.config.max_command_length} characters"
            )

        if not COMMAND_CHARSET.match(command):
            result.add_error("Command contains invalid characters")

        for pattern in INJECTION_PATTERNS.matches(command):
            result.add_error(f"Command contains potential injection pattern: {pattern.name}")

        trimmed = command.strip()
        if trimmed != command:
            result.add_warning("Command has leading/trailing whitespace")
            result.sanitized = trimmed

        if not trimmed:
            result.add_error("Command cannot be empty")

        return result

    def validate_arguments(self, args: Any) -> ValidationResult:
        """
        Validate an argument list.

        Args:
            args: Raw arguments

        Returns:
            ValidationResult with the trimmed arguments as ``sanitized``
        """
        result = ValidationResult(sanitized=[])

        if not isinstance(args, (list, tuple)):
            result.add_error("Arguments must be a list")
            return result

        if len(args) > self.config.max_total_args:
            result.add_error(
                f"Too many arguments: {len(args)}. "
                f"Maximum allowed: {self.config.max_total_args}"
            )

        for index, arg in enumerate(args):
            arg_result = self.validate_argument(arg)
            result.merge(arg_result, prefix=f"Arg[{index}]: ")
            result.sanitized.append(arg_result.sanitized)

        return result

    def validate_argument(self, arg: Any) -> ValidationResult:
        """Validate a single argument."""
        result = ValidationResult(sanitized=arg)

        if not isinstance(arg, str):
            result.add_error("Argument must be a string")
            return result

        if len(arg) > self.config.max_arg_length:
            result.add_error(
                f"Argument exceeds maximum length of {self.config.max_arg_length} characters"
            )

        if self.config.strict_mode and not ARGUMENT_CHARSET.match(arg):
            result.add_error("Argument contains potentially unsafe characters")

        for pattern in INJECTION_PATTERNS.matches(arg):
            result.add_error(f"Argument contains potential injection pattern: {pattern.name}")

        if is_path_argument(arg):
            path_result = self.validate_path(arg)
            if not path_result.is_valid:
                result.is_valid = False
                result.errors.extend(path_result.errors)
            result.warnings.extend(path_result.warnings)

        trimmed = arg.strip()
        if trimmed != arg:
            result.add_warning("Argument has leading/trailing whitespace")
            result.sanitized = trimmed

        return result

    def validate_path(
        self,
        path: Any,
        allowed_extensions: Optional[Collection[str]] = None,
    ) -> ValidationResult:
        """
        Validate a filesystem path.

        Args:
            path: Raw path
            allowed_extensions: If given, only these extensions pass

        Returns:
            ValidationResult with the normalized path as ``sanitized``
        """
        result = ValidationResult(sanitized=path)

        if not path or not isinstance(path, str):
            result.add_error("Path must be a non-empty string")
            return result

        for pattern in TRAVERSAL_PATTERNS.matches(path):
            result.add_error(f"Path contains traversal pattern: {pattern.name}")

        normalized = posixpath.normpath(path)
        result.sanitized = normalized

        depth = normalized.count("/")
        if depth > self.config.max_path_depth:
            result.add_error(
                f"Path depth {depth} exceeds maximum of {self.config.max_path_depth}"
            )

        for sensitive in SENSITIVE_DIRECTORIES:
            if normalized.startswith(sensitive) or sensitive in normalized:
                result.add_error(f"Path accesses sensitive directory: {sensitive}")

        extension = get_file_extension(normalized)
        if extension:
            if allowed_extensions is not None and extension.lower() not in allowed_extensions:
                result.add_error(f"File extension not allowed: {extension}")
            if extension.lower() in DANGEROUS_EXTENSIONS:
                result.add_warning(f"Path has potentially dangerous extension: {extension}")

        return result

    def validate_options(self, options: Any) -> ValidationResult:
        """Validate execution options."""
        result = ValidationResult(sanitized=options)

        if not isinstance(options, dict):
            result.add_error("Options must be a mapping")
            return result

        sanitized = dict(options)
        result.sanitized = sanitized

        for key in options:
            if key not in ALLOWED_OPTIONS:
                result.add_warning(f"Unknown option: {key}")

        if options.get("cwd"):
            cwd_result = self.validate_path(options["cwd"])
            if not cwd_result.is_valid:
                result.is_valid = False
                result.errors.extend(f"cwd: {e}" for e in cwd_result.errors)
            sanitized["cwd"] = cwd_result.sanitized

        if "timeout" in options:
            timeout = options["timeout"]
            if (
                isinstance(timeout, bool)
                or not isinstance(timeout, (int, float))
                or not 0 <= timeout <= MAX_TIMEOUT_MS
            ):
                result.add_error(f"timeout must be a number between 0 and {MAX_TIMEOUT_MS}ms")

        return result

    def cross_validate(self, command: str, args: List[Any]) -> ValidationResult:
        """Apply command-specific argument rules."""
        result = ValidationResult()
        rule = CROSS_VALIDATION_RULES.get(command)

        if rule is None:
            result.add_warning(f"No specific validation rules for command: {command}")
            return result

        min_args, message = rule
        positional = [a for a in args if isinstance(a, str) and not a.startswith("-")]
        if len(positional) < min_args:
            result.add_error(message)

        return result

    def validate_command_execution(
        self,
        command: Any,
        args: Any = None,
        options: Any = None,
    ) -> ValidationResult:
        """
        Validate a complete command execution request.

        Args:
            command: Raw command
            args: Raw arguments
            options: Raw execution options

        Returns:
            ValidationResult whose ``sanitized`` holds command, args, options
        """
        args = [] if args is None else args
        options = {} if options is None else options

        result = ValidationResult(
            sanitized={"command": command, "args": args, "options": options},
            metadata={
                "validated_at": time.time(),
                "validator": "InputValidator",
                "version": VALIDATOR_VERSION,
            },
        )

        command_result = self.validate_command(command)
        result.merge(command_result)
        result.sanitized["command"] = command_result.sanitized

        args_result = self.validate_arguments(args)
        result.merge(args_result)
        result.sanitized["args"] = args_result.sanitized

        options_result = self.validate_options(options)
        result.merge(options_result)
        result.sanitized["options"] = options_result.sanitized

        if isinstance(result.sanitized["command"], str) and isinstance(
            result.sanitized["args"], list
        ):
            result.merge(self.cross_validate(
                result.sanitized["command"], result.sanitized["args"]
            ))

        result.metadata["validation_hash"] = self.validation_hash(
            str(result.sanitized["command"]), result.sanitized["args"] or []
        )

        if not result.is_valid:
            logger.debug(f"Validation failed for {command!r}: {result.errors}")

        return result

    @staticmethod
    def validation_hash(command: str, args: List[Any]) -> str:
        """Audit hash of a validated request."""
        content = f"{command}|{'|'.join(str(a) for a in args)}|{time.time()}"
        return hashlib.sha256(content.encode()).hexdigest()[:16]

    def get_validation_metrics(self) -> Dict[str, Any]:
        """Get validator configuration summary."""
        return {
            "injection_patterns": len(INJECTION_PATTERNS),
            "injection_patterns_version": INJECTION_PATTERNS.version,
            "path_traversal_patterns": len(TRAVERSAL_PATTERNS),
            "dangerous_extensions": len(DANGEROUS_EXTENSIONS),
            "sensitive_directories": len(SENSITIVE_DIRECTORIES),
            "max_command_length": self.config.max_command_length,
            "max_arg_length": self.config.max_arg_length,
            "max_total_args": self.config.max_total_args,
            "max_path_depth": self.config.max_path_depth,
            "strict_mode": self.config.strict_mode,
        }


__all__ = [
    "InputValidator",
    "ValidationResult",
    "is_path_argument",
    "get_file_extension",
    "DANGEROUS_EXTENSIONS",
    "SENSITIVE_DIRECTORIES",
]
