"""
cmdgate Configuration Management

Centralized configuration for all security subsystems.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml


class SecurityMode(Enum):
    """Enforcement modes for the policy engine."""
    MONITOR = "monitor"
    WARN = "warn"
    BLOCK = "block"


class SecurityLevel(Enum):
    """Executor security levels."""
    STRICT = "STRICT"
    BALANCED = "BALANCED"
    PERMISSIVE = "PERMISSIVE"


@dataclass
class ValidationConfig:
    """Input validation limits."""
    max_command_length: int = 1000
    max_arg_length: int = 500
    max_total_args: int = 50
    max_path_depth: int = 10
    strict_mode: bool = True


@dataclass
class RateLimitConfig:
    """Rate limiting and anomaly detection configuration."""
    max_requests: int = 100
    window_ms: int = 60000
    burst_limit: int = 10
    burst_window_ms: int = 1000
    suspicious_threshold: int = 50
    block_duration_ms: int = 300000
    enable_anomaly_detection: bool = True
    rapid_fire_interval_ms: int = 100
    rapid_fire_limit: int = 20
    identical_command_limit: int = 10
    identical_command_window_ms: int = 5000
    error_limit: int = 30
    inactive_tracker_ms: int = 600000


@dataclass
class TrustConfig:
    """Trusted tool verification configuration."""
    registry_path: Optional[str] = None
    learned_store_path: Optional[str] = None
    allow_self_signed: bool = True
    cache_ttl_ms: int = 300000
    checksum_algorithm: str = "sha256"
    signature_algorithm: str = "sha256"
    check_signature: bool = True
    secret_key: Optional[str] = None


@dataclass
class ErrorHandlingConfig:
    """Error handling, retry and circuit breaker configuration."""
    max_retry_attempts: int = 3
    retry_delay_ms: int = 1000
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout_ms: int = 30000
    max_error_history: int = 1000


@dataclass
class ExecutionConfig:
    """Secure command executor configuration."""
    security_level: SecurityLevel = SecurityLevel.BALANCED
    max_output_size: int = 1024 * 1024
    timeout_ms: int = 30000
    consent_ttl_ms: int = 24 * 60 * 60 * 1000
    consent_path_threshold: int = 10
    max_audit_log_size: int = 2000


@dataclass
class AssertionConfig:
    """Runtime assertion tracking configuration."""
    enabled: bool = True
    max_loop_iterations: int = 10000
    min_assertions_per_function: int = 2
    raise_on_failure: bool = False
    strict_mode: bool = True
    allocation_warning_bytes: int = 1024
    max_function_lines: int = 60


@dataclass
class AuditConfig:
    """Audit log configuration."""
    max_entries: int = 10000
    hash_chain: bool = True
    export_on_exit: bool = False
    export_path: str = "cmdgate-audit.json"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    json_format: bool = False
    log_file: Optional[str] = None


_SECTIONS = {
    "validation": ValidationConfig,
    "rate_limit": RateLimitConfig,
    "trust": TrustConfig,
    "error_handling": ErrorHandlingConfig,
    "execution": ExecutionConfig,
    "assertions": AssertionConfig,
    "audit": AuditConfig,
    "logging": LoggingConfig,
}

_TRUE_VALUES = ("1", "true", "yes", "on")

_CATEGORY_NAMES = (
    "NEVER_ALLOW", "ALWAYS_ALLOW", "VALIDATE_REQUIRED", "REQUIRE_CONSENT", "TRUSTED_TOOL",
)


def _enum_safe(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _enum_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_enum_safe(v) for v in value]
    return value


@dataclass
class Config:
    """
    Main configuration class for cmdgate.

    Aggregates all subsystem configurations. The engine-level defaults are
    tighter than the standalone component defaults.
    """
    # Core settings
    mode: SecurityMode = SecurityMode.BLOCK
    enabled: bool = True
    workspace: str = field(default_factory=lambda: os.getcwd())
    verify_tools: bool = True
    trusted_callers: List[str] = field(default_factory=list)
    # Category name (e.g. NEVER_ALLOW) -> extra commands in that category
    categories: Dict[str, List[str]] = field(default_factory=dict)

    # Subsystem configs
    validation: ValidationConfig = field(
        default_factory=lambda: ValidationConfig(
            max_command_length=500,
            max_arg_length=300,
            max_total_args=20,
        )
    )
    rate_limit: RateLimitConfig = field(
        default_factory=lambda: RateLimitConfig(max_requests=50, burst_limit=5)
    )
    trust: TrustConfig = field(default_factory=TrustConfig)
    error_handling: ErrorHandlingConfig = field(default_factory=ErrorHandlingConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    assertions: AssertionConfig = field(default_factory=AssertionConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Populated Config object
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Create configuration from dictionary.

        Sections missing from ``data`` keep their defaults; keys present in a
        section override the default section field by field.

        Args:
            data: Configuration dictionary

        Returns:
            Populated Config object
        """
        config = cls()

        if "mode" in data:
            config.mode = SecurityMode(data["mode"])
        if "enabled" in data:
            config.enabled = bool(data["enabled"])
        if "workspace" in data:
            config.workspace = str(data["workspace"])
        if "verify_tools" in data:
            config.verify_tools = bool(data["verify_tools"])
        if "trusted_callers" in data:
            config.trusted_callers = list(data["trusted_callers"] or [])
        if "categories" in data:
            config.categories = {
                str(k).upper(): list(v or []) for k, v in (data["categories"] or {}).items()
            }

        for name, section_cls in _SECTIONS.items():
            if name not in data or data[name] is None:
                continue
            section_data = dict(asdict(getattr(config, name)))
            section_data.update(data[name])
            if section_cls is ExecutionConfig and "security_level" in section_data:
                section_data["security_level"] = SecurityLevel(
                    _enum_safe(section_data["security_level"])
                )
            setattr(config, name, section_cls(**section_data))

        return config

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """
        Apply CMDGATE_* environment overrides in place.

        Args:
            environ: Environment mapping (defaults to os.environ)

        Returns:
            The same Config object
        """
        env = os.environ if environ is None else environ

        if env.get("CMDGATE_MODE"):
            self.mode = SecurityMode(env["CMDGATE_MODE"].lower())
        if env.get("CMDGATE_ENABLED"):
            self.enabled = env["CMDGATE_ENABLED"].lower() in _TRUE_VALUES
        if env.get("CMDGATE_WORKSPACE"):
            self.workspace = env["CMDGATE_WORKSPACE"]
        if env.get("CMDGATE_SECURITY_LEVEL"):
            self.execution.security_level = SecurityLevel(
                env["CMDGATE_SECURITY_LEVEL"].upper()
            )
        if env.get("CMDGATE_EXPORT_AUDIT_ON_EXIT"):
            self.audit.export_on_exit = (
                env["CMDGATE_EXPORT_AUDIT_ON_EXIT"].lower() in _TRUE_VALUES
            )
        if env.get("CMDGATE_LOG_LEVEL"):
            self.logging.level = env["CMDGATE_LOG_LEVEL"]

        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        result: Dict[str, Any] = {
            "mode": self.mode.value,
            "enabled": self.enabled,
            "workspace": self.workspace,
            "verify_tools": self.verify_tools,
            "trusted_callers": list(self.trusted_callers),
            "categories": {k: list(v) for k, v in self.categories.items()},
        }
        for name in _SECTIONS:
            result[name] = _enum_safe(asdict(getattr(self, name)))
        return result

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not isinstance(self.mode, SecurityMode):
            errors.append(f"Invalid security mode: {self.mode}")
        if not isinstance(self.execution.security_level, SecurityLevel):
            errors.append(f"Invalid security level: {self.execution.security_level}")

        for name in self.categories:
            if name not in _CATEGORY_NAMES:
                errors.append(f"Unknown command category: {name}")

        if not Path(self.workspace).is_dir():
            errors.append(f"Workspace does not exist: {self.workspace}")

        # Every numeric limit must be strictly positive
        for name in _SECTIONS:
            section = getattr(self, name)
            for f in fields(section):
                value = getattr(section, f.name)
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    continue
                if value <= 0:
                    errors.append(f"{name}.{f.name} must be positive")

        if self.rate_limit.burst_limit > self.rate_limit.max_requests:
            errors.append("Rate limit burst_limit cannot exceed max_requests")
        if self.rate_limit.burst_window_ms > self.rate_limit.window_ms:
            errors.append("Rate limit burst_window_ms cannot exceed window_ms")

        if self.logging.level.upper() not in (
            "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"
        ):
            errors.append(f"Invalid log level: {self.logging.level}")

        return errors
