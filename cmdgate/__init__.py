"""
cmdgate - Command Execution Security Gateway

Decides whether an external command may run and runs admitted commands
inside a workspace: input validation, rate limiting, trusted tool
verification, category policy, consent and a tamper-evident audit trail.

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "cmdgate maintainers"

from .core.config import Config, SecurityLevel, SecurityMode
from .core.exceptions import (
    CmdGateError,
    ConfigurationError,
    PolicyBlockedError,
    ValidationError,
)
from .core.service import SecurityService
from .executor import SecureCommandExecutor
from .policy import PolicyAction, PolicyEngine

__all__ = [
    "SecurityService",
    "PolicyEngine",
    "PolicyAction",
    "SecureCommandExecutor",
    "Config",
    "SecurityLevel",
    "SecurityMode",
    "CmdGateError",
    "ConfigurationError",
    "PolicyBlockedError",
    "ValidationError",
]
