"""
cmdgate Core Module

Configuration and the exception hierarchy shared by every component.
The SecurityService lives in cmdgate.core.service.
"""

from .config import Config, SecurityLevel, SecurityMode
from .exceptions import (
    CmdGateError,
    ConfigurationError,
    PolicyBlockedError,
    ValidationError,
)

__all__ = [
    "Config",
    "SecurityLevel",
    "SecurityMode",
    "CmdGateError",
    "ConfigurationError",
    "PolicyBlockedError",
    "ValidationError",
]
