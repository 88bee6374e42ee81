"""
cmdgate Security Service

Builds the policy engine and executor from a Config and owns the
process-level concerns: environment overrides, the error boundary,
tool middleware, audit export and shutdown.
"""

import asyncio
import functools
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from ..executor import SecureCommandExecutor
from ..observability import configure_from
from ..patterns import redact_message
from ..policy import PolicyEngine
from .config import Config
from .exceptions import CmdGateError, ConfigurationError

logger = logging.getLogger(__name__)

RECENT_EVENTS_LIMIT = 10
ARGS_TRUNCATE_LENGTH = 200

# Process-wide hooks are installed by at most one service
_boundary_owner: Optional["SecurityService"] = None


class SecurityService:
    """
    Process-level entry point for cmdgate.

    Usage:
        service = SecurityService(Config.from_file("config/cmdgate.yaml"))
        service.install_error_boundary()
        await service.start()
        result = await service.executor.execute("ls", ["-la"])
        await service.stop()
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        environ: Optional[Mapping[str, str]] = None,
        configure_logging: bool = True,
    ):
        self.config = (config or Config()).apply_env(environ)

        errors = self.config.validate()
        if errors:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(errors)}",
                errors=errors,
            )
        if configure_logging:
            configure_from(self.config.logging)

        self.engine = PolicyEngine(self.config)
        self.executor = SecureCommandExecutor(
            self.config.workspace,
            self.config.execution,
            policy=self.engine,
        )
        self.caller_tokens: Dict[str, str] = {
            name: self.engine.register_trusted_caller(name)
            for name in self.config.trusted_callers
        }

        self._started_at = time.monotonic()
        self._running = False
        self._previous_excepthook = None

    async def start(self) -> None:
        if self._running:
            return
        await self.engine.start()
        self._running = True
        logger.info(
            f"cmdgate started (mode={self.engine.mode.value}, "
            f"level={self.executor.security_level.value}, workspace={self.executor.root})"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        await self.engine.stop()
        self._running = False

        if self.config.audit.export_on_exit:
            try:
                self.export_audit_log(self.config.audit.export_path)
            except OSError as e:
                logger.error(f"Failed to export audit log on shutdown: {e}")
        logger.info("cmdgate stopped")

    # ------------------------------------------------------------------
    # Error boundary
    # ------------------------------------------------------------------

    def install_error_boundary(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """
        Install process-wide hooks for uncaught exceptions.

        Hooks are installed once per process. Uncaught exceptions are
        audited and logged before the previous hook runs.

        Args:
            loop: Event loop to attach an exception handler to, if any

        Returns:
            True if this call installed the hooks
        """
        global _boundary_owner
        if _boundary_owner is not None:
            logger.debug("Error boundary already installed")
            return False

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        if loop is not None:
            loop.set_exception_handler(self._loop_exception_handler)

        _boundary_owner = self
        logger.info("Error boundary installed")
        return True

    def remove_error_boundary(self) -> None:
        global _boundary_owner
        if _boundary_owner is not self:
            return
        sys.excepthook = self._previous_excepthook or sys.__excepthook__
        _boundary_owner = None

    def _record_uncaught(self, kind: str, error: Optional[BaseException], message: str) -> None:
        text = redact_message(message)
        self.engine.audit_log.record(kind, {
            "error_type": type(error).__name__ if error else None,
            "message": text,
        }, severity="critical")
        logger.critical(f"{kind}: {text}")

    def _excepthook(self, exc_type, exc_value, exc_tb) -> None:
        if not issubclass(exc_type, KeyboardInterrupt):
            self._record_uncaught("UNCAUGHT_EXCEPTION", exc_value, str(exc_value))
        (self._previous_excepthook or sys.__excepthook__)(exc_type, exc_value, exc_tb)

    def _loop_exception_handler(
        self,
        loop: asyncio.AbstractEventLoop,
        context: Dict[str, Any],
    ) -> None:
        error = context.get("exception")
        self._record_uncaught(
            "UNHANDLED_TASK_EXCEPTION",
            error,
            str(error) if error else context.get("message", "unknown"),
        )
        loop.default_exception_handler(context)

    # ------------------------------------------------------------------
    # Tool middleware
    # ------------------------------------------------------------------

    def secure_tool(self, name: str) -> Callable:
        """
        Decorator auditing an async tool handler.

        Records TOOL_START, TOOL_SUCCESS and TOOL_ERROR events. Failures are
        classified by the error handler; fatal classifications are raised
        in place of the original exception.
        """
        def decorator(handler: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            @functools.wraps(handler)
            async def wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.monotonic()
                summary = json.dumps({"args": args, "kwargs": kwargs}, default=str)
                self.engine.audit_log.record("TOOL_START", {
                    "tool": name,
                    "args": redact_message(summary[:ARGS_TRUNCATE_LENGTH]),
                })

                try:
                    result = await handler(*args, **kwargs)
                except Exception as e:
                    self.engine.audit_log.record("TOOL_ERROR", {
                        "tool": name,
                        "duration_ms": (time.monotonic() - start) * 1000,
                        "error": redact_message(str(e)),
                    })
                    try:
                        self.engine.error_handler.handle_error(e, {"operation": f"tool:{name}"})
                    except CmdGateError as classified:
                        raise classified from e
                    raise

                self.engine.audit_log.record("TOOL_SUCCESS", {
                    "tool": name,
                    "duration_ms": (time.monotonic() - start) * 1000,
                })
                return result

            return wrapper

        return decorator

    # ------------------------------------------------------------------
    # Status and administration
    # ------------------------------------------------------------------

    def get_security_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.engine.enabled,
            "mode": self.engine.mode.value,
            "security_level": self.executor.security_level.value,
            "workspace": str(self.executor.root),
            "running": self._running,
            "uptime_s": time.monotonic() - self._started_at,
            "metrics": self.engine.get_security_metrics(),
            "executor": self.executor.get_metrics(),
            "recent_events": self.engine.get_audit_log(RECENT_EVENTS_LIMIT),
            "audit_chain_valid": self.engine.audit_log.verify_chain(),
        }

    def emergency_disable(self, reason: str = "unspecified") -> str:
        """Disable policy enforcement immediately."""
        self.engine.audit_log.record(
            "EMERGENCY_DISABLE", {"reason": redact_message(reason)}, severity="critical"
        )
        self.engine.disable()
        logger.critical(f"Security enforcement disabled: {reason}")
        return "Security framework disabled"

    def export_audit_log(self, path: str) -> Path:
        return self.engine.audit_log.export(path, metrics=self.engine.get_security_metrics())


__all__ = ["SecurityService"]
