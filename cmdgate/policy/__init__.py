"""
cmdgate - Policy Engine

Orchestrates the admission pipeline for a command request: rate limiting,
category policy, input validation, trusted-tool verification and the
enforcement mode. Every request ends in a decision. Exceptions raised
along the way are classified by the ErrorHandler; transient ones are
retried, the rest become ERROR decisions.
"""

import hashlib
import json
import logging
import secrets
import shutil
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from ..assertions import AssertionEngine
from ..audit import AuditLog
from ..catalog import CommandCatalog, CommandCategory
from ..core.config import Config, SecurityMode
from ..core.exceptions import CmdGateError, ConfigurationError, ValidationError
from ..errors import ErrorHandler, ErrorOutcome, sanitize_message
from ..observability import MetricsCollector
from ..patterns import DANGEROUS_COMMAND_PATTERNS
from ..rate_limit import RateLimiter
from ..trust import TrustedToolVerifier
from ..validation import InputValidator

logger = logging.getLogger(__name__)

UNSAFE_ARGUMENT_FRAGMENTS = ("../", "/etc", "/root")

# Least recently used ALLOW decisions are evicted past this size
DECISION_CACHE_SIZE = 1000

RETRY_OPERATION = "policy_check"


class PolicyAction(Enum):
    ALLOW = "ALLOW"
    BLOCK = "BLOCK"
    VALIDATE = "VALIDATE"
    CONSENT = "CONSENT"
    ERROR = "ERROR"


@dataclass(frozen=True)
class PolicyDecision:
    """Category-level decision for a command, before validation."""
    action: PolicyAction
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    hard_block: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "metadata": self.metadata,
            "hard_block": self.hard_block,
        }


@dataclass(frozen=True)
class EngineDecision:
    """Final admission decision for a command request."""
    success: bool
    action: PolicyAction
    reason: str
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_id: Optional[str] = None
    cached: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def requires_consent(self) -> bool:
        return self.action is PolicyAction.CONSENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action.value,
            "reason": self.reason,
            "warnings": list(self.warnings),
            "metadata": self.metadata,
            "error_id": self.error_id,
            "cached": self.cached,
            "timestamp": self.timestamp,
        }


class PolicyEngine:
    """
    Security policy engine.

    Components are built from ``config`` unless injected.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        catalog: Optional[CommandCatalog] = None,
        validator: Optional[InputValidator] = None,
        rate_limiter: Optional[RateLimiter] = None,
        verifier: Optional[TrustedToolVerifier] = None,
        error_handler: Optional[ErrorHandler] = None,
        assertions: Optional[AssertionEngine] = None,
        audit_log: Optional[AuditLog] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or Config()
        self.mode = self.config.mode
        self.enabled = self.config.enabled

        self.catalog = catalog or CommandCatalog(category_overrides=self.config.categories)
        self.validator = validator or InputValidator(self.config.validation)
        self.rate_limiter = rate_limiter or RateLimiter(self.config.rate_limit)
        self.verifier = verifier or TrustedToolVerifier(self.config.trust)
        self.error_handler = error_handler or ErrorHandler(self.config.error_handling)
        self.assertions = assertions or AssertionEngine(self.config.assertions)
        self.audit_log = audit_log or AuditLog(self.config.audit)
        self.metrics = metrics or MetricsCollector()

        self._callers: Dict[str, str] = {}
        self._cache: "OrderedDict[str, EngineDecision]" = OrderedDict()
        self._stats = {
            "total_requests": 0,
            "allowed": 0,
            "blocked": 0,
            "consent_required": 0,
            "validated": 0,
            "trusted_bypasses": 0,
            "errors": 0,
            "cache_hits": 0,
        }

        self.audit_log.record("INIT", {
            "mode": self.mode.value,
            "enabled": self.enabled,
            "commands": len(self.catalog),
        })
        logger.info(f"Policy engine initialized in {self.mode.value} mode")

    # ------------------------------------------------------------------
    # Pure policy
    # ------------------------------------------------------------------

    def check_command_policy(
        self,
        command: str,
        args: Optional[Sequence[str]] = None,
    ) -> PolicyDecision:
        """
        Decide the category-level action for a command.

        Does not touch rate limits, caches or the audit log.

        Args:
            command: Command name
            args: Command arguments

        Returns:
            PolicyDecision
        """
        args = [str(a) for a in (args or [])]
        command = str(command)
        full_command = f"{command} {' '.join(args)}"

        category = self.catalog.category_of(command)
        metadata = {
            "command": command,
            "args": args,
            "category": category.value if category else None,
        }

        pattern = DANGEROUS_COMMAND_PATTERNS.search(full_command)
        if pattern is not None:
            return PolicyDecision(
                action=PolicyAction.BLOCK,
                reason=f"Command '{command}' matches a dangerous pattern",
                metadata={**metadata, "pattern": pattern.name},
                hard_block=True,
            )

        if category is CommandCategory.NEVER_ALLOW:
            return PolicyDecision(
                PolicyAction.BLOCK,
                f"Command '{command}' is blocked by security policy",
                metadata,
                hard_block=True,
            )
        if category is CommandCategory.ALWAYS_ALLOW:
            return PolicyDecision(
                PolicyAction.ALLOW, f"Command '{command}' is in the always-allow list", metadata
            )
        if category is CommandCategory.REQUIRE_CONSENT:
            return PolicyDecision(
                PolicyAction.CONSENT, f"Command '{command}' requires user consent", metadata
            )
        if category is CommandCategory.TRUSTED_TOOL:
            return PolicyDecision(
                PolicyAction.ALLOW, f"Command '{command}' is a trusted internal tool", metadata
            )
        return PolicyDecision(
            PolicyAction.VALIDATE, f"Command '{command}' requires validation", metadata
        )

    def is_command_safe(self, command: str, args: Optional[Sequence[str]] = None) -> bool:
        """Quick check: no dangerous pattern and no sensitive path fragments."""
        args = [str(a) for a in (args or [])]
        if DANGEROUS_COMMAND_PATTERNS.search(f"{command} {' '.join(args)}"):
            return False
        return not any(
            fragment in arg for arg in args for fragment in UNSAFE_ARGUMENT_FRAGMENTS
        )

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    async def validate_command_execution(
        self,
        command: str,
        args: Optional[Sequence[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> EngineDecision:
        """
        Run a command request through the full admission pipeline.

        Args:
            command: Command name
            args: Command arguments
            context: Request context; recognizes ``client_id``,
                ``caller_token`` and ``command_type``

        Returns:
            EngineDecision; never raises
        """
        context = dict(context or {})
        client_id = str(context.get("client_id", "default"))
        self._stats["total_requests"] += 1

        if not self.enabled:
            return EngineDecision(True, PolicyAction.ALLOW, "Security disabled")

        try:
            with self.metrics.timer("cmdgate_policy_check_ms"):
                decision = await self._evaluate(command, args, context, client_id)
        except Exception as e:
            try:
                outcome = self.error_handler.handle_error(
                    e, {"operation": RETRY_OPERATION, "command": str(command)}
                )
                decision = self._error_decision(
                    command, args, client_id, outcome.message, outcome.error_id
                )
            except CmdGateError as fatal:
                decision = self._fatal_decision(fatal, command, args, client_id)

        self.metrics.counter_inc(
            "cmdgate_decisions_total", labels={"action": decision.action.value}
        )
        return decision

    async def _evaluate(
        self,
        command: Any,
        raw_args: Any,
        context: Dict[str, Any],
        client_id: str,
    ) -> EngineDecision:
        with self.assertions.function_scope("validate_command_execution"):
            self.assertions.assert_that(
                isinstance(command, str) and bool(command), "Command must be a non-empty string"
            )
            self.assertions.assert_that(
                raw_args is None or isinstance(raw_args, (list, tuple)),
                "Arguments must be a list",
            )
        if raw_args is not None and not isinstance(raw_args, (list, tuple)):
            raise ValidationError("Arguments must be a list", errors=["Arguments must be a list"])
        args = list(raw_args or [])

        limit = self.rate_limiter.is_allowed(
            client_id,
            str(context.get("command_type", command)),
            {"command": command, "args": args},
        )
        if not limit.allowed:
            self._stats["blocked"] += 1
            self._audit("RATE_LIMITED", command, args, client_id, reason=limit.reason)
            return EngineDecision(
                success=False,
                action=PolicyAction.BLOCK,
                reason=limit.reason,
                metadata={"rate_limit": limit.to_dict()},
            )

        caller = self._caller_for(context.get("caller_token"))
        key = self._cache_key(command, args, caller)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            self._stats["cache_hits"] += 1
            self._stats["allowed"] += 1
            self._audit("ALLOWED", command, args, client_id, reason=cached.reason, cached=True)
            return replace(cached, cached=True)

        # Transient failures are retried with backoff; the breaker gates every attempt
        try:
            result = await self.error_handler.run_with_retry(
                RETRY_OPERATION, self._decide, command, args, client_id, caller, key,
            )
        except CmdGateError as fatal:
            return self._fatal_decision(fatal, command, args, client_id)
        if isinstance(result, ErrorOutcome):
            return self._error_decision(command, args, client_id, result.message, result.error_id)
        return result

    async def _decide(
        self,
        command: str,
        args: List[str],
        client_id: str,
        caller: Optional[str],
        key: str,
    ) -> EngineDecision:
        policy = self.check_command_policy(command, args)
        action = policy.action
        reason = policy.reason
        metadata = dict(policy.metadata)
        warnings: List[str] = []

        if action is PolicyAction.VALIDATE and caller is not None:
            self._stats["trusted_bypasses"] += 1
            self._audit("TRUSTED_BYPASS", command, args, client_id, caller=caller)
            action = PolicyAction.ALLOW
            reason = f"Command '{command}' allowed for trusted caller '{caller}'"
            metadata["trusted_caller"] = caller

        elif action is PolicyAction.VALIDATE:
            self._stats["validated"] += 1
            result = self.validator.validate_command_execution(command, args)
            metadata["validation_hash"] = result.metadata.get("validation_hash")

            if not result.is_valid:
                self._audit(
                    "VALIDATION_FAILED", command, args, client_id, errors=result.errors
                )
                action = PolicyAction.BLOCK
                reason = f"Validation failed: {'; '.join(result.errors)}"
                metadata["errors"] = list(result.errors)
            else:
                if result.warnings:
                    self._audit(
                        "VALIDATION_WARNING", command, args, client_id,
                        warnings=result.warnings,
                    )
                    warnings.extend(result.warnings)

                verification = await self._verify_tool(command)
                if verification is not None:
                    metadata["tool_verification"] = verification.status.value
                if verification is not None and not verification.trusted:
                    action = PolicyAction.BLOCK
                    reason = f"Tool verification failed: {verification.reason}"
                else:
                    action = PolicyAction.ALLOW
                    reason = f"Command '{command}' passed validation"

        return self._enforce(
            PolicyDecision(action, reason, metadata, policy.hard_block),
            command, args, client_id, warnings, key,
        )

    def _enforce(
        self,
        decision: PolicyDecision,
        command: str,
        args: List[str],
        client_id: str,
        warnings: List[str],
        cache_key: str,
    ) -> EngineDecision:
        """Apply the enforcement mode to a resolved decision."""
        if decision.action is PolicyAction.ALLOW:
            self._stats["allowed"] += 1
            self._audit("ALLOWED", command, args, client_id, reason=decision.reason)
            result = EngineDecision(
                True, PolicyAction.ALLOW, decision.reason, warnings, decision.metadata
            )
            self._cache[cache_key] = result
            self._cache.move_to_end(cache_key)
            while len(self._cache) > DECISION_CACHE_SIZE:
                self._cache.popitem(last=False)
            return result

        if self.mode is SecurityMode.MONITOR and not decision.hard_block:
            event = "MONITOR_BLOCK" if decision.action is PolicyAction.BLOCK else "CONSENT_BYPASSED"
            self._stats["allowed"] += 1
            self._audit(event, command, args, client_id, reason=decision.reason)
            warnings.append(f"Monitor mode: {decision.reason}")
            return EngineDecision(
                True, PolicyAction.ALLOW, decision.reason, warnings,
                {**decision.metadata, "monitored_action": decision.action.value},
            )

        if self.mode is SecurityMode.WARN:
            logger.warning(
                f"Policy {decision.action.value} for {command}: {decision.reason}",
                extra={"client_id": client_id, "command": command},
            )

        if decision.action is PolicyAction.CONSENT:
            self._stats["consent_required"] += 1
            self._audit("CONSENT_REQUIRED", command, args, client_id, reason=decision.reason)
        else:
            self._stats["blocked"] += 1
            self._audit("BLOCKED", command, args, client_id, reason=decision.reason)

        return EngineDecision(
            False, decision.action, decision.reason, warnings, decision.metadata
        )

    async def _verify_tool(self, command: str):
        if not self.config.verify_tools:
            return None
        tool_path = shutil.which(command)
        if tool_path is None:
            return None
        return await self.verifier.verify_tool(tool_path)

    def _fatal_decision(
        self,
        fatal: CmdGateError,
        command: Any,
        args: Any,
        client_id: str,
    ) -> EngineDecision:
        return self._error_decision(
            command, args, client_id,
            sanitize_message(fatal.message), fatal.details.get("error_id"),
        )

    def _error_decision(
        self,
        command: Any,
        args: Any,
        client_id: str,
        reason: str,
        error_id: Optional[str],
    ) -> EngineDecision:
        self._stats["errors"] += 1
        self._audit("ERROR", command, args, client_id, reason=reason, error_id=error_id)
        return EngineDecision(
            success=False,
            action=PolicyAction.ERROR,
            reason=reason,
            error_id=error_id,
        )

    @staticmethod
    def _cache_key(command: str, args: Sequence[str], caller: Optional[str] = None) -> str:
        content = f"{caller or ''}:{command}:{json.dumps(list(args), default=str)}"
        return hashlib.sha256(content.encode()).hexdigest()[:16]

    def _audit(self, event: str, command: Any, args: Any, client_id: str, **data: Any) -> None:
        self.audit_log.record(event, {
            "command": str(command),
            "args": [str(a) for a in (args or [])] if isinstance(args, (list, tuple)) else str(args),
            "client_id": client_id,
            **data,
        })

    # ------------------------------------------------------------------
    # Trusted callers
    # ------------------------------------------------------------------

    def register_trusted_caller(self, name: str) -> str:
        """
        Issue a capability token for an in-process caller.

        Requests carrying the token skip input validation. Hard blocks
        still apply.
        """
        token = secrets.token_urlsafe(32)
        self._callers[name] = token
        logger.info(f"Registered trusted caller {name}")
        return token

    def revoke_trusted_caller(self, name: str) -> bool:
        if self._callers.pop(name, None) is None:
            return False
        self._cache.clear()
        logger.info(f"Revoked trusted caller {name}")
        return True

    def _caller_for(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        for name, expected in self._callers.items():
            if secrets.compare_digest(expected, str(token)):
                return name
        logger.warning("Invalid trusted caller token presented")
        return None

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_mode(self, mode: Union[SecurityMode, str]) -> None:
        try:
            new_mode = mode if isinstance(mode, SecurityMode) else SecurityMode(str(mode).lower())
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid security mode: {mode}",
                errors=[f"mode must be one of {[m.value for m in SecurityMode]}"],
                source="mode",
            ) from e

        old = self.mode
        self.mode = new_mode
        self._cache.clear()
        self.audit_log.record("MODE_CHANGE", {"from": old.value, "to": new_mode.value})
        logger.info(f"Security mode changed from {old.value} to {new_mode.value}")

    def enable(self) -> None:
        self.enabled = True
        logger.info("Security policy enabled")

    def disable(self) -> None:
        self.enabled = False
        self._cache.clear()
        logger.warning("Security policy disabled")

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_audit_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.audit_log.entries(limit)

    def clear_audit_log(self) -> None:
        self.audit_log.clear()

    def get_compliance_report(self) -> Dict[str, Any]:
        return self.assertions.generate_compliance_report()

    def get_security_metrics(self) -> Dict[str, Any]:
        """Aggregate engine counters with component metrics."""
        return {
            "engine": {
                **self._stats,
                "mode": self.mode.value,
                "enabled": self.enabled,
                "cache_size": len(self._cache),
                "trusted_callers": len(self._callers),
            },
            "rate_limiter": self.rate_limiter.get_stats(),
            "tool_verifier": self.verifier.get_metrics(),
            "error_handler": self.error_handler.get_error_metrics(),
            "assertions": self.assertions.get_compliance_metrics(),
            "audit": self.audit_log.get_stats(),
            "metrics": self.metrics.get_metrics(),
        }

    async def start(self) -> None:
        await self.verifier.load()
        self.rate_limiter.start_cleanup()

    async def stop(self) -> None:
        await self.rate_limiter.stop_cleanup()


__all__ = [
    "PolicyEngine",
    "PolicyAction",
    "PolicyDecision",
    "EngineDecision",
]
