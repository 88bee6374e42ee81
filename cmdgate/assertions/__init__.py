"""
cmdgate - Runtime Assertions

Runtime assertion bookkeeping for safety-critical code paths: minimum
assertions per function, bounded loops, tracked allocations, checked
return values. Failures are recorded and logged; they raise only when
``raise_on_failure`` is configured.
"""

import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from ..core.config import AssertionConfig
from ..core.exceptions import AssertionFailure

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "<global>"
MAX_LOG_SIZE = 1000


@dataclass
class AssertionRecord:
    """A single evaluated assertion."""
    id: int
    passed: bool
    message: str
    function_name: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "passed": self.passed,
            "message": self.message,
            "function_name": self.function_name,
            "context": self.context,
            "timestamp": self.timestamp,
        }


@dataclass
class _Frame:
    name: str
    entered_at: float
    assertions: int = 0


@dataclass
class _LoopState:
    max_iterations: int
    count: int = 0
    started_at: float = field(default_factory=time.monotonic)


class AssertionEngine:
    """Tracks runtime assertions against the configured discipline rules."""

    def __init__(self, config: Optional[AssertionConfig] = None):
        self.config = config or AssertionConfig()
        self._stack: List[_Frame] = []
        self._function_counts: Dict[str, int] = {}
        self._loops: Dict[str, _LoopState] = {}
        self._allocations: Dict[str, Dict[str, Any]] = {}
        self._log: Deque[AssertionRecord] = deque(maxlen=MAX_LOG_SIZE)
        self._total = 0
        self._passed = 0
        self._failed = 0
        self._returns_checked = 0
        self._returns_failed = 0

    @property
    def current_function(self) -> str:
        return self._stack[-1].name if self._stack else GLOBAL_SCOPE

    def assert_that(
        self,
        condition: Any,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Evaluate an assertion.

        Args:
            condition: Value checked for truthiness
            message: Description of the asserted property
            context: Extra details recorded with a failure

        Returns:
            True if the assertion held

        Raises:
            AssertionFailure: If it failed and raise_on_failure is set
        """
        if not self.config.enabled:
            return bool(condition)

        self._total += 1
        function_name = self.current_function
        self._function_counts[function_name] = self._function_counts.get(function_name, 0) + 1
        if self._stack:
            self._stack[-1].assertions += 1

        passed = bool(condition)
        record = AssertionRecord(
            id=self._total,
            passed=passed,
            message=message,
            function_name=function_name,
            context=dict(context or {}),
        )
        self._log.append(record)

        if passed:
            self._passed += 1
            return True

        self._failed += 1
        logger.error(f"Assertion failed in {function_name}: {message}")
        if self.config.raise_on_failure:
            raise AssertionFailure(message, function_name=function_name, context=record.context)
        return False

    def enter_function(self, name: str) -> None:
        self._stack.append(_Frame(name=name, entered_at=time.monotonic()))
        self._function_counts.setdefault(name, 0)

    def exit_function(self, name: str) -> Dict[str, Any]:
        """
        Leave a function scope and check its assertion count.

        Returns:
            Summary with the function's assertion count and compliance
        """
        if not self._stack:
            logger.warning(f"exit_function({name}) called with empty call stack")
            return {"function_name": name, "assertion_count": 0, "compliant": False}

        frame = self._stack.pop()
        if frame.name != name:
            logger.warning(f"Function exit mismatch: expected {frame.name}, got {name}")

        count = self._function_counts.get(name, 0)
        compliant = count >= self.config.min_assertions_per_function
        if not compliant and self.config.strict_mode:
            logger.warning(
                f"Function {name} has insufficient assertions: "
                f"{count} < {self.config.min_assertions_per_function}"
            )

        return {
            "function_name": name,
            "duration_ms": (time.monotonic() - frame.entered_at) * 1000,
            "assertion_count": count,
            "compliant": compliant,
        }

    @contextmanager
    def function_scope(self, name: str) -> Iterator["AssertionEngine"]:
        """Context manager pairing enter_function and exit_function."""
        self.enter_function(name)
        try:
            yield self
        finally:
            self.exit_function(name)

    def enter_loop(self, loop_id: str, max_iterations: Optional[int] = None) -> None:
        bound = max_iterations or self.config.max_loop_iterations
        self.assert_that(bound > 0, "Max iterations must be positive", {"loop_id": loop_id})
        self._loops.setdefault(loop_id, _LoopState(max_iterations=bound))

    def check_loop_bound(self, loop_id: str) -> bool:
        """Count one iteration; fails the assertion once the bound is exceeded."""
        state = self._loops.get(loop_id)
        if not self.assert_that(state is not None, "Loop must be registered", {"loop_id": loop_id}):
            return False

        state.count += 1
        return self.assert_that(
            state.count <= state.max_iterations,
            f"Loop {loop_id} exceeded maximum iterations: {state.count} > {state.max_iterations}",
            {"loop_id": loop_id, "count": state.count, "max_iterations": state.max_iterations},
        )

    def exit_loop(self, loop_id: str) -> Optional[Dict[str, Any]]:
        state = self._loops.pop(loop_id, None)
        if state is None:
            logger.warning(f"exit_loop({loop_id}) for unregistered loop")
            return None
        return {
            "loop_id": loop_id,
            "count": state.count,
            "duration_ms": (time.monotonic() - state.started_at) * 1000,
        }

    def track_allocation(self, alloc_id: str, size: int, kind: str = "unknown") -> Dict[str, Any]:
        """Record an allocation; large ones fail an assertion in strict mode."""
        self.assert_that(size >= 0, "Size must be non-negative", {"alloc_id": alloc_id, "size": size})
        allocation = {"id": alloc_id, "size": size, "kind": kind, "timestamp": time.time()}
        self._allocations[alloc_id] = allocation

        if self.config.strict_mode and size > self.config.allocation_warning_bytes:
            self.assert_that(
                False,
                f"Large allocation detected: {size} bytes",
                {"alloc_id": alloc_id, "size": size, "kind": kind},
            )
        return allocation

    def track_deallocation(self, alloc_id: str) -> Optional[Dict[str, Any]]:
        allocation = self._allocations.pop(alloc_id, None)
        self.assert_that(
            allocation is not None,
            "Attempting to deallocate untracked object",
            {"alloc_id": alloc_id},
        )
        return allocation

    def validate_function_size(self, name: str, line_count: int) -> bool:
        limit = self.config.max_function_lines
        return self.assert_that(
            line_count <= limit,
            f"Function {name} exceeds maximum size: {line_count} > {limit} lines",
            {"function_name": name, "line_count": line_count, "max_lines": limit},
        )

    def check_return_value(
        self,
        value: Any,
        name: str,
        validator: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """
        Check a function's return value.

        ``None`` fails the check. When a validator is given it must also
        accept the value. The value is returned unchanged.
        """
        self._returns_checked += 1
        ok = self.assert_that(
            value is not None,
            f"Function {name} returned None",
            {"function_name": name},
        )
        if ok and validator is not None:
            ok = self.assert_that(
                bool(validator(value)),
                f"Function {name} returned an invalid value",
                {"function_name": name, "value": repr(value)},
            )
        if not ok:
            self._returns_failed += 1
        return value

    def validate_data_scope(self, name: str, scope: int, expected: int = 3) -> bool:
        return self.assert_that(
            scope <= expected,
            f"Variable {name} scope too broad: level {scope} > {expected}",
            {"variable": name, "scope": scope, "max_scope": expected},
        )

    def check_recursion(self, name: str, depth: int, max_depth: int = 100) -> bool:
        return self.assert_that(
            depth <= max_depth,
            f"Recursion depth exceeded for {name}: {depth} > {max_depth}",
            {"function_name": name, "depth": depth, "max_depth": max_depth},
        )

    def get_compliance_metrics(self) -> Dict[str, Any]:
        functions = {n: c for n, c in self._function_counts.items() if n != GLOBAL_SCOPE}
        compliant = sum(
            1 for c in functions.values() if c >= self.config.min_assertions_per_function
        )
        return {
            "total_assertions": self._total,
            "passed_assertions": self._passed,
            "failed_assertions": self._failed,
            "compliance_rate": (self._passed / self._total * 100) if self._total else 100.0,
            "total_functions": len(functions),
            "compliant_functions": compliant,
            "function_compliance_rate": (
                compliant / len(functions) * 100 if functions else 100.0
            ),
            "active_loops": len(self._loops),
            "active_allocations": len(self._allocations),
            "memory_in_use": sum(a["size"] for a in self._allocations.values()),
            "returns_checked": self._returns_checked,
            "returns_failed": self._returns_failed,
        }

    def get_assertion_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in list(self._log)[-limit:]]

    def generate_compliance_report(self) -> Dict[str, Any]:
        """Build a compliance report over the recorded assertions."""
        metrics = self.get_compliance_metrics()
        rules = {
            "rule2_bounded_loops": metrics["active_loops"] == 0,
            "rule3_no_unfreed_allocations": metrics["active_allocations"] == 0,
            "rule5_min_assertions": metrics["function_compliance_rate"] >= 80,
            "rule7_return_values_checked": metrics["returns_failed"] == 0,
        }

        recommendations = []
        if not rules["rule2_bounded_loops"]:
            recommendations.append("Close all registered loops with exit_loop")
        if not rules["rule3_no_unfreed_allocations"]:
            recommendations.append(
                f"Release {metrics['active_allocations']} tracked allocations"
            )
        if not rules["rule5_min_assertions"]:
            recommendations.append(
                f"Add assertions: at least {self.config.min_assertions_per_function} per function"
            )
        if not rules["rule7_return_values_checked"]:
            recommendations.append("Handle None and invalid return values")

        failures = [r.to_dict() for r in self._log if not r.passed]
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": metrics,
            "rule_compliance": rules,
            "recent_failures": failures[-50:],
            "recommendations": recommendations,
            "verdict": "COMPLIANT" if metrics["compliance_rate"] >= 90 else "NEEDS_IMPROVEMENT",
        }

    def reset(self) -> None:
        self._stack.clear()
        self._function_counts.clear()
        self._loops.clear()
        self._allocations.clear()
        self._log.clear()
        self._total = self._passed = self._failed = 0
        self._returns_checked = self._returns_failed = 0


__all__ = [
    "AssertionEngine",
    "AssertionRecord",
    "GLOBAL_SCOPE",
]
