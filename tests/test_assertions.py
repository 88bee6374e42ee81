"""
Tests for cmdgate runtime assertions
"""

import pytest

from cmdgate.assertions import GLOBAL_SCOPE, AssertionEngine
from cmdgate.core.config import AssertionConfig
from cmdgate.core.exceptions import AssertionFailure


@pytest.fixture
def engine():
    return AssertionEngine()


class TestAssertThat:
    """Tests for assertion evaluation."""

    def test_pass_and_fail(self, engine):
        """Test results and counters."""
        assert engine.assert_that(True, "holds")
        assert not engine.assert_that(0, "does not hold")

        metrics = engine.get_compliance_metrics()
        assert metrics["total_assertions"] == 2
        assert metrics["failed_assertions"] == 1
        assert metrics["compliance_rate"] == 50.0

    def test_global_scope_attribution(self, engine):
        """Test assertions outside a function go to the global scope."""
        engine.assert_that(True, "top level")

        assert engine.get_assertion_log()[0]["function_name"] == GLOBAL_SCOPE
        assert engine.get_compliance_metrics()["total_functions"] == 0

    def test_raise_on_failure(self):
        """Test failures raise when configured."""
        engine = AssertionEngine(AssertionConfig(raise_on_failure=True))

        with pytest.raises(AssertionFailure) as exc_info:
            engine.assert_that(False, "must hold", {"x": 1})

        assert exc_info.value.context == {"x": 1}

    def test_disabled(self):
        """Test a disabled engine records nothing."""
        engine = AssertionEngine(AssertionConfig(enabled=False))

        assert not engine.assert_that(False, "ignored")
        assert engine.get_compliance_metrics()["total_assertions"] == 0

    def test_empty_engine_is_fully_compliant(self, engine):
        """Test rates default to 100 with no data."""
        metrics = engine.get_compliance_metrics()

        assert metrics["compliance_rate"] == 100.0
        assert metrics["function_compliance_rate"] == 100.0


class TestFunctionScopes:
    """Tests for function tracking."""

    def test_function_scope(self, engine):
        """Test assertions are attributed to the innermost function."""
        with engine.function_scope("outer"):
            engine.assert_that(True, "a")
            with engine.function_scope("inner"):
                engine.assert_that(True, "b")

        names = [r["function_name"] for r in engine.get_assertion_log()]
        assert names == ["outer", "inner"]
        assert engine.current_function == GLOBAL_SCOPE

    def test_exit_summary(self, engine):
        """Test exit reports compliance against the minimum."""
        engine.enter_function("f")
        engine.assert_that(True, "a")
        engine.assert_that(True, "b")

        summary = engine.exit_function("f")

        assert summary["assertion_count"] == 2
        assert summary["compliant"]

    def test_insufficient_assertions(self, engine):
        """Test functions below the minimum lower the function rate."""
        with engine.function_scope("thin"):
            engine.assert_that(True, "only one")

        metrics = engine.get_compliance_metrics()
        assert metrics["compliant_functions"] == 0
        assert metrics["function_compliance_rate"] == 0.0

    def test_exit_with_empty_stack(self, engine):
        """Test an unmatched exit is tolerated."""
        assert engine.exit_function("ghost")["compliant"] is False


class TestLoopsAndAllocations:
    """Tests for loop bounds and allocation tracking."""

    def test_loop_bound(self, engine):
        """Test iterations beyond the bound fail."""
        engine.enter_loop("scan", max_iterations=2)

        assert engine.check_loop_bound("scan")
        assert engine.check_loop_bound("scan")
        assert not engine.check_loop_bound("scan")

        summary = engine.exit_loop("scan")
        assert summary["count"] == 3
        assert engine.exit_loop("scan") is None

    def test_unregistered_loop(self, engine):
        """Test checking an unknown loop fails."""
        assert not engine.check_loop_bound("nope")

    def test_allocations(self, engine):
        """Test allocation tracking and release."""
        engine.track_allocation("buf", 100, "bytes")
        assert engine.get_compliance_metrics()["memory_in_use"] == 100

        assert engine.track_deallocation("buf")["size"] == 100
        assert engine.track_deallocation("buf") is None
        assert engine.get_compliance_metrics()["active_allocations"] == 0

    def test_large_allocation_strict(self, engine):
        """Test large allocations fail in strict mode."""
        engine.track_allocation("big", 4096)

        assert engine.get_compliance_metrics()["failed_assertions"] == 1


class TestChecks:
    """Tests for the remaining checks."""

    def test_return_value(self, engine):
        """Test None and validator failures are counted."""
        assert engine.check_return_value(5, "f") == 5
        assert engine.check_return_value(None, "g") is None
        engine.check_return_value(-1, "h", validator=lambda v: v >= 0)

        metrics = engine.get_compliance_metrics()
        assert metrics["returns_checked"] == 3
        assert metrics["returns_failed"] == 2

    def test_size_scope_recursion(self, engine):
        """Test size, scope and recursion limits."""
        assert engine.validate_function_size("f", 60)
        assert not engine.validate_function_size("g", 61)
        assert not engine.validate_data_scope("v", 4)
        assert engine.check_recursion("r", 100)
        assert not engine.check_recursion("r", 101)


class TestReport:
    """Tests for the compliance report."""

    def test_compliant_report(self, engine):
        """Test a clean run is compliant."""
        with engine.function_scope("f"):
            engine.assert_that(True, "a")
            engine.assert_that(True, "b")

        report = engine.generate_compliance_report()

        assert report["verdict"] == "COMPLIANT"
        assert all(report["rule_compliance"].values())
        assert report["recommendations"] == []

    def test_non_compliant_report(self, engine):
        """Test open loops and failures produce recommendations."""
        engine.enter_loop("open")
        engine.track_allocation("leak", 10)
        engine.assert_that(False, "broken")

        report = engine.generate_compliance_report()

        assert report["verdict"] == "NEEDS_IMPROVEMENT"
        assert not report["rule_compliance"]["rule2_bounded_loops"]
        assert not report["rule_compliance"]["rule3_no_unfreed_allocations"]
        assert len(report["recent_failures"]) == 1
        assert len(report["recommendations"]) == 2

    def test_reset(self, engine):
        """Test reset clears everything."""
        engine.assert_that(False, "x")
        engine.reset()

        assert engine.get_compliance_metrics()["total_assertions"] == 0
        assert engine.get_assertion_log() == []
