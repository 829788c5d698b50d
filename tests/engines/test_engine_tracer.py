"""
Tests for settlement_engines.tracer.
"""

from decimal import Decimal

from settlement_engines.calculator import FinancialConfig, LineItem, MonetaryCalculator
from settlement_engines.tracer import compute_input_fingerprint, traced_engine


class TestInputFingerprint:
    def test_fingerprint_is_deterministic(self):
        kwargs = {"amount": Decimal("10.00"), "tags": {"b": 2, "a": 1}}
        assert compute_input_fingerprint(("amount", "tags"), kwargs) == compute_input_fingerprint(
            ("amount", "tags"), dict(reversed(list(kwargs.items()))),
        )

    def test_decimal_scale_does_not_change_fingerprint(self):
        assert compute_input_fingerprint(("x",), {"x": Decimal("10")}) == compute_input_fingerprint(
            ("x",), {"x": Decimal("10.00")},
        )

    def test_different_values_change_fingerprint(self):
        assert compute_input_fingerprint(("x",), {"x": Decimal("10")}) != compute_input_fingerprint(
            ("x",), {"x": Decimal("10.01")},
        )

    def test_missing_field_is_null(self):
        fp = compute_input_fingerprint(("missing",), {})
        assert len(fp) == 16


class TestTracedEngine:
    def test_trace_is_logged(self, captured_logs):
        @traced_engine("demo_engine", "2.1", fingerprint_fields=("value",))
        def double(*, value):
            return value * 2

        assert double(value=Decimal("4")) == Decimal("8")

        traces = [r for r in captured_logs() if r["message"] == "SETTLEMENT_ENGINE_TRACE"]
        assert len(traces) == 1
        assert traces[0]["engine_name"] == "demo_engine"
        assert traces[0]["engine_version"] == "2.1"
        assert traces[0]["input_fingerprint"] == compute_input_fingerprint(
            ("value",), {"value": Decimal("4")},
        )

    def test_calculator_emits_trace(self, captured_logs):
        MonetaryCalculator().compute(
            line_items=[LineItem(description="x", line_total=Decimal("1"))],
            config=FinancialConfig(),
        )
        names = [r.get("engine_name") for r in captured_logs()]
        assert "monetary_calculator" in names
