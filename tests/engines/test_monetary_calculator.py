"""
Tests for the MonetaryCalculator.

Covers the fixed order subtotal -> discount -> net -> VAT, the rounding
rules (discount half-up, VAT ceiling), deposit handling, stored-amount
fallbacks for legacy records, and configuration validation.
"""

from decimal import Decimal

import pytest

from settlement_engines.calculator import (
    DepositConfig,
    DiscountConfig,
    FinancialConfig,
    LineItem,
    MonetaryBreakdown,
    MonetaryCalculator,
    StoredAmounts,
    VatConfig,
)
from settlement_kernel.exceptions import InvalidConfigError


def _line(total: str, description: str = "Poste") -> LineItem:
    return LineItem(description=description, line_total=Decimal(total))


def _config(vat: str | None = "21", discount: str | None = None, deposit: str | None = None) -> FinancialConfig:
    return FinancialConfig(
        vat=VatConfig(enabled=vat is not None, rate_percent=Decimal(vat or "0")),
        discount=DiscountConfig(enabled=discount is not None, rate_percent=Decimal(discount or "0")),
        deposit=DepositConfig(enabled=deposit is not None, amount=Decimal(deposit or "0")),
    )


@pytest.fixture
def calculator():
    return MonetaryCalculator()


class TestBasicBreakdown:
    def test_vat_is_rounded_up_to_the_cent(self, calculator):
        result = calculator.compute(line_items=[_line("347.50")], config=_config("21"))

        # 347.50 * 21% = 72.975 -> 72.98
        assert result.subtotal == Decimal("347.50")
        assert result.net_amount == Decimal("347.50")
        assert result.vat_amount == Decimal("72.98")
        assert result.total_with_vat == Decimal("420.48")
        assert result.balance_amount == Decimal("420.48")
        assert result.vat_rate_percent == Decimal("21")

    def test_vat_ceiling_on_a_single_cent(self, calculator):
        result = calculator.compute(line_items=[_line("0.01")], config=_config("21"))
        assert result.vat_amount == Decimal("0.01")

    def test_exact_vat_is_not_rounded(self, calculator):
        result = calculator.compute(line_items=[_line("2000.00")], config=_config("21"))
        assert result.vat_amount == Decimal("420.00")
        assert result.total_with_vat == Decimal("2420.00")

    def test_lines_are_summed_from_line_totals(self, calculator):
        items = [
            LineItem(description="Carrelage", line_total=Decimal("120.00"),
                     quantity=Decimal("4"), unit_price=Decimal("30.00")),
            # Pre-totaled materials line: quantity is informative only
            LineItem(description="Colle", line_total=Decimal("45.10"),
                     quantity=Decimal("3"), unit_price=Decimal("45.10")),
        ]
        result = calculator.compute(line_items=items, config=_config(None))
        assert result.subtotal == Decimal("165.10")
        assert result.vat_amount == Decimal("0")

    def test_empty_input_gives_zero_breakdown(self, calculator):
        result = calculator.compute(line_items=[], config=_config("21"))
        assert result == MonetaryBreakdown.zero()

    def test_vat_disabled_ignores_rate(self, calculator):
        config = FinancialConfig(vat=VatConfig(enabled=False, rate_percent=Decimal("21")))
        result = calculator.compute(line_items=[_line("100.00")], config=config)
        assert result.vat_amount == Decimal("0")
        assert result.total_with_vat == Decimal("100.00")


class TestDiscount:
    def test_discount_reduces_the_vat_base(self, calculator):
        result = calculator.compute(line_items=[_line("1000.00")], config=_config("21", discount="10"))

        assert result.discount_amount == Decimal("100.00")
        assert result.net_amount == Decimal("900.00")
        assert result.vat_amount == Decimal("189.00")
        assert result.total_with_vat == Decimal("1089.00")

    def test_discount_rounds_half_up(self, calculator):
        # 0.125 -> 0.13
        result = calculator.compute(line_items=[_line("2.50")], config=_config(None, discount="5"))
        assert result.discount_amount == Decimal("0.13")
        assert result.net_amount == Decimal("2.37")

    def test_full_discount(self, calculator):
        result = calculator.compute(line_items=[_line("80.00")], config=_config("21", discount="100"))
        assert result.net_amount == Decimal("0.00")
        assert result.vat_amount == Decimal("0.00")


class TestDeposit:
    def test_deposit_is_deducted_from_total(self, calculator):
        result = calculator.compute(line_items=[_line("2000.00")], config=_config("21", deposit="500.00"))
        assert result.total_with_vat == Decimal("2420.00")
        assert result.deposit_amount == Decimal("500.00")
        assert result.balance_amount == Decimal("1920.00")

    def test_deposit_on_empty_lines_gives_negative_balance(self, calculator):
        result = calculator.compute(line_items=[], config=_config("21", deposit="100.00"))
        assert result.total_with_vat == Decimal("0")
        assert result.deposit_amount == Decimal("100.00")
        assert result.balance_amount == Decimal("-100.00")

    def test_deposit_above_total_is_not_rejected(self, calculator):
        result = calculator.compute(line_items=[_line("100.00")], config=_config("21", deposit="500.00"))
        assert result.total_with_vat == Decimal("121.00")
        assert result.balance_amount == Decimal("-379.00")

    def test_disabled_deposit_is_ignored(self, calculator):
        config = FinancialConfig(
            vat=VatConfig(enabled=True, rate_percent=Decimal("21")),
            deposit=DepositConfig(enabled=False, amount=Decimal("9999")),
        )
        result = calculator.compute(line_items=[_line("100.00")], config=config)
        assert result.balance_amount == result.total_with_vat


class TestStoredFallback:
    def test_stored_subtotal_used_when_lines_are_empty(self, calculator):
        result = calculator.compute(
            line_items=[],
            config=_config("21"),
            stored=StoredAmounts(subtotal=Decimal("500.00")),
        )
        assert result.subtotal == Decimal("500.00")
        assert result.vat_amount == Decimal("105.00")

    def test_stored_vat_used_when_vat_not_configured(self, calculator):
        result = calculator.compute(
            line_items=[_line("500.00")],
            config=_config(None),
            stored=StoredAmounts(vat_amount=Decimal("30.00")),
        )
        assert result.vat_amount == Decimal("30.00")
        assert result.total_with_vat == Decimal("530.00")

    def test_configured_vat_wins_over_stored_vat(self, calculator):
        result = calculator.compute(
            line_items=[_line("500.00")],
            config=_config("21"),
            stored=StoredAmounts(vat_amount=Decimal("30.00")),
        )
        assert result.vat_amount == Decimal("105.00")


class TestValidation:
    @pytest.mark.parametrize(
        "config",
        [
            _config("-1"),
            _config("21", discount="-5"),
            _config("21", discount="150"),
            _config("21", deposit="-10"),
            FinancialConfig(vat=VatConfig(enabled=True, rate_percent=Decimal("NaN"))),
            FinancialConfig(vat=VatConfig(enabled=True, rate_percent=Decimal("Infinity"))),
        ],
    )
    def test_malformed_config_is_rejected(self, calculator, config):
        with pytest.raises(InvalidConfigError):
            calculator.compute(line_items=[_line("100.00")], config=config)

    def test_non_finite_line_total_is_rejected(self):
        with pytest.raises(ValueError):
            LineItem(description="x", line_total=Decimal("NaN"))


class TestNegatedAndRecords:
    def test_negated_breakdown(self, calculator):
        result = calculator.compute(line_items=[_line("347.50")], config=_config("21")).negated()
        assert result.total_with_vat == Decimal("-420.48")
        assert result.vat_amount == Decimal("-72.98")
        assert result.vat_rate_percent == Decimal("21")

    def test_effective_vat_rate(self, calculator):
        result = calculator.compute(line_items=[_line("2000.00")], config=_config("21"))
        assert result.effective_vat_rate_percent == Decimal("21")
        assert MonetaryBreakdown.zero().effective_vat_rate_percent is None

    def test_from_record_prefers_total_price(self):
        item = LineItem.from_record(description="Peinture", quantity="2", unit_price="15,50", total_price="31.00")
        assert item.line_total == Decimal("31.00")
        assert item.unit_price == Decimal("15.50")

    def test_from_record_reads_unit_price_as_line_total(self):
        item = LineItem.from_record(description="Sac de sable", quantity=3, unit_price=12.9)
        assert item.line_total == Decimal("12.9")
        assert item.quantity == Decimal("3")

    def test_compute_is_deterministic(self, calculator):
        items = [_line("19.99"), _line("0.01"), _line("1234.56")]
        first = calculator.compute(line_items=items, config=_config("6", discount="3"))
        second = calculator.compute(line_items=items, config=_config("6", discount="3"))
        assert first == second
