"""
Tests for the deposit / final invoice split.
"""

from decimal import Decimal

import pytest

from settlement_engines.calculator import (
    DiscountConfig,
    FinancialConfig,
    LineItem,
    MonetaryBreakdown,
    MonetaryCalculator,
    VatConfig,
)
from settlement_engines.deposit import blended_vat_rate, split_deposit
from settlement_kernel.exceptions import InvalidConfigError


def _project(net: str, vat_rate: str = "21", discount: str | None = None) -> MonetaryBreakdown:
    return MonetaryCalculator().compute(
        line_items=[LineItem(description="Projet", line_total=Decimal(net))],
        config=FinancialConfig(
            vat=VatConfig(enabled=True, rate_percent=Decimal(vat_rate)),
            discount=DiscountConfig(
                enabled=discount is not None, rate_percent=Decimal(discount or "0"),
            ),
        ),
    )


class TestSplitDeposit:
    def test_half_deposit_on_2000(self):
        split = split_deposit(_project("2000.00"), Decimal("1000.00"))

        assert split.project.total_with_vat == Decimal("2420.00")
        assert split.deposit_vat == Decimal("210.00")
        assert split.deposit_total == Decimal("1210.00")
        assert split.remaining_net == Decimal("1000.00")
        assert split.remaining_vat == Decimal("210.00")
        assert split.remaining_total == Decimal("1210.00")

    def test_deposit_and_remainder_add_up_to_project(self):
        split = split_deposit(_project("1234.57", vat_rate="6"), Decimal("333.33"))

        assert split.deposit_total + split.remaining_total == split.project.total_with_vat
        assert split.deposit_net + split.remaining_net == split.project.net_amount
        assert split.deposit_vat + split.remaining_vat == split.project.vat_amount

    def test_deposit_vat_rounds_up(self):
        # 100.05 * 21% = 21.0105 -> 21.02
        split = split_deposit(_project("1000.00"), Decimal("100.05"))
        assert split.deposit_vat == Decimal("21.02")

    def test_blended_rate_follows_discounted_project(self):
        project = _project("1000.00", discount="10")
        rate = blended_vat_rate(project)
        assert rate == project.vat_amount / project.net_amount * 100

    def test_default_rate_when_project_net_is_zero(self):
        split = split_deposit(MonetaryBreakdown.zero(), Decimal("100.00"), Decimal("21"))
        assert split.blended_rate_percent == Decimal("21")
        assert split.deposit_vat == Decimal("21.00")
        assert split.remaining_total == Decimal("-121.00")

    def test_zero_deposit(self):
        split = split_deposit(_project("500.00"), Decimal("0"))
        assert split.deposit_total == Decimal("0")
        assert split.remaining_total == split.project.total_with_vat

    @pytest.mark.parametrize("deposit", [Decimal("-1"), Decimal("2000.01"), Decimal("NaN")])
    def test_invalid_deposit_is_rejected(self, deposit):
        with pytest.raises(InvalidConfigError) as exc_info:
            split_deposit(_project("2000.00"), deposit)
        assert exc_info.value.field == "deposit_net"
