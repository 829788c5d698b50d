"""
Deposit / final invoice split.

A project quoted at N (excl. VAT) may be invoiced as a deposit invoice
followed by a final invoice.  Both documents are derived from the full
project breakdown:

    deposit invoice payable  = deposit_net grossed up at the blended rate
    final invoice payable    = project total - deposit invoice payable

The final invoice still *displays* the full project subtotal and VAT, with
the deposit broken out on its own lines.  The blended rate is the VAT the
project actually carries (vat / net) so discounted or mixed-rate quotes
split consistently; it falls back to a default rate when net is zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from settlement_engines.calculator import MonetaryBreakdown
from settlement_engines.tracer import traced_engine
from settlement_kernel.domain.money import HUNDRED, ceil_to_cents, percent_of
from settlement_kernel.exceptions import InvalidConfigError

DEFAULT_VAT_RATE_PERCENT = Decimal("21")


@dataclass(frozen=True)
class DepositSplit:
    """Amounts for a deposit/final pair, all derived from ``project``."""

    project: MonetaryBreakdown
    blended_rate_percent: Decimal
    deposit_net: Decimal
    deposit_vat: Decimal
    deposit_total: Decimal
    remaining_net: Decimal
    remaining_vat: Decimal
    remaining_total: Decimal


def blended_vat_rate(
    breakdown: MonetaryBreakdown,
    default_rate_percent: Decimal = DEFAULT_VAT_RATE_PERCENT,
) -> Decimal:
    """VAT rate inferred from project totals (percent)."""
    if breakdown.net_amount > 0:
        return breakdown.vat_amount / breakdown.net_amount * HUNDRED
    return default_rate_percent


@traced_engine(
    "deposit_split", "1.0",
    fingerprint_fields=("project", "deposit_net", "default_vat_rate_percent"),
)
def split_deposit(
    project: MonetaryBreakdown,
    deposit_net: Decimal,
    default_vat_rate_percent: Decimal = DEFAULT_VAT_RATE_PERCENT,
) -> DepositSplit:
    """
    Split a project breakdown into deposit and remaining amounts.

    Raises:
        InvalidConfigError: deposit negative, non-finite or above project net.
    """
    if not isinstance(deposit_net, Decimal) or not deposit_net.is_finite():
        raise InvalidConfigError("deposit_net", deposit_net, "must be a finite Decimal")
    if deposit_net < 0:
        raise InvalidConfigError("deposit_net", deposit_net, "must not be negative")
    if project.net_amount > 0 and deposit_net > project.net_amount:
        raise InvalidConfigError(
            "deposit_net", deposit_net,
            f"exceeds project net amount {project.net_amount}",
        )

    rate = blended_vat_rate(project, default_vat_rate_percent)
    deposit_vat = ceil_to_cents(percent_of(deposit_net, rate))
    deposit_total = deposit_net + deposit_vat

    return DepositSplit(
        project=project,
        blended_rate_percent=rate,
        deposit_net=deposit_net,
        deposit_vat=deposit_vat,
        deposit_total=deposit_total,
        remaining_net=project.net_amount - deposit_net,
        remaining_vat=project.vat_amount - deposit_vat,
        remaining_total=project.total_with_vat - deposit_total,
    )
