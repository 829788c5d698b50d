"""
Monetary Calculator - Turn priced line items into a settlement breakdown.

Computes subtotal, discount, net, VAT, total, deposit and balance for a
quote, an invoice or (negated) a credit note.  Pure functions with no I/O;
the same breakdown is used for display, storage, PDF export and credit
note math, so it must be reproducible to the cent.

Order of operations is fixed: subtotal -> discount -> net -> VAT.  The
discount reduces the VAT base; reversing the order changes the legal tax
base.

Rounding:
    - Discount: half-up to the cent.
    - VAT: ceiling to the cent.  The VAT charged is never below the exact
      value and never more than one cent above it.

Usage:
    from decimal import Decimal
    from settlement_engines.calculator import (
        FinancialConfig, LineItem, MonetaryCalculator, VatConfig,
    )

    breakdown = MonetaryCalculator().compute(
        line_items=[LineItem(description="Pose", line_total=Decimal("347.50"))],
        config=FinancialConfig(vat=VatConfig(enabled=True, rate_percent=Decimal("21"))),
    )
    print(breakdown.vat_amount)      # 72.98
    print(breakdown.total_with_vat)  # 420.48
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Sequence

from settlement_engines.tracer import traced_engine
from settlement_kernel.domain.money import (
    HUNDRED,
    ZERO,
    ceil_to_cents,
    percent_of,
    round_money,
    to_money,
)
from settlement_kernel.exceptions import InvalidConfigError
from settlement_kernel.logging_config import get_logger

logger = get_logger("engines.calculator")


@dataclass(frozen=True)
class LineItem:
    """A priced line.  ``line_total`` is authoritative.

    Materials lines arrive pre-totaled, so the total is never re-derived
    from ``quantity * unit_price``.
    """

    description: str
    line_total: Decimal
    quantity: Decimal = Decimal("1")
    unit: str = ""
    unit_price: Decimal = ZERO
    id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.line_total, Decimal) or not self.line_total.is_finite():
            raise ValueError(f"line_total must be a finite Decimal, got {self.line_total!r}")

    @classmethod
    def from_record(
        cls,
        *,
        description: str = "",
        quantity: Decimal | int | str | None = 1,
        unit: str | None = None,
        unit_price: Decimal | int | float | str | None = None,
        total_price: Decimal | int | float | str | None = None,
        id: str | None = None,
    ) -> LineItem:
        """Build a line from stored values.

        ``total_price`` wins when present; otherwise ``unit_price`` is read
        as the line's pre-totaled amount (never multiplied by quantity).
        """
        price = to_money(unit_price)
        total = to_money(total_price) if total_price not in (None, "") else price
        return cls(
            description=description,
            line_total=total,
            quantity=to_money(quantity) if quantity not in (None, "") else Decimal("1"),
            unit=unit or "",
            unit_price=price,
            id=id,
        )


@dataclass(frozen=True)
class VatConfig:
    enabled: bool = False
    rate_percent: Decimal = ZERO


@dataclass(frozen=True)
class DiscountConfig:
    enabled: bool = False
    rate_percent: Decimal = ZERO


@dataclass(frozen=True)
class DepositConfig:
    """Deposit deducted from the VAT-inclusive total."""

    enabled: bool = False
    amount: Decimal = ZERO


@dataclass(frozen=True)
class FinancialConfig:
    vat: VatConfig = field(default_factory=VatConfig)
    discount: DiscountConfig = field(default_factory=DiscountConfig)
    deposit: DepositConfig = field(default_factory=DepositConfig)


@dataclass(frozen=True)
class StoredAmounts:
    """Amounts previously persisted on a record, used as fallbacks.

    Legacy documents may carry totals without usable lines, or VAT without
    a VAT configuration.
    """

    subtotal: Decimal | None = None
    vat_amount: Decimal | None = None
    total_amount: Decimal | None = None


@dataclass(frozen=True)
class MonetaryBreakdown:
    """Immutable settlement breakdown of one document.

    Closure: ``net = subtotal - discount``, ``total = net + vat``,
    ``balance = total - deposit``.
    """

    subtotal: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    vat_amount: Decimal
    total_with_vat: Decimal
    deposit_amount: Decimal
    balance_amount: Decimal
    vat_rate_percent: Decimal = ZERO

    @classmethod
    def zero(cls) -> MonetaryBreakdown:
        return cls(
            subtotal=ZERO,
            discount_amount=ZERO,
            net_amount=ZERO,
            vat_amount=ZERO,
            total_with_vat=ZERO,
            deposit_amount=ZERO,
            balance_amount=ZERO,
        )

    @property
    def effective_vat_rate_percent(self) -> Decimal | None:
        """VAT actually charged as a percentage of net, or None when net is 0."""
        if self.net_amount == 0:
            return None
        return self.vat_amount / self.net_amount * HUNDRED

    def negated(self) -> MonetaryBreakdown:
        """The credit-note image of this breakdown: every amount negated."""
        return MonetaryBreakdown(
            subtotal=-self.subtotal,
            discount_amount=-self.discount_amount,
            net_amount=-self.net_amount,
            vat_amount=-self.vat_amount,
            total_with_vat=-self.total_with_vat,
            deposit_amount=-self.deposit_amount,
            balance_amount=-self.balance_amount,
            vat_rate_percent=self.vat_rate_percent,
        )


def _check_rate(field_name: str, rate: Decimal) -> None:
    if not isinstance(rate, Decimal):
        raise InvalidConfigError(field_name, rate, "must be a Decimal")
    if not rate.is_finite():
        raise InvalidConfigError(field_name, rate, "must be finite")
    if rate < 0:
        raise InvalidConfigError(field_name, rate, "must not be negative")


def validate_config(config: FinancialConfig) -> None:
    """Reject malformed configuration before any arithmetic happens.

    Raises:
        InvalidConfigError: negative, non-finite or out-of-range values.
    """
    _check_rate("vat.rate_percent", config.vat.rate_percent)
    _check_rate("discount.rate_percent", config.discount.rate_percent)
    if config.discount.rate_percent > HUNDRED:
        raise InvalidConfigError(
            "discount.rate_percent", config.discount.rate_percent, "must not exceed 100",
        )
    amount = config.deposit.amount
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise InvalidConfigError("deposit.amount", amount, "must be a finite Decimal")
    if amount < 0:
        raise InvalidConfigError("deposit.amount", amount, "must not be negative")


class MonetaryCalculator:
    """
    Compute monetary breakdowns.

    Pure functions - no I/O, no database access.  Safe to share one
    instance across threads.
    """

    @traced_engine(
        "monetary_calculator", "1.0",
        fingerprint_fields=("line_items", "config", "stored"),
    )
    def compute(
        self,
        line_items: Sequence[LineItem],
        config: FinancialConfig,
        stored: StoredAmounts | None = None,
    ) -> MonetaryBreakdown:
        """
        Compute the breakdown for a set of line items.

        Args:
            line_items: Priced lines; may be empty.
            config: VAT / discount / deposit configuration.
            stored: Optional persisted amounts used when the lines yield
                a zero subtotal or VAT is not configured.

        Returns:
            MonetaryBreakdown (all zeros for empty input and no fallback).

        Raises:
            InvalidConfigError: If a rate or the deposit is malformed.
        """
        validate_config(config)

        subtotal = sum((item.line_total for item in line_items), ZERO)
        if subtotal == 0 and stored is not None and stored.subtotal is not None:
            subtotal = stored.subtotal

        discount_amount = ZERO
        if config.discount.enabled and config.discount.rate_percent > 0:
            discount_amount = round_money(
                percent_of(subtotal, config.discount.rate_percent)
            )

        net_amount = subtotal - discount_amount

        vat_rate = ZERO
        if config.vat.enabled and config.vat.rate_percent > 0:
            vat_rate = config.vat.rate_percent
            vat_amount = ceil_to_cents(percent_of(net_amount, vat_rate))
        elif stored is not None and stored.vat_amount is not None:
            vat_amount = stored.vat_amount
        else:
            vat_amount = ZERO

        total_with_vat = net_amount + vat_amount

        # A deposit larger than the total leaves a negative balance
        deposit_amount = config.deposit.amount if config.deposit.enabled else ZERO
        balance_amount = total_with_vat - deposit_amount

        breakdown = MonetaryBreakdown(
            subtotal=subtotal,
            discount_amount=discount_amount,
            net_amount=net_amount,
            vat_amount=vat_amount,
            total_with_vat=total_with_vat,
            deposit_amount=deposit_amount,
            balance_amount=balance_amount,
            vat_rate_percent=vat_rate,
        )

        logger.debug("breakdown_computed", extra={
            "line_count": len(line_items),
            "subtotal": str(subtotal),
            "net_amount": str(net_amount),
            "vat_amount": str(vat_amount),
            "total_with_vat": str(total_with_vat),
            "used_stored_fallback": stored is not None,
        })

        return breakdown
