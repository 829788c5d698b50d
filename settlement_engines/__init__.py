"""
settlement_engines -- pure monetary computation.

No I/O and no database access.  Every engine is deterministic and safe to
call concurrently: the same inputs always produce the same breakdown, which
is what lets on-screen display, stored records, PDF export and credit-note
math agree to the cent.
"""

from settlement_engines.balance import BalanceResolver
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
from settlement_engines.deposit import DepositSplit, blended_vat_rate, split_deposit

__all__ = [
    "BalanceResolver",
    "DepositConfig",
    "DepositSplit",
    "DiscountConfig",
    "FinancialConfig",
    "LineItem",
    "MonetaryBreakdown",
    "MonetaryCalculator",
    "StoredAmounts",
    "VatConfig",
    "blended_vat_rate",
    "split_deposit",
]
