"""
Money helpers -- exact decimal arithmetic for settlement amounts.

Responsibility:
    Conversion of raw numeric input to ``Decimal``, the two sanctioned
    rounding rules, and locale-correct formatting for message variables.

Invariants enforced:
    - No floats: every monetary value is a ``Decimal``.  Float input is
      converted through ``str()`` so 0.1 becomes Decimal("0.1"), not its
      binary expansion.
    - VAT rounds UP to the cent (``ceil_to_cents``).  Everything else
      (discounts, display) rounds half-up (``round_money``).
"""

from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# fr-FR grouping separator (narrow no-break space) and currency spacing
GROUP_SEPARATOR = "\u202f"
CURRENCY_SPACING = "\u00a0"


def to_money(value: Decimal | int | float | str | None) -> Decimal:
    """Convert raw input to Decimal without going through binary float.

    ``None`` and empty strings become zero, matching how stored records
    with missing amounts are read.

    Raises:
        ValueError: if the value is not numeric.
    """
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValueError(f"Not a monetary value: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    text = str(value).strip().replace(",", ".")
    if not text:
        return ZERO
    try:
        return Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Not a monetary value: {value!r}") from None


def is_finite(value: Decimal) -> bool:
    return value.is_finite()


def ceil_to_cents(value: Decimal) -> Decimal:
    """Round up to the next cent (toward +infinity)."""
    return value.quantize(CENT, rounding=ROUND_CEILING)


def round_money(value: Decimal) -> Decimal:
    """Round half-up to the cent."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(base: Decimal, rate_percent: Decimal) -> Decimal:
    """Exact (unrounded) ``base * rate_percent / 100``."""
    return base * rate_percent / HUNDRED


def format_amount(value: Decimal | int | str) -> str:
    """Format with a decimal comma and fr-FR digit grouping.

    >>> format_amount(Decimal("2420"))
    '2\\u202f420,00'
    """
    amount = round_money(to_money(value))
    sign = "-" if amount < 0 else ""
    integer, _, fraction = f"{abs(amount):.2f}".partition(".")
    groups: list[str] = []
    while len(integer) > 3:
        groups.insert(0, integer[-3:])
        integer = integer[:-3]
    groups.insert(0, integer)
    return f"{sign}{GROUP_SEPARATOR.join(groups)},{fraction}"


def format_currency(value: Decimal | int | str, symbol: str = "€") -> str:
    """Format an amount followed by its currency symbol, e.g. ``730,84 €``."""
    return f"{format_amount(value)}{CURRENCY_SPACING}{symbol}"
