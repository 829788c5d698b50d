"""
Invoicing Configuration Schema.

Defines the structure and sensible defaults for invoicing settings.
Actual values are loaded by ``settlement_config`` at runtime.
"""

from dataclasses import dataclass
from decimal import Decimal

from settlement_kernel.logging_config import get_logger

logger = get_logger("modules.invoicing.config")


@dataclass(frozen=True)
class InvoicingConfig:
    """
    Configuration schema for invoice issuing.

    Override at instantiation with company-specific values:

        config = InvoicingConfig(payment_terms_days=45, site_url="https://app.example")
    """

    # VAT rate used when a deposit split has no net amount to infer from
    default_vat_rate_percent: Decimal = Decimal("21")

    payment_terms_days: int = 30

    currency_symbol: str = "€"

    # Base URL for links in reminder messages; None omits the link
    site_url: str | None = None

    invoice_prefix: str = "FAC"
    credit_note_prefix: str = "AV"

    def __post_init__(self):
        if not self.default_vat_rate_percent.is_finite() or self.default_vat_rate_percent < 0:
            raise ValueError("default_vat_rate_percent must be a non-negative finite number")
        if self.payment_terms_days < 0:
            raise ValueError("payment_terms_days cannot be negative")
        if not self.currency_symbol:
            raise ValueError("currency_symbol cannot be empty")
        if not self.invoice_prefix or not self.credit_note_prefix:
            raise ValueError("invoice and credit note prefixes cannot be empty")
        if self.invoice_prefix == self.credit_note_prefix:
            raise ValueError("invoice_prefix and credit_note_prefix must differ")
        logger.debug(
            "invoicing_config_initialized",
            extra={
                "payment_terms_days": self.payment_terms_days,
                "default_vat_rate_percent": str(self.default_vat_rate_percent),
            },
        )

    def invoice_link(self, invoice_id) -> str | None:
        if not self.site_url:
            return None
        return f"{self.site_url.rstrip('/')}/invoices/{invoice_id}"
