"""
SettlementConfig schema.

The runtime configuration of the settlement engine.  Section types are the
module config dataclasses themselves (``InvoicingConfig``,
``FollowUpRules``), so every value is validated by the same
``__post_init__`` that guards direct construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from settlement_modules.followup.config import FollowUpRules
from settlement_modules.invoicing.config import InvoicingConfig

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class SettlementConfig:
    """Root configuration object returned by ``get_active_config()``."""

    invoicing: InvoicingConfig = field(default_factory=InvoicingConfig)
    follow_up: FollowUpRules = field(default_factory=FollowUpRules)
    database_url: str = "sqlite:///settlement.db"
    log_level: str = "INFO"
    checksum: str = ""

    def __post_init__(self):
        if not self.database_url:
            raise ValueError("database_url cannot be empty")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(
                f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}"
            )
