"""
settlement_config -- single public entrypoint for settlement configuration.

Responsibility:
    Provides the runtime configuration through ``get_active_config()``.
    Services receive the typed sections (``InvoicingConfig``,
    ``FollowUpRules``) by injection and never read files or environment
    variables themselves.

Architecture position:
    Configuration.  Sits above ``settlement_kernel`` and the module config
    dataclasses; only the batch CLI and tests call it.

Resolution order:
    1. ``defaults.yaml`` shipped with this package.
    2. The user file: ``path`` argument, else ``$SETTLEMENT_CONFIG``.
    3. ``$SETTLEMENT_DATABASE_URL`` overrides ``database_url``.

Failure modes:
    - ``FileNotFoundError`` -- the user file does not exist.
    - ``ValueError`` -- wrong shape, unknown key or invalid value.

Every successful call emits a ``SETTLEMENT_CONFIG_TRACE`` log entry with
the checksum of the merged configuration.
"""

from __future__ import annotations

import os
from pathlib import Path

from settlement_config.loader import load_config
from settlement_config.schema import SettlementConfig
from settlement_kernel.logging_config import get_logger

CONFIG_ENV_VAR = "SETTLEMENT_CONFIG"
DATABASE_URL_ENV_VAR = "SETTLEMENT_DATABASE_URL"

_logger = get_logger("config")


def get_active_config(
    path: str | Path | None = None,
    database_url: str | None = None,
) -> SettlementConfig:
    """Load and validate the active configuration.

    Args:
        path: User YAML file merged over the defaults.  Falls back to
            ``$SETTLEMENT_CONFIG``; defaults only when neither is set.
        database_url: Explicit database URL; wins over the environment
            and the files.

    Raises:
        FileNotFoundError: If the user file does not exist.
        ValueError: If configuration validation fails.
    """
    source = path or os.environ.get(CONFIG_ENV_VAR) or None
    url = database_url or os.environ.get(DATABASE_URL_ENV_VAR) or None

    config = load_config(Path(source) if source else None, database_url=url)

    _logger.info(
        "SETTLEMENT_CONFIG_TRACE",
        extra={
            "trace_type": "SETTLEMENT_CONFIG_TRACE",
            "source": str(source) if source else "defaults",
            "checksum": config.checksum,
            "payment_terms_days": config.invoicing.payment_terms_days,
            "stage_delays_days": list(config.follow_up.stage_delays_days),
            "database_dialect": config.database_url.split(":", 1)[0],
        },
    )
    return config


__all__ = ["SettlementConfig", "get_active_config"]
