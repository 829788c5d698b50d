"""
Configuration Loader (``settlement_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the typed ``SettlementConfig``.
Callers go through ``settlement_config.get_active_config()``; the functions
here are exposed for tests and tooling.

Invariants enforced
-------------------
* A user file is deep-merged over ``defaults.yaml``; unknown keys are
  rejected instead of silently ignored.
* Every parsed object is a frozen dataclass validated in ``__post_init__``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the merged
  configuration for identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong shape, unknown key or invalid value  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping

import yaml

from settlement_config.schema import SettlementConfig
from settlement_modules.followup.config import FollowUpRules
from settlement_modules.invoicing.config import InvoicingConfig

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

_ROOT_KEYS = frozenset({"database_url", "log_level", "invoicing", "follow_up"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def compute_checksum(data: Mapping[str, Any]) -> str:
    """Deterministic SHA-256 of a configuration mapping."""
    canonical = json.dumps(data, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise ValueError(f"'{name}' must be a mapping, got {type(section).__name__}")
    return dict(section)


def _reject_unknown(section: Mapping[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(set(section) - allowed)
    if unknown:
        raise ValueError(f"Unknown key(s) in {where}: {', '.join(unknown)}")


def parse_decimal(value: Any, name: str) -> Decimal:
    """Parse a Decimal from YAML; floats go through ``str`` to keep their digits."""
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def parse_stage_delays(value: Any) -> tuple[int, ...]:
    """
    Parse overdue stage delays.

    Accepts a list (``[1, 3, 7]``) or a stage -> days mapping
    (``{1: 1, 2: 3, 3: 7}``); mapping keys must be the stages 1..N.
    """
    if isinstance(value, Mapping):
        try:
            stages = sorted((int(k), v) for k, v in value.items())
        except (TypeError, ValueError):
            raise ValueError(f"stage_delays_days keys must be stage numbers, got {value!r}") from None
        if [stage for stage, _ in stages] != list(range(1, len(stages) + 1)):
            raise ValueError(f"stage_delays_days must define stages 1..N, got {sorted(value)}")
        value = [days for _, days in stages]
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"stage_delays_days must be a list or mapping, got {value!r}")
    try:
        return tuple(int(days) for days in value)
    except (TypeError, ValueError):
        raise ValueError(f"stage_delays_days must contain integers, got {value!r}") from None


def parse_invoicing(data: Mapping[str, Any]) -> InvoicingConfig:
    """Parse the ``invoicing`` section."""
    section = dict(data)
    _reject_unknown(section, {f.name for f in fields(InvoicingConfig)}, "invoicing")
    if "default_vat_rate_percent" in section:
        section["default_vat_rate_percent"] = parse_decimal(
            section["default_vat_rate_percent"], "invoicing.default_vat_rate_percent",
        )
    return InvoicingConfig(**section)


def parse_follow_up(data: Mapping[str, Any]) -> FollowUpRules:
    """Parse the ``follow_up`` section."""
    section = dict(data)
    _reject_unknown(section, {f.name for f in fields(FollowUpRules)}, "follow_up")
    if "stage_delays_days" in section:
        section["stage_delays_days"] = parse_stage_delays(section["stage_delays_days"])
    return FollowUpRules(**section)


def parse_config(data: Mapping[str, Any]) -> SettlementConfig:
    """
    Parse a merged configuration mapping into ``SettlementConfig``.

    Raises:
        ValueError: on unknown keys, wrong shapes or invalid values.
    """
    _reject_unknown(data, set(_ROOT_KEYS), "configuration root")
    try:
        return SettlementConfig(
            invoicing=parse_invoicing(_section(data, "invoicing")),
            follow_up=parse_follow_up(_section(data, "follow_up")),
            database_url=str(data.get("database_url") or ""),
            log_level=str(data.get("log_level") or "INFO").upper(),
            checksum=compute_checksum(data),
        )
    except TypeError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def load_config(
    path: Path | None = None,
    database_url: str | None = None,
) -> SettlementConfig:
    """
    Load defaults, merge ``path`` over them, and parse.

    Args:
        path: Optional user YAML file.
        database_url: Optional override applied after merging.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        user = load_yaml_file(Path(path))
        data = deep_merge(data, user)
        # Stage delays replace the defaults as a whole
        user_follow_up = user.get("follow_up")
        if isinstance(user_follow_up, Mapping) and "stage_delays_days" in user_follow_up:
            data["follow_up"]["stage_delays_days"] = user_follow_up["stage_delays_days"]
    if database_url:
        data["database_url"] = database_url
    return parse_config(data)
