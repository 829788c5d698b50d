"""
SETTLEMENT_ENGINE_TRACE records for the pure engines.

``@traced_engine`` logs one debug record per call with the engine name and
version, the call duration and a fingerprint of chosen keyword arguments.
Two calls with equal inputs get equal fingerprints, so a figure on an
invoice can be matched to the computation that produced it.

    @traced_engine("monetary_calculator", "1.0", fingerprint_fields=("line_items",))
    def compute(self, *, line_items, config): ...
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import json
import time
from collections.abc import Callable
from decimal import Decimal
from enum import Enum
from typing import Any

from settlement_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")


def _plain(value: Any) -> Any:
    """JSON-ready form of an engine input; equal inputs give equal output."""
    if isinstance(value, Decimal):
        # 10 and 10.00 are the same amount
        return format(value.normalize(), "f") if value.is_finite() else str(value)
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            "__type__": type(value).__name__,
            **{f.name: _plain(getattr(value, f.name)) for f in dataclasses.fields(value)},
        }
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def compute_input_fingerprint(fingerprint_fields: tuple[str, ...], kwargs: dict[str, Any]) -> str:
    """First 16 hex chars of a SHA-256 over the named kwargs (absent ones as null)."""
    selected = {name: _plain(kwargs.get(name)) for name in fingerprint_fields}
    canonical = json.dumps(selected, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            result = func(*args, **kwargs)
            _logger.debug(
                "SETTLEMENT_ENGINE_TRACE",
                extra={
                    "trace_type": "SETTLEMENT_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "function": func.__qualname__,
                    "input_fingerprint": (
                        compute_input_fingerprint(fingerprint_fields, kwargs)
                        if fingerprint_fields else ""
                    ),
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return result

        return wrapper

    return decorator
