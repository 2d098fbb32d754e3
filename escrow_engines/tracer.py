"""
Trace records for pure engine calls.

``@traced_engine`` logs one ``ESCROW_ENGINE_TRACE`` debug record per call
with the engine's name and version, a fingerprint of the named inputs and
the elapsed time. Arguments are bound against the wrapped signature, so a
field is fingerprinted whether it was passed positionally or by keyword.

    @traced_engine("tax", "1.0", fingerprint_fields=("amount", "jurisdiction"))
    def compute(self, amount, jurisdiction, exemption=None):
        ...

The fingerprint is the first 16 hex chars of the SHA-256 of the selected
fields in canonical JSON. Equal Decimals hash alike whatever their scale.
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import json
import time
from collections.abc import Callable
from decimal import Decimal
from enum import Enum
from typing import Any

from escrow_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")

TRACE_TYPE = "ESCROW_ENGINE_TRACE"


def _fingerprint_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value.normalize())
    if isinstance(value, Enum):
        return value.value
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: dict[str, Any],
) -> str:
    """Fingerprint the named fields of ``arguments``; absent fields count as null."""
    selected = {field: arguments.get(field) for field in fingerprint_fields}
    canonical = json.dumps(
        selected, sort_keys=True, separators=(",", ":"), default=_fingerprint_default,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = ""
            if fingerprint_fields:
                bound = signature.bind_partial(*args, **kwargs)
                fingerprint = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            started = time.perf_counter()
            result = func(*args, **kwargs)

            _logger.debug(
                TRACE_TYPE,
                extra={
                    "trace_type": TRACE_TYPE,
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fingerprint,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
