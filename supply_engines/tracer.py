"""
supply_engines.tracer -- SUPPLY_ENGINE_TRACE records for pure engine calls.

``@traced_engine`` wraps an engine method and emits one DEBUG record per
call with the engine name and version, a fingerprint of the inputs that
determine the result, and the elapsed time.  Two calls with the same
fingerprint and version must produce the same result, which is what makes
a stored budget-control detail reproducible.

The decorator reads its arguments and never mutates them.  Arguments are
bound against the wrapped signature, so positional and keyword calls give
the same fingerprint.
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import time
from collections.abc import Callable, Mapping
from typing import Any

from supply_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")


def _canonical(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, Mapping):
        return "{" + ",".join(f"{k}:{_canonical(value[k])}" for k in sorted(value)) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonical(v) for v in value) + "]"
    return str(value)


def input_fingerprint(arguments: Mapping[str, Any], names: tuple[str, ...]) -> str:
    """First 16 hex chars of SHA-256 over ``name=value`` pairs in ``names`` order."""
    canonical = "|".join(f"{name}={_canonical(arguments.get(name))}" for name in names)
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
            bound = signature.bind_partial(*args, **kwargs)
            started = time.perf_counter()
            result = func(*args, **kwargs)
            _logger.debug(
                "SUPPLY_ENGINE_TRACE",
                extra={
                    "trace_type": "SUPPLY_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": input_fingerprint(bound.arguments, fingerprint_fields),
                    "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                },
            )
            return result

        return wrapper

    return decorator
