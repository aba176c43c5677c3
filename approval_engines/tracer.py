"""
approval_engines.tracer -- APPROVAL_ENGINE_TRACE records for pure engine calls.

``@traced_engine`` wraps a keyword-only engine function and emits one DEBUG
record per invocation with the engine name and version, a fingerprint of
the selected inputs, the duration and, optionally, a summary of the result.
Two calls over the same approver slots and decision log produce the same
fingerprint, so a logged resolution can be matched to its replay.

The logger lives under ``approval_kernel`` so the kernel's JSON handler
formats these records without the engines importing the logging setup.

Usage:
    @traced_engine(
        "resolution", "1.0",
        fingerprint_fields=("strategy_key", "approvers", "decisions"),
        summarize=lambda resolution: {"outcome": resolution.outcome},
    )
    def resolve_decisions(*, strategy_key, approvers, decisions, registry):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from approval_kernel.utils.hashing import canonicalize_json

_logger = logging.getLogger("approval_kernel.engines.tracer")

TRACE_MESSAGE = "APPROVAL_ENGINE_TRACE"


def compute_input_fingerprint(fingerprint_fields: tuple[str, ...], kwargs: Mapping[str, Any]) -> str:
    """16-hex-char SHA-256 prefix over the named keyword arguments."""
    selected = {name: kwargs.get(name) for name in fingerprint_fields}
    canonical = canonicalize_json(selected)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
    summarize: Callable[[Any], Mapping[str, Any]] | None = None,
) -> Callable:
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not _logger.isEnabledFor(logging.DEBUG):
                return func(*args, **kwargs)

            extra: dict[str, Any] = {
                "trace_type": TRACE_MESSAGE,
                "engine_name": engine_name,
                "engine_version": engine_version,
                "function": func.__qualname__,
                "input_fingerprint": (
                    compute_input_fingerprint(fingerprint_fields, kwargs)
                    if fingerprint_fields else ""
                ),
            }
            started = time.monotonic()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                extra["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
                extra["failed"] = True
                extra["error_type"] = type(exc).__name__
                _logger.debug(TRACE_MESSAGE, extra=extra)
                raise

            extra["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
            extra["failed"] = False
            if summarize is not None:
                extra.update(summarize(result))
            _logger.debug(TRACE_MESSAGE, extra=extra)
            return result

        return wrapper

    return decorator
