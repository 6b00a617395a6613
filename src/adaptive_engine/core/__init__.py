"""Core primitives: errors, logging, clock, hashing, cache contract.

Settings live in ``adaptive_engine.core.settings`` and are imported
explicitly, since they pull in pydantic-settings.
"""

from .cache import CacheBackend, InMemoryCache
from .clock import Clock, ManualClock, SystemClock, default_clock
from .errors import (
    AuthError,
    CallTimeoutError,
    CircuitOpenError,
    ConfigError,
    EngineError,
    ErrorCategory,
    InvariantViolation,
    OutcomeKind,
    PoolTimeoutError,
    ThrottledError,
    TransientExecutionError,
    ValidationError,
    as_engine_error,
    categorize_error,
    classify_outcome,
    is_retryable,
)
from .hashing import canonical_json, stable_digest
from .logging import LogContext, configure_logging, get_logger

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "Clock",
    "ManualClock",
    "SystemClock",
    "default_clock",
    "AuthError",
    "CallTimeoutError",
    "CircuitOpenError",
    "ConfigError",
    "EngineError",
    "ErrorCategory",
    "InvariantViolation",
    "OutcomeKind",
    "PoolTimeoutError",
    "ThrottledError",
    "TransientExecutionError",
    "ValidationError",
    "as_engine_error",
    "categorize_error",
    "classify_outcome",
    "is_retryable",
    "canonical_json",
    "stable_digest",
    "LogContext",
    "configure_logging",
    "get_logger",
]
