"""
Structured error types for the adaptive execution engine.

Every failure the engine surfaces carries a category, an explicit retry
flag and structured context, so callers can decide what to retry and
operators can see *why* a batch slot failed without parsing messages.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure mode the engine knows
    - **Explicit Retry Semantics:** Each error knows if the caller may retry
    - **Rich Context:** Errors carry service/operation/batch metadata
    - **Error Chaining:** Original collaborator exceptions are preserved

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        EngineError                               │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError        PoolTimeoutError     CircuitOpenError    │
        │  (VALIDATION, never)    (POOL, caller)       (CIRCUIT, never)    │
        │       │                                                          │
        │  ConfigError            TransientExecutionError   AuthError      │
        │  (CONFIG, never)        (EXECUTION, retryable)    (AUTH, never)  │
        │                              │                                   │
        │                         ThrottledError    CallTimeoutError       │
        │                                                                  │
        │  InvariantViolation  (INTERNAL, fatal programming error)         │
        └─────────────────────────────────────────────────────────────────┘

Propagation:
    - ``ValidationError`` / ``ConfigError`` are raised to the caller
      immediately and never retried.
    - ``PoolTimeoutError`` is retried by caller policy, never by the pool.
    - ``TransientExecutionError`` feeds the controller and circuit breaker
      as a failure sample; retrying is the caller's decision.
    - ``CircuitOpenError`` is fail-fast until the breaker transitions.
    - ``InvariantViolation`` means engine state is corrupt; it is never
      caught inside the engine.

Examples:
    >>> error = ThrottledError("Rate exceeded", retry_after=2)
    >>> error.retryable
    True
    >>> classify_outcome(error)
    <OutcomeKind.THROTTLED: 'throttled'>

Tags:
    error-handling, exception-hierarchy, retry-logic, circuit-breaker
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"     # Malformed request or config
    CONFIG = "CONFIG"             # Invalid engine settings
    POOL = "POOL"                 # Connection capacity not available in time
    EXECUTION = "EXECUTION"       # Remote call failed transiently
    THROTTLED = "THROTTLED"       # Backend rejected the call for rate reasons
    AUTH = "AUTH"                 # Authentication, authorization
    CIRCUIT = "CIRCUIT"           # Dispatch suspended by the circuit breaker
    INTERNAL = "INTERNAL"         # Bugs, broken invariants
    UNKNOWN = "UNKNOWN"           # Uncategorized errors


class OutcomeKind(str, Enum):
    """Tagged outcome of one remote call, as seen by the controller."""

    SUCCESS = "success"
    THROTTLED = "throttled"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    AUTH = "auth"
    REJECTED = "rejected"
    ERROR = "error"

    @property
    def is_failure(self) -> bool:
        """Whether this outcome counts against backend health."""
        return self in _FAILURE_OUTCOMES


_FAILURE_OUTCOMES = frozenset(
    {OutcomeKind.THROTTLED, OutcomeKind.TRANSIENT, OutcomeKind.TIMEOUT, OutcomeKind.ERROR}
)


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only fields that are set end up in ``to_dict()``; anything that does not
    have a dedicated field goes to ``metadata``.
    """

    service: str | None = None
    operation: str | None = None
    batch_id: str | None = None
    request_index: int | None = None
    connection_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["service", "operation", "batch_id", "request_index", "connection_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class EngineError(Exception):
    """
    Base exception for all engine errors.

    All EngineError instances carry:
    - **category:** ErrorCategory for classification and routing
    - **retryable:** Whether the caller may retry the operation
    - **retry_after:** Optional seconds to wait before retry
    - **context:** ErrorContext with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable``.

    Examples:
        >>> error = EngineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(service="s3", operation="list_buckets").context.service
        's3'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> EngineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise PoolTimeoutError("No capacity").with_context(
                service="ec2", request_index=4
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION / CONFIG
# =============================================================================


class ValidationError(EngineError):
    """
    Malformed request or configuration.

    Never retryable - the input must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.constraint = constraint

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        if self.constraint:
            result["constraint"] = self.constraint
        return result


class ConfigError(ValidationError):
    """Invalid engine configuration."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# CAPACITY / EXECUTION
# =============================================================================


class PoolTimeoutError(EngineError):
    """No pool capacity became available within ``connection_timeout``."""

    default_category = ErrorCategory.POOL
    default_retryable = True

    def __init__(
        self,
        message: str = "Timed out waiting for a pool connection",
        *,
        service: str | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.service = service
        self.timeout = timeout
        if service is not None:
            self.context.service = service


class TransientExecutionError(EngineError):
    """
    A remote call failed for a reason that may go away.

    Reported to the controller as a failure sample. The engine never
    retries it internally.
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = True


class ThrottledError(TransientExecutionError):
    """The backend throttled the call (HTTP 429, ThrottlingException, ...)."""

    default_category = ErrorCategory.THROTTLED


class CallTimeoutError(TransientExecutionError):
    """The remote call exceeded its per-call timeout."""


class AuthError(EngineError):
    """Authentication or authorization failure."""

    default_category = ErrorCategory.AUTH
    default_retryable = False


class CircuitOpenError(EngineError):
    """Raised when the circuit is open and rejecting requests."""

    default_category = ErrorCategory.CIRCUIT
    default_retryable = False

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        service: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.service = service
        if service is not None:
            self.context.service = service


class InvariantViolation(EngineError):
    """Engine state broke one of its invariants. Always fatal."""

    default_category = ErrorCategory.INTERNAL
    default_retryable = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, EngineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, EngineError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ErrorCategory.EXECUTION
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorCategory.VALIDATION
    if isinstance(error, PermissionError):
        return ErrorCategory.AUTH
    return ErrorCategory.UNKNOWN


def classify_outcome(error: BaseException | None) -> OutcomeKind:
    """Map a collaborator exception (or ``None`` for success) to an outcome tag."""
    if error is None:
        return OutcomeKind.SUCCESS
    if isinstance(error, (CircuitOpenError, PoolTimeoutError)):
        return OutcomeKind.REJECTED
    if isinstance(error, ThrottledError):
        return OutcomeKind.THROTTLED
    if isinstance(error, (CallTimeoutError, TimeoutError, asyncio.TimeoutError)):
        return OutcomeKind.TIMEOUT
    if isinstance(error, (TransientExecutionError, ConnectionError)):
        return OutcomeKind.TRANSIENT
    if isinstance(error, ValidationError):
        return OutcomeKind.VALIDATION
    if isinstance(error, (AuthError, PermissionError)):
        return OutcomeKind.AUTH
    return OutcomeKind.ERROR


def as_engine_error(error: BaseException) -> EngineError:
    """Wrap a foreign exception so every failed slot carries an EngineError."""
    if isinstance(error, EngineError):
        return error
    kind = classify_outcome(error)
    message = str(error) or error.__class__.__name__
    if kind is OutcomeKind.TIMEOUT:
        return CallTimeoutError(message, cause=error)
    if kind is OutcomeKind.AUTH:
        return AuthError(message, cause=error)
    if kind is OutcomeKind.TRANSIENT:
        return TransientExecutionError(message, cause=error)
    return TransientExecutionError(
        message, category=categorize_error(error), cause=error
    )


__all__ = [
    "ErrorCategory",
    "OutcomeKind",
    "ErrorContext",
    "EngineError",
    "ValidationError",
    "ConfigError",
    "PoolTimeoutError",
    "TransientExecutionError",
    "ThrottledError",
    "CallTimeoutError",
    "AuthError",
    "CircuitOpenError",
    "InvariantViolation",
    "is_retryable",
    "categorize_error",
    "classify_outcome",
    "as_engine_error",
]
