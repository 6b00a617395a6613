"""Tests for adaptive_engine.core.errors."""

import asyncio

import pytest

from adaptive_engine.core.errors import (
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


class TestHierarchy:
    """Categories and retry flags per error class."""

    @pytest.mark.parametrize(
        "error_cls, category, retryable",
        [
            (ValidationError, ErrorCategory.VALIDATION, False),
            (ConfigError, ErrorCategory.CONFIG, False),
            (PoolTimeoutError, ErrorCategory.POOL, True),
            (TransientExecutionError, ErrorCategory.EXECUTION, True),
            (ThrottledError, ErrorCategory.THROTTLED, True),
            (CallTimeoutError, ErrorCategory.EXECUTION, True),
            (AuthError, ErrorCategory.AUTH, False),
            (CircuitOpenError, ErrorCategory.CIRCUIT, False),
            (InvariantViolation, ErrorCategory.INTERNAL, False),
        ],
    )
    def test_defaults(self, error_cls, category, retryable):
        error = error_cls("boom")
        assert isinstance(error, EngineError)
        assert error.category is category
        assert error.retryable is retryable

    def test_config_error_is_a_validation_error(self):
        assert issubclass(ConfigError, ValidationError)

    def test_throttled_is_transient(self):
        assert isinstance(ThrottledError("slow down"), TransientExecutionError)


class TestContext:
    def test_with_context_sets_known_fields_and_metadata(self):
        error = TransientExecutionError("down").with_context(
            service="ec2", request_index=3, attempt=2
        )
        assert error.context.service == "ec2"
        assert error.context.request_index == 3
        assert error.context.metadata == {"attempt": 2}

    def test_to_dict(self):
        cause = ConnectionError("reset")
        error = ThrottledError("Rate exceeded", retry_after=2.0, cause=cause).with_context(
            service="dynamodb"
        )
        d = error.to_dict()
        assert d["error_type"] == "ThrottledError"
        assert d["category"] == "THROTTLED"
        assert d["retryable"] is True
        assert d["retry_after"] == 2.0
        assert d["context"] == {"service": "dynamodb"}
        assert d["cause"] == "reset"
        assert error.__cause__ is cause

    def test_validation_error_fields(self):
        error = ValidationError("bad", field="service", value="", constraint="non-empty")
        d = error.to_dict()
        assert d["field"] == "service"
        assert d["constraint"] == "non-empty"

    def test_pool_timeout_carries_service(self):
        error = PoolTimeoutError(service="s3", timeout=1.5)
        assert error.context.service == "s3"
        assert error.timeout == 1.5


class TestClassification:
    @pytest.mark.parametrize(
        "error, outcome",
        [
            (None, OutcomeKind.SUCCESS),
            (ThrottledError("x"), OutcomeKind.THROTTLED),
            (CallTimeoutError("x"), OutcomeKind.TIMEOUT),
            (asyncio.TimeoutError(), OutcomeKind.TIMEOUT),
            (TransientExecutionError("x"), OutcomeKind.TRANSIENT),
            (ConnectionResetError(), OutcomeKind.TRANSIENT),
            (ValidationError("x"), OutcomeKind.VALIDATION),
            (AuthError("x"), OutcomeKind.AUTH),
            (PermissionError(), OutcomeKind.AUTH),
            (CircuitOpenError(), OutcomeKind.REJECTED),
            (PoolTimeoutError(), OutcomeKind.REJECTED),
            (RuntimeError("x"), OutcomeKind.ERROR),
        ],
    )
    def test_classify_outcome(self, error, outcome):
        assert classify_outcome(error) is outcome

    def test_failure_outcomes(self):
        failures = {k for k in OutcomeKind if k.is_failure}
        assert failures == {
            OutcomeKind.THROTTLED,
            OutcomeKind.TRANSIENT,
            OutcomeKind.TIMEOUT,
            OutcomeKind.ERROR,
        }

    def test_is_retryable(self):
        assert is_retryable(ThrottledError("x"))
        assert not is_retryable(AuthError("x"))
        assert is_retryable(ConnectionError())
        assert not is_retryable(KeyError("k"))

    def test_categorize_foreign_errors(self):
        assert categorize_error(TimeoutError()) is ErrorCategory.EXECUTION
        assert categorize_error(ValueError()) is ErrorCategory.VALIDATION
        assert categorize_error(PermissionError()) is ErrorCategory.AUTH
        assert categorize_error(RuntimeError()) is ErrorCategory.UNKNOWN


class TestAsEngineError:
    def test_engine_errors_pass_through(self):
        error = AuthError("denied")
        assert as_engine_error(error) is error

    def test_timeout_wrapped(self):
        wrapped = as_engine_error(asyncio.TimeoutError())
        assert isinstance(wrapped, CallTimeoutError)
        assert wrapped.message == "TimeoutError"

    def test_unknown_keeps_cause(self):
        original = RuntimeError("kaput")
        wrapped = as_engine_error(original)
        assert isinstance(wrapped, TransientExecutionError)
        assert wrapped.cause is original
        assert wrapped.category is ErrorCategory.UNKNOWN
