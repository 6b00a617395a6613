"""Adaptive execution engine for batches of remote calls.

Deduplicates equivalent requests, bounds in-flight work per service with a
feedback-driven concurrency ceiling and a connection pool, trips a circuit
breaker on repeated failure and fans results back out to every caller slot.

Example::

    from adaptive_engine import ExecutionOrchestrator, Request

    orchestrator = ExecutionOrchestrator(execute_one)
    result = await orchestrator.execute_batch(
        [Request("ec2", "describe_instances", {"InstanceIds": ["i-1"]})]
    )
"""

__version__ = "0.1.0"

from adaptive_engine.core.errors import (
    CircuitOpenError,
    ConfigError,
    EngineError,
    InvariantViolation,
    PoolTimeoutError,
    ValidationError,
)
from adaptive_engine.execution import (
    BatchConfig,
    BatchResult,
    DedupStrategy,
    ExecutionOrchestrator,
    Request,
    ServiceStateRegistry,
    execute_batch,
)

__all__ = [
    "__version__",
    "BatchConfig",
    "BatchResult",
    "CircuitOpenError",
    "ConfigError",
    "DedupStrategy",
    "EngineError",
    "ExecutionOrchestrator",
    "InvariantViolation",
    "PoolTimeoutError",
    "Request",
    "ServiceStateRegistry",
    "ValidationError",
    "execute_batch",
]
