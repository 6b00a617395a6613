"""Local resource awareness for the concurrency controller.

The controller may be told how loaded the *calling* host is. If CPU or
memory is past its high-water mark, or the process is running out of
file descriptors, the performance-only recommendation is capped so the
engine does not make the caller's own situation worse.

    cap = max(min_concurrency, min(value - 1, floor(value × cap_factor)))
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import psutil

from adaptive_engine.core.errors import ConfigError
from adaptive_engine.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time host utilisation.

    Attributes:
        cpu_percent: System-wide CPU utilisation, 0-100
        memory_percent: Virtual memory utilisation, 0-100
        fd_headroom: Fraction of the soft open-file limit still free, 0-1
    """

    cpu_percent: float
    memory_percent: float
    fd_headroom: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpu_percent": self.cpu_percent,
            "memory_percent": self.memory_percent,
            "fd_headroom": self.fd_headroom,
        }


@dataclass(frozen=True)
class ResourceLimits:
    """High-water marks."""

    cpu_high_water: float = 85.0
    memory_high_water: float = 85.0
    fd_min_headroom: float = 0.1
    cap_factor: float = 0.75

    def __post_init__(self) -> None:
        for name in ("cpu_high_water", "memory_high_water"):
            value = getattr(self, name)
            if not 0.0 < value <= 100.0:
                raise ConfigError(f"{name} must be in (0, 100]", field=name, value=value)
        if not 0.0 <= self.fd_min_headroom < 1.0:
            raise ConfigError(
                "fd_min_headroom must be in [0, 1)", field="fd_min_headroom", value=self.fd_min_headroom
            )
        if not 0.0 < self.cap_factor < 1.0:
            raise ConfigError("cap_factor must be in (0, 1)", field="cap_factor", value=self.cap_factor)


def limiting_resources(snapshot: ResourceSnapshot, limits: ResourceLimits) -> tuple[str, ...]:
    """Names of the resources past their mark, in a stable order."""
    names: list[str] = []
    if snapshot.cpu_percent > limits.cpu_high_water:
        names.append("cpu")
    if snapshot.memory_percent > limits.memory_high_water:
        names.append("memory")
    if snapshot.fd_headroom < limits.fd_min_headroom:
        names.append("file_descriptors")
    return tuple(names)


def apply_resource_cap(
    value: int,
    snapshot: ResourceSnapshot | None,
    limits: ResourceLimits,
    min_concurrency: int,
) -> tuple[int, tuple[str, ...]]:
    """Cap ``value`` under resource pressure.

    Returns the (possibly reduced) value and the limiting resources.
    """
    if snapshot is None:
        return value, ()
    limiting = limiting_resources(snapshot, limits)
    if not limiting:
        return value, ()
    capped = min(value - 1, math.floor(value * limits.cap_factor))
    return max(min_concurrency, min(value, capped)), limiting


def _fd_headroom(process: psutil.Process) -> float:
    # num_fds and rlimit are POSIX/Linux only; elsewhere report no pressure.
    if not hasattr(process, "num_fds") or not hasattr(process, "rlimit"):
        return 1.0
    try:
        open_fds = process.num_fds()
        soft, _ = process.rlimit(psutil.RLIMIT_NOFILE)
    except psutil.Error:
        return 1.0
    if soft <= 0 or soft == psutil.RLIM_INFINITY:
        return 1.0
    return max(0.0, 1.0 - open_fds / soft)


def sample_resources(process: psutil.Process | None = None) -> ResourceSnapshot:
    """Read a live snapshot via psutil (non-blocking CPU sample)."""
    process = process or psutil.Process()
    snapshot = ResourceSnapshot(
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_percent=psutil.virtual_memory().percent,
        fd_headroom=_fd_headroom(process),
    )
    logger.debug("resources.sampled", **snapshot.to_dict())
    return snapshot


__all__ = [
    "ResourceSnapshot",
    "ResourceLimits",
    "limiting_resources",
    "apply_resource_cap",
    "sample_resources",
]
