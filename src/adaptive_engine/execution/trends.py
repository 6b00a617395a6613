"""Short-term trend detection over controller samples.

Throughput and error-rate trends are classified from the least-squares
slope of the last ``trend_window`` samples. Throughput slope is normalized
by the window mean so the same noise band works for 5 req/s and 500 req/s;
error-rate slope is already a ratio and is compared as-is.

    normalized_slope >  noise  → increasing
    normalized_slope < -noise  → decreasing
    otherwise                  → plateauing

The recommended concurrency is the knee of the observed curve: the
smallest concurrency that reached ``knee_ratio`` of peak throughput.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import Sample


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    PLATEAUING = "plateauing"
    DECREASING = "decreasing"


@dataclass(frozen=True)
class TrendAnalysis:
    """Result of ``analyze_trends``."""

    throughput_trend: TrendDirection
    error_trend: TrendDirection
    throughput_slope: float
    error_slope: float
    latency_growth: float
    peak_concurrency: int | None
    recommended_concurrency: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "throughput_trend": self.throughput_trend.value,
            "error_trend": self.error_trend.value,
            "throughput_slope": self.throughput_slope,
            "error_slope": self.error_slope,
            "latency_growth": self.latency_growth,
            "peak_concurrency": self.peak_concurrency,
            "recommended_concurrency": self.recommended_concurrency,
        }


def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope of ``values`` against their index.

    Returns 0.0 for fewer than two points.
    """
    n = len(values)
    if n < 2:
        return 0.0

    x_sum = sum(range(n))
    y_sum = sum(values)
    xy_sum = sum(i * y for i, y in enumerate(values))
    x2_sum = sum(i * i for i in range(n))

    denominator = n * x2_sum - x_sum * x_sum
    if denominator == 0:
        return 0.0
    return (n * xy_sum - x_sum * y_sum) / denominator


def classify(slope: float, noise: float) -> TrendDirection:
    if slope > noise:
        return TrendDirection.INCREASING
    if slope < -noise:
        return TrendDirection.DECREASING
    return TrendDirection.PLATEAUING


def latency_growth(samples: Sequence[Sample]) -> float:
    """Relative growth of the latest latency over the preceding samples' mean."""
    if len(samples) < 2:
        return 0.0
    previous = [s.latency for s in samples[:-1]]
    baseline = sum(previous) / len(previous)
    if baseline <= 0:
        return 0.0
    return (samples[-1].latency - baseline) / baseline


def knee_concurrency(samples: Sequence[Sample], knee_ratio: float) -> tuple[int | None, int | None]:
    """Return ``(peak_concurrency, knee_concurrency)`` over ``samples``."""
    if not samples:
        return None, None
    peak = max(samples, key=lambda s: (s.throughput, -s.concurrency))
    if peak.throughput <= 0:
        return peak.concurrency, None
    target = peak.throughput * knee_ratio
    reaching = [s.concurrency for s in samples if s.throughput >= target]
    return peak.concurrency, min(reaching)


def analyze_trends(
    samples: Sequence[Sample],
    *,
    trend_window: int = 3,
    throughput_noise: float = 0.1,
    error_noise: float = 0.01,
    knee_ratio: float = 0.9,
    current: int | None = None,
) -> TrendAnalysis:
    """Classify throughput/error trends and recommend a concurrency.

    Trends use the last ``trend_window`` samples; the knee search uses all
    of ``samples``. ``recommended_concurrency`` is the knee when throughput
    is not increasing, else ``current`` (the latest sample's concurrency
    when not given). Bounds are the caller's business.
    """
    recent = list(samples[-trend_window:]) if trend_window > 0 else []

    throughput = [s.throughput for s in recent]
    mean = sum(throughput) / len(throughput) if throughput else 0.0
    raw_slope = linear_slope(throughput)
    throughput_slope = raw_slope / mean if mean > 0 else 0.0

    error_slope = linear_slope([s.error_rate for s in recent])

    throughput_trend = classify(throughput_slope, throughput_noise)
    error_trend = classify(error_slope, error_noise)

    if current is None and samples:
        current = samples[-1].concurrency

    peak, knee = knee_concurrency(samples, knee_ratio)
    if throughput_trend is TrendDirection.INCREASING or knee is None:
        recommended = current
    else:
        recommended = knee

    return TrendAnalysis(
        throughput_trend=throughput_trend,
        error_trend=error_trend,
        throughput_slope=throughput_slope,
        error_slope=error_slope,
        latency_growth=latency_growth(recent),
        peak_concurrency=peak,
        recommended_concurrency=recommended,
    )


__all__ = [
    "TrendDirection",
    "TrendAnalysis",
    "linear_slope",
    "classify",
    "latency_growth",
    "knee_concurrency",
    "analyze_trends",
]
