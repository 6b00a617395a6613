"""Tests for trend detection."""

import pytest

from adaptive_engine.execution.models import Sample
from adaptive_engine.execution.trends import (
    TrendDirection,
    analyze_trends,
    classify,
    knee_concurrency,
    latency_growth,
    linear_slope,
)


def s(concurrency, throughput, error_rate=0.0, latency=0.2):
    return Sample(timestamp=0.0, concurrency=concurrency, latency=latency, error_rate=error_rate, throughput=throughput)


PLATEAU = [s(2, 13.3), s(4, 22.2, 0.05), s(6, 24.0, 0.1), s(8, 20.0, 0.2)]


class TestSlope:
    @pytest.mark.parametrize(
        "values, expected",
        [([1.0, 2.0, 3.0], 1.0), ([3.0, 3.0, 3.0], 0.0), ([5.0], 0.0), ([], 0.0), ([4.0, 2.0], -2.0)],
    )
    def test_linear_slope(self, values, expected):
        assert linear_slope(values) == pytest.approx(expected)

    def test_classify_noise_band(self):
        assert classify(0.2, 0.1) is TrendDirection.INCREASING
        assert classify(-0.2, 0.1) is TrendDirection.DECREASING
        assert classify(0.05, 0.1) is TrendDirection.PLATEAUING


class TestLatencyGrowth:
    def test_relative_to_preceding_mean(self):
        assert latency_growth([s(1, 1, latency=0.1), s(1, 1, latency=0.1), s(1, 1, latency=0.2)]) == pytest.approx(1.0)

    def test_single_sample(self):
        assert latency_growth([s(1, 1)]) == 0.0


class TestKnee:
    def test_smallest_concurrency_near_peak(self):
        assert knee_concurrency(PLATEAU, 0.9) == (6, 4)

    def test_no_throughput(self):
        assert knee_concurrency([s(3, 0.0)], 0.9) == (3, None)

    def test_empty(self):
        assert knee_concurrency([], 0.9) == (None, None)


class TestAnalyzeTrends:
    def test_plateau_recommends_knee(self):
        analysis = analyze_trends(PLATEAU)
        assert analysis.throughput_trend is TrendDirection.PLATEAUING
        assert analysis.error_trend is TrendDirection.INCREASING
        assert analysis.recommended_concurrency == 4
        assert analysis.to_dict()["peak_concurrency"] == 6

    def test_growth_keeps_current(self):
        analysis = analyze_trends([s(2, 10.0), s(3, 15.0), s(4, 20.0)], current=4)
        assert analysis.throughput_trend is TrendDirection.INCREASING
        assert analysis.recommended_concurrency == 4

    def test_slope_normalized_by_mean(self):
        high = analyze_trends([s(10, 500.0), s(10, 510.0), s(10, 520.0)])
        low = analyze_trends([s(10, 5.0), s(10, 6.0), s(10, 7.0)])
        assert high.throughput_trend is TrendDirection.PLATEAUING
        assert low.throughput_trend is TrendDirection.INCREASING

    def test_uses_only_recent_window_for_trend(self):
        samples = [s(1, 1.0), s(2, 50.0), s(3, 50.0), s(4, 50.0)]
        assert analyze_trends(samples, trend_window=3).throughput_trend is TrendDirection.PLATEAUING

    def test_deterministic(self):
        assert analyze_trends(PLATEAU) == analyze_trends(list(PLATEAU))
