"""Tests for render-time metrics.

Run:
    pytest tests/test_metrics.py -v
"""

import pytest

from fractal_engine.metrics import PerformanceMonitor, get_memory_usage_mb


class TestPerformanceMonitor:
    def test_empty(self):
        snapshot = PerformanceMonitor().snapshot()
        assert snapshot['fps'] == 0.0
        assert snapshot['average_render_time_ms'] == 0
        assert snapshot['render_count'] == 0

    def test_averages(self):
        monitor = PerformanceMonitor()
        for ms in (10.0, 20.0, 30.0):
            monitor.record(ms)
        snapshot = monitor.snapshot()
        assert snapshot['average_render_time_ms'] == 20
        assert snapshot['last_render_time_ms'] == 30.0
        assert snapshot['total_render_time_ms'] == 60.0
        assert snapshot['fps'] == 50.0

    def test_window_keeps_most_recent(self):
        monitor = PerformanceMonitor(window=2)
        for ms in (100.0, 4.0, 6.0):
            monitor.record(ms)
        assert len(monitor) == 2
        assert monitor.average_ms == 5.0

    def test_lifetime_totals_outgrow_window(self):
        monitor = PerformanceMonitor(window=100)
        for _ in range(150):
            monitor.record(2.0)
        snapshot = monitor.snapshot()
        assert len(monitor) == 100
        assert snapshot['render_count'] == 150
        assert snapshot['total_render_time_ms'] == 300.0
        assert snapshot['average_render_time_ms'] == 2

    def test_clear(self):
        monitor = PerformanceMonitor()
        monitor.record(1.0)
        monitor.clear()
        assert monitor.last_ms == 0.0
        assert monitor.render_count == 0
        assert monitor.total_ms == 0.0

    def test_invalid_window(self):
        with pytest.raises(ValueError, match="window"):
            PerformanceMonitor(0)


def test_memory_usage_is_positive():
    assert get_memory_usage_mb() > 0
