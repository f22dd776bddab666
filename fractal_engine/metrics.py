"""
Render timing history and process memory metrics.
"""

from collections import deque
from typing import Any, Dict

import psutil
import logging

logger = logging.getLogger(__name__)


def get_memory_usage_mb() -> float:
    """Resident set size of this process in MiB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


class PerformanceMonitor:
    """
    Render-time history.

    Average and FPS come from a bounded ring buffer of the most recent
    renders; the render count and total time cover every render since the
    last ``clear()``.
    """

    def __init__(self, window: int = 100):
        if window <= 0:
            raise ValueError("Metrics window must be positive")
        self.window = window
        self._render_times = deque(maxlen=window)
        self.render_count = 0
        self.total_ms = 0.0

    def record(self, render_time_ms: float) -> None:
        self._render_times.append(float(render_time_ms))
        self.render_count += 1
        self.total_ms += float(render_time_ms)

    def clear(self) -> None:
        self._render_times.clear()
        self.render_count = 0
        self.total_ms = 0.0

    def __len__(self) -> int:
        return len(self._render_times)

    @property
    def average_ms(self) -> float:
        if not self._render_times:
            return 0.0
        return sum(self._render_times) / len(self._render_times)

    @property
    def last_ms(self) -> float:
        return self._render_times[-1] if self._render_times else 0.0

    @property
    def fps(self) -> float:
        average = self.average_ms
        return 1000.0 / average if average > 0 else 0.0

    def snapshot(self) -> Dict[str, Any]:
        """
        Summarize the recorded history.

        Returns:
            Dictionary with fps, average/last/total render time (ms), number
            of renders and current process memory (MiB)
        """
        return {
            'fps': round(self.fps, 2),
            'average_render_time_ms': round(self.average_ms),
            'last_render_time_ms': self.last_ms,
            'render_count': self.render_count,
            'total_render_time_ms': self.total_ms,
            'memory_usage_mb': round(get_memory_usage_mb(), 2),
        }
