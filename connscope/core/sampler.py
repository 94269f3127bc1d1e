# ==============================================================================
# FILE: core/sampler.py
# PURPOSE: Rolling series of aggregate traffic deltas for the dashboard chart.
# ==============================================================================
from typing import List

from .data_models import DASHBOARD_CACHE_WINDOW_MS, TRAFFIC_WINDOW, TrafficSample


class TrafficSampler:
    def __init__(self, window: int = TRAFFIC_WINDOW, window_ms: float = DASHBOARD_CACHE_WINDOW_MS):
        self.window = window
        self.window_ms = window_ms
        self.series: List[TrafficSample] = []

    def sample(self, upload_total: int, download_total: int, sessions: int, now: float) -> TrafficSample:
        """Appends one sample; up/down are deltas against the previous sample's totals."""
        last = self.series[-1] if self.series else None
        prev_up = last.total_up if last else upload_total
        prev_down = last.total_down if last else download_total
        point = TrafficSample(
            time=now,
            up=max(0, upload_total - prev_up),
            down=max(0, download_total - prev_down),
            total_up=upload_total,
            total_down=download_total,
            sessions=sessions,
        )
        cutoff = now - self.window_ms
        series = [s for s in self.series if s.time >= cutoff]
        series.append(point)
        if len(series) > self.window + 1:
            series = series[-(self.window + 1):]
        self.series = series
        return point

    def to_list(self):
        return [s.to_dict() for s in self.series]

    def reset(self):
        self.series = []
