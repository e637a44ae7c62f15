from __future__ import annotations

from typing import Any

from meterboard.api.metrics import MetricSpec


def to_display(raw: Any, divisor: float) -> float:
    return float(raw) / divisor


def convert(metric: MetricSpec, raw: Any) -> float:
    # Event counts are ticks; each tick stands for a fixed stored volume.
    return to_display(float(raw) * metric.tick_volume, metric.divisor)
