from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from meterboard.api.query_builder import WindowedQuery


@dataclass(frozen=True)
class Sample:
    time: datetime
    value: float


def drop_nulls(rows: Iterable[tuple[datetime | None, object]]) -> list[Sample]:
    return [Sample(time, float(value)) for time, value in rows if time is not None and value is not None]


def fill_missing(samples: list[Sample], grid: list[datetime], value: float = 0.0) -> list[Sample]:
    known = {sample.time: sample.value for sample in samples}
    return [Sample(point, known.get(point, value)) for point in grid]


def interpolate_linear(samples: list[Sample], grid: list[datetime]) -> list[Sample]:
    """Fill grid points lying between two known samples by linear interpolation in time.

    Points before the first or after the last known sample stay missing.
    """
    if len(samples) < 2:
        return list(samples)

    known = sorted(samples, key=lambda sample: sample.time)
    result: list[Sample] = []
    index = 0
    for point in grid:
        if point < known[0].time or point > known[-1].time:
            continue
        while known[index + 1].time < point:
            index += 1
        left, right = known[index], known[index + 1]
        if point == left.time:
            result.append(left)
        elif point == right.time:
            result.append(right)
        else:
            span = (right.time - left.time).total_seconds()
            ratio = (point - left.time).total_seconds() / span
            result.append(Sample(point, left.value + (right.value - left.value) * ratio))
    return result


def successive_differences(samples: list[Sample]) -> list[Sample]:
    # Counter resets produce negative steps; usage never goes below zero.
    return [
        Sample(current.time, max(current.value - previous.value, 0.0))
        for previous, current in zip(samples, samples[1:])
    ]


def within(samples: list[Sample], start: datetime, stop: datetime) -> list[Sample]:
    return [sample for sample in samples if start <= sample.time <= stop]


def apply_post_steps(query: WindowedQuery, samples: list[Sample]) -> list[Sample]:
    """Run the steps a Flux pipeline performs server-side on already bucketed samples."""
    if query.create_empty:
        samples = fill_missing(samples, query.grid())
    if query.interpolate:
        samples = interpolate_linear(samples, query.grid())
    if query.difference:
        samples = successive_differences(samples)
    return samples
