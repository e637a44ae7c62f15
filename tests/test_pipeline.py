import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from conftest import local
from meterboard.api.periods import HOUR
from meterboard.api.pipeline import (
    Sample,
    apply_post_steps,
    drop_nulls,
    fill_missing,
    interpolate_linear,
    successive_differences,
    within,
)
from meterboard.api.query_builder import QueryBuilder


def hourly(*values: float | None) -> list[Sample]:
    return drop_nulls((local(2023, 6, 15, hour), value) for hour, value in enumerate(values))


def test_successive_differences_clamp_negative_steps() -> None:
    result = successive_differences(hourly(10, 10, 15, 15, 30))
    assert [sample.value for sample in result] == [0, 5, 0, 15]
    assert result[0].time == local(2023, 6, 15, 1)

    reset = successive_differences(hourly(100, 120, 3, 8))
    assert [sample.value for sample in reset] == [20, 0, 5]


def test_drop_nulls_removes_missing_values() -> None:
    assert [sample.value for sample in hourly(1, None, 3)] == [1.0, 3.0]


def test_fill_missing_makes_empty_buckets_explicit() -> None:
    grid = HOUR.starts(local(2023, 6, 15, 0), local(2023, 6, 15, 4))
    filled = fill_missing(hourly(2, None, None, 1), grid)
    assert [sample.value for sample in filled] == [2, 0, 0, 1]


def test_interpolate_linear_fills_inner_gaps_only() -> None:
    grid = HOUR.starts(local(2023, 6, 15, 0), local(2023, 6, 15, 6))
    samples = drop_nulls([(local(2023, 6, 15, 1), 100), (local(2023, 6, 15, 4), 130)])

    result = interpolate_linear(samples, grid)

    assert [sample.time.hour for sample in result] == [1, 2, 3, 4]
    assert [sample.value for sample in result] == pytest.approx([100, 110, 120, 130])


def test_within_is_inclusive() -> None:
    samples = hourly(1, 2, 3, 4)
    assert [sample.value for sample in within(samples, local(2023, 6, 15, 1), local(2023, 6, 15, 2))] == [2, 3]


def test_apply_post_steps_interpolates_before_differencing() -> None:
    query = (
        QueryBuilder("gas", "cumulative_total_dm3")
        .range(local(2023, 6, 15, 0), local(2023, 6, 15, 4), HOUR)
        .aggregate_with("max")
        .interpolate()
        .take_difference()
        .build()
    )

    result = apply_post_steps(query, hourly(1000, None, None, 1300))

    assert [sample.value for sample in result] == pytest.approx([100, 100, 100])
