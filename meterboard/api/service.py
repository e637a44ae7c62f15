from __future__ import annotations

import logging
from datetime import timedelta

from meterboard.api import units
from meterboard.api.backends import Backend
from meterboard.api.errors import InvalidParameter
from meterboard.api.metrics import (
    POWER_CURRENT_FIELD,
    POWER_DIVISOR,
    POWER_GENERATION_FIELD,
    POWER_MEASUREMENT,
    MeasurementKind,
    MetricSpec,
    get_metric,
    get_temperature_sensors,
)
from meterboard.api.periods import DAY, HOUR, QUARTER_HOUR, Bucket, PeriodResolver, TimeRange
from meterboard.api.pipeline import Sample, within
from meterboard.api.query_builder import QueryBuilder, WindowedQuery

logger = logging.getLogger("meterboard.service")

LAST_POWER_LOOKBACK = Bucket(5, "m")
RECENT_POWER_BUCKET = Bucket(10, "s")
RECENT_WATER_BUCKET = Bucket(30, "s")
WATER_ANCHOR_LOOKBACK = Bucket(30, "d")
PRIMING_LOOKBACK = Bucket(1, "y")
MIN_RECENT_MINUTES = 1
MAX_RECENT_MINUTES = 24 * 60
MAX_HOURLY_DAYS = 366
PROFILE_FUNCTIONS = ("max", "mean")
TEMPERATURE_AGGREGATES = ("mean", "max")


def check_minutes(minutes: int) -> int:
    if not MIN_RECENT_MINUTES <= minutes <= MAX_RECENT_MINUTES:
        raise InvalidParameter(f"minutes must be between {MIN_RECENT_MINUTES} and {MAX_RECENT_MINUTES}")
    return minutes


def pipeline_for(metric: MetricSpec, time_range: TimeRange) -> WindowedQuery:
    builder = QueryBuilder(metric.measurement, metric.field)

    if metric.kind is MeasurementKind.CUMULATIVE_COUNTER:
        builder.over(time_range).aggregate_with("max").take_difference()
        if time_range.primed:
            builder.prime_from_last(PRIMING_LOOKBACK)
        if metric.interpolate:
            builder.interpolate()
    elif metric.kind is MeasurementKind.INSTANTANEOUS_SUMMABLE:
        builder.over(time_range.without_priming()).aggregate_with("sum")
    elif metric.kind is MeasurementKind.EVENT_COUNT:
        builder.over(time_range.without_priming()).aggregate_with("count").create_empty()
    else:
        raise AssertionError(f"No windowed pipeline for {metric.kind}")

    return builder.build()


class MetricQueryService:
    def __init__(self, backend: Backend, resolver: PeriodResolver) -> None:
        self.backend = backend
        self.resolver = resolver

    def is_open(self, time_range: TimeRange) -> bool:
        return self.resolver.is_open(time_range)

    def _local(self, samples: list[Sample], scale: MetricSpec | float) -> list[Sample]:
        result = []
        for sample in samples:
            if isinstance(scale, MetricSpec):
                value = units.convert(scale, sample.value)
            else:
                value = units.to_display(sample.value, scale)
            result.append(Sample(sample.time.astimezone(self.resolver.tz), value))
        return result

    def period_range(
        self,
        field: str,
        period: str,
        year: int,
        month: int | None = None,
        day: int | None = None,
        window: str | None = None,
    ) -> TimeRange:
        metric = get_metric(field)
        time_range = self.resolver.resolve(period, year, month, day, kind=metric.kind)
        if window is not None:
            time_range = time_range.with_bucket(Bucket.parse(window))
        return time_range

    def rolling_range(self, field: str, days: int, bucket: Bucket = HOUR) -> TimeRange:
        get_metric(field)
        if days > MAX_HOURLY_DAYS:
            raise InvalidParameter(f"days must be at most {MAX_HOURLY_DAYS}")
        return self.resolver.rolling_days(days, bucket)

    def last_30_days_range(self, field: str) -> TimeRange:
        return self.rolling_range(field, 30, DAY)

    def last_year_range(self, field: str) -> TimeRange:
        get_metric(field)
        return self.resolver.last_year()

    def series(self, field: str, time_range: TimeRange) -> list[Sample]:
        metric = get_metric(field)
        samples = self.backend.fetch(pipeline_for(metric, time_range))
        # The priming bucket is consumed by differencing; drop anything else before the period.
        samples = within(samples, time_range.nominal_start, time_range.stop)
        return self._local(samples, metric)

    def temperature_range(
        self, period: str, year: int, month: int | None = None, day: int | None = None
    ) -> TimeRange:
        time_range = self.resolver.resolve(period, year, month, day, kind=MeasurementKind.GAUGE)
        return time_range.without_priming()

    def temperature(self, location: str, time_range: TimeRange, aggregate: str = "mean") -> dict[str, list[Sample]]:
        if aggregate not in TEMPERATURE_AGGREGATES:
            raise InvalidParameter(f"Unsupported temperature aggregate: {aggregate}")
        sensors = get_temperature_sensors(location)
        queries = [
            QueryBuilder(sensor.measurement, sensor.field)
            .over(time_range)
            .aggregate_with(aggregate)
            .labelled(sensor.label)
            .build()
            for sensor in sensors
        ]
        results = self.backend.fetch_many(queries)
        return {sensor.label: self._local(results.get(sensor.label, []), sensor.divisor) for sensor in sensors}

    def generation_profile_range(self, year: int, month: int, day: int) -> TimeRange:
        return self.resolver.week_before(year, month, day)

    def generation_profile(self, time_range: TimeRange, function: str) -> list[tuple[int, int, float]]:
        if function not in PROFILE_FUNCTIONS:
            raise InvalidParameter(f"Unknown aggregate function: {function}")
        metric = get_metric("generation")
        rows = self.backend.time_of_day_profile(
            metric.measurement, metric.field, time_range.start, time_range.stop, QUARTER_HOUR, function
        )
        return [(hour, minute, units.convert(metric, value)) for hour, minute, value in rows]

    def last_power(self) -> Sample | None:
        values = self.backend.last_values(
            POWER_MEASUREMENT, (POWER_CURRENT_FIELD, POWER_GENERATION_FIELD), LAST_POWER_LOOKBACK
        )
        current = values.get(POWER_CURRENT_FIELD)
        if current is None:
            logger.info("No %s sample in the last %s", POWER_CURRENT_FIELD, LAST_POWER_LOOKBACK.flux())
            return None
        generation = values.get(POWER_GENERATION_FIELD)
        net = current.value - (generation.value if generation else 0.0)
        return Sample(current.time.astimezone(self.resolver.tz), units.to_display(net, POWER_DIVISOR))

    def recent_power(self, minutes: int) -> list[Sample]:
        check_minutes(minutes)
        stop = self.resolver.now()
        start = stop - timedelta(minutes=minutes)
        samples = self.backend.net_series(
            POWER_MEASUREMENT,
            POWER_CURRENT_FIELD,
            POWER_GENERATION_FIELD,
            start,
            stop,
            RECENT_POWER_BUCKET,
        )
        return self._local(samples, POWER_DIVISOR)

    def recent_water(self, minutes: int) -> list[Sample]:
        check_minutes(minutes)
        metric = get_metric("water")
        anchor = self.backend.last_time(metric.measurement, metric.field, WATER_ANCHOR_LOOKBACK)
        if anchor is None:
            return []
        start = anchor - timedelta(minutes=minutes)
        query = (
            QueryBuilder(metric.measurement, metric.field)
            .range(start, anchor + timedelta(seconds=1), RECENT_WATER_BUCKET)
            .aggregate_with("count")
            .create_empty()
            .build()
        )
        samples = within(self.backend.fetch(query), start, anchor)
        return self._local(samples, metric)
