from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from meterboard.api.periods import Bucket, TimeRange

AGGREGATES = ("max", "min", "mean", "sum", "count", "last")
COUNTER_AGGREGATES = ("max", "last")
IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True)
class WindowedQuery:
    measurement: str
    field: str
    start: datetime
    stop: datetime
    every: Bucket
    aggregate: str
    create_empty: bool = False
    interpolate: bool = False
    difference: bool = False
    label: str | None = None
    prime_lookback: Bucket | None = None

    def grid(self) -> list[datetime]:
        return self.every.starts(self.start, self.stop)

    def prime_start(self) -> datetime:
        if self.prime_lookback is None:
            return self.start
        try:
            return self.prime_lookback.advance(self.start, -1)
        except (ValueError, OverflowError):
            return self.start


class QueryBuilder:
    """Fluent construction of one windowed aggregation over a single field.

    Nothing is checked until build(), which returns an immutable WindowedQuery
    that the Flux and SQL renderers can serialize without further validation.
    """

    def __init__(self, measurement: str, field: str) -> None:
        self._measurement = measurement
        self._field = field
        self._start: datetime | None = None
        self._stop: datetime | None = None
        self._every: Bucket | None = None
        self._aggregate: str | None = None
        self._create_empty = False
        self._interpolate = False
        self._difference = False
        self._label: str | None = None
        self._prime_lookback: Bucket | None = None

    def range(self, start: datetime, stop: datetime, every: Bucket) -> QueryBuilder:
        self._start = start
        self._stop = stop
        self._every = every
        return self

    def over(self, time_range: TimeRange) -> QueryBuilder:
        return self.range(time_range.start, time_range.stop, time_range.bucket)

    def aggregate_with(self, function: str) -> QueryBuilder:
        self._aggregate = function
        return self

    def create_empty(self) -> QueryBuilder:
        self._create_empty = True
        return self

    def interpolate(self) -> QueryBuilder:
        self._interpolate = True
        return self

    def take_difference(self) -> QueryBuilder:
        self._difference = True
        return self

    def labelled(self, label: str) -> QueryBuilder:
        self._label = label
        return self

    def prime_from_last(self, lookback: Bucket) -> QueryBuilder:
        """Seed the first bucket with the newest reading found up to `lookback` before the range."""
        self._prime_lookback = lookback
        return self

    def build(self) -> WindowedQuery:
        for name, value in (("measurement", self._measurement), ("field", self._field)):
            if not IDENTIFIER.match(value or ""):
                raise ValueError(f"Invalid {name} identifier: {value!r}")
        if self._label is not None and not IDENTIFIER.match(self._label):
            raise ValueError(f"Invalid label: {self._label!r}")
        if self._start is None or self._stop is None or self._every is None:
            raise ValueError("Query range is not set")
        if self._start.tzinfo is None or self._stop.tzinfo is None:
            raise ValueError("Query range must use timezone-aware instants")
        if self._start >= self._stop:
            raise ValueError("Query start must be before stop")
        if self._aggregate not in AGGREGATES:
            raise ValueError(f"Unsupported aggregate: {self._aggregate!r}")
        if self._difference and self._aggregate not in COUNTER_AGGREGATES:
            raise ValueError(f"Differencing needs one of {COUNTER_AGGREGATES}, got {self._aggregate!r}")
        if self._interpolate and self._create_empty:
            raise ValueError("Interpolation and explicit empty buckets are mutually exclusive")
        if self._prime_lookback is not None and not self._difference:
            raise ValueError("Priming from the last reading only applies to differenced queries")

        return WindowedQuery(
            measurement=self._measurement,
            field=self._field,
            start=self._start,
            stop=self._stop,
            every=self._every,
            aggregate=self._aggregate,
            create_empty=self._create_empty,
            interpolate=self._interpolate,
            difference=self._difference,
            label=self._label,
            prime_lookback=self._prime_lookback,
        )
