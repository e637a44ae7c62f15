from __future__ import annotations

import re
from calendar import monthrange
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, TypeVar

from meterboard.api.errors import InvalidParameter
from meterboard.api.metrics import MeasurementKind

PERIODS = ("day", "month", "year")

_UNIT_ALIASES = {
    "s": "s",
    "sec": "s",
    "second": "s",
    "seconds": "s",
    "m": "m",
    "min": "m",
    "minute": "m",
    "minutes": "m",
    "h": "h",
    "hour": "h",
    "hours": "h",
    "d": "d",
    "day": "d",
    "days": "d",
    "w": "w",
    "week": "w",
    "weeks": "w",
    "mo": "mo",
    "month": "mo",
    "months": "mo",
    "y": "y",
    "year": "y",
    "years": "y",
}
_FIXED_SECONDS = {"s": 1, "m": 60, "h": 3600}
_SQL_WORDS = {"s": "second", "m": "minute", "h": "hour", "d": "day", "w": "week", "mo": "month", "y": "year"}
_BUCKET_PATTERN = re.compile(r"^(\d+)\s*([a-z]+)$")

D = TypeVar("D", bound=date)


def add_months_clamped(dt: D, months: int) -> D:
    month_index = (dt.month - 1) + months
    year = dt.year + month_index // 12
    month = (month_index % 12) + 1
    day = min(dt.day, monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class Bucket:
    amount: int
    unit: str

    def __post_init__(self) -> None:
        if self.amount < 1:
            raise ValueError("Bucket amount must be positive")
        if self.unit not in _SQL_WORDS:
            raise ValueError(f"Unknown bucket unit: {self.unit}")

    @classmethod
    def parse(cls, raw: str) -> Bucket:
        match = _BUCKET_PATTERN.match(raw.strip().lower())
        unit = _UNIT_ALIASES.get(match.group(2)) if match else None
        if match is None or unit is None or int(match.group(1)) < 1:
            raise InvalidParameter(f"Invalid window: {raw}")
        return cls(int(match.group(1)), unit)

    @property
    def is_calendar(self) -> bool:
        return self.unit not in _FIXED_SECONDS

    def flux(self) -> str:
        return f"{self.amount}{self.unit}"

    def sql(self) -> str:
        word = _SQL_WORDS[self.unit]
        return f"{self.amount} {word}" if self.amount == 1 else f"{self.amount} {word}s"

    def advance(self, instant: datetime, steps: int = 1) -> datetime:
        if self.unit in _FIXED_SECONDS:
            delta = timedelta(seconds=_FIXED_SECONDS[self.unit] * self.amount * steps)
            return (instant.astimezone(timezone.utc) + delta).astimezone(instant.tzinfo)
        # Calendar units move the local wall clock, so DST days keep their midnights.
        if self.unit == "d":
            return instant + timedelta(days=self.amount * steps)
        if self.unit == "w":
            return instant + timedelta(weeks=self.amount * steps)
        months = self.amount * steps * (12 if self.unit == "y" else 1)
        return add_months_clamped(instant, months)

    def floor(self, instant: datetime) -> datetime:
        if self.unit == "y":
            return instant.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        if self.unit == "mo":
            return instant.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return instant

    def starts(self, start: datetime, stop: datetime) -> list[datetime]:
        # Month and year windows follow the calendar; a mid-month start only clips the first one.
        anchor = self.floor(start)
        result: list[datetime] = []
        current = start
        step = 0
        while current.astimezone(timezone.utc) < stop.astimezone(timezone.utc):
            result.append(current)
            step += 1
            current = self.advance(anchor, step)
        return result


HOUR = Bucket(1, "h")
DAY = Bucket(1, "d")
MONTH = Bucket(1, "mo")
TEN_DAYS = Bucket(10, "d")
QUARTER_HOUR = Bucket(15, "m")


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    stop: datetime
    bucket: Bucket
    nominal_start: datetime | None = None
    rolling: bool = False

    def __post_init__(self) -> None:
        if self.start >= self.stop:
            raise ValueError("Range start must be before stop")
        if self.nominal_start is None:
            object.__setattr__(self, "nominal_start", self.start)

    @property
    def primed(self) -> bool:
        return self.start < self.nominal_start

    def with_bucket(self, bucket: Bucket) -> TimeRange:
        return replace(self, bucket=bucket)

    def without_priming(self) -> TimeRange:
        return replace(self, start=self.nominal_start)


def parse_int(name: str, raw: str | int | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw, 10) if isinstance(raw, str) else int(raw)
    except ValueError:
        raise InvalidParameter(f"Invalid {name}: {raw}") from None


class PeriodResolver:
    def __init__(self, tz: tzinfo, clock: Callable[[], datetime] | None = None) -> None:
        self.tz = tz
        self._clock = clock

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock().astimezone(self.tz)
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()

    def midnight(self, day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=self.tz)

    def resolve(
        self,
        period: str,
        year: int,
        month: int | None = None,
        day: int | None = None,
        kind: MeasurementKind = MeasurementKind.CUMULATIVE_COUNTER,
        count: int = 1,
    ) -> TimeRange:
        if count < 1:
            raise InvalidParameter(f"Invalid count: {count}")
        gauge = kind is MeasurementKind.GAUGE

        if period == "day":
            first = self._date(year, month, day)
            nominal = self.midnight(first)
            stop = self.midnight(self._shift_days(first, count))
            return TimeRange(self._step_back(HOUR, nominal), stop, HOUR, nominal)

        if period == "month":
            first = self._date(year, month, 1)
            nominal = self.midnight(first)
            stop = self.midnight(self._shift_months(first, count))
            if gauge:
                return TimeRange(nominal, stop, HOUR, nominal)
            start = self.midnight(self._shift_days(first, -1))
            return TimeRange(start, stop, DAY, nominal)

        if period == "year":
            first = self._date(year, 1, 1)
            nominal = self.midnight(first)
            start = self.midnight(self._shift_days(first, -1))
            stop = self.midnight(self._shift_months(first, 12 * count))
            return TimeRange(start, stop, TEN_DAYS if gauge else MONTH, nominal)

        raise InvalidParameter(f"Unknown period: {period}")

    def is_open(self, time_range: TimeRange) -> bool:
        return time_range.rolling or time_range.stop > self.now()

    def rolling_days(self, days: int, bucket: Bucket = HOUR) -> TimeRange:
        if days < 1:
            raise InvalidParameter(f"Invalid number of days: {days}")
        nominal = self.midnight(self.today() - timedelta(days=days))
        return TimeRange(self._step_back(bucket, nominal), self.now(), bucket, nominal, rolling=True)

    def last_year(self) -> TimeRange:
        today = self.today()
        first = date(today.year - 1, today.month, 1)
        nominal = self.midnight(first)
        start = self.midnight(first - timedelta(days=1))
        return TimeRange(start, self.now(), DAY, nominal, rolling=True)

    def week_before(self, year: int, month: int, day: int) -> TimeRange:
        given = self._date(year, month, day)
        start = self.midnight(self._shift_days(given, -7))
        return TimeRange(start, self.midnight(given), QUARTER_HOUR)

    @staticmethod
    def _date(year: int, month: int | None, day: int | None) -> date:
        if month is None:
            raise InvalidParameter("month is required for this period")
        if day is None:
            raise InvalidParameter("day is required for this period")
        try:
            return date(year, month, day)
        except ValueError as exc:
            raise InvalidParameter(f"Invalid date {year}-{month}-{day}: {exc}") from exc

    @staticmethod
    def _shift_days(day: date, days: int) -> date:
        try:
            return day + timedelta(days=days)
        except OverflowError as exc:
            raise InvalidParameter(f"Date out of range: {day} {days:+d} days") from exc

    @staticmethod
    def _shift_months(day: date, months: int) -> date:
        try:
            return add_months_clamped(day, months)
        except ValueError as exc:
            raise InvalidParameter(f"Date out of range: {day} {months:+d} months") from exc

    @staticmethod
    def _step_back(bucket: Bucket, instant: datetime) -> datetime:
        try:
            return bucket.advance(instant, -1)
        except (OverflowError, ValueError) as exc:
            raise InvalidParameter(f"Date out of range: {instant.date()} minus {bucket.flux()}") from exc
