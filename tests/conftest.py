import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from meterboard.api.backends import Backend
from meterboard.api.periods import Bucket, PeriodResolver
from meterboard.api.pipeline import Sample, apply_post_steps
from meterboard.api.query_builder import WindowedQuery
from meterboard.api.service import MetricQueryService

AMSTERDAM = ZoneInfo("Europe/Amsterdam")


def local(*args: int) -> datetime:
    return datetime(*args, tzinfo=AMSTERDAM)


class FakeBackend(Backend):
    """Serves pre-bucketed aggregates and runs the same post steps as the SQL backend."""

    name = "fake"

    def __init__(self) -> None:
        self.buckets: dict[tuple[str, str], list[Sample]] = {}
        self.latest: dict[str, Sample] = {}
        self.anchor: datetime | None = None
        self.profile: list[tuple[int, int, float]] = []
        self.net: list[Sample] = []
        self.queries: list[WindowedQuery] = []
        self.calls = 0
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def fetch(self, query: WindowedQuery) -> list[Sample]:
        self.calls += 1
        self.queries.append(query)
        stored = self.buckets.get((query.measurement, query.field), [])
        samples = [sample for sample in stored if query.start <= sample.time < query.stop]
        earlier = [sample for sample in stored if query.prime_start() <= sample.time < query.start]
        if query.prime_lookback is not None and earlier:
            # Merge the newest earlier reading into the first bucket, as the max aggregate would.
            seed = max(earlier, key=lambda sample: sample.time).value
            first = [sample.value for sample in samples if sample.time == query.start]
            samples = [sample for sample in samples if sample.time != query.start]
            samples.insert(0, Sample(query.start, max([seed] + first)))
        return apply_post_steps(query, samples)

    def last_time(self, measurement: str, field: str, lookback: Bucket) -> datetime | None:
        self.calls += 1
        return self.anchor

    def last_values(self, measurement: str, fields: tuple[str, ...], lookback: Bucket) -> dict[str, Sample]:
        self.calls += 1
        return {name: sample for name, sample in self.latest.items() if name in fields}

    def net_series(self, measurement, minuend, subtrahend, start, stop, every) -> list[Sample]:
        self.calls += 1
        return [sample for sample in self.net if start <= sample.time < stop]

    def time_of_day_profile(self, measurement, field, start, stop, grid, function) -> list[tuple[int, int, float]]:
        self.calls += 1
        return list(self.profile)


@pytest.fixture
def now() -> datetime:
    return local(2024, 3, 15, 12, 0)


@pytest.fixture
def resolver(now: datetime) -> PeriodResolver:
    return PeriodResolver(AMSTERDAM, clock=lambda: now)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def service(backend: FakeBackend, resolver: PeriodResolver) -> MetricQueryService:
    return MetricQueryService(backend, resolver)
