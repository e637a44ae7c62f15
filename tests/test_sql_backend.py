import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

pyodbc = pytest.importorskip("pyodbc", exc_type=ImportError)

from conftest import local
from meterboard.api.config import Settings
from meterboard.api.errors import BackendTimeout, BackendUnavailable
from meterboard.api.periods import HOUR, MONTH, Bucket
from meterboard.api.query_builder import QueryBuilder
from meterboard.api.sql_backend import SqlBackend


class _Cursor:
    def __init__(self, rows: list, error: Exception | None = None) -> None:
        self.rows = rows
        self.error = error
        self.executed: list[tuple[str, tuple]] = []

    def execute(self, query: str, *params):
        self.executed.append((query, params))
        if self.error is not None:
            raise self.error
        return self

    def fetchall(self) -> list:
        return self.rows


class _Conn:
    def __init__(self, cursor: _Cursor) -> None:
        self._cursor = cursor
        self.timeout = 0

    def __enter__(self) -> "_Conn":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def cursor(self) -> _Cursor:
        return self._cursor


def _backend(cursor: _Cursor) -> tuple[SqlBackend, list[_Conn]]:
    opened: list[_Conn] = []

    def connect() -> _Conn:
        conn = _Conn(cursor)
        opened.append(conn)
        return conn

    return SqlBackend(Settings(backend="sql", backend_timeout_seconds=12), connect=connect), opened


def test_fetch_normalizes_rows_and_differences() -> None:
    rows = [
        SimpleNamespace(bucket_utc=datetime(2023, 6, 14, 21), value=1000),
        SimpleNamespace(bucket_utc=datetime(2023, 6, 14, 22), value=1200),
        SimpleNamespace(bucket_utc=datetime(2023, 6, 14, 23), value=None),
        SimpleNamespace(bucket_utc=datetime(2023, 6, 15, 0), value=1500),
    ]
    cursor = _Cursor(rows)
    backend, opened = _backend(cursor)
    query = (
        QueryBuilder("gas", "cumulative_total_dm3")
        .range(local(2023, 6, 14, 23), local(2023, 6, 15, 3), HOUR)
        .aggregate_with("max")
        .interpolate()
        .take_difference()
        .build()
    )

    samples = backend.fetch(query)

    assert opened[0].timeout == 12
    assert cursor.executed[0][1][2] == "1 hour"
    assert [sample.time for sample in samples] == [local(2023, 6, 15, hour) for hour in range(3)]
    assert [sample.value for sample in samples] == pytest.approx([200, 150, 150])
    assert samples[0].time.tzinfo is not None


def test_first_calendar_bucket_is_stamped_with_range_start() -> None:
    rows = [
        SimpleNamespace(bucket_utc=datetime(2022, 11, 30, 23), value=500),
        SimpleNamespace(bucket_utc=datetime(2022, 12, 31, 23), value=900),
    ]
    backend, _ = _backend(_Cursor(rows))
    query = (
        QueryBuilder("power", "cumulative_from_network_wh")
        .range(local(2022, 12, 31), local(2024, 1, 1), MONTH)
        .aggregate_with("max")
        .take_difference()
        .build()
    )

    samples = backend.fetch(query)

    assert [(sample.time, sample.value) for sample in samples] == [(local(2023, 1, 1), 400.0)]


def test_last_time_and_profile() -> None:
    backend, _ = _backend(_Cursor([SimpleNamespace(last_created=datetime(2024, 3, 10, 6, 30))]))
    assert backend.last_time("water", "usage_dl", Bucket(30, "d")) == datetime(2024, 3, 10, 6, 30, tzinfo=timezone.utc)

    backend, _ = _backend(_Cursor([SimpleNamespace(last_created=None)]))
    assert backend.last_time("water", "usage_dl", Bucket(30, "d")) is None

    rows = [SimpleNamespace(hour=12, minute=0, value=850), SimpleNamespace(hour=12, minute=15, value=None)]
    backend, _ = _backend(_Cursor(rows))
    assert backend.time_of_day_profile(
        "generation", "generation_wh", local(2024, 3, 3), local(2024, 3, 10), Bucket(15, "m"), "mean"
    ) == [(12, 0, 850.0)]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (pyodbc.OperationalError("HYT00", "[HYT00] Query timeout expired"), BackendTimeout),
        (pyodbc.OperationalError("08001", "could not connect"), BackendUnavailable),
        (pyodbc.ProgrammingError("42P01", "relation does not exist"), BackendUnavailable),
    ],
)
def test_driver_errors_are_mapped(error: Exception, expected: type) -> None:
    backend, _ = _backend(_Cursor([], error=error))

    with pytest.raises(expected):
        backend.last_time("water", "usage_dl", Bucket(30, "d"))
