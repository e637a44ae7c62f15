import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from datetime import datetime, timezone

import pytest
from influxdb_client.client.flux_table import FluxRecord
from influxdb_client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError, ReadTimeoutError

from conftest import local
from meterboard.api.backends import InfluxBackend
from meterboard.api.config import Settings
from meterboard.api.errors import BackendTimeout, BackendUnavailable
from meterboard.api.periods import HOUR, Bucket
from meterboard.api.query_builder import QueryBuilder


def _record(time: datetime, value, **values) -> FluxRecord:
    return FluxRecord(table=0, values={"_time": time, "_value": value, **values})


class _Table:
    def __init__(self, records: list[FluxRecord]) -> None:
        self.records = records


class _QueryApi:
    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result or []
        self.error = error
        self.queries: list[tuple[str, str]] = []

    def query(self, query: str, org: str):
        self.queries.append((query, org))
        if self.error is not None:
            raise self.error
        return self.result


class _Client:
    def __init__(self, api: _QueryApi) -> None:
        self.api = api
        self.closed = False

    def query_api(self) -> _QueryApi:
        return self.api

    def close(self) -> None:
        self.closed = True


def _backend(api: _QueryApi) -> InfluxBackend:
    return InfluxBackend(Settings(influx_org="home", influx_bucket="readings"), client=_Client(api))


def _utc(hour: int) -> datetime:
    return datetime(2023, 6, 15, hour, tzinfo=timezone.utc)


def _gas_query():
    return QueryBuilder("gas", "cumulative_total_dm3").range(local(2023, 6, 15), local(2023, 6, 16), HOUR).aggregate_with("max").build()


def test_fetch_sorts_and_drops_nulls() -> None:
    api = _QueryApi([_Table([_record(_utc(3), 7), _record(_utc(1), None), _record(_utc(2), 5)])])

    samples = _backend(api).fetch(_gas_query())

    assert [(sample.time.hour, sample.value) for sample in samples] == [(2, 5.0), (3, 7.0)]
    assert api.queries[0][1] == "home"
    assert 'from(bucket: "readings")' in api.queries[0][0]


def test_fetch_many_demultiplexes_by_result_name() -> None:
    api = _QueryApi(
        [
            _Table([_record(_utc(1), 210, result="zolder")]),
            _Table([_record(_utc(1), 190, result="buiten"), _record(_utc(0), 185, result="buiten")]),
        ]
    )
    queries = [
        QueryBuilder(measurement, field).range(local(2023, 6, 15), local(2023, 6, 16), HOUR).aggregate_with("mean").labelled(label).build()
        for measurement, field, label in (
            ("temperatures", "huiskamer", "huiskamer"),
            ("temperatures", "zolder", "zolder"),
            ("weather", "temperature", "buiten"),
        )
    ]

    result = _backend(api).fetch_many(queries)

    assert len(api.queries) == 1
    assert result["huiskamer"] == []
    assert [sample.value for sample in result["zolder"]] == [210.0]
    assert [sample.value for sample in result["buiten"]] == [185.0, 190.0]


def test_last_values_keep_newest_per_field() -> None:
    api = _QueryApi(
        [
            _Table([_record(_utc(10), 2500, _field="current")]),
            _Table([_record(_utc(9), 700, _field="generation"), _record(_utc(10), 900, _field="generation")]),
        ]
    )

    values = _backend(api).last_values("power", ("current", "generation"), Bucket(5, "m"))

    assert values["current"].value == 2500.0
    assert values["generation"].value == 900.0


def test_last_time_is_none_without_samples() -> None:
    assert _backend(_QueryApi([])).last_time("water", "usage_dl", Bucket(30, "d")) is None


def test_profile_rows() -> None:
    api = _QueryApi([_Table([_record(None, 12.5, hour=12, minute=15), _record(None, 10.0, hour=12, minute=0)])])

    rows = _backend(api).time_of_day_profile("generation", "generation_wh", local(2024, 3, 3), local(2024, 3, 10), Bucket(15, "m"), "max")

    assert rows == [(12, 0, 10.0), (12, 15, 12.5)]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ReadTimeoutError(None, "/api/v2/query", "read timed out"), BackendTimeout),
        (MaxRetryError(None, "/api/v2/query", ReadTimeoutError(None, "/api/v2/query", "slow")), BackendTimeout),
        (MaxRetryError(None, "/api/v2/query", ProtocolError("connection reset")), BackendUnavailable),
        (ApiException(status=500, reason="Internal Server Error"), BackendUnavailable),
        (ConnectionRefusedError("refused"), BackendUnavailable),
    ],
)
def test_driver_errors_are_mapped(error: Exception, expected: type) -> None:
    with pytest.raises(expected):
        _backend(_QueryApi(error=error)).fetch(_gas_query())


def test_close_releases_the_client() -> None:
    client = _Client(_QueryApi())
    backend = InfluxBackend(Settings(influx_org="home", influx_bucket="readings"), client=client)

    backend.close()

    assert client.closed
