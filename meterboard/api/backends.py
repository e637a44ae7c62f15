from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from influxdb_client import InfluxDBClient
from influxdb_client.rest import ApiException
from urllib3.exceptions import HTTPError, MaxRetryError
from urllib3.exceptions import TimeoutError as HTTPTimeoutError

from meterboard.api import flux
from meterboard.api.config import Settings
from meterboard.api.errors import BackendTimeout, BackendUnavailable, UnsupportedQuery
from meterboard.api.periods import Bucket
from meterboard.api.pipeline import Sample, drop_nulls
from meterboard.api.query_builder import WindowedQuery

logger = logging.getLogger("meterboard.backends")


class Backend:
    """Interface shared by the time-series backends.

    fetch() returns one sample per bucket, stamped with the bucket start, with
    the query's interpolation, empty-bucket and difference steps applied and
    null aggregates removed.
    """

    name = "backend"

    def fetch(self, query: WindowedQuery) -> list[Sample]:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def fetch_many(self, queries: list[WindowedQuery]) -> dict[str, list[Sample]]:
        return {query.label or query.field: self.fetch(query) for query in queries}

    def last_time(self, measurement: str, field: str, lookback: Bucket) -> datetime | None:
        raise NotImplementedError

    def time_of_day_profile(
        self,
        measurement: str,
        field: str,
        start: datetime,
        stop: datetime,
        grid: Bucket,
        function: str,
    ) -> list[tuple[int, int, float]]:
        raise NotImplementedError

    def last_values(self, measurement: str, fields: tuple[str, ...], lookback: Bucket) -> dict[str, Sample]:
        raise UnsupportedQuery(f"The {self.name} backend does not store live power channels")

    def net_series(
        self,
        measurement: str,
        minuend: str,
        subtrahend: str,
        start: datetime,
        stop: datetime,
        every: Bucket,
    ) -> list[Sample]:
        raise UnsupportedQuery(f"The {self.name} backend does not store live power channels")


class InfluxBackend(Backend):
    name = "influx"

    def __init__(self, settings: Settings, client: InfluxDBClient | None = None) -> None:
        self._bucket = settings.influx_bucket
        self._org = settings.influx_org
        self._timezone = settings.timezone
        self._client = client or InfluxDBClient(
            url=settings.influx_url,
            token=settings.influx_token,
            org=settings.influx_org,
            timeout=int(settings.backend_timeout_seconds * 1000),
        )
        self._query_api = self._client.query_api()

    def close(self) -> None:
        self._client.close()

    def _query(self, query: str) -> Any:
        logger.debug("Running Flux query\n%s", query)
        try:
            return self._query_api.query(query, org=self._org)
        except HTTPTimeoutError as exc:
            raise BackendTimeout("InfluxDB query timed out") from exc
        except MaxRetryError as exc:
            if isinstance(exc.reason, HTTPTimeoutError):
                raise BackendTimeout("InfluxDB query timed out") from exc
            raise BackendUnavailable(f"InfluxDB unreachable: {exc.reason}") from exc
        except (ApiException, HTTPError, OSError) as exc:
            raise BackendUnavailable(f"InfluxDB query failed: {exc}") from exc

    def fetch(self, query: WindowedQuery) -> list[Sample]:
        tables = self._query(flux.render_windowed([query], self._bucket, self._timezone))
        samples = drop_nulls((record.get_time(), record.get_value()) for table in tables for record in table.records)
        return sorted(samples, key=lambda sample: sample.time)

    def fetch_many(self, queries: list[WindowedQuery]) -> dict[str, list[Sample]]:
        if any(query.label is None for query in queries):
            raise ValueError("Combined queries need a label per sub-query")
        tables = self._query(flux.render_windowed(queries, self._bucket, self._timezone))

        rows: dict[str, list[tuple[datetime, Any]]] = {query.label: [] for query in queries}
        for table in tables:
            for record in table.records:
                label = record.values.get("result")
                if label in rows:
                    rows[label].append((record.get_time(), record.get_value()))
        return {label: sorted(drop_nulls(found), key=lambda sample: sample.time) for label, found in rows.items()}

    def last_values(self, measurement: str, fields: tuple[str, ...], lookback: Bucket) -> dict[str, Sample]:
        tables = self._query(flux.render_last_values(self._bucket, measurement, fields, lookback, self._timezone))
        values: dict[str, Sample] = {}
        for table in tables:
            for record in table.records:
                if record.get_time() is None or record.get_value() is None:
                    continue
                current = values.get(record.get_field())
                if current is None or record.get_time() > current.time:
                    values[record.get_field()] = Sample(record.get_time(), float(record.get_value()))
        return values

    def last_time(self, measurement: str, field: str, lookback: Bucket) -> datetime | None:
        sample = self.last_values(measurement, (field,), lookback).get(field)
        return sample.time if sample else None

    def net_series(
        self,
        measurement: str,
        minuend: str,
        subtrahend: str,
        start: datetime,
        stop: datetime,
        every: Bucket,
    ) -> list[Sample]:
        query = flux.render_net_series(self._bucket, measurement, minuend, subtrahend, start, stop, every, self._timezone)
        tables = self._query(query)
        return drop_nulls((record.get_time(), record.get_value()) for table in tables for record in table.records)

    def time_of_day_profile(
        self,
        measurement: str,
        field: str,
        start: datetime,
        stop: datetime,
        grid: Bucket,
        function: str,
    ) -> list[tuple[int, int, float]]:
        query = flux.render_time_of_day_profile(
            self._bucket, measurement, field, start, stop, grid, function, self._timezone
        )
        profile = []
        for table in self._query(query):
            for record in table.records:
                if record.get_value() is None:
                    continue
                profile.append((int(record.values["hour"]), int(record.values["minute"]), float(record.get_value())))
        return sorted(profile)


def build_backend(settings: Settings) -> Backend:
    if settings.backend == "sql":
        # pyodbc needs the unixODBC system library; only load it for SQL deployments.
        from meterboard.api.sql_backend import SqlBackend

        return SqlBackend(settings)
    return InfluxBackend(settings)
