from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

import pyodbc

from meterboard.api import sql
from meterboard.api.backends import Backend
from meterboard.api.config import Settings
from meterboard.api.errors import BackendTimeout, BackendUnavailable
from meterboard.api.periods import Bucket
from meterboard.api.pipeline import Sample, apply_post_steps, drop_nulls
from meterboard.api.query_builder import WindowedQuery

logger = logging.getLogger("meterboard.sql_backend")

TIMEOUT_STATES = {"HYT00", "HYT01"}


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlBackend(Backend):
    name = "sql"

    def __init__(self, settings: Settings, connect: Callable[[], Any] | None = None) -> None:
        self._settings = settings
        self._connect = connect or self._default_connect

    def _default_connect(self) -> pyodbc.Connection:
        return pyodbc.connect(self._settings.sql_connection_string, autocommit=True)

    def _execute(self, statement: str, params: list[Any]) -> list[Any]:
        logger.debug("Running SQL query %s with %s", statement, params)
        try:
            with self._connect() as conn:
                conn.timeout = int(self._settings.backend_timeout_seconds)
                cursor = conn.cursor()
                cursor.execute(statement, *params)
                return cursor.fetchall()
        except pyodbc.OperationalError as exc:
            state = exc.args[0] if exc.args else ""
            if state in TIMEOUT_STATES:
                raise BackendTimeout("SQL query timed out") from exc
            raise BackendUnavailable(f"SQL backend unreachable: {exc}") from exc
        except pyodbc.Error as exc:
            raise BackendUnavailable(f"SQL query failed: {exc}") from exc

    def fetch(self, query: WindowedQuery) -> list[Sample]:
        statement, params = sql.build_windowed_query(query, self._settings.timezone)
        rows = self._execute(statement, params)
        # The first calendar bucket may open before the range; stamp it with the range start.
        samples = drop_nulls((max(as_utc(row.bucket_utc), query.start), row.value) for row in rows)
        samples.sort(key=lambda sample: sample.time)
        return apply_post_steps(query, samples)

    def last_time(self, measurement: str, field: str, lookback: Bucket) -> datetime | None:
        since = lookback.advance(datetime.now(timezone.utc), -1)
        statement, params = sql.build_last_time_query(measurement, field, since)
        rows = self._execute(statement, params)
        return as_utc(rows[0].last_created) if rows else None

    def time_of_day_profile(
        self,
        measurement: str,
        field: str,
        start: datetime,
        stop: datetime,
        grid: Bucket,
        function: str,
    ) -> list[tuple[int, int, float]]:
        statement, params = sql.build_profile_query(
            measurement, field, start, stop, grid, function, self._settings.timezone
        )
        rows = self._execute(statement, params)
        return [(int(row.hour), int(row.minute), float(row.value)) for row in rows if row.value is not None]
