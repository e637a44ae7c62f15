from __future__ import annotations

from datetime import datetime
from typing import Any

from meterboard.api.periods import Bucket
from meterboard.api.query_builder import IDENTIFIER, WindowedQuery

_AGGREGATES = {
    "max": "MAX(value)",
    "min": "MIN(value)",
    "mean": "AVG(value)",
    "sum": "SUM(value)",
    "count": "COUNT(*)",
    "last": "last(value, created)",
}
_PROFILE_FUNCTIONS = {"mean": "AVG", "max": "MAX"}


def _identifier(value: str) -> str:
    if not IDENTIFIER.match(value):
        raise ValueError(f"Invalid identifier: {value!r}")
    return value


def build_windowed_query(query: WindowedQuery, timezone_name: str) -> tuple[str, list[Any]]:
    column = _identifier(query.field)
    table = _identifier(query.measurement)
    source = f"""
                SELECT created, {column} AS value
                FROM {table}
                WHERE created >= CAST(? AS timestamptz) AND created < CAST(? AS timestamptz)"""
    params: list[Any] = [query.start.isoformat(), query.stop.isoformat()]
    if query.prime_lookback is not None and query.prime_start() < query.start:
        # Newest reading before the range, stamped at the range start.
        source += f"""
                UNION ALL
                (
                    SELECT CAST(? AS timestamptz) AS created, {column} AS value
                    FROM {table}
                    WHERE created >= CAST(? AS timestamptz) AND created < CAST(? AS timestamptz)
                      AND {column} IS NOT NULL
                    ORDER BY created DESC
                    LIMIT 1
                )"""
        params += [query.start.isoformat(), query.prime_start().isoformat(), query.start.isoformat()]
    sql = f"""
            WITH source AS ({source}
            ),
            bucketed AS (
                SELECT
                    time_bucket(CAST(? AS interval), created, ?, CAST(? AS timestamptz)) AS bucket,
                    {_AGGREGATES[query.aggregate]} AS value
                FROM source
                GROUP BY 1
            )
            SELECT bucket AT TIME ZONE 'UTC' AS bucket_utc, value
            FROM bucketed
            ORDER BY bucket_utc ASC
            """
    params += [query.every.sql(), timezone_name, query.every.floor(query.start).isoformat()]
    return sql, params


def build_last_time_query(measurement: str, field: str, since: datetime) -> tuple[str, list[Any]]:
    sql = f"""
            SELECT MAX(created) AT TIME ZONE 'UTC' AS last_created
            FROM {_identifier(measurement)}
            WHERE created >= CAST(? AS timestamptz) AND {_identifier(field)} IS NOT NULL
            """
    return sql, [since.isoformat()]


def build_profile_query(
    measurement: str,
    field: str,
    start: datetime,
    stop: datetime,
    grid: Bucket,
    function: str,
    timezone_name: str,
) -> tuple[str, list[Any]]:
    if function not in _PROFILE_FUNCTIONS:
        raise ValueError(f"Unsupported profile function: {function!r}")
    if grid.unit != "m":
        raise ValueError("Profile grid must be expressed in minutes")
    sql = f"""
            WITH local_samples AS (
                SELECT created AT TIME ZONE ? AS local_created, {_identifier(field)} AS value
                FROM {_identifier(measurement)}
                WHERE created >= CAST(? AS timestamptz) AND created < CAST(? AS timestamptz)
            )
            SELECT
                CAST(EXTRACT(HOUR FROM local_created) AS integer) AS hour,
                CAST(EXTRACT(MINUTE FROM local_created) AS integer) AS minute,
                {_PROFILE_FUNCTIONS[function]}(value) AS value
            FROM local_samples
            WHERE CAST(EXTRACT(MINUTE FROM local_created) AS integer) % {int(grid.amount)} = 0
              AND EXTRACT(SECOND FROM local_created) = 0
            GROUP BY 1, 2
            ORDER BY 1, 2
            """
    return sql, [timezone_name, start.isoformat(), stop.isoformat()]
