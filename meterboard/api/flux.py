from __future__ import annotations

from datetime import datetime, timezone

from meterboard.api.periods import Bucket
from meterboard.api.query_builder import IDENTIFIER, WindowedQuery

PROFILE_FUNCTIONS = ("mean", "max")


def format_time(instant: datetime) -> str:
    utc = instant.astimezone(timezone.utc)
    if utc.microsecond:
        return utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return utc.strftime("%Y-%m-%dT%H:%M:%SZ")


def quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _identifier(value: str) -> str:
    if not IDENTIFIER.match(value):
        raise ValueError(f"Invalid identifier: {value!r}")
    return value


def script(body: str, timezone_name: str, imports: tuple[str, ...] = ()) -> str:
    packages = sorted(set(imports) | {"timezone"})
    lines = [f"import {quote(package)}" for package in packages]
    lines.append("")
    lines.append(f"option location = timezone.location(name: {quote(timezone_name)})")
    lines.append("")
    lines.append(body)
    return "\n".join(lines) + "\n"


def _source(bucket: str, start: str, stop: str, measurement: str, fields: tuple[str, ...]) -> list[str]:
    condition = " or ".join(f'r._field == "{_identifier(field)}"' for field in fields)
    if len(fields) > 1:
        condition = f"({condition})"
    return [
        f"from(bucket: {quote(bucket)})",
        f"|> range(start: {start}, stop: {stop})",
        f'|> filter(fn: (r) => r._measurement == "{_identifier(measurement)}" and {condition})',
    ]


def render_pipeline(query: WindowedQuery, bucket: str) -> str:
    start, stop = format_time(query.start), format_time(query.stop)
    head = ""
    if query.prime_lookback is not None and query.prime_start() < query.start:
        # The newest reading before the range joins the first window, so its difference has a predecessor.
        name = _identifier(query.label or query.field)
        prime = _source(bucket, format_time(query.prime_start()), start, query.measurement, (query.field,))
        prime += ["|> last()", f"|> map(fn: (r) => ({{r with _time: {start}}}))"]
        data = _source(bucket, start, stop, query.measurement, (query.field,))
        head = f"prime_{name} = " + "\n  ".join(prime) + "\n\n" + f"data_{name} = " + "\n  ".join(data) + "\n\n"
        steps = [
            f"union(tables: [prime_{name}, data_{name}])",
            f"|> range(start: {start}, stop: {stop})",
            '|> group(columns: ["_start", "_stop", "_measurement", "_field"])',
        ]
    else:
        steps = _source(bucket, start, stop, query.measurement, (query.field,))
    steps += [
        f"|> window(every: {query.every.flux()}, createEmpty: {'true' if query.create_empty else 'false'})",
        f"|> {query.aggregate}()",
        '|> duplicate(column: "_start", as: "_time")',
        "|> window(every: inf)",
    ]
    if query.interpolate or query.difference:
        steps.append("|> toFloat()")
    if query.interpolate:
        steps.append(f"|> interpolate.linear(every: {query.every.flux()})")
    if query.difference:
        steps.append("|> difference()")
        steps.append("|> map(fn: (r) => ({r with _value: if r._value > 0.0 then r._value else 0.0}))")
    if query.label:
        steps.append(f"|> yield(name: {quote(query.label)})")
    return head + "\n  ".join(steps)


def render_windowed(queries: list[WindowedQuery], bucket: str, timezone_name: str) -> str:
    imports = ("interpolate",) if any(query.interpolate for query in queries) else ()
    body = "\n\n".join(render_pipeline(query, bucket) for query in queries)
    return script(body, timezone_name, imports)


def render_last_values(bucket: str, measurement: str, fields: tuple[str, ...], lookback: Bucket, timezone_name: str) -> str:
    steps = _source(bucket, f"-{lookback.flux()}", "now()", measurement, fields)
    steps.append("|> last()")
    return script("\n  ".join(steps), timezone_name)


def render_net_series(
    bucket: str,
    measurement: str,
    minuend: str,
    subtrahend: str,
    start: datetime,
    stop: datetime,
    every: Bucket,
    timezone_name: str,
) -> str:
    steps = _source(bucket, format_time(start), format_time(stop), measurement, (minuend, subtrahend))
    steps += [
        f'|> aggregateWindow(every: {every.flux()}, fn: mean, createEmpty: false, timeSrc: "_start")',
        '|> pivot(rowKey: ["_time"], columnKey: ["_field"], valueColumn: "_value")',
        "|> group()",
        "|> map(fn: (r) => ({_time: r._time, _value: "
        f"(if exists r.{minuend} then float(v: r.{minuend}) else 0.0) - "
        f"(if exists r.{subtrahend} then float(v: r.{subtrahend}) else 0.0)}}))",
        '|> sort(columns: ["_time"])',
    ]
    return script("\n  ".join(steps), timezone_name)


def render_time_of_day_profile(
    bucket: str,
    measurement: str,
    field: str,
    start: datetime,
    stop: datetime,
    grid: Bucket,
    function: str,
    timezone_name: str,
) -> str:
    if function not in PROFILE_FUNCTIONS:
        raise ValueError(f"Unsupported profile function: {function!r}")
    if grid.unit != "m":
        raise ValueError("Profile grid must be expressed in minutes")
    steps = _source(bucket, format_time(start), format_time(stop), measurement, (field,))
    steps += [
        f"|> filter(fn: (r) => date.minute(t: r._time) % {grid.amount} == 0 and date.second(t: r._time) == 0)",
        "|> map(fn: (r) => ({r with hour: date.hour(t: r._time), minute: date.minute(t: r._time)}))",
        '|> group(columns: ["hour", "minute"])',
        f"|> {function}()",
        "|> group()",
        '|> sort(columns: ["hour", "minute"])',
    ]
    return script("\n  ".join(steps), timezone_name, ("date",))
