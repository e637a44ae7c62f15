from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from meterboard.api.backends import build_backend
from meterboard.api.cache import ResultCache
from meterboard.api.config import Settings, load_settings
from meterboard.api.errors import (
    BackendTimeout,
    BackendUnavailable,
    InvalidParameter,
    MeterboardError,
    UnsupportedQuery,
)
from meterboard.api.metrics import get_metric, get_temperature_sensors
from meterboard.api.periods import PeriodResolver, parse_int
from meterboard.api.pipeline import Sample
from meterboard.api.service import PROFILE_FUNCTIONS, MetricQueryService

logger = logging.getLogger("meterboard.app")

ERROR_STATUS: dict[type[MeterboardError], int] = {
    InvalidParameter: 400,
    UnsupportedQuery: 501,
    BackendUnavailable: 502,
    BackendTimeout: 504,
}


def configure_logging(log_dir: str | Path = "logs") -> logging.Logger:
    logs_dir = Path(log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(threadName)s] %(name)s - %(message)s")
    file_handler = TimedRotatingFileHandler(
        logs_dir / "meterboard_api.log",
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        named = logging.getLogger(logger_name)
        named.handlers.clear()
        named.propagate = True

    return logging.getLogger("meterboard")


def encode(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sample_pairs(samples: list[Sample]) -> list[list[Any]]:
    return [[sample.time.isoformat(), sample.value] for sample in samples]


def json_bytes(payload: bytes) -> Response:
    return Response(content=payload, media_type="application/json")


def parse_minutes(raw: str | None) -> int:
    if raw is None or raw == "":
        return 30
    return parse_int("minutes", raw)


def split_window(segments: list[str | None]) -> tuple[int | None, int | None, str | None]:
    # Date parts come first; the first non-numeric segment is the window and must be last.
    parts: list[int | None] = []
    window = None
    for segment in segments:
        if segment is None:
            break
        if window is not None:
            raise InvalidParameter(f"Unexpected path segment after window: {segment}")
        if not segment.lstrip("-").isdigit():
            window = segment
        elif len(parts) < 2:
            parts.append(parse_int(("month", "day")[len(parts)], segment))
        else:
            raise InvalidParameter(f"Invalid window: {segment}")
    parts += [None] * (2 - len(parts))
    return parts[0], parts[1], window


def create_app(
    settings: Settings | None = None,
    service: MetricQueryService | None = None,
    cache: ResultCache | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    if service is None:
        backend = build_backend(settings)
        logger.info("Using %s backend", backend.name)
        service = MetricQueryService(backend, PeriodResolver(settings.tzinfo))
    cache = cache or ResultCache(settings.cache_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        service.backend.close()
        logger.info("Closed %s backend", service.backend.name)

    app = FastAPI(title="Meterboard API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = service
    app.state.cache = cache

    @app.exception_handler(MeterboardError)
    async def handle_meterboard_error(request: Request, exc: MeterboardError) -> JSONResponse:
        status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    def cached(category: str, params: dict[str, Any], closed: bool, compute: Callable[[], Any]) -> Response:
        return json_bytes(cache.with_cache(category, params, lambda: encode(compute()), closed))

    @app.get("/api/usage/last")
    def get_last_usage() -> Response:
        sample = service.last_power()
        if sample is None:
            return JSONResponse(status_code=404, content={"detail": "No recent power sample found"})
        return json_bytes(encode({"timestamp": sample.time.isoformat(), "current": sample.value}))

    @app.get("/api/stroom/recent")
    def get_recent_power(minutes: str | None = None) -> Response:
        return json_bytes(encode(sample_pairs(service.recent_power(parse_minutes(minutes)))))

    @app.get("/api/water/recent")
    def get_recent_water(minutes: str | None = None) -> Response:
        return json_bytes(encode(sample_pairs(service.recent_water(parse_minutes(minutes)))))

    @app.get("/api/{field}/last_30_days")
    def get_last_30_days(field: str) -> Response:
        time_range = service.last_30_days_range(field)
        return json_bytes(encode(sample_pairs(service.series(field, time_range))))

    @app.get("/api/{field}/last_year")
    def get_last_year(field: str) -> Response:
        time_range = service.last_year_range(field)
        return json_bytes(encode(sample_pairs(service.series(field, time_range))))

    @app.get("/api/{field}/hourly/{days}")
    def get_hourly(field: str, days: str) -> Response:
        time_range = service.rolling_range(field, parse_int("days", days))
        return json_bytes(encode(sample_pairs(service.series(field, time_range))))

    @app.get("/api/temperature/{location}/{period}/{year}")
    @app.get("/api/temperature/{location}/{period}/{year}/{month}")
    @app.get("/api/temperature/{location}/{period}/{year}/{month}/{day}")
    def get_temperature(
        location: str,
        period: str,
        year: str,
        month: str | None = None,
        day: str | None = None,
    ) -> Response:
        get_temperature_sensors(location)
        params = {
            "location": location,
            "period": period,
            "year": parse_int("year", year),
            "month": parse_int("month", month),
            "day": parse_int("day", day),
        }
        time_range = service.temperature_range(period, params["year"], params["month"], params["day"])

        def compute() -> dict[str, Any]:
            return {label: sample_pairs(samples) for label, samples in service.temperature(location, time_range).items()}

        return cached("temperature", params, not service.is_open(time_range), compute)

    @app.get("/api/generation/aggregate/{fn}/day/{year}/{month}/{day}")
    def get_generation_aggregate(fn: str, year: str, month: str, day: str) -> Response:
        if fn not in PROFILE_FUNCTIONS:
            raise InvalidParameter(f"Unknown aggregate function: {fn}")
        params = {"year": parse_int("year", year), "month": parse_int("month", month), "day": parse_int("day", day)}
        time_range = service.generation_profile_range(params["year"], params["month"], params["day"])

        def compute() -> list[list[Any]]:
            return [[hour, minute, value] for hour, minute, value in service.generation_profile(time_range, fn)]

        return cached(f"generation_aggregate_{fn}", params, not service.is_open(time_range), compute)

    @app.get("/api/{field}/{period}/{year}")
    @app.get("/api/{field}/{period}/{year}/{month}")
    @app.get("/api/{field}/{period}/{year}/{month}/{day}")
    @app.get("/api/{field}/{period}/{year}/{month}/{day}/{window}")
    def get_period_series(
        field: str,
        period: str,
        year: str,
        month: str | None = None,
        day: str | None = None,
        window: str | None = None,
    ) -> Response:
        get_metric(field)
        month_number, day_number, window = split_window([month, day, window])
        params = {
            "field": field,
            "period": period,
            "year": parse_int("year", year),
            "month": month_number,
            "day": day_number,
            "window": window,
        }
        time_range = service.period_range(field, period, params["year"], params["month"], params["day"], window)
        return cached(
            "period",
            params,
            not service.is_open(time_range),
            lambda: sample_pairs(service.series(field, time_range)),
        )

    return app
