from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from meterboard.api.errors import InvalidParameter


class MeasurementKind(Enum):
    CUMULATIVE_COUNTER = "cumulative_counter"
    INSTANTANEOUS_SUMMABLE = "instantaneous_summable"
    EVENT_COUNT = "event_count"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricSpec:
    name: str
    measurement: str
    field: str
    kind: MeasurementKind
    divisor: float = 1.0
    tick_volume: float = 1.0
    interpolate: bool = False


@dataclass(frozen=True)
class TemperatureSensor:
    label: str
    measurement: str
    field: str
    divisor: float = 10.0


METRICS: dict[str, MetricSpec] = {
    "gas": MetricSpec(
        name="gas",
        measurement="gas",
        field="cumulative_total_dm3",
        kind=MeasurementKind.CUMULATIVE_COUNTER,
        divisor=1000.0,
        # The gas meter does not report every interval.
        interpolate=True,
    ),
    "stroom": MetricSpec(
        name="stroom",
        measurement="power",
        field="cumulative_from_network_wh",
        kind=MeasurementKind.CUMULATIVE_COUNTER,
        divisor=1000.0,
    ),
    "back_delivery": MetricSpec(
        name="back_delivery",
        measurement="power",
        field="cumulative_to_network_wh",
        kind=MeasurementKind.CUMULATIVE_COUNTER,
        divisor=1000.0,
    ),
    "generation": MetricSpec(
        name="generation",
        measurement="generation",
        field="generation_wh",
        kind=MeasurementKind.INSTANTANEOUS_SUMMABLE,
    ),
    "water": MetricSpec(
        name="water",
        measurement="water",
        field="usage_dl",
        kind=MeasurementKind.EVENT_COUNT,
        divisor=10.0,
        # One pulse of the water meter is one litre.
        tick_volume=10.0,
    ),
}

INDOOR_SENSORS = (
    TemperatureSensor("huiskamer", "temperatures", "huiskamer"),
    TemperatureSensor("tuinkamer", "temperatures", "tuinkamer"),
    TemperatureSensor("zolder", "temperatures", "zolder"),
)
OUTDOOR_SENSORS = (TemperatureSensor("buiten", "weather", "temperature"),)

TEMPERATURE_LOCATIONS: dict[str, tuple[TemperatureSensor, ...]] = {
    "inside": INDOOR_SENSORS,
    "outside": OUTDOOR_SENSORS,
    "all": INDOOR_SENSORS + OUTDOOR_SENSORS,
}

POWER_MEASUREMENT = "power"
POWER_CURRENT_FIELD = "current"
POWER_GENERATION_FIELD = "generation"
POWER_DIVISOR = 1000.0


def get_metric(field: str) -> MetricSpec:
    try:
        return METRICS[field]
    except KeyError:
        raise InvalidParameter(f"Unknown field: {field}") from None


def get_temperature_sensors(location: str) -> tuple[TemperatureSensor, ...]:
    try:
        return TEMPERATURE_LOCATIONS[location]
    except KeyError:
        raise InvalidParameter(f"Unknown temperature location: {location}") from None
