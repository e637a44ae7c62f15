import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from meterboard.api import units
from meterboard.api.errors import InvalidParameter
from meterboard.api.metrics import MeasurementKind, get_metric, get_temperature_sensors


def test_display_conversion_of_stored_units() -> None:
    # Counters store thousandths, temperatures tenths and water deciliters.
    assert units.convert(get_metric("stroom"), 1234) == pytest.approx(1.234)
    assert units.to_display(215, get_temperature_sensors("outside")[0].divisor) == pytest.approx(21.5)
    assert units.to_display(57, get_metric("water").divisor) == pytest.approx(5.7)


def test_convert_uses_metric_divisor() -> None:
    assert units.convert(get_metric("gas"), 2500) == pytest.approx(2.5)
    assert units.convert(get_metric("generation"), 812) == pytest.approx(812.0)


def test_water_counts_are_scaled_by_tick_volume() -> None:
    # Three meter pulses of ten deciliters each.
    assert units.convert(get_metric("water"), 3) == pytest.approx(3.0)


def test_metric_catalogue_kinds() -> None:
    assert get_metric("gas").kind is MeasurementKind.CUMULATIVE_COUNTER
    assert get_metric("gas").interpolate
    assert get_metric("stroom").field == "cumulative_from_network_wh"
    assert get_metric("back_delivery").field == "cumulative_to_network_wh"
    assert get_metric("generation").kind is MeasurementKind.INSTANTANEOUS_SUMMABLE
    assert get_metric("water").kind is MeasurementKind.EVENT_COUNT


def test_unknown_metric_is_invalid_parameter() -> None:
    with pytest.raises(InvalidParameter):
        get_metric("electricity")


def test_temperature_locations() -> None:
    assert [sensor.label for sensor in get_temperature_sensors("inside")] == ["huiskamer", "tuinkamer", "zolder"]
    assert [sensor.label for sensor in get_temperature_sensors("outside")] == ["buiten"]
    assert len(get_temperature_sensors("all")) == 4
    with pytest.raises(InvalidParameter):
        get_temperature_sensors("garage")
