"""
Unit tests for heating state inference.

Covers the power gate, the explicit heating field and the temperature fallback.
"""

import pytest

from tesy_bridge.heating import infer_state
from tesy_bridge.structs import DeviceStatus, HeaterState


class TestPowerGate:
    """A heater that is not on is always INACTIVE"""

    def test_power_off_is_inactive_even_when_heating(self):
        """Test that power off wins over an explicit heating flag"""
        status = DeviceStatus(current_temperature=15.0, target_temperature=25.0, power_on=False, heating_on=True)

        assert infer_state(status) is HeaterState.INACTIVE

    def test_unknown_power_is_inactive(self):
        """Test that a missing status field counts as off"""
        status = DeviceStatus(current_temperature=15.0, target_temperature=25.0, heating_on=True)

        assert infer_state(status) is HeaterState.INACTIVE


class TestExplicitHeatingField:
    """The explicit heating field wins over the temperatures"""

    def test_heating_on_with_target_below_current(self):
        """Test heating=on reports HEATING although the room is warmer than target"""
        status = DeviceStatus(current_temperature=25.0, target_temperature=18.0, power_on=True, heating_on=True)

        assert infer_state(status) is HeaterState.HEATING

    def test_heating_off_with_target_far_above_current(self):
        """Test heating=off reports IDLE although the room is much colder"""
        status = DeviceStatus(current_temperature=12.0, target_temperature=25.0, power_on=True, heating_on=False)

        assert infer_state(status) is HeaterState.IDLE


class TestTemperatureFallback:
    """Without the heating field the 0.5 °C threshold decides"""

    @pytest.mark.parametrize(
        ("current", "target", "expected"),
        [
            (20.0, 20.5, HeaterState.HEATING),
            (20.0, 20.25, HeaterState.IDLE),
            (20.0, 19.0, HeaterState.IDLE),
            (None, 0.5, HeaterState.HEATING),
            (None, None, HeaterState.IDLE),
            (18.0, None, HeaterState.IDLE),
        ],
    )
    def test_threshold(self, current, target, expected):
        """Test inclusive 0.5 threshold with missing temperatures counted as 0"""
        status = DeviceStatus(current_temperature=current, target_temperature=target, power_on=True)

        assert infer_state(status) is expected


class TestDirectoryStateParsing:
    """DeviceStatus.from_directory_state feeds the inference"""

    def test_on_off_values_are_case_insensitive(self):
        """Test ON/On/on all parse as on"""
        for value in ("on", "ON", "On"):
            status = DeviceStatus.from_directory_state({"status": value, "heating": value})
            assert status.power_on is True
            assert status.heating_on is True

    def test_absent_heating_is_none_not_false(self):
        """Test a missing heating key stays distinguishable from off"""
        status = DeviceStatus.from_directory_state({"status": "on", "temp": "22", "current_temp": "19.5"})

        assert status.heating_on is None
        assert status.target_temperature == 22.0
        assert status.current_temperature == 19.5
        assert infer_state(status) is HeaterState.HEATING

    def test_non_numeric_temperatures_are_dropped(self):
        """Test garbage temperatures parse as missing"""
        status = DeviceStatus.from_directory_state({"status": "off", "temp": "n/a", "current_temp": None})

        assert status.target_temperature is None
        assert status.current_temperature is None
        assert status.power_on is False
