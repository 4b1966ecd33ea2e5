"""Heating state inference for Tesy heaters."""

from __future__ import annotations

from tesy_bridge.const import HEATING_THRESHOLD
from tesy_bridge.structs import DeviceStatus, HeaterState


def infer_state(status: DeviceStatus) -> HeaterState:
    """Derive CurrentHeaterCoolerState from a status snapshot.

    A heater that is off (or whose power is unknown) is INACTIVE. An explicit
    ``heating`` field wins over the temperatures; without it the heater counts
    as HEATING when the target is at least 0.5 degrees above the current
    temperature. Missing temperatures count as 0.
    """
    if status.power_on is not True:
        return HeaterState.INACTIVE

    if status.heating_on is not None:
        return HeaterState.HEATING if status.heating_on else HeaterState.IDLE

    current = status.current_temperature or 0.0
    target = status.target_temperature or 0.0
    if target - current >= HEATING_THRESHOLD:
        return HeaterState.HEATING
    return HeaterState.IDLE
