"""Core data structures and typing protocols for the Tesy bridge."""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable, Mapping
from enum import IntEnum, StrEnum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from tesy_bridge.const import DEFAULT_MODEL


class HeaterState(IntEnum):
    """CurrentHeaterCoolerState values exposed to the accessory layer."""

    INACTIVE = 0
    IDLE = 1
    HEATING = 2


class ActiveState(IntEnum):
    """Active characteristic values."""

    INACTIVE = 0
    ACTIVE = 1


class SessionState(StrEnum):
    """Broker session connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class Characteristic(StrEnum):
    """Accessory characteristics mirrored for every heater."""

    ACTIVE = "active"
    CURRENT_TEMPERATURE = "current_temperature"
    HEATING_THRESHOLD_TEMPERATURE = "heating_threshold_temperature"
    CURRENT_HEATER_COOLER_STATE = "current_heater_cooler_state"


def parse_temperature(value: object) -> float | None:
    """Parse a directory or telemetry temperature into a float.

    Accepts numbers and numeric strings. Returns None for anything that is
    missing, non-numeric, or not finite.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        temp = float(value)
    elif isinstance(value, str):
        try:
            temp = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(temp):
        return None
    return temp


def parse_on_off(value: object) -> bool | None:
    """Parse an ``on``/``off`` flag case-insensitively. None stays None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().casefold() == "on"


class DeviceRecord(BaseModel):
    """A heater as known from the cloud directory.

    ``id`` is the stable identity across renames; ``mac_address`` is the
    routing key for broker topics.
    """

    id: str
    mac_address: str
    token: str = ""
    model: str = DEFAULT_MODEL
    firmware_version: str | None = None
    display_name: str

    @property
    def serial_number(self) -> str:
        return f"{self.id} ({self.mac_address})"


class DeviceStatus(BaseModel):
    """Snapshot of a heater's state.

    ``heating_on`` is None when the source did not carry the field, which is
    distinct from an explicit ``off``.
    """

    current_temperature: float | None = None
    target_temperature: float | None = None
    power_on: bool | None = None
    heating_on: bool | None = None

    @classmethod
    def from_directory_state(cls, state: Mapping[str, Any]) -> DeviceStatus:
        """Build a status from the ``state`` object of a directory entry."""
        return cls(
            current_temperature=parse_temperature(state.get("current_temp")),
            target_temperature=parse_temperature(state.get("temp")),
            power_on=parse_on_off(state.get("status")),
            heating_on=parse_on_off(state.get("heating")),
        )


class TelemetryPayload(BaseModel):
    """Partial state pushed by a heater on ``setTempStatistic``."""

    current_temperature: float | None = None
    target_temperature: float | None = None
    heating: bool | None = None
    status: bool | None = None
    has_heating: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> TelemetryPayload:
        return cls(
            current_temperature=parse_temperature(payload.get("currentTemp")),
            target_temperature=parse_temperature(payload.get("target")),
            heating=parse_on_off(payload.get("heating")),
            status=parse_on_off(payload.get("status")),
            has_heating="heating" in payload,
        )


class DirectoryEntry(BaseModel):
    """One device from a directory listing."""

    record: DeviceRecord
    status: DeviceStatus


class DirectoryListing(BaseModel):
    """Parsed directory response, keyed by device id."""

    entries: dict[str, DirectoryEntry] = Field(default_factory=dict)

    @property
    def no_devices(self) -> bool:
        return not self.entries

    def find_by_mac(self, mac_address: str) -> DirectoryEntry | None:
        for entry in self.entries.values():
            if entry.record.mac_address == mac_address:
                return entry
        return None


OnDelivered = Callable[[BaseException | None], None]
TelemetryHandler = Callable[[DeviceRecord, TelemetryPayload], Awaitable[None]]
SetHandler = Callable[[str, object], Awaitable[None]]


class CloudAPIProtocol(Protocol):
    """Protocol for TesyCloudAPI to avoid circular imports."""

    lp: str
    consecutive_errors: int

    async def list_devices(self) -> DirectoryListing:
        """Fetch and parse the device directory."""
        ...

    async def fetch_device_status(self, record: DeviceRecord) -> DeviceStatus:
        """Fetch the full status of one device."""
        ...

    async def close(self) -> None:
        """Close the HTTP session."""
        ...


class BrokerSessionProtocol(Protocol):
    """Protocol for BrokerSession to avoid circular imports."""

    lp: str
    state: SessionState

    def ensure_connected(self) -> None:
        """Start connecting unless a connection is already underway."""
        ...

    async def subscribe_device(self, record: DeviceRecord) -> None:
        """Track and subscribe to a device's response topics."""
        ...

    async def unsubscribe_device(self, device_id: str) -> None:
        """Forget a device's response topics."""
        ...

    async def publish(
        self,
        record: DeviceRecord,
        command: str,
        payload: Mapping[str, object],
        on_delivered: OnDelivered | None = None,
    ) -> bool:
        """Publish a command or queue it until the session is connected."""
        ...

    async def stop(self) -> None:
        """Stop the session."""
        ...
