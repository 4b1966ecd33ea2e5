"""In-process accessory layer.

Each heater is exposed as one heater/cooler accessory with four
characteristics. Bindings keep a stable uuid derived from the device id, so a
renamed heater keeps its accessory, and their identity is cached to YAML so
accessories survive restarts before the first discovery pass completes.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from tesy_bridge.const import DEFAULT_MAX_TEMP, DEFAULT_MIN_TEMP, MANUFACTURER, TEMP_STEP
from tesy_bridge.exceptions import DeviceNotFoundError
from tesy_bridge.logging_abstraction import get_logger
from tesy_bridge.structs import Characteristic, DeviceRecord, HeaterState, SetHandler

logger = get_logger(__name__)

ACCESSORY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "tesy-bridge")
SETTABLE = frozenset({Characteristic.ACTIVE, Characteristic.HEATING_THRESHOLD_TEMPERATURE})
DEFAULT_FIRMWARE = "0.0.0"


def accessory_uuid(device_id: str) -> str:
    """Stable accessory uuid for a device id."""
    return str(uuid.uuid5(ACCESSORY_NAMESPACE, f"tesy-{device_id}"))


class AccessoryEvent(StrEnum):
    REGISTERED = "registered"
    UPDATED = "updated"
    REMOVED = "removed"
    VALUE = "value"


class AccessoryBinding(BaseModel):
    """One accessory bound to one heater."""

    uuid: str
    device_id: str
    display_name: str
    manufacturer: str = MANUFACTURER
    model: str
    serial_number: str
    firmware_revision: str = DEFAULT_FIRMWARE
    values: dict[Characteristic, float | int | None] = Field(
        default_factory=lambda: {Characteristic.CURRENT_HEATER_COOLER_STATE: int(HeaterState.INACTIVE)},
    )

    @classmethod
    def from_record(cls, record: DeviceRecord) -> AccessoryBinding:
        return cls(
            uuid=accessory_uuid(record.id),
            device_id=record.id,
            display_name=record.display_name,
            model=record.model,
            serial_number=record.serial_number,
            firmware_revision=record.firmware_version or DEFAULT_FIRMWARE,
        )

    def apply_record(self, record: DeviceRecord) -> None:
        self.display_name = record.display_name
        self.model = record.model
        self.serial_number = record.serial_number
        self.firmware_revision = record.firmware_version or DEFAULT_FIRMWARE

    def cache_entry(self) -> dict[str, str]:
        return self.model_dump(exclude={"values"})


AccessoryObserver = Callable[[AccessoryEvent, AccessoryBinding, Characteristic | None, object], Awaitable[None]]


class AccessoryRegistry:
    """Registry of accessory bindings keyed by device id."""

    lp: str = "accessories:"

    def __init__(
        self,
        cache_path: Path | None = None,
        *,
        min_temp: float = DEFAULT_MIN_TEMP,
        max_temp: float = DEFAULT_MAX_TEMP,
    ) -> None:
        self.cache_path = cache_path
        self.min_temp = min_temp
        self.max_temp = max_temp
        self.temp_step = TEMP_STEP
        self.bindings: dict[str, AccessoryBinding] = {}
        self._set_handlers: dict[Characteristic, SetHandler] = {}
        self._observers: list[AccessoryObserver] = []

    def __contains__(self, device_id: object) -> bool:
        return device_id in self.bindings

    def __len__(self) -> int:
        return len(self.bindings)

    def get(self, device_id: str) -> AccessoryBinding | None:
        return self.bindings.get(device_id)

    def find_by_uuid(self, accessory_id: str) -> AccessoryBinding | None:
        return next((b for b in self.bindings.values() if b.uuid == accessory_id), None)

    def add_observer(self, observer: AccessoryObserver) -> None:
        self._observers.append(observer)

    def set_handler(self, characteristic: Characteristic, handler: SetHandler) -> None:
        """Install the handler invoked when a controller writes ``characteristic``."""
        if characteristic not in SETTABLE:
            msg = f"{characteristic} is read-only"
            raise ValueError(msg)
        self._set_handlers[characteristic] = handler

    async def _notify(
        self,
        event: AccessoryEvent,
        binding: AccessoryBinding,
        characteristic: Characteristic | None = None,
        value: object = None,
    ) -> None:
        for observer in list(self._observers):
            try:
                await observer(event, binding, characteristic, value)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s observer failed on %s for %s", self.lp, event.value, binding.display_name)

    async def register(self, record: DeviceRecord) -> AccessoryBinding:
        """Create a binding for a newly discovered heater."""
        lp = f"{self.lp}register:"
        binding = AccessoryBinding.from_record(record)
        self.bindings[record.id] = binding
        logger.info("%s Adding new accessory: %s", lp, record.display_name, extra={"device_id": record.id})
        self.save_cache()
        await self._notify(AccessoryEvent.REGISTERED, binding)
        return binding

    async def update_binding(self, record: DeviceRecord) -> AccessoryBinding:
        """Refresh name and metadata of an existing binding in place."""
        lp = f"{self.lp}update:"
        binding = self.bindings.get(record.id)
        if binding is None:
            raise DeviceNotFoundError(record.id)
        if binding.display_name != record.display_name:
            logger.info(
                "%s Updating accessory name from '%s' to '%s'",
                lp,
                binding.display_name,
                record.display_name,
            )
        else:
            logger.debug("%s Restoring existing accessory: %s", lp, record.display_name)
        binding.apply_record(record)
        self.save_cache()
        await self._notify(AccessoryEvent.UPDATED, binding)
        return binding

    async def unregister(self, device_id: str) -> AccessoryBinding | None:
        lp = f"{self.lp}unregister:"
        binding = self.bindings.pop(device_id, None)
        if binding is None:
            return None
        logger.info("%s Removing accessory: %s", lp, binding.display_name, extra={"device_id": device_id})
        self.save_cache()
        await self._notify(AccessoryEvent.REMOVED, binding)
        return binding

    def get_value(self, device_id: str, characteristic: Characteristic) -> float | int | None:
        binding = self.bindings.get(device_id)
        if binding is None:
            return None
        return binding.values.get(characteristic)

    async def update_value(self, device_id: str, characteristic: Characteristic, value: float | int) -> None:
        """Write a characteristic value pushed from the device side."""
        binding = self.bindings.get(device_id)
        if binding is None:
            raise DeviceNotFoundError(device_id)
        binding.values[characteristic] = value
        await self._notify(AccessoryEvent.VALUE, binding, characteristic, value)

    async def set_value(self, device_id: str, characteristic: Characteristic, value: object) -> None:
        """Handle a write from a controller by routing it to the installed set handler.

        Errors raised by the handler (e.g. ``QueueFullError``) propagate to
        the caller.
        """
        lp = f"{self.lp}set:"
        if device_id not in self.bindings:
            raise DeviceNotFoundError(device_id)
        handler = self._set_handlers.get(characteristic)
        if handler is None:
            msg = f"{characteristic} is not settable"
            raise ValueError(msg)
        logger.debug("%s %s %s <- %s", lp, device_id, characteristic.value, value)
        await handler(device_id, value)

    def load_cache(self) -> int:
        """Restore bindings from the accessory cache. Returns how many were loaded."""
        lp = f"{self.lp}load_cache:"
        if self.cache_path is None:
            return 0
        try:
            with self.cache_path.open() as f:
                data: Any = yaml.safe_load(f)
        except FileNotFoundError:
            logger.debug("%s No accessory cache at %s", lp, self.cache_path)
            return 0
        except (OSError, yaml.YAMLError) as e:
            logger.warning("%s Failed to read accessory cache %s: %s", lp, self.cache_path, e)
            return 0

        if not isinstance(data, list):
            if data is not None:
                logger.warning("%s Accessory cache %s is not a list, ignoring", lp, self.cache_path)
            return 0

        loaded = 0
        for item in data:
            try:
                binding = AccessoryBinding.model_validate(item)
            except ValidationError as e:
                logger.warning("%s Skipping invalid cached accessory: %s", lp, e)
                continue
            self.bindings[binding.device_id] = binding
            loaded += 1
            logger.info("%s Configuring cached accessory: %s", lp, binding.display_name)
        return loaded

    def save_cache(self) -> None:
        lp = f"{self.lp}save_cache:"
        if self.cache_path is None:
            return
        entries = [b.cache_entry() for b in self.bindings.values()]
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            with self.cache_path.open("w") as f:
                _ = f.write(yaml.safe_dump(entries, sort_keys=False))
        except OSError as e:
            logger.warning("%s Failed to write accessory cache %s: %s", lp, self.cache_path, e)
