"""State reconciler.

The single merge point for device state coming from the periodic directory
poll and from pushed broker telemetry, and the path accessory writes take on
their way to the broker. Only values that differ from what the accessory
layer last received are written.
"""

from __future__ import annotations

from collections.abc import Iterable

from tesy_bridge.accessories import AccessoryRegistry
from tesy_bridge.const import CMD_ON_OFF, CMD_SET_MODE, CMD_SET_TEMP, DEFAULT_MAX_TEMP, DEFAULT_MIN_TEMP
from tesy_bridge.correlation import correlation_context
from tesy_bridge.exceptions import DeviceNotFoundError, TesyBridgeError
from tesy_bridge.heating import infer_state
from tesy_bridge.logging_abstraction import get_logger
from tesy_bridge.metrics import record_accessory_update
from tesy_bridge.structs import (
    ActiveState,
    BrokerSessionProtocol,
    Characteristic,
    CloudAPIProtocol,
    DeviceRecord,
    DeviceStatus,
    TelemetryPayload,
)

logger = get_logger(__name__)


class StateReconciler:
    """Merges polled and pushed state into the accessory layer."""

    lp: str = "reconciler:"

    def __init__(
        self,
        accessories: AccessoryRegistry,
        session: BrokerSessionProtocol,
        cloud: CloudAPIProtocol,
        *,
        min_temp: float = DEFAULT_MIN_TEMP,
        max_temp: float = DEFAULT_MAX_TEMP,
    ) -> None:
        self.accessories = accessories
        self.session = session
        self.cloud = cloud
        self.min_temp = min_temp
        self.max_temp = max_temp
        self.records: dict[str, DeviceRecord] = {}
        self.statuses: dict[str, DeviceStatus] = {}

    def install_handlers(self) -> None:
        """Route accessory writes for Active and the target temperature here."""
        self.accessories.set_handler(Characteristic.ACTIVE, self._on_set_active)
        self.accessories.set_handler(Characteristic.HEATING_THRESHOLD_TEMPERATURE, self._on_set_target)

    def track(self, record: DeviceRecord) -> None:
        self.records[record.id] = record

    def forget(self, device_id: str) -> None:
        """Drop everything known about a removed device."""
        _ = self.records.pop(device_id, None)
        _ = self.statuses.pop(device_id, None)

    def _in_bounds(self, value: float) -> bool:
        return self.min_temp <= value <= self.max_temp

    async def _apply(
        self,
        record: DeviceRecord,
        characteristic: Characteristic,
        value: float | int,
        source: str,
    ) -> bool:
        """Write one characteristic if it changed. Returns True when written."""
        old = self.accessories.get_value(record.id, characteristic)
        if old is not None and old == value:
            return False
        await self.accessories.update_value(record.id, characteristic, value)
        record_accessory_update(characteristic.value, source)
        logger.debug(
            "%s %s: [%s] %s %s -> %s",
            self.lp,
            record.display_name,
            source,
            characteristic.value,
            old,
            value,
        )
        return True

    async def apply_poll(self, record: DeviceRecord, status: DeviceStatus) -> None:
        """Apply a full snapshot from the directory."""
        if record.id not in self.accessories:
            logger.debug("%s no accessory for %s, skipping snapshot", self.lp, record.display_name)
            return
        self.track(record)
        self.statuses[record.id] = status

        current = status.current_temperature
        if current is not None and self._in_bounds(current):
            _ = await self._apply(record, Characteristic.CURRENT_TEMPERATURE, current, "poll")
        target = status.target_temperature
        if target is not None and self._in_bounds(target):
            _ = await self._apply(record, Characteristic.HEATING_THRESHOLD_TEMPERATURE, target, "poll")

        if status.power_on is not None:
            active = ActiveState.ACTIVE if status.power_on else ActiveState.INACTIVE
            old_active = self.accessories.get_value(record.id, Characteristic.ACTIVE)
            if await self._apply(record, Characteristic.ACTIVE, int(active), "poll"):
                logger.info(
                    "%s %s: Active %s -> %s",
                    self.lp,
                    record.display_name,
                    "ON" if old_active else "OFF",
                    "ON" if active else "OFF",
                )

        _ = await self._apply(record, Characteristic.CURRENT_HEATER_COOLER_STATE, int(infer_state(status)), "poll")

    async def poll_all(self, records: Iterable[DeviceRecord]) -> None:
        """One poll tick: a single directory call applied to every known device.

        A failed call is logged and leaves every device's state as it was.
        """
        lp = f"{self.lp}poll:"
        records = list(records)
        if not records:
            return
        with correlation_context():
            try:
                listing = await self.cloud.list_devices()
            except TesyBridgeError as e:
                logger.debug("%s poll skipped: %s", lp, e)
                return
            for record in records:
                entry = listing.find_by_mac(record.mac_address)
                if entry is None:
                    logger.error("%s Error fetching status for %s: device not listed", lp, record.display_name)
                    continue
                await self.apply_poll(record, entry.status)

    async def apply_telemetry(self, record: DeviceRecord, payload: TelemetryPayload) -> None:
        """Apply a pushed ``setTempStatistic`` payload.

        Temperatures are applied directly. The heater state is never inferred
        from the push itself: a ``heating`` key triggers a full status fetch
        and the state is inferred from that snapshot.
        """
        lp = f"{self.lp}push:"
        if record.id not in self.accessories:
            return
        self.track(record)

        current = payload.current_temperature
        if current is not None and self._in_bounds(current):
            _ = await self._apply(record, Characteristic.CURRENT_TEMPERATURE, current, "push")

        target = payload.target_temperature
        if target is not None and target > 0 and self._in_bounds(target):
            _ = await self._apply(record, Characteristic.HEATING_THRESHOLD_TEMPERATURE, target, "push")

        if not payload.has_heating:
            return
        try:
            status = await self.cloud.fetch_device_status(record)
        except TesyBridgeError as e:
            logger.debug("%s status fetch for %s failed: %s", lp, record.display_name, e)
            return
        if record.id not in self.accessories:
            return
        self.statuses[record.id] = status
        _ = await self._apply(record, Characteristic.CURRENT_HEATER_COOLER_STATE, int(infer_state(status)), "push")

    def _record_for(self, device_id: str) -> DeviceRecord:
        record = self.records.get(device_id)
        if record is None:
            raise DeviceNotFoundError(device_id)
        return record

    async def set_active(self, device_id: str, value: object) -> bool:
        """Turn a heater on or off. Returns True when sent immediately, False when queued."""
        lp = f"{self.lp}set_active:"
        record = self._record_for(device_id)
        new_value = "off" if value in (0, False, "0", "off") else "on"
        with correlation_context():
            logger.info("%s %s: Setting active to %s", lp, record.display_name, new_value)
            sent = await self.session.publish(record, CMD_ON_OFF, {"status": new_value})
            logger.info(
                "%s %s: Active status %s %s",
                lp,
                record.display_name,
                "changed to" if sent else "queued as",
                new_value,
            )
        return sent

    def clamp(self, value: float) -> float:
        return min(max(value, self.min_temp), self.max_temp)

    async def set_target_temperature(self, device_id: str, value: object) -> bool:
        """Set the target temperature: manual mode first, then the clamped value.

        If switching to manual mode fails, the temperature is not sent and the
        error propagates.
        """
        lp = f"{self.lp}set_target:"
        record = self._record_for(device_id)
        try:
            requested = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError) as e:
            msg = f"invalid target temperature {value!r}"
            raise ValueError(msg) from e
        target = self.clamp(requested)

        with correlation_context():
            logger.info("%s %s: Setting target temperature to %s°C", lp, record.display_name, target)
            try:
                _ = await self.session.publish(record, CMD_SET_MODE, {"mode": "manual"})
            except TesyBridgeError:
                logger.exception("%s %s: Error setting mode to manual", lp, record.display_name)
                raise
            logger.debug("%s %s: Mode set to manual", lp, record.display_name)
            sent = await self.session.publish(record, CMD_SET_TEMP, {"temp": target})
            logger.info(
                "%s %s: Temperature %s %s°C",
                lp,
                record.display_name,
                "set to" if sent else "queued as",
                target,
            )
        return sent

    async def _on_set_active(self, device_id: str, value: object) -> None:
        _ = await self.set_active(device_id, value)

    async def _on_set_target(self, device_id: str, value: object) -> None:
        _ = await self.set_target_temperature(device_id, value)
