"""Home Assistant exposure of the heater accessories.

Publishes one MQTT-discovery ``climate`` entity per accessory binding to a
local broker, mirrors characteristic values onto state topics, and routes
mode/temperature commands back into the accessory layer.
"""

from __future__ import annotations

import asyncio
import json
import re
import unicodedata
from typing import Any

import aiomqtt

from tesy_bridge.accessories import AccessoryBinding, AccessoryEvent, AccessoryRegistry
from tesy_bridge.const import HASS_BIRTH_MSG, HASS_RECONNECT_DELAY, HASS_WILL_MSG, ORIGIN_STRUCT
from tesy_bridge.exceptions import TesyBridgeError
from tesy_bridge.logging_abstraction import get_logger
from tesy_bridge.structs import ActiveState, Characteristic, HeaterState

logger = get_logger(__name__)

HVAC_ACTIONS = {
    HeaterState.INACTIVE: "off",
    HeaterState.IDLE: "idle",
    HeaterState.HEATING: "heating",
}

STATE_SUFFIX = {
    Characteristic.ACTIVE: "mode",
    Characteristic.CURRENT_TEMPERATURE: "current_temperature",
    Characteristic.HEATING_THRESHOLD_TEMPERATURE: "temperature",
    Characteristic.CURRENT_HEATER_COOLER_STATE: "action",
}


def slugify(text: str) -> str:
    """
    Convert text to a slug suitable for entity IDs.
    E.g., 'Living Room Heater' -> 'living_room_heater'
    """
    text = unicodedata.normalize("NFKD", text)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"[-\s]+", "_", text)
    return text.strip("_")


def format_state(characteristic: Characteristic, value: object) -> str:
    """Render a characteristic value as the payload of its state topic."""
    if characteristic is Characteristic.ACTIVE:
        return "heat" if value == ActiveState.ACTIVE else "off"
    if characteristic is Characteristic.CURRENT_HEATER_COOLER_STATE:
        try:
            return HVAC_ACTIONS[HeaterState(int(value))]  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return HVAC_ACTIONS[HeaterState.INACTIVE]
    return str(value)


class HassBridge:
    """Optional Home Assistant MQTT exposure."""

    lp: str = "hass:"

    def __init__(
        self,
        accessories: AccessoryRegistry,
        *,
        host: str,
        port: int = 1883,
        username: str | None = None,
        password: str | None = None,
        topic: str = "tesy_bridge",
        hass_topic: str = "homeassistant",
        status_topic: str = "homeassistant/status",
        reconnect_delay: float = HASS_RECONNECT_DELAY,
    ) -> None:
        self.accessories = accessories
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.topic = topic
        self.hass_topic = hass_topic
        self.status_topic = status_topic
        self.reconnect_delay = reconnect_delay if reconnect_delay > 0 else 5
        self.client: aiomqtt.Client | None = None
        self.start_task: asyncio.Task[None] | None = None
        self._connected = False
        accessories.add_observer(self.on_accessory_event)

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def bridge_availability_topic(self) -> str:
        return f"{self.topic}/availability/bridge"

    def _device_topic(self, kind: str, binding: AccessoryBinding, suffix: str | None = None) -> str:
        base = f"{self.topic}/{kind}/{binding.device_id}"
        return f"{base}/{suffix}" if suffix else base

    def config_topic(self, binding: AccessoryBinding) -> str:
        return f"{self.hass_topic}/climate/{binding.uuid}/config"

    def discovery_payload(self, binding: AccessoryBinding) -> dict[str, Any]:
        device_registry_struct = {
            "identifiers": [binding.uuid],
            "manufacturer": binding.manufacturer,
            "name": binding.display_name,
            "model": binding.model,
            "serial_number": binding.serial_number,
            "sw_version": binding.firmware_revision,
        }
        return {
            "default_entity_id": f"climate.{slugify(binding.display_name)}",
            "name": None,
            "unique_id": binding.uuid,
            "modes": ["off", "heat"],
            "mode_command_topic": self._device_topic("set", binding, "mode"),
            "mode_state_topic": self._device_topic("status", binding, "mode"),
            "temperature_command_topic": self._device_topic("set", binding, "temperature"),
            "temperature_state_topic": self._device_topic("status", binding, "temperature"),
            "current_temperature_topic": self._device_topic("status", binding, "current_temperature"),
            "action_topic": self._device_topic("status", binding, "action"),
            "min_temp": self.accessories.min_temp,
            "max_temp": self.accessories.max_temp,
            "temp_step": self.accessories.temp_step,
            "precision": 0.1,
            "temperature_unit": "C",
            "availability": [
                {"topic": self.bridge_availability_topic},
                {"topic": self._device_topic("availability", binding)},
            ],
            "availability_mode": "all",
            "payload_available": "online",
            "payload_not_available": "offline",
            "origin": ORIGIN_STRUCT,
            "device": device_registry_struct,
        }

    async def publish(self, topic: str, msg_data: bytes, retain: bool = False) -> bool:
        """Publish a message to the local broker."""
        lp = f"{self.lp}publish:"
        if not self._connected or self.client is None:
            return False
        try:
            _ = await self.client.publish(topic, msg_data, qos=0, retain=retain)
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s [MqttError] -> %s", lp, mqtt_err)
            self._connected = False
        else:
            return True
        return False

    async def publish_json_msg(self, topic: str, msg_data: dict[str, Any], retain: bool = False) -> bool:
        return await self.publish(topic, json.dumps(msg_data).encode(), retain=retain)

    async def announce(self, binding: AccessoryBinding) -> bool:
        """Publish discovery config, availability and current values for one accessory."""
        lp = f"{self.lp}announce:"
        if not await self.publish_json_msg(self.config_topic(binding), self.discovery_payload(binding), retain=True):
            return False
        _ = await self.publish(self._device_topic("availability", binding), b"online", retain=True)
        for characteristic, value in binding.values.items():
            if value is not None:
                _ = await self.publish_state(binding, characteristic, value)
        logger.debug("%s Announced %s", lp, binding.display_name, extra={"unique_id": binding.uuid})
        return True

    async def announce_all(self) -> int:
        announced = 0
        for binding in list(self.accessories.bindings.values()):
            if await self.announce(binding):
                announced += 1
        logger.info("%s Announced %d heater(s) to Home Assistant", self.lp, announced)
        return announced

    async def remove(self, binding: AccessoryBinding) -> bool:
        """Drop the entity: an empty retained config removes it from Home Assistant."""
        _ = await self.publish(self._device_topic("availability", binding), b"offline", retain=True)
        return await self.publish(self.config_topic(binding), b"", retain=True)

    async def publish_state(self, binding: AccessoryBinding, characteristic: Characteristic, value: object) -> bool:
        topic = self._device_topic("status", binding, STATE_SUFFIX[characteristic])
        return await self.publish(topic, format_state(characteristic, value).encode(), retain=True)

    async def on_accessory_event(
        self,
        event: AccessoryEvent,
        binding: AccessoryBinding,
        characteristic: Characteristic | None,
        value: object,
    ) -> None:
        if not self._connected:
            return
        if event in (AccessoryEvent.REGISTERED, AccessoryEvent.UPDATED):
            _ = await self.announce(binding)
        elif event is AccessoryEvent.REMOVED:
            _ = await self.remove(binding)
        elif characteristic is not None:
            _ = await self.publish_state(binding, characteristic, value)

    async def handle_message(self, topic: str, payload: bytes) -> None:
        lp = f"{self.lp}rcv:"
        if topic == self.status_topic:
            status = payload.decode(errors="replace").casefold()
            if status == HASS_BIRTH_MSG.casefold():
                logger.info("%s Home Assistant is online, re-announcing heaters", lp)
                _ = await self.announce_all()
            elif status == HASS_WILL_MSG.casefold():
                logger.info("%s received Last Will msg from Home Assistant, HASS is offline!", lp)
            else:
                logger.warning("%s Unknown HASS status message: %s", lp, payload)
            return

        parts = topic.split("/")
        if len(parts) != 4 or parts[0] != self.topic or parts[1] != "set":
            logger.debug("%s ignoring message on %s", lp, topic)
            return
        device_id, field = parts[2], parts[3]
        text = payload.decode(errors="replace").strip()
        try:
            if field == "mode":
                if text.casefold() not in ("heat", "off"):
                    logger.warning("%s Unsupported mode '%s' for %s", lp, text, device_id)
                    return
                value = int(ActiveState.ACTIVE if text.casefold() == "heat" else ActiveState.INACTIVE)
                await self.accessories.set_value(device_id, Characteristic.ACTIVE, value)
            elif field == "temperature":
                await self.accessories.set_value(device_id, Characteristic.HEATING_THRESHOLD_TEMPERATURE, float(text))
            else:
                logger.debug("%s unknown command field '%s'", lp, field)
        except (TesyBridgeError, ValueError) as e:
            logger.warning("%s Command %s for %s failed: %s", lp, field, device_id, e)

    async def connect(self) -> bool:
        lp = f"{self.lp}connect:"
        self._connected = False
        self.client = aiomqtt.Client(
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            will=aiomqtt.Will(topic=self.bridge_availability_topic, payload=b"offline", retain=True),
        )
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as e:
            logger.error("%s Connection failed [MqttError]: %s", lp, e)
            self.client = None
            return False
        self._connected = True
        logger.info("%s Connected to MQTT broker: %s port: %s", lp, self.host, self.port)
        return True

    async def _receive(self) -> None:
        assert self.client is not None, "client must be initialized"
        for topic in (f"{self.topic}/set/#", self.status_topic):
            await self.client.subscribe(topic)
        async for message in self.client.messages:
            payload = message.payload
            if not isinstance(payload, bytes | bytearray):
                payload = str(payload or "").encode()
            await self.handle_message(message.topic.value, bytes(payload))

    async def _close_client(self, lp: str) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            logger.warning("%s MQTT disconnect failed: %s", lp, e)
        else:
            logger.info("%s Disconnected from MQTT broker", lp)

    async def start(self) -> None:
        lp = f"{self.lp}start:"
        while True:
            if await self.connect():
                _ = await self.publish(self.bridge_availability_topic, b"online", retain=True)
                _ = await self.announce_all()
                try:
                    await self._receive()
                except aiomqtt.MqttError as e:
                    logger.warning("%s MQTT error: %s", lp, e)
                self._connected = False
                await self._close_client(lp)
            logger.info(
                "%s connection to MQTT broker lost, sleeping for %s seconds before re-trying...",
                lp,
                self.reconnect_delay,
            )
            await asyncio.sleep(self.reconnect_delay)

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        if self._connected:
            _ = await self.publish(self.bridge_availability_topic, b"offline", retain=True)
        self._connected = False
        await self._close_client(lp)
        if self.start_task and not self.start_task.done():
            _ = self.start_task.cancel()
            _ = await asyncio.gather(self.start_task, return_exceptions=True)
