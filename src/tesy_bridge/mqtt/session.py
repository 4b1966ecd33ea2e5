"""Tesy broker session.

Owns the single connection to the Tesy MQTT broker: connect and reconnect
with backoff, per-device response subscriptions, command publishing with an
optimistic queue while disconnected, and telemetry dispatch.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import ssl
from collections.abc import Mapping

import aiomqtt

from tesy_bridge.const import (
    APP_ID_PREFIX,
    OUTBOUND_QUEUE_CAPACITY,
    TELEMETRY_COMMAND,
    TESY_BROKER_HOST,
    TESY_BROKER_KEEPALIVE,
    TESY_BROKER_PASS,
    TESY_BROKER_PATH,
    TESY_BROKER_PORT,
    TESY_BROKER_USER,
)
from tesy_bridge.correlation import ensure_correlation_id
from tesy_bridge.exceptions import NotConnectedError, QueueFullError, TransportError
from tesy_bridge.logging_abstraction import get_logger
from tesy_bridge.metrics import record_command, record_queue_depth, record_session_state, record_telemetry
from tesy_bridge.mqtt.outbound import CommandEnvelope, OutboundQueue
from tesy_bridge.mqtt.topics import parse_response_topic, request_topic, response_filter
from tesy_bridge.retry_policy import RetryPolicy
from tesy_bridge.structs import DeviceRecord, OnDelivered, SessionState, TelemetryHandler, TelemetryPayload

logger = get_logger(__name__)

SESSION_TASK_NAME = "tesy_broker_session"


def generate_app_id() -> str:
    """Per-session application id sent with every command (``hb`` + 7 hex)."""
    return APP_ID_PREFIX + secrets.token_hex(4)[:7]


def generate_client_id() -> str:
    return f"mqttjs_{secrets.token_hex(4)}"


def _is_keepalive_error(exc: BaseException) -> bool:
    text = str(exc).casefold()
    return "keepalive" in text or "timed out" in text or "timeout" in text


class BrokerSession:
    """One connection to the Tesy broker, shared by every device of a bridge."""

    lp: str = "broker:"

    def __init__(
        self,
        *,
        host: str = TESY_BROKER_HOST,
        port: int = TESY_BROKER_PORT,
        websocket_path: str = TESY_BROKER_PATH,
        username: str = TESY_BROKER_USER,
        password: str = TESY_BROKER_PASS,
        keepalive: int = TESY_BROKER_KEEPALIVE,
        retry_policy: RetryPolicy | None = None,
        queue_capacity: int = OUTBOUND_QUEUE_CAPACITY,
    ) -> None:
        self.host = host
        self.port = port
        self.websocket_path = websocket_path
        self.username = username
        self.password = password
        self.keepalive = keepalive
        self.retry_policy = retry_policy or RetryPolicy()

        self.state: SessionState = SessionState.DISCONNECTED
        self.client: aiomqtt.Client | None = None
        self.outbound = OutboundQueue(queue_capacity)
        self.app_id: str = generate_app_id()

        self._devices: dict[str, DeviceRecord] = {}
        self._subscribed: set[str] = set()
        self._telemetry_handlers: list[TelemetryHandler] = []
        self._run_task: asyncio.Task[None] | None = None
        self._reconnect_logged = False
        self._flushing = False
        self._stopping = False
        self._attempt = 0

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def devices(self) -> dict[str, DeviceRecord]:
        return dict(self._devices)

    def add_telemetry_handler(self, handler: TelemetryHandler) -> None:
        self._telemetry_handlers.append(handler)

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug("%s state %s -> %s", self.lp, self.state.value, state.value)
        self.state = state
        record_session_state(state.value)

    def ensure_connected(self) -> None:
        """Start the connection loop unless one is already running.

        Calls while connecting, connected or reconnecting are no-ops, so only
        one connect attempt is ever in flight.
        """
        lp = f"{self.lp}ensure_connected:"
        if self._stopping:
            logger.debug("%s session stopped, not connecting", lp)
            return
        if self._run_task is not None and not self._run_task.done():
            logger.debug("%s already %s", lp, self.state.value)
            return
        logger.info("%s Initializing broker connection...", lp, extra={"host": self.host, "port": self.port})
        self._set_state(SessionState.CONNECTING)
        self._run_task = asyncio.create_task(self._run(), name=SESSION_TASK_NAME)

    def _build_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=generate_client_id(),
            keepalive=self.keepalive,
            clean_session=True,
            transport="websockets",
            websocket_path=self.websocket_path,
            tls_context=ssl.create_default_context(),
        )

    async def connect(self) -> bool:
        """Open one connection. Returns False (after logging) on failure."""
        lp = f"{self.lp}connect:"
        self._set_state(SessionState.CONNECTING)
        self.client = self._build_client()
        logger.debug("%s Connecting to broker...", lp, extra={"host": self.host, "port": self.port})
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as e:
            self._handle_transport_error(e, lp)
            self.client = None
            return False

        self._subscribed.clear()
        self._set_state(SessionState.CONNECTED)
        self._attempt = 0
        if self._reconnect_logged:
            logger.info("%s Reconnected to broker", lp)
        else:
            logger.info("%s Connected to broker: %s port: %s", lp, self.host, self.port)
        self._reconnect_logged = False
        return True

    async def _run(self) -> None:
        lp = f"{self.lp}run:"
        _ = ensure_correlation_id()
        try:
            while not self._stopping:
                if await self.connect():
                    try:
                        await self._on_connected()
                        await self._receive()
                    except (aiomqtt.MqttError, TransportError) as e:
                        self._handle_transport_error(e, lp)
                    if not self._stopping:
                        self._enter_reconnecting(lp)
                    await self._close_client(lp)
                if self._stopping:
                    break
                self._enter_reconnecting(lp)
                delay = self.retry_policy.get_delay(self._attempt)
                self._attempt += 1
                logger.debug("%s retrying in %.1f seconds (attempt %d)", lp, delay, self._attempt)
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug("%s session task cancelled", lp)
            raise

    def _enter_reconnecting(self, lp: str) -> None:
        self._set_state(SessionState.RECONNECTING)
        if not self._reconnect_logged:
            logger.warning("%s Broker connection lost, reconnecting...", lp)
            self._reconnect_logged = True

    def _handle_transport_error(self, exc: BaseException, lp: str) -> None:
        if _is_keepalive_error(exc):
            logger.warning("%s Broker keepalive timeout: %s", lp, exc)
        else:
            logger.error("%s Broker transport error: %s", lp, exc)

    async def _close_client(self, lp: str) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            logger.debug("%s disconnect: %s", lp, e)

    async def _on_connected(self) -> None:
        for record in list(self._devices.values()):
            await self._subscribe(record)
        await self._flush()

    async def _subscribe(self, record: DeviceRecord) -> None:
        lp = f"{self.lp}subscribe:"
        topic = response_filter(record)
        if self.client is None or topic in self._subscribed:
            return
        try:
            await self.client.subscribe(topic)
        except aiomqtt.MqttError as e:
            logger.error("%s Subscribe failed for %s: %s", lp, record.display_name, e)
            return
        self._subscribed.add(topic)
        logger.debug("%s Subscribed to response topic for %s", lp, record.display_name)

    async def _unsubscribe(self, record: DeviceRecord) -> None:
        lp = f"{self.lp}unsubscribe:"
        topic = response_filter(record)
        if topic not in self._subscribed:
            return
        self._subscribed.discard(topic)
        if self.client is None:
            return
        try:
            await self.client.unsubscribe(topic)
        except aiomqtt.MqttError as e:
            logger.warning("%s Unsubscribe failed for %s: %s", lp, record.display_name, e)

    async def subscribe_device(self, record: DeviceRecord) -> None:
        """Track a device and subscribe to its responses.

        While disconnected the subscription is deferred to the next connect.
        A record whose topic changed drops its previous subscription first.
        """
        previous = self._devices.get(record.id)
        self._devices[record.id] = record
        if previous is not None and response_filter(previous) != response_filter(record):
            await self._unsubscribe(previous)
        if not self.is_connected:
            logger.debug("%s subscription for %s deferred until connected", self.lp, record.display_name)
            return
        await self._subscribe(record)

    async def unsubscribe_device(self, device_id: str) -> None:
        record = self._devices.pop(device_id, None)
        if record is None:
            return
        await self._unsubscribe(record)

    async def publish(
        self,
        record: DeviceRecord,
        command: str,
        payload: Mapping[str, object],
        on_delivered: OnDelivered | None = None,
    ) -> bool:
        """Send a command to a device.

        Returns True when it was published immediately. While disconnected (or
        while earlier commands are still queued) the command is queued and
        False is returned; ``on_delivered`` fires when the queue is flushed.

        Raises:
            TransportError: the immediate publish failed
            QueueFullError: the command had to be queued and the queue is full
            NotConnectedError: the session has been stopped

        """
        lp = f"{self.lp}publish:"
        if self._stopping:
            raise NotConnectedError(self.state.value)

        envelope = CommandEnvelope(record=record, command=command, payload=dict(payload), on_delivered=on_delivered)
        if self.is_connected and self.client is not None and not self._flushing and not self.outbound:
            try:
                await self._send(envelope)
            except TransportError as e:
                record_command(command, "failed")
                envelope.notify(e)
                raise
            record_command(command, "sent")
            envelope.notify(None)
            return True

        try:
            self.outbound.push(envelope)
        except QueueFullError:
            record_command(command, "rejected")
            logger.warning(
                "%s Outbound queue full, rejecting %s for %s",
                lp,
                command,
                record.display_name,
                extra={"capacity": self.outbound.capacity},
            )
            raise
        record_command(command, "queued")
        record_queue_depth(len(self.outbound))
        logger.info(
            "%s Broker %s, queued %s for %s (%d pending)",
            lp,
            self.state.value,
            command,
            record.display_name,
            len(self.outbound),
        )
        if not self._flushing:
            self.ensure_connected()
        return False

    async def _send(self, envelope: CommandEnvelope) -> None:
        lp = f"{self.lp}send:"
        client = self.client
        if client is None:
            raise TransportError("no broker connection")
        topic = request_topic(envelope.record, envelope.command)
        body = json.dumps({"app_id": self.app_id, **envelope.payload})
        try:
            await client.publish(topic, body.encode(), qos=0, retain=False)
        except aiomqtt.MqttError as e:
            logger.error("%s Publish of %s to %s failed: %s", lp, envelope.command, envelope.record.display_name, e)
            raise TransportError(str(e)) from e
        logger.debug("%s Sent %s to %s", lp, envelope.command, envelope.record.display_name, extra={"topic": topic})

    async def _flush(self) -> None:
        """Send queued commands in FIFO order. Commands queued meanwhile go last.

        An envelope leaves the queue only once it has been sent. A failed send
        keeps it at the head for the next connection.

        Raises:
            TransportError: a send failed; the connection is treated as lost

        """
        lp = f"{self.lp}flush:"
        if not self.outbound:
            return
        self._flushing = True
        flushed = 0
        try:
            while self.is_connected:
                envelope = self.outbound.peek()
                if envelope is None:
                    break
                try:
                    await self._send(envelope)
                except TransportError:
                    logger.warning(
                        "%s Flush interrupted, %d command(s) kept for the next connection",
                        lp,
                        len(self.outbound),
                    )
                    raise
                _ = self.outbound.pop()
                flushed += 1
                record_command(envelope.command, "flushed")
                envelope.notify(None)
        finally:
            self._flushing = False
            record_queue_depth(len(self.outbound))
        logger.info("%s Flushed %d queued command(s)", lp, flushed)

    async def _receive(self) -> None:
        assert self.client is not None, "client must be connected"
        async for message in self.client.messages:
            await self._handle_message(message.topic.value, message.payload)

    async def _handle_message(self, topic: str, payload: object) -> None:
        lp = f"{self.lp}rcv:"
        parsed = parse_response_topic(topic)
        if parsed is None or parsed.command != TELEMETRY_COMMAND:
            record_telemetry("ignored")
            return
        record = next((r for r in self._devices.values() if r.mac_address == parsed.mac), None)
        if record is None:
            logger.debug("%s message for unknown MAC %s ignored", lp, parsed.mac)
            record_telemetry("ignored")
            return

        try:
            raw = payload.decode() if isinstance(payload, bytes | bytearray) else str(payload)
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.debug("%s Error processing message from %s: %s", lp, record.display_name, e)
            record_telemetry("malformed")
            return
        inner = data.get("payload") if isinstance(data, dict) else None
        if not isinstance(inner, dict):
            logger.debug("%s message from %s has no payload object", lp, record.display_name)
            record_telemetry("malformed")
            return

        telemetry = TelemetryPayload.from_payload(inner)
        record_telemetry("accepted")
        for handler in list(self._telemetry_handlers):
            try:
                await handler(record, telemetry)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s telemetry handler failed for %s", lp, record.display_name)

    async def stop(self) -> None:
        """Stop reconnecting and close the connection. Queued commands fail."""
        lp = f"{self.lp}stop:"
        self._stopping = True
        if self._run_task is not None and not self._run_task.done():
            logger.debug("%s Cancelling session task", lp)
            _ = self._run_task.cancel()
            _ = await asyncio.gather(self._run_task, return_exceptions=True)
        await self._close_client(lp)
        self._subscribed.clear()

        pending = self.outbound.drain()
        for envelope in pending:
            record_command(envelope.command, "failed")
            envelope.notify(NotConnectedError(self.state.value))
        if pending:
            logger.warning("%s Dropped %d queued command(s) on shutdown", lp, len(pending))
        record_queue_depth(0)
        self._set_state(SessionState.DISCONNECTED)
        logger.info("%s Broker session stopped", lp)
