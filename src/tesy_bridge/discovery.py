"""Device discovery and accessory lifecycle.

A discovery pass reconciles the accessory set with the cloud directory: new
heaters get an accessory, known ones are renamed in place, and heaters that
left the account are removed together with their subscription and status.
"""

from __future__ import annotations

import asyncio
import time

from tesy_bridge.accessories import AccessoryRegistry
from tesy_bridge.const import DEFAULT_PULL_INTERVAL_MS, DISCOVERY_MIN_INTERVAL
from tesy_bridge.correlation import correlation_context
from tesy_bridge.exceptions import TesyBridgeError
from tesy_bridge.logging_abstraction import get_logger
from tesy_bridge.reconciler import StateReconciler
from tesy_bridge.structs import BrokerSessionProtocol, CloudAPIProtocol, DeviceRecord

logger = get_logger(__name__)

POLL_TASK_NAME = "tesy_poll"


class DiscoveryManager:
    """Rate-limited discovery plus the periodic poll driver."""

    lp: str = "discovery:"

    def __init__(
        self,
        cloud: CloudAPIProtocol,
        session: BrokerSessionProtocol,
        reconciler: StateReconciler,
        accessories: AccessoryRegistry,
        *,
        pull_interval: float = DEFAULT_PULL_INTERVAL_MS / 1000.0,
        min_interval: float = DISCOVERY_MIN_INTERVAL,
    ) -> None:
        self.cloud = cloud
        self.session = session
        self.reconciler = reconciler
        self.accessories = accessories
        self.pull_interval = pull_interval
        self.min_interval = min_interval
        self.devices: dict[str, DeviceRecord] = {}
        self.poll_task: asyncio.Task[None] | None = None
        self._last_attempt: float | None = None
        self._in_flight = False

    async def discover(self) -> bool:
        """Run one discovery pass.

        Returns False without touching the network when a pass is already
        running or the previous attempt was less than ``min_interval`` ago.
        A failed directory call leaves every device as it was.
        """
        lp = f"{self.lp}discover:"
        now = time.monotonic()
        if self._in_flight:
            logger.debug("%s discovery already in progress", lp)
            return False
        if self._last_attempt is not None and now - self._last_attempt < self.min_interval:
            logger.debug(
                "%s last attempt %.1fs ago, skipping",
                lp,
                now - self._last_attempt,
                extra={"min_interval": self.min_interval},
            )
            return False

        self._in_flight = True
        self._last_attempt = now
        try:
            with correlation_context():
                return await self._discover(lp)
        finally:
            self._in_flight = False

    async def _discover(self, lp: str) -> bool:
        logger.info("%s Fetching devices from Tesy Cloud...", lp)
        try:
            listing = await self.cloud.list_devices()
        except TesyBridgeError as e:
            logger.error("%s API Error: %s", lp, e)
            return False

        if listing.no_devices:
            logger.warning("%s No devices found in your Tesy Cloud account", lp)
        else:
            logger.info("%s Found %d device(s) in your account", lp, len(listing.entries))

        for device_id, entry in listing.entries.items():
            record = entry.record
            if device_id in self.accessories:
                _ = await self.accessories.update_binding(record)
            else:
                _ = await self.accessories.register(record)
            self.devices[device_id] = record
            self.reconciler.track(record)

        stale = [device_id for device_id in self.accessories.bindings if device_id not in listing.entries]
        if stale:
            logger.info("%s Removing %d device(s) that are no longer in account", lp, len(stale))
        for device_id in stale:
            await self._remove(device_id)

        for entry in listing.entries.values():
            await self.session.subscribe_device(entry.record)
            await self.reconciler.apply_poll(entry.record, entry.status)

        if not listing.no_devices:
            self.session.ensure_connected()
        self.start_polling()
        return True

    async def _remove(self, device_id: str) -> None:
        _ = self.devices.pop(device_id, None)
        await self.session.unsubscribe_device(device_id)
        self.reconciler.forget(device_id)
        _ = await self.accessories.unregister(device_id)

    def start_polling(self) -> None:
        """Start the periodic poll. A second call while it runs does nothing."""
        lp = f"{self.lp}start_polling:"
        if self.poll_task is not None and not self.poll_task.done():
            logger.debug("%s polling already running", lp)
            return
        logger.info("%s Starting status polling every %d ms", lp, int(self.pull_interval * 1000))
        self.poll_task = asyncio.create_task(self._poll_loop(), name=POLL_TASK_NAME)

    async def stop_polling(self) -> None:
        task, self.poll_task = self.poll_task, None
        if task is None or task.done():
            return
        logger.debug("%s Cancelling poll task", self.lp)
        _ = task.cancel()
        _ = await asyncio.gather(task, return_exceptions=True)

    async def poll_once(self) -> None:
        """One tick: poll the known devices, or rediscover when there are none."""
        if self.devices:
            await self.reconciler.poll_all(list(self.devices.values()))
        else:
            _ = await self.discover()

    async def _poll_loop(self) -> None:
        lp = f"{self.lp}poll:"
        try:
            while True:
                await asyncio.sleep(self.pull_interval)
                try:
                    await self.poll_once()
                except TesyBridgeError as e:
                    logger.error("%s poll tick failed: %s", lp, e)
                except Exception:
                    logger.exception("%s poll tick crashed, continuing", lp)
        except asyncio.CancelledError:
            logger.debug("%s poll task cancelled", lp)
            raise
