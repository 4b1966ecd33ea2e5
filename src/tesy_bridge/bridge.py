"""Bridge orchestration: wires the cloud client, broker session, reconciler,
discovery and the optional Home Assistant exposure together."""

from __future__ import annotations

import asyncio

from tesy_bridge.accessories import AccessoryRegistry
from tesy_bridge.cloud_api import TesyCloudAPI
from tesy_bridge.config import BridgeConfig
from tesy_bridge.const import TESY_VERSION
from tesy_bridge.correlation import ensure_correlation_id
from tesy_bridge.discovery import DiscoveryManager
from tesy_bridge.hass import HassBridge
from tesy_bridge.logging_abstraction import get_logger
from tesy_bridge.metrics import start_metrics_server
from tesy_bridge.mqtt.session import BrokerSession
from tesy_bridge.reconciler import StateReconciler

logger = get_logger(__name__)

HASS_START_TASK_NAME = "tesy_hass_start"


class TesyBridge:
    """One bridge instance per account."""

    lp: str = "TesyBridge:"

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self.cloud = TesyCloudAPI(
            config.user_id,
            config.username,
            config.password,
            api_timeout=config.api_timeout,
        )
        self.session = BrokerSession()
        self.accessories = AccessoryRegistry(
            config.accessory_cache_path,
            min_temp=config.min_temp,
            max_temp=config.max_temp,
        )
        self.reconciler = StateReconciler(
            self.accessories,
            self.session,
            self.cloud,
            min_temp=config.min_temp,
            max_temp=config.max_temp,
        )
        self.discovery = DiscoveryManager(
            self.cloud,
            self.session,
            self.reconciler,
            self.accessories,
            pull_interval=config.pull_interval_seconds,
        )
        self.hass: HassBridge | None = None
        hass_host = config.hass_mqtt_host
        if hass_host:
            self.hass = HassBridge(
                self.accessories,
                host=hass_host,
                port=config.hass_mqtt_port,
                username=config.hass_mqtt_user,
                password=config.hass_mqtt_pass,
                topic=config.topic,
                hass_topic=config.hass_topic,
                status_topic=config.hass_status_topic,
            )

        self.session.add_telemetry_handler(self.reconciler.apply_telemetry)
        self.reconciler.install_handlers()
        self._stopped = asyncio.Event()
        self._stopping = False

    async def start(self) -> None:
        """Run until ``stop()`` is called."""
        lp = f"{self.lp}start:"
        _ = ensure_correlation_id()
        logger.info("%s TesyHeater bridge starting", lp, extra={"version": TESY_VERSION})

        if self.config.metrics_port:
            start_metrics_server(self.config.metrics_port)
            logger.info("%s Metrics exporter listening", lp, extra={"port": self.config.metrics_port})

        cached = self.accessories.load_cache()
        if cached:
            logger.info("%s Restored %d cached accessory(ies)", lp, cached)

        if self.hass is not None:
            self.hass.start_task = asyncio.create_task(self.hass.start(), name=HASS_START_TASK_NAME)

        logger.info("%s Finished launching, discovering devices...", lp)
        _ = await self.discovery.discover()
        # keeps retrying discovery every interval until devices show up
        self.discovery.start_polling()
        await self._stopped.wait()

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        if self._stopping:
            return
        self._stopping = True
        logger.info("%s Shutting down Tesy bridge...", lp)
        try:
            await self.discovery.stop_polling()
            await self.session.stop()
            if self.hass is not None:
                await self.hass.stop()
            await self.cloud.close()
        finally:
            self._stopped.set()
            logger.info("%s Tesy bridge stopped", lp)
