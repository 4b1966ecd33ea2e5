"""
Shared fixtures for unit tests.

This module provides reusable fixtures for testing Tesy bridge components.
Plain builders live in tests.helpers.mocks.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tesy_bridge.accessories import AccessoryRegistry
from tesy_bridge.structs import DeviceStatus, DirectoryListing, SessionState
from tests.helpers.mocks import make_mqtt_client, make_record


@pytest.fixture
def record():
    """A single known heater."""
    return make_record()


@pytest.fixture
def other_record():
    """A second heater on a different MAC."""
    return make_record(device_id="8", mac="AA:BB:CC:DD:EE:02", name="Bedroom", token="tok2")


@pytest.fixture
def status_on():
    """Heater on, idle above target."""
    return DeviceStatus(current_temperature=21.0, target_temperature=20.0, power_on=True, heating_on=False)


@pytest.fixture
def mock_mqtt_client():
    """
    Mock aiomqtt client for testing.

    Returns an AsyncMock whose message stream is empty.
    """
    return make_mqtt_client()


@pytest.fixture
def mock_session():
    """Mock BrokerSession."""
    session = MagicMock()
    session.lp = "broker:"
    session.state = SessionState.DISCONNECTED
    session.publish = AsyncMock(return_value=True)
    session.subscribe_device = AsyncMock()
    session.unsubscribe_device = AsyncMock()
    session.ensure_connected = MagicMock()
    session.stop = AsyncMock()
    return session


@pytest.fixture
def mock_cloud():
    """Mock TesyCloudAPI."""
    cloud = MagicMock()
    cloud.lp = "TesyCloudAPI"
    cloud.consecutive_errors = 0
    cloud.list_devices = AsyncMock(return_value=DirectoryListing())
    cloud.fetch_device_status = AsyncMock()
    cloud.close = AsyncMock()
    return cloud


@pytest.fixture
def accessories():
    """Accessory registry without a cache file, bounded 10-30 °C."""
    return AccessoryRegistry(None, min_temp=10.0, max_temp=30.0)


@pytest.fixture
def value_updates(accessories):
    """Records every characteristic write as (device_id, characteristic, value)."""
    updates = []

    async def observer(event, binding, characteristic, value):
        if characteristic is not None:
            updates.append((binding.device_id, characteristic, value))

    accessories.add_observer(observer)
    return updates
