"""
Unit tests for the state reconciler.

Covers poll snapshots, pushed telemetry, change-only writes and the command
paths for Active and the target temperature.
"""

import logging
from unittest.mock import AsyncMock, call

import pytest
import pytest_asyncio

from tesy_bridge.exceptions import DeviceNotFoundError, QueueFullError, TransportError
from tesy_bridge.reconciler import StateReconciler
from tesy_bridge.structs import Characteristic, DeviceStatus, HeaterState, TelemetryPayload
from tests.helpers.mocks import make_listing

RECONCILER_LOGGER = "tesy_bridge.reconciler"


@pytest.fixture
def reconciler(accessories, mock_session, mock_cloud):
    reconciler = StateReconciler(accessories, mock_session, mock_cloud, min_temp=10.0, max_temp=30.0)
    reconciler.install_handlers()
    return reconciler


@pytest_asyncio.fixture
async def registered(accessories, reconciler, record):
    """The default record registered and tracked."""
    _ = await accessories.register(record)
    reconciler.track(record)
    return record


def _values(accessories, device_id="7"):
    return dict(accessories.get(device_id).values)


class TestApplyPoll:
    """Tests for applying directory snapshots"""

    @pytest.mark.asyncio
    async def test_snapshot_sets_all_characteristics(self, accessories, reconciler, registered):
        """Test a snapshot writes temperatures, Active and the inferred state"""
        status = DeviceStatus(current_temperature=19.0, target_temperature=22.0, power_on=True)

        await reconciler.apply_poll(registered, status)

        assert _values(accessories) == {
            Characteristic.CURRENT_HEATER_COOLER_STATE: int(HeaterState.HEATING),
            Characteristic.CURRENT_TEMPERATURE: 19.0,
            Characteristic.HEATING_THRESHOLD_TEMPERATURE: 22.0,
            Characteristic.ACTIVE: 1,
        }

    @pytest.mark.asyncio
    async def test_unchanged_values_are_not_rewritten(self, reconciler, registered, status_on, value_updates):
        """Test a repeated identical snapshot writes nothing"""
        await reconciler.apply_poll(registered, status_on)
        first = list(value_updates)

        await reconciler.apply_poll(registered, status_on)

        assert value_updates == first

    @pytest.mark.asyncio
    async def test_out_of_range_temperatures_are_dropped(self, accessories, reconciler, registered):
        """Test temperatures outside min/max are not applied"""
        status = DeviceStatus(current_temperature=45.0, target_temperature=5.0, power_on=False)

        await reconciler.apply_poll(registered, status)

        values = _values(accessories)
        assert Characteristic.CURRENT_TEMPERATURE not in values
        assert Characteristic.HEATING_THRESHOLD_TEMPERATURE not in values
        assert values[Characteristic.ACTIVE] == 0

    @pytest.mark.asyncio
    async def test_boundary_temperatures_are_applied(self, accessories, reconciler, registered):
        """Test min and max themselves are in range"""
        status = DeviceStatus(current_temperature=10.0, target_temperature=30.0, power_on=True)

        await reconciler.apply_poll(registered, status)

        assert _values(accessories)[Characteristic.CURRENT_TEMPERATURE] == 10.0
        assert _values(accessories)[Characteristic.HEATING_THRESHOLD_TEMPERATURE] == 30.0

    @pytest.mark.asyncio
    async def test_active_change_logged_at_info(self, reconciler, registered, caplog):
        """Test an Active transition is logged"""
        caplog.set_level(logging.INFO, logger=RECONCILER_LOGGER)

        await reconciler.apply_poll(registered, DeviceStatus(power_on=True))

        assert any("Active OFF -> ON" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_unknown_accessory_is_skipped(self, reconciler, record, status_on, value_updates):
        """Test a snapshot for a device without an accessory writes nothing"""
        await reconciler.apply_poll(record, status_on)

        assert value_updates == []


class TestPollAll:
    """Tests for the periodic poll tick"""

    @pytest.mark.asyncio
    async def test_single_directory_call_for_all_devices(
        self, accessories, reconciler, mock_cloud, record, other_record, status_on
    ):
        """Test one directory call updates every known device"""
        _ = await accessories.register(record)
        _ = await accessories.register(other_record)
        mock_cloud.list_devices.return_value = make_listing((record, status_on), (other_record, status_on))

        await reconciler.poll_all([record, other_record])

        mock_cloud.list_devices.assert_awaited_once()
        assert accessories.get_value("8", Characteristic.CURRENT_TEMPERATURE) == 21.0
        assert accessories.get_value("7", Characteristic.CURRENT_TEMPERATURE) == 21.0

    @pytest.mark.asyncio
    async def test_failed_call_leaves_state_unchanged(self, reconciler, registered, mock_cloud, status_on):
        """Test a directory failure changes no characteristic"""
        await reconciler.apply_poll(registered, status_on)
        before = _values(reconciler.accessories)
        mock_cloud.list_devices.side_effect = TransportError("refused")

        await reconciler.poll_all([registered])

        assert _values(reconciler.accessories) == before

    @pytest.mark.asyncio
    async def test_device_missing_from_listing_logged(self, reconciler, registered, mock_cloud, caplog):
        """Test a device absent from the listing is reported and left alone"""
        caplog.set_level(logging.INFO, logger=RECONCILER_LOGGER)
        mock_cloud.list_devices.return_value = make_listing()

        await reconciler.poll_all([registered])

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "Living Room" in errors[0].getMessage()

    @pytest.mark.asyncio
    async def test_no_records_makes_no_call(self, reconciler, mock_cloud):
        """Test an empty poll does not hit the directory"""
        await reconciler.poll_all([])

        mock_cloud.list_devices.assert_not_awaited()


class TestApplyTelemetry:
    """Tests for pushed setTempStatistic payloads"""

    @pytest.mark.asyncio
    async def test_push_with_heating_fetches_and_infers(self, reconciler, registered, mock_cloud, value_updates):
        """Test only the changed current temperature is written and one fetch happens"""
        idle = DeviceStatus(current_temperature=21.0, target_temperature=20.0, power_on=True, heating_on=False)
        await reconciler.apply_poll(registered, idle)
        value_updates.clear()
        mock_cloud.fetch_device_status.return_value = DeviceStatus(
            current_temperature=22.5,
            target_temperature=20.0,
            power_on=True,
            heating_on=False,
        )
        payload = TelemetryPayload.from_payload({"currentTemp": 22.5, "target": 20, "heating": "off"})

        await reconciler.apply_telemetry(registered, payload)

        mock_cloud.fetch_device_status.assert_awaited_once_with(registered)
        assert value_updates == [("7", Characteristic.CURRENT_TEMPERATURE, 22.5)]

    @pytest.mark.asyncio
    async def test_push_heating_uses_fetched_state_not_payload(self, accessories, reconciler, registered, mock_cloud):
        """Test the heater state comes from the fetched snapshot"""
        mock_cloud.fetch_device_status.return_value = DeviceStatus(
            current_temperature=18.0,
            target_temperature=22.0,
            power_on=True,
            heating_on=True,
        )
        payload = TelemetryPayload.from_payload({"heating": "off"})

        await reconciler.apply_telemetry(registered, payload)

        assert accessories.get_value("7", Characteristic.CURRENT_HEATER_COOLER_STATE) == int(HeaterState.HEATING)

    @pytest.mark.asyncio
    async def test_push_without_heating_does_not_fetch(self, accessories, reconciler, registered, mock_cloud):
        """Test temperatures alone never trigger a directory call"""
        payload = TelemetryPayload.from_payload({"currentTemp": "19.5", "target": "21"})

        await reconciler.apply_telemetry(registered, payload)

        mock_cloud.fetch_device_status.assert_not_awaited()
        assert accessories.get_value("7", Characteristic.CURRENT_TEMPERATURE) == 19.5
        assert accessories.get_value("7", Characteristic.HEATING_THRESHOLD_TEMPERATURE) == 21.0

    @pytest.mark.asyncio
    async def test_push_target_zero_or_out_of_range_ignored(self, accessories, reconciler, registered):
        """Test a zero or out-of-range pushed target is ignored"""
        for target in (0, 35, -1):
            await reconciler.apply_telemetry(registered, TelemetryPayload.from_payload({"target": target}))

        assert accessories.get_value("7", Characteristic.HEATING_THRESHOLD_TEMPERATURE) is None

    @pytest.mark.asyncio
    async def test_push_fetch_failure_keeps_state(self, accessories, reconciler, registered, mock_cloud):
        """Test a failed fetch after a push leaves the heater state alone"""
        mock_cloud.fetch_device_status.side_effect = DeviceNotFoundError("AA:BB:CC:DD:EE:01")

        await reconciler.apply_telemetry(registered, TelemetryPayload.from_payload({"heating": "on"}))

        assert accessories.get_value("7", Characteristic.CURRENT_HEATER_COOLER_STATE) == 0


class TestSetActive:
    """Tests for Active writes"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("value", "status"), [(1, "on"), (True, "on"), (0, "off"), (False, "off")])
    async def test_publishes_on_off(self, reconciler, registered, mock_session, value, status):
        """Test Active maps to onOff with status on/off"""
        sent = await reconciler.set_active("7", value)

        assert sent is True
        mock_session.publish.assert_awaited_once_with(registered, "onOff", {"status": status})

    @pytest.mark.asyncio
    async def test_routed_through_accessory_write(self, accessories, registered, mock_session):
        """Test a controller write reaches the session via the installed handler"""
        await accessories.set_value("7", Characteristic.ACTIVE, 0)

        mock_session.publish.assert_awaited_once_with(registered, "onOff", {"status": "off"})

    @pytest.mark.asyncio
    async def test_unknown_device(self, reconciler):
        """Test writes for an untracked device raise DeviceNotFoundError"""
        with pytest.raises(DeviceNotFoundError):
            _ = await reconciler.set_active("99", 1)

    @pytest.mark.asyncio
    async def test_queue_full_propagates(self, reconciler, registered, mock_session):
        """Test a full queue surfaces to the caller"""
        mock_session.publish.side_effect = QueueFullError(10)

        with pytest.raises(QueueFullError):
            _ = await reconciler.set_active("7", 1)


class TestSetTargetTemperature:
    """Tests for target temperature writes"""

    @pytest.mark.asyncio
    async def test_clamps_and_sets_manual_mode_first(self, reconciler, registered, mock_session):
        """Test 35 is clamped to 30 and sent after setMode manual"""
        _ = await reconciler.set_target_temperature("7", 35)

        assert mock_session.publish.await_args_list == [
            call(registered, "setMode", {"mode": "manual"}),
            call(registered, "setTemp", {"temp": 30.0}),
        ]

    @pytest.mark.asyncio
    async def test_clamps_low(self, reconciler, registered, mock_session):
        """Test values below min are raised to min"""
        _ = await reconciler.set_target_temperature("7", "4.5")

        assert mock_session.publish.await_args_list[-1] == call(registered, "setTemp", {"temp": 10.0})

    @pytest.mark.asyncio
    async def test_mode_failure_skips_temperature(self, reconciler, registered, mock_session):
        """Test a failed setMode raises and setTemp is never sent"""
        mock_session.publish = AsyncMock(side_effect=TransportError("broken pipe"))

        with pytest.raises(TransportError):
            _ = await reconciler.set_target_temperature("7", 21)

        mock_session.publish.assert_awaited_once()
        assert mock_session.publish.await_args.args[1] == "setMode"

    @pytest.mark.asyncio
    async def test_returns_queued_result(self, reconciler, registered, mock_session):
        """Test the return value reflects whether setTemp was queued"""
        mock_session.publish.return_value = False

        assert await reconciler.set_target_temperature("7", 21) is False

    @pytest.mark.asyncio
    async def test_invalid_value(self, reconciler, registered):
        """Test a non-numeric value raises ValueError"""
        with pytest.raises(ValueError, match="invalid target temperature"):
            _ = await reconciler.set_target_temperature("7", "warm")
