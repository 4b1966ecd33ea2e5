"""
Unit tests for the Tesy cloud directory client.
"""

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from tesy_bridge.cloud_api import TesyCloudAPI, parse_directory
from tesy_bridge.exceptions import (
    DeviceNotFoundError,
    DirectoryParseError,
    DirectoryTimeoutError,
    TransportError,
)
from tests.helpers.mocks import make_record

API_LOGGER = "tesy_bridge.cloud_api"

DIRECTORY = {
    "AA:BB:CC:DD:EE:01": {
        "token": "tok1",
        "model": "cn05uv",
        "firmware_version": "1.2.3",
        "state": {
            "id": 7,
            "deviceName": "Living Room",
            "status": "on",
            "heating": "off",
            "temp": "22",
            "current_temp": "19.5",
        },
    },
    "AA:BB:CC:DD:EE:02": {"token": "tok2", "state": {"id": "8", "status": "OFF", "temp": 18}},
}


def _response(status=200, body=""):
    resp = MagicMock()
    resp.status = status
    resp.read = AsyncMock(return_value=body if isinstance(body, bytes) else body.encode())
    resp.release = MagicMock()
    return resp


def _api(get):
    """TesyCloudAPI with a mock aiohttp session whose get() is ``get``."""
    api = TesyCloudAPI(123, "user@example.com", "secret", api_timeout=2.5)
    api.http_session = MagicMock()
    api.http_session.closed = False
    api.http_session.get = get
    return api


class TestParseDirectory:
    """Tests for parse_directory"""

    def test_parses_records_and_status(self):
        """Test entries are keyed by id with MAC, token, model and state"""
        listing = parse_directory(DIRECTORY)

        assert set(listing.entries) == {"7", "8"}
        entry = listing.entries["7"]
        assert entry.record.mac_address == "AA:BB:CC:DD:EE:01"
        assert entry.record.token == "tok1"
        assert entry.record.firmware_version == "1.2.3"
        assert entry.record.display_name == "Living Room"
        assert entry.status.power_on is True
        assert entry.status.heating_on is False
        assert entry.status.target_temperature == 22.0
        assert entry.status.current_temperature == 19.5

    def test_name_fallback(self):
        """Test a device with no name anywhere gets a generated name"""
        listing = parse_directory(DIRECTORY)

        assert listing.entries["8"].record.display_name == "Tesy Heater 8"
        assert listing.entries["8"].record.model == "cn05uv"

    def test_name_from_device_data(self):
        """Test the top-level name is used when state has none"""
        listing = parse_directory({"m1": {"name": "Hall", "state": {"id": 3}}})

        assert listing.entries["3"].record.display_name == "Hall"

    def test_entry_without_state_id_is_skipped(self, caplog):
        """Test malformed entries are skipped with a warning"""
        caplog.set_level(logging.WARNING, logger=API_LOGGER)

        listing = parse_directory({"m1": {"state": {"temp": 20}}, "m2": "junk", "m3": {"state": {"id": 4}}})

        assert set(listing.entries) == {"4"}
        assert sum("missing state data" in r.getMessage() for r in caplog.records) == 2

    def test_empty_and_null_mean_no_devices(self):
        """Test an empty object and null are valid empty listings"""
        assert parse_directory({}).no_devices
        assert parse_directory(None).no_devices

    def test_non_object_raises(self):
        """Test a JSON array is a parse error"""
        with pytest.raises(DirectoryParseError):
            _ = parse_directory([1, 2])

    def test_find_by_mac(self):
        """Test lookup by MAC address"""
        listing = parse_directory(DIRECTORY)

        assert listing.find_by_mac("AA:BB:CC:DD:EE:02").record.id == "8"
        assert listing.find_by_mac("00:00") is None


class TestListDevices:
    """Tests for TesyCloudAPI.list_devices"""

    @pytest.mark.asyncio
    async def test_success_sends_credentials(self):
        """Test the query carries userID, email, password and lang"""
        get = AsyncMock(return_value=_response(body=json.dumps(DIRECTORY)))
        api = _api(get)

        listing = await api.list_devices()

        assert len(listing.entries) == 2
        assert get.await_args.kwargs["params"] == {
            "userID": "123",
            "userEmail": "user@example.com",
            "userPass": "secret",
            "lang": "en",
        }
        assert get.await_args.kwargs["timeout"].total == 2.5

    @pytest.mark.asyncio
    async def test_empty_body_is_no_devices(self):
        """Test an empty response body means the account has no devices"""
        api = _api(AsyncMock(return_value=_response(body="  ")))

        listing = await api.list_devices()

        assert listing.no_devices
        assert api.consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        """Test HTTP status >= 400 raises TransportError with the status"""
        resp = _response(status=503)
        api = _api(AsyncMock(return_value=resp))

        with pytest.raises(TransportError) as exc_info:
            _ = await api.list_devices()

        assert exc_info.value.status == 503
        resp.release.assert_called_once()
        assert api.consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a timeout raises DirectoryTimeoutError"""
        api = _api(AsyncMock(side_effect=TimeoutError()))

        with pytest.raises(DirectoryTimeoutError) as exc_info:
            _ = await api.list_devices()

        assert exc_info.value.timeout == 2.5

    @pytest.mark.asyncio
    async def test_client_error(self):
        """Test aiohttp client errors raise TransportError"""
        api = _api(AsyncMock(side_effect=aiohttp.ClientConnectionError("refused")))

        with pytest.raises(TransportError):
            _ = await api.list_devices()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Test a non-JSON body raises DirectoryParseError"""
        api = _api(AsyncMock(return_value=_response(body="<html>")))

        with pytest.raises(DirectoryParseError):
            _ = await api.list_devices()

    @pytest.mark.asyncio
    async def test_non_utf8_body(self):
        """Test undecodable bytes raise DirectoryParseError and count as a failure"""
        api = _api(AsyncMock(return_value=_response(body=b'{"mac1": "\xff\xfe"}')))

        with pytest.raises(DirectoryParseError):
            _ = await api.list_devices()

        assert api.consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_repeated_failures_throttled_then_restored(self, caplog):
        """Test only the first failure in the window logs at ERROR and recovery is logged"""
        caplog.set_level(logging.DEBUG, logger=API_LOGGER)
        get = AsyncMock(
            side_effect=[
                aiohttp.ClientConnectionError("refused"),
                aiohttp.ClientConnectionError("refused"),
                aiohttp.ClientConnectionError("refused"),
                _response(body="{}"),
            ],
        )
        api = _api(get)

        for _ in range(3):
            with pytest.raises(TransportError):
                _ = await api.list_devices()
        _ = await api.list_devices()

        failures = [r for r in caplog.records if "failed" in r.getMessage()]
        assert [r.levelno for r in failures] == [logging.ERROR, logging.DEBUG, logging.DEBUG]
        assert any("Connection restored after 3 failures" in r.getMessage() for r in caplog.records)
        assert api.consecutive_errors == 0


class TestFetchDeviceStatus:
    """Tests for TesyCloudAPI.fetch_device_status"""

    @pytest.mark.asyncio
    async def test_matches_by_mac(self):
        """Test the status is taken from the entry with the record's MAC"""
        api = _api(AsyncMock(return_value=_response(body=json.dumps(DIRECTORY))))

        status = await api.fetch_device_status(make_record(device_id="ignored", mac="AA:BB:CC:DD:EE:02"))

        assert status.power_on is False
        assert status.target_temperature == 18.0

    @pytest.mark.asyncio
    async def test_missing_mac_raises(self):
        """Test a MAC no longer listed raises DeviceNotFoundError"""
        api = _api(AsyncMock(return_value=_response(body=json.dumps(DIRECTORY))))

        with pytest.raises(DeviceNotFoundError) as exc_info:
            _ = await api.fetch_device_status(make_record(mac="FF:FF"))

        assert exc_info.value.device == "FF:FF"


class TestSessionLifecycle:
    """Tests for HTTP session handling"""

    @pytest.mark.asyncio
    async def test_close(self):
        """Test close closes an open session and forgets it"""
        api = _api(AsyncMock())
        session = api.http_session
        session.close = AsyncMock()

        await api.close()

        session.close.assert_awaited_once()
        assert api.http_session is None
