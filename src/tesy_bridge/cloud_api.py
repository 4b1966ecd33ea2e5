"""Tesy cloud directory client.

Fetches the account's device list (with each heater's current state) from the
Tesy REST endpoint. The same call serves discovery, the periodic poll and the
per-device status fetch triggered by pushed telemetry.
"""

from __future__ import annotations

import json
import time
from typing import Any, cast

import aiohttp

from tesy_bridge.const import (
    DEFAULT_API_TIMEOUT,
    DEFAULT_MODEL,
    DIRECTORY_LANG,
    DIRECTORY_URL,
    ERROR_LOG_WINDOW,
)
from tesy_bridge.exceptions import (
    DeviceNotFoundError,
    DirectoryParseError,
    DirectoryTimeoutError,
    TesyBridgeError,
    TransportError,
)
from tesy_bridge.logging_abstraction import get_logger
from tesy_bridge.metrics import record_directory_request
from tesy_bridge.structs import DeviceRecord, DeviceStatus, DirectoryEntry, DirectoryListing

logger = get_logger(__name__)


def _display_name(device_data: dict[str, Any], state: dict[str, Any], device_id: str) -> str:
    for candidate in (
        state.get("deviceName"),
        state.get("name"),
        device_data.get("deviceName"),
        device_data.get("name"),
    ):
        if candidate:
            return str(candidate)
    return f"Tesy Heater {device_id}"


def parse_directory(data: object) -> DirectoryListing:
    """Turn a decoded directory body into a listing keyed by device id.

    ``None`` or an empty object is a valid "no devices" answer. Entries with
    no ``state.id`` are skipped.

    Raises:
        DirectoryParseError: the body is not a JSON object

    """
    lp = "TesyCloudAPI:parse:"
    if data is None:
        return DirectoryListing()
    if not isinstance(data, dict):
        msg = f"expected a JSON object, got {type(data).__name__}"
        raise DirectoryParseError(msg)

    listing = DirectoryListing()
    for mac, raw_entry in cast("dict[str, Any]", data).items():
        device_data: dict[str, Any] = raw_entry if isinstance(raw_entry, dict) else {}
        state = device_data.get("state")
        if not isinstance(state, dict) or not state.get("id"):
            logger.warning("%s Skipping device with MAC %s - missing state data", lp, mac)
            continue

        state = cast("dict[str, Any]", state)
        device_id = str(state["id"])
        firmware = device_data.get("firmware_version")
        record = DeviceRecord(
            id=device_id,
            mac_address=str(mac),
            token=str(device_data.get("token") or ""),
            model=str(device_data.get("model") or DEFAULT_MODEL),
            firmware_version=str(firmware) if firmware else None,
            display_name=_display_name(device_data, state, device_id),
        )
        listing.entries[device_id] = DirectoryEntry(record=record, status=DeviceStatus.from_directory_state(state))
    return listing


class TesyCloudAPI:
    """Client for the Tesy device directory.

    One instance per bridge. Tracks consecutive failures so a flapping cloud
    does not flood the log: after an error-level line, further failures inside
    the throttle window are logged at debug.
    """

    lp: str = "TesyCloudAPI"
    http_session: aiohttp.ClientSession | None = None

    def __init__(
        self,
        user_id: int,
        username: str,
        password: str,
        *,
        api_timeout: float = DEFAULT_API_TIMEOUT,
        url: str = DIRECTORY_URL,
        error_log_window: float = ERROR_LOG_WINDOW,
    ) -> None:
        self.user_id = user_id
        self.username = username
        self.password = password
        self.api_timeout = api_timeout
        self.url = url
        self.error_log_window = error_log_window
        self.consecutive_errors: int = 0
        self._last_error_log: float | None = None
        self.http_session = None

    async def close(self) -> None:
        """Close the aiohttp session if it exists and is not closed."""
        lp = f"{self.lp}:close:"
        if self.http_session and not self.http_session.closed:
            logger.debug("%s Closing aiohttp ClientSession", lp)
            await self.http_session.close()
        self.http_session = None

    async def _check_session(self) -> None:
        """Create the aiohttp session on first use (or after it was closed)."""
        if not self.http_session or self.http_session.closed:
            logger.debug("%s:_check_session: Creating new aiohttp ClientSession", self.lp)
            self.http_session = aiohttp.ClientSession()
            _ = await self.http_session.__aenter__()

    def _query(self) -> dict[str, str]:
        return {
            "userID": str(self.user_id),
            "userEmail": self.username,
            "userPass": self.password,
            "lang": DIRECTORY_LANG,
        }

    def _record_success(self, lp: str) -> None:
        if self.consecutive_errors:
            logger.info("%s Connection restored after %d failures", lp, self.consecutive_errors)
        self.consecutive_errors = 0
        self._last_error_log = None
        record_directory_request("success", 0)

    def _record_failure(self, lp: str, exc: TesyBridgeError) -> None:
        self.consecutive_errors += 1
        record_directory_request(type(exc).__name__, self.consecutive_errors)
        now = time.monotonic()
        if self._last_error_log is not None and now - self._last_error_log < self.error_log_window:
            logger.debug(
                "%s Directory request failed again: %s",
                lp,
                exc,
                extra={"consecutive_errors": self.consecutive_errors},
            )
            return
        self._last_error_log = now
        logger.error(
            "%s Directory request failed: %s",
            lp,
            exc,
            extra={"consecutive_errors": self.consecutive_errors},
        )

    async def _get_body(self) -> bytes:
        await self._check_session()
        sesh = self.http_session
        if sesh is None:
            raise TransportError("HTTP session unavailable")
        try:
            resp = await sesh.get(
                self.url,
                params=self._query(),
                timeout=aiohttp.ClientTimeout(total=self.api_timeout),
            )
            if resp.status >= 400:
                resp.release()
                raise TransportError(f"directory returned HTTP {resp.status}", status=resp.status)
            return await resp.read()
        except TimeoutError as e:
            raise DirectoryTimeoutError(self.api_timeout) from e
        except aiohttp.ClientError as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def list_devices(self) -> DirectoryListing:
        """Fetch the directory once.

        Raises:
            DirectoryTimeoutError: no complete answer within ``api_timeout``
            TransportError: network failure or HTTP status >= 400
            DirectoryParseError: the body is not a JSON object

        """
        lp = f"{self.lp}:list_devices:"
        logger.debug("%s Fetching devices from Tesy Cloud...", lp)
        try:
            body = await self._get_body()
            try:
                text = body.decode()
                data: object = json.loads(text) if text.strip() else None
            except UnicodeDecodeError as e:
                raise DirectoryParseError(f"body is not UTF-8: {e.reason}") from e
            except json.JSONDecodeError as e:
                raise DirectoryParseError(f"invalid JSON: {e}") from e
            listing = parse_directory(data)
        except (TransportError, DirectoryParseError) as e:
            self._record_failure(lp, e)
            raise

        self._record_success(lp)
        logger.debug("%s Directory lists %d device(s)", lp, len(listing.entries))
        return listing

    async def fetch_device_status(self, record: DeviceRecord) -> DeviceStatus:
        """Fetch the full current status of one device, matched by MAC.

        Raises:
            DeviceNotFoundError: the directory no longer lists this MAC
            TransportError, DirectoryParseError: as for ``list_devices``

        """
        listing = await self.list_devices()
        entry = listing.find_by_mac(record.mac_address)
        if entry is None:
            raise DeviceNotFoundError(record.mac_address)
        return entry.status
