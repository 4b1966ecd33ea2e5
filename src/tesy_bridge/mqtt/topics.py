"""Tesy broker topic layout.

Requests go to ``v1/{mac}/request/{model}/{token}/{command}`` and devices
answer (and push telemetry) on ``v1/{mac}/response/{model}/{token}/{command}``.
"""

from __future__ import annotations

from dataclasses import dataclass

from tesy_bridge.structs import DeviceRecord

TOPIC_VERSION = "v1"
REQUEST = "request"
RESPONSE = "response"


@dataclass(frozen=True, slots=True)
class ResponseTopic:
    mac: str
    model: str
    token: str
    command: str


def request_topic(record: DeviceRecord, command: str) -> str:
    return f"{TOPIC_VERSION}/{record.mac_address}/{REQUEST}/{record.model}/{record.token}/{command}"


def response_filter(record: DeviceRecord) -> str:
    """Wildcard subscription covering every response from one device."""
    return f"{TOPIC_VERSION}/{record.mac_address}/{RESPONSE}/{record.model}/{record.token}/#"


def parse_response_topic(topic: str) -> ResponseTopic | None:
    """Split a response topic into its parts, or None if it is not one."""
    parts = topic.split("/")
    if len(parts) < 6:
        return None
    version, mac, kind, model, token, command = parts[:6]
    if version != TOPIC_VERSION or kind != RESPONSE or not mac or not command:
        return None
    return ResponseTopic(mac=mac, model=model, token=token, command=command)
